from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from .config import Config
from .models import DeliveryDiagnosis, FixOutcome, Issue, IssueType
from .services import Services
from .services.delivery import DeliveryRef, DeliveryService
from .services.generation import GenerationRequest, GenerationService
from .storage import get_recipient, get_scope, insert_article, set_recipient_timezone
from .utils import log_event, truncate

# Causes whose root cause needs no store change before resending.
RESEND_ONLY_CAUSES = {"cron_not_run", "send_failed", "rate_limit_overflow", "unknown"}


class Fixer(ABC):
    """Remediation for one issue at a time."""

    @abstractmethod
    def attempt(self, issue: Issue) -> FixOutcome:
        ...


class BatchFixer(ABC):
    """Remediation for a group of issues in one call.

    Implementations judge each issue by observing the store after the call,
    and return one outcome per issue in the order given.
    """

    @abstractmethod
    def attempt_batch(
        self, issues: list[Issue], started_at: datetime, remaining_budget_ms: int
    ) -> list[FixOutcome]:
        ...


class FixerRegistry:
    """Ordered map from issue type to its fixer. Order drives dispatch order."""

    def __init__(self) -> None:
        self._fixers: dict[IssueType, Fixer | BatchFixer] = {}

    def register(self, issue_type: IssueType, fixer: Fixer | BatchFixer) -> None:
        self._fixers[issue_type] = fixer

    def get(self, issue_type: IssueType) -> Fixer | BatchFixer | None:
        return self._fixers.get(issue_type)

    def types(self) -> list[IssueType]:
        return list(self._fixers)

    def __contains__(self, issue_type: object) -> bool:
        return issue_type in self._fixers

    def __len__(self) -> int:
        return len(self._fixers)


class ImageFixer(Fixer):
    def __init__(self, generation: GenerationService) -> None:
        self.generation = generation

    def attempt(self, issue: Issue) -> FixOutcome:
        if not issue.subject_ref:
            return FixOutcome(False, "No article id on issue")
        result = self.generation.generate(
            GenerationRequest(kind="image", subject_ref=issue.subject_ref)
        )
        if result.success:
            return FixOutcome(True, result.message or "Image regenerated successfully")
        return FixOutcome(False, result.message or "No image generated")


class ThinContentFixer(Fixer):
    def __init__(
        self,
        conn: Any,
        generation: GenerationService,
        stories_per_fix: int,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.generation = generation
        self.stories_per_fix = stories_per_fix
        self.logger = logger or logging.getLogger("cronwarden.fixers")

    def attempt(self, issue: Issue) -> FixOutcome:
        if not issue.scope_ref:
            return FixOutcome(False, "No scope id on issue")
        scope = get_scope(self.conn, issue.scope_ref)
        if scope is None:
            return FixOutcome(False, f"Scope {issue.scope_ref} not found")
        result = self.generation.generate(
            GenerationRequest(
                kind="news",
                scope_ref=scope.id,
                count=self.stories_per_fix,
                context={"name": scope.name, "city": scope.city},
            )
        )
        if not result.success:
            return FixOutcome(False, result.message or f"No stories generated for {scope.name}")

        created = 0
        for story in result.items:
            headline = str(story.get("headline") or "").strip()
            if not headline:
                continue
            article_id = insert_article(
                self.conn,
                scope_id=scope.id,
                headline=headline,
                body_text=story.get("body"),
                image_url="",
                author_type="ai",
                category_label="Daily Brief",
                editor_notes=f"Auto-generated by thin content fixer. Category: {story.get('category') or 'news'}",
            )
            created += 1
            self._request_image(article_id)
        if created:
            return FixOutcome(True, f"Generated {created} articles for {scope.name}")
        return FixOutcome(False, f"No articles generated for {scope.name}")

    def _request_image(self, article_id: str) -> None:
        # A missing image is picked up by the image detector on a later run.
        try:
            self.generation.generate(GenerationRequest(kind="image", subject_ref=article_id))
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.WARNING,
                "image_request_failed",
                article_id=article_id,
                error=truncate(str(exc), 200),
            )


class DeliveryFixer(Fixer):
    def __init__(self, conn: Any, delivery: DeliveryService) -> None:
        self.conn = conn
        self.delivery = delivery

    def attempt(self, issue: Issue) -> FixOutcome:
        diagnosis = issue.description
        if not isinstance(diagnosis, DeliveryDiagnosis):
            return FixOutcome(False, "Could not parse delivery diagnosis from issue")
        if not diagnosis.auto_fixable:
            return FixOutcome(False, f"Not auto-fixable: {diagnosis.cause}")
        root = self.fix_root_cause(diagnosis)
        if not root.success:
            return root
        result = self.delivery.redeliver(
            DeliveryRef(recipient_id=diagnosis.recipient_id, email=diagnosis.email)
        )
        if result.success:
            return FixOutcome(True, f"Root cause ({diagnosis.cause}) fixed. {result.message}")
        return FixOutcome(False, result.message)

    def fix_root_cause(self, diagnosis: DeliveryDiagnosis) -> FixOutcome:
        if diagnosis.cause == "missing_timezone":
            return self._assign_timezone(diagnosis)
        if diagnosis.cause in RESEND_ONLY_CAUSES:
            return FixOutcome(True, f"No root cause fix needed for {diagnosis.cause}")
        if diagnosis.cause == "no_scopes":
            return FixOutcome(False, "Cannot fix: recipient has no scope subscriptions")
        if diagnosis.cause == "disabled_by_user":
            return FixOutcome(False, "Cannot fix: recipient disabled daily delivery")
        return FixOutcome(False, f"Unknown cause: {diagnosis.cause}")

    def _assign_timezone(self, diagnosis: DeliveryDiagnosis) -> FixOutcome:
        recipient = get_recipient(self.conn, diagnosis.recipient_id)
        if recipient is None:
            return FixOutcome(False, f"Recipient {diagnosis.recipient_id} not found")
        if not recipient.scope_ids:
            return FixOutcome(False, "No scope found to derive timezone from")
        scope_id = recipient.scope_ids[0]
        scope = get_scope(self.conn, scope_id)
        if scope is None or not scope.timezone:
            return FixOutcome(False, f"Scope {scope_id} has no timezone")
        if not set_recipient_timezone(self.conn, recipient.id, scope.timezone):
            return FixOutcome(False, f"Failed to update timezone for {recipient.id}")
        return FixOutcome(True, f"Set timezone to {scope.timezone} from scope {scope_id}")


def build_registry(conn: Any, config: Config, services: Services) -> FixerRegistry:
    from .batch import BriefBatchFixer

    image_fixer = ImageFixer(services.generation)
    registry = FixerRegistry()
    registry.register(IssueType.MISSING_IMAGE, image_fixer)
    registry.register(IssueType.PLACEHOLDER_IMAGE, image_fixer)
    registry.register(IssueType.MISSING_BRIEF, BriefBatchFixer(conn, services.generation))
    registry.register(
        IssueType.THIN_CONTENT,
        ThinContentFixer(conn, services.generation, config.services.news_stories_per_fix),
    )
    registry.register(IssueType.MISSED_EMAIL, DeliveryFixer(conn, services.delivery))
    return registry
