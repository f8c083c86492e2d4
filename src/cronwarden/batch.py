from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from .fixers import BatchFixer
from .models import FixOutcome, Issue
from .services.generation import GenerationService
from .storage import list_scope_ids_with_briefs_since
from .utils import log_event, to_iso, truncate


class BriefBatchFixer(BatchFixer):
    """Generates missing briefs for many scopes with one collaborator call.

    The batch call's own report is only logged. Each issue is judged by
    whether a brief for its scope exists in the store after ``started_at``.
    """

    def __init__(
        self,
        conn: Any,
        generation: GenerationService,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.generation = generation
        self.logger = logger or logging.getLogger("cronwarden.batch")

    def attempt_batch(
        self, issues: list[Issue], started_at: datetime, remaining_budget_ms: int
    ) -> list[FixOutcome]:
        scope_refs = list(dict.fromkeys(issue.scope_ref for issue in issues if issue.scope_ref))
        if scope_refs:
            try:
                result = self.generation.generate_batch(scope_refs, remaining_budget_ms)
                log_event(
                    self.logger,
                    logging.INFO,
                    "brief_batch_returned",
                    scopes=len(scope_refs),
                    completed=len(result.completed),
                    failed=len(result.failed),
                    stopped_early=result.stopped_early,
                )
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self.logger,
                    logging.ERROR,
                    "brief_batch_failed",
                    scopes=len(scope_refs),
                    error=truncate(str(exc), 300),
                )

        produced = list_scope_ids_with_briefs_since(self.conn, scope_refs, to_iso(started_at))
        outcomes: list[FixOutcome] = []
        for issue in issues:
            if not issue.scope_ref:
                outcomes.append(FixOutcome(False, "No scope id on issue"))
            elif issue.scope_ref in produced:
                outcomes.append(FixOutcome(True, "Brief generated for scope"))
            else:
                outcomes.append(FixOutcome(False, "No brief produced for scope in batch"))
        return outcomes
