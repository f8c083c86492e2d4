from __future__ import annotations

import logging
from typing import Any

from .clock import Clock, Deadline
from .config import Config, FixerPolicy
from .fixers import BatchFixer, Fixer, FixerRegistry
from .ledger import can_retry, mark_retrying, record_outcome
from .models import DispatchSummary, FixAttempt, FixOutcome, Issue, IssueStatus, IssueType
from .utils import log_event, truncate

MAX_FIX_RESULT_CHARS = 500


class Dispatcher:
    """Applies fixers to eligible issues under caps, pacing and a deadline.

    Types run in registry order and issues within a type in the order given.
    Issues that are not attempted are never written to.
    """

    def __init__(
        self,
        conn: Any,
        config: Config,
        registry: FixerRegistry,
        clock: Clock,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self.registry = registry
        self.clock = clock
        self.logger = logger or logging.getLogger("cronwarden.dispatcher")

    def dispatch(self, issues: list[Issue], deadline: Deadline) -> DispatchSummary:
        summary = DispatchSummary()
        grouped: dict[IssueType, list[Issue]] = {}
        for issue in issues:
            grouped.setdefault(issue.issue_type, []).append(issue)

        for issue_type in self.registry.types():
            group = grouped.pop(issue_type, None)
            if group:
                self._dispatch_type(issue_type, group, deadline, summary)

        for issue_type, group in grouped.items():
            log_event(
                self.logger,
                logging.INFO,
                "fixer_not_registered",
                issue_type=issue_type.value,
                skipped=len(group),
            )
            summary.skipped += len(group)
        return summary

    def _dispatch_type(
        self,
        issue_type: IssueType,
        group: list[Issue],
        deadline: Deadline,
        summary: DispatchSummary,
    ) -> None:
        fixer = self.registry.get(issue_type)
        policy = self.config.policy_for(issue_type)
        if fixer is None or policy is None:
            summary.skipped += len(group)
            return

        eligible = [issue for issue in group if issue.auto_fixable and can_retry(issue)]
        summary.skipped += len(group) - len(eligible)
        selected = eligible[: policy.max_per_run]
        over_cap = len(eligible) - len(selected)
        if over_cap:
            log_event(
                self.logger,
                logging.INFO,
                "fix_cap_reached",
                issue_type=issue_type.value,
                cap=policy.max_per_run,
                skipped=over_cap,
            )
        summary.skipped += over_cap

        if summary.deadline_reached:
            summary.skipped += len(selected)
            return
        if isinstance(fixer, BatchFixer):
            self._dispatch_batch(issue_type, fixer, policy, selected, deadline, summary)
        else:
            self._dispatch_each(issue_type, fixer, policy, selected, deadline, summary)

    def _dispatch_each(
        self,
        issue_type: IssueType,
        fixer: Fixer,
        policy: FixerPolicy,
        selected: list[Issue],
        deadline: Deadline,
        summary: DispatchSummary,
    ) -> None:
        for index, issue in enumerate(selected):
            if index > 0 and policy.delay_seconds > 0:
                self.clock.sleep(policy.delay_seconds)
            if deadline.expired():
                self._stop_at_deadline(issue_type, len(selected) - index, summary)
                return
            self._attempt(fixer, policy, issue, summary)

    def _dispatch_batch(
        self,
        issue_type: IssueType,
        fixer: BatchFixer,
        policy: FixerPolicy,
        selected: list[Issue],
        deadline: Deadline,
        summary: DispatchSummary,
    ) -> None:
        if not selected:
            return
        if deadline.expired():
            self._stop_at_deadline(issue_type, len(selected), summary)
            return
        started_at = self.clock.now()
        for issue in selected:
            mark_retrying(self.conn, issue.id, started_at)
        log_event(
            self.logger,
            logging.INFO,
            "batch_fix_started",
            issue_type=issue_type.value,
            issues=len(selected),
            budget_ms=deadline.remaining_ms(),
        )
        try:
            outcomes = fixer.attempt_batch(selected, started_at, deadline.remaining_ms())
        except Exception as exc:  # noqa: BLE001
            message = f"batch fixer raised {type(exc).__name__}: {exc}"
            outcomes = [FixOutcome(False, message) for _ in selected]
        if len(outcomes) != len(selected):
            message = f"batch fixer returned {len(outcomes)} outcomes for {len(selected)} issues"
            outcomes = [FixOutcome(False, message) for _ in selected]
        for issue, outcome in zip(selected, outcomes):
            self._record(policy, issue, outcome, summary)

    def _attempt(
        self, fixer: Fixer, policy: FixerPolicy, issue: Issue, summary: DispatchSummary
    ) -> None:
        mark_retrying(self.conn, issue.id, self.clock.now())
        try:
            outcome = fixer.attempt(issue)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.WARNING,
                "fixer_raised",
                issue_id=issue.id,
                issue_type=issue.issue_type.value,
                error=truncate(str(exc), 200),
            )
            outcome = FixOutcome(False, f"{type(exc).__name__}: {exc}")
        self._record(policy, issue, outcome, summary)

    def _record(
        self, policy: FixerPolicy, issue: Issue, outcome: FixOutcome, summary: DispatchSummary
    ) -> None:
        outcome = FixOutcome(outcome.success, truncate(outcome.message, MAX_FIX_RESULT_CHARS))
        status = record_outcome(self.conn, issue, outcome, policy, self.clock.now())
        if outcome.success:
            summary.fixed += 1
        else:
            summary.failed += 1
        summary.attempts.append(
            FixAttempt(
                issue_id=issue.id,
                issue_type=issue.issue_type,
                success=outcome.success,
                message=outcome.message,
                status=status,
            )
        )
        log_event(
            self.logger,
            logging.INFO if outcome.success else logging.WARNING,
            "fix_attempted",
            issue_id=issue.id,
            issue_type=issue.issue_type.value,
            success=outcome.success,
            status=status.value,
            retry_count=issue.retry_count + 1,
        )
        if status == IssueStatus.NEEDS_MANUAL:
            log_event(self.logger, logging.WARNING, "issue_needs_manual", issue_id=issue.id)

    def _stop_at_deadline(
        self, issue_type: IssueType, remaining: int, summary: DispatchSummary
    ) -> None:
        summary.deadline_reached = True
        summary.skipped += remaining
        log_event(
            self.logger,
            logging.WARNING,
            "dispatch_deadline_reached",
            issue_type=issue_type.value,
            skipped=remaining,
        )
