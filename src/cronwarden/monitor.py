from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .clock import Clock, Deadline, SystemClock
from .config import Config
from .descriptions import describe
from .detectors import DETECTORS, Detector
from .dispatcher import Dispatcher
from .fixers import FixerRegistry, build_registry
from .intake import create_issues
from .ledger import get_retryable_issues, sweep_exhausted_issues
from .models import DispatchSummary, IssueCandidate
from .recorder import recorded_execution
from .services import Services, build_services
from .utils import log_event, to_iso, truncate

logger = logging.getLogger("cronwarden.monitor")


@dataclass
class MonitorRunResult:
    started_at: datetime
    success: bool = False
    completed_at: datetime | None = None
    execution_id: str | None = None
    candidates_found: int = 0
    issues_detected: int = 0
    issues_exhausted: int = 0
    issues_fixed: int = 0
    issues_failed: int = 0
    issues_skipped: int = 0
    deadline_reached: bool = False
    detector_errors: list[str] = field(default_factory=list)
    new_issues: list[dict[str, Any]] = field(default_factory=list)
    fix_attempts: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None

    def counts(self) -> dict[str, Any]:
        return {
            "candidates_found": self.candidates_found,
            "issues_detected": self.issues_detected,
            "issues_exhausted": self.issues_exhausted,
            "issues_fixed": self.issues_fixed,
            "issues_failed": self.issues_failed,
            "issues_skipped": self.issues_skipped,
            "deadline_reached": self.deadline_reached,
        }

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "execution_id": self.execution_id,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at) if self.completed_at else None,
            **self.counts(),
            "detector_errors": list(self.detector_errors),
            "details": {
                "new_issues": list(self.new_issues),
                "fix_attempts": list(self.fix_attempts),
            },
        }
        if self.error:
            payload["error"] = self.error
        return payload


def run_detectors(
    conn: Any,
    now: datetime,
    config: Config,
    detectors: list[tuple[str, Detector]] | None = None,
) -> tuple[list[IssueCandidate], list[str]]:
    """Run every detector, isolating failures to the detector that raised."""
    candidates: list[IssueCandidate] = []
    errors: list[str] = []
    for name, detector in detectors if detectors is not None else DETECTORS:
        try:
            found = detector(conn, now, config)
        except Exception as exc:  # noqa: BLE001
            conn.rollback()
            message = f"detector {name} failed: {type(exc).__name__}: {truncate(str(exc), 200)}"
            log_event(logger, logging.ERROR, "detector_failed", detector=name, error=exc)
            errors.append(message)
            continue
        log_event(logger, logging.INFO, "detector_finished", detector=name, candidates=len(found))
        candidates.extend(found)
    return candidates, errors


def run_monitor(
    conn: Any,
    config: Config,
    registry: FixerRegistry | None = None,
    services: Services | None = None,
    clock: Clock | None = None,
    triggered_by: str = "scheduler",
    detectors: list[tuple[str, Detector]] | None = None,
) -> MonitorRunResult:
    """One monitor invocation: detect, intake, sweep, select, dispatch.

    Never raises. A fatal error is reported through ``success``/``error`` on
    the result and the execution record is still finalized.
    """
    clock = clock or SystemClock()
    deadline = Deadline.after(config.monitor.time_budget_seconds, clock)
    result = MonitorRunResult(started_at=clock.now())
    log_event(logger, logging.INFO, "monitor_run_started", triggered_by=triggered_by)
    try:
        with recorded_execution(conn, config.monitor.job_name, triggered_by, clock) as run:
            result.execution_id = run.handle.id
            _run_phases(conn, config, registry, services, clock, deadline, detectors, result)
            result.success = True
            run.success = True
            run.errors = list(result.detector_errors)
            run.response_data = result.counts()
    except Exception as exc:  # noqa: BLE001
        result.success = False
        result.error = f"{type(exc).__name__}: {exc}"
        log_event(logger, logging.ERROR, "monitor_run_failed", error=result.error)
    result.completed_at = clock.now()
    log_event(
        logger,
        logging.INFO,
        "monitor_run_finished",
        success=result.success,
        detected=result.issues_detected,
        fixed=result.issues_fixed,
        failed=result.issues_failed,
        skipped=result.issues_skipped,
        deadline_reached=result.deadline_reached,
    )
    return result


def _run_phases(
    conn: Any,
    config: Config,
    registry: FixerRegistry | None,
    services: Services | None,
    clock: Clock,
    deadline: Deadline,
    detectors: list[tuple[str, Detector]] | None,
    result: MonitorRunResult,
) -> None:
    candidates, errors = run_detectors(conn, clock.now(), config, detectors)
    result.candidates_found = len(candidates)
    result.detector_errors = errors
    result.new_issues = [
        {
            "issue_type": candidate.issue_type.value,
            "subject_ref": candidate.subject_ref,
            "scope_ref": candidate.scope_ref,
            "description": describe(candidate.description),
            "auto_fixable": candidate.auto_fixable,
        }
        for candidate in candidates
    ]

    result.issues_detected = create_issues(conn, candidates, clock.now())
    result.issues_exhausted = sweep_exhausted_issues(conn, clock.now())
    retryable = get_retryable_issues(conn, clock.now())
    log_event(logger, logging.INFO, "retryable_issues", count=len(retryable))

    if registry is None:
        registry = build_registry(conn, config, services or build_services(conn, config))
    summary = Dispatcher(conn, config, registry, clock).dispatch(retryable, deadline)
    _apply_summary(result, summary)


def _apply_summary(result: MonitorRunResult, summary: DispatchSummary) -> None:
    result.issues_fixed = summary.fixed
    result.issues_failed = summary.failed
    result.issues_skipped = summary.skipped
    result.deadline_reached = summary.deadline_reached
    result.fix_attempts = [
        {
            "issue_id": attempt.issue_id,
            "issue_type": attempt.issue_type.value,
            "success": attempt.success,
            "message": attempt.message,
            "status": attempt.status.value,
        }
        for attempt in summary.attempts
    ]
