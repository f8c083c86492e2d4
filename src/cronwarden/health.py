"""Daily content health report.

Groups detector output into named pass/warn/fail checks, files issues for
what it finds and optionally mails a plain-text summary to an operator.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from .clock import Clock, SystemClock
from .config import Config
from .descriptions import describe
from .detectors import (
    Detector,
    detect_failed_jobs,
    detect_html_artifacts,
    detect_image_issues,
    detect_missed_deliveries,
    detect_missing_briefs,
    detect_thin_content,
)
from .intake import create_issues
from .models import IssueCandidate
from .recorder import list_executions, recorded_execution
from .services.delivery import DeliveryService, build_delivery_service
from .storage import list_active_scopes, list_delivery_recipients, list_published_articles_since
from .utils import log_event, to_iso, truncate

logger = logging.getLogger("cronwarden.health")

ADMIN_EMAIL_ENV = "CW_ADMIN_EMAIL"
MAX_DETAILS = 10
FAIL_RATE = 0.05
STATUS_ORDER = {"pass": 0, "warn": 1, "fail": 2}

Counter = Callable[[Any, datetime, Config], int]


@dataclass
class HealthCheckResult:
    name: str
    status: str = "pass"
    total: int = 0
    passing: int = 0
    failing: int = 0
    details: list[str] = field(default_factory=list)
    candidates: list[IssueCandidate] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "total": self.total,
            "passing": self.passing,
            "failing": self.failing,
        }


@dataclass
class HealthReport:
    started_at: datetime
    success: bool = False
    execution_id: str | None = None
    checks: list[HealthCheckResult] = field(default_factory=list)
    issues_created: int = 0
    report_sent: bool = False
    report_text: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "execution_id": self.execution_id,
            "started_at": to_iso(self.started_at),
            "overall": overall_status(self.checks),
            "checks": [check.summary() for check in self.checks],
            "issues_created": self.issues_created,
            "report_sent": self.report_sent,
        }
        if self.error:
            payload["error"] = self.error
        return payload


def _window_articles(conn: Any, now: datetime, config: Config) -> int:
    since = to_iso(now - timedelta(hours=config.monitor.detection_window_hours))
    return len(list_published_articles_since(conn, since, config.monitor.max_candidates_per_detector * 2))


def _active_scopes(conn: Any, now: datetime, config: Config) -> int:
    return len(list_active_scopes(conn))


def _recipients(conn: Any, now: datetime, config: Config) -> int:
    return len(list_delivery_recipients(conn))


def _window_executions(conn: Any, now: datetime, config: Config) -> int:
    since = to_iso(now - timedelta(hours=config.monitor.detection_window_hours))
    return len(list_executions(conn, started_from=since, limit=1000))


HEALTH_CHECKS: list[tuple[str, Detector, Counter]] = [
    ("Brief Coverage", detect_missing_briefs, _active_scopes),
    ("Story Images", detect_image_issues, _window_articles),
    ("Thin Content", detect_thin_content, _active_scopes),
    ("Daily Delivery", detect_missed_deliveries, _recipients),
    ("HTML Artifacts", detect_html_artifacts, _window_articles),
    ("Failed Jobs", detect_failed_jobs, _window_executions),
]


def run_health_checks(conn: Any, config: Config, now: datetime) -> list[HealthCheckResult]:
    results: list[HealthCheckResult] = []
    for name, detector, counter in HEALTH_CHECKS:
        result = HealthCheckResult(name=name)
        try:
            candidates = detector(conn, now, config)
            total = counter(conn, now, config)
        except Exception as exc:  # noqa: BLE001
            conn.rollback()
            log_event(logger, logging.ERROR, "health_check_failed", check=name, error=exc)
            result.status = "fail"
            result.details.append(f"Check failed: {truncate(str(exc), 200)}")
            results.append(result)
            continue
        result.candidates = candidates
        result.failing = len(candidates)
        result.total = max(total, result.failing)
        result.passing = result.total - result.failing
        result.details = [describe(item.description) for item in candidates[:MAX_DETAILS]]
        if len(candidates) > MAX_DETAILS:
            result.details.append(f"...and {len(candidates) - MAX_DETAILS} more")
        result.status = _status_for(result)
        results.append(result)
    return results


def overall_status(results: list[HealthCheckResult]) -> str:
    worst = "pass"
    for result in results:
        if STATUS_ORDER[result.status] > STATUS_ORDER[worst]:
            worst = result.status
    return worst


def render_report(results: list[HealthCheckResult], now: datetime) -> tuple[str, str]:
    overall = overall_status(results)
    counts = {status: sum(1 for r in results if r.status == status) for status in STATUS_ORDER}
    subject = f"[{overall.upper()}] Daily content health {now.date().isoformat()}"
    lines = [
        f"Daily content health for {now.date().isoformat()}",
        f"Overall: {overall.upper()} ({counts['pass']} pass, {counts['warn']} warn, {counts['fail']} fail)",
        "",
    ]
    for result in results:
        stats = f"{result.passing}/{result.total} passing" if result.total else "No data"
        lines.append(f"[{result.status.upper()}] {result.name}: {stats}")
        for detail in result.details:
            lines.append(f"  - {detail}")
    return subject, "\n".join(lines) + "\n"


def check_daily_health(
    conn: Any,
    config: Config,
    delivery: DeliveryService | None = None,
    clock: Clock | None = None,
    triggered_by: str = "scheduler",
    admin_email: str | None = None,
    send_report: bool = True,
) -> HealthReport:
    """Run the checks and file issues inside one recorded execution.

    The delivery service is built on first use so that a broken API key is
    recorded against this run instead of escaping it.
    """
    clock = clock or SystemClock()
    admin_email = admin_email or os.environ.get(ADMIN_EMAIL_ENV) or None
    report = HealthReport(started_at=clock.now())
    try:
        with recorded_execution(conn, config.monitor.health_job_name, triggered_by, clock) as run:
            report.execution_id = run.handle.id
            now = clock.now()
            report.checks = run_health_checks(conn, config, now)
            candidates = [item for check in report.checks for item in check.candidates]
            report.issues_created = create_issues(conn, candidates, now)
            subject, report.report_text = render_report(report.checks, now)
            if admin_email and send_report:
                report.report_sent = _send_report(
                    conn, config, delivery, admin_email, subject, report.report_text, run
                )
            report.success = True
            run.success = True
            run.response_data = {
                "overall": overall_status(report.checks),
                "checks": [check.summary() for check in report.checks],
                "issues_created": report.issues_created,
                "report_sent": report.report_sent,
            }
    except Exception as exc:  # noqa: BLE001
        report.success = False
        report.error = f"{type(exc).__name__}: {exc}"
        log_event(logger, logging.ERROR, "health_run_failed", error=report.error)
    return report


def _status_for(result: HealthCheckResult) -> str:
    if result.failing == 0:
        return "pass"
    if result.total and result.failing / result.total >= FAIL_RATE:
        return "fail"
    return "warn"


def _send_report(
    conn: Any,
    config: Config,
    delivery: DeliveryService | None,
    to: str,
    subject: str,
    body: str,
    run,
) -> bool:
    try:
        delivery = delivery or build_delivery_service(conn, config)
        outcome = delivery.send_report(to, subject, body)
    except Exception as exc:  # noqa: BLE001
        run.add_error(f"report delivery failed: {type(exc).__name__}: {truncate(str(exc), 200)}")
        log_event(logger, logging.WARNING, "health_report_failed", error=exc)
        return False
    if not outcome.success:
        run.add_error(f"report delivery failed: {outcome.message}")
        log_event(logger, logging.WARNING, "health_report_failed", error=outcome.message)
    return outcome.success
