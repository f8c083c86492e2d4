"""Read-only scanners that propose candidate issues.

Each detector takes ``(conn, now, config)`` and returns a list of
``IssueCandidate``. Detectors never write and treat missing or malformed
fields as "nothing to report" for that row.
"""

from __future__ import annotations

import re
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import Config
from .models import (
    DeliveryDiagnosis,
    IssueCandidate,
    IssueType,
    Recipient,
    Scope,
    TextDescription,
)
from .recorder import list_executions
from .storage import (
    count_published_articles_by_scope,
    list_active_scopes,
    list_brief_times_since,
    list_delivery_recipients,
    list_published_articles_since,
    list_sent_recipient_ids,
)
from .utils import parse_iso_or_none, to_iso

Detector = Callable[[Any, datetime, Config], list[IssueCandidate]]

HTML_TAG_RE = re.compile(
    r"<(div|span|p|br|a|h[1-6]|img|ul|ol|li|table|tr|td|strong|em|b|i)\b[^>]*>",
    re.IGNORECASE,
)
CITATION_LEAK_RE = re.compile(r"\{['\"](?:title|url|snippet)['\"]:")

FAILED_JOBS_LIMIT = 20
# Recipients without a timezone are only judged once every timezone's morning is likely over.
UNKNOWN_TIMEZONE_CUTOFF_HOUR = 12


def detect_image_issues(conn: Any, now: datetime, config: Config) -> list[IssueCandidate]:
    monitor = config.monitor
    since = to_iso(now - timedelta(hours=monitor.detection_window_hours))
    articles = list_published_articles_since(conn, since, monitor.max_candidates_per_detector * 2)
    patterns = [re.compile(pattern, re.IGNORECASE) for pattern in monitor.placeholder_patterns]
    missing: list[IssueCandidate] = []
    placeholders: list[IssueCandidate] = []
    for article in articles:
        image_url = (article.image_url or "").strip()
        headline = (article.headline or "")[:50]
        if not image_url:
            missing.append(
                _candidate(
                    config,
                    IssueType.MISSING_IMAGE,
                    f'Article "{headline}..." is missing an image',
                    subject_ref=article.id,
                    scope_ref=article.scope_id,
                )
            )
        elif any(pattern.search(image_url) for pattern in patterns):
            placeholders.append(
                _candidate(
                    config,
                    IssueType.PLACEHOLDER_IMAGE,
                    f'Article "{headline}..." has a placeholder image',
                    subject_ref=article.id,
                    scope_ref=article.scope_id,
                )
            )
    limit = monitor.max_candidates_per_detector
    return missing[:limit] + placeholders[:limit]


def detect_failed_jobs(conn: Any, now: datetime, config: Config) -> list[IssueCandidate]:
    since = to_iso(now - timedelta(hours=config.monitor.detection_window_hours))
    candidates: list[IssueCandidate] = []
    for record in list_executions(conn, started_from=since, success=False, limit=FAILED_JOBS_LIMIT):
        summary = "; ".join(record.errors[:2]) if record.errors else "Unknown error"
        candidates.append(
            _candidate(
                config,
                IssueType.JOB_FAILURE,
                f'Cron job "{record.job_name}" failed: {summary[:100]}',
                subject_ref=record.job_name,
                auto_fixable=False,
            )
        )
    return candidates


def detect_missing_briefs(conn: Any, now: datetime, config: Config) -> list[IssueCandidate]:
    monitor = config.monitor
    since = to_iso(now - timedelta(hours=monitor.brief_lookback_hours))
    briefs = list_brief_times_since(conn, since)
    candidates: list[IssueCandidate] = []
    for scope in list_active_scopes(conn):
        tz = _zone(scope.timezone) or timezone.utc
        local_now = now.astimezone(tz)
        if local_now.hour < monitor.brief_morning_hour:
            continue
        if _has_brief_for_local_day(briefs.get(scope.id, []), tz, local_now.date()):
            continue
        candidates.append(
            _candidate(
                config,
                IssueType.MISSING_BRIEF,
                f"{scope_label(scope)} is missing today's brief",
                scope_ref=scope.id,
            )
        )
    return candidates


def detect_thin_content(conn: Any, now: datetime, config: Config) -> list[IssueCandidate]:
    threshold = config.monitor.thin_content_threshold
    counts = count_published_articles_by_scope(conn, to_iso(now - timedelta(hours=24)))
    candidates: list[IssueCandidate] = []
    for scope in list_active_scopes(conn):
        count = counts.get(scope.id, 0)
        if count >= threshold:
            continue
        candidates.append(
            _candidate(
                config,
                IssueType.THIN_CONTENT,
                f"{scope_label(scope)} has {count} published article(s) in the last 24 hours",
                scope_ref=scope.id,
            )
        )
    return candidates[: config.monitor.max_candidates_per_detector]


def detect_missed_deliveries(conn: Any, now: datetime, config: Config) -> list[IssueCandidate]:
    monitor = config.monitor
    sent = list_sent_recipient_ids(conn, now.astimezone(timezone.utc).date().isoformat())
    due_hour = monitor.delivery_send_hour + monitor.delivery_grace_hours
    candidates: list[IssueCandidate] = []
    for recipient in list_delivery_recipients(conn):
        if not recipient.email or recipient.id in sent:
            continue
        if not recipient.timezone:
            if now.astimezone(timezone.utc).hour < UNKNOWN_TIMEZONE_CUTOFF_HOUR:
                continue
        else:
            tz = _zone(recipient.timezone)
            if tz is None or now.astimezone(tz).hour < due_hour:
                continue
        diagnosis = diagnose_delivery(conn, recipient, now, config)
        if diagnosis.cause == "disabled_by_user":
            continue
        candidates.append(
            IssueCandidate(
                issue_type=IssueType.MISSED_EMAIL,
                description=diagnosis,
                auto_fixable=diagnosis.auto_fixable,
                max_retries=config.max_retries_for(IssueType.MISSED_EMAIL),
                subject_ref=recipient.id,
            )
        )
    return candidates[: monitor.max_candidates_per_detector]


def diagnose_delivery(
    conn: Any, recipient: Recipient, now: datetime, config: Config
) -> DeliveryDiagnosis:
    """Find why a recipient missed today's delivery. First matching cause wins."""

    def _diagnosis(cause: str, details: str, auto_fixable: bool) -> DeliveryDiagnosis:
        return DeliveryDiagnosis(
            recipient_id=recipient.id,
            email=recipient.email or "",
            source=recipient.source if recipient.source in ("profile", "newsletter") else "profile",
            cause=cause,
            details=details,
            auto_fixable=auto_fixable,
        )

    if not recipient.daily_email_enabled:
        return _diagnosis("disabled_by_user", "Recipient has daily delivery disabled", False)
    if not recipient.timezone:
        return _diagnosis("missing_timezone", "Recipient has no timezone", True)
    if not recipient.scope_ids:
        return _diagnosis("no_scopes", "Recipient has no scope subscriptions", False)

    tz = _zone(recipient.timezone)
    if tz is not None:
        monitor = config.monitor
        local_day = now.astimezone(tz).date()
        local_send = datetime.combine(local_day, time(hour=monitor.delivery_send_hour), tzinfo=tz)
        hour_start = local_send.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
        hour_end = hour_start + timedelta(hours=1)
        runs = list_executions(
            conn,
            job_name=monitor.delivery_job_name,
            started_from=to_iso(hour_start),
            started_before=to_iso(hour_end),
            limit=1,
        )
        if not runs:
            return _diagnosis(
                "cron_not_run",
                f"No {monitor.delivery_job_name} run found for UTC hour {hour_start.hour} "
                f"({recipient.timezone} {monitor.delivery_send_hour}:00)",
                True,
            )
        run = runs[0]
        data = run.response_data or {}
        failed = _as_int(data.get("items_failed"))
        if failed > 0 or (run.completed_at is not None and not run.success):
            error = "; ".join(run.errors[:1]) or "unknown"
            return _diagnosis(
                "send_failed",
                f"Delivery run had {failed} failures. Error: {error}",
                True,
            )
        skipped = _as_int(data.get("emails_skipped"))
        if skipped > 0:
            return _diagnosis(
                "rate_limit_overflow",
                f"Delivery run skipped {skipped} recipients due to rate limit",
                True,
            )

    return _diagnosis(
        "unknown",
        "All checks passed but nothing was sent. Attempting resend.",
        True,
    )


def detect_html_artifacts(conn: Any, now: datetime, config: Config) -> list[IssueCandidate]:
    monitor = config.monitor
    since = to_iso(now - timedelta(hours=monitor.detection_window_hours))
    candidates: list[IssueCandidate] = []
    for article in list_published_articles_since(conn, since, monitor.max_candidates_per_detector * 2):
        body = article.body_text or ""
        if not body:
            continue
        tag = HTML_TAG_RE.search(body)
        leak = CITATION_LEAK_RE.search(body)
        if not tag and not leak:
            continue
        found = f"<{tag.group(1)}> tag" if tag else "citation JSON fragment"
        candidates.append(
            _candidate(
                config,
                IssueType.HTML_ARTIFACT,
                f'Article "{(article.headline or "")[:50]}..." contains a raw {found}',
                subject_ref=article.id,
                scope_ref=article.scope_id,
                auto_fixable=False,
            )
        )
    return candidates[: monitor.max_candidates_per_detector]


DETECTORS: list[tuple[str, Detector]] = [
    ("image_issues", detect_image_issues),
    ("failed_jobs", detect_failed_jobs),
    ("missing_briefs", detect_missing_briefs),
    ("thin_content", detect_thin_content),
    ("missed_deliveries", detect_missed_deliveries),
    ("html_artifacts", detect_html_artifacts),
]


def scope_label(scope: Scope) -> str:
    if scope.city:
        return f"{scope.name} ({scope.city})"
    return scope.name


def _candidate(
    config: Config,
    issue_type: IssueType,
    text: str,
    subject_ref: str | None = None,
    scope_ref: str | None = None,
    auto_fixable: bool = True,
) -> IssueCandidate:
    return IssueCandidate(
        issue_type=issue_type,
        description=TextDescription(text=text),
        auto_fixable=auto_fixable,
        max_retries=config.max_retries_for(issue_type),
        subject_ref=subject_ref,
        scope_ref=scope_ref,
    )


def _has_brief_for_local_day(timestamps: list[str], tz, local_day) -> bool:
    for stamp in timestamps:
        created = parse_iso_or_none(stamp)
        if created is not None and created.astimezone(tz).date() == local_day:
            return True
    return False


def _zone(name: str | None):
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
