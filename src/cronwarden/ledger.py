"""Issue ledger: the only code that writes ``cron_issues`` rows.

State machine::

    open -> retrying -> resolved
    open -> retrying -> open          (failed attempt, backoff)
    open/retrying -> needs_manual     (retries exhausted)

``resolved`` and ``needs_manual`` are terminal for the automatic flow. The
manual operations at the bottom of this module are the only way out of them.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from .config import FixerPolicy
from .descriptions import DescriptionError, decode_description, encode_description
from .models import (
    ACTIVE_STATUSES,
    RETRYABLE_STATUSES,
    FixOutcome,
    Issue,
    IssueCandidate,
    IssueStatus,
    IssueType,
    TextDescription,
)
from .utils import log_event, parse_iso, parse_iso_or_none, to_iso

logger = logging.getLogger("cronwarden.ledger")

ISSUE_COLUMNS = """
    id, issue_type, subject_ref, scope_ref, description, dedup_key, status,
    retry_count, max_retries, next_retry_at, auto_fixable, fix_attempted_at,
    fix_result, created_at, resolved_at
"""


class IssueNotFoundError(LookupError):
    pass


class IssueStateError(ValueError):
    pass


def insert_issue(conn: Any, candidate: IssueCandidate, dedup_key: str, now: datetime) -> str:
    issue_id = f"iss_{uuid.uuid4().hex}"
    stamp = to_iso(now)
    conn.execute(
        """
        INSERT INTO cron_issues
            (id, issue_type, subject_ref, scope_ref, description, dedup_key, status,
             retry_count, max_retries, next_retry_at, auto_fixable, fix_attempted_at,
             fix_result, created_at, resolved_at, seq)
        VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, NULL, NULL, ?, NULL,
                (SELECT COALESCE(MAX(seq), 0) + 1 FROM cron_issues))
        """,
        (
            issue_id,
            candidate.issue_type.value,
            candidate.subject_ref,
            candidate.scope_ref,
            encode_description(candidate.issue_type, candidate.description),
            dedup_key,
            IssueStatus.OPEN.value,
            candidate.max_retries,
            stamp,
            1 if candidate.auto_fixable else 0,
            stamp,
        ),
    )
    conn.commit()
    return issue_id


def active_dedup_keys(conn: Any, keys: list[str]) -> set[str]:
    if not keys:
        return set()
    placeholders = ", ".join("?" for _ in keys)
    statuses = [status.value for status in ACTIVE_STATUSES]
    cursor = conn.execute(
        f"""
        SELECT dedup_key
        FROM cron_issues
        WHERE dedup_key IN ({placeholders})
          AND status IN ({", ".join("?" for _ in statuses)})
        """,
        (*keys, *statuses),
    )
    return {row[0] for row in cursor.fetchall()}


def get_issue(conn: Any, issue_id: str) -> Issue | None:
    row = conn.execute(
        f"SELECT {ISSUE_COLUMNS} FROM cron_issues WHERE id = ?",
        (issue_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_issue(row)


def require_issue(conn: Any, issue_id: str) -> Issue:
    issue = get_issue(conn, issue_id)
    if issue is None:
        raise IssueNotFoundError(issue_id)
    return issue


def list_issues(
    conn: Any,
    status: str | None = None,
    issue_type: str | None = None,
    limit: int = 100,
) -> list[Issue]:
    clauses: list[str] = []
    params: list[Any] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if issue_type:
        clauses.append("issue_type = ?")
        params.append(issue_type)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT {ISSUE_COLUMNS}
        FROM cron_issues
        {where}
        ORDER BY created_at DESC, seq DESC
        LIMIT ?
        """,
        params,
    )
    return [_row_to_issue(row) for row in cursor.fetchall()]


def count_issues_by_status(conn: Any) -> dict[str, int]:
    cursor = conn.execute("SELECT status, COUNT(*) FROM cron_issues GROUP BY status")
    return {row[0]: int(row[1]) for row in cursor.fetchall()}


def can_retry(issue: Issue) -> bool:
    return issue.retry_count < issue.max_retries


def sweep_exhausted_issues(conn: Any, now: datetime) -> int:
    cursor = conn.execute(
        """
        UPDATE cron_issues
        SET status = ?
        WHERE status IN (?, ?) AND retry_count >= max_retries
        """,
        (
            IssueStatus.NEEDS_MANUAL.value,
            IssueStatus.OPEN.value,
            IssueStatus.RETRYING.value,
        ),
    )
    conn.commit()
    swept = cursor.rowcount or 0
    if swept:
        log_event(logger, logging.INFO, "issues_exhausted", count=swept, at=to_iso(now))
    return swept


def get_retryable_issues(conn: Any, now: datetime) -> list[Issue]:
    cursor = conn.execute(
        f"""
        SELECT {ISSUE_COLUMNS}
        FROM cron_issues
        WHERE status IN (?, ?)
          AND auto_fixable = 1
          AND retry_count < max_retries
          AND (next_retry_at IS NULL OR next_retry_at <= ?)
        ORDER BY issue_type, created_at, seq
        """,
        (
            RETRYABLE_STATUSES[0].value,
            RETRYABLE_STATUSES[1].value,
            to_iso(now),
        ),
    )
    return [_row_to_issue(row) for row in cursor.fetchall()]


def mark_retrying(conn: Any, issue_id: str, now: datetime) -> None:
    conn.execute(
        "UPDATE cron_issues SET status = ?, fix_attempted_at = ? WHERE id = ?",
        (IssueStatus.RETRYING.value, to_iso(now), issue_id),
    )
    conn.commit()


def record_outcome(
    conn: Any,
    issue: Issue,
    outcome: FixOutcome,
    policy: FixerPolicy,
    now: datetime,
) -> IssueStatus:
    """Apply the result of one attempt and return the issue's new status."""
    new_count = issue.retry_count + 1
    if outcome.success:
        conn.execute(
            """
            UPDATE cron_issues
            SET status = ?, retry_count = ?, fix_result = ?, resolved_at = ?
            WHERE id = ?
            """,
            (IssueStatus.RESOLVED.value, new_count, outcome.message, to_iso(now), issue.id),
        )
        conn.commit()
        return IssueStatus.RESOLVED
    if new_count < issue.max_retries:
        next_retry_at = now + timedelta(minutes=policy.backoff_for(new_count))
        conn.execute(
            """
            UPDATE cron_issues
            SET status = ?, retry_count = ?, fix_result = ?, next_retry_at = ?
            WHERE id = ?
            """,
            (IssueStatus.OPEN.value, new_count, outcome.message, to_iso(next_retry_at), issue.id),
        )
        conn.commit()
        return IssueStatus.OPEN
    conn.execute(
        """
        UPDATE cron_issues
        SET status = ?, retry_count = ?, fix_result = ?
        WHERE id = ?
        """,
        (IssueStatus.NEEDS_MANUAL.value, new_count, outcome.message, issue.id),
    )
    conn.commit()
    return IssueStatus.NEEDS_MANUAL


def reset_issue(conn: Any, issue_id: str, reset_retries: bool, now: datetime) -> Issue:
    issue = require_issue(conn, issue_id)
    if issue.status != IssueStatus.NEEDS_MANUAL:
        raise IssueStateError(f"issue {issue_id} is {issue.status.value}, not needs_manual")
    _reopen(conn, issue, reset_retries, now)
    log_event(
        logger,
        logging.INFO,
        "issue_reset",
        issue_id=issue_id,
        reset_retries=reset_retries,
    )
    return require_issue(conn, issue_id)


def force_retry(conn: Any, issue_id: str, now: datetime) -> Issue:
    issue = require_issue(conn, issue_id)
    if issue.status == IssueStatus.RESOLVED:
        raise IssueStateError(f"issue {issue_id} is already resolved")
    _reopen(conn, issue, False, now)
    log_event(logger, logging.INFO, "issue_force_retry", issue_id=issue_id)
    return require_issue(conn, issue_id)


def mark_resolved(
    conn: Any, issue_id: str, now: datetime, resolution: str = "Manually resolved"
) -> Issue:
    issue = require_issue(conn, issue_id)
    if issue.status == IssueStatus.RESOLVED:
        return issue
    conn.execute(
        "UPDATE cron_issues SET status = ?, fix_result = ?, resolved_at = ? WHERE id = ?",
        (IssueStatus.RESOLVED.value, resolution, to_iso(now), issue_id),
    )
    conn.commit()
    log_event(logger, logging.INFO, "issue_resolved_manually", issue_id=issue_id)
    return require_issue(conn, issue_id)


def _reopen(conn: Any, issue: Issue, reset_retries: bool, now: datetime) -> None:
    retry_count = 0 if reset_retries else issue.retry_count
    # An exhausted issue reopened without a reset gets exactly one more attempt.
    max_retries = max(issue.max_retries, retry_count + 1)
    conn.execute(
        """
        UPDATE cron_issues
        SET status = ?, retry_count = ?, max_retries = ?, next_retry_at = ?
        WHERE id = ?
        """,
        (IssueStatus.OPEN.value, retry_count, max_retries, to_iso(now), issue.id),
    )
    conn.commit()


def _row_to_issue(row: tuple) -> Issue:
    (
        issue_id,
        issue_type,
        subject_ref,
        scope_ref,
        description,
        dedup_key,
        status,
        retry_count,
        max_retries,
        next_retry_at,
        auto_fixable,
        fix_attempted_at,
        fix_result,
        created_at,
        resolved_at,
    ) = row
    kind = IssueType(issue_type)
    try:
        decoded = decode_description(kind, description)
    except DescriptionError as exc:
        log_event(logger, logging.WARNING, "issue_description_invalid", issue_id=issue_id, error=exc)
        decoded = TextDescription(text=description or "")
    return Issue(
        id=issue_id,
        issue_type=kind,
        subject_ref=subject_ref,
        scope_ref=scope_ref,
        description=decoded,
        dedup_key=dedup_key,
        status=IssueStatus(status),
        retry_count=int(retry_count),
        max_retries=int(max_retries),
        next_retry_at=parse_iso_or_none(next_retry_at),
        auto_fixable=bool(auto_fixable),
        fix_attempted_at=parse_iso_or_none(fix_attempted_at),
        fix_result=fix_result,
        created_at=parse_iso(created_at),
        resolved_at=parse_iso_or_none(resolved_at),
    )
