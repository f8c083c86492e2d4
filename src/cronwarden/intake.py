from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from .db import is_integrity_error
from .descriptions import dedup_key
from .ledger import active_dedup_keys, insert_issue
from .models import IssueCandidate
from .utils import log_event

logger = logging.getLogger("cronwarden.intake")


def candidate_key(candidate: IssueCandidate) -> str:
    return dedup_key(
        candidate.issue_type,
        candidate.subject_ref,
        candidate.scope_ref,
        candidate.description,
    )


def create_issues(conn: Any, candidates: Iterable[IssueCandidate], now: datetime) -> int:
    """Insert the candidates that have no active issue yet.

    An existing open, retrying or needs_manual issue with the same dedup key
    blocks creation; its retry history is never touched.
    """
    keyed: list[tuple[str, IssueCandidate]] = []
    seen: set[str] = set()
    for candidate in candidates:
        key = candidate_key(candidate)
        if key in seen:
            continue
        seen.add(key)
        keyed.append((key, candidate))
    if not keyed:
        return 0

    existing = active_dedup_keys(conn, [key for key, _ in keyed])
    created = 0
    for key, candidate in keyed:
        if key in existing:
            continue
        try:
            issue_id = insert_issue(conn, candidate, key, now)
        except Exception as exc:
            if not is_integrity_error(exc):
                raise
            conn.rollback()
            log_event(logger, logging.DEBUG, "issue_insert_conflict", dedup_key=key)
            continue
        created += 1
        log_event(
            logger,
            logging.INFO,
            "issue_created",
            issue_id=issue_id,
            issue_type=candidate.issue_type.value,
            dedup_key=key,
        )
    return created
