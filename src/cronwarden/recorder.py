from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator

from .clock import Clock, SystemClock
from .models import ExecutionRecord
from .utils import json_dumps, log_event, parse_iso, parse_iso_or_none, to_iso

logger = logging.getLogger("cronwarden.recorder")

MAX_RECORDED_ERRORS = 10

EXECUTION_COLUMNS = """
    id, job_name, started_at, completed_at, success, errors_json,
    response_data_json, triggered_by
"""


@dataclass(frozen=True)
class ExecutionHandle:
    id: str
    job_name: str
    started_at: datetime
    triggered_by: str


@dataclass
class ExecutionRun:
    handle: ExecutionHandle
    success: bool = False
    errors: list[str] = field(default_factory=list)
    response_data: dict[str, Any] | None = None

    def add_error(self, message: str) -> None:
        self.errors.append(message)


def start_execution(
    conn: Any, job_name: str, triggered_by: str, now: datetime
) -> ExecutionHandle:
    handle = ExecutionHandle(
        id=f"exe_{uuid.uuid4().hex}",
        job_name=job_name,
        started_at=now,
        triggered_by=triggered_by,
    )
    conn.execute(
        """
        INSERT INTO cron_executions
            (id, job_name, started_at, completed_at, success, errors_json,
             response_data_json, triggered_by)
        VALUES (?, ?, ?, NULL, 0, '[]', NULL, ?)
        """,
        (handle.id, job_name, to_iso(now), triggered_by),
    )
    conn.commit()
    log_event(logger, logging.INFO, "execution_started", job=job_name, execution_id=handle.id)
    return handle


def finish_execution(
    conn: Any,
    handle: ExecutionHandle,
    success: bool,
    errors: list[str],
    response_data: dict[str, Any] | None,
    now: datetime,
) -> bool:
    """Finalize the record; returns False if it was already finalized."""
    cursor = conn.execute(
        """
        UPDATE cron_executions
        SET completed_at = ?, success = ?, errors_json = ?, response_data_json = ?
        WHERE id = ? AND completed_at IS NULL
        """,
        (
            to_iso(now),
            1 if success else 0,
            json.dumps(list(errors)[:MAX_RECORDED_ERRORS]),
            json_dumps(response_data) if response_data is not None else None,
            handle.id,
        ),
    )
    conn.commit()
    finalized = (cursor.rowcount or 0) > 0
    log_event(
        logger,
        logging.INFO if success else logging.WARNING,
        "execution_finished",
        job=handle.job_name,
        execution_id=handle.id,
        success=success,
        errors=len(errors),
    )
    return finalized


@contextmanager
def recorded_execution(
    conn: Any,
    job_name: str,
    triggered_by: str = "scheduler",
    clock: Clock | None = None,
) -> Iterator[ExecutionRun]:
    """Wrap a job body so its execution record is finalized exactly once."""
    clock = clock or SystemClock()
    handle = start_execution(conn, job_name, triggered_by, clock.now())
    run = ExecutionRun(handle=handle)
    try:
        yield run
    except Exception as exc:
        run.success = False
        run.add_error(f"{type(exc).__name__}: {exc}")
        conn.rollback()
        raise
    finally:
        finish_execution(conn, handle, run.success, run.errors, run.response_data, clock.now())


def get_execution(conn: Any, execution_id: str) -> ExecutionRecord | None:
    row = conn.execute(
        f"SELECT {EXECUTION_COLUMNS} FROM cron_executions WHERE id = ?",
        (execution_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_execution(row)


def list_executions(
    conn: Any,
    job_name: str | None = None,
    started_from: str | None = None,
    started_before: str | None = None,
    success: bool | None = None,
    limit: int = 50,
) -> list[ExecutionRecord]:
    clauses: list[str] = []
    params: list[Any] = []
    if job_name:
        clauses.append("job_name = ?")
        params.append(job_name)
    if started_from:
        clauses.append("started_at >= ?")
        params.append(started_from)
    if started_before:
        clauses.append("started_at < ?")
        params.append(started_before)
    if success is not None:
        clauses.append("success = ?")
        params.append(1 if success else 0)
        # Unfinished runs are not failures yet.
        clauses.append("completed_at IS NOT NULL")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT {EXECUTION_COLUMNS}
        FROM cron_executions
        {where}
        ORDER BY started_at DESC
        LIMIT ?
        """,
        params,
    )
    return [_row_to_execution(row) for row in cursor.fetchall()]


def _row_to_execution(row: tuple) -> ExecutionRecord:
    (
        execution_id,
        job_name,
        started_at,
        completed_at,
        success,
        errors_json,
        response_data_json,
        triggered_by,
    ) = row
    try:
        errors = json.loads(errors_json) if errors_json else []
    except json.JSONDecodeError:
        errors = []
    try:
        response_data = json.loads(response_data_json) if response_data_json else None
    except json.JSONDecodeError:
        response_data = None
    return ExecutionRecord(
        id=execution_id,
        job_name=job_name,
        started_at=parse_iso(started_at),
        completed_at=parse_iso_or_none(completed_at),
        success=bool(success),
        errors=[str(item) for item in errors] if isinstance(errors, list) else [],
        response_data=response_data if isinstance(response_data, dict) else None,
        triggered_by=triggered_by,
    )


def record_failed_run(
    conn: Any, job_name: str, triggered_by: str, message: str, clock: Clock
) -> str:
    """Write a finalized failed record for a run that could not start its body."""
    handle = start_execution(conn, job_name, triggered_by, clock.now())
    finish_execution(conn, handle, False, [message], None, clock.now())
    return handle.id
