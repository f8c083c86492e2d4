from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("cronwarden.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_content_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scopes (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            city TEXT NULL,
            timezone TEXT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id TEXT PRIMARY KEY,
            scope_id TEXT NULL REFERENCES scopes(id),
            headline TEXT NOT NULL,
            body_text TEXT NULL,
            image_url TEXT NULL,
            status TEXT NOT NULL DEFAULT 'published',
            author_type TEXT NULL,
            category_label TEXT NULL,
            editor_notes TEXT NULL,
            published_at TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_created_at ON articles(created_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_scope_id ON articles(scope_id)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS briefs (
            id TEXT PRIMARY KEY,
            scope_id TEXT NOT NULL REFERENCES scopes(id),
            content TEXT NULL,
            enriched_content TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_briefs_scope_created ON briefs(scope_id, created_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS recipients (
            id TEXT PRIMARY KEY,
            email TEXT NULL,
            source TEXT NOT NULL DEFAULT 'profile',
            timezone TEXT NULL,
            daily_email_enabled INTEGER NOT NULL DEFAULT 1,
            scope_ids_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS delivery_sends (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            recipient_id TEXT NOT NULL,
            send_date TEXT NOT NULL,
            sent_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_delivery_sends_date ON delivery_sends(send_date)"
    )


def _migration_monitoring_tables(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cron_executions (
            id TEXT PRIMARY KEY,
            job_name TEXT NOT NULL,
            started_at TEXT NOT NULL,
            completed_at TEXT NULL,
            success INTEGER NOT NULL DEFAULT 0,
            errors_json TEXT NOT NULL DEFAULT '[]',
            response_data_json TEXT NULL,
            triggered_by TEXT NOT NULL DEFAULT 'scheduler'
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_cron_executions_job_name ON cron_executions(job_name)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_cron_executions_started_at ON cron_executions(started_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cron_issues (
            id TEXT PRIMARY KEY,
            issue_type TEXT NOT NULL,
            subject_ref TEXT NULL,
            scope_ref TEXT NULL,
            description TEXT NOT NULL,
            dedup_key TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'open',
            retry_count INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,
            next_retry_at TEXT NULL,
            auto_fixable INTEGER NOT NULL DEFAULT 1,
            fix_attempted_at TEXT NULL,
            fix_result TEXT NULL,
            created_at TEXT NOT NULL,
            resolved_at TEXT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_cron_issues_status ON cron_issues(status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_cron_issues_type ON cron_issues(issue_type)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_cron_issues_next_retry ON cron_issues(next_retry_at)"
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_cron_issues_active_key
        ON cron_issues(dedup_key)
        WHERE status IN ('open', 'retrying', 'needs_manual')
        """
    )


def _migration_service_secrets(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS service_secrets (
            name TEXT PRIMARY KEY,
            key_id TEXT NOT NULL,
            secret_enc TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _migration_issue_sequence(conn: sqlite3.Connection) -> None:
    # Issues created in one intake share created_at; seq keeps insertion order.
    conn.execute("ALTER TABLE cron_issues ADD COLUMN seq INTEGER NOT NULL DEFAULT 0")
    conn.execute("UPDATE cron_issues SET seq = rowid")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_cron_issues_seq ON cron_issues(seq)")


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_content_schema", _migration_content_schema),
        ("002_monitoring_tables", _migration_monitoring_tables),
        ("003_service_secrets", _migration_service_secrets),
        ("004_issue_sequence", _migration_issue_sequence),
    ]
