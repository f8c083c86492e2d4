from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("cronwarden.migrations")
    conn.execute("BEGIN")
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
    if "pg_bootstrap_001" not in applied:
        _bootstrap_schema(conn)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            ("pg_bootstrap_001", utc_now_iso()),
        )
        conn.commit()
        logger.info("migration_applied version=pg_bootstrap_001")
        conn.execute("BEGIN")
    if "pg_service_secrets_002" not in applied:
        _migrate_service_secrets(conn)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            ("pg_service_secrets_002", utc_now_iso()),
        )
        conn.commit()
        logger.info("migration_applied version=pg_service_secrets_002")
        conn.execute("BEGIN")
    if "pg_issue_sequence_003" not in applied:
        _migrate_issue_sequence(conn)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            ("pg_issue_sequence_003", utc_now_iso()),
        )
        conn.commit()
        logger.info("migration_applied version=pg_issue_sequence_003")
    else:
        conn.commit()


def _bootstrap_schema(conn) -> None:
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
    conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_created_at ON articles(created_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_scope_id ON articles(scope_id)")
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
            id BIGSERIAL PRIMARY KEY,
            recipient_id TEXT NOT NULL,
            send_date TEXT NOT NULL,
            sent_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_delivery_sends_date ON delivery_sends(send_date)"
    )
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


def _migrate_service_secrets(conn) -> None:
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


def _migrate_issue_sequence(conn) -> None:
    conn.execute("ALTER TABLE cron_issues ADD COLUMN IF NOT EXISTS seq BIGINT NOT NULL DEFAULT 0")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_cron_issues_seq ON cron_issues(seq)")
