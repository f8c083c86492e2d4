from __future__ import annotations

import json
import uuid
from typing import Any, Iterable

from .db import connect_db
from .models import Article, Recipient, Scope
from .security.secrets import decrypt_secret, encrypt_secret, service_aad
from .utils import json_dumps, utc_now_iso


def init_db(path: str | None = None):
    if path is None:
        from .config import get_state_db_path

        path = get_state_db_path()
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def upsert_scope(
    conn: Any,
    scope_id: str,
    name: str,
    city: str | None = None,
    timezone: str | None = None,
    is_active: bool = True,
) -> None:
    conn.execute(
        """
        INSERT INTO scopes (id, name, city, timezone, is_active, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name=excluded.name,
            city=excluded.city,
            timezone=excluded.timezone,
            is_active=excluded.is_active
        """,
        (scope_id, name, city, timezone, 1 if is_active else 0, utc_now_iso()),
    )
    conn.commit()


def get_scope(conn: Any, scope_id: str) -> Scope | None:
    row = conn.execute(
        "SELECT id, name, city, timezone, is_active FROM scopes WHERE id = ?",
        (scope_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_scope(row)


def list_active_scopes(conn: Any) -> list[Scope]:
    cursor = conn.execute(
        """
        SELECT id, name, city, timezone, is_active
        FROM scopes
        WHERE is_active = 1
        ORDER BY id
        """
    )
    return [_row_to_scope(row) for row in cursor.fetchall()]


def insert_article(
    conn: Any,
    scope_id: str | None,
    headline: str,
    body_text: str | None = None,
    image_url: str | None = None,
    status: str = "published",
    author_type: str | None = None,
    category_label: str | None = None,
    editor_notes: str | None = None,
    published_at: str | None = None,
    created_at: str | None = None,
) -> str:
    article_id = f"art_{uuid.uuid4().hex}"
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO articles
            (id, scope_id, headline, body_text, image_url, status, author_type,
             category_label, editor_notes, published_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            article_id,
            scope_id,
            headline,
            body_text,
            image_url,
            status,
            author_type,
            category_label,
            editor_notes,
            published_at or now,
            created_at or now,
        ),
    )
    conn.commit()
    return article_id


def list_published_articles_since(conn: Any, since: str, limit: int) -> list[Article]:
    cursor = conn.execute(
        """
        SELECT id, scope_id, headline, body_text, image_url, status, published_at, created_at
        FROM articles
        WHERE status = 'published' AND created_at >= ?
        ORDER BY created_at DESC
        LIMIT ?
        """,
        (since, limit),
    )
    return [_row_to_article(row) for row in cursor.fetchall()]


def count_published_articles_by_scope(conn: Any, since: str) -> dict[str, int]:
    cursor = conn.execute(
        """
        SELECT scope_id, COUNT(*)
        FROM articles
        WHERE status = 'published' AND scope_id IS NOT NULL AND published_at >= ?
        GROUP BY scope_id
        """,
        (since,),
    )
    return {row[0]: int(row[1]) for row in cursor.fetchall()}


def insert_brief(
    conn: Any,
    scope_id: str,
    content: str | None = None,
    enriched_content: str | None = None,
    created_at: str | None = None,
) -> str:
    brief_id = f"brf_{uuid.uuid4().hex}"
    conn.execute(
        """
        INSERT INTO briefs (id, scope_id, content, enriched_content, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (brief_id, scope_id, content, enriched_content, created_at or utc_now_iso()),
    )
    conn.commit()
    return brief_id


def list_brief_times_since(conn: Any, since: str) -> dict[str, list[str]]:
    cursor = conn.execute(
        "SELECT scope_id, created_at FROM briefs WHERE created_at >= ? ORDER BY created_at",
        (since,),
    )
    by_scope: dict[str, list[str]] = {}
    for scope_id, created_at in cursor.fetchall():
        by_scope.setdefault(scope_id, []).append(created_at)
    return by_scope


def list_scope_ids_with_briefs_since(
    conn: Any, scope_ids: Iterable[str], since: str
) -> set[str]:
    wanted = list(dict.fromkeys(scope_ids))
    if not wanted:
        return set()
    placeholders = ", ".join("?" for _ in wanted)
    cursor = conn.execute(
        f"""
        SELECT DISTINCT scope_id
        FROM briefs
        WHERE created_at >= ? AND scope_id IN ({placeholders})
        """,
        (since, *wanted),
    )
    return {row[0] for row in cursor.fetchall()}


def upsert_recipient(
    conn: Any,
    recipient_id: str,
    email: str | None,
    source: str = "profile",
    timezone: str | None = None,
    daily_email_enabled: bool = True,
    scope_ids: list[str] | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO recipients
            (id, email, source, timezone, daily_email_enabled, scope_ids_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            email=excluded.email,
            source=excluded.source,
            timezone=excluded.timezone,
            daily_email_enabled=excluded.daily_email_enabled,
            scope_ids_json=excluded.scope_ids_json
        """,
        (
            recipient_id,
            email,
            source,
            timezone,
            1 if daily_email_enabled else 0,
            json.dumps(scope_ids or []),
            utc_now_iso(),
        ),
    )
    conn.commit()


def get_recipient(conn: Any, recipient_id: str) -> Recipient | None:
    row = conn.execute(
        """
        SELECT id, email, source, timezone, daily_email_enabled, scope_ids_json
        FROM recipients
        WHERE id = ?
        """,
        (recipient_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_recipient(row)


def list_delivery_recipients(conn: Any) -> list[Recipient]:
    cursor = conn.execute(
        """
        SELECT id, email, source, timezone, daily_email_enabled, scope_ids_json
        FROM recipients
        WHERE daily_email_enabled = 1 AND email IS NOT NULL AND email != ''
        ORDER BY id
        """
    )
    return [_row_to_recipient(row) for row in cursor.fetchall()]


def set_recipient_timezone(conn: Any, recipient_id: str, timezone: str) -> bool:
    cursor = conn.execute(
        "UPDATE recipients SET timezone = ? WHERE id = ?",
        (timezone, recipient_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def record_delivery_send(
    conn: Any, recipient_id: str, send_date: str, sent_at: str | None = None
) -> None:
    conn.execute(
        "INSERT INTO delivery_sends (recipient_id, send_date, sent_at) VALUES (?, ?, ?)",
        (recipient_id, send_date, sent_at or utc_now_iso()),
    )
    conn.commit()


def list_sent_recipient_ids(conn: Any, send_date: str) -> set[str]:
    cursor = conn.execute(
        "SELECT DISTINCT recipient_id FROM delivery_sends WHERE send_date = ?",
        (send_date,),
    )
    return {row[0] for row in cursor.fetchall()}


def set_service_secret(conn: Any, name: str, api_key: str) -> None:
    key_id, secret_enc = encrypt_secret(api_key, service_aad(name))
    conn.execute(
        """
        INSERT INTO service_secrets (name, key_id, secret_enc, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(name) DO UPDATE SET
            key_id=excluded.key_id,
            secret_enc=excluded.secret_enc,
            updated_at=excluded.updated_at
        """,
        (name, key_id, secret_enc, utc_now_iso()),
    )
    conn.commit()


def load_service_secret(conn: Any, name: str) -> str | None:
    row = conn.execute(
        "SELECT secret_enc FROM service_secrets WHERE name = ?",
        (name,),
    ).fetchone()
    if not row:
        return None
    return decrypt_secret(row[0], service_aad(name))


def has_service_secret(conn: Any, name: str) -> bool:
    row = conn.execute("SELECT 1 FROM service_secrets WHERE name = ?", (name,)).fetchone()
    return row is not None


def _row_to_scope(row: tuple) -> Scope:
    scope_id, name, city, timezone, is_active = row
    return Scope(
        id=scope_id,
        name=name,
        city=city,
        timezone=timezone,
        is_active=bool(is_active),
    )


def _row_to_article(row: tuple) -> Article:
    (
        article_id,
        scope_id,
        headline,
        body_text,
        image_url,
        status,
        published_at,
        created_at,
    ) = row
    return Article(
        id=article_id,
        scope_id=scope_id,
        headline=headline or "",
        body_text=body_text,
        image_url=image_url,
        status=status,
        published_at=published_at,
        created_at=created_at,
    )


def _row_to_recipient(row: tuple) -> Recipient:
    recipient_id, email, source, timezone, enabled, scope_ids_json = row
    try:
        scope_ids = json.loads(scope_ids_json) if scope_ids_json else []
    except json.JSONDecodeError:
        scope_ids = []
    if not isinstance(scope_ids, list):
        scope_ids = []
    return Recipient(
        id=recipient_id,
        email=email,
        source=source,
        timezone=timezone,
        daily_email_enabled=bool(enabled),
        scope_ids=[str(item) for item in scope_ids],
    )
