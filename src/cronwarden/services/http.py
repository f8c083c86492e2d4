from __future__ import annotations

import json
import os
import urllib.error
import urllib.request
from typing import Any

from ..security.secrets import master_key_configured
from ..storage import load_service_secret


class ServiceError(ValueError):
    pass


def http_json_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: float,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise ServiceError(f"http_error {exc.code}: {raw[:500]}") from exc
    except urllib.error.URLError as exc:
        raise ServiceError(f"network_error: {exc}") from exc
    except TimeoutError as exc:
        raise ServiceError("network_error: timed out") from exc
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
    if not isinstance(parsed, dict):
        return {"data": parsed}
    return parsed


def join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def auth_headers(api_key: str | None) -> dict[str, str]:
    if not api_key:
        return {}
    return {"Authorization": f"Bearer {api_key}"}


def resolve_api_key(conn, name: str, env_var: str) -> str | None:
    """Stored encrypted secret first, then the environment."""
    if conn is not None and master_key_configured():
        secret = load_service_secret(conn, name)
        if secret:
            return secret
    return os.environ.get(env_var) or None
