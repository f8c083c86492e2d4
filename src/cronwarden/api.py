from __future__ import annotations

import hmac
import logging
import os
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .clock import SystemClock
from .config import (
    DEFAULT_CONFIG,
    Config,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    load_config,
    load_runtime_config,
    set_runtime_config,
)
from .health import check_daily_health
from .ledger import (
    IssueNotFoundError,
    IssueStateError,
    count_issues_by_status,
    force_retry,
    get_issue,
    list_issues,
    mark_resolved,
    reset_issue,
)
from .monitor import run_monitor
from .recorder import list_executions, record_failed_run
from .security.secrets import SecretsError
from .services.delivery import SECRET_NAME as DELIVERY_SECRET
from .services.generation import SECRET_NAME as GENERATION_SECRET
from .storage import has_service_secret, init_db, set_service_secret
from .utils import configure_logging, log_event

app = FastAPI(title="cronwarden")
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

SCHEDULER_HEADER = "x-scheduler-cron"
SERVICE_NAMES = {GENERATION_SECRET, DELIVERY_SECRET}

logger = logging.getLogger("cronwarden.api")


class ResetRequest(BaseModel):
    reset_retries: bool = False


class ResolveRequest(BaseModel):
    resolution: str = "Manually resolved"


class RuntimeConfigRequest(BaseModel):
    config: dict


class ServiceSecretRequest(BaseModel):
    api_key: str


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("CW_ADMIN_TOKEN")
    if not token:
        return
    header = request.headers.get("X-Admin-Token")
    if not header or not hmac.compare_digest(header, token):
        raise HTTPException(status_code=401, detail="unauthorized")


def _require_scheduler(request: Request) -> None:
    if not _is_scheduler(request):
        log_event(logger, logging.WARNING, "trigger_rejected", path=request.url.path)
        raise HTTPException(status_code=401, detail="unauthorized")


def _is_scheduler(request: Request) -> bool:
    secret = os.environ.get("CW_CRON_SECRET")
    auth = request.headers.get("Authorization") or ""
    if secret and hmac.compare_digest(auth, f"Bearer {secret}"):
        return True
    if _env_flag("CW_TRUST_SCHEDULER_HEADER") and request.headers.get(SCHEDULER_HEADER) == "1":
        return True
    return False


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _get_conn():
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


def _load_run_config(conn) -> Config:
    if os.environ.get("CW_CONFIG_PATH"):
        return load_config()
    return load_runtime_config(conn)


@app.on_event("startup")
def _startup() -> None:
    configure_logging("cronwarden.api")


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "cronwarden"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


cron_router = APIRouter(prefix="/api/cron", dependencies=[Depends(_require_scheduler)])


@cron_router.api_route("/monitor-and-fix", methods=["GET", "POST"])
def monitor_and_fix():
    conn = _get_conn()
    try:
        config = _load_run_config(conn)
    except ConfigError as exc:
        return _config_failure(conn, DEFAULT_CONFIG["monitor"]["job_name"], exc)
    result = run_monitor(conn, config)
    status = 200 if result.success else 500
    return JSONResponse(status_code=status, content=result.to_dict())


@cron_router.api_route("/check-daily-health", methods=["GET", "POST"])
def daily_health():
    conn = _get_conn()
    try:
        config = _load_run_config(conn)
    except ConfigError as exc:
        return _config_failure(conn, DEFAULT_CONFIG["monitor"]["health_job_name"], exc)
    report = check_daily_health(conn, config)
    status = 200 if report.success else 500
    return JSONResponse(status_code=status, content=report.to_dict())


def _config_failure(conn, job_name: str, exc: ConfigError) -> JSONResponse:
    message = f"ConfigError: {exc}"
    execution_id = record_failed_run(conn, job_name, "scheduler", message, SystemClock())
    log_event(logger, logging.ERROR, "trigger_config_invalid", job=job_name, error=exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "execution_id": execution_id, "error": message},
    )


admin_router = APIRouter(prefix="/admin", dependencies=[Depends(_require_admin_token)])


@admin_router.get("/issues")
def issues_list(
    status: str | None = None,
    issue_type: str | None = None,
    limit: int = 100,
):
    conn = _get_conn()
    limit = max(1, min(limit, 500))
    return {
        "items": list_issues(conn, status=status, issue_type=issue_type, limit=limit),
        "counts": count_issues_by_status(conn),
    }


@admin_router.get("/issues/{issue_id}")
def issues_read(issue_id: str):
    conn = _get_conn()
    issue = get_issue(conn, issue_id)
    if issue is None:
        raise HTTPException(status_code=404, detail="issue_not_found")
    return issue


@admin_router.post("/issues/{issue_id}/reset")
def issues_reset(issue_id: str, payload: ResetRequest):
    conn = _get_conn()
    return _manual_operation(
        lambda now: reset_issue(conn, issue_id, payload.reset_retries, now)
    )


@admin_router.post("/issues/{issue_id}/resolve")
def issues_resolve(issue_id: str, payload: ResolveRequest | None = None):
    conn = _get_conn()
    resolution = payload.resolution if payload else ResolveRequest().resolution
    return _manual_operation(lambda now: mark_resolved(conn, issue_id, now, resolution))


@admin_router.post("/issues/{issue_id}/retry")
def issues_retry(issue_id: str):
    conn = _get_conn()
    return _manual_operation(lambda now: force_retry(conn, issue_id, now))


def _manual_operation(operation):
    try:
        return operation(SystemClock().now())
    except IssueNotFoundError as exc:
        raise HTTPException(status_code=404, detail="issue_not_found") from exc
    except IssueStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@admin_router.get("/executions")
def executions_list(job_name: str | None = None, limit: int = 50):
    conn = _get_conn()
    limit = max(1, min(limit, 500))
    return {"items": list_executions(conn, job_name=job_name, limit=limit)}


@admin_router.get("/config/runtime")
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@admin_router.put("/config/runtime")
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@admin_router.put("/services/{name}/secret")
def service_secret_set(name: str, payload: ServiceSecretRequest) -> dict[str, object]:
    if name not in SERVICE_NAMES:
        raise HTTPException(status_code=404, detail="service_not_found")
    if not payload.api_key.strip():
        raise HTTPException(status_code=400, detail="api_key must not be empty")
    conn = _get_conn()
    try:
        set_service_secret(conn, name, payload.api_key.strip())
    except SecretsError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_event(logger, logging.INFO, "service_secret_set", service=name)
    return {"name": name, "configured": has_service_secret(conn, name)}


app.include_router(cron_router)
app.include_router(admin_router)


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("cronwarden")
    except Exception:  # noqa: BLE001
        return "unknown"
