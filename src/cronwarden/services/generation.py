"""Client for the content generation collaborator.

The service owns the AI calls. The monitor only asks it for an image for an
article, a handful of news stories for a scope, or a batch of briefs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..utils import log_event
from .http import ServiceError, auth_headers, http_json_request, join_url, resolve_api_key

GENERATION_KINDS = {"image", "news"}
SECRET_NAME = "generation"
API_KEY_ENV = "CW_GENERATION_API_KEY"


@dataclass(frozen=True)
class GenerationRequest:
    kind: str
    subject_ref: str | None = None
    scope_ref: str | None = None
    count: int = 1
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationResult:
    success: bool
    message: str
    items: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class BatchGenerationResult:
    completed: list[str]
    failed: list[str]
    stopped_early: bool
    message: str = ""


class GenerationService(Protocol):
    def generate(self, request: GenerationRequest) -> GenerationResult:
        ...

    def generate_batch(
        self, scope_refs: list[str], remaining_budget_ms: int
    ) -> BatchGenerationResult:
        ...


class HttpGenerationService:
    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        timeout_seconds: float,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url
        self._api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._logger = logger or logging.getLogger("cronwarden.services.generation")

    def generate(self, request: GenerationRequest) -> GenerationResult:
        if request.kind not in GENERATION_KINDS:
            raise ValueError(f"unsupported generation kind: {request.kind}")
        payload = {
            "kind": request.kind,
            "subject_ref": request.subject_ref,
            "scope_ref": request.scope_ref,
            "count": request.count,
            "context": request.context,
        }
        response = http_json_request(
            "POST",
            join_url(self.base_url, "/generate"),
            auth_headers(self._api_key),
            payload,
            self.timeout_seconds,
        )
        items = response.get("items") or []
        if not isinstance(items, list):
            raise ServiceError("generation response items must be a list")
        success = bool(response.get("success"))
        message = str(response.get("message") or response.get("error") or "")
        if not message:
            message = f"generated {len(items)} {request.kind} item(s)" if success else "nothing generated"
        log_event(
            self._logger,
            logging.DEBUG,
            "generation_response",
            kind=request.kind,
            success=success,
            items=len(items),
        )
        return GenerationResult(success=success, message=message, items=items)

    def generate_batch(
        self, scope_refs: list[str], remaining_budget_ms: int
    ) -> BatchGenerationResult:
        if not scope_refs:
            return BatchGenerationResult(completed=[], failed=[], stopped_early=False)
        if remaining_budget_ms <= 0:
            return BatchGenerationResult(
                completed=[], failed=list(scope_refs), stopped_early=True, message="no budget left"
            )
        # The HTTP call must not outlive the caller's budget.
        timeout = min(float(self.timeout_seconds), remaining_budget_ms / 1000.0)
        response = http_json_request(
            "POST",
            join_url(self.base_url, "/generate/briefs"),
            auth_headers(self._api_key),
            {"scope_refs": scope_refs, "budget_ms": remaining_budget_ms},
            timeout,
        )
        return BatchGenerationResult(
            completed=[str(item) for item in response.get("completed") or []],
            failed=[str(item) for item in response.get("failed") or []],
            stopped_early=bool(response.get("stopped_early")),
            message=str(response.get("message") or ""),
        )


def build_generation_service(conn, config) -> HttpGenerationService:
    return HttpGenerationService(
        base_url=config.services.generation_base_url,
        api_key=resolve_api_key(conn, SECRET_NAME, API_KEY_ENV),
        timeout_seconds=config.services.timeout_seconds,
    )
