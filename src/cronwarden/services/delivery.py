from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from ..utils import log_event
from .http import auth_headers, http_json_request, join_url, resolve_api_key

SECRET_NAME = "delivery"
API_KEY_ENV = "CW_DELIVERY_API_KEY"


@dataclass(frozen=True)
class DeliveryRef:
    recipient_id: str
    email: str


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    message: str


class DeliveryService(Protocol):
    def redeliver(self, ref: DeliveryRef) -> DeliveryResult:
        ...

    def send_report(self, to: str, subject: str, body: str) -> DeliveryResult:
        ...


class HttpDeliveryService:
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
        self._logger = logger or logging.getLogger("cronwarden.services.delivery")

    def redeliver(self, ref: DeliveryRef) -> DeliveryResult:
        response = http_json_request(
            "POST",
            join_url(self.base_url, "/deliveries/daily-brief"),
            auth_headers(self._api_key),
            {"recipient_id": ref.recipient_id, "email": ref.email, "force": True},
            self.timeout_seconds,
        )
        sent = int(response.get("emails_sent") or 0)
        if sent > 0:
            log_event(self._logger, logging.INFO, "delivery_resent", recipient_id=ref.recipient_id)
            return DeliveryResult(success=True, message=f"Email resent to {ref.email}")
        errors = response.get("errors") or []
        message = "; ".join(str(item) for item in errors) or "No email sent"
        return DeliveryResult(success=False, message=message)

    def send_report(self, to: str, subject: str, body: str) -> DeliveryResult:
        response = http_json_request(
            "POST",
            join_url(self.base_url, "/reports"),
            auth_headers(self._api_key),
            {"to": to, "subject": subject, "text": body},
            self.timeout_seconds,
        )
        if response.get("error"):
            return DeliveryResult(success=False, message=str(response["error"]))
        return DeliveryResult(success=True, message=f"Report sent to {to}")


def build_delivery_service(conn, config) -> HttpDeliveryService:
    return HttpDeliveryService(
        base_url=config.services.delivery_base_url,
        api_key=resolve_api_key(conn, SECRET_NAME, API_KEY_ENV),
        timeout_seconds=config.services.timeout_seconds,
    )
