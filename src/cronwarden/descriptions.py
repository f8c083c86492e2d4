"""Encoding of the per-type issue description payloads.

Most issue types carry a plain text description. Missed deliveries carry a
structured diagnosis that the delivery fixer needs to act on, so it is
persisted as JSON and validated on the way back in.
"""

from __future__ import annotations

import json
from typing import Any

import jsonschema

from .models import DeliveryDiagnosis, IssueDescription, IssueType, TextDescription
from .utils import json_dumps, normalize_text

DELIVERY_CAUSES = [
    "missing_timezone",
    "no_scopes",
    "cron_not_run",
    "send_failed",
    "rate_limit_overflow",
    "disabled_by_user",
    "unknown",
]

DELIVERY_DIAGNOSIS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["recipient_id", "email", "source", "cause", "details", "auto_fixable"],
    "properties": {
        "recipient_id": {"type": "string", "minLength": 1},
        "email": {"type": "string"},
        "source": {"type": "string", "enum": ["profile", "newsletter"]},
        "cause": {"type": "string", "enum": DELIVERY_CAUSES},
        "details": {"type": "string"},
        "auto_fixable": {"type": "boolean"},
    },
}

STRUCTURED_TYPES = {IssueType.MISSED_EMAIL}


class DescriptionError(ValueError):
    pass


def encode_description(issue_type: IssueType, description: IssueDescription) -> str:
    if issue_type in STRUCTURED_TYPES:
        if not isinstance(description, DeliveryDiagnosis):
            raise DescriptionError(f"{issue_type.value} requires a DeliveryDiagnosis payload")
        return json_dumps(description)
    if not isinstance(description, TextDescription):
        raise DescriptionError(f"{issue_type.value} requires a text description")
    return description.text


def decode_description(issue_type: IssueType, raw: str | None) -> IssueDescription:
    if issue_type not in STRUCTURED_TYPES:
        return TextDescription(text=raw or "")
    try:
        payload = json.loads(raw or "")
    except json.JSONDecodeError as exc:
        raise DescriptionError("delivery diagnosis is not valid JSON") from exc
    try:
        jsonschema.validate(payload, DELIVERY_DIAGNOSIS_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise DescriptionError(f"invalid delivery diagnosis: {exc.message}") from exc
    return DeliveryDiagnosis(
        recipient_id=payload["recipient_id"],
        email=payload["email"],
        source=payload["source"],
        cause=payload["cause"],
        details=payload["details"],
        auto_fixable=payload["auto_fixable"],
    )


def describe(description: IssueDescription) -> str:
    if isinstance(description, DeliveryDiagnosis):
        return f"{description.email}: {description.cause} ({description.details})"
    return description.text


def dedup_key(
    issue_type: IssueType,
    subject_ref: str | None,
    scope_ref: str | None,
    description: IssueDescription,
) -> str:
    ref = subject_ref or scope_ref
    if ref:
        return f"{issue_type.value}:{ref}"
    return f"{issue_type.value}:{normalize_text(describe(description))}"
