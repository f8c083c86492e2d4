from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from uuid import UUID

import json
from pydantic import BaseModel

from cronwarden.models import DeliveryDiagnosis, IssueStatus
from cronwarden.recorder import finish_execution, get_execution, start_execution
from cronwarden.utils import json_dumps


class Color(Enum):
    RED = "red"


@dataclass
class Payload:
    value: str


class PayloadModel(BaseModel):
    name: str


def test_json_dumps_handles_supported_types():
    payload = {
        "dataclass": Payload(value="ok"),
        "diagnosis": DeliveryDiagnosis(
            recipient_id="rcp-1",
            email="reader@example.com",
            source="profile",
            cause="no_scopes",
            details="no scopes selected",
            auto_fixable=False,
        ),
        "enum": Color.RED,
        "status": IssueStatus.NEEDS_MANUAL,
        "datetime": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "date": date(2025, 1, 2),
        "path": Path("/tmp/cronwarden"),
        "uuid": UUID("12345678-1234-5678-1234-567812345678"),
        "model": PayloadModel(name="example"),
        "set": {"a", "b"},
        "tuple": ("x", "y"),
    }
    encoded = json_dumps(payload)
    decoded = json.loads(encoded)
    assert decoded["dataclass"]["value"] == "ok"
    assert decoded["diagnosis"]["cause"] == "no_scopes"
    assert decoded["enum"] == "red"
    assert decoded["status"] == "needs_manual"
    assert decoded["datetime"].startswith("2025-01-01T00:00:00")
    assert decoded["date"] == "2025-01-02"
    assert decoded["path"] == "/tmp/cronwarden"
    assert decoded["uuid"] == "12345678-1234-5678-1234-567812345678"
    assert decoded["model"]["name"] == "example"
    assert sorted(decoded["set"]) == ["a", "b"]
    assert decoded["tuple"] == ["x", "y"]


def test_execution_response_data_handles_complex_types(conn, clock):
    handle = start_execution(conn, "monitor-and-fix", "scheduler", clock.now())
    response = {
        "payload": Payload(value="ok"),
        "status": Color.RED,
        "when": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "path": Path("/tmp/cronwarden"),
        "model": PayloadModel(name="example"),
        "tuple": ("x", "y"),
    }
    assert finish_execution(conn, handle, True, [], response, clock.now()) is True

    record = get_execution(conn, handle.id)
    assert record.response_data["payload"] == {"value": "ok"}
    assert record.response_data["status"] == "red"
    assert record.response_data["tuple"] == ["x", "y"]
