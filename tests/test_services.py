import base64

import pytest

from cronwarden.services.delivery import DeliveryRef, HttpDeliveryService
from cronwarden.services.generation import GenerationRequest, HttpGenerationService
from cronwarden.services.http import resolve_api_key
from cronwarden.storage import set_service_secret


def _capture(monkeypatch, module, response):
    calls = []

    def _fake(method, url, headers, payload, timeout):
        calls.append({"method": method, "url": url, "headers": headers, "payload": payload, "timeout": timeout})
        return response

    monkeypatch.setattr(f"cronwarden.services.{module}.http_json_request", _fake)
    return calls


def test_api_key_falls_back_to_env(conn, monkeypatch):
    monkeypatch.setenv("CW_GENERATION_API_KEY", "env-key")
    assert resolve_api_key(conn, "generation", "CW_GENERATION_API_KEY") == "env-key"


def test_stored_secret_wins_over_env(conn, monkeypatch):
    monkeypatch.setenv("CW_MASTER_KEY", base64.urlsafe_b64encode(b"k" * 32).decode("utf-8"))
    monkeypatch.setenv("CW_GENERATION_API_KEY", "env-key")
    set_service_secret(conn, "generation", "stored-key")
    assert resolve_api_key(conn, "generation", "CW_GENERATION_API_KEY") == "stored-key"


def test_batch_timeout_is_capped_by_budget(monkeypatch):
    calls = _capture(
        monkeypatch,
        "generation",
        {"completed": ["scope-1"], "failed": [], "stopped_early": True},
    )
    service = HttpGenerationService("http://gen.local/", "key", timeout_seconds=60)

    result = service.generate_batch(["scope-1", "scope-2"], remaining_budget_ms=4500)

    assert calls[0]["url"] == "http://gen.local/generate/briefs"
    assert calls[0]["timeout"] == 4.5
    assert calls[0]["headers"] == {"Authorization": "Bearer key"}
    assert result.completed == ["scope-1"]
    assert result.stopped_early is True


def test_short_budget_is_not_rounded_up(monkeypatch):
    calls = _capture(monkeypatch, "generation", {"completed": [], "failed": ["scope-1"]})
    service = HttpGenerationService("http://gen.local", None, timeout_seconds=60)

    service.generate_batch(["scope-1"], remaining_budget_ms=200)

    assert calls[0]["timeout"] == 0.2


def test_exhausted_budget_makes_no_call(monkeypatch):
    calls = _capture(monkeypatch, "generation", {})
    service = HttpGenerationService("http://gen.local", None, timeout_seconds=60)

    result = service.generate_batch(["scope-1", "scope-2"], remaining_budget_ms=0)

    assert calls == []
    assert result.failed == ["scope-1", "scope-2"]
    assert result.stopped_early is True


def test_empty_batch_makes_no_call(monkeypatch):
    calls = _capture(monkeypatch, "generation", {})
    service = HttpGenerationService("http://gen.local", None, timeout_seconds=60)
    result = service.generate_batch([], remaining_budget_ms=1000)
    assert calls == []
    assert result.completed == [] and result.failed == []


def test_generate_rejects_unknown_kind():
    service = HttpGenerationService("http://gen.local", None, timeout_seconds=60)
    with pytest.raises(ValueError):
        service.generate(GenerationRequest(kind="video"))


def test_redeliver_reports_errors(monkeypatch):
    _capture(monkeypatch, "delivery", {"emails_sent": 0, "errors": ["mailbox full"]})
    service = HttpDeliveryService("http://mail.local", None, timeout_seconds=30)
    result = service.redeliver(DeliveryRef(recipient_id="rcp-1", email="a@example.com"))
    assert result.success is False
    assert result.message == "mailbox full"
