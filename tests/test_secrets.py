import base64

import pytest

from cronwarden.security.secrets import SecretsError, decrypt_secret, encrypt_secret


def _set_master_env(monkeypatch):
    key = base64.urlsafe_b64encode(b"a" * 32).decode("utf-8")
    monkeypatch.setenv("CW_MASTER_KEY", key)
    monkeypatch.setenv("CW_KEY_ID", "v1")


def test_encrypt_decrypt_roundtrip(monkeypatch):
    _set_master_env(monkeypatch)
    key_id, blob = encrypt_secret("supersecret", b"service:generation")
    assert key_id == "v1"
    assert decrypt_secret(blob, b"service:generation") == "supersecret"


def test_encrypt_decrypt_aad_mismatch(monkeypatch):
    _set_master_env(monkeypatch)
    _, blob = encrypt_secret("supersecret", b"service:generation")
    with pytest.raises(Exception):
        decrypt_secret(blob, b"service:delivery")


def test_missing_master_key_is_rejected():
    with pytest.raises(SecretsError):
        encrypt_secret("supersecret", b"service:generation")


def test_short_master_key_is_rejected(monkeypatch):
    monkeypatch.setenv("CW_MASTER_KEY", base64.urlsafe_b64encode(b"short").decode("utf-8"))
    with pytest.raises(SecretsError):
        encrypt_secret("supersecret", b"service:generation")
