from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from cronwarden.config import default_config
from cronwarden.storage import init_db

START = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.current = now
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    for name in (
        "CW_CONFIG_PATH",
        "CW_DB_URL",
        "CW_ADMIN_TOKEN",
        "CW_CRON_SECRET",
        "CW_TRUST_SCHEDULER_HEADER",
        "CW_ADMIN_EMAIL",
        "CW_MASTER_KEY",
        "CW_KEY_ID",
        "CW_GENERATION_API_KEY",
        "CW_DELIVERY_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CW_DATA_DIR", str(tmp_path / "data"))


@pytest.fixture
def conn(tmp_path):
    connection = init_db(str(tmp_path / "state.sqlite3"))
    yield connection
    connection.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return default_config()
