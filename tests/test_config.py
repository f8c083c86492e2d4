import copy

import pytest

from cronwarden.config import (
    DEFAULT_CONFIG,
    ConfigError,
    FixerPolicy,
    bootstrap_runtime_config,
    config_from_dict,
    default_config,
    get_runtime_config,
    load_config,
    load_runtime_config,
    set_runtime_config,
    validate_runtime_config,
)
from cronwarden.models import IssueType


def test_bootstrap_creates_runtime_config(conn):
    cfg = bootstrap_runtime_config(conn)
    assert cfg == DEFAULT_CONFIG


def test_get_runtime_config_after_set(conn):
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["fixers"]["missing_image"]["max_per_run"] = 2
    set_runtime_config(conn, custom)

    assert get_runtime_config(conn)["fixers"]["missing_image"]["max_per_run"] == 2
    assert load_runtime_config(conn).policy_for(IssueType.MISSING_IMAGE).max_per_run == 2


def test_set_runtime_config_rejects_invalid(conn):
    with pytest.raises(ConfigError) as excinfo:
        set_runtime_config(conn, {"app": {"name": "Bad"}})
    assert "Invalid config.runtime" in str(excinfo.value)


def test_default_config_is_valid():
    assert validate_runtime_config(copy.deepcopy(DEFAULT_CONFIG)) == []
    config = default_config()
    assert config.monitor.time_budget_seconds == 100.0
    assert config.max_retries_for(IssueType.JOB_FAILURE) == 3
    assert config.policy_for(IssueType.JOB_FAILURE) is None


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"fixers": {"missing_brief": {"backoff_minutes": [30, 10]}}}, "non-decreasing"),
        ({"fixers": {"missing_brief": {"backoff_minutes": []}}}, "must not be empty"),
        ({"fixers": {"thin_content": {"max_per_run": 0}}}, "max_per_run must be positive"),
        ({"fixers": {"thin_content": {"max_retries": True}}}, "must be an integer"),
        ({"monitor": {"brief_morning_hour": 24}}, "between 0 and 23"),
        ({"monitor": {"time_budget_seconds": 0}}, "time_budget_seconds must be positive"),
        ({"monitor": {"surprise": 1}}, "unknown config.runtime.monitor.surprise"),
    ],
)
def test_config_from_dict_rejects(overrides, message):
    with pytest.raises(ConfigError) as excinfo:
        config_from_dict(overrides)
    assert message in str(excinfo.value)


def test_load_config_from_yaml(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        "monitor:\n"
        "  time_budget_seconds: 45\n"
        "fixers:\n"
        "  missed_email:\n"
        "    max_per_run: 3\n"
        "    backoff_minutes: [5, 10, 20]\n"
    )

    config = load_config(str(path))

    assert config.monitor.time_budget_seconds == 45.0
    policy = config.policy_for(IssueType.MISSED_EMAIL)
    assert policy.max_per_run == 3
    assert policy.delay_seconds == 2.0
    assert config.policy_for(IssueType.MISSING_IMAGE).backoff_minutes == [15, 15, 60]


def test_load_config_uses_env_path(tmp_path, monkeypatch):
    path = tmp_path / "config.yml"
    path.write_text("monitor:\n  thin_content_threshold: 4\n")
    monkeypatch.setenv("CW_CONFIG_PATH", str(path))

    assert load_config().monitor.thin_content_threshold == 4


def test_load_config_errors(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yml"))

    bad = tmp_path / "bad.yml"
    bad.write_text("monitor: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(str(bad))

    scalar = tmp_path / "scalar.yml"
    scalar.write_text("just a string\n")
    with pytest.raises(ConfigError):
        load_config(str(scalar))


def test_backoff_for_clamps_to_last_entry():
    policy = FixerPolicy(max_per_run=1, delay_seconds=0.0, max_retries=5, backoff_minutes=[15, 30, 60])

    assert [policy.backoff_for(count) for count in range(1, 6)] == [15, 30, 60, 60, 60]
