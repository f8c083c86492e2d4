from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .models import IssueType
from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class ServicesConfig:
    generation_base_url: str
    delivery_base_url: str
    timeout_seconds: int
    news_stories_per_fix: int


@dataclass(frozen=True)
class MonitorConfig:
    job_name: str
    health_job_name: str
    time_budget_seconds: float
    detection_window_hours: int
    max_candidates_per_detector: int
    thin_content_threshold: int
    delivery_grace_hours: int
    delivery_send_hour: int
    delivery_job_name: str
    brief_morning_hour: int
    brief_lookback_hours: int
    placeholder_patterns: list[str]


@dataclass(frozen=True)
class FixerPolicy:
    max_per_run: int
    delay_seconds: float
    max_retries: int
    backoff_minutes: list[int]

    def backoff_for(self, retry_count: int) -> int:
        """Minutes to wait after the attempt that brought the issue to ``retry_count``."""
        index = min(max(retry_count - 1, 0), len(self.backoff_minutes) - 1)
        return self.backoff_minutes[index]


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    services: ServicesConfig
    monitor: MonitorConfig
    fixers: dict[IssueType, FixerPolicy]
    manual_max_retries: int

    def policy_for(self, issue_type: IssueType) -> FixerPolicy | None:
        return self.fixers.get(issue_type)

    def max_retries_for(self, issue_type: IssueType) -> int:
        policy = self.fixers.get(issue_type)
        if policy is None:
            return self.manual_max_retries
        return policy.max_retries


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "cronwarden",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
    },
    "services": {
        "generation_base_url": "http://localhost:8080",
        "delivery_base_url": "http://localhost:8080",
        "timeout_seconds": 60,
        "news_stories_per_fix": 3,
    },
    "monitor": {
        "job_name": "monitor-and-fix",
        "health_job_name": "check-daily-health",
        "time_budget_seconds": 100.0,
        "detection_window_hours": 6,
        "max_candidates_per_detector": 50,
        "thin_content_threshold": 1,
        "delivery_grace_hours": 1,
        "delivery_send_hour": 7,
        "delivery_job_name": "send-daily-brief",
        "brief_morning_hour": 7,
        "brief_lookback_hours": 36,
        "placeholder_patterns": [
            r"LOCAL\s*NEWS",
            r"<svg[^>]*xmlns",
            r"\.svg$",
        ],
    },
    "fixers": {
        "missing_image": {
            "max_per_run": 5,
            "delay_seconds": 3.0,
            "max_retries": 3,
            "backoff_minutes": [15, 15, 60],
        },
        "placeholder_image": {
            "max_per_run": 5,
            "delay_seconds": 3.0,
            "max_retries": 3,
            "backoff_minutes": [15, 15, 60],
        },
        "missing_brief": {
            "max_per_run": 50,
            "delay_seconds": 1.0,
            "max_retries": 3,
            "backoff_minutes": [15, 15, 60],
        },
        "thin_content": {
            "max_per_run": 10,
            "delay_seconds": 2.0,
            "max_retries": 3,
            "backoff_minutes": [15, 15, 60],
        },
        "missed_email": {
            "max_per_run": 10,
            "delay_seconds": 2.0,
            "max_retries": 3,
            "backoff_minutes": [15, 15, 60],
        },
    },
    "manual": {
        "max_retries": 3,
    },
}

CONFIG_KEY = "config.runtime"


def get_state_db_path() -> str:
    data_dir = os.environ.get("CW_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])
    return os.path.join(data_dir, "state.sqlite3")


def default_config() -> Config:
    return _build_config(_deep_copy(DEFAULT_CONFIG))


def load_config(path: str | None = None) -> Config:
    path = path or os.environ.get("CW_CONFIG_PATH")
    if not path:
        return default_config()
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file is not valid YAML: {path}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("Config file must contain a mapping")
    return config_from_dict(raw)


def config_from_dict(overrides: dict[str, Any]) -> Config:
    """Build a Config from a partial dict layered over the defaults."""
    cfg = _deep_merge(_deep_copy(DEFAULT_CONFIG), overrides)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if errors:
        return errors
    _validate_semantics(cfg, errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        if default:
            sample = default[0]
            for item in value:
                if isinstance(item, bool) or not isinstance(item, type(sample)):
                    errors.append(f"{path} must be a list of {type(sample).__name__}")
                    break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_semantics(cfg: dict[str, Any], errors: list[str]) -> None:
    monitor = cfg["monitor"]
    if monitor["time_budget_seconds"] <= 0:
        errors.append("config.runtime.monitor.time_budget_seconds must be positive")
    if monitor["detection_window_hours"] <= 0:
        errors.append("config.runtime.monitor.detection_window_hours must be positive")
    for key in ("delivery_send_hour", "brief_morning_hour"):
        if not 0 <= monitor[key] <= 23:
            errors.append(f"config.runtime.monitor.{key} must be between 0 and 23")
    if cfg["manual"]["max_retries"] <= 0:
        errors.append("config.runtime.manual.max_retries must be positive")
    for name, policy in cfg["fixers"].items():
        path = f"config.runtime.fixers.{name}"
        if policy["max_per_run"] <= 0:
            errors.append(f"{path}.max_per_run must be positive")
        if policy["delay_seconds"] < 0:
            errors.append(f"{path}.delay_seconds must not be negative")
        if policy["max_retries"] <= 0:
            errors.append(f"{path}.max_retries must be positive")
        backoff = policy["backoff_minutes"]
        if not backoff:
            errors.append(f"{path}.backoff_minutes must not be empty")
        elif any(minutes <= 0 for minutes in backoff):
            errors.append(f"{path}.backoff_minutes must be positive")
        elif any(later < earlier for earlier, later in zip(backoff, backoff[1:])):
            errors.append(f"{path}.backoff_minutes must be non-decreasing")


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    services_cfg = cfg.get("services") or {}
    monitor_cfg = cfg.get("monitor") or {}
    fixers_cfg = cfg.get("fixers") or {}
    manual_cfg = cfg.get("manual") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )

    paths = PathsConfig(
        data_dir=str(paths_cfg.get("data_dir")),
        state_db=str(paths_cfg.get("state_db")),
    )

    services = ServicesConfig(
        generation_base_url=str(services_cfg.get("generation_base_url")),
        delivery_base_url=str(services_cfg.get("delivery_base_url")),
        timeout_seconds=int(services_cfg.get("timeout_seconds")),
        news_stories_per_fix=int(services_cfg.get("news_stories_per_fix")),
    )

    monitor = MonitorConfig(
        job_name=str(monitor_cfg.get("job_name")),
        health_job_name=str(monitor_cfg.get("health_job_name")),
        time_budget_seconds=float(monitor_cfg.get("time_budget_seconds")),
        detection_window_hours=int(monitor_cfg.get("detection_window_hours")),
        max_candidates_per_detector=int(monitor_cfg.get("max_candidates_per_detector")),
        thin_content_threshold=int(monitor_cfg.get("thin_content_threshold")),
        delivery_grace_hours=int(monitor_cfg.get("delivery_grace_hours")),
        delivery_send_hour=int(monitor_cfg.get("delivery_send_hour")),
        delivery_job_name=str(monitor_cfg.get("delivery_job_name")),
        brief_morning_hour=int(monitor_cfg.get("brief_morning_hour")),
        brief_lookback_hours=int(monitor_cfg.get("brief_lookback_hours")),
        placeholder_patterns=list(monitor_cfg.get("placeholder_patterns")),
    )

    fixers: dict[IssueType, FixerPolicy] = {}
    for name, policy_cfg in fixers_cfg.items():
        fixers[IssueType(name)] = FixerPolicy(
            max_per_run=int(policy_cfg.get("max_per_run")),
            delay_seconds=float(policy_cfg.get("delay_seconds")),
            max_retries=int(policy_cfg.get("max_retries")),
            backoff_minutes=[int(item) for item in policy_cfg.get("backoff_minutes")],
        )

    return Config(
        app=app,
        paths=paths,
        services=services,
        monitor=monitor,
        fixers=fixers,
        manual_max_retries=int(manual_cfg.get("max_retries")),
    )


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
