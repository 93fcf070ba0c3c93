from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from typing import Any

import yaml

from .models import DELIVERY_MODES, FEED_TYPES, TARGET_TYPES
from .storage import get_setting, insert_setting_if_missing, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class BlackoutConfig:
    enabled: bool
    latitude: float
    longitude: float
    tzid: str
    start_offset_minutes: int
    end_offset_minutes: int
    cache_ttl_hours: float

    def cache_key(self) -> tuple:
        return (
            self.latitude,
            self.longitude,
            self.tzid,
            self.start_offset_minutes,
            self.end_offset_minutes,
        )


@dataclass(frozen=True)
class Settings:
    dedupe_threshold: float
    retention_days: int
    processing_timeout_minutes: int
    fetch_window_limit: int
    message_delay_ms: int
    max_send_retries: int
    lock_ttl_seconds: int
    chat_dedupe_enabled: bool
    fetch_timeout_seconds: int
    user_agent: str
    immediate_recheck_seconds: int
    blackout: BlackoutConfig


DEFAULT_SETTINGS: dict[str, Any] = {
    "dedupe_threshold": 0.88,
    "retention_days": 14,
    "processing_timeout_minutes": 30,
    "fetch_window_limit": 500,
    "message_delay_ms": 2000,
    "max_send_retries": 0,
    "lock_ttl_seconds": 300,
    "chat_dedupe_enabled": False,
    "fetch_timeout_seconds": 20,
    "user_agent": "feedrelay/0.1",
    "immediate_recheck_seconds": 60,
    "blackout": {
        "enabled": False,
        "latitude": 40.7128,
        "longitude": -74.006,
        "tzid": "America/New_York",
        "start_offset_minutes": 18,
        "end_offset_minutes": 50,
        "cache_ttl_hours": 6.0,
    },
}

MIN_PROCESSING_TIMEOUT_MINUTES = 5


def get_state_db_path() -> str:
    data_dir = os.environ.get("FR_DATA_DIR", "/data")
    return os.path.join(data_dir, "state.sqlite3")


def get_settings(conn) -> Settings:
    """Load settings, writing any missing defaults back to the store first."""
    values: dict[str, Any] = {}
    for key, default in DEFAULT_SETTINGS.items():
        value = get_setting(conn, key, None)
        if value is None:
            insert_setting_if_missing(conn, key, _deep_copy(default))
            value = get_setting(conn, key, _deep_copy(default))
        if isinstance(default, dict) and isinstance(value, dict):
            # Nested keys added after the row was first written.
            merged = _deep_copy(default)
            merged.update(value)
            value = merged
        values[key] = value
    errors = validate_settings(values)
    if errors:
        raise ConfigError("Invalid settings: " + "; ".join(errors))
    return _build_settings(values)


def update_settings(conn, patch: dict[str, Any]) -> Settings:
    if not isinstance(patch, dict):
        raise ConfigError("settings patch must be an object")
    errors: list[str] = []
    for key in patch.keys():
        if key not in DEFAULT_SETTINGS:
            errors.append(f"unknown settings.{key}")
    current = settings_as_dict(get_settings(conn))
    merged: dict[str, Any] = {}
    for key, value in patch.items():
        if key not in DEFAULT_SETTINGS:
            continue
        if isinstance(DEFAULT_SETTINGS[key], dict) and isinstance(value, dict):
            nested = dict(current[key])
            nested.update(value)
            value = nested
        merged[key] = value
    candidate = dict(current)
    candidate.update(merged)
    errors.extend(validate_settings(candidate))
    if errors:
        raise ConfigError("Invalid settings: " + "; ".join(errors))
    for key, value in merged.items():
        set_setting(conn, key, value)
    return _build_settings(candidate)


def validate_settings(values: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(values, DEFAULT_SETTINGS, "settings", errors)
    if errors:
        return errors
    threshold = float(values["dedupe_threshold"])
    if threshold < 0 or threshold > 1:
        errors.append("settings.dedupe_threshold must be between 0 and 1")
    for key in (
        "retention_days",
        "fetch_window_limit",
        "message_delay_ms",
        "max_send_retries",
        "processing_timeout_minutes",
    ):
        if int(values[key]) < 0:
            errors.append(f"settings.{key} must be >= 0")
    if int(values["lock_ttl_seconds"]) <= 0:
        errors.append("settings.lock_ttl_seconds must be > 0")
    return errors


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    blackout = settings.blackout
    return {
        "dedupe_threshold": settings.dedupe_threshold,
        "retention_days": settings.retention_days,
        "processing_timeout_minutes": settings.processing_timeout_minutes,
        "fetch_window_limit": settings.fetch_window_limit,
        "message_delay_ms": settings.message_delay_ms,
        "max_send_retries": settings.max_send_retries,
        "lock_ttl_seconds": settings.lock_ttl_seconds,
        "chat_dedupe_enabled": settings.chat_dedupe_enabled,
        "fetch_timeout_seconds": settings.fetch_timeout_seconds,
        "user_agent": settings.user_agent,
        "immediate_recheck_seconds": settings.immediate_recheck_seconds,
        "blackout": {
            "enabled": blackout.enabled,
            "latitude": blackout.latitude,
            "longitude": blackout.longitude,
            "tzid": blackout.tzid,
            "start_offset_minutes": blackout.start_offset_minutes,
            "end_offset_minutes": blackout.end_offset_minutes,
            "cache_ttl_hours": blackout.cache_ttl_hours,
        },
    }


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            errors.append(f"missing {path}.{key}")
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_settings(values: dict[str, Any]) -> Settings:
    blackout_cfg = values.get("blackout") or {}
    blackout = BlackoutConfig(
        enabled=bool(blackout_cfg.get("enabled")),
        latitude=float(blackout_cfg.get("latitude")),
        longitude=float(blackout_cfg.get("longitude")),
        tzid=str(blackout_cfg.get("tzid")),
        start_offset_minutes=int(blackout_cfg.get("start_offset_minutes")),
        end_offset_minutes=int(blackout_cfg.get("end_offset_minutes")),
        cache_ttl_hours=float(blackout_cfg.get("cache_ttl_hours")),
    )
    return Settings(
        dedupe_threshold=min(max(float(values["dedupe_threshold"]), 0.0), 1.0),
        retention_days=min(max(int(values["retention_days"]), 1), 3650),
        processing_timeout_minutes=max(
            int(values["processing_timeout_minutes"]), MIN_PROCESSING_TIMEOUT_MINUTES
        ),
        fetch_window_limit=max(int(values["fetch_window_limit"]), 0),
        message_delay_ms=max(int(values["message_delay_ms"]), 0),
        max_send_retries=max(int(values["max_send_retries"]), 0),
        lock_ttl_seconds=int(values["lock_ttl_seconds"]),
        chat_dedupe_enabled=bool(values["chat_dedupe_enabled"]),
        fetch_timeout_seconds=max(int(values["fetch_timeout_seconds"]), 1),
        user_agent=str(values["user_agent"]),
        immediate_recheck_seconds=max(int(values["immediate_recheck_seconds"]), 0),
        blackout=blackout,
    )


def _deep_copy(value: Any) -> Any:
    return json.loads(json.dumps(value))


SEED_SECTIONS = ("feeds", "targets", "templates", "schedules", "settings")
_FIXED_TIME = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def load_seed_file(path: str) -> dict[str, Any]:
    """Read a YAML seed file of feeds, targets, templates, schedules and settings."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"seed file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("seed file must be a mapping")
    _coerce_fixed_times(data)
    errors = validate_seed(data)
    if errors:
        raise ConfigError("Invalid seed file: " + "; ".join(errors))
    return data


def validate_seed(data: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    for key in data.keys():
        if key not in SEED_SECTIONS:
            errors.append(f"unknown section {key}")
    for section in ("feeds", "targets", "templates", "schedules"):
        entries = data.get(section) or []
        if not isinstance(entries, list):
            errors.append(f"{section} must be a list")
            continue
        for index, entry in enumerate(entries):
            path = f"{section}[{index}]"
            if not isinstance(entry, dict):
                errors.append(f"{path} must be an object")
                continue
            if not entry.get("id"):
                errors.append(f"{path}.id is required")
            _validate_seed_entry(section, entry, path, errors)
    settings = data.get("settings")
    if settings is not None and not isinstance(settings, dict):
        errors.append("settings must be an object")
    return errors


def _validate_seed_entry(section: str, entry: dict[str, Any], path: str, errors: list[str]) -> None:
    if section == "feeds":
        if not entry.get("url"):
            errors.append(f"{path}.url is required")
        if entry.get("type") and entry["type"] not in FEED_TYPES:
            errors.append(f"{path}.type must be one of {', '.join(FEED_TYPES)}")
    elif section == "targets":
        if not entry.get("address"):
            errors.append(f"{path}.address is required")
        if entry.get("type") and entry["type"] not in TARGET_TYPES:
            errors.append(f"{path}.type must be one of {', '.join(TARGET_TYPES)}")
    elif section == "templates":
        if not isinstance(entry.get("content"), str):
            errors.append(f"{path}.content must be a string")
    elif section == "schedules":
        if not entry.get("feed_id"):
            errors.append(f"{path}.feed_id is required")
        mode = entry.get("delivery_mode") or "immediate"
        if mode not in DELIVERY_MODES:
            errors.append(f"{path}.delivery_mode must be one of {', '.join(DELIVERY_MODES)}")
        if not isinstance(entry.get("target_ids") or [], list):
            errors.append(f"{path}.target_ids must be a list")
        if mode == "interval":
            minutes = entry.get("interval_minutes")
            if not isinstance(minutes, int) or isinstance(minutes, bool) or minutes <= 0:
                errors.append(f"{path}.interval_minutes must be a positive integer")
        if mode == "fixed-times":
            times = entry.get("fixed_times")
            if not isinstance(times, list) or not times:
                errors.append(f"{path}.fixed_times must be a non-empty list")
            else:
                for value in times:
                    if not _FIXED_TIME.match(str(value)):
                        errors.append(f"{path}.fixed_times has invalid time {value!r}")


def _coerce_fixed_times(data: dict[str, Any]) -> None:
    # PyYAML reads an unquoted 18:30 as the base-60 integer 1110.
    for entry in data.get("schedules") or []:
        if not isinstance(entry, dict) or not isinstance(entry.get("fixed_times"), list):
            continue
        entry["fixed_times"] = [
            f"{value // 60:02d}:{value % 60:02d}"
            if isinstance(value, int) and not isinstance(value, bool)
            else value
            for value in entry["fixed_times"]
        ]
