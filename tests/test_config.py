import pytest

from feedrelay.config import (
    DEFAULT_SETTINGS,
    ConfigError,
    get_settings,
    load_seed_file,
    settings_as_dict,
    update_settings,
)
from feedrelay.storage import get_setting, set_setting


def test_defaults_are_written_on_first_read(conn):
    settings = get_settings(conn)
    assert settings.dedupe_threshold == 0.88
    assert settings.retention_days == 14
    assert settings.max_send_retries == 0
    assert settings.blackout.enabled is False
    assert get_setting(conn, "message_delay_ms", None) == 2000
    assert settings_as_dict(settings) == DEFAULT_SETTINGS


def test_nested_defaults_fill_missing_keys(conn):
    set_setting(conn, "blackout", {"enabled": True, "tzid": "Asia/Jerusalem"})
    settings = get_settings(conn)
    assert settings.blackout.enabled is True
    assert settings.blackout.tzid == "Asia/Jerusalem"
    assert settings.blackout.end_offset_minutes == 50


def test_update_settings_merges_nested_patch(conn):
    settings = update_settings(conn, {"blackout": {"enabled": True}, "retention_days": 7})
    assert settings.blackout.enabled is True
    assert settings.blackout.latitude == DEFAULT_SETTINGS["blackout"]["latitude"]
    assert get_settings(conn).retention_days == 7


def test_update_settings_rejects_unknown_and_mistyped_keys(conn):
    with pytest.raises(ConfigError) as excinfo:
        update_settings(conn, {"no_such_setting": 1})
    assert "unknown settings.no_such_setting" in str(excinfo.value)

    with pytest.raises(ConfigError):
        update_settings(conn, {"retention_days": "forever"})
    with pytest.raises(ConfigError):
        update_settings(conn, {"dedupe_threshold": 1.5})
    with pytest.raises(ConfigError):
        update_settings(conn, {"blackout": {"enabled": "yes"}})
    assert get_settings(conn).retention_days == 14


def test_processing_timeout_has_floor(conn):
    settings = update_settings(conn, {"processing_timeout_minutes": 1})
    assert settings.processing_timeout_minutes == 5


def test_load_seed_file_reads_sections(tmp_path):
    path = tmp_path / "seed.yaml"
    path.write_text(
        """
feeds:
  - id: f1
    url: https://news.example.com/rss.xml
targets:
  - id: t1
    address: team@chat
    type: group
templates:
  - id: tpl
    content: "{{title}} - {{link}}"
schedules:
  - id: morning
    feed_id: f1
    target_ids: [t1]
    delivery_mode: fixed-times
    fixed_times: [08:00, 18:30]
    timezone: America/New_York
settings:
  retention_days: 7
""",
        encoding="utf-8",
    )
    data = load_seed_file(str(path))
    assert data["schedules"][0]["fixed_times"] == ["08:00", "18:30"]
    assert data["targets"][0]["type"] == "group"
    assert data["settings"] == {"retention_days": 7}


def test_load_seed_file_reports_invalid_entries(tmp_path):
    path = tmp_path / "seed.yaml"
    path.write_text(
        """
schedules:
  - id: s1
    feed_id: f1
    delivery_mode: hourly
  - id: s2
    feed_id: f1
    delivery_mode: interval
""",
        encoding="utf-8",
    )
    with pytest.raises(ConfigError) as excinfo:
        load_seed_file(str(path))
    message = str(excinfo.value)
    assert "schedules[0].delivery_mode" in message
    assert "schedules[1].interval_minutes" in message


def test_load_seed_file_missing_and_malformed(tmp_path):
    with pytest.raises(ConfigError):
        load_seed_file(str(tmp_path / "missing.yaml"))
    path = tmp_path / "list.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_seed_file(str(path))
