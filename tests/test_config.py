"""Tests for settings loading."""

from datetime import time

import pytest
from pydantic import ValidationError

from tasksync.config import Settings, get_settings
from tasksync.errors import InvalidConfiguration


def make_settings(**overrides):
    return Settings(_env_file=None, **overrides)


def test_defaults(monkeypatch):
    for name in ("TASKSYNC_WORK_HOURS_START", "TASKSYNC_FOCUS_BLOCK_MINUTES", "TASKSYNC_DEVOPS_PAT"):
        monkeypatch.delenv(name, raising=False)
    s = make_settings()
    assert s.focus_block_minutes == 45
    assert s.slot_horizon_days == 7
    assert s.state_lock_timeout_seconds == 30.0
    assert s.work_hours().day_start == time(8, 30)


def test_reads_prefixed_environment(monkeypatch):
    monkeypatch.setenv("TASKSYNC_WORK_HOURS_START", "09:00")
    monkeypatch.setenv("TASKSYNC_FOCUS_BLOCK_MINUTES", "60")
    monkeypatch.setenv("TASKSYNC_LOG_LEVEL", "debug")

    s = make_settings()
    assert s.work_hours_start == "09:00"
    assert s.focus_block_minutes == 60
    assert s.log_level == "DEBUG"


@pytest.mark.parametrize("field", ["focus_block_minutes", "slot_horizon_days", "task_expiry_hours"])
def test_rejects_non_positive_numbers(field):
    with pytest.raises(ValidationError):
        make_settings(**{field: 0})


def test_malformed_work_hours():
    s = make_settings(work_hours_start="8.30")
    with pytest.raises(InvalidConfiguration) as exc:
        s.work_hours()
    assert exc.value.field == "work_hours_start"


def test_missing_pat(monkeypatch):
    monkeypatch.delenv("TASKSYNC_DEVOPS_PAT", raising=False)
    with pytest.raises(InvalidConfiguration) as exc:
        make_settings().get_devops_pat()
    assert exc.value.exit_code == 2


def test_pat():
    assert make_settings(devops_pat="secret").get_devops_pat() == "secret"


def test_get_settings_reports_invalid_environment(monkeypatch):
    monkeypatch.setenv("TASKSYNC_FOCUS_BLOCK_MINUTES", "0")
    get_settings.cache_clear()
    try:
        with pytest.raises(InvalidConfiguration) as exc:
            get_settings()
    finally:
        get_settings.cache_clear()
    assert exc.value.field == "focus_block_minutes"
    assert exc.value.exit_code == 2


def test_get_settings_is_cached():
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()
