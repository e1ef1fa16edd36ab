import os

import pytest

from engines.pattern_detection import DetectionConfig
from env_validation import EnvironmentError, get_env_int, validate_environment


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("DB_PATH", "ALERT_COOLDOWN_DAYS", "MAX_MANAGERS_PER_ALERT", "DETECTION_URL"):
        # setenv first so teardown restores whatever validate_environment writes
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)


def test_defaults_are_applied():
    validate_environment()

    assert os.environ["DB_PATH"] == "data.db"
    assert os.environ["ALERT_COOLDOWN_DAYS"] == "0"


@pytest.mark.parametrize(
    "var,value",
    [
        ("ALERT_COOLDOWN_DAYS", "-1"),
        ("ALERT_COOLDOWN_DAYS", "a week"),
        ("MAX_MANAGERS_PER_ALERT", "0"),
        ("DETECTION_URL", "ftp://scheduler"),
    ],
)
def test_invalid_values_raise(monkeypatch, var, value):
    monkeypatch.setenv(var, value)

    with pytest.raises(EnvironmentError):
        validate_environment()


def test_detection_config_from_env(monkeypatch):
    monkeypatch.setenv("ALERT_COOLDOWN_DAYS", "3")
    monkeypatch.setenv("MAX_MANAGERS_PER_ALERT", "5")

    config = DetectionConfig.from_env()

    assert config.cooldown_days == 3
    assert config.max_managers_per_alert == 5


def test_detection_config_defaults():
    config = DetectionConfig.from_env()

    assert config.cooldown_days == 0
    assert config.max_managers_per_alert is None


def test_get_env_int(monkeypatch):
    monkeypatch.setenv("COUNT", " 12 ")

    assert get_env_int("COUNT") == 12
    assert get_env_int("MISSING", 4) == 4
