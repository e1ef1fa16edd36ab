"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate the detector's environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "ALERT_COOLDOWN_DAYS": os.getenv("ALERT_COOLDOWN_DAYS") or "0",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars: Dict[str, str] = {
        "MAX_MANAGERS_PER_ALERT": "Cap on manager notifications per critical alert",
        "DETECTION_URL": "Endpoint used by scripts/trigger_detection.py",
    }

    cooldown = get_env_int("ALERT_COOLDOWN_DAYS", 0)
    if cooldown < 0:
        raise EnvironmentError(f"ALERT_COOLDOWN_DAYS must be >= 0, got {cooldown}")

    if os.getenv("MAX_MANAGERS_PER_ALERT"):
        cap = get_env_int("MAX_MANAGERS_PER_ALERT", 0)
        if cap <= 0:
            raise EnvironmentError(f"MAX_MANAGERS_PER_ALERT must be a positive integer, got {cap}")

    value = os.getenv("DETECTION_URL")
    if value and not (value.startswith("http://") or value.startswith("https://")):
        raise EnvironmentError(f"Invalid URL format for DETECTION_URL: {value}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.debug("Optional environment variable not set: %s (%s)", var, description)

def get_env_int(name: str, default: int = 0) -> int:
    """Get integer value from environment variable."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as exc:
        raise EnvironmentError(f"{name} must be an integer, got {value!r}") from exc
