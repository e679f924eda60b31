"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on", "enabled"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": "learnmate.db",
    }
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars: Dict[str, str] = {
        "GENERATION_URL": "Chat completion endpoint of the generation service",
        "MODEL_ID": "Model identifier sent to the generation service",
    }

    url = os.getenv("GENERATION_URL")
    if url and not (url.startswith("http://") or url.startswith("https://")):
        raise EnvironmentError(f"Invalid URL format for GENERATION_URL: {url}")

    timeout = os.getenv("LLM_TIMEOUT")
    if timeout:
        try:
            if int(timeout) <= 0:
                raise ValueError(timeout)
        except ValueError as exc:
            raise EnvironmentError(f"LLM_TIMEOUT must be a positive integer: {timeout}") from exc

    readiness = os.getenv("ENFORCE_TIER_READINESS")
    if readiness and readiness.lower() not in _TRUE_VALUES | _FALSE_VALUES:
        raise EnvironmentError(f"ENFORCE_TIER_READINESS must be a boolean flag: {readiness}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in _TRUE_VALUES
