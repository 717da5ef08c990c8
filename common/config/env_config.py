# common/config/env_config.py
import os
from typing import Optional
from common.api_error import ConfigurationError


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Get Env variable with optional default
    """
    return os.getenv(name, default=default)


def require_env(name: str) -> str:
    """
    Get required environment variable or raise immediately.
    """
    value = os.getenv(name)
    if not value:
        raise ConfigurationError(f"Missing required env variables: {name}")
    return value


def get_env_int(name: str, default: int) -> int:
    """Optional integer variable; a non-numeric value is a configuration error."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got: {raw!r}") from exc


def get_env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got: {raw!r}") from exc


def get_env_float_list(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    """Comma separated numbers, e.g. ``DAILY_PROPAGATION_DELAYS=5,10``."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return tuple(float(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise ConfigurationError(
            f"{name} must be a comma separated list of numbers, got: {raw!r}"
        ) from exc


__all__ = [
    "require_env",
    "get_env",
    "get_env_int",
    "get_env_float",
    "get_env_float_list",
]
