"""Centralized configuration for the booking agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/booking-agent/<VARIABLE_NAME>``.

Every component that reads one of these values also accepts it as a
constructor keyword, so tests never need to monkeypatch this module.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or the lookup fails.
    Errors are logged but never raised so that local-dev fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/booking-agent/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /booking-agent/{name} (AWS)."
    )


def _optional_env(name: str) -> str | None:
    """Like ``_require_env`` but returns ``None`` instead of raising."""
    value = os.getenv(name)
    if value:
        return value
    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")

# Cheap model for the structured-extraction fallback
FAST_MODEL_NAME: str = os.getenv("FAST_MODEL_NAME", "claude-haiku-4-5")

# ── Booking backend ─────────────────────────────────────────────────
BOOKING_API_BASE_URL: str = os.getenv("BOOKING_API_BASE_URL", "http://localhost:3000")
BOOKING_API_PATH: str = os.getenv("BOOKING_API_PATH", "/api/booking")
BOOKING_API_KEY: str | None = _optional_env("BOOKING_API_KEY")

# ── Resource context cache ──────────────────────────────────────────
RESOURCE_CACHE_TTL_SECONDS: float = float(os.getenv("RESOURCE_CACHE_TTL_SECONDS", "300"))
RESOURCE_LOOKAHEAD_DAYS: int = int(os.getenv("RESOURCE_LOOKAHEAD_DAYS", "7"))
RESOURCE_FALLBACK_TTL_SECONDS: float = float(os.getenv("RESOURCE_FALLBACK_TTL_SECONDS", "60"))
# How long past expiry a snapshot may still be served when a refresh fails
RESOURCE_STALE_GRACE_SECONDS: float = float(os.getenv("RESOURCE_STALE_GRACE_SECONDS", "600"))

# ── Conflict detection ──────────────────────────────────────────────
CONFLICT_CHECK_ENABLED: bool = _env_bool("CONFLICT_CHECK_ENABLED", True)
CONFLICT_WINDOW_MINUTES: int = int(os.getenv("CONFLICT_WINDOW_MINUTES", "30"))
DEFAULT_APPOINTMENT_MINUTES: int = int(os.getenv("DEFAULT_APPOINTMENT_MINUTES", "30"))
ALLOW_DOUBLE_BOOKING: bool = _env_bool("ALLOW_DOUBLE_BOOKING", False)

# ── Orchestration loop ──────────────────────────────────────────────
MAX_TOOL_ITERATIONS: int = int(os.getenv("MAX_TOOL_ITERATIONS", "12"))
GUARD_AUTO_EXECUTE: bool = _env_bool("GUARD_AUTO_EXECUTE", True)
APPOINTMENT_FALLBACK_TO_FIRST: bool = _env_bool("APPOINTMENT_FALLBACK_TO_FIRST", False)
FALLBACK_MIN_CONFIDENCE: float = float(os.getenv("FALLBACK_MIN_CONFIDENCE", "0.5"))

# ── Sessions ────────────────────────────────────────────────────────
SESSION_IDLE_TIMEOUT_SECONDS: float = float(os.getenv("SESSION_IDLE_TIMEOUT_SECONDS", "1800"))
SESSION_SWEEP_INTERVAL_SECONDS: float = float(os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", "300"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
