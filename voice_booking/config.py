"""Centralized configuration for the voice booking service.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/voice-booking/<VARIABLE_NAME>``.
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

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/voice-booking/{name}", WithDecryption=True)
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
        f"Set it in .env (local) or SSM Parameter Store /voice-booking/{name} (AWS)."
    )


# ── Text matching (Anthropic) ───────────────────────────────────────
# "anthropic" uses Claude for fuzzy matching; "keyword" is the
# deterministic implementation used in tests and offline development.
TEXT_MATCHER_BACKEND: str = os.getenv("TEXT_MATCHER_BACKEND", "anthropic").lower()

ANTHROPIC_API_KEY: str | None = (
    _require_env("ANTHROPIC_API_KEY")
    if TEXT_MATCHER_BACKEND == "anthropic"
    else os.getenv("ANTHROPIC_API_KEY")
)
MATCHER_MODEL_NAME: str = os.getenv("MATCHER_MODEL_NAME", "claude-haiku-4-5")
NOTE_MODEL_NAME: str = os.getenv("NOTE_MODEL_NAME", "claude-haiku-4-5")
LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "8"))

# ── NexHealth (external scheduling system) ──────────────────────────
NEXHEALTH_API_KEY: str = _require_env("NEXHEALTH_API_KEY")
NEXHEALTH_BASE_URL: str = os.getenv("NEXHEALTH_BASE_URL", "https://nexhealth.info")
REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10"))

# ── Practices ───────────────────────────────────────────────────────
PRACTICES_FILE: str = os.getenv("PRACTICES_FILE", "practices.json")

# ── Slot search windows (days) ──────────────────────────────────────
SEARCH_DAYS_DEFAULT: int = int(os.getenv("SEARCH_DAYS_DEFAULT", "3"))
SEARCH_DAYS_URGENT: int = int(os.getenv("SEARCH_DAYS_URGENT", "7"))
BOOKING_HORIZON_DAYS: int = int(os.getenv("BOOKING_HORIZON_DAYS", "90"))

# ── Live calls ──────────────────────────────────────────────────────
# Calls with no tool call for this long are archived and released.
CALL_IDLE_TIMEOUT_SECONDS: float = float(os.getenv("CALL_IDLE_TIMEOUT_SECONDS", "1800"))
CALL_SWEEP_INTERVAL_SECONDS: float = float(os.getenv("CALL_SWEEP_INTERVAL_SECONDS", "60"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
