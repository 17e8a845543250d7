"""Centralized configuration for the dental voice booking orchestrator.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/dental-voice-booking/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_SSM_PREFIX = "/dental-voice-booking"

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
        import boto3  # noqa: PLC0415, lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"{_SSM_PREFIX}/{name}", WithDecryption=True)
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
        f"Set it in .env (local) or SSM Parameter Store {_SSM_PREFIX}/{name} (AWS)."
    )


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


# ── Classifier LLM ──────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
CLASSIFIER_MODEL_NAME: str = os.getenv("CLASSIFIER_MODEL_NAME", "claude-haiku-4-5")

# ── NexHealth (practice-management system) ──────────────────────────
NEXHEALTH_API_KEY: str = _require_env("NEXHEALTH_API_KEY")
NEXHEALTH_BASE_URL: str = os.getenv("NEXHEALTH_BASE_URL", "https://nexhealth.info")
ADAPTER_TIMEOUT_SECONDS: float = float(os.getenv("ADAPTER_TIMEOUT_SECONDS", "8"))

# ── Practice directory ──────────────────────────────────────────────
PRACTICES_FILE: str = os.getenv("PRACTICES_FILE", "practices.json")

# ── Conversation state persistence ──────────────────────────────────
STATE_BACKEND: str = os.getenv("STATE_BACKEND", "sql").lower()
DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./conversation_state.db")
STRICT_STATE_SEQUENCING: bool = _env_bool("STRICT_STATE_SEQUENCING")

# ── Booking workflow ────────────────────────────────────────────────
HOLD_MINUTES: int = int(os.getenv("HOLD_MINUTES", "10"))
MAX_SLOTS_PER_TURN: int = int(os.getenv("MAX_SLOTS_PER_TURN", "4"))
SLOT_SEARCH_DAYS: int = int(os.getenv("SLOT_SEARCH_DAYS", "7"))
BOOKING_HORIZON_DAYS: int = int(os.getenv("BOOKING_HORIZON_DAYS", "90"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000",
).split(",")
