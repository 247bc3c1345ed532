"""Configuration for the tierflow engine."""

import logging
import os
from typing import Any

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

# Database connection string (SQLAlchemy URL)
DATABASE_URL = os.getenv("TIERFLOW_DATABASE_URL", "sqlite:///./tierflow.db")

# Cell sizing
DEFAULT_CELL_SIZE = int(os.getenv("TIERFLOW_DEFAULT_CELL_SIZE", "5"))
MIN_CELL_SIZE = 3
MAX_CELL_SIZE = 7

# Tallying
XP_PER_BALLOT = 10
MIN_XP_TO_ADVANCE = int(os.getenv("TIERFLOW_MIN_XP_TO_ADVANCE", "4"))

# Final showdown shaping
FINAL_SHOWDOWN_SIZE = 5
MAX_SHOWDOWN_IDEAS = 7

# Challenge rounds
MIN_CHALLENGER_POOL = 5
RETIREMENT_LOSSES = 2

# Timers (milliseconds, 0 = no timer)
DEFAULT_VOTING_TIMEOUT_MS = int(os.getenv("TIERFLOW_DEFAULT_VOTING_TIMEOUT_MS", "3600000"))
DEFAULT_ACCUMULATION_TIMEOUT_MS = int(
    os.getenv("TIERFLOW_DEFAULT_ACCUMULATION_TIMEOUT_MS", "86400000")
)

# Webhook delivery
WEBHOOK_TIMEOUT = float(os.getenv("TIERFLOW_WEBHOOK_TIMEOUT", "10.0"))
WEBHOOK_MAX_CONSECUTIVE_FAILURES = int(os.getenv("TIERFLOW_WEBHOOK_MAX_FAILURES", "10"))
WEBHOOK_SIGNATURE_HEADER = "X-Tierflow-Signature"


def reload_config() -> dict[str, Any]:
    """
    Reload configuration from the environment and .env file.

    Returns:
        Dict with the effective values after reload
    """
    global DATABASE_URL, DEFAULT_CELL_SIZE, MIN_XP_TO_ADVANCE
    global DEFAULT_VOTING_TIMEOUT_MS, DEFAULT_ACCUMULATION_TIMEOUT_MS
    global WEBHOOK_TIMEOUT, WEBHOOK_MAX_CONSECUTIVE_FAILURES

    load_dotenv(override=True)

    DATABASE_URL = os.getenv("TIERFLOW_DATABASE_URL", "sqlite:///./tierflow.db")
    DEFAULT_CELL_SIZE = int(os.getenv("TIERFLOW_DEFAULT_CELL_SIZE", "5"))
    MIN_XP_TO_ADVANCE = int(os.getenv("TIERFLOW_MIN_XP_TO_ADVANCE", "4"))
    DEFAULT_VOTING_TIMEOUT_MS = int(os.getenv("TIERFLOW_DEFAULT_VOTING_TIMEOUT_MS", "3600000"))
    DEFAULT_ACCUMULATION_TIMEOUT_MS = int(
        os.getenv("TIERFLOW_DEFAULT_ACCUMULATION_TIMEOUT_MS", "86400000")
    )
    WEBHOOK_TIMEOUT = float(os.getenv("TIERFLOW_WEBHOOK_TIMEOUT", "10.0"))
    WEBHOOK_MAX_CONSECUTIVE_FAILURES = int(os.getenv("TIERFLOW_WEBHOOK_MAX_FAILURES", "10"))

    logger.info("Configuration reloaded")

    return {
        "status": "reloaded",
        "database_url": DATABASE_URL,
        "default_cell_size": DEFAULT_CELL_SIZE,
        "min_xp_to_advance": MIN_XP_TO_ADVANCE,
        "default_voting_timeout_ms": DEFAULT_VOTING_TIMEOUT_MS,
        "webhook_max_failures": WEBHOOK_MAX_CONSECUTIVE_FAILURES,
    }
