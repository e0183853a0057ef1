"""Shared utility functions for the token ledger."""

import logging
from datetime import datetime, UTC

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def blank_to_none(value: str | None) -> str | None:
    """Normalize the "not yet linked" sentinel for billing identifiers.

    Stripe payloads and older rows may carry an empty string where no
    identifier exists yet; the store only ever holds NULL for that case.
    """
    if value is None:
        return None
    value = value.strip()
    return value or None


def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the application.

    Args:
        level: Root log level name, e.g. "DEBUG" or "INFO".
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
