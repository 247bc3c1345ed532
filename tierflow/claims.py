"""Conditional updates used as exactly-once claims.

Every transition that must happen once (cell completion, tier advance,
champion declaration, idea grabbing) is written as
``UPDATE ... WHERE <expected state>`` and the caller checks how many rows
matched. Zero rows means another caller got there first; that is a normal
outcome, not an error.
"""

import logging
from typing import Any

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def claim_rows(db: Session, model: type, *criteria: Any, values: dict[Any, Any]) -> int:
    """
    Apply ``values`` to every row of ``model`` matching ``criteria``.

    Args:
        db: Open session; the caller owns commit/rollback
        model: Mapped class to update
        *criteria: Filter expressions describing the expected current state
        values: Column -> new value mapping

    Returns:
        Number of rows that matched
    """
    matched = (
        db.query(model)
        .filter(*criteria)
        .update(values, synchronize_session="fetch")
    )
    return matched


def claim(db: Session, model: type, *criteria: Any, values: dict[Any, Any]) -> bool:
    """Compare-and-swap on ``model``; True if at least one row matched."""
    matched = claim_rows(db, model, *criteria, values=values)
    if not matched:
        logger.debug("Claim on %s lost", model.__name__)
    return matched > 0
