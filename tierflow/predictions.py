"""Prediction resolution against cell winners and the champion."""

import logging
from collections.abc import Iterable

from sqlalchemy.orm import Session

from .database import utc_now
from .models import Idea, Prediction, User

logger = logging.getLogger(__name__)


def resolve_cell_predictions(db: Session, cell_ids: Iterable[int], winner_ids: Iterable[int]) -> int:
    """
    Mark unresolved predictions for ``cell_ids`` as won or lost.

    Streaks are updated in the same transaction: a win adds one correct
    prediction and extends the streak, a loss resets the streak. Predictions
    already resolved are left untouched.

    Returns:
        Number of predictions resolved
    """
    cell_ids = list(cell_ids)
    winners = set(winner_ids)
    if not cell_ids:
        return 0

    now = utc_now()
    predictions = (
        db.query(Prediction)
        .filter(Prediction.cell_id.in_(cell_ids), Prediction.resolved_at.is_(None))
        .order_by(Prediction.id)
        .all()
    )
    if not predictions:
        return 0

    try:
        users = {
            u.id: u
            for u in db.query(User).filter(User.id.in_(sorted({p.user_id for p in predictions}))).all()
        }
        for prediction in predictions:
            won = prediction.predicted_idea_id in winners
            prediction.won_immediate = won
            prediction.resolved_at = now
            user = users.get(prediction.user_id)
            if user is None:
                continue
            if won:
                user.correct_predictions += 1
                user.current_streak += 1
                user.best_streak = max(user.best_streak, user.current_streak)
            else:
                user.current_streak = 0
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.debug("Resolved %d predictions for cells %s", len(predictions), cell_ids)
    return len(predictions)


def resolve_champion_predictions(db: Session, deliberation_id: int, champion_id: int) -> int:
    """
    Record the deliberation outcome on every prediction in it.

    Predictions on the champion get ``idea_became_champion`` and their users a
    champion pick; every prediction records the final tier its idea reached.

    Returns:
        Number of predictions on the champion
    """
    predictions = (
        db.query(Prediction)
        .filter(Prediction.deliberation_id == deliberation_id, Prediction.idea_final_tier.is_(None))
        .all()
    )
    if not predictions:
        return 0

    try:
        tiers = {
            idea.id: idea.tier
            for idea in db.query(Idea).filter(Idea.id.in_(sorted({p.predicted_idea_id for p in predictions})))
        }
        champion_pickers: dict[int, int] = {}
        for prediction in predictions:
            prediction.idea_final_tier = tiers.get(prediction.predicted_idea_id, 0)
            became_champion = prediction.predicted_idea_id == champion_id
            prediction.idea_became_champion = became_champion
            if became_champion:
                champion_pickers[prediction.user_id] = champion_pickers.get(prediction.user_id, 0) + 1

        if champion_pickers:
            for user in db.query(User).filter(User.id.in_(sorted(champion_pickers))).all():
                user.champion_picks += champion_pickers[user.id]
        db.commit()
    except Exception:
        db.rollback()
        raise

    return sum(champion_pickers.values())


def resolve_safely(resolve, db: Session, *args) -> None:
    """Run a resolver after the authoritative commit; failures are logged only."""
    try:
        resolve(db, *args)
    except Exception:
        logger.exception("Prediction resolution failed (%s)", getattr(resolve, "__name__", resolve))
