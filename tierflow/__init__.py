"""Tiered small-group deliberation engine."""

from .assignment import enter_cell, start_voting_phase, submit_idea
from .cell_results import CellOutcome, process_cell_results
from .champion import declare_champion, start_challenge_round
from .continuous_flow import close_submissions, try_advance_tier
from .errors import IllegalTransitionError, PreconditionError, ReasonCode, TierflowError
from .notifications import EffectDispatcher
from .predictions import resolve_cell_predictions, resolve_champion_predictions
from .sizing import calculate_cell_sizes, calculate_idea_sizes
from .tiers import TierOutcome, check_tier_completion
from .timers import force_end_tier, process_all_timers
from .version import __version__
from .voting import cast_vote

__all__ = [
    "CellOutcome",
    "EffectDispatcher",
    "IllegalTransitionError",
    "PreconditionError",
    "ReasonCode",
    "TierOutcome",
    "TierflowError",
    "__version__",
    "calculate_cell_sizes",
    "calculate_idea_sizes",
    "cast_vote",
    "check_tier_completion",
    "close_submissions",
    "declare_champion",
    "enter_cell",
    "force_end_tier",
    "process_all_timers",
    "process_cell_results",
    "resolve_cell_predictions",
    "resolve_champion_predictions",
    "start_challenge_round",
    "start_voting_phase",
    "submit_idea",
    "try_advance_tier",
]
