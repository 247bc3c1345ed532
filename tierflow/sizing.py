"""Cell-size and idea-size distributions.

Both functions are pure. Callers shuffle their inputs before slicing them by
the returned sizes.
"""

from . import config
from .config import MAX_CELL_SIZE, MIN_CELL_SIZE


def calculate_cell_sizes(total_participants: int, target_size: int | None = None) -> list[int]:
    """
    Split participants into groups of ``target_size`` without 1- or 2-person groups.

    A remainder of 1-2 is absorbed into the last group; a remainder of 3 or
    more becomes its own group. Fewer than 3 participants yields one group of
    that size (0 -> [0]), which callers treat as degenerate.

    Args:
        total_participants: Number of people to seat
        target_size: Nominal group size (3-7), default TIERFLOW_DEFAULT_CELL_SIZE

    Returns:
        Ordered list of group sizes summing to ``total_participants``

    Raises:
        ValueError: If ``target_size`` is outside 3-7 or the total is negative
    """
    if target_size is None:
        target_size = config.DEFAULT_CELL_SIZE
    if not MIN_CELL_SIZE <= target_size <= MAX_CELL_SIZE:
        raise ValueError(
            f"target_size must be between {MIN_CELL_SIZE} and {MAX_CELL_SIZE}, got {target_size}"
        )
    if total_participants < 0:
        raise ValueError(f"total_participants must be >= 0, got {total_participants}")

    if total_participants < MIN_CELL_SIZE:
        return [total_participants]

    full_groups, remainder = divmod(total_participants, target_size)
    if full_groups == 0:
        return [total_participants]

    sizes = [target_size] * full_groups
    if remainder >= MIN_CELL_SIZE:
        sizes.append(remainder)
    elif remainder:
        sizes[-1] += remainder
    return sizes


def calculate_idea_sizes(total_ideas: int, total_cells: int) -> list[int]:
    """Split ideas evenly across cells; earlier cells take the +1 remainder."""
    if total_cells <= 0:
        return []
    base, extra = divmod(max(total_ideas, 0), total_cells)
    return [base + 1 if i < extra else base for i in range(total_cells)]
