"""Tests for tierflow.sizing."""

import pytest

from tierflow.sizing import calculate_cell_sizes, calculate_idea_sizes


# ---------------------------------------------------------------------------
# calculate_cell_sizes
# ---------------------------------------------------------------------------

class TestCalculateCellSizes:
    """Tests for calculate_cell_sizes."""

    def test_exact_multiple(self):
        """A clean multiple gives equal groups."""
        assert calculate_cell_sizes(10, 5) == [5, 5]

    def test_small_remainder_absorbed_into_last_group(self):
        """A remainder of 1 or 2 joins the last group."""
        assert calculate_cell_sizes(11, 5) == [5, 6]
        assert calculate_cell_sizes(12, 5) == [5, 7]

    def test_large_remainder_becomes_own_group(self):
        """A remainder of 3 or more gets its own group."""
        assert calculate_cell_sizes(13, 5) == [5, 5, 3]
        assert calculate_cell_sizes(9, 5) == [5, 4]

    def test_fewer_than_target(self):
        """Between 3 and target participants is a single group."""
        assert calculate_cell_sizes(4, 5) == [4]
        assert calculate_cell_sizes(3, 5) == [3]

    def test_degenerate_totals(self):
        """Fewer than 3 participants is returned as one degenerate group."""
        assert calculate_cell_sizes(2, 5) == [2]
        assert calculate_cell_sizes(1, 5) == [1]
        assert calculate_cell_sizes(0, 5) == [0]

    @pytest.mark.parametrize("total", range(3, 60))
    @pytest.mark.parametrize("target", [3, 4, 5, 6, 7])
    def test_sizes_sum_and_never_below_three(self, total, target):
        """Sizes always sum to the total and no group has 1 or 2 members."""
        sizes = calculate_cell_sizes(total, target)
        assert sum(sizes) == total
        assert all(size >= 3 for size in sizes)

    @pytest.mark.parametrize("target", [2, 8, 0])
    def test_target_out_of_range(self, target):
        """Targets outside 3-7 are rejected."""
        with pytest.raises(ValueError):
            calculate_cell_sizes(10, target)

    def test_negative_total(self):
        """A negative total is rejected."""
        with pytest.raises(ValueError):
            calculate_cell_sizes(-1, 5)


# ---------------------------------------------------------------------------
# calculate_idea_sizes
# ---------------------------------------------------------------------------

class TestCalculateIdeaSizes:
    """Tests for calculate_idea_sizes."""

    def test_even_split(self):
        """Ideas divide evenly."""
        assert calculate_idea_sizes(10, 2) == [5, 5]

    def test_remainder_goes_to_first_cells(self):
        """Earlier cells take the extra idea."""
        assert calculate_idea_sizes(11, 3) == [4, 4, 3]

    def test_no_cells(self):
        """Zero cells yields no sizes."""
        assert calculate_idea_sizes(5, 0) == []

    def test_more_cells_than_ideas(self):
        """Some cells get no ideas when there are too few."""
        assert calculate_idea_sizes(2, 3) == [1, 1, 0]

    @pytest.mark.parametrize("ideas,cells", [(1, 1), (7, 3), (23, 5), (100, 7)])
    def test_balanced(self, ideas, cells):
        """Sizes sum to the idea count and differ by at most one."""
        sizes = calculate_idea_sizes(ideas, cells)
        assert sum(sizes) == ideas
        assert max(sizes) - min(sizes) <= 1
