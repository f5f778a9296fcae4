"""
Tests for response matrices and pattern tables.
"""

import numpy as np
import pytest

from mirt_analysis.core.constants import MISSING_VALUE
from mirt_analysis.core.data_models import PatternTable, ResponseMatrix
from mirt_analysis.core.errors import InputError


class TestResponseMatrix:
    def test_infers_categories(self) -> None:
        """Category counts come from the largest observed response."""
        data = ResponseMatrix(np.array([[0, 2], [1, 0], [1, 1]]))
        assert data.n_categories == (2, 3)
        assert data.item_names == ("Item_1", "Item_2")

    def test_nan_becomes_missing(self) -> None:
        data = ResponseMatrix(np.array([[0.0, 1.0], [1.0, np.nan], [0, 0]]))
        assert data.responses[1, 1] == MISSING_VALUE
        assert data.has_missing

    def test_rejects_constant_item(self) -> None:
        """Every item needs at least two observed categories."""
        with pytest.raises(InputError, match="fewer than 2"):
            ResponseMatrix(np.array([[0, 1], [0, 0], [0, 1]]))

    def test_rejects_out_of_range_response(self) -> None:
        with pytest.raises(InputError):
            ResponseMatrix(np.array([[0, 2], [1, 0]]), n_categories=(2, 2))

    def test_rejects_non_integer_codes(self) -> None:
        with pytest.raises(InputError, match="integer"):
            ResponseMatrix(np.array([[0.5, 1.0], [1.0, 0.0]]))

    def test_from_array_recodes_values(self) -> None:
        """Arbitrary codes are recoded to 0..K-1 in ascending order."""
        data = ResponseMatrix.from_array(
            np.array([[1.0, 5.0], [3.0, 7.0], [np.nan, 5.0]])
        )
        np.testing.assert_array_equal(
            data.responses, [[0, 0], [1, 1], [MISSING_VALUE, 0]]
        )
        assert data.n_categories == (2, 2)
        assert data.category_levels == ((1.0, 3.0), (5.0, 7.0))

    def test_recode_uses_original_levels(self) -> None:
        data = ResponseMatrix.from_array(
            np.array([[1.0, 5.0], [3.0, 7.0], [np.nan, 5.0]])
        )
        np.testing.assert_array_equal(
            data.recode([[3.0, 5.0], [np.nan, 7.0]]),
            [[1, 0], [MISSING_VALUE, 1]],
        )
        with pytest.raises(InputError, match="no category coded 2"):
            data.recode([2.0, 5.0])

    def test_default_levels_are_category_indices(self) -> None:
        data = ResponseMatrix(np.array([[0, 2], [1, 0], [1, 1]]))
        assert data.category_levels == ((0.0, 1.0), (0.0, 1.0, 2.0))
        np.testing.assert_array_equal(data.recode([1, 2]), [[1, 2]])

    def test_group_levels_are_sorted(self) -> None:
        """The first sorted label is the reference group."""
        data = ResponseMatrix(
            np.array([[0, 1], [1, 0], [1, 1], [0, 0]]),
            groups=("b", "a", "b", "a"),
        )
        assert data.group_levels == ("a", "b")
        np.testing.assert_array_equal(data.group_index, [1, 0, 1, 0])

    def test_sum_scores_ignore_missing(self) -> None:
        data = ResponseMatrix(
            np.array([[1, MISSING_VALUE], [0, 1], [1, 0]])
        )
        np.testing.assert_array_equal(data.sum_scores(), [1, 1, 1])


class TestPatternTable:
    def test_collapses_duplicates(self) -> None:
        """Identical rows share one pattern with summed frequency."""
        data = ResponseMatrix(np.array([[0, 1], [1, 0], [0, 1], [0, 1]]))
        table = data.tabulate()
        assert table.n_patterns == 2
        assert table.n_respondents == 4
        np.testing.assert_array_equal(
            table.patterns[table.inverse], data.responses
        )

    def test_frequencies_by_group(self) -> None:
        data = ResponseMatrix(
            np.array([[0, 1], [0, 1], [1, 0], [0, 1]]),
            groups=("a", "b", "b", "b"),
        )
        table = data.tabulate()
        row = int(table.inverse[0])
        np.testing.assert_allclose(table.frequencies[row], [1.0, 2.0])

    def test_indicators_zero_for_missing(self) -> None:
        """Missing responses contribute no category indicator."""
        table = PatternTable.from_patterns(
            np.array([[0, MISSING_VALUE], [1, 2]]), n_categories=(2, 3)
        )
        first, second = table.indicators
        np.testing.assert_array_equal(first, [[1, 0], [0, 1]])
        np.testing.assert_array_equal(second, [[0, 0, 0], [0, 0, 1]])
        assert table.has_missing

    def test_from_patterns_validates_range(self) -> None:
        with pytest.raises(InputError):
            PatternTable.from_patterns(np.array([[0, 3]]), (2, 3))
