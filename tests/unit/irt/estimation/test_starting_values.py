"""
Tests for data-driven starting values.
"""

import numpy as np
from scipy.special import expit

from mirt_analysis.core.data_models import ResponseMatrix
from mirt_analysis.core.utils import get_rng
from mirt_analysis.irt.estimation.specification import (
    ModelSpecification,
    build_item_set,
)
from mirt_analysis.irt.estimation.starting_values import (
    MAX_COMMUNALITY,
    apply_starting_values,
    bonett_price_tetrachoric,
    compute_item_correlations,
    compute_loadings,
    compute_log_odds_relative_to_reference,
    compute_response_proportions,
    random_starting_values,
)


def one_factor_data(n: int = 1000, seed: int = 0) -> ResponseMatrix:
    rng = np.random.default_rng(seed)
    theta = rng.normal(size=n)
    slopes = np.array([1.5, 1.2, 1.0, 0.8, 1.3])
    intercepts = np.array([-1.0, -0.5, 0.0, 0.5, 1.0])
    probs = expit(np.outer(theta, slopes) + intercepts)
    return ResponseMatrix((rng.random(probs.shape) < probs).astype(int))


class TestProportions:
    def test_smoothing(self) -> None:
        data = ResponseMatrix(np.array([[0, 1], [1, 0], [1, 1], [1, 0]]))
        proportions = compute_response_proportions(data, 0)
        np.testing.assert_allclose(proportions, [1.5 / 5, 3.5 / 5])

    def test_log_odds_reference_zero(self) -> None:
        log_odds = compute_log_odds_relative_to_reference(
            np.array([0.2, 0.3, 0.5])
        )
        assert log_odds[0] == 0.0
        np.testing.assert_allclose(log_odds[2], np.log(2.5), rtol=1e-6)


class TestCorrelations:
    def test_tetrachoric_independent_table(self) -> None:
        """A table with odds ratio 1 has zero correlation."""
        table = np.array([[99.5, 99.5], [99.5, 99.5]])
        np.testing.assert_allclose(
            bonett_price_tetrachoric(table), 0.0, atol=1e-12
        )

    def test_tetrachoric_sign(self) -> None:
        assert bonett_price_tetrachoric(np.array([[40, 10], [10, 40]])) > 0.5
        assert bonett_price_tetrachoric(np.array([[10, 40], [40, 10]])) < -0.5

    def test_correlation_matrix(self) -> None:
        corr = compute_item_correlations(one_factor_data())
        assert corr.shape == (5, 5)
        np.testing.assert_array_equal(np.diag(corr), 1.0)
        np.testing.assert_allclose(corr, corr.T)
        assert (corr[np.triu_indices(5, 1)] > 0).all()


class TestLoadings:
    def test_communality_capped(self) -> None:
        corr = np.full((3, 3), 0.99)
        np.fill_diagonal(corr, 1.0)
        loadings = compute_loadings(corr, np.ones((3, 1), dtype=bool))
        assert ((loadings**2).sum(axis=1) <= MAX_COMMUNALITY + 1e-12).all()

    def test_positive_manifold(self) -> None:
        corr = compute_item_correlations(one_factor_data())
        loadings = compute_loadings(corr, np.ones((5, 1), dtype=bool))
        assert (loadings > 0).all()

    def test_confirmatory_zero_pattern(self) -> None:
        corr = np.eye(4) * 0.5 + 0.5
        mask = np.array(
            [[True, False], [True, False], [False, True], [False, True]]
        )
        loadings = compute_loadings(corr, mask)
        np.testing.assert_array_equal(loadings[~mask], 0.0)


class TestApplyStartingValues:
    def test_intercepts_follow_difficulty(self) -> None:
        """Easier items start with larger intercepts."""
        data = one_factor_data()
        item_set = build_item_set(ModelSpecification(), data)
        apply_starting_values(item_set, data)
        intercepts = [item.values[item.index("d")] for item in item_set.items]
        assert np.all(np.diff(intercepts) > 0)
        slopes = [item.values[0] for item in item_set.items]
        assert min(slopes) > 0

    def test_fixed_parameters_untouched(self) -> None:
        data = one_factor_data()
        item_set = build_item_set(ModelSpecification(itemtypes="Rasch"), data)
        apply_starting_values(item_set, data)
        assert all(item.values[0] == 1.0 for item in item_set.items)


class TestRandomStartingValues:
    def test_seeded_draws_repeat(self) -> None:
        data = one_factor_data()
        first = build_item_set(ModelSpecification(), data)
        second = build_item_set(ModelSpecification(), data)
        random_starting_values(first, get_rng(5))
        random_starting_values(second, get_rng(5))
        for a, b in zip(first.items, second.items):
            np.testing.assert_array_equal(a.values, b.values)

    def test_differs_from_data_start(self) -> None:
        data = one_factor_data()
        item_set = build_item_set(ModelSpecification(), data)
        apply_starting_values(item_set, data)
        before = [item.values.copy() for item in item_set.items]
        random_starting_values(item_set, get_rng(5))
        assert any(
            not np.allclose(old, item.values)
            for old, item in zip(before, item_set.items)
        )
        assert all(item.values[0] > 0 for item in item_set.items)

    def test_graded_thresholds_decrease(self) -> None:
        rng = np.random.default_rng(2)
        data = ResponseMatrix(rng.integers(0, 5, size=(200, 3)))
        item_set = build_item_set(ModelSpecification(), data)
        random_starting_values(item_set, get_rng(9))
        for item in item_set.items:
            thresholds = item.values[item.n_factors :]
            assert np.all(np.diff(thresholds) < 0)

    def test_asymptotes_inside_unit_interval(self) -> None:
        data = one_factor_data()
        item_set = build_item_set(ModelSpecification(itemtypes="4PL"), data)
        random_starting_values(item_set, get_rng(3))
        for item in item_set.items:
            reported = item.reported_values()
            g = reported[item.index("g")]
            u = reported[item.index("u")]
            assert 0 < g < 1
            assert 0 < u < 1

    def test_fixed_parameters_untouched(self) -> None:
        data = one_factor_data()
        item_set = build_item_set(ModelSpecification(itemtypes="Rasch"), data)
        random_starting_values(item_set, get_rng(3))
        assert all(item.values[0] == 1.0 for item in item_set.items)
