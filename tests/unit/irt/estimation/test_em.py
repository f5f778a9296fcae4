"""
Tests for the Bock-Aitkin EM estimator.
"""

import warnings

import numpy as np
import pytest
from scipy.special import expit

from mirt_analysis.core.data_models import ResponseMatrix
from mirt_analysis.core.errors import ConvergenceWarning
from mirt_analysis.core.parallel import (
    CancellationToken,
    SerialExecutor,
    ThreadPoolParallelExecutor,
)
from mirt_analysis.irt.estimation.config import (
    ConvergenceConfig,
    EstimationConfig,
    QuadratureConfig,
)
from mirt_analysis.irt.estimation.em import EMEstimator
from mirt_analysis.irt.estimation.enums import ConvergenceStatus
from mirt_analysis.irt.estimation.parameters import ItemParameterSet
from mirt_analysis.irt.estimation.quadrature import build_quadrature_grid
from mirt_analysis.irt.estimation.specification import (
    ModelSpecification,
    build_item_set,
)
from mirt_analysis.irt.estimation.starting_values import (
    apply_starting_values,
)

SLOPES = np.array([1.2, 0.8, 1.5, 1.0, 0.9])
INTERCEPTS = np.array([0.5, -0.3, 0.0, 1.0, -0.8])


def simulate_2pl(n: int = 800, seed: int = 1) -> ResponseMatrix:
    rng = np.random.default_rng(seed)
    theta = rng.normal(size=n)
    probs = expit(np.outer(theta, SLOPES) + INTERCEPTS)
    return ResponseMatrix((rng.random(probs.shape) < probs).astype(int))


def starting_item_set(data: ResponseMatrix) -> ItemParameterSet:
    item_set = build_item_set(ModelSpecification(), data)
    apply_starting_values(item_set, data)
    return item_set


def make_estimator(**kwargs: object) -> EMEstimator:
    config = EstimationConfig(**kwargs)  # type: ignore[arg-type]
    grid = build_quadrature_grid(1, QuadratureConfig(n_points=31))
    return EMEstimator(config, grid)


class TestEMEstimator:
    def test_converges(self) -> None:
        data = simulate_2pl()
        outcome = make_estimator().fit(data, starting_item_set(data))
        assert outcome.status == ConvergenceStatus.CONVERGED
        assert np.isfinite(outcome.log_likelihood)
        assert outcome.e_result is not None

    def test_log_likelihood_monotone(self) -> None:
        """Without acceleration EM never decreases the log-likelihood."""
        data = simulate_2pl()
        outcome = make_estimator(accelerate=False).fit(
            data, starting_item_set(data)
        )
        trace = np.array(outcome.log_likelihood_trace)
        assert np.all(np.diff(trace) >= -1e-6)

    def test_starting_values_not_modified(self) -> None:
        data = simulate_2pl()
        item_set = starting_item_set(data)
        before = item_set.pack().copy()
        make_estimator().fit(data, item_set)
        np.testing.assert_array_equal(item_set.pack(), before)

    def test_recovers_slopes(self) -> None:
        data = simulate_2pl(n=3000, seed=4)
        outcome = make_estimator().fit(data, starting_item_set(data))
        slopes = [item.values[0] for item in outcome.item_set.items]
        intercepts = [item.values[1] for item in outcome.item_set.items]
        np.testing.assert_allclose(slopes, SLOPES, atol=0.3)
        np.testing.assert_allclose(intercepts, INTERCEPTS, atol=0.2)

    def test_max_cycles_warns(self) -> None:
        """Hitting NCYCLES returns the best iterate with a warning."""
        data = simulate_2pl()
        estimator = make_estimator(
            convergence=ConvergenceConfig(max_cycles=2, tolerance=1e-12)
        )
        with pytest.warns(ConvergenceWarning, match="did not converge"):
            outcome = estimator.fit(data, starting_item_set(data))
        assert outcome.status == ConvergenceStatus.MAX_ITERATIONS
        assert outcome.n_iterations == 2
        assert outcome.warnings

    def test_cancellation(self) -> None:
        data = simulate_2pl()
        token = CancellationToken()
        token.cancel()
        config = EstimationConfig()
        grid = build_quadrature_grid(1, QuadratureConfig(n_points=31))
        outcome = EMEstimator(config, grid, cancel=token).fit(
            data, starting_item_set(data)
        )
        assert outcome.status == ConvergenceStatus.CANCELLED
        assert outcome.n_iterations == 0

    def test_thread_pool_matches_serial(self) -> None:
        """Parallel M-steps give identical estimates."""
        data = simulate_2pl()
        config = EstimationConfig()
        grid = build_quadrature_grid(1, QuadratureConfig(n_points=31))
        serial = EMEstimator(config, grid, SerialExecutor()).fit(
            data, starting_item_set(data)
        )
        with ThreadPoolParallelExecutor(max_workers=3) as executor:
            threaded = EMEstimator(config, grid, executor).fit(
                data, starting_item_set(data)
            )
        np.testing.assert_array_equal(
            serial.item_set.pack(), threaded.item_set.pack()
        )

    def test_requires_grid(self) -> None:
        data = simulate_2pl(n=50)
        with pytest.raises(RuntimeError, match="quadrature grid"):
            EMEstimator(EstimationConfig()).fit(data, starting_item_set(data))

    def test_empirical_histogram(self) -> None:
        """Histogram weights are estimated and normalised."""
        data = simulate_2pl(n=500)
        config = EstimationConfig(
            empirical_hist=True,
            quadrature=QuadratureConfig(n_points=41),
            convergence=ConvergenceConfig(max_cycles=50),
        )
        grid = build_quadrature_grid(1, config.quadrature)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            outcome = EMEstimator(config, grid).fit(
                data, starting_item_set(data)
            )
        assert outcome.empirical_weights is not None
        np.testing.assert_allclose(outcome.empirical_weights.sum(), 1.0)

    def test_em_map_is_one_cycle(self) -> None:
        """em_map from the converged point is (nearly) a fixed point."""
        data = simulate_2pl()
        estimator = make_estimator(
            convergence=ConvergenceConfig(tolerance=1e-8)
        )
        outcome = estimator.fit(data, starting_item_set(data))
        x = outcome.item_set.pack()
        mapped = estimator.em_map(data.tabulate(), outcome.item_set, x)
        np.testing.assert_allclose(mapped, x, atol=1e-3)
