"""
Integration tests for the MH-RM estimator.

A two-factor confirmatory model with correlated factors is fitted by
MH-RM and compared with the generating parameters and, for the
unidimensional case, with the EM solution.
"""

import warnings

import numpy as np
import pytest
from numpy.typing import NDArray

from mirt_analysis.core.errors import ConvergenceWarning
from mirt_analysis.core.parallel import ThreadPoolParallelExecutor
from mirt_analysis.core.utils import get_rng
from mirt_analysis.irt.estimation import (
    ConvergedModel,
    EstimationConfig,
    EstimationMethod,
    ModelSpecification,
    SEType,
    fit_mirt,
)
from mirt_analysis.irt.estimation.config import QuadratureConfig
from mirt_analysis.irt.estimation.parameters import (
    GroupDistribution,
    ItemParameterSet,
)
from mirt_analysis.irt.items import create_item
from mirt_analysis.irt.sampling import simulate_data

pytestmark = pytest.mark.slow

SEED = 7
N_PER_FACTOR = 6
CORRELATION = 0.4


def two_factor_item_set(
    rng: np.random.Generator,
) -> tuple[ItemParameterSet, tuple[tuple[bool, ...], ...]]:
    """Simple-structure 2PL items, N_PER_FACTOR per factor."""
    loadings = tuple(
        (j < N_PER_FACTOR, j >= N_PER_FACTOR)
        for j in range(2 * N_PER_FACTOR)
    )
    items = []
    for j, pattern in enumerate(loadings):
        item = create_item("2PL", j, 2, 2, loadings=pattern)
        factor = 0 if pattern[0] else 1
        item.set_reported_value(f"a{factor + 1}", rng.uniform(0.9, 2.0))
        item.set_reported_value("d", rng.uniform(-1.2, 1.2))
        items.append(item)
    group = GroupDistribution("all", 2)
    group.values[group.index("COV_21")] = CORRELATION
    return ItemParameterSet(items, [group]), loadings


def loading_values(item_set: ItemParameterSet) -> NDArray[np.float64]:
    """Each item's slope on the factor it loads on."""
    values = []
    for item in item_set.items:
        slopes = item.reported_values()[: item.n_factors]
        values.append(slopes[np.argmax(np.abs(slopes))])
    return np.array(values)


def fit_quietly(*args: object, **kwargs: object) -> ConvergedModel:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        return fit_mirt(*args, **kwargs)  # type: ignore[arg-type]


#######################################################################


def test_two_factor_recovery() -> None:
    """
    Test that MH-RM recovers slopes and the factor correlation of a
    confirmatory two-factor model.

    Assertions:
    - Slope RMSE sufficiently low
    - Factor correlation within tolerance
    - MH-RM standard errors are finite and positive
    """
    rng = get_rng(SEED)
    true_set, loadings = two_factor_item_set(rng)
    data, _ = simulate_data(true_set, 2000, rng=rng)

    spec = ModelSpecification(
        n_factors=2, loadings=loadings, free_correlations=True
    )
    config = EstimationConfig(
        method=EstimationMethod.MHRM, se=True, se_type=SEType.MHRM
    )
    with ThreadPoolParallelExecutor(max_workers=4) as executor:
        fitted = fit_quietly(data, spec, config, executor=executor)

    true_slopes = loading_values(true_set)
    est_slopes = loading_values(fitted.item_set)
    rmse = float(np.sqrt(np.mean((true_slopes - est_slopes) ** 2)))
    _, cov = fitted.item_set.mean_cov(0)
    correlation = cov[0, 1] / np.sqrt(cov[0, 0] * cov[1, 1])
    print(f"\nSlope RMSE={rmse:.3f}, correlation={correlation:.3f}")

    assert rmse < 0.25, f"Slope RMSE {rmse:.3f} > 0.25"
    assert abs(correlation - CORRELATION) < 0.1
    assert fitted.information is not None
    assert fitted.information.se_type == SEType.MHRM
    se = fitted.information.standard_errors
    assert np.all(np.isfinite(se)) and np.all(se > 0)


def test_mhrm_agrees_with_em() -> None:
    """
    Test that unidimensional MH-RM and EM estimates agree.
    """
    rng = get_rng(SEED + 1)
    items = []
    for j in range(10):
        item = create_item("2PL", j, 2, 1)
        item.set_reported_value("a1", rng.uniform(0.8, 1.8))
        item.set_reported_value("d", rng.uniform(-1.0, 1.0))
        items.append(item)
    true_set = ItemParameterSet(items, [GroupDistribution("all", 1)])
    data, _ = simulate_data(true_set, 1500, rng=rng)

    em = fit_quietly(
        data, config=EstimationConfig(quadrature=QuadratureConfig())
    )
    mhrm = fit_quietly(
        data, config=EstimationConfig(method=EstimationMethod.MHRM)
    )
    em_values = em.item_set.pack()
    mhrm_values = mhrm.item_set.pack()
    print(
        f"\nMax |EM - MHRM| = {np.max(np.abs(em_values - mhrm_values)):.3f}"
    )
    np.testing.assert_allclose(mhrm_values, em_values, atol=0.2)
    # Monte Carlo log-likelihood of the MH-RM fit
    assert mhrm.log_likelihood == pytest.approx(em.log_likelihood, abs=5.0)
