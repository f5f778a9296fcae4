"""
Integration tests for factor scores on simulated data with known traits.
"""

import warnings

import numpy as np
import pytest
from scipy.stats import pearsonr

from mirt_analysis.core.errors import (
    ConvergenceWarning,
    NumericDegeneracyWarning,
)
from mirt_analysis.core.utils import get_rng
from mirt_analysis.irt.estimation import (
    ConvergedModel,
    EstimationConfig,
    SEType,
    fit_mirt,
    fscores,
)
from mirt_analysis.irt.estimation.parameters import (
    GroupDistribution,
    ItemParameterSet,
)
from mirt_analysis.irt.items import create_item
from mirt_analysis.irt.sampling import simulate_data

pytestmark = pytest.mark.slow

SEED = 11
N_ITEMS = 20
N_RESPONDENTS = 2000


@pytest.fixture(scope="module")
def scenario() -> tuple[ConvergedModel, np.ndarray]:
    """Fitted 2PL model with Louis SEs and the generating traits."""
    rng = get_rng(SEED)
    items = []
    for j in range(N_ITEMS):
        item = create_item("2PL", j, 2, 1)
        item.set_reported_value("a1", rng.uniform(0.8, 2.0))
        item.set_reported_value("d", rng.uniform(-1.5, 1.5))
        items.append(item)
    true_set = ItemParameterSet(items, [GroupDistribution("all", 1)])
    data, theta = simulate_data(true_set, N_RESPONDENTS, rng=rng)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        model = fit_mirt(
            data, config=EstimationConfig(se=True, se_type=SEType.LOUIS)
        )
    return model, theta[:, 0]


#######################################################################


@pytest.mark.parametrize("method", ["EAP", "MAP", "WLE", "EAPsum"])
def test_scores_track_true_traits(
    scenario: tuple[ConvergedModel, np.ndarray], method: str
) -> None:
    """
    Test that every finite scoring method correlates strongly with the
    generating traits and that empirical reliability is close to the
    squared correlation.
    """
    model, theta = scenario
    scores = fscores(model, method, reliability=True)
    corr, _ = pearsonr(theta, scores.scores[:, 0])
    assert scores.reliability is not None
    print(
        f"\n{method}: r={corr:.3f}, r^2={corr**2:.3f}, "
        f"rxx={scores.reliability[0]:.3f}"
    )
    assert corr > 0.88, f"{method} correlation {corr:.3f} < 0.88"
    if method in ("EAP", "EAPsum"):
        assert abs(scores.reliability[0] - corr**2) < 0.06


def test_ml_scores_flag_extremes(
    scenario: tuple[ConvergedModel, np.ndarray],
) -> None:
    """
    Test that ML scores are infinite exactly for extreme patterns and
    track the traits elsewhere.
    """
    model, theta = scenario
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NumericDegeneracyWarning)
        scores = fscores(model, "ML")
    finite = np.isfinite(scores.scores[:, 0])
    np.testing.assert_array_equal(~finite, scores.extreme_pattern)
    corr, _ = pearsonr(theta[finite], scores.scores[finite, 0])
    assert corr > 0.85


def test_imputed_scores(
    scenario: tuple[ConvergedModel, np.ndarray],
) -> None:
    """
    Test that multiple-imputation EAP scores stay close to plain EAP
    scores with at least as large standard errors.
    """
    model, _ = scenario
    plain = fscores(model, full_scores=False)
    imputed = fscores(model, full_scores=False, n_imputations=25)
    assert plain.se is not None and imputed.se is not None
    np.testing.assert_allclose(imputed.scores, plain.scores, atol=0.1)
    assert np.median(imputed.se / plain.se) >= 0.99
