"""
Tests for factor scoring.
"""

import warnings

import numpy as np
import pytest
from scipy.special import expit

from mirt_analysis.core.data_models import ResponseMatrix
from mirt_analysis.core.errors import (
    ConfigurationError,
    ConvergenceWarning,
    InformationMatrixNotComputedError,
    InputError,
    NumericDegeneracyWarning,
)
from mirt_analysis.core.parallel import ThreadPoolParallelExecutor
from mirt_analysis.irt.estimation.abilities import (
    empirical_reliability,
    fscores,
    sum_score_likelihood,
)
from mirt_analysis.irt.estimation.config import (
    EstimationConfig,
    QuadratureConfig,
)
from mirt_analysis.irt.estimation.data_models import ConvergedModel
from mirt_analysis.irt.estimation.fitting import fit_mirt
from mirt_analysis.irt.estimation.specification import ModelSpecification

SLOPES = np.array([1.2, 0.8, 1.5, 1.0, 0.9, 1.3])
INTERCEPTS = np.array([0.5, -0.3, 0.0, 1.0, -0.8, 0.2])


def simulate_2pl(
    n: int = 800, seed: int = 5, missing_rate: float = 0.0
) -> ResponseMatrix:
    rng = np.random.default_rng(seed)
    theta = rng.normal(size=n)
    probs = expit(np.outer(theta, SLOPES) + INTERCEPTS)
    responses = (rng.random(probs.shape) < probs).astype(int)
    if missing_rate:
        responses[rng.random(responses.shape) < missing_rate] = -1
    return ResponseMatrix(responses)


def fit_quietly(data: ResponseMatrix, **kwargs: object) -> ConvergedModel:
    config = EstimationConfig(
        quadrature=QuadratureConfig(n_points=31),
        **kwargs,  # type: ignore[arg-type]
    )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        return fit_mirt(data, config=config)


@pytest.fixture(scope="module")
def model() -> ConvergedModel:
    return fit_quietly(simulate_2pl())


@pytest.fixture(scope="module")
def model_with_se() -> ConvergedModel:
    return fit_quietly(simulate_2pl(), se=True)


ALL_ZERO = np.zeros(6)
ALL_ONE = np.ones(6)
MIXED = np.array([1, 0, 1, 1, 0, 1])


class TestEAP:
    def test_one_row_per_respondent(self, model: ConvergedModel) -> None:
        scores = fscores(model)
        assert scores.method == "EAP"
        assert scores.scores.shape == (model.data.n_respondents, 1)
        assert scores.se is not None
        assert (scores.se > 0).all()

    def test_ordering_of_extremes(self, model: ConvergedModel) -> None:
        scores = fscores(
            model, response_pattern=np.vstack([ALL_ZERO, MIXED, ALL_ONE])
        )
        assert scores.n_rows == 3
        low, middle, high = scores.scores[:, 0]
        assert low < middle < high
        assert scores.extreme_pattern.tolist() == [True, False, True]

    def test_pattern_table_mode(self, model: ConvergedModel) -> None:
        scores = fscores(model, full_scores=False)
        assert scores.patterns is not None
        assert scores.frequencies is not None
        assert scores.frequencies.sum() == model.data.n_respondents
        assert scores.n_rows == len(scores.patterns)
        assert scores.groups is not None
        assert set(scores.groups) == {"all"}

    def test_return_se_false(self, model: ConvergedModel) -> None:
        assert fscores(model, return_se=False).se is None

    def test_prior_override_shifts_scores(
        self, model: ConvergedModel
    ) -> None:
        """A higher prior mean pulls EAP estimates upwards."""
        base = fscores(model, response_pattern=MIXED)
        shifted = fscores(model, response_pattern=MIXED, mean=[1.0])
        assert shifted.scores[0, 0] > base.scores[0, 0]

    def test_supplied_pattern_with_missing(
        self, model: ConvergedModel
    ) -> None:
        pattern = np.array([1, np.nan, 1, np.nan, 0, 1])
        scores = fscores(model, response_pattern=pattern)
        assert scores.scores.shape == (1, 1)
        assert np.isfinite(scores.scores).all()

    def test_wrong_pattern_width(self, model: ConvergedModel) -> None:
        with pytest.raises(InputError, match="columns"):
            fscores(model, response_pattern=np.ones(4))

    def test_unknown_method(self, model: ConvergedModel) -> None:
        with pytest.raises(ConfigurationError):
            fscores(model, "median")


class TestContinuousScoring:
    @pytest.mark.parametrize("method", ["MAP", "WLE"])
    def test_extreme_patterns_finite(
        self, model: ConvergedModel, method: str
    ) -> None:
        """Prior and bias-correction terms keep extreme scores finite."""
        scores = fscores(
            model, method, response_pattern=np.vstack([ALL_ZERO, ALL_ONE])
        )
        assert np.isfinite(scores.scores).all()
        assert scores.scores[0, 0] < scores.scores[1, 0]

    def test_ml_extremes_are_infinite(self, model: ConvergedModel) -> None:
        with pytest.warns(NumericDegeneracyWarning, match="infinite"):
            scores = fscores(
                model,
                "ML",
                response_pattern=np.vstack([ALL_ZERO, MIXED, ALL_ONE]),
            )
        assert scores.scores[0, 0] == -np.inf
        assert scores.scores[2, 0] == np.inf
        assert np.isfinite(scores.scores[1, 0])
        assert scores.extreme_pattern.tolist() == [True, False, True]
        assert scores.se is not None
        assert np.isnan(scores.se[[0, 2]]).all()

    def test_map_shrinks_towards_prior(self, model: ConvergedModel) -> None:
        ml = fscores(model, "ML", response_pattern=MIXED)
        map_scores = fscores(model, "MAP", response_pattern=MIXED)
        assert abs(map_scores.scores[0, 0]) < abs(ml.scores[0, 0])

    def test_map_close_to_eap(self, model: ConvergedModel) -> None:
        eap = fscores(model, "EAP", full_scores=False)
        map_scores = fscores(model, "MAP", full_scores=False)
        assert np.corrcoef(eap.scores[:, 0], map_scores.scores[:, 0])[
            0, 1
        ] > 0.99

    def test_threaded_matches_serial(self, model: ConvergedModel) -> None:
        serial = fscores(model, "MAP", full_scores=False)
        with ThreadPoolParallelExecutor(max_workers=3) as executor:
            threaded = fscores(
                model, "MAP", full_scores=False, executor=executor
            )
        np.testing.assert_allclose(threaded.scores, serial.scores)

    def test_theta_lim_validated(self, model: ConvergedModel) -> None:
        with pytest.raises(ConfigurationError, match="theta_lim"):
            fscores(model, "MAP", theta_lim=(2.0, -2.0))


@pytest.fixture(scope="module")
def long_model() -> ConvergedModel:
    """2PL model on a 30-item test with intercepts symmetric around zero."""
    rng = np.random.default_rng(17)
    slopes = rng.uniform(0.8, 1.6, size=30)
    intercepts = np.linspace(-1.5, 1.5, 30)
    theta = rng.normal(size=1000)
    probs = expit(np.outer(theta, slopes) + intercepts)
    return fit_quietly(
        ResponseMatrix((rng.random(probs.shape) < probs).astype(int))
    )


@pytest.fixture(scope="module")
def symmetric_rasch_model() -> ConvergedModel:
    """Rasch items with intercepts -1.5..1.5 and a N(0, 1) trait."""
    config = EstimationConfig(quadrature=QuadratureConfig(n_points=31))
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        fitted = fit_mirt(
            simulate_2pl(), ModelSpecification(itemtypes="Rasch"), config
        )
    table = fitted.parameter_table()
    for j, d in enumerate(np.linspace(-1.5, 1.5, len(SLOPES))):
        row = (table["block"] == f"Item_{j + 1}") & (table["name"] == "d")
        table.loc[row, "value"] = d
    table.loc[table["name"] == "MEAN_1", "value"] = 0.0
    table.loc[table["name"] == "COV_11", "value"] = 1.0
    return fitted.with_parameter_table(table)


class TestScoringLimits:
    def test_map_and_eap_meet_under_diffuse_prior(
        self, long_model: ConvergedModel
    ) -> None:
        """
        With a nearly flat prior MAP tends to ML and EAP tends to MAP.
        """
        pattern = (np.linspace(-1.5, 1.5, 30) > 0.8).astype(float)
        diffuse = {"mean": [0.0], "cov": [[100.0]]}
        ml = fscores(long_model, "ML", response_pattern=pattern)
        map_default = fscores(long_model, "MAP", response_pattern=pattern)
        map_diffuse = fscores(
            long_model, "MAP", response_pattern=pattern, **diffuse
        )
        eap_diffuse = fscores(
            long_model, "EAP", response_pattern=pattern, **diffuse
        )

        ml_score = ml.scores[0, 0]
        assert abs(map_diffuse.scores[0, 0] - ml_score) < abs(
            map_default.scores[0, 0] - ml_score
        )
        assert map_diffuse.scores[0, 0] == pytest.approx(ml_score, abs=0.02)
        assert eap_diffuse.scores[0, 0] == pytest.approx(
            map_diffuse.scores[0, 0], abs=0.05
        )

    def test_wle_equals_ml_for_symmetric_information(
        self, symmetric_rasch_model: ConvergedModel
    ) -> None:
        """
        Test information of symmetric Rasch items is flat at zero, so the
        bias correction vanishes for the middle sum score.
        """
        patterns = np.array([[1, 1, 1, 0, 0, 0], [0, 1, 0, 1, 1, 0]])
        ml = fscores(symmetric_rasch_model, "ML", response_pattern=patterns)
        wle = fscores(symmetric_rasch_model, "WLE", response_pattern=patterns)
        np.testing.assert_allclose(ml.scores[:, 0], 0.0, atol=1e-3)
        np.testing.assert_allclose(
            wle.scores[:, 0], ml.scores[:, 0], atol=1e-3
        )


class TestEAPSum:
    def test_table_counts(self, model: ConvergedModel) -> None:
        scores = fscores(model, "EAPsum")
        table = scores.sum_score_table
        assert table is not None
        assert len(table) == len(SLOPES) + 1
        assert table["observed"].sum() == model.data.n_respondents
        np.testing.assert_allclose(
            table["expected"].sum(), model.data.n_respondents
        )

    def test_scores_increase_with_sum(self, model: ConvergedModel) -> None:
        scores = fscores(model, "EAPsum")
        table = scores.sum_score_table
        assert table is not None
        assert np.all(np.diff(table["F1"].to_numpy()) > 0)

    def test_same_sum_same_score(self, model: ConvergedModel) -> None:
        patterns = np.array([[1, 1, 0, 0, 0, 0], [0, 0, 0, 0, 1, 1]])
        scores = fscores(model, "EAPsum", response_pattern=patterns)
        assert scores.scores[0, 0] == pytest.approx(scores.scores[1, 0])

    def test_requires_complete_data(self) -> None:
        incomplete = fit_quietly(simulate_2pl(n=300, missing_rate=0.05))
        with pytest.raises(ConfigurationError, match="complete data"):
            fscores(incomplete, "EAPsum")

    def test_no_imputation(self, model_with_se: ConvergedModel) -> None:
        with pytest.raises(ConfigurationError, match="imputed"):
            fscores(model_with_se, "EAPsum", n_imputations=3)


class TestSumScoreLikelihood:
    def test_columns_sum_to_one(self, model: ConvergedModel) -> None:
        theta = np.linspace(-3, 3, 7)[:, np.newaxis]
        likelihood = sum_score_likelihood(model.item_set.items, theta)
        assert likelihood.shape == (len(SLOPES) + 1, 7)
        np.testing.assert_allclose(likelihood.sum(axis=0), 1.0)

    def test_single_item_is_trace(self, model: ConvergedModel) -> None:
        theta = np.array([[0.5]])
        item = model.item_set.items[0]
        likelihood = sum_score_likelihood([item], theta)
        np.testing.assert_allclose(
            likelihood[:, 0], item.probability_trace(theta)[0]
        )


class TestImputedScores:
    def test_requires_information(self, model: ConvergedModel) -> None:
        with pytest.raises(InformationMatrixNotComputedError):
            fscores(model, n_imputations=5)

    def test_se_not_smaller_than_plain(
        self, model_with_se: ConvergedModel
    ) -> None:
        """Parameter uncertainty adds between-draw variance."""
        plain = fscores(model_with_se, full_scores=False)
        imputed = fscores(
            model_with_se, full_scores=False, n_imputations=20, seed=11
        )
        assert imputed.method == "MI-EAP"
        assert plain.se is not None and imputed.se is not None
        assert np.mean(imputed.se) >= np.mean(plain.se) * 0.98
        np.testing.assert_allclose(
            imputed.scores, plain.scores, atol=0.15
        )

    def test_reproducible_with_seed(
        self, model_with_se: ConvergedModel
    ) -> None:
        first = fscores(model_with_se, n_imputations=4, seed=2)
        second = fscores(model_with_se, n_imputations=4, seed=2)
        np.testing.assert_array_equal(first.scores, second.scores)

    def test_negative_imputations(self, model: ConvergedModel) -> None:
        with pytest.raises(ConfigurationError):
            fscores(model, n_imputations=-1)


class TestReliability:
    def test_in_unit_interval(self, model: ConvergedModel) -> None:
        scores = fscores(model, reliability=True)
        assert scores.reliability is not None
        assert 0.0 < scores.reliability[0] < 1.0

    def test_formula(self) -> None:
        scores = np.array([[-1.0], [0.0], [1.0]])
        se = np.full((3, 1), 0.5)
        expected = (2 / 3) / (2 / 3 + 0.25)
        np.testing.assert_allclose(
            empirical_reliability(scores, se), [expected]
        )

    def test_ignores_infinite_scores(self) -> None:
        scores = np.array([[-np.inf], [-1.0], [0.0], [1.0]])
        se = np.array([[np.nan], [0.5], [0.5], [0.5]])
        expected = (2 / 3) / (2 / 3 + 0.25)
        np.testing.assert_allclose(
            empirical_reliability(scores, se), [expected]
        )


class TestFactorScoresFrame:
    def test_columns(self, model: ConvergedModel) -> None:
        frame = fscores(model, full_scores=False).to_frame()
        expected = [f"item_{j + 1}" for j in range(len(SLOPES))] + [
            "group",
            "freq",
            "F1",
            "SE_F1",
            "extreme_pattern",
            "boundary",
            "optimizer_failed",
        ]
        assert list(frame.columns) == expected

    def test_full_scores_frame(self, model: ConvergedModel) -> None:
        frame = fscores(model, return_se=False).to_frame()
        assert len(frame) == model.data.n_respondents
        assert "SE_F1" not in frame.columns


class TestOriginalCoding:
    def test_likert_patterns_scored_in_original_coding(self) -> None:
        """
        Patterns supplied in the 1..5 coding of the fitted data score the
        same as the matching respondents.
        """
        rng = np.random.default_rng(21)
        theta = rng.normal(size=600)
        cuts = np.array([-1.5, -0.5, 0.5, 1.5])
        latent = theta[:, None] * np.array([1.2, 0.9, 1.4, 1.0])[None, :]
        latent = latent + rng.logistic(size=latent.shape)
        responses = 1 + (latent[:, :, None] > cuts).sum(axis=2)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            fitted = fit_mirt(
                responses.astype(float),
                config=EstimationConfig(
                    quadrature=QuadratureConfig(n_points=31)
                ),
            )
        assert fitted.data.category_levels[0] == (1.0, 2.0, 3.0, 4.0, 5.0)

        full = fscores(fitted)
        supplied = fscores(fitted, response_pattern=responses[:3])
        np.testing.assert_allclose(supplied.scores, full.scores[:3])

        with pytest.raises(InputError, match="no category coded 0"):
            fscores(fitted, response_pattern=np.zeros(4))
