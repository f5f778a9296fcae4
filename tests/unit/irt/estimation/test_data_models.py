"""
Tests for ConvergedModel, InformationMatrix and the fit summary.
"""

import json
import warnings

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from mirt_analysis.core.data_models import ResponseMatrix
from mirt_analysis.core.errors import ConvergenceWarning
from mirt_analysis.irt.estimation.config import (
    EstimationConfig,
    QuadratureConfig,
)
from mirt_analysis.irt.estimation.data_models import (
    ConvergedModel,
    FitSummary,
    InformationMatrix,
)
from mirt_analysis.irt.estimation.enums import ConvergenceStatus, SEType
from mirt_analysis.irt.estimation.fitting import fit_mirt

SLOPES = np.array([1.0, 1.4, 0.7, 1.1])
INTERCEPTS = np.array([0.2, -0.6, 0.9, 0.0])


def simulate_data(n: int = 600, seed: int = 8) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    theta = rng.normal(size=n)
    probs = expit(np.outer(theta, SLOPES) + INTERCEPTS)
    responses = (rng.random(probs.shape) < probs).astype(int)
    return pd.DataFrame(responses, columns=["q1", "q2", "q3", "q4"])


@pytest.fixture(scope="module")
def model() -> ConvergedModel:
    config = EstimationConfig(quadrature=QuadratureConfig(n_points=31))
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        return fit_mirt(simulate_data(), config=config)


class TestInformationMatrix:
    def test_standard_errors_and_frame(self) -> None:
        info = InformationMatrix(
            matrix=np.diag([4.0, 25.0]),
            covariance=np.diag([0.25, 0.04]),
            se_type=SEType.LOUIS,
            labels=("q1.a1", "q1.d"),
            is_positive_definite=True,
            condition_number=6.25,
        )
        np.testing.assert_allclose(info.standard_errors, [0.5, 0.2])
        frame = info.to_frame()
        assert frame["parameter"].tolist() == ["q1.a1", "q1.d"]
        assert info.n_parameters == 2

    def test_negative_variance_is_nan(self) -> None:
        info = InformationMatrix(
            matrix=np.eye(2),
            covariance=np.diag([1.0, -1.0]),
            se_type=SEType.BL,
            labels=("a", "b"),
            is_positive_definite=False,
            condition_number=1.0,
        )
        assert np.isnan(info.standard_errors[1])


class TestConvergedModel:
    def test_status(self, model: ConvergedModel) -> None:
        assert model.status == ConvergenceStatus.CONVERGED
        assert model.converged
        assert model.n_parameters == 8
        assert model.n_factors == 1

    def test_item_names_from_frame(self, model: ConvergedModel) -> None:
        labels = [item.label for item in model.item_set.items]
        assert labels == ["q1", "q2", "q3", "q4"]

    def test_coef_columns(self, model: ConvergedModel) -> None:
        table = model.coef()
        assert list(table.columns) == ["block", "name", "value", "est"]
        slopes = table[(table["block"] == "q2") & (table["name"] == "a1")]
        assert slopes["value"].iloc[0] > 0
        guess = table[(table["block"] == "q1") & (table["name"] == "g")]
        assert guess["value"].iloc[0] == pytest.approx(0.0)
        assert not guess["est"].iloc[0]

    def test_summary_is_json(self, model: ConvergedModel) -> None:
        summary = model.summary()
        payload = json.loads(summary.model_dump_json())
        assert payload["status"] == ConvergenceStatus.CONVERGED.value
        assert payload["n_items"] == 4
        assert payload["fit"]["aic"] == pytest.approx(
            model.fit_statistics.aic
        )
        restored = FitSummary.model_validate_json(summary.model_dump_json())
        assert restored.log_likelihood == pytest.approx(model.log_likelihood)
        assert len(restored.parameters) == len(model.coef())

    def test_summary_allows_model_prefixed_fields(self) -> None:
        """Fields such as model_version raise no protected-namespace warning."""
        with warnings.catch_warnings():
            warnings.simplefilter("error")

            class LabelledSummary(FitSummary):
                model_label: str = ""

        assert "model_label" in LabelledSummary.model_fields
        assert "model_version" in FitSummary.model_fields

    def test_probability_trace_by_name(self, model: ConvergedModel) -> None:
        theta = np.array([-1.0, 0.0, 1.0])
        by_name = model.probability_trace("q3", theta)
        by_index = model.probability_trace(2, theta)
        np.testing.assert_array_equal(by_name, by_index)
        assert by_name.shape == (3, 2)
        np.testing.assert_allclose(by_name.sum(axis=1), 1.0)

    def test_probability_trace_unknown(self, model: ConvergedModel) -> None:
        with pytest.raises(KeyError):
            model.probability_trace("q9", np.zeros(1))

    def test_prior_weights_sum_to_one(self, model: ConvergedModel) -> None:
        weights = model.prior_weights()
        assert weights.shape == (1, 31)
        np.testing.assert_allclose(weights.sum(axis=1), 1.0)


class TestParameterTableRoundTrip:
    def test_unchanged_table_keeps_likelihood(
        self, model: ConvergedModel
    ) -> None:
        rebuilt = model.with_parameter_table(model.parameter_table())
        assert rebuilt.log_likelihood == pytest.approx(model.log_likelihood)
        assert rebuilt.information is None
        assert rebuilt.fit_statistics is None

    def test_edited_value_lowers_likelihood(
        self, model: ConvergedModel
    ) -> None:
        """Moving a parameter away from the MLE lowers the likelihood."""
        table = model.parameter_table()
        row = (table["block"] == "q1") & (table["name"] == "d")
        table.loc[row, "value"] = table.loc[row, "value"] + 1.5
        edited = model.with_parameter_table(table)
        assert edited.log_likelihood < model.log_likelihood

    def test_refit_from_table(self, model: ConvergedModel) -> None:
        """A fitted table supplies starting values to a new fit."""
        config = EstimationConfig(quadrature=QuadratureConfig(n_points=31))
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            refit = fit_mirt(
                simulate_data(), config=config, pars=model.parameter_table()
            )
        assert refit.n_iterations <= model.n_iterations
        assert refit.log_likelihood == pytest.approx(
            model.log_likelihood, abs=1e-2
        )


class TestDataFrameInput:
    def test_recoded_like_array(self, model: ConvergedModel) -> None:
        data = ResponseMatrix.from_array(simulate_data().to_numpy())
        assert np.array_equal(model.data.responses, data.responses)
