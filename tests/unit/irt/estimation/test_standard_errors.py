"""
Tests for information matrices and standard errors.
"""

import dataclasses
import warnings

import numpy as np
import pytest
from scipy.special import expit

from mirt_analysis.core.data_models import ResponseMatrix
from mirt_analysis.core.errors import (
    ConfigurationError,
    ConvergenceWarning,
    IdentifiabilityWarning,
    InformationMatrixNotComputedError,
)
from mirt_analysis.core.parallel import SerialExecutor
from mirt_analysis.irt.estimation.config import (
    EstimationConfig,
    QuadratureConfig,
    TechnicalConfig,
)
from mirt_analysis.irt.estimation.data_models import ConvergedModel
from mirt_analysis.irt.estimation.enums import EstimationMethod, SEType
from mirt_analysis.irt.estimation.fitting import fit_mirt
from mirt_analysis.irt.estimation.standard_errors import (
    compute_information,
    finalize_information,
    second_difference_hessian,
)
from mirt_analysis.irt.estimation.specification import (
    ModelSpecification,
    PriorSpecification,
)
from mirt_analysis.irt.items import ParameterPrior

SLOPES = np.array([1.2, 0.8, 1.5, 1.0, 0.9])
INTERCEPTS = np.array([0.5, -0.3, 0.0, 1.0, -0.8])


def simulate_2pl(n: int = 1000, seed: int = 3) -> ResponseMatrix:
    rng = np.random.default_rng(seed)
    theta = rng.normal(size=n)
    probs = expit(np.outer(theta, SLOPES) + INTERCEPTS)
    return ResponseMatrix((rng.random(probs.shape) < probs).astype(int))


def quick_config(**kwargs: object) -> EstimationConfig:
    return EstimationConfig(
        quadrature=QuadratureConfig(n_points=31),
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.fixture(scope="module")
def model() -> ConvergedModel:
    return fit_mirt(simulate_2pl(), config=quick_config())


class TestFinalizeInformation:
    def test_positive_definite_inverse(self) -> None:
        matrix = np.array([[4.0, 1.0], [1.0, 2.0]])
        info = finalize_information(matrix, SEType.LOUIS, ("a", "b"))
        assert info.is_positive_definite
        np.testing.assert_allclose(info.covariance @ matrix, np.eye(2))
        np.testing.assert_allclose(
            info.standard_errors, np.sqrt(np.diag(np.linalg.inv(matrix)))
        )

    def test_singular_matrix_warns(self) -> None:
        """A singular matrix falls back to the pseudo-inverse."""
        matrix = np.ones((2, 2))
        with pytest.warns(IdentifiabilityWarning, match="not positive"):
            info = finalize_information(matrix, SEType.BL, ("a", "b"))
        assert not info.is_positive_definite
        np.testing.assert_allclose(info.covariance, np.linalg.pinv(matrix))

    def test_symmetrised(self) -> None:
        matrix = np.array([[2.0, 0.5], [0.3, 2.0]])
        info = finalize_information(matrix, SEType.LOUIS, ("a", "b"))
        np.testing.assert_allclose(info.matrix, info.matrix.T)

    def test_non_finite_matrix(self) -> None:
        matrix = np.array([[np.nan, 0.0], [0.0, 1.0]])
        with pytest.warns(IdentifiabilityWarning):
            info = finalize_information(matrix, SEType.LOUIS, ("a", "b"))
        assert np.isnan(info.standard_errors).all()


class TestSecondDifferenceHessian:
    def test_quadratic(self) -> None:
        """The four-point formula is exact for quadratics."""
        a = np.array([[3.0, 1.0], [1.0, 2.0]])

        def func(x: np.ndarray) -> float:
            return float(-0.5 * x @ a @ x)

        hessian = second_difference_hessian(
            func, np.array([0.3, -0.2]), [0, 1], 1e-3, SerialExecutor()
        )
        np.testing.assert_allclose(hessian, -a, rtol=1e-6)


class TestInformationStrategies:
    @pytest.mark.parametrize(
        "se_type",
        [
            SEType.CROSSPROD,
            SEType.LOUIS,
            SEType.FISHER,
            SEType.BL,
            SEType.SANDWICH,
        ],
    )
    def test_positive_definite(
        self, model: ConvergedModel, se_type: SEType
    ) -> None:
        info = compute_information(model, se_type=se_type)
        assert info.is_positive_definite
        assert info.se_type == se_type
        assert info.matrix.shape == (10, 10)
        assert np.all(info.standard_errors > 0)

    @pytest.mark.parametrize(
        "se_type", [SEType.CROSSPROD, SEType.FISHER, SEType.BL]
    )
    def test_agrees_with_louis(
        self, model: ConvergedModel, se_type: SEType
    ) -> None:
        """Observed-information estimators agree at the MLE."""
        reference = compute_information(model, se_type=SEType.LOUIS)
        info = compute_information(model, se_type=se_type)
        np.testing.assert_allclose(
            info.standard_errors, reference.standard_errors, rtol=0.25
        )

    def test_louis_matches_bock_lieberman(
        self, model: ConvergedModel
    ) -> None:
        """Both give the observed information of the marginal likelihood."""
        louis = compute_information(model, se_type=SEType.LOUIS)
        bl = compute_information(model, se_type=SEType.BL)
        np.testing.assert_allclose(
            louis.standard_errors, bl.standard_errors, rtol=0.1
        )

    def test_complete_information_is_larger(
        self, model: ConvergedModel
    ) -> None:
        """Complete-data SEs ignore missing information and are smaller."""
        complete = compute_information(model, se_type=SEType.COMPLETE)
        louis = compute_information(model, se_type=SEType.LOUIS)
        assert np.all(complete.standard_errors < louis.standard_errors)

    def test_sem_requires_history(self, model: ConvergedModel) -> None:
        with pytest.raises(ConfigurationError, match="trajectory"):
            compute_information(model, se_type=SEType.SEM)

    def test_grid_strategies_require_em(self, model: ConvergedModel) -> None:
        mhrm_model = dataclasses.replace(
            model,
            config=dataclasses.replace(
                model.config, method=EstimationMethod.MHRM
            ),
        )
        with pytest.raises(ConfigurationError, match="requires method='EM'"):
            compute_information(mhrm_model, se_type=SEType.COMPLETE)

    @pytest.mark.parametrize(
        "se_type", [SEType.COMPLETE, SEType.LOUIS, SEType.CROSSPROD]
    )
    def test_grid_strategies_require_grid(
        self, model: ConvergedModel, se_type: SEType
    ) -> None:
        gridless = dataclasses.replace(model, grid=None)
        with pytest.raises(ConfigurationError, match="quadrature grid"):
            compute_information(gridless, se_type=se_type)

    def test_string_se_type(self, model: ConvergedModel) -> None:
        info = compute_information(model, se_type="crossprod")
        assert info.se_type == SEType.CROSSPROD


class TestFitWithStandardErrors:
    def test_sem(self) -> None:
        """SEM reproduces the observed information of the EM fit."""
        data = simulate_2pl()
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", IdentifiabilityWarning)
            fitted = fit_mirt(
                data, config=quick_config(se=True, se_type=SEType.SEM)
            )
        assert fitted.information is not None
        assert fitted.information.se_type == SEType.SEM
        assert fitted.history
        assert fitted.information.is_positive_definite
        assert np.all(np.isfinite(fitted.information.standard_errors))
        louis = compute_information(fitted, se_type=SEType.LOUIS)
        np.testing.assert_allclose(
            fitted.information.standard_errors,
            louis.standard_errors,
            rtol=0.25,
        )

    def test_fisher_pattern_limit(self) -> None:
        """Too many patterns is rejected before fitting."""
        config = quick_config(
            se=True,
            se_type=SEType.FISHER,
            technical=TechnicalConfig(fisher_max_patterns=16),
        )
        with pytest.raises(ConfigurationError, match="fisher_max_patterns"):
            fit_mirt(simulate_2pl(n=200), config=config)

    def test_coef_confidence_interval(self) -> None:
        fitted = fit_mirt(
            simulate_2pl(), config=quick_config(se=True)
        )
        table = fitted.coef(ci=0.95)
        free = table[table["est"]]
        assert (free["ci_lower"] < free["value"]).all()
        assert (free["ci_upper"] > free["value"]).all()
        assert (free["se"] > 0).all()

    def test_coef_se_on_reported_scale(self) -> None:
        """
        Slopes and intercepts report the information SE unchanged and a
        free guessing parameter reports its delta-method SE.
        """
        rng = np.random.default_rng(12)
        theta = rng.normal(size=1500)
        probs = expit(np.outer(theta, SLOPES) + INTERCEPTS)
        probs[:, 0] = 0.2 + 0.8 * probs[:, 0]
        data = ResponseMatrix((rng.random(probs.shape) < probs).astype(int))
        spec = ModelSpecification(
            itemtypes=("3PL",) + ("2PL",) * (len(SLOPES) - 1),
            priors=(
                PriorSpecification(
                    item=0,
                    name="g",
                    prior=ParameterPrior(kind="beta", p1=5.0, p2=17.0),
                ),
            ),
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            fitted = fit_mirt(
                data, spec, quick_config(se=True, se_type=SEType.LOUIS)
            )
        assert fitted.information is not None
        se = dict(
            zip(fitted.information.labels, fitted.information.standard_errors)
        )
        table = fitted.coef().set_index(["block", "name"])
        for label in ("Item_1.a1", "Item_1.d", "Item_2.a1", "Item_5.d"):
            block, name = label.split(".")
            assert table.loc[(block, name), "se"] == pytest.approx(se[label])

        g = float(table.loc[("Item_1", "g"), "value"])
        assert table.loc[("Item_1", "g"), "se"] == pytest.approx(
            se["Item_1.g"] * g * (1 - g)
        )

    def test_coef_ci_without_information(self, model: ConvergedModel) -> None:
        with pytest.raises(InformationMatrixNotComputedError):
            model.coef(ci=0.95)
