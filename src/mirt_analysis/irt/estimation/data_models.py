"""
Result types of a model fit.

- InformationMatrix: information over the canonical free parameters and
  its covariance
- ConvergedModel: everything a fit produces, consumed by scoring, SE and
  reporting
- FitSummary: JSON-serialisable pydantic view of a ConvergedModel
"""

import dataclasses
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from pydantic import BaseModel, ConfigDict
from scipy.stats import norm

from mirt_analysis.core.data_models import PatternTable, ResponseMatrix
from mirt_analysis.core.errors import InformationMatrixNotComputedError
from mirt_analysis.irt.diagnostics import FitStatistics
from mirt_analysis.irt.estimation.config import EstimationConfig
from mirt_analysis.irt.estimation.enums import (
    ConvergenceStatus,
    EstimationMethod,
    SEType,
)
from mirt_analysis.irt.estimation.estep import e_step, group_prior_weights
from mirt_analysis.irt.estimation.parameters import ItemParameterSet
from mirt_analysis.irt.estimation.quadrature import QuadratureGrid


@dataclass(frozen=True)
class InformationMatrix:
    """
    Information matrix over the canonical free parameters.

    Attributes:
        matrix: Information, shape (n_free, n_free), on the internal scale.
        covariance: Its inverse (pseudo-inverse when not positive
            definite).
        se_type: Strategy that produced the matrix.
        labels: "block.name" label of each canonical parameter.
        is_positive_definite: Whether every eigenvalue is clearly positive.
        condition_number: Ratio of the largest to smallest absolute
            eigenvalue.
    """

    matrix: NDArray[np.float64]
    covariance: NDArray[np.float64]
    se_type: SEType
    labels: tuple[str, ...]
    is_positive_definite: bool
    condition_number: float

    @property
    def n_parameters(self) -> int:
        return len(self.labels)

    @property
    def standard_errors(self) -> NDArray[np.float64]:
        """Internal-scale SEs; NaN where the variance is not positive."""
        variances = np.diag(self.covariance)
        result: NDArray[np.float64] = np.where(
            variances > 0, np.sqrt(np.abs(variances)), np.nan
        )
        return result

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"parameter": list(self.labels), "se": self.standard_errors}
        )


class ParameterSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    block: str
    name: str
    value: float
    se: float | None = None


class FitSummary(BaseModel):
    """JSON-serialisable summary of a fitted model."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_version: str
    method: EstimationMethod
    status: ConvergenceStatus
    converged: bool
    log_likelihood: float
    n_iterations: int
    n_parameters: int
    n_respondents: int
    n_items: int
    n_groups: int
    n_factors: int
    se_type: SEType | None = None
    fit: FitStatistics | None = None
    failed_items: list[str] = []
    warnings: list[str] = []
    parameters: list[ParameterSummary] = []


@dataclass(frozen=True)
class ConvergedModel:
    """
    Result of fit_mirt.

    Attributes:
        item_set: Estimated item models and group distributions.
        data: Response data the model was fitted to.
        patterns: Pattern table of data.
        grid: Quadrature grid (None when a rectangular grid is infeasible
            for an MH-RM fit).
        config: Estimation configuration used.
        status: How estimation terminated.
        log_likelihood: Marginal log-likelihood at item_set.
        n_iterations: Cycles performed.
        log_likelihood_trace: EM log-likelihood per cycle.
        empirical_weights: Estimated latent histogram (EM only).
        information: Information matrix, when computed.
        fit_statistics: Information criteria and fit indices.
        null_log_likelihood: Log-likelihood of the independence model.
        failed_items: Items whose M-step failed at least once.
        warnings: Warning messages raised during the fit.
        history: EM parameter trajectory (stored for SEM).
    """

    item_set: ItemParameterSet
    data: ResponseMatrix
    patterns: PatternTable
    grid: QuadratureGrid | None
    config: EstimationConfig
    status: ConvergenceStatus
    log_likelihood: float
    n_iterations: int
    log_likelihood_trace: tuple[float, ...] = ()
    empirical_weights: NDArray[np.float64] | None = None
    information: InformationMatrix | None = None
    fit_statistics: FitStatistics | None = None
    null_log_likelihood: float | None = None
    failed_items: frozenset[int] = frozenset()
    warnings: tuple[str, ...] = ()
    history: tuple[NDArray[np.float64], ...] = field(default=(), repr=False)

    @property
    def converged(self) -> bool:
        """Whether estimation converged successfully."""
        return self.status == ConvergenceStatus.CONVERGED

    @property
    def method(self) -> EstimationMethod:
        return self.config.method

    @property
    def n_parameters(self) -> int:
        return self.item_set.n_free_parameters

    @property
    def n_factors(self) -> int:
        return self.item_set.n_factors

    def prior_weights(
        self, item_set: ItemParameterSet | None = None
    ) -> NDArray[np.float64]:
        """Node weights per group, shape (n_groups, n_nodes)."""
        if self.grid is None:
            raise RuntimeError("Model has no quadrature grid")
        item_set = item_set or self.item_set
        if self.empirical_weights is not None:
            return group_prior_weights(
                self.grid.with_weights(self.empirical_weights),
                item_set.groups,
                True,
            )
        return group_prior_weights(
            self.grid,
            item_set.groups,
            self.config.quadrature.custom_prior is not None,
        )

    def with_information(
        self, information: InformationMatrix
    ) -> "ConvergedModel":
        return dataclasses.replace(self, information=information)

    def parameter_table(self) -> pd.DataFrame:
        """Flat, editable parameter table (see with_parameter_table)."""
        return self.item_set.to_frame()

    def with_parameter_table(self, frame: pd.DataFrame) -> "ConvergedModel":
        """
        Model with parameters taken from an edited parameter table.

        The log-likelihood is re-evaluated on the grid; the information
        matrix and fit statistics no longer apply and are dropped.
        """
        item_set = self.item_set.with_frame(frame)
        log_likelihood = self.log_likelihood
        if self.grid is not None:
            log_likelihood = e_step(
                self.patterns,
                item_set.items,
                self.grid.theta,
                self.prior_weights(item_set),
            ).log_likelihood
        return dataclasses.replace(
            self,
            item_set=item_set,
            log_likelihood=log_likelihood,
            information=None,
            fit_statistics=None,
        )

    def probability_trace(
        self, item: int | str, theta: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        """Category probabilities of one item, shape (n_points, K)."""
        if isinstance(item, str):
            names = [model.label for model in self.item_set.items]
            if item not in names:
                raise KeyError(f"Unknown item {item!r}")
            item = names.index(item)
        theta = np.asarray(theta, dtype=np.float64).reshape(
            -1, self.n_factors
        )
        return self.item_set.items[item].probability_trace(theta)

    def coef(self, ci: float | None = None) -> pd.DataFrame:
        """
        Reported-scale estimates, one row per parameter slot.

        SEs are added when an information matrix is present; SEs of
        logit-scale parameters use the delta method. Confidence interval
        endpoints are built on the internal scale and then transformed.

        Args:
            ci: Confidence level, e.g. 0.95.

        Raises:
            InformationMatrixNotComputedError: If ci is requested without
                an information matrix.
        """
        if ci is not None and self.information is None:
            raise InformationMatrixNotComputedError("coef(ci=...)")
        if ci is not None and not 0 < ci < 1:
            raise ValueError(f"ci must lie in (0, 1), got {ci}")

        item_set = self.item_set
        se_internal = (
            None
            if self.information is None
            else self.information.standard_errors
        )
        z = None if ci is None else float(norm.ppf(0.5 + ci / 2))
        rows = []
        for block_idx, block in enumerate(item_set.blocks):
            canonical = item_set.index.block_canonical(block_idx)
            for param_idx, name in enumerate(block.names):
                transform = block.transforms[param_idx]
                internal = float(block.values[param_idx])
                row: dict[str, object] = {
                    "block": block.label,
                    "name": name,
                    "value": transform.to_reported(internal),
                    "est": bool(block.free[param_idx]),
                }
                c = int(canonical[param_idx])
                if se_internal is not None:
                    se = float(se_internal[c]) if c >= 0 else np.nan
                    if not transform.is_identity:
                        p = transform.to_reported(internal)
                        se *= p * (1 - p)
                    row["se"] = se
                if z is not None and se_internal is not None:
                    half = z * se_internal[c] if c >= 0 else np.nan
                    row["ci_lower"] = transform.to_reported(internal - half)
                    row["ci_upper"] = transform.to_reported(internal + half)
                rows.append(row)
        return pd.DataFrame(rows)

    def summary(self) -> FitSummary:
        table = self.coef()
        parameters = [
            ParameterSummary(
                block=str(row["block"]),
                name=str(row["name"]),
                value=float(row["value"]),
                se=(
                    float(row["se"])
                    if "se" in row and np.isfinite(row["se"])
                    else None
                ),
            )
            for row in table.to_dict("records")
        ]
        return FitSummary(
            model_version=self.config.model_version,
            method=self.method,
            status=self.status,
            converged=self.converged,
            log_likelihood=self.log_likelihood,
            n_iterations=self.n_iterations,
            n_parameters=self.n_parameters,
            n_respondents=self.data.n_respondents,
            n_items=self.item_set.n_items,
            n_groups=self.item_set.n_groups,
            n_factors=self.n_factors,
            se_type=(
                None if self.information is None else self.information.se_type
            ),
            fit=self.fit_statistics,
            failed_items=[
                self.item_set.items[j].label for j in sorted(self.failed_items)
            ],
            warnings=list(self.warnings),
            parameters=parameters,
        )
