"""
Latent trait scoring for fitted models.

This module provides the factor-scoring engine shared by every item type:
EAP and EAPsum integrate over the quadrature grid, MAP, ML and WLE search
continuous theta, and the multiple-imputation variant re-scores under
parameter draws from the asymptotic covariance of the estimates.
"""

import dataclasses
import logging
import warnings
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import ArrayLike, NDArray
from scipy.optimize import brentq, minimize

from mirt_analysis.core.constants import MISSING_VALUE
from mirt_analysis.core.data_models import PatternTable
from mirt_analysis.core.errors import (
    ConfigurationError,
    InformationMatrixNotComputedError,
    InputError,
    NumericDegeneracyWarning,
)
from mirt_analysis.core.parallel import ParallelExecutor, SerialExecutor
from mirt_analysis.core.utils import get_rng, is_positive_definite, safe_log
from mirt_analysis.irt.estimation.config import default_quadpts
from mirt_analysis.irt.estimation.data_models import ConvergedModel
from mirt_analysis.irt.estimation.enums import ScoringMethod
from mirt_analysis.irt.estimation.estep import (
    compute_pattern_log_likelihood,
    group_prior_weights,
)
from mirt_analysis.irt.estimation.kernels import lord_wingersky
from mirt_analysis.irt.estimation.quadrature import (
    QuadratureGrid,
    build_quadrature_grid,
)
from mirt_analysis.irt.items.base import INFORMATION_STEP, ItemModel

logger = logging.getLogger(__name__)

DEFAULT_SCORE_THETA_LIM = (-6.0, 6.0)
BOUNDARY_TOLERANCE = 1e-4
MAX_DRAW_ATTEMPTS = 20


@dataclass(frozen=True)
class FactorScores:
    """
    Trait estimates for respondents, supplied patterns or unique patterns.

    Attributes:
        method: Scoring method, with an "MI-" prefix for imputed scores.
        scores: Estimates, shape (n_rows, n_factors).
        se: Standard errors, same shape, or None when not requested.
        extreme_pattern: Rows whose responses are all minimum or all
            maximum categories (ML scores are -inf/+inf there).
        boundary: Rows whose estimate sits on the theta search limits.
        optimizer_failed: Rows whose optimiser did not report success.
        patterns: Response pattern of each row in table mode.
        frequencies: Respondent count of each row in table mode.
        groups: Group label of each row in table mode.
        reliability: Empirical reliability per factor, when requested.
        sum_score_table: EAPsum table (sum score, observed and expected
            counts, EAP and SE per group).
    """

    method: str
    scores: NDArray[np.float64]
    se: NDArray[np.float64] | None
    extreme_pattern: NDArray[np.bool_]
    boundary: NDArray[np.bool_]
    optimizer_failed: NDArray[np.bool_]
    patterns: NDArray[np.int64] | None = None
    frequencies: NDArray[np.float64] | None = None
    groups: tuple[str, ...] | None = None
    reliability: NDArray[np.float64] | None = None
    sum_score_table: pd.DataFrame | None = None

    @property
    def n_rows(self) -> int:
        return self.scores.shape[0]

    @property
    def n_factors(self) -> int:
        return self.scores.shape[1]

    def to_frame(self) -> pd.DataFrame:
        """One row per scored unit with F1..FD, SE_F1..SE_FD and flags."""
        columns: dict[str, object] = {}
        if self.patterns is not None:
            for j in range(self.patterns.shape[1]):
                columns[f"item_{j + 1}"] = self.patterns[:, j]
        if self.groups is not None:
            columns["group"] = list(self.groups)
        if self.frequencies is not None:
            columns["freq"] = self.frequencies
        for d in range(self.n_factors):
            columns[f"F{d + 1}"] = self.scores[:, d]
        if self.se is not None:
            for d in range(self.n_factors):
                columns[f"SE_F{d + 1}"] = self.se[:, d]
        columns["extreme_pattern"] = self.extreme_pattern
        columns["boundary"] = self.boundary
        columns["optimizer_failed"] = self.optimizer_failed
        return pd.DataFrame(columns)


@dataclass
class _UnitScores:
    scores: NDArray[np.float64]
    se: NDArray[np.float64]
    extreme: NDArray[np.bool_]
    boundary: NDArray[np.bool_]
    failed: NDArray[np.bool_]


@dataclass(frozen=True)
class _ScoringUnits:
    """Distinct (pattern, group) pairs to score."""

    table: PatternTable
    group: NDArray[np.int64]
    counts: NDArray[np.float64]
    respondent_unit: NDArray[np.int64] | None


def _fitted_units(model: ConvergedModel) -> _ScoringUnits:
    patterns = model.patterns
    pairs = np.argwhere(patterns.frequencies > 0)
    lookup = np.full(patterns.frequencies.shape, -1, dtype=np.int64)
    lookup[pairs[:, 0], pairs[:, 1]] = np.arange(len(pairs))
    return _ScoringUnits(
        table=PatternTable.from_patterns(
            patterns.patterns[pairs[:, 0]], patterns.n_categories
        ),
        group=pairs[:, 1].astype(np.int64),
        counts=patterns.frequencies[pairs[:, 0], pairs[:, 1]],
        respondent_unit=lookup[patterns.inverse, model.data.group_index],
    )


def _supplied_units(
    model: ConvergedModel, response_pattern: ArrayLike
) -> _ScoringUnits:
    rows = np.atleast_2d(np.asarray(response_pattern, dtype=np.float64))
    n_items = model.item_set.n_items
    if rows.shape[1] != n_items:
        raise InputError(
            f"response_pattern has {rows.shape[1]} columns for "
            f"{n_items} items"
        )
    table = PatternTable.from_patterns(
        model.data.recode(rows), model.patterns.n_categories
    )
    return _ScoringUnits(
        table=table,
        group=np.zeros(table.n_patterns, dtype=np.int64),
        counts=np.ones(table.n_patterns),
        respondent_unit=None,
    )


def _scoring_grid(model: ConvergedModel) -> QuadratureGrid:
    if model.grid is not None:
        return model.grid
    n_factors = model.n_factors
    return build_quadrature_grid(
        n_factors,
        model.config.quadrature,
        n_points=default_quadpts(n_factors),
    )


def _grid_priors(
    model: ConvergedModel,
    grid: QuadratureGrid,
    mean: NDArray[np.float64] | None,
    cov: NDArray[np.float64] | None,
) -> NDArray[np.float64]:
    """Node weights per group, honouring a mean/cov override."""
    groups = model.item_set.groups
    if mean is not None or cov is not None:
        ref_mean, ref_cov = model.item_set.mean_cov(0)
        weights = grid.prior_weights(
            ref_mean if mean is None else mean,
            ref_cov if cov is None else cov,
        )
        return np.tile(weights, (len(groups), 1))
    if model.grid is not None:
        return model.prior_weights()
    return group_prior_weights(grid, groups)


def _normal_priors(
    model: ConvergedModel,
    mean: NDArray[np.float64] | None,
    cov: NDArray[np.float64] | None,
) -> list[tuple[NDArray[np.float64], NDArray[np.float64]]]:
    priors = []
    for g in range(model.item_set.n_groups):
        group_mean, group_cov = model.item_set.mean_cov(g)
        priors.append(
            (
                group_mean if mean is None else mean,
                group_cov if cov is None else cov,
            )
        )
    return priors


def _response_log_likelihood(
    items: Sequence[ItemModel],
    pattern: NDArray[np.int64],
    theta: NDArray[np.float64],
) -> NDArray[np.float64]:
    """log P(pattern | theta) at each theta row; missing items skipped."""
    theta = np.atleast_2d(theta)
    total = np.zeros(theta.shape[0])
    for j in np.flatnonzero(pattern != MISSING_VALUE):
        probs = items[j].probability_trace(theta)
        total += safe_log(probs[:, pattern[j]])
    return total


def _test_information(
    items: Sequence[ItemModel],
    pattern: NDArray[np.int64],
    theta: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Sum of the answered items' information at one theta, (D, D)."""
    theta = np.atleast_2d(theta)
    info = np.zeros((theta.shape[1], theta.shape[1]))
    for j in np.flatnonzero(pattern != MISSING_VALUE):
        info += items[j].item_information(theta)[0]
    return info


def _information_se(info: NDArray[np.float64]) -> NDArray[np.float64]:
    try:
        cov = np.linalg.inv(info)
    except np.linalg.LinAlgError:
        return np.full(info.shape[0], np.nan)
    variances = np.diag(cov)
    result: NDArray[np.float64] = np.where(
        variances > 0, np.sqrt(np.abs(variances)), np.nan
    )
    return result


def _extreme_direction(
    pattern: NDArray[np.int64], n_categories: Sequence[int]
) -> int:
    """-1 for all-minimum, +1 for all-maximum, 0 otherwise."""
    observed = np.flatnonzero(pattern != MISSING_VALUE)
    if observed.size == 0:
        return 0
    if np.all(pattern[observed] == 0):
        return -1
    maxima = np.array([n_categories[j] - 1 for j in observed])
    if np.all(pattern[observed] == maxima):
        return 1
    return 0


def _warm_equation(
    items: Sequence[ItemModel], pattern: NDArray[np.int64], theta: float
) -> float:
    """
    Warm's weighted-likelihood estimating equation for one dimension:

        d log L / d theta + J(theta) / (2 I(theta)) = 0

    with I = sum P'^2 / P and J = sum P' P'' / P over answered items.
    """
    h = INFORMATION_STEP
    grid = np.array([[theta - h], [theta], [theta + h]])
    score = 0.0
    info = 0.0
    skew = 0.0
    for j in np.flatnonzero(pattern != MISSING_VALUE):
        lower, centre, upper = items[j].probability_trace(grid)
        centre = np.clip(centre, 1e-12, None)
        first = (upper - lower) / (2 * h)
        second = (upper - 2 * centre + lower) / h**2
        score += first[pattern[j]] / centre[pattern[j]]
        info += float(np.sum(first**2 / centre))
        skew += float(np.sum(first * second / centre))
    if info <= 0:
        return score
    return score + skew / (2 * info)


class _Objective:
    """Scoring criterion for one pattern as a function of theta."""

    def __init__(
        self,
        method: ScoringMethod,
        items: Sequence[ItemModel],
        pattern: NDArray[np.int64],
        prior: tuple[NDArray[np.float64], NDArray[np.float64]],
    ) -> None:
        self.method = method
        self.items = items
        self.pattern = pattern
        self.prior_mean = prior[0]
        self.prior_precision = np.linalg.inv(prior[1])

    def __call__(self, theta: NDArray[np.float64]) -> float:
        value = float(
            _response_log_likelihood(self.items, self.pattern, theta)[0]
        )
        if self.method == ScoringMethod.MAP:
            diff = theta - self.prior_mean
            value -= 0.5 * float(diff @ self.prior_precision @ diff)
        elif self.method == ScoringMethod.WLE:
            info = _test_information(self.items, self.pattern, theta)
            sign, logdet = np.linalg.slogdet(info)
            value += 0.5 * logdet if sign > 0 else -1e10
        return value


def _optimise(
    objective: _Objective,
    start: NDArray[np.float64],
    theta_lim: tuple[float, float],
) -> tuple[NDArray[np.float64], bool, bool]:
    """Bounded maximisation; returns (theta, boundary, failed)."""
    bounds = [theta_lim] * len(start)
    try:
        result = minimize(
            lambda t: -objective(t), start, method="L-BFGS-B", bounds=bounds
        )
    except (ValueError, ArithmeticError, np.linalg.LinAlgError) as e:
        logger.debug(f"Scoring optimiser raised {e}")
        return np.full(len(start), np.nan), False, True
    theta = np.asarray(result.x, dtype=np.float64)
    boundary = bool(
        np.any(np.abs(theta - theta_lim[0]) < BOUNDARY_TOLERANCE)
        or np.any(np.abs(theta - theta_lim[1]) < BOUNDARY_TOLERANCE)
    )
    failed = not result.success
    return theta, boundary, failed


def _score_one(
    method: ScoringMethod,
    items: Sequence[ItemModel],
    n_categories: Sequence[int],
    pattern: NDArray[np.int64],
    prior: tuple[NDArray[np.float64], NDArray[np.float64]],
    theta_lim: tuple[float, float],
) -> tuple[NDArray[np.float64], NDArray[np.float64], bool, bool, bool]:
    """MAP, ML or WLE estimate of one pattern with its SE and flags."""
    n_factors = len(prior[0])
    direction = _extreme_direction(pattern, n_categories)
    extreme = direction != 0
    if method == ScoringMethod.ML and extreme:
        return (
            np.full(n_factors, direction * np.inf),
            np.full(n_factors, np.nan),
            True,
            False,
            False,
        )
    if not np.any(pattern != MISSING_VALUE) and method != ScoringMethod.MAP:
        nan = np.full(n_factors, np.nan)
        return nan, nan.copy(), extreme, False, True

    if method == ScoringMethod.WLE and n_factors == 1:
        lower, upper = theta_lim
        f_lower = _warm_equation(items, pattern, lower)
        f_upper = _warm_equation(items, pattern, upper)
        if np.sign(f_lower) != np.sign(f_upper):
            root = brentq(
                lambda t: _warm_equation(items, pattern, t), lower, upper
            )
            theta = np.array([root])
            boundary = False
        else:
            theta = np.array([lower if abs(f_lower) < abs(f_upper) else upper])
            boundary = True
        failed = False
    else:
        objective = _Objective(method, items, pattern, prior)
        start = np.clip(prior[0], theta_lim[0], theta_lim[1]).astype(float)
        theta, boundary, failed = _optimise(objective, start, theta_lim)

    info = _test_information(items, pattern, theta)
    if method == ScoringMethod.MAP:
        info = info + np.linalg.inv(prior[1])
    return theta, _information_se(info), extreme, boundary, failed


def _score_eap(
    units: _ScoringUnits,
    items: Sequence[ItemModel],
    grid: QuadratureGrid,
    priors: NDArray[np.float64],
) -> _UnitScores:
    theta = grid.theta
    log_lik = compute_pattern_log_likelihood(units.table, items, theta)
    log_post = log_lik + safe_log(priors)[units.group]
    log_post -= log_post.max(axis=1, keepdims=True)
    posterior = np.exp(log_post)
    posterior /= posterior.sum(axis=1, keepdims=True)

    eap = posterior @ theta
    second = posterior @ theta**2
    se = np.sqrt(np.maximum(second - eap**2, 0.0))
    n_units = units.table.n_patterns
    extreme = np.array(
        [
            _extreme_direction(p, units.table.n_categories) != 0
            for p in units.table.patterns
        ],
        dtype=bool,
    )
    return _UnitScores(
        scores=eap,
        se=se,
        extreme=extreme,
        boundary=np.zeros(n_units, dtype=bool),
        failed=np.zeros(n_units, dtype=bool),
    )


def _score_continuous(
    method: ScoringMethod,
    model: ConvergedModel,
    units: _ScoringUnits,
    items: Sequence[ItemModel],
    priors: list[tuple[NDArray[np.float64], NDArray[np.float64]]],
    theta_lim: tuple[float, float],
    executor: ParallelExecutor,
) -> _UnitScores:
    n_categories = units.table.n_categories
    results = executor.map(
        lambda u: _score_one(
            method,
            items,
            n_categories,
            units.table.patterns[u],
            priors[units.group[u]],
            theta_lim,
        ),
        range(units.table.n_patterns),
    )
    n_factors = model.n_factors
    if not results:
        empty = np.zeros((0, n_factors))
        flags = np.zeros(0, dtype=bool)
        return _UnitScores(empty, empty.copy(), flags, flags, flags)
    return _UnitScores(
        scores=np.vstack([r[0] for r in results]),
        se=np.vstack([r[1] for r in results]),
        extreme=np.array([r[2] for r in results], dtype=bool),
        boundary=np.array([r[3] for r in results], dtype=bool),
        failed=np.array([r[4] for r in results], dtype=bool),
    )


def sum_score_likelihood(
    items: Sequence[ItemModel], theta: NDArray[np.float64]
) -> NDArray[np.float64]:
    """
    Lord-Wingersky recursion: P(sum score = s | theta_q), shape
    (max_score + 1, n_nodes), with the sum score counted as the total of
    category indices.
    """
    n_categories = np.array(
        [item.n_categories for item in items], dtype=np.int64
    )
    traces = np.zeros((len(items), theta.shape[0], int(n_categories.max())))
    for j, item in enumerate(items):
        traces[j, :, : item.n_categories] = item.probability_trace(theta)
    result: NDArray[np.float64] = lord_wingersky(traces, n_categories).T
    return result


def _sum_score_tables(
    model: ConvergedModel,
    items: Sequence[ItemModel],
    grid: QuadratureGrid,
    priors: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64], pd.DataFrame]:
    """EAP and SE per (group, sum score), plus the summary table."""
    theta = grid.theta
    likelihood = sum_score_likelihood(items, theta)
    n_scores = likelihood.shape[0]
    sums = model.data.sum_scores()
    group_index = model.data.group_index
    eap = np.empty((len(priors), n_scores, model.n_factors))
    se = np.empty_like(eap)
    rows = []
    for g, weights in enumerate(priors):
        joint = likelihood * weights[np.newaxis, :]
        marginal = joint.sum(axis=1)
        posterior = joint / np.clip(marginal, 1e-300, None)[:, np.newaxis]
        eap[g] = posterior @ theta
        se[g] = np.sqrt(np.maximum(posterior @ theta**2 - eap[g] ** 2, 0.0))
        observed = np.bincount(
            sums[group_index == g], minlength=n_scores
        )[:n_scores]
        n_group = observed.sum()
        for s in range(n_scores):
            row: dict[str, object] = {
                "group": model.data.group_levels[g],
                "sum_score": s,
                "observed": int(observed[s]),
                "expected": float(n_group * marginal[s]),
            }
            for d in range(model.n_factors):
                row[f"F{d + 1}"] = eap[g, s, d]
                row[f"SE_F{d + 1}"] = se[g, s, d]
            rows.append(row)
    return eap, se, pd.DataFrame(rows)


def _score_eapsum(
    model: ConvergedModel,
    units: _ScoringUnits,
    items: Sequence[ItemModel],
    grid: QuadratureGrid,
    priors: NDArray[np.float64],
) -> tuple[_UnitScores, pd.DataFrame]:
    if model.data.has_missing or units.table.has_missing:
        raise ConfigurationError("EAPsum scoring requires complete data")
    eap, se, table = _sum_score_tables(model, items, grid, priors)
    sums = units.table.patterns.sum(axis=1)
    n_units = units.table.n_patterns
    flags = np.zeros(n_units, dtype=bool)
    extreme = np.array(
        [
            _extreme_direction(p, units.table.n_categories) != 0
            for p in units.table.patterns
        ],
        dtype=bool,
    )
    scores = _UnitScores(
        scores=eap[units.group, sums],
        se=se[units.group, sums],
        extreme=extreme,
        boundary=flags,
        failed=flags.copy(),
    )
    return scores, table


def _score_units(
    model: ConvergedModel,
    method: ScoringMethod,
    units: _ScoringUnits,
    mean: NDArray[np.float64] | None,
    cov: NDArray[np.float64] | None,
    theta_lim: tuple[float, float],
    executor: ParallelExecutor,
) -> tuple[_UnitScores, pd.DataFrame | None]:
    items = model.item_set.items
    if method in (ScoringMethod.EAP, ScoringMethod.EAPSUM):
        grid = _scoring_grid(model)
        priors = _grid_priors(model, grid, mean, cov)
        if method == ScoringMethod.EAPSUM:
            return _score_eapsum(model, units, items, grid, priors)
        return _score_eap(units, items, grid, priors), None
    return (
        _score_continuous(
            method,
            model,
            units,
            items,
            _normal_priors(model, mean, cov),
            theta_lim,
            executor,
        ),
        None,
    )


def _draw_model(
    model: ConvergedModel,
    covariance: NDArray[np.float64],
    rng: np.random.Generator,
) -> ConvergedModel:
    """Model whose parameters are one draw from N(x_hat, covariance)."""
    x_hat = model.item_set.pack()
    for _ in range(MAX_DRAW_ATTEMPTS):
        draw = rng.multivariate_normal(x_hat, covariance, method="eigh")
        item_set = model.item_set.with_values(draw)
        if all(is_positive_definite(g.cov()) for g in item_set.groups):
            return dataclasses.replace(
                model, item_set=item_set, information=None
            )
    raise ConfigurationError(
        "Could not draw parameters with positive definite group "
        f"covariances in {MAX_DRAW_ATTEMPTS} attempts"
    )


def _score_imputed(
    model: ConvergedModel,
    method: ScoringMethod,
    units: _ScoringUnits,
    n_imputations: int,
    mean: NDArray[np.float64] | None,
    cov: NDArray[np.float64] | None,
    theta_lim: tuple[float, float],
    executor: ParallelExecutor,
    seed: int,
) -> _UnitScores:
    """
    Rubin's rules over n_imputations parameter draws:

        T = W + (1 + 1/M) B

    with W the mean within-draw variance and B the between-draw variance
    of the scores.
    """
    if model.information is None:
        raise InformationMatrixNotComputedError("fscores(MI=...)")
    rng = get_rng(seed)
    covariance = model.information.covariance
    draws = [
        _draw_model(model, covariance, rng) for _ in range(n_imputations)
    ]
    results = executor.map(
        lambda drawn: _score_units(
            drawn, method, units, mean, cov, theta_lim, SerialExecutor()
        )[0],
        draws,
    )
    scores = np.stack([r.scores for r in results])
    variances = np.stack([r.se**2 for r in results])
    within = np.nanmean(variances, axis=0)
    between = (
        np.var(scores, axis=0, ddof=1)
        if n_imputations > 1
        else np.zeros_like(within)
    )
    total = within + (1.0 + 1.0 / n_imputations) * between
    return _UnitScores(
        scores=scores.mean(axis=0),
        se=np.sqrt(total),
        extreme=np.any([r.extreme for r in results], axis=0),
        boundary=np.any([r.boundary for r in results], axis=0),
        failed=np.any([r.failed for r in results], axis=0),
    )


def empirical_reliability(
    scores: NDArray[np.float64],
    se: NDArray[np.float64],
    weights: NDArray[np.float64] | None = None,
) -> NDArray[np.float64]:
    """
    Per-factor reliability var(F) / (var(F) + mean(SE^2)), over rows with
    finite scores and SEs.
    """
    if weights is None:
        weights = np.ones(scores.shape[0])
    reliability = np.full(scores.shape[1], np.nan)
    for d in range(scores.shape[1]):
        keep = np.isfinite(scores[:, d]) & np.isfinite(se[:, d])
        w = weights[keep]
        if w.sum() <= 0:
            continue
        f = scores[keep, d]
        mean_f = np.average(f, weights=w)
        var_f = np.average((f - mean_f) ** 2, weights=w)
        error = np.average(se[keep, d] ** 2, weights=w)
        if var_f + error > 0:
            reliability[d] = var_f / (var_f + error)
    return reliability


def fscores(
    model: ConvergedModel,
    method: ScoringMethod | str = ScoringMethod.EAP,
    *,
    response_pattern: ArrayLike | None = None,
    full_scores: bool = True,
    return_se: bool = True,
    mean: ArrayLike | None = None,
    cov: ArrayLike | None = None,
    theta_lim: tuple[float, float] = DEFAULT_SCORE_THETA_LIM,
    n_imputations: int = 0,
    reliability: bool = False,
    executor: ParallelExecutor | None = None,
    seed: int | None = None,
) -> FactorScores:
    """
    Estimate latent trait scores from a fitted model.

    EAP:
        θ_EAP = Σ_q θ_q P(θ_q | responses), SE = posterior SD.
    MAP:
        argmax log L(θ) + log φ(θ; μ_g, Σ_g), SE from the test information
        plus prior precision.
    ML:
        argmax log L(θ); all-minimum/all-maximum patterns get -inf/+inf,
        are flagged and raise NumericDegeneracyWarning.
    WLE:
        Warm's weighted likelihood; SE from the test information.
    EAPsum:
        Posterior mean given the sum score (Lord-Wingersky recursion).

    Args:
        model: Converged model.
        method: EAP, MAP, ML, WLE or EAPsum.
        response_pattern: Patterns to score instead of the fitted data,
            shape (n, n_items) or (n_items,), in the coding of the fitted
            data (e.g. 1..5 for Likert items), NaN for missing. Scored
            under the reference group.
        full_scores: One row per respondent; otherwise one row per
            distinct (pattern, group) pair with its frequency.
        return_se: Include standard errors.
        mean: Prior mean override for EAP/MAP/EAPsum.
        cov: Prior covariance override for EAP/MAP/EAPsum.
        theta_lim: Search limits for MAP, ML and WLE.
        n_imputations: Number of parameter draws for multiple-imputation
            scoring (0 disables it). Needs an information matrix.
        reliability: Compute empirical reliability per factor.
        executor: Runs per-pattern and per-draw scoring tasks.
        seed: Seed for the imputation draws; defaults to the fit's seed.

    Returns:
        FactorScores.

    Raises:
        InformationMatrixNotComputedError: If n_imputations > 0 and the
            model has no information matrix.
        ConfigurationError: For EAPsum on incomplete data, EAPsum with
            imputations, or an infeasible scoring grid.
    """
    try:
        method = ScoringMethod(method)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    if n_imputations < 0:
        raise ConfigurationError(
            f"n_imputations must be >= 0, got {n_imputations}"
        )
    if n_imputations and method == ScoringMethod.EAPSUM:
        raise ConfigurationError("EAPsum does not support imputed scoring")
    if not theta_lim[0] < theta_lim[1]:
        raise ConfigurationError(f"theta_lim must be increasing: {theta_lim}")
    executor = executor or SerialExecutor()
    mean_arr = None if mean is None else np.atleast_1d(
        np.asarray(mean, dtype=np.float64)
    )
    cov_arr = None if cov is None else np.atleast_2d(
        np.asarray(cov, dtype=np.float64)
    )

    units = (
        _fitted_units(model)
        if response_pattern is None
        else _supplied_units(model, response_pattern)
    )
    logger.info(
        f"Scoring {units.table.n_patterns} patterns with {method.value}"
        + (f" over {n_imputations} imputations" if n_imputations else "")
    )

    sum_table = None
    if n_imputations:
        result = _score_imputed(
            model,
            method,
            units,
            n_imputations,
            mean_arr,
            cov_arr,
            theta_lim,
            executor,
            model.config.technical.seed if seed is None else seed,
        )
    else:
        result, sum_table = _score_units(
            model, method, units, mean_arr, cov_arr, theta_lim, executor
        )

    if method == ScoringMethod.ML and result.extreme.any():
        message = (
            f"{int(units.counts[result.extreme].sum())} respondents have "
            "all-minimum or all-maximum patterns; their ML scores are "
            "infinite"
        )
        logger.warning(message)
        warnings.warn(message, NumericDegeneracyWarning, stacklevel=2)
    if result.boundary.any():
        logger.warning(
            f"{int(result.boundary.sum())} patterns scored on the theta "
            f"limits {theta_lim}"
        )

    rxx = (
        empirical_reliability(result.scores, result.se, units.counts)
        if reliability
        else None
    )

    label = f"MI-{method.value}" if n_imputations else method.value
    if full_scores and units.respondent_unit is not None:
        idx = units.respondent_unit
        return FactorScores(
            method=label,
            scores=result.scores[idx],
            se=result.se[idx] if return_se else None,
            extreme_pattern=result.extreme[idx],
            boundary=result.boundary[idx],
            optimizer_failed=result.failed[idx],
            reliability=rxx,
            sum_score_table=sum_table,
        )
    in_table = response_pattern is None
    levels = model.data.group_levels
    return FactorScores(
        method=label,
        scores=result.scores,
        se=result.se if return_se else None,
        extreme_pattern=result.extreme,
        boundary=result.boundary,
        optimizer_failed=result.failed,
        patterns=units.table.patterns,
        frequencies=units.counts if in_table else None,
        groups=(
            tuple(levels[g] for g in units.group) if in_table else None
        ),
        reliability=rxx,
        sum_score_table=sum_table,
    )
