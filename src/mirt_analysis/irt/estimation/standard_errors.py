"""
Standard-error engine.

Each strategy turns a converged model into an information matrix over the
canonical free parameters (internal scale):

- Fisher: expected information over every possible response pattern
- BL: Bock-Lieberman numerical Hessian of the marginal log-likelihood
- complete: complete-data Hessian at the final E-step (EM only)
- SEM: supplemented EM, correcting complete information with the DM rate
  matrix estimated from the stored EM trajectory (EM only)
- MHRM: stochastic information from MH-RM stage 3
- crossprod: outer products of per-pattern score vectors
- Louis: complete information minus the conditional score variance
- sandwich: Louis bread around a crossprod meat

Independent per-parameter work is handed to the executor.
"""

import itertools
import logging
import warnings
from collections.abc import Callable, Sequence
from functools import partial

import numpy as np
from numpy.typing import NDArray

from mirt_analysis.core.data_models import PatternTable, ResponseMatrix
from mirt_analysis.core.errors import (
    ConfigurationError,
    IdentifiabilityWarning,
)
from mirt_analysis.core.parallel import (
    ParallelExecutor,
    SerialExecutor,
)
from mirt_analysis.core.utils import safe_log
from mirt_analysis.irt.estimation.data_models import (
    ConvergedModel,
    InformationMatrix,
)
from mirt_analysis.irt.estimation.em import EMEstimator
from mirt_analysis.irt.estimation.enums import EstimationMethod, SEType
from mirt_analysis.irt.estimation.estep import (
    EStepResult,
    compute_pattern_log_likelihood,
    e_step,
    marginal_log_likelihood,
)
from mirt_analysis.irt.estimation.mhrm import MHRMEstimator
from mirt_analysis.irt.estimation.parameters import (
    GroupDistribution,
    ItemParameterSet,
)
from mirt_analysis.irt.estimation.quadrature import QuadratureGrid
from mirt_analysis.irt.items.base import GRADIENT_STEP

logger = logging.getLogger(__name__)

BL_STEP = 1e-3
# Eigenvalues below this fraction of the largest count as zero
EIGENVALUE_TOLERANCE = 1e-10
# SEM skips this many early EM cycles and any cycle whose perturbation is
# below SEM_MIN_DELTA (relative to the estimate)
SEM_SKIP_CYCLES = 3
SEM_MIN_DELTA = 1e-5


def _steps(x: NDArray[np.float64], base: float) -> NDArray[np.float64]:
    result: NDArray[np.float64] = base * np.maximum(1.0, np.abs(x))
    return result


def _scatter(
    target: NDArray[np.float64],
    canonical: NDArray[np.int64],
    block_matrix: NDArray[np.float64],
) -> None:
    """Add a block's slot-level matrix into the canonical-level target."""
    mask = canonical >= 0
    if not mask.any():
        return
    idx = canonical[mask]
    np.add.at(
        target,
        (idx[:, np.newaxis], idx[np.newaxis, :]),
        block_matrix[np.ix_(mask, mask)],
    )


def finalize_information(
    matrix: NDArray[np.float64],
    se_type: SEType,
    labels: Sequence[str],
    symmetric: bool = True,
    covariance: NDArray[np.float64] | None = None,
) -> InformationMatrix:
    """
    Symmetrise (optionally), check positive definiteness and invert.

    A matrix that is not positive definite is still returned, with an
    IdentifiabilityWarning and a pseudo-inverse covariance.
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    if symmetric:
        matrix = 0.5 * (matrix + matrix.T)
    finite = bool(np.all(np.isfinite(matrix)))
    if finite and matrix.size:
        eigenvalues = np.linalg.eigvalsh(0.5 * (matrix + matrix.T))
        largest = float(np.max(np.abs(eigenvalues)))
        smallest = float(np.min(np.abs(eigenvalues)))
        positive_definite = bool(
            eigenvalues.min() > EIGENVALUE_TOLERANCE * max(largest, 1.0)
        )
        condition = largest / smallest if smallest > 0 else np.inf
    else:
        positive_definite = False
        condition = np.inf

    if covariance is None:
        if positive_definite:
            covariance = np.linalg.inv(matrix)
        elif finite:
            covariance = np.linalg.pinv(matrix)
        else:
            covariance = np.full(matrix.shape, np.nan)
    if not positive_definite:
        message = (
            f"{se_type.value} information matrix is not positive definite "
            f"(condition number {condition:.3g}); standard errors may be "
            "unreliable"
        )
        logger.warning(message)
        warnings.warn(message, IdentifiabilityWarning, stacklevel=3)

    return InformationMatrix(
        matrix=matrix,
        covariance=covariance,
        se_type=se_type,
        labels=tuple(labels),
        is_positive_definite=positive_definite,
        condition_number=float(condition),
    )


class InformationContext:
    """
    Read-only view of a converged model shared by the SE strategies.
    """

    def __init__(
        self,
        model: ConvergedModel,
        data: ResponseMatrix,
        se_type: SEType,
        executor: ParallelExecutor,
    ) -> None:
        self.model = model
        self.data = data
        self.se_type = se_type
        self.executor = executor
        self.item_set = model.item_set
        self.patterns = (
            model.patterns if data is model.data else data.tabulate()
        )
        self.x = model.item_set.pack()
        self.n_free = model.item_set.n_free_parameters

    def require_quadrature(self) -> QuadratureGrid:
        if self.model.grid is None:
            raise ConfigurationError(
                f"SE type '{self.se_type.value}' needs a quadrature grid"
            )
        return self.model.grid

    def require_grid(self) -> NDArray[np.float64]:
        return self.require_quadrature().theta

    def require_em(self) -> None:
        if self.model.method != EstimationMethod.EM:
            raise ConfigurationError(
                f"SE type '{self.se_type.value}' requires method='EM'"
            )

    def pattern_log_likelihood(
        self, x: NDArray[np.float64], patterns: PatternTable | None = None
    ) -> NDArray[np.float64]:
        """Per-pattern marginal log-likelihood at x, shape (P, G)."""
        if patterns is None:
            patterns = self.patterns
        work = self.item_set.with_values(x)
        log_lik = compute_pattern_log_likelihood(
            patterns, work.items, self.require_grid()
        )
        return marginal_log_likelihood(
            log_lik, self.model.prior_weights(work)
        )

    def log_posterior(self, x: NDArray[np.float64]) -> float:
        """Total marginal log-likelihood plus item log priors at x."""
        freq = self.patterns.frequencies
        pattern_ll = self.pattern_log_likelihood(x)
        present = freq > 0
        work = self.item_set.with_values(x)
        log_prior = sum(
            block.log_prior(block.values) for block in work.blocks
        )
        return float(np.sum(freq[present] * pattern_ll[present])) + log_prior

    def pattern_scores(
        self, patterns: PatternTable | None = None
    ) -> NDArray[np.float64]:
        """
        Central-difference scores of every pattern's marginal
        log-likelihood, shape (n_free, P, G).
        """
        steps = _steps(self.x, GRADIENT_STEP)

        def difference(i: int) -> NDArray[np.float64]:
            x_plus = self.x.copy()
            x_minus = self.x.copy()
            x_plus[i] += steps[i]
            x_minus[i] -= steps[i]
            result: NDArray[np.float64] = (
                self.pattern_log_likelihood(x_plus, patterns)
                - self.pattern_log_likelihood(x_minus, patterns)
            ) / (2 * steps[i])
            return result

        return np.stack(self.executor.map(difference, range(self.n_free)))

    def final_e_step(self) -> EStepResult:
        return e_step(
            self.patterns,
            self.item_set.items,
            self.require_grid(),
            self.model.prior_weights(),
        )


def _group_grid_objective(
    group: GroupDistribution,
    values: NDArray[np.float64],
    prior_weights: Callable[
        [NDArray[np.float64], NDArray[np.float64]], NDArray[np.float64]
    ],
    mass: NDArray[np.float64],
) -> float:
    """Expected log of the discretised group prior under node mass."""
    cov = group.cov(values)
    try:
        weights = prior_weights(group.mean(values), cov)
    except (ValueError, np.linalg.LinAlgError):
        return -np.inf
    return float(np.sum(mass * safe_log(weights)))


def second_difference_hessian(
    func: Callable[[NDArray[np.float64]], float],
    x: NDArray[np.float64],
    indices: Sequence[int],
    base_step: float,
    executor: ParallelExecutor,
) -> NDArray[np.float64]:
    """
    Hessian of func over indices by four-point second differences:

        H_ij = [f(x + h_i + h_j) - f(x + h_i - h_j)
                - f(x - h_i + h_j) + f(x - h_i - h_j)] / (4 h_i h_j)

    Returns a full (len(x), len(x)) matrix, zero outside indices.
    """
    steps = _steps(x, base_step)
    pairs = [
        (i, j) for i, j in itertools.combinations_with_replacement(indices, 2)
    ]

    def entry(pair: tuple[int, int]) -> float:
        i, j = pair
        values = []
        for si, sj in ((1, 1), (1, -1), (-1, 1), (-1, -1)):
            shifted = x.copy()
            shifted[i] += si * steps[i]
            shifted[j] += sj * steps[j]
            values.append(func(shifted))
        return (values[0] - values[1] - values[2] + values[3]) / (
            4 * steps[i] * steps[j]
        )

    hessian = np.zeros((len(x), len(x)))
    for (i, j), value in zip(pairs, executor.map(entry, pairs)):
        hessian[i, j] = hessian[j, i] = value
    return hessian


def fisher_information(context: InformationContext) -> NDArray[np.float64]:
    """Expected information summed over all possible response patterns."""
    context.require_grid()
    n_categories = context.patterns.n_categories
    n_patterns = int(np.prod([int(k) for k in n_categories]))
    max_patterns = context.model.config.technical.fisher_max_patterns
    if n_patterns > max_patterns:
        raise ConfigurationError(
            f"Fisher information needs all {n_patterns} response patterns, "
            f"more than fisher_max_patterns={max_patterns}"
        )
    grid_axes = [np.arange(k) for k in n_categories]
    all_patterns = np.array(list(itertools.product(*grid_axes)))
    table = PatternTable.from_patterns(all_patterns, n_categories)
    scores = context.pattern_scores(table)
    probabilities = np.exp(context.pattern_log_likelihood(context.x, table))
    group_sizes = context.patterns.frequencies.sum(axis=0)
    weights = probabilities * group_sizes[np.newaxis, :]
    result: NDArray[np.float64] = np.einsum(
        "ipg,jpg,pg->ij", scores, scores, weights
    )
    return result


def crossprod_information(
    context: InformationContext,
) -> NDArray[np.float64]:
    """Sum over patterns and groups of f * s s^T."""
    context.require_grid()
    scores = context.pattern_scores()
    result: NDArray[np.float64] = np.einsum(
        "ipg,jpg,pg->ij", scores, scores, context.patterns.frequencies
    )
    return result


def bock_lieberman_information(
    context: InformationContext,
) -> NDArray[np.float64]:
    """Negative numerical Hessian of the marginal log-likelihood."""
    context.require_grid()
    result: NDArray[np.float64] = -second_difference_hessian(
        context.log_posterior,
        context.x,
        list(range(context.n_free)),
        BL_STEP,
        context.executor,
    )
    return result


def complete_information(
    context: InformationContext, e_result: EStepResult | None = None
) -> NDArray[np.float64]:
    """
    Negative complete-data Hessian at the final E-step.

    Item blocks use the expected category counts; group blocks use the
    expected node mass against the discretised group prior.
    """
    context.require_em()
    theta = context.require_grid()
    if e_result is None:
        e_result = context.final_e_step()
    item_set = context.item_set
    info = np.zeros((context.n_free, context.n_free))

    item_hessians = context.executor.map(
        lambda j: item_set.items[j].objective_hessian(
            item_set.items[j].values, theta, e_result.expected_counts[j]
        ),
        range(item_set.n_items),
    )
    for j, hessian in enumerate(item_hessians):
        _scatter(info, item_set.index.block_canonical(j), -hessian)

    grid = context.require_quadrature()
    for g, group in enumerate(item_set.groups):
        free = group.free_indices
        if free.size == 0 or context.model.empirical_weights is not None:
            continue
        objective = partial(
            _group_grid_objective,
            group,
            prior_weights=grid.prior_weights,
            mass=e_result.node_mass[g],
        )
        hessian = second_difference_hessian(
            objective,
            group.values.copy(),
            list(free),
            BL_STEP,
            SerialExecutor(),
        )
        _scatter(
            info,
            item_set.index.block_canonical(item_set.n_items + g),
            -hessian,
        )
    return info


def _dm_row(
    estimator: EMEstimator,
    patterns: PatternTable,
    item_set: ItemParameterSet,
    x_hat: NDArray[np.float64],
    mapped_hat: NDArray[np.float64],
    trajectory: Sequence[NDArray[np.float64]],
    param: int,
    tolerance: float,
    empirical_weights: NDArray[np.float64] | None,
) -> tuple[NDArray[np.float64], bool]:
    """
    One row of the SEM rate matrix, d M_j / d x_param.

    Following Meng and Rubin, parameter `param` alone is set to its value
    at successive EM cycles, one EM cycle is run from there, and the rate
    is the change of the mapped point against M(x_hat). Early cycles are
    skipped. The row is accepted once every element changes by less than
    tolerance between two successive cycles.
    """
    start = SEM_SKIP_CYCLES if len(trajectory) > SEM_SKIP_CYCLES + 2 else 0
    min_delta = SEM_MIN_DELTA * max(1.0, abs(float(x_hat[param])))
    previous: NDArray[np.float64] | None = None
    row = np.zeros(len(x_hat))
    for point in trajectory[start:]:
        delta = point[param] - x_hat[param]
        if abs(delta) < min_delta:
            continue
        x = x_hat.copy()
        x[param] = point[param]
        mapped = estimator.em_map(patterns, item_set, x, empirical_weights)
        row = (mapped - mapped_hat) / delta
        if previous is not None and np.max(np.abs(row - previous)) < tolerance:
            return row, True
        previous = row
    return row, False


def sem_information(context: InformationContext) -> NDArray[np.float64]:
    """
    Supplemented EM: I_obs = (I - DM) I_complete, with DM_ij = dM_j/dx_i
    estimated per parameter from the stored EM trajectory.
    """
    context.require_em()
    model = context.model
    if not model.history:
        raise ConfigurationError(
            "SEM standard errors need the EM trajectory; fit with se=True "
            "and se_type='SEM'"
        )
    e_result = context.final_e_step()
    complete = complete_information(context, e_result)
    estimator = EMEstimator(model.config, model.grid, SerialExecutor())
    mapped_hat = estimator.em_map(
        context.patterns,
        context.item_set,
        context.x,
        model.empirical_weights,
    )
    rows = context.executor.map(
        partial(
            _dm_row,
            estimator,
            context.patterns,
            context.item_set,
            context.x,
            mapped_hat,
            model.history,
            tolerance=model.config.technical.se_tolerance,
            empirical_weights=model.empirical_weights,
        ),
        range(context.n_free),
    )
    dm = np.vstack([row for row, _ in rows])
    unconverged = [
        context.item_set.free_parameter_labels[i]
        for i, (_, converged) in enumerate(rows)
        if not converged
    ]
    if unconverged:
        logger.warning(f"SEM rows did not stabilise for {unconverged}")
    result: NDArray[np.float64] = (np.eye(context.n_free) - dm) @ complete
    return result


def _complete_scores(
    context: InformationContext, group: int
) -> NDArray[np.float64]:
    """
    Complete-data score of every pattern at every node for one group,
    shape (n_free, P, n_nodes).
    """
    theta = context.require_grid()
    item_set = context.item_set
    patterns = context.patterns
    n_nodes = theta.shape[0]
    scores = np.zeros((context.n_free, patterns.n_patterns, n_nodes))
    steps = _steps(context.x, GRADIENT_STEP)

    for j, item in enumerate(item_set.items):
        canonical = item_set.index.block_canonical(j)
        indicators = patterns.indicators[j]
        for param_idx in np.flatnonzero(canonical >= 0):
            c = canonical[param_idx]
            h = steps[c]
            plus = item.values.copy()
            minus = item.values.copy()
            plus[param_idx] += h
            minus[param_idx] -= h
            d_log = (
                safe_log(item.trace(plus, theta))
                - safe_log(item.trace(minus, theta))
            ) / (2 * h)
            scores[c] += indicators @ d_log.T

    grid = context.model.grid
    dist = item_set.groups[group]
    canonical = item_set.index.block_canonical(item_set.n_items + group)
    if grid is not None and context.model.empirical_weights is None:
        for param_idx in np.flatnonzero(canonical >= 0):
            c = canonical[param_idx]
            h = steps[c]
            plus = dist.values.copy()
            minus = dist.values.copy()
            plus[param_idx] += h
            minus[param_idx] -= h
            d_log = (
                safe_log(grid.prior_weights(dist.mean(plus), dist.cov(plus)))
                - safe_log(
                    grid.prior_weights(dist.mean(minus), dist.cov(minus))
                )
            ) / (2 * h)
            scores[c] += d_log[np.newaxis, :]
    return scores


def louis_information(context: InformationContext) -> NDArray[np.float64]:
    """
    Louis (1982): complete information minus the posterior variance of the
    complete-data score, summed over patterns.
    """
    context.require_grid()
    e_result = context.final_e_step()
    complete = complete_information(context, e_result)
    missing = np.zeros_like(complete)
    for g in range(context.item_set.n_groups):
        freq = context.patterns.frequencies[:, g]
        if not np.any(freq > 0):
            continue
        scores = _complete_scores(context, g)
        posterior = e_result.posteriors[g]
        weighted = posterior * freq[:, np.newaxis]
        expected = np.einsum("ipq,pq->ip", scores, posterior)
        missing += np.einsum("ipq,jpq,pq->ij", scores, scores, weighted)
        missing -= np.einsum("ip,jp,p->ij", expected, expected, freq)
    result: NDArray[np.float64] = complete - missing
    return result


def mhrm_information(context: InformationContext) -> NDArray[np.float64]:
    model = context.model
    if model.method == EstimationMethod.MHRM and model.information is not None:
        if model.information.se_type == SEType.MHRM:
            return model.information.matrix
    estimator = MHRMEstimator(model.config, context.executor)
    return estimator.information_at(context.data, context.item_set)


def compute_information(
    model: ConvergedModel,
    data: ResponseMatrix | None = None,
    se_type: SEType | str | None = None,
    executor: ParallelExecutor | None = None,
) -> InformationMatrix:
    """
    Compute an information matrix for a converged model.

    Args:
        model: Converged model.
        data: Response data; defaults to the data the model was fitted to.
        se_type: Strategy; defaults to the model's configured SE type.
        executor: Runs independent per-parameter work.

    Returns:
        InformationMatrix over the model's canonical free parameters.

    Raises:
        ConfigurationError: If the strategy is incompatible with the fit
            (SEM/complete after MH-RM, Fisher with too many patterns).
    """
    se_type = SEType(se_type) if se_type is not None else (
        model.config.se_type
    )
    executor = executor or SerialExecutor()
    context = InformationContext(
        model, model.data if data is None else data, se_type, executor
    )
    logger.info(
        f"Computing {se_type.value} information for {context.n_free} "
        "parameters"
    )

    if se_type == SEType.SANDWICH:
        bread = louis_information(context)
        meat = crossprod_information(context)
        bread_inv = np.linalg.pinv(bread)
        covariance = bread_inv @ meat @ bread_inv
        if model.config.technical.symmetric:
            covariance = 0.5 * (covariance + covariance.T)
        return finalize_information(
            np.linalg.pinv(covariance),
            se_type,
            model.item_set.free_parameter_labels,
            model.config.technical.symmetric,
            covariance=covariance,
        )

    strategies: dict[
        SEType, Callable[[InformationContext], NDArray[np.float64]]
    ] = {
        SEType.FISHER: fisher_information,
        SEType.BL: bock_lieberman_information,
        SEType.COMPLETE: complete_information,
        SEType.SEM: sem_information,
        SEType.MHRM: mhrm_information,
        SEType.CROSSPROD: crossprod_information,
        SEType.LOUIS: louis_information,
    }
    matrix = strategies[se_type](context)
    return finalize_information(
        matrix,
        se_type,
        model.item_set.free_parameter_labels,
        model.config.technical.symmetric,
    )
