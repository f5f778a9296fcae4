"""
Marginal maximum likelihood estimation via the EM algorithm.

Each cycle runs an E-step over the quadrature grid, then maximises the
expected complete-data log-likelihood (plus log priors) for every block of
items linked by equality constraints, then updates free latent means and
covariances in closed form. Ramsay acceleration may be applied to the
parameter trajectory, and the latent density may be estimated as an
empirical histogram for unidimensional models.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, replace
from functools import partial

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import minimize

from mirt_analysis.core.data_models import PatternTable, ResponseMatrix
from mirt_analysis.core.errors import ConvergenceWarning
from mirt_analysis.core.parallel import CancellationToken, ParallelExecutor
from mirt_analysis.core.utils import is_positive_definite
from mirt_analysis.irt.estimation.base import EstimationOutcome, IRTEstimator
from mirt_analysis.irt.estimation.config import (
    ConvergenceConfig,
    EstimationConfig,
)
from mirt_analysis.irt.estimation.enums import (
    ConvergenceStatus,
    EMState,
    Optimizer,
)
from mirt_analysis.irt.estimation.estep import (
    EStepResult,
    e_step,
    group_prior_weights,
)
from mirt_analysis.irt.estimation.parameters import ItemParameterSet
from mirt_analysis.irt.estimation.quadrature import QuadratureGrid
from mirt_analysis.irt.items.base import ItemModel

logger = logging.getLogger(__name__)

# Ramsay acceleration starts after this many cycles
ACCELERATION_START_CYCLE = 3
ACCELERATION_FLOOR = -5.0
# Relative log-likelihood drop reported as non-monotone EM
LL_DECREASE_TOLERANCE = 1e-8
# M-step gradient tolerance inside the SEM map x -> M(x)
SEM_OPTIMIZER_TOLERANCE = 1e-10


@dataclass(frozen=True)
class BlockUpdate:
    """Optimised canonical parameters of one constraint-connected block."""

    indices: NDArray[np.int64]
    values: NDArray[np.float64]
    success: bool


def optimize_item_block(
    item_set: ItemParameterSet,
    component: Sequence[int],
    x: NDArray[np.float64],
    expected_counts: Sequence[NDArray[np.float64]],
    theta: NDArray[np.float64],
    convergence: ConvergenceConfig,
) -> BlockUpdate:
    """
    Maximise the expected log-likelihood plus log priors of a block of
    items that share constrained parameters.

    Reads item_set but never writes to it, so blocks can run concurrently.
    If the optimiser does not improve the objective the starting values are
    kept.
    """
    index = item_set.index
    canonical = [index.block_canonical(item_idx) for item_idx in component]
    indices = np.unique(
        np.concatenate([c[c >= 0] for c in canonical])
    ).astype(np.int64)
    x0 = x[indices]
    if indices.size == 0:
        return BlockUpdate(indices, x0, True)

    # (item, free mask, position of each free slot in the local vector, counts)
    local = [
        (
            item_set.items[item_idx],
            c >= 0,
            np.searchsorted(indices, c[c >= 0]),
            expected_counts[item_idx],
        )
        for item_idx, c in zip(component, canonical)
    ]

    def item_values(
        item: ItemModel,
        mask: NDArray[np.bool_],
        positions: NDArray[np.intp],
        x_local: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        values = item.values.copy()
        values[mask] = x_local[positions]
        return values

    def negative_objective(x_local: NDArray[np.float64]) -> float:
        total = 0.0
        for item, mask, positions, counts in local:
            values = item_values(item, mask, positions, x_local)
            total += item.objective(values, theta, counts)
        return -total if np.isfinite(total) else np.inf

    def negative_gradient(x_local: NDArray[np.float64]) -> NDArray[np.float64]:
        grad = np.zeros(indices.size)
        for item, mask, positions, counts in local:
            values = item_values(item, mask, positions, x_local)
            item_grad = item.objective_gradient(values, theta, counts)
            np.add.at(grad, positions, item_grad[mask])
        return -grad

    bounds = []
    for canonical_idx in indices:
        block, param_idx = item_set.free_parameter_slot(int(canonical_idx))
        bounds.append(block.internal_bounds(param_idx))

    method = convergence.optimizer
    if method is None:
        bounded = any(
            item_set.items[j].has_bounded_free_parameters for j in component
        )
        method = Optimizer.LBFGSB if bounded else Optimizer.BFGS

    options: dict[str, float | int] = {
        "maxiter": convergence.max_optimizer_iterations,
    }
    if method == Optimizer.NELDER_MEAD:
        options["xatol"] = convergence.optimizer_tolerance
        options["fatol"] = convergence.optimizer_tolerance
    else:
        options["gtol"] = convergence.optimizer_tolerance
    if method == Optimizer.LBFGSB:
        # relative objective decrease; L-BFGS-B otherwise stops near 2e-9
        options["ftol"] = convergence.optimizer_tolerance * 1e-2

    jac = None if method == Optimizer.NELDER_MEAD else negative_gradient
    try:
        with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
            start = negative_objective(x0)
            result = minimize(
                fun=negative_objective,
                x0=x0,
                method=method.value,
                jac=jac,
                bounds=bounds if method == Optimizer.LBFGSB else None,
                options=options,
            )
    except (ValueError, ArithmeticError, np.linalg.LinAlgError) as e:
        labels = [item_set.items[j].label for j in component]
        logger.warning(f"M-step failed for {labels}: {e}")
        return BlockUpdate(indices, x0, False)

    if not np.all(np.isfinite(result.x)) or not np.isfinite(result.fun):
        return BlockUpdate(indices, x0, False)
    if result.fun > start:
        return BlockUpdate(indices, x0, True)
    return BlockUpdate(indices, np.asarray(result.x, dtype=np.float64), True)


class EMEstimator(IRTEstimator):
    """
    Bock-Aitkin EM estimator over a rectangular quadrature grid.

    Convergence is declared when the absolute change in marginal
    log-likelihood falls below the tolerance, or, when SEM standard errors
    are requested, when the largest absolute parameter change does. If the
    cycle limit is reached the best iterate seen is returned.
    """

    def __init__(
        self,
        config: EstimationConfig | None = None,
        grid: QuadratureGrid | None = None,
        executor: ParallelExecutor | None = None,
        cancel: CancellationToken | None = None,
    ):
        """
        Initialize EM estimator.

        Args:
            config: Estimation configuration. If None, uses defaults.
            grid: Quadrature grid. Required before fit is called.
            executor: Runs per-block M-step optimisations.
            cancel: Token checked between cycles.
        """
        super().__init__(config, executor, cancel)
        self.grid = grid

    def _require_grid(self) -> QuadratureGrid:
        if self.grid is None:
            raise RuntimeError("EMEstimator needs a quadrature grid")
        return self.grid

    def _prior_weights(
        self,
        item_set: ItemParameterSet,
        empirical_weights: NDArray[np.float64] | None,
    ) -> NDArray[np.float64]:
        grid = self._require_grid()
        if empirical_weights is not None:
            return group_prior_weights(
                grid.with_weights(empirical_weights), item_set.groups, True
            )
        return group_prior_weights(
            grid,
            item_set.groups,
            self.config.quadrature.custom_prior is not None,
        )

    def fit(
        self,
        data: ResponseMatrix,
        item_set: ItemParameterSet,
        patterns: PatternTable | None = None,
    ) -> EstimationOutcome:
        """
        Run EM from the starting values in item_set.

        Args:
            data: Response matrix.
            item_set: Starting parameters; not modified.
            patterns: Pre-tabulated patterns of data.

        Returns:
            EstimationOutcome whose e_result is the E-step at the returned
            parameters.
        """
        grid = self._require_grid()
        patterns = patterns if patterns is not None else data.tabulate()
        item_set = item_set.copy()
        theta = grid.theta

        tolerance = self.config.resolved_tolerance()
        max_cycles = self.config.resolved_max_cycles()
        use_parameter_change = self.config.uses_parameter_change_criterion
        accelerate = self.config.uses_acceleration
        components = item_set.item_components()
        empirical_weights = (
            grid.weights.copy() if self.config.empirical_hist else None
        )

        outcome = EstimationOutcome(
            item_set=item_set,
            log_likelihood=-np.inf,
            n_iterations=0,
            status=ConvergenceStatus.MAX_ITERATIONS,
        )
        logger.info(
            f"EM: {item_set.n_free_parameters} free parameters, "
            f"{patterns.n_patterns} patterns, {grid.n_points} nodes"
        )

        x = item_set.pack()
        x_prev: NDArray[np.float64] | None = None
        prev_ll = -np.inf
        best_ll = -np.inf
        best_x = x.copy()
        best_weights = empirical_weights
        warned_decrease = False
        e_result: EStepResult | None = None
        state = EMState.INIT

        for cycle in range(max_cycles):
            if self.cancelled:
                logger.info(f"EM cancelled after {cycle} cycles")
                outcome.status = ConvergenceStatus.CANCELLED
                break

            state = EMState.E_STEP
            e_result = e_step(
                patterns,
                item_set.items,
                theta,
                self._prior_weights(item_set, empirical_weights),
            )
            ll = e_result.log_likelihood
            outcome.log_likelihood_trace.append(ll)
            outcome.n_iterations = cycle + 1
            logger.debug(f"Iteration {cycle + 1}: LL = {ll:.4f}")

            if not np.isfinite(ll):
                outcome.status = ConvergenceStatus.FAILED
                break
            if ll > best_ll:
                best_ll = ll
                best_x = x.copy()
                best_weights = (
                    None
                    if empirical_weights is None
                    else empirical_weights.copy()
                )

            state = EMState.CONVERGENCE_CHECK
            if (
                not accelerate
                and not warned_decrease
                and ll < prev_ll - LL_DECREASE_TOLERANCE * abs(prev_ll)
            ):
                warned_decrease = True
                self._warn(
                    outcome,
                    f"Log-likelihood decreased at EM cycle {cycle + 1} "
                    f"({prev_ll:.6f} -> {ll:.6f})",
                    ConvergenceWarning,
                )
            if use_parameter_change:
                converged = (
                    x_prev is not None
                    and float(np.max(np.abs(x - x_prev), initial=0.0))
                    < tolerance
                )
            else:
                converged = abs(ll - prev_ll) < tolerance
            if converged:
                outcome.status = ConvergenceStatus.CONVERGED
                break
            prev_ll = ll

            state = EMState.M_STEP
            x_new, failed = self._maximize(e_result, item_set, components)
            for item_idx in sorted(failed - outcome.failed_items):
                logger.warning(
                    f"M-step optimisation failed for "
                    f"{item_set.items[item_idx].label} at cycle {cycle + 1}"
                )
            outcome.failed_items |= failed

            if empirical_weights is not None:
                mass = e_result.node_mass.sum(axis=0)
                empirical_weights = mass / mass.sum()

            if (
                accelerate
                and x_prev is not None
                and cycle >= ACCELERATION_START_CYCLE
            ):
                x_new = self._accelerate(item_set, x_new, x, x_prev)

            if use_parameter_change:
                outcome.history.append(x_new.copy())
            x_prev, x = x, x_new
        else:
            state = EMState.MAX_ITER_EXCEEDED

        converged = outcome.status == ConvergenceStatus.CONVERGED
        if converged and e_result is not None:
            outcome.log_likelihood = e_result.log_likelihood
        else:
            # Return the best iterate seen, with its own E-step.
            item_set.unpack(best_x)
            empirical_weights = best_weights
            e_result = e_step(
                patterns,
                item_set.items,
                theta,
                self._prior_weights(item_set, empirical_weights),
            )
            outcome.log_likelihood = e_result.log_likelihood
            if state == EMState.MAX_ITER_EXCEEDED:
                self._warn(
                    outcome,
                    f"EM did not converge within {max_cycles} cycles "
                    f"(TOL={tolerance:g})",
                    ConvergenceWarning,
                )
            elif outcome.status == ConvergenceStatus.FAILED:
                self._warn(
                    outcome,
                    "EM produced a non-finite log-likelihood; returning the "
                    "best iterate",
                    ConvergenceWarning,
                )

        state = EMState.DONE
        outcome.e_result = e_result
        outcome.empirical_weights = empirical_weights
        logger.info(
            f"EM finished ({outcome.status.value}) after "
            f"{outcome.n_iterations} cycles: LL = {outcome.log_likelihood:.4f}"
        )
        return outcome

    def _maximize(
        self,
        e_result: EStepResult,
        item_set: ItemParameterSet,
        components: Sequence[Sequence[int]],
        convergence: ConvergenceConfig | None = None,
    ) -> tuple[NDArray[np.float64], set[int]]:
        """M-step: update item blocks, then latent moments, in place."""
        theta = self._require_grid().theta
        if convergence is None:
            convergence = self.config.convergence
        x = item_set.pack()
        tasks = [
            partial(
                optimize_item_block,
                item_set,
                component,
                x,
                e_result.expected_counts,
                theta,
                convergence,
            )
            for component in components
        ]
        updates = self.executor.run(tasks)

        x_new = x.copy()
        failed: set[int] = set()
        for component, update in zip(components, updates):
            x_new[update.indices] = update.values
            if not update.success:
                failed.update(component)
        item_set.unpack(x_new)
        self._update_groups(e_result, item_set)
        return item_set.pack(), failed

    def _update_groups(
        self, e_result: EStepResult, item_set: ItemParameterSet
    ) -> None:
        """Closed-form update of free latent means and covariances."""
        theta = self._require_grid().theta
        for g, group in enumerate(item_set.groups):
            if not group.free.any():
                continue
            mass = e_result.node_mass[g]
            total = mass.sum()
            if total <= 0:
                continue
            mean = np.where(
                group.free[: group.n_factors],
                mass @ theta / total,
                group.mean(),
            )
            centered = theta - mean
            cov = (centered * mass[:, np.newaxis]).T @ centered / total
            previous = group.values.copy()
            group.set_moments(mean, cov)
            if not is_positive_definite(group.cov()):
                group.values[:] = previous

    def _accelerate(
        self,
        item_set: ItemParameterSet,
        x_new: NDArray[np.float64],
        x: NDArray[np.float64],
        x_prev: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Ramsay (1975) extrapolation of the EM trajectory."""
        step = x_new - x
        previous_step = x - x_prev
        denominator = np.linalg.norm(step - previous_step)
        if denominator == 0:
            return x_new
        accel = 1.0 - np.linalg.norm(step) / denominator
        accel = max(accel, ACCELERATION_FLOOR)
        proposal = (1.0 - accel) * x_new + accel * x
        trial = item_set.with_values(proposal)
        if not all(is_positive_definite(g.cov()) for g in trial.groups):
            return x_new
        item_set.unpack(proposal)
        return proposal

    def em_map(
        self,
        patterns: PatternTable,
        item_set: ItemParameterSet,
        x: NDArray[np.float64],
        empirical_weights: NDArray[np.float64] | None = None,
    ) -> NDArray[np.float64]:
        """
        One EM cycle started from x: the map x -> M(x) used by SEM.

        The M-step runs at SEM_OPTIMIZER_TOLERANCE, well below the
        perturbation sizes SEM differentiates M over.
        """
        work = item_set.with_values(x)
        result = e_step(
            patterns,
            work.items,
            self._require_grid().theta,
            self._prior_weights(work, empirical_weights),
        )
        convergence = replace(
            self.config.convergence,
            optimizer_tolerance=min(
                self.config.convergence.optimizer_tolerance,
                SEM_OPTIMIZER_TOLERANCE,
            ),
        )
        x_new, _ = self._maximize(
            result, work, work.item_components(), convergence
        )
        return x_new
