"""
Metropolis-Hastings Robbins-Monro (MH-RM) estimation.

Each cycle imputes one latent trait vector per respondent with a random-walk
Metropolis-Hastings step, then takes a gain-scaled Newton-Raphson step on
the complete-data log-likelihood of the imputed data (Cai, 2010):

- Stage 1 (burn-in): fixed gain, proposal widths tuned toward the target
  acceptance range.
- Stage 2: fixed gain; the iterates are averaged at the end of the stage.
- Stage 3: Robbins-Monro gain (g0 / k) ** g1 with running averages of the
  complete-data Hessian, score and score cross-products; the averages give
  the observed information as a byproduct.

The final log-likelihood is a Monte Carlo integral over prior draws.
"""

import logging
from collections.abc import Sequence
from functools import partial

import numpy as np
from numpy.typing import NDArray
from scipy.special import logsumexp
from scipy.stats import multivariate_normal

from mirt_analysis.core.data_models import PatternTable, ResponseMatrix
from mirt_analysis.core.errors import ConvergenceWarning
from mirt_analysis.core.parallel import ParallelExecutor
from mirt_analysis.core.utils import get_rng, is_positive_definite, safe_log
from mirt_analysis.irt.estimation.base import EstimationOutcome, IRTEstimator
from mirt_analysis.irt.estimation.config import MHRMConfig
from mirt_analysis.irt.estimation.enums import ConvergenceStatus, MHRMStage
from mirt_analysis.irt.estimation.estep import compute_pattern_log_likelihood
from mirt_analysis.irt.estimation.parameters import (
    GroupDistribution,
    ItemParameterSet,
)
from mirt_analysis.irt.items.base import ItemModel, ParameterBlock

logger = logging.getLogger(__name__)

FIXED_GAIN = 0.25
MAX_STEP = 1.0
MAX_STEP_HALVINGS = 5

# Proposal width tuning
DEFAULT_CANDIDATE_WIDTH = 1.0
TARGET_ACCEPTANCE = (0.1, 0.4)
WIDTH_SHRINK = 0.8
WIDTH_GROW = 1.2
TUNING_BLOCK_SWEEPS = 5
MAX_TUNING_BLOCKS = 20
TUNING_INTERVAL = 10

MONTE_CARLO_CHUNK = 500
IMPUTATION_CHUNKS = 8


def respondent_log_likelihood(
    items: Sequence[ItemModel],
    responses: NDArray[np.int64],
    theta: NDArray[np.float64],
) -> NDArray[np.float64]:
    """log P(responses_i | theta_i) per respondent; missing responses add 0."""
    rows = np.arange(theta.shape[0])
    log_lik = np.zeros(theta.shape[0])
    for item_idx, item in enumerate(items):
        observed = responses[:, item_idx] >= 0
        categories = np.where(observed, responses[:, item_idx], 0)
        probs = item.trace(item.values, theta)[rows, categories]
        log_lik += np.where(observed, safe_log(probs), 0.0)
    return log_lik


def respondent_log_prior(
    groups: Sequence[GroupDistribution],
    group_index: NDArray[np.int64],
    theta: NDArray[np.float64],
) -> NDArray[np.float64]:
    log_prior = np.empty(theta.shape[0])
    for g, group in enumerate(groups):
        members = group_index == g
        if members.any():
            log_prior[members] = np.atleast_1d(
                multivariate_normal.logpdf(
                    theta[members], mean=group.mean(), cov=group.cov()
                )
            )
    return log_prior


def metropolis_sweep(
    items: Sequence[ItemModel],
    groups: Sequence[GroupDistribution],
    responses: NDArray[np.int64],
    group_index: NDArray[np.int64],
    theta: NDArray[np.float64],
    widths: NDArray[np.float64],
    rng: np.random.Generator,
    n_sweeps: int = 1,
) -> tuple[NDArray[np.float64], int]:
    """
    Random-walk Metropolis-Hastings updates of every respondent's theta.

    Returns:
        Tuple of (new theta, number of accepted proposals).
    """
    theta = theta.copy()
    current = respondent_log_likelihood(
        items, responses, theta
    ) + respondent_log_prior(groups, group_index, theta)
    accepted = 0
    for _ in range(n_sweeps):
        proposal = theta + rng.standard_normal(theta.shape) * widths
        candidate = respondent_log_likelihood(
            items, responses, proposal
        ) + respondent_log_prior(groups, group_index, proposal)
        accept = np.log(rng.random(theta.shape[0])) < candidate - current
        theta[accept] = proposal[accept]
        current[accept] = candidate[accept]
        accepted += int(accept.sum())
    return theta, accepted


class ImputationChain:
    """
    Imputed theta of every respondent with its Metropolis-Hastings proposal
    widths.

    Respondents are split into contiguous chunks, each swept by an
    independent task with its own RNG stream spawned from one SeedSequence,
    so results do not depend on the executor.
    """

    def __init__(
        self,
        data: ResponseMatrix,
        item_set: ItemParameterSet,
        mhrm: MHRMConfig,
        executor: ParallelExecutor,
        seed_sequence: np.random.SeedSequence,
    ) -> None:
        self.responses = data.responses
        self.group_index = data.group_index
        self.executor = executor
        self.seed_sequence = seed_sequence
        n_chunks = mhrm.n_chunks or IMPUTATION_CHUNKS
        n_chunks = max(1, min(n_chunks, data.n_respondents))
        self.chunks = np.array_split(np.arange(data.n_respondents), n_chunks)
        self.autotune = mhrm.candidate_widths is None
        if mhrm.candidate_widths is None:
            self.widths = np.full(item_set.n_factors, DEFAULT_CANDIDATE_WIDTH)
        else:
            self.widths = np.asarray(mhrm.candidate_widths, dtype=np.float64)
        means = np.vstack([group.mean() for group in item_set.groups])
        self.theta = means[self.group_index].copy()

    @property
    def n_respondents(self) -> int:
        return self.theta.shape[0]

    def sweep(self, item_set: ItemParameterSet, n_sweeps: int = 1) -> float:
        """Advance every chain; returns the acceptance rate."""
        streams = self.seed_sequence.spawn(len(self.chunks))
        tasks = [
            partial(
                metropolis_sweep,
                item_set.items,
                item_set.groups,
                self.responses[chunk],
                self.group_index[chunk],
                self.theta[chunk],
                self.widths,
                get_rng(stream),
                n_sweeps,
            )
            for chunk, stream in zip(self.chunks, streams)
        ]
        accepted = 0
        for chunk, (theta, n_accepted) in zip(
            self.chunks, self.executor.run(tasks)
        ):
            self.theta[chunk] = theta
            accepted += n_accepted
        return accepted / (self.n_respondents * n_sweeps)

    def tune(self, acceptance: float) -> None:
        if not self.autotune:
            return
        low, high = TARGET_ACCEPTANCE
        if acceptance < low:
            self.widths *= WIDTH_SHRINK
        elif acceptance > high:
            self.widths *= WIDTH_GROW

    def warm_up(self, item_set: ItemParameterSet) -> None:
        """Run blocks of sweeps, tuning widths until acceptance is in range."""
        low, high = TARGET_ACCEPTANCE
        n_blocks = MAX_TUNING_BLOCKS if self.autotune else 1
        for _ in range(n_blocks):
            acceptance = self.sweep(item_set, TUNING_BLOCK_SWEEPS)
            logger.debug(
                f"MH acceptance {acceptance:.3f} with widths {self.widths}"
            )
            if low <= acceptance <= high:
                break
            self.tune(acceptance)


def respondent_indicators(data: ResponseMatrix) -> list[NDArray[np.float64]]:
    """One-hot responses per item, shape (N, K_j); missing rows are zero."""
    indicators = []
    for item_idx in range(data.n_items):
        onehot = np.zeros((data.n_respondents, data.n_categories[item_idx]))
        observed = np.flatnonzero(data.valid_mask[:, item_idx])
        onehot[observed, data.responses[observed, item_idx]] = 1.0
        indicators.append(onehot)
    return indicators


def _block_derivatives(
    block: ParameterBlock,
    theta: NDArray[np.float64],
    weights: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    return (
        block.objective_gradient(block.values, theta, weights),
        block.objective_hessian(block.values, theta, weights),
    )


def complete_data_derivatives(
    item_set: ItemParameterSet,
    theta: NDArray[np.float64],
    indicators: Sequence[NDArray[np.float64]],
    group_index: NDArray[np.int64],
    executor: ParallelExecutor,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Score and Hessian of the complete-data log-likelihood (plus priors) over
    the canonical free parameters, given imputed theta.
    """
    tasks = [
        partial(_block_derivatives, item, theta, indicators[j])
        for j, item in enumerate(item_set.items)
    ]
    for g, group in enumerate(item_set.groups):
        members = group_index == g
        tasks.append(
            partial(
                _block_derivatives,
                group,
                theta[members],
                np.ones(int(members.sum())),
            )
        )

    n_free = item_set.n_free_parameters
    score = np.zeros(n_free)
    hessian = np.zeros((n_free, n_free))
    for block_idx, (grad, hess) in enumerate(executor.run(tasks)):
        canonical = item_set.index.block_canonical(block_idx)
        mask = canonical >= 0
        if not mask.any():
            continue
        target = canonical[mask]
        np.add.at(score, target, grad[mask])
        np.add.at(
            hessian,
            (target[:, np.newaxis], target[np.newaxis, :]),
            hess[np.ix_(mask, mask)],
        )
    return score, hessian


def newton_step(
    gamma: NDArray[np.float64],
    score: NDArray[np.float64],
    gain: float,
) -> NDArray[np.float64]:
    """Gain-scaled solve(gamma, score), clipped to [-MAX_STEP, MAX_STEP]."""
    try:
        direction = np.linalg.solve(gamma, score)
    except np.linalg.LinAlgError:
        direction = np.linalg.lstsq(gamma, score, rcond=None)[0]
    result: NDArray[np.float64] = np.clip(
        gain * direction, -MAX_STEP, MAX_STEP
    )
    return result


def monte_carlo_log_likelihood(
    patterns: PatternTable,
    item_set: ItemParameterSet,
    draws: int,
    rng: np.random.Generator,
) -> float:
    """Marginal log-likelihood averaged over draws from each group prior."""
    total = 0.0
    for g, group in enumerate(item_set.groups):
        freq = patterns.frequencies[:, g]
        present = freq > 0
        if not present.any():
            continue
        running = np.full(patterns.n_patterns, -np.inf)
        remaining = draws
        while remaining > 0:
            n = min(MONTE_CARLO_CHUNK, remaining)
            log_lik = compute_pattern_log_likelihood(
                patterns, item_set.items, group.sample(n, rng)
            )
            running = np.logaddexp(running, logsumexp(log_lik, axis=1))
            remaining -= n
        log_marginal = running[present] - np.log(draws)
        total += float(np.sum(freq[present] * log_marginal))
    return total


class MHRMEstimator(IRTEstimator):
    """
    Metropolis-Hastings Robbins-Monro estimator.

    Suited to high-dimensional models where rectangular quadrature is
    infeasible. Stage 3 stops when the largest absolute parameter change
    stays below the tolerance for convergence_window consecutive cycles;
    when information is collected it never stops before min_se_cycles
    total cycles.
    """

    def fit(
        self,
        data: ResponseMatrix,
        item_set: ItemParameterSet,
        collect_information: bool | None = None,
    ) -> EstimationOutcome:
        """
        Run MH-RM from the starting values in item_set.

        Args:
            data: Response matrix.
            item_set: Starting parameters; not modified.
            collect_information: Keep the stage 3 information estimate.
                Defaults to config.se.

        Returns:
            EstimationOutcome with a Monte Carlo log-likelihood and, when
            collected, the stochastic information matrix.

        A cancelled run has no likelihood trace to pick a best iterate
        from. Once stage 2 has begun it returns the average of the stage 2
        iterates so far, or the Robbins-Monro iterate after stage 3 starts.
        Earlier cancellations return the latest burn-in iterate.
        """
        config = self.config
        mhrm = config.mhrm
        collect = config.se
        if collect_information is not None:
            collect = collect_information
        tolerance = config.resolved_tolerance()
        max_cycles = config.resolved_max_cycles()
        item_set = item_set.copy()
        chain_seed, draw_seed = np.random.SeedSequence(
            config.technical.seed
        ).spawn(2)
        chain = ImputationChain(
            data, item_set, mhrm, self.executor, chain_seed
        )
        indicators = respondent_indicators(data)
        bounds = self._internal_bounds(item_set)

        outcome = EstimationOutcome(
            item_set=item_set,
            log_likelihood=-np.inf,
            n_iterations=0,
            status=ConvergenceStatus.MAX_ITERATIONS,
        )
        logger.info(
            f"MH-RM: {item_set.n_free_parameters} free parameters, "
            f"{data.n_respondents} respondents"
        )

        stage = MHRMStage.BURNIN
        chain.warm_up(item_set)
        x = item_set.pack()
        total_cycles = 0
        cancelled = False

        iterates = []
        for cycle in range(mhrm.burnin + mhrm.semcycles):
            if self.cancelled:
                cancelled = True
                break
            if cycle == mhrm.burnin:
                stage = MHRMStage.STOCHASTIC_IMPUTATION
            acceptance = chain.sweep(item_set)
            if (
                stage == MHRMStage.BURNIN
                and (cycle + 1) % TUNING_INTERVAL == 0
            ):
                chain.tune(acceptance)
            score, hessian = complete_data_derivatives(
                item_set,
                chain.theta,
                indicators,
                chain.group_index,
                self.executor,
            )
            step = newton_step(-hessian, score, FIXED_GAIN)
            x = self._apply_step(item_set, x, step, bounds)
            total_cycles += 1
            if stage == MHRMStage.STOCHASTIC_IMPUTATION:
                iterates.append(x.copy())
            logger.debug(
                f"MH-RM {stage.value} cycle {cycle + 1}: "
                f"acceptance = {acceptance:.3f}"
            )
        if iterates:
            x = np.mean(iterates, axis=0)
            item_set.unpack(x)

        stage = MHRMStage.ROBBINS_MONRO_UPDATE
        g0, g1 = mhrm.gain
        gamma = phi = cross = None
        changes: list[float] = []
        below = 0
        for k in range(1, max_cycles + 1):
            if cancelled or self.cancelled:
                cancelled = True
                break
            chain.sweep(item_set)
            score, hessian = complete_data_derivatives(
                item_set,
                chain.theta,
                indicators,
                chain.group_index,
                self.executor,
            )
            gain = (g0 / k) ** g1
            if gamma is None or phi is None or cross is None:
                gamma, phi, cross = -hessian, score, np.outer(score, score)
            else:
                gamma = gamma + gain * (-hessian - gamma)
                phi = phi + gain * (score - phi)
                cross = cross + gain * (np.outer(score, score) - cross)

            x_new = self._apply_step(
                item_set, x, newton_step(gamma, score, gain), bounds
            )
            change = float(np.max(np.abs(x_new - x), initial=0.0))
            changes.append(change)
            x = x_new
            total_cycles += 1
            logger.debug(f"MH-RM cycle {k}: max change = {change:.6f}")

            below = below + 1 if change < tolerance else 0
            if below >= mhrm.convergence_window and (
                not collect or total_cycles >= mhrm.min_se_cycles
            ):
                outcome.status = ConvergenceStatus.CONVERGED
                break

        outcome.n_iterations = total_cycles
        if cancelled:
            logger.info(f"MH-RM cancelled after {total_cycles} cycles")
            outcome.status = ConvergenceStatus.CANCELLED
        elif outcome.status == ConvergenceStatus.MAX_ITERATIONS:
            self._warn(
                outcome,
                f"MH-RM did not converge within {max_cycles} cycles "
                f"(TOL={tolerance:g})",
                ConvergenceWarning,
            )
        tail = changes[-mhrm.warning_window :]
        if len(tail) == mhrm.warning_window and min(tail) > 10 * tolerance:
            self._warn(
                outcome,
                f"Parameter changes stayed above {10 * tolerance:g} over the "
                f"last {mhrm.warning_window} MH-RM cycles; the likelihood may "
                "be flat or the model poorly identified",
                ConvergenceWarning,
            )

        if collect and gamma is not None and phi is not None:
            outcome.information = gamma - (cross - np.outer(phi, phi))

        outcome.log_likelihood = monte_carlo_log_likelihood(
            data.tabulate(), item_set, mhrm.draws, get_rng(draw_seed)
        )
        logger.info(
            f"MH-RM finished ({outcome.status.value}) after {total_cycles} "
            f"cycles: LL = {outcome.log_likelihood:.4f}"
        )
        return outcome

    def information_at(
        self,
        data: ResponseMatrix,
        item_set: ItemParameterSet,
        n_cycles: int | None = None,
    ) -> NDArray[np.float64]:
        """
        Stochastic observed information at fixed parameters.

        Imputes theta under item_set without updating it and averages the
        complete-data Hessian, score and score cross-products over n_cycles
        cycles (default: the stage 3 cycles a fit needs to reach
        min_se_cycles).
        """
        mhrm = self.config.mhrm
        if n_cycles is None:
            n_cycles = max(
                mhrm.min_se_cycles - mhrm.burnin - mhrm.semcycles,
                mhrm.semcycles,
            )
        chain = ImputationChain(
            data,
            item_set,
            mhrm,
            self.executor,
            np.random.SeedSequence(self.config.technical.seed),
        )
        indicators = respondent_indicators(data)
        logger.info(
            f"MH-RM {MHRMStage.SE_ACCUMULATION.value}: {n_cycles} cycles"
        )
        chain.warm_up(item_set)
        chain.sweep(item_set, mhrm.burnin)

        n_free = item_set.n_free_parameters
        gamma = np.zeros((n_free, n_free))
        phi = np.zeros(n_free)
        cross = np.zeros((n_free, n_free))
        for k in range(1, n_cycles + 1):
            chain.sweep(item_set)
            score, hessian = complete_data_derivatives(
                item_set,
                chain.theta,
                indicators,
                chain.group_index,
                self.executor,
            )
            gamma += (-hessian - gamma) / k
            phi += (score - phi) / k
            cross += (np.outer(score, score) - cross) / k
        result: NDArray[np.float64] = gamma - (cross - np.outer(phi, phi))
        return result

    @staticmethod
    def _internal_bounds(
        item_set: ItemParameterSet,
    ) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        n_free = item_set.n_free_parameters
        lower = np.full(n_free, -np.inf)
        upper = np.full(n_free, np.inf)
        for canonical_idx in range(n_free):
            block, param_idx = item_set.free_parameter_slot(canonical_idx)
            lo, hi = block.internal_bounds(param_idx)
            lower[canonical_idx] = -np.inf if lo is None else lo
            upper[canonical_idx] = np.inf if hi is None else hi
        return lower, upper

    @staticmethod
    def _apply_step(
        item_set: ItemParameterSet,
        x: NDArray[np.float64],
        step: NDArray[np.float64],
        bounds: tuple[NDArray[np.float64], NDArray[np.float64]],
    ) -> NDArray[np.float64]:
        """Take step from x, halving it while a covariance is not PD."""
        lower, upper = bounds
        if not np.all(np.isfinite(step)):
            return x
        for _ in range(MAX_STEP_HALVINGS):
            x_new = np.clip(x + step, lower, upper)
            item_set.unpack(x_new)
            if all(is_positive_definite(g.cov()) for g in item_set.groups):
                return x_new
            step = 0.5 * step
        item_set.unpack(x)
        return x
