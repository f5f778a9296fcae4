"""
Expectation step over the quadrature grid.

Posteriors are computed per unique response pattern and per group; expected
category counts per node are accumulated across groups since items are
shared by all groups.
"""

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.special import logsumexp

from mirt_analysis.core.data_models import PatternTable
from mirt_analysis.core.utils import safe_log
from mirt_analysis.irt.estimation.kernels import (
    accumulate_item_log_likelihood,
)
from mirt_analysis.irt.estimation.parameters import GroupDistribution
from mirt_analysis.irt.estimation.quadrature import QuadratureGrid
from mirt_analysis.irt.items.base import ItemModel


@dataclass
class EStepResult:
    """
    Results from the E-step of the EM algorithm.

    Attributes:
        posteriors: Posterior weights, shape (n_groups, n_patterns, n_nodes).
            posteriors[g, p, q] = P(theta = theta_q | pattern p, group g).
        log_likelihood: Marginal log-likelihood for current parameters.
        pattern_log_likelihood: Marginal log-likelihood of each pattern
            under each group's prior, shape (n_patterns, n_groups).
        expected_counts: Per item, expected category counts at each node,
            shape (n_nodes, n_categories).
        node_mass: Expected number of respondents at each node per group,
            shape (n_groups, n_nodes).
    """

    posteriors: NDArray[np.float64]
    log_likelihood: float
    pattern_log_likelihood: NDArray[np.float64]
    expected_counts: list[NDArray[np.float64]]
    node_mass: NDArray[np.float64]


def compute_pattern_log_likelihood(
    patterns: PatternTable,
    items: Sequence[ItemModel],
    theta: NDArray[np.float64],
) -> NDArray[np.float64]:
    """
    log P(pattern | theta) at every node, shape (n_patterns, n_nodes).

    Missing responses contribute 0.
    """
    log_lik = np.zeros((patterns.n_patterns, theta.shape[0]))
    for item_idx, item in enumerate(items):
        log_probs = safe_log(item.probability_trace(theta))
        accumulate_item_log_likelihood(
            log_lik,
            np.ascontiguousarray(log_probs),
            np.ascontiguousarray(patterns.patterns[:, item_idx]),
        )
    return log_lik


def marginal_log_likelihood(
    log_lik: NDArray[np.float64],
    prior_weights: NDArray[np.float64],
) -> NDArray[np.float64]:
    """
    Per-pattern marginal log-likelihood under each group's prior.

    Args:
        log_lik: Output of compute_pattern_log_likelihood.
        prior_weights: Node weights per group, shape (n_groups, n_nodes).

    Returns:
        Array of shape (n_patterns, n_groups).
    """
    log_prior = safe_log(prior_weights)
    result: NDArray[np.float64] = np.column_stack(
        [logsumexp(log_lik + lp[np.newaxis, :], axis=1) for lp in log_prior]
    )
    return result


def e_step(
    patterns: PatternTable,
    items: Sequence[ItemModel],
    theta: NDArray[np.float64],
    prior_weights: NDArray[np.float64],
) -> EStepResult:
    """
    E-step: compute posteriors over the grid and expected counts.

    For each pattern p and group g:
        P(theta_q | p, g) ∝ P(p | theta_q) * w_g(theta_q)

    Args:
        patterns: Unique response patterns with per-group frequencies.
        items: Current item models.
        theta: Quadrature nodes, shape (n_nodes, n_factors).
        prior_weights: Node weights per group, shape (n_groups, n_nodes).

    Returns:
        EStepResult with posteriors, log-likelihood and expected counts.
    """
    log_lik = compute_pattern_log_likelihood(patterns, items, theta)
    log_prior = safe_log(prior_weights)
    n_groups = prior_weights.shape[0]

    posteriors = np.empty((n_groups,) + log_lik.shape)
    marginal = np.empty((patterns.n_patterns, n_groups))
    node_mass = np.empty((n_groups, theta.shape[0]))
    weighted_total = np.zeros(log_lik.shape)
    total_ll = 0.0

    for g in range(n_groups):
        joint = log_lik + log_prior[g][np.newaxis, :]
        log_marginal = logsumexp(joint, axis=1)
        posteriors[g] = np.exp(joint - log_marginal[:, np.newaxis])
        marginal[:, g] = log_marginal

        freq = patterns.frequencies[:, g]
        present = freq > 0
        total_ll += float(np.sum(freq[present] * log_marginal[present]))

        weighted = freq[:, np.newaxis] * posteriors[g]
        node_mass[g] = weighted.sum(axis=0)
        weighted_total += weighted

    expected_counts = [
        weighted_total.T @ indicators for indicators in patterns.indicators
    ]

    return EStepResult(
        posteriors=posteriors,
        log_likelihood=total_ll,
        pattern_log_likelihood=marginal,
        expected_counts=expected_counts,
        node_mass=node_mass,
    )


def group_prior_weights(
    grid: QuadratureGrid,
    groups: Sequence[GroupDistribution],
    use_grid_weights: bool = False,
) -> NDArray[np.float64]:
    """
    Node weights of every group's latent distribution, shape (G, n_nodes).

    With use_grid_weights the grid's own weights (custom prior or empirical
    histogram) are used for every group instead of the normal densities.
    """
    if use_grid_weights:
        return np.tile(grid.weights, (len(groups), 1))
    return np.vstack(
        [grid.prior_weights(group.mean(), group.cov()) for group in groups]
    )
