"""
Numba kernels for the inner loops of estimation and scoring.

The E-step accumulates per-item log-probabilities into a
(pattern x node) log-likelihood matrix, skipping missing responses. The
Lord-Wingersky recursion convolves item category probabilities into the
conditional distribution of the summed score at every quadrature node:

    L_{j}(s | theta) = sum_k L_{j-1}(s - k | theta) * P_j(k | theta)
"""

import numpy as np
from numba import njit, prange  # type: ignore
from numpy.typing import NDArray


@njit(parallel=True)  # type: ignore
def accumulate_item_log_likelihood(
    log_lik: NDArray[np.float64],
    log_probs: NDArray[np.float64],
    responses: NDArray[np.int64],
) -> None:
    """
    Add one item's log-probabilities to the pattern log-likelihood in place.

    Args:
        log_lik: Running log-likelihood, shape (n_patterns, n_nodes).
        log_probs: Item log-probabilities, shape (n_nodes, n_categories).
        responses: Observed category per pattern, negative for missing.
    """
    n_patterns, n_nodes = log_lik.shape
    for p in prange(n_patterns):
        k = responses[p]
        if k < 0:
            continue
        for q in range(n_nodes):
            log_lik[p, q] += log_probs[q, k]


@njit  # type: ignore
def lord_wingersky(
    traces: NDArray[np.float64],
    n_categories: NDArray[np.int64],
) -> NDArray[np.float64]:
    """
    Summed-score likelihood at each node.

    Args:
        traces: Item category probabilities padded to the largest category
            count, shape (n_items, n_nodes, max_categories).
        n_categories: Category count of each item, shape (n_items,).

    Returns:
        Array of shape (n_nodes, max_score + 1) where entry [q, s] is
        P(sum score = s | theta_q).
    """
    n_items, n_nodes, _ = traces.shape
    max_score = 0
    for j in range(n_items):
        max_score += n_categories[j] - 1

    current = np.zeros((n_nodes, max_score + 1))
    for q in range(n_nodes):
        current[q, 0] = 1.0

    reached = 0
    for j in range(n_items):
        n_cat = n_categories[j]
        updated = np.zeros((n_nodes, max_score + 1))
        for q in range(n_nodes):
            for s in range(reached + 1):
                mass = current[q, s]
                for k in range(n_cat):
                    updated[q, s + k] += mass * traces[j, q, k]
        current = updated
        reached += n_cat - 1
    return current
