"""
Starting value computation for IRT estimation.

This module provides data-driven initialization for item parameters:
inter-item correlations (Bonett-Price tetrachoric approximations for pairs
of dichotomous items, pairwise Pearson correlations otherwise) are factored
into loadings, which are converted to slopes and intercepts on the logistic
metric. Category proportions give intercepts for the nominal family.
Random starting values can replace the data-driven ones.
"""

import logging

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.stats import norm
from numpy.random import Generator

from mirt_analysis.core.data_models import ResponseMatrix
from mirt_analysis.irt.estimation.parameters import ItemParameterSet
from mirt_analysis.irt.items.base import ItemStartStatistics
from mirt_analysis.irt.items.graded import GradedItem

logger = logging.getLogger(__name__)

# Normal-ogive to logistic scaling constant
LOGISTIC_SCALE = 1.702
MAX_COMMUNALITY = 0.9
# Random slopes are lognormal on the reported scale
RANDOM_SLOPE_LOG_MEAN = 0.2
RANDOM_SLOPE_LOG_SD = 0.2


def compute_response_proportions(
    data: ResponseMatrix,
    item_idx: int,
    add_constant: float = 0.5,
) -> NDArray[np.float64]:
    """
    Compute response proportions for an item with additive smoothing.

    Args:
        data: Response matrix.
        item_idx: Index of the item.
        add_constant: Additive smoothing constant (Laplace smoothing).

    Returns:
        Array of shape (n_categories,) with smoothed proportions.
    """
    n_categories = data.n_categories[item_idx]
    counts = data.item_response_counts(item_idx).astype(np.float64)
    total = counts.sum()

    if total == 0:
        uniform: NDArray[np.float64] = (
            np.ones(n_categories, dtype=np.float64) / n_categories
        )
        return uniform

    smoothed: NDArray[np.float64] = (counts + add_constant) / (
        total + add_constant * n_categories
    )
    return smoothed


def compute_log_odds_relative_to_reference(
    proportions: NDArray[np.float64],
    reference_idx: int = 0,
) -> NDArray[np.float64]:
    """
    Compute log-odds relative to a reference category.

    log(p_k / p_ref) for each category k.

    Args:
        proportions: Response proportions, shape (n_categories,).
        reference_idx: Index of the reference category.

    Returns:
        Array of shape (n_categories,) with log-odds.
        Value at reference_idx is 0.
    """
    log_props = np.log(proportions + 1e-10)
    log_odds: NDArray[np.float64] = log_props - log_props[reference_idx]
    return log_odds


def bonett_price_tetrachoric(table: NDArray[np.float64]) -> float:
    """
    Closed-form approximation of the tetrachoric correlation of a 2x2
    table (Bonett and Price, 2005).

    Args:
        table: Counts, table[i, j] = #(first item = i, second item = j).
            Cells are smoothed by 0.5 before use.
    """
    table = np.asarray(table, dtype=np.float64) + 0.5
    n = table.sum()
    row_one = table[1].sum() / n
    col_one = table[:, 1].sum() / n
    p_min = min(row_one, 1 - row_one, col_one, 1 - col_one)
    exponent = (1 - abs(row_one - col_one) / 5 - (0.5 - p_min) ** 2) / 2
    odds_ratio = (table[1, 1] * table[0, 0]) / (table[1, 0] * table[0, 1])
    return float(np.cos(np.pi / (1 + odds_ratio**exponent)))


def compute_item_correlations(data: ResponseMatrix) -> NDArray[np.float64]:
    """
    Inter-item correlation matrix from pairwise complete observations.

    Pairs of dichotomous items use the Bonett-Price tetrachoric
    approximation; other pairs use Pearson correlations of category
    indices. Undefined correlations are set to 0.
    """
    responses = data.responses.astype(np.float64)
    responses[data.missing_mask] = np.nan
    corr = pd.DataFrame(responses).corr(method="pearson").to_numpy()

    dichotomous = [
        j for j in range(data.n_items) if data.n_categories[j] == 2
    ]
    valid = data.valid_mask
    for pos, i in enumerate(dichotomous):
        for j in dichotomous[pos + 1 :]:
            both = valid[:, i] & valid[:, j]
            if not both.any():
                continue
            table = np.zeros((2, 2))
            np.add.at(
                table,
                (data.responses[both, i], data.responses[both, j]),
                1.0,
            )
            corr[i, j] = corr[j, i] = bonett_price_tetrachoric(table)

    corr = np.where(np.isfinite(corr), corr, 0.0)
    np.fill_diagonal(corr, 1.0)
    result: NDArray[np.float64] = np.clip(corr, -0.99, 0.99)
    np.fill_diagonal(result, 1.0)
    return result


def _leading_loadings(
    corr: NDArray[np.float64], n_factors: int
) -> NDArray[np.float64]:
    eigenvalues, eigenvectors = np.linalg.eigh(corr)
    order = np.argsort(eigenvalues)[::-1][:n_factors]
    loadings = eigenvectors[:, order] * np.sqrt(
        np.maximum(eigenvalues[order], 0.0)
    )
    # Positive manifold: orient each factor so its loadings sum >= 0.
    signs = np.where(loadings.sum(axis=0) < 0, -1.0, 1.0)
    result: NDArray[np.float64] = loadings * signs
    return result


def compute_loadings(
    corr: NDArray[np.float64], loading_mask: NDArray[np.bool_]
) -> NDArray[np.float64]:
    """
    Factor loadings from an inter-item correlation matrix.

    Exploratory models (every item loading on every factor) take the
    leading principal components. Confirmatory models factor each factor's
    items separately.

    Returns:
        Loadings of shape (n_items, n_factors), zero where an item does not
        load, with communalities at most MAX_COMMUNALITY.
    """
    n_items, n_factors = loading_mask.shape
    if loading_mask.all():
        loadings = _leading_loadings(corr, n_factors)
    else:
        loadings = np.zeros((n_items, n_factors))
        for factor in range(n_factors):
            members = np.flatnonzero(loading_mask[:, factor])
            sub = corr[np.ix_(members, members)]
            loadings[members, factor] = _leading_loadings(sub, 1)[:, 0]

    communality = (loadings**2).sum(axis=1)
    scale = np.where(
        communality > MAX_COMMUNALITY,
        np.sqrt(MAX_COMMUNALITY / np.maximum(communality, 1e-12)),
        1.0,
    )
    result: NDArray[np.float64] = loadings * scale[:, np.newaxis]
    return result


def compute_start_statistics(
    data: ResponseMatrix,
    loading_mask: NDArray[np.bool_],
) -> list[ItemStartStatistics]:
    """
    Data-driven summaries for every item.

    Slopes are 1.702 * lambda / sqrt(1 - h2) and the cumulative intercepts
    are 1.702 * Phi^-1(P(Y >= k)) / sqrt(1 - h2), with lambda the loadings
    and h2 the communality.
    """
    loadings = compute_loadings(compute_item_correlations(data), loading_mask)
    stats = []
    for item_idx in range(data.n_items):
        proportions = compute_response_proportions(data, item_idx)
        uniqueness = np.sqrt(1.0 - (loadings[item_idx] ** 2).sum())
        exceed = np.cumsum(proportions[::-1])[::-1][1:]
        exceed = np.clip(exceed, 1e-4, 1 - 1e-4)
        stats.append(
            ItemStartStatistics(
                slopes=LOGISTIC_SCALE * loadings[item_idx] / uniqueness,
                thresholds=LOGISTIC_SCALE * norm.ppf(exceed) / uniqueness,
                log_odds=compute_log_odds_relative_to_reference(proportions),
                proportions=proportions,
            )
        )
    return stats


def apply_starting_values(
    item_set: ItemParameterSet,
    data: ResponseMatrix,
) -> None:
    """
    Overwrite free item parameters of item_set with data-driven starting
    values, in place, then re-synchronise equality-constrained slots.
    """
    mask = np.array([item.loadings for item in item_set.items], dtype=bool)
    stats = compute_start_statistics(data, mask)
    for item_idx, item in enumerate(item_set.items):
        item.set_starting_values(stats[item_idx])
    item_set.synchronize()
    logger.debug(f"Starting values set for {item_set.n_items} items")


def random_starting_values(item_set: ItemParameterSet, rng: Generator) -> None:
    """
    Overwrite free item parameters of item_set with random draws, in place.

    Slopes are lognormal, intercepts standard normal and free nominal
    scoring coefficients uniform on [0, K - 1]. Lower asymptotes are drawn
    from Beta(1, 4) and upper asymptotes from Beta(4, 1). Graded thresholds
    are sorted into decreasing order so the draw stays a valid model.
    """
    for item in item_set.items:
        for idx in item.free_indices:
            name = item.names[idx]
            if name == "g":
                item.set_reported_value(name, rng.beta(1.0, 4.0))
            elif name == "u":
                item.set_reported_value(name, rng.beta(4.0, 1.0))
            elif name.startswith("ak"):
                item.values[idx] = rng.uniform(0.0, item.n_categories - 1)
            elif name[0] == "a" and name[1:].isdigit():
                item.values[idx] = rng.lognormal(
                    RANDOM_SLOPE_LOG_MEAN, RANDOM_SLOPE_LOG_SD
                )
            else:
                item.values[idx] = rng.normal()
        if isinstance(item, GradedItem):
            slots = [item.index(f"d{k}") for k in range(1, item.n_categories)]
            if item.free[slots].all():
                item.values[slots] = np.sort(item.values[slots])[::-1]
    item_set.synchronize()
    logger.debug(f"Random starting values drawn for {item_set.n_items} items")
