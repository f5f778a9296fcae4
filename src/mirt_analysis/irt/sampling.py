"""
Response sampling for IRT models.

This module provides functions to draw latent traits from group
distributions and to sample responses given traits and item models. Works
with any ItemModel subclass.

Missing responses can be injected completely at random; they are returned
as MISSING_VALUE (-1).
"""

from collections.abc import Sequence

import numpy as np
from numpy.random import Generator
from numpy.typing import NDArray

from mirt_analysis.core.constants import MISSING_VALUE
from mirt_analysis.core.data_models import ResponseMatrix
from mirt_analysis.core.utils import get_rng
from mirt_analysis.irt.estimation.abilities import fscores
from mirt_analysis.irt.estimation.data_models import ConvergedModel
from mirt_analysis.irt.estimation.parameters import ItemParameterSet
from mirt_analysis.irt.items.base import ItemModel


def simulate_theta(
    item_set: ItemParameterSet,
    n: int,
    group: int = 0,
    rng: Generator | None = None,
) -> NDArray[np.float64]:
    """Draw n latent trait vectors from one group's distribution."""
    if rng is None:
        rng = get_rng()
    return item_set.groups[group].sample(n, rng)


def sample_responses_batch(
    theta: NDArray[np.float64],
    items: Sequence[ItemModel],
    rng: Generator | None = None,
    missing_rate: float = 0.0,
) -> NDArray[np.int64]:
    """
    Sample responses for all respondents and items.

    Uses vectorized probability computation and inverse-CDF sampling.

    Args:
        theta: Latent traits, shape (n_respondents, n_factors).
        items: Item models.
        rng: Random number generator.
        missing_rate: Probability that any single response is dropped.

    Returns:
        Array of shape (n_respondents, n_items) with category indices.
        Dropped responses are encoded as MISSING_VALUE (-1).
    """
    if rng is None:
        rng = get_rng()
    if not 0.0 <= missing_rate < 1.0:
        raise ValueError(f"missing_rate must lie in [0, 1), got {missing_rate}")

    theta = np.atleast_2d(theta)
    n_respondents = theta.shape[0]
    responses = np.empty((n_respondents, len(items)), dtype=np.int64)

    for j, item in enumerate(items):
        probs = item.probability_trace(theta)
        cumprobs = np.cumsum(probs, axis=1)
        u = rng.random(n_respondents)
        # First category whose cumulative probability exceeds u
        responses[:, j] = np.minimum(
            (cumprobs < u[:, np.newaxis]).sum(axis=1), item.n_categories - 1
        )

    if missing_rate > 0:
        dropped = rng.random(responses.shape) < missing_rate
        responses[dropped] = MISSING_VALUE
    return responses


def simulate_data(
    item_set: ItemParameterSet,
    n: int | Sequence[int],
    rng: Generator | None = None,
    missing_rate: float = 0.0,
) -> tuple[ResponseMatrix, NDArray[np.float64]]:
    """
    Simulate a response matrix from an item set.

    Args:
        item_set: Item models and group distributions to simulate from.
        n: Respondents per group; an int is used for every group.
        rng: Random number generator.
        missing_rate: Probability that any single response is dropped.

    Returns:
        (ResponseMatrix, theta) with groups labelled by the group
        distributions' labels when there is more than one group.
    """
    if rng is None:
        rng = get_rng()
    sizes = [n] * item_set.n_groups if isinstance(n, int) else list(n)
    if len(sizes) != item_set.n_groups:
        raise ValueError(
            f"Need {item_set.n_groups} group sizes, got {len(sizes)}"
        )

    thetas = [
        simulate_theta(item_set, size, group=g, rng=rng)
        for g, size in enumerate(sizes)
    ]
    theta = np.vstack(thetas)
    responses = sample_responses_batch(
        theta, item_set.items, rng, missing_rate
    )
    groups = None
    if item_set.n_groups > 1:
        groups = tuple(
            item_set.groups[g].label
            for g, size in enumerate(sizes)
            for _ in range(size)
        )
    data = ResponseMatrix(
        responses=responses,
        n_categories=tuple(item.n_categories for item in item_set.items),
        groups=groups,
        item_names=tuple(item.label for item in item_set.items),
    )
    return data, theta


def sample_synthetic_responses(
    model: ConvergedModel,
    rng: Generator | None = None,
) -> ResponseMatrix:
    """
    Sample synthetic responses from a fitted model.

    Each respondent's EAP score stands in for their trait value, so the
    synthetic matrix keeps the fitted data's respondents and groups.

    Args:
        model: Fitted model.
        rng: Random number generator.

    Returns:
        ResponseMatrix with sampled responses.
    """
    abilities = fscores(model, "EAP", return_se=False)
    sample = sample_responses_batch(abilities.scores, model.item_set.items, rng)
    return ResponseMatrix(
        responses=sample,
        n_categories=model.data.n_categories,
        groups=model.data.groups,
        item_names=model.data.item_names,
    )
