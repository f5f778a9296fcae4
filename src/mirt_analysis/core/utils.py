"""
Core utility functions shared across analysis modules.

This module provides foundational numerical helpers used by the item
models, the estimators and the scoring engine.
"""

import numpy as np
from numpy.random import Generator
from numpy.typing import NDArray

from mirt_analysis.core.constants import PROBABILITY_FLOOR


def get_rng(seed: int | np.random.SeedSequence | None = None) -> Generator:
    """
    Create a numpy random Generator with optional seed.

    Args:
        seed: Random seed (or SeedSequence) for reproducibility.
            If None, uses entropy.

    Returns:
        A numpy random Generator instance.
    """
    return np.random.default_rng(seed)


def softmax(
    logits: NDArray[np.floating], axis: int = -1
) -> NDArray[np.float64]:
    """
    Compute softmax probabilities from logits.

    Numerically stable implementation.

    Args:
        logits: Array of logits.
        axis: Axis along which to compute softmax.

    Returns:
        Array of probabilities that sum to 1 along the specified axis.
    """
    # Subtract max for numerical stability
    shifted = logits - np.max(logits, axis=axis, keepdims=True)
    exp_logits = np.exp(shifted)
    result: NDArray[np.float64] = exp_logits / np.sum(
        exp_logits, axis=axis, keepdims=True
    )
    return result


def safe_log(probs: NDArray[np.floating]) -> NDArray[np.float64]:
    """Log of probabilities floored at PROBABILITY_FLOOR."""
    result: NDArray[np.float64] = np.log(
        np.clip(probs, PROBABILITY_FLOOR, None)
    )
    return result


def is_positive_definite(matrix: NDArray[np.float64]) -> bool:
    """Whether a symmetric matrix admits a Cholesky factorisation."""
    try:
        np.linalg.cholesky(matrix)
    except np.linalg.LinAlgError:
        return False
    return True
