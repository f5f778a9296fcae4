"""
Diagnostic utilities for IRT model validation.

Provides information criteria and likelihood-ratio fit statistics for a
fitted model (against the saturated multinomial and the independence null
model), and a comparison of empirical against model-implied category
probabilities.
"""

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from pydantic import BaseModel, ConfigDict
from scipy.stats import chi2

from mirt_analysis.core.data_models import PatternTable, ResponseMatrix
from mirt_analysis.irt.items.base import ItemModel


class FitStatistics(BaseModel):
    """
    Information criteria and absolute/relative fit of a fitted model.

    Likelihood-ratio statistics are None when the data has missing
    responses (the saturated model is undefined) or when df <= 0. The
    relative indices need the null model.
    """

    model_config = ConfigDict(frozen=True)

    log_likelihood: float
    n_parameters: int
    n_respondents: int
    aic: float
    aicc: float
    bic: float
    sabic: float
    g2: float | None = None
    df: int | None = None
    p_value: float | None = None
    rmsea: float | None = None
    null_log_likelihood: float | None = None
    null_aic: float | None = None
    tli: float | None = None
    cfi: float | None = None


def saturated_log_likelihood(patterns: PatternTable) -> float:
    """Multinomial log-likelihood of the observed pattern frequencies."""
    total = 0.0
    for g in range(patterns.n_groups):
        freq = patterns.frequencies[:, g]
        present = freq > 0
        log_prob = np.log(freq[present] / freq.sum())
        total += float(np.sum(freq[present] * log_prob))
    return total


def saturated_degrees_of_freedom(patterns: PatternTable) -> int:
    """Free cell probabilities of the full contingency table per group."""
    n_cells = 1
    for n_categories in patterns.n_categories:
        n_cells *= int(n_categories)
    return patterns.n_groups * (n_cells - 1)


def compute_fit_statistics(
    log_likelihood: float,
    n_parameters: int,
    patterns: PatternTable,
    null_log_likelihood: float | None = None,
    null_n_parameters: int | None = None,
) -> FitStatistics:
    """
    Compute AIC, AICc, BIC, SABIC and, for complete data, G2, RMSEA, TLI
    and CFI.

    Args:
        log_likelihood: Marginal log-likelihood of the fitted model.
        n_parameters: Number of free (canonical) parameters.
        patterns: Pattern table the model was fitted to.
        null_log_likelihood: Log-likelihood of the independence model.
        null_n_parameters: Free parameters of the independence model.
    """
    n = int(round(patterns.n_respondents))
    k = n_parameters
    deviance = -2.0 * log_likelihood
    aic = deviance + 2 * k
    aicc = aic + (2 * k * (k + 1) / (n - k - 1) if n - k - 1 > 0 else np.inf)
    stats: dict[str, float | int | None] = {
        "log_likelihood": log_likelihood,
        "n_parameters": k,
        "n_respondents": n,
        "aic": aic,
        "aicc": aicc,
        "bic": deviance + k * np.log(n),
        "sabic": deviance + k * np.log((n + 2) / 24),
    }

    if null_log_likelihood is not None and null_n_parameters is not None:
        stats["null_log_likelihood"] = null_log_likelihood
        stats["null_aic"] = -2.0 * null_log_likelihood + 2 * null_n_parameters

    if not patterns.has_missing:
        saturated = saturated_log_likelihood(patterns)
        cells = saturated_degrees_of_freedom(patterns)
        g2 = max(2.0 * (saturated - log_likelihood), 0.0)
        df = cells - k
        stats["g2"] = g2
        if df > 0:
            stats["df"] = df
            stats["p_value"] = float(chi2.sf(g2, df))
            stats["rmsea"] = float(
                np.sqrt(max(g2 - df, 0.0) / (df * max(n - 1, 1)))
            )
            if null_log_likelihood is not None and null_n_parameters:
                g2_null = max(2.0 * (saturated - null_log_likelihood), 0.0)
                df_null = cells - null_n_parameters
                if df_null > 0:
                    stats["tli"], stats["cfi"] = _relative_fit(
                        g2, df, g2_null, df_null
                    )

    return FitStatistics(**stats)  # type: ignore[arg-type]


def _relative_fit(
    g2: float, df: int, g2_null: float, df_null: int
) -> tuple[float | None, float]:
    null_ratio = g2_null / df_null
    tli = (
        (null_ratio - g2 / df) / (null_ratio - 1.0)
        if null_ratio != 1.0
        else None
    )
    denominator = max(g2_null - df_null, g2 - df, 0.0)
    cfi = 1.0 if denominator == 0 else 1.0 - max(g2 - df, 0.0) / denominator
    return tli, cfi


@dataclass
class ResponseProbComparison:
    """Comparison of empirical vs model response probabilities."""

    item_id: NDArray[np.int64]
    category: NDArray[np.int64]
    empirical_prob: NDArray[np.float64]
    model_prob: NDArray[np.float64]
    difference: NDArray[np.float64]


def compute_response_prob_comparison(
    data: ResponseMatrix,
    items: Sequence[ItemModel],
    abilities: NDArray[np.float64],
) -> ResponseProbComparison:
    """Compare empirical vs model response probabilities.

    Empirical probabilities use each item's observed responses only; model
    probabilities average P(Y = k | theta) over the respondents who
    answered the item.

    Args:
        data: Response matrix with observed responses
        items: Fitted item models
        abilities: Estimated abilities, shape (n_respondents, n_factors)

    Returns:
        ResponseProbComparison with one row per item and category
    """
    abilities = np.asarray(abilities, dtype=np.float64).reshape(
        data.n_respondents, -1
    )

    item_ids: list[int] = []
    categories: list[int] = []
    empirical_probs: list[float] = []
    model_probs: list[float] = []

    for item_idx, item in enumerate(items):
        observed = data.valid_mask[:, item_idx]
        if not observed.any():
            continue
        responses = data.responses[observed, item_idx]
        # ML scores of extreme patterns are infinite.
        theta = abilities[observed]
        theta = theta[np.all(np.isfinite(theta), axis=1)]
        probs = item.probability_trace(theta)
        for cat in range(item.n_categories):
            item_ids.append(item_idx)
            categories.append(cat)
            empirical_probs.append(float(np.mean(responses == cat)))
            model_probs.append(float(np.mean(probs[:, cat])))

    empirical_arr = np.array(empirical_probs, dtype=np.float64)
    model_arr = np.array(model_probs, dtype=np.float64)

    return ResponseProbComparison(
        item_id=np.array(item_ids, dtype=np.int64),
        category=np.array(categories, dtype=np.int64),
        empirical_prob=empirical_arr,
        model_prob=model_arr,
        difference=empirical_arr - model_arr,
    )
