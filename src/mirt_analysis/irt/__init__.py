"""
IRT (Item Response Theory) module.

This module provides:
- Item model classes with probability traces and a registry of itemtypes
- Sampling functions for generating responses
- Estimation infrastructure for fitting MIRT models to data
- Trait scoring
- Diagnostic utilities for model validation
"""

from mirt_analysis.irt.diagnostics import (
    FitStatistics,
    ResponseProbComparison,
    compute_fit_statistics,
    compute_response_prob_comparison,
)
from mirt_analysis.irt.estimation import fit_mirt, fscores
from mirt_analysis.irt.items import ItemModel, create_item, register_itemtype
from mirt_analysis.irt.sampling import (
    sample_responses_batch,
    simulate_data,
    simulate_theta,
)

__all__ = [
    "FitStatistics",
    "ItemModel",
    "ResponseProbComparison",
    "compute_fit_statistics",
    "compute_response_prob_comparison",
    "create_item",
    "fit_mirt",
    "fscores",
    "register_itemtype",
    "sample_responses_batch",
    "simulate_data",
    "simulate_theta",
]
