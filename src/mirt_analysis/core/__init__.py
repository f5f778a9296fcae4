"""
Core shared types and utilities for mirt_analysis.

This module provides foundational components used across the item models,
the estimators and the scoring engine: response data containers, the error
taxonomy and the parallel execution collaborators.
"""

from mirt_analysis.core.data_models import PatternTable, ResponseMatrix
from mirt_analysis.core.parallel import (
    CancellationToken,
    ParallelExecutor,
    SerialExecutor,
    ThreadPoolParallelExecutor,
)
from mirt_analysis.core.utils import get_rng, softmax

__all__ = [
    "CancellationToken",
    "ParallelExecutor",
    "PatternTable",
    "ResponseMatrix",
    "SerialExecutor",
    "ThreadPoolParallelExecutor",
    "get_rng",
    "softmax",
]
