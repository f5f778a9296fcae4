"""
Abstract base class for IRT estimation.

This module defines the shared scaffolding of the estimators:
- EstimationOutcome: what an estimator hands back to fit_mirt
- IRTEstimator: configuration, executor, cancellation and warning plumbing
  shared by the EM and MH-RM estimators
"""

import logging
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np
from numpy.typing import NDArray

from mirt_analysis.core.data_models import ResponseMatrix
from mirt_analysis.core.parallel import (
    CancellationToken,
    ParallelExecutor,
    SerialExecutor,
)
from mirt_analysis.irt.estimation.config import EstimationConfig
from mirt_analysis.irt.estimation.enums import ConvergenceStatus
from mirt_analysis.irt.estimation.estep import EStepResult
from mirt_analysis.irt.estimation.parameters import ItemParameterSet

logger = logging.getLogger(__name__)


@dataclass
class EstimationOutcome:
    """
    Result of one estimator run.

    Attributes:
        item_set: Estimated parameters (best iterate when not converged).
        log_likelihood: Marginal log-likelihood at item_set.
        n_iterations: Cycles performed.
        status: How estimation terminated.
        log_likelihood_trace: Log-likelihood at every EM cycle.
        failed_items: Items whose M-step optimisation failed at least once.
        warnings: Warning messages raised during the run.
        empirical_weights: Estimated histogram weights (EM empirical
            histogram only), shape (n_nodes,).
        history: Packed parameter vector after every EM cycle (stored for
            SEM standard errors).
        e_result: E-step at the returned parameters (EM only).
        information: Stochastic information matrix (MH-RM only).
    """

    item_set: ItemParameterSet
    log_likelihood: float
    n_iterations: int
    status: ConvergenceStatus
    log_likelihood_trace: list[float] = field(default_factory=list)
    failed_items: set[int] = field(default_factory=set)
    warnings: list[str] = field(default_factory=list)
    empirical_weights: NDArray[np.float64] | None = None
    history: list[NDArray[np.float64]] = field(default_factory=list)
    e_result: EStepResult | None = None
    information: NDArray[np.float64] | None = None


class IRTEstimator(ABC):
    """
    Abstract base class for marginal maximum likelihood estimators.

    Independent per-cycle work is handed to the injected executor; results
    are always merged on the calling thread.
    """

    def __init__(
        self,
        config: EstimationConfig | None = None,
        executor: ParallelExecutor | None = None,
        cancel: CancellationToken | None = None,
    ):
        """
        Initialize estimator.

        Args:
            config: Estimation configuration. If None, uses defaults.
            executor: Parallel executor for independent tasks. If None,
                runs serially.
            cancel: Token checked between cycles.
        """
        self.config = config or EstimationConfig()
        self.executor = executor or SerialExecutor()
        self.cancel = cancel

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.cancelled

    @abstractmethod
    def fit(
        self, data: ResponseMatrix, item_set: ItemParameterSet
    ) -> EstimationOutcome:
        """
        Estimate the free parameters of item_set from data.

        item_set supplies starting values and is not modified.
        """
        ...

    @staticmethod
    def _warn(
        outcome: EstimationOutcome,
        message: str,
        category: type[Warning],
    ) -> None:
        """Log, emit and record a non-fatal warning."""
        logger.warning(message)
        warnings.warn(message, category, stacklevel=3)
        outcome.warnings.append(message)
