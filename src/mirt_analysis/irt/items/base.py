"""
Abstract base classes for item and group parameter blocks.

This module defines the extensible architecture for the model's parameters:
- ParameterBlock: named parameter vector with free flags, bounds, transforms
  and priors, plus numerical derivatives of its log-likelihood
- ItemModel: a ParameterBlock that produces category probability traces
"""

import copy
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import ClassVar, Self

import numpy as np
from numpy.typing import NDArray

from mirt_analysis.core.errors import InputError
from mirt_analysis.core.utils import safe_log
from mirt_analysis.irt.items.priors import ParameterPrior
from mirt_analysis.irt.items.transforms import IDENTITY, ParameterTransform

GRADIENT_STEP = 1e-5
INFORMATION_STEP = 1e-4


def _step_sizes(x: NDArray[np.float64], base: float) -> NDArray[np.float64]:
    result: NDArray[np.float64] = base * np.maximum(1.0, np.abs(x))
    return result


def central_difference_gradient(
    func: Callable[[NDArray[np.float64]], float],
    x: NDArray[np.float64],
    indices: Sequence[int] | NDArray[np.int64],
    step: float = GRADIENT_STEP,
) -> NDArray[np.float64]:
    """Central-difference gradient of func, zero outside indices."""
    grad = np.zeros_like(x, dtype=np.float64)
    steps = _step_sizes(x, step)
    for i in indices:
        x_plus = x.copy()
        x_minus = x.copy()
        x_plus[i] += steps[i]
        x_minus[i] -= steps[i]
        grad[i] = (func(x_plus) - func(x_minus)) / (2 * steps[i])
    return grad


def central_difference_jacobian(
    grad_func: Callable[[NDArray[np.float64]], NDArray[np.float64]],
    x: NDArray[np.float64],
    indices: Sequence[int] | NDArray[np.int64],
    step: float = GRADIENT_STEP,
) -> NDArray[np.float64]:
    """Symmetrised central-difference Jacobian of a gradient function."""
    n = len(x)
    hess = np.zeros((n, n))
    steps = _step_sizes(x, step)
    for i in indices:
        x_plus = x.copy()
        x_minus = x.copy()
        x_plus[i] += steps[i]
        x_minus[i] -= steps[i]
        hess[i] = (grad_func(x_plus) - grad_func(x_minus)) / (2 * steps[i])
    mask = np.zeros(n, dtype=bool)
    mask[list(indices)] = True
    hess[:, ~mask] = 0.0
    result: NDArray[np.float64] = 0.5 * (hess + hess.T)
    return result


class ParameterBlock(ABC):
    """
    A named block of model parameters.

    Values are held on the internal scale (see transforms); bounds are on
    the reported scale. Subclasses define the block's log-likelihood under
    some weighting of latent trait values.
    """

    def __init__(self, names: Sequence[str], label: str) -> None:
        n = len(names)
        self.label = label
        self.names: tuple[str, ...] = tuple(names)
        self.values = np.zeros(n, dtype=np.float64)
        self.free = np.ones(n, dtype=bool)
        self.lbound = np.full(n, -np.inf)
        self.ubound = np.full(n, np.inf)
        self.transforms: list[ParameterTransform] = [IDENTITY] * n
        self.priors: list[ParameterPrior | None] = [None] * n

    @property
    def n_parameters(self) -> int:
        return len(self.names)

    @property
    def free_indices(self) -> NDArray[np.int64]:
        return np.flatnonzero(self.free)

    def index(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise InputError(
                f"{self.label} has no parameter named '{name}'"
            ) from None

    def copy(self) -> Self:
        return copy.deepcopy(self)

    def reported_values(self) -> NDArray[np.float64]:
        return np.array(
            [t.to_reported(v) for t, v in zip(self.transforms, self.values)]
        )

    def set_reported_value(self, name: str, value: float) -> None:
        idx = self.index(name)
        self.values[idx] = self.transforms[idx].to_internal(value)

    def fix(self, name: str, reported_value: float | None = None) -> None:
        idx = self.index(name)
        self.free[idx] = False
        if reported_value is not None:
            self.set_reported_value(name, reported_value)

    def internal_bounds(self, idx: int) -> tuple[float | None, float | None]:
        """Bounds for one parameter on the internal scale (None = open)."""
        transform = self.transforms[idx]
        lo = self.lbound[idx]
        hi = self.ubound[idx]
        if not transform.is_identity:
            lo_i = transform.to_internal(lo) if lo > 0 else -np.inf
            hi_i = transform.to_internal(hi) if hi < 1 else np.inf
        else:
            lo_i, hi_i = lo, hi
        return (
            None if not np.isfinite(lo_i) else float(lo_i),
            None if not np.isfinite(hi_i) else float(hi_i),
        )

    @property
    def has_bounded_free_parameters(self) -> bool:
        """Whether any free parameter is restricted on the reported scale."""
        for idx in self.free_indices:
            if not self.transforms[idx].is_identity:
                return True
            if np.isfinite(self.lbound[idx]) or np.isfinite(self.ubound[idx]):
                return True
        return False

    def log_prior(self, values: NDArray[np.float64]) -> float:
        total = 0.0
        for idx in self.free_indices:
            prior = self.priors[idx]
            if prior is not None:
                total += prior.log_density(values[idx], self.transforms[idx])
        return total

    def log_prior_gradient(
        self, values: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        grad = np.zeros(self.n_parameters)
        for idx in self.free_indices:
            prior = self.priors[idx]
            if prior is not None:
                grad[idx] = prior.gradient(values[idx], self.transforms[idx])
        return grad

    @abstractmethod
    def log_likelihood(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> float:
        """
        Weighted complete-data log-likelihood of the block.

        Args:
            values: Internal-scale parameter vector.
            theta: Latent trait values, shape (n_points, n_factors).
            weights: Block-specific weights attached to each theta row.
        """
        ...

    def log_likelihood_gradient(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Gradient over free parameters; numerical unless overridden."""
        return central_difference_gradient(
            lambda v: self.log_likelihood(v, theta, weights),
            values,
            self.free_indices,
        )

    def objective(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> float:
        """Log-likelihood plus log prior."""
        return self.log_likelihood(values, theta, weights) + self.log_prior(
            values
        )

    def objective_gradient(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        return self.log_likelihood_gradient(
            values, theta, weights
        ) + self.log_prior_gradient(values)

    def objective_hessian(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Hessian over free parameters from differences of the gradient."""
        return central_difference_jacobian(
            lambda v: self.objective_gradient(v, theta, weights),
            values,
            self.free_indices,
        )


@dataclass(frozen=True)
class ItemStartStatistics:
    """
    Data-driven summaries used to start an item's parameters.

    Attributes:
        slopes: Slope starting values, shape (n_factors,). Zero on factors
            the item does not load on.
        thresholds: Cumulative intercepts d_k for P(Y >= k), k = 1..K-1.
        log_odds: log(p_k / p_0) per category, shape (K,).
        proportions: Smoothed category proportions, shape (K,).
    """

    slopes: NDArray[np.float64]
    thresholds: NDArray[np.float64]
    log_odds: NDArray[np.float64]
    proportions: NDArray[np.float64]


class ItemModel(ParameterBlock):
    """
    Abstract item response model.

    Subclasses define their parameter names, defaults and the probability
    trace P(Y = k | theta). Slopes are named a1..aD; slopes on factors the
    item does not load on are fixed at 0.
    """

    itemtype: ClassVar[str] = ""
    dichotomous_only: ClassVar[bool] = False

    def __init__(
        self,
        item_id: int,
        n_categories: int,
        n_factors: int,
        loadings: Sequence[bool] | NDArray[np.bool_] | None = None,
        name: str | None = None,
    ) -> None:
        if n_categories < 2:
            raise InputError(
                f"Item {item_id} needs at least 2 categories, "
                f"got {n_categories}"
            )
        if self.dichotomous_only and n_categories != 2:
            raise InputError(
                f"Item type {self.itemtype} requires dichotomous data, "
                f"item {item_id} has {n_categories} categories"
            )
        self.item_id = item_id
        self.n_categories = n_categories
        self.n_factors = n_factors
        if loadings is None:
            self.loadings = np.ones(n_factors, dtype=bool)
        else:
            self.loadings = np.asarray(loadings, dtype=bool)
            if self.loadings.shape != (n_factors,):
                raise InputError(
                    f"Item {item_id} loadings must have length {n_factors}"
                )
        super().__init__(
            self._parameter_names(), name or f"Item_{item_id + 1}"
        )
        self._set_defaults()
        for d in np.flatnonzero(~self.loadings):
            self.fix(f"a{d + 1}", 0.0)

    @property
    def slope_names(self) -> list[str]:
        return [f"a{d + 1}" for d in range(self.n_factors)]

    def slopes(self, values: NDArray[np.float64]) -> NDArray[np.float64]:
        result: NDArray[np.float64] = values[: self.n_factors]
        return result

    @abstractmethod
    def _parameter_names(self) -> list[str]: ...

    @abstractmethod
    def _set_defaults(self) -> None: ...

    @abstractmethod
    def trace(
        self, values: NDArray[np.float64], theta: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        """
        Category probabilities.

        Args:
            values: Internal-scale parameter vector.
            theta: Latent trait values, shape (n_points, n_factors).

        Returns:
            Array of shape (n_points, n_categories) with rows summing to 1.
        """
        ...

    @abstractmethod
    def set_starting_values(self, stats: ItemStartStatistics) -> None:
        """Overwrite free parameters with data-driven starting values."""
        ...

    def probability_trace(
        self, theta: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        return self.trace(self.values, np.atleast_2d(theta))

    def log_likelihood(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> float:
        """Expected log-likelihood given counts of shape (n_points, K)."""
        return float(np.sum(weights * safe_log(self.trace(values, theta))))

    def item_information(
        self, theta: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        """
        Fisher information matrix at each theta row.

        Returns:
            Array of shape (n_points, n_factors, n_factors).
        """
        theta = np.atleast_2d(theta)
        probs = np.clip(self.probability_trace(theta), 1e-12, None)
        derivs = np.empty((self.n_factors,) + probs.shape)
        for d in range(self.n_factors):
            shift = np.zeros(self.n_factors)
            shift[d] = INFORMATION_STEP
            derivs[d] = (
                self.probability_trace(theta + shift)
                - self.probability_trace(theta - shift)
            ) / (2 * INFORMATION_STEP)
        info: NDArray[np.float64] = np.einsum(
            "dnk,enk->nde", derivs, derivs / probs[np.newaxis]
        )
        return info

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.label!r}, K={self.n_categories})"
