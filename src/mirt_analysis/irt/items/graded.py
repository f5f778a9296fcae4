"""
Graded response models.

The graded model uses cumulative logits

    P(Y >= k | theta) = expit(a . theta + d_k),   k = 1..K-1

with category probabilities given by successive differences. The rating
scale variant adds an item-specific shift c to intercepts that are shared
across a block of items.
"""

import numpy as np
from numpy.typing import NDArray
from scipy.special import expit

from mirt_analysis.core.constants import PROBABILITY_FLOOR
from mirt_analysis.irt.items.base import ItemModel, ItemStartStatistics


class GradedItem(ItemModel):
    itemtype = "graded"

    def _parameter_names(self) -> list[str]:
        return self.slope_names + [
            f"d{k}" for k in range(1, self.n_categories)
        ]

    def _set_defaults(self) -> None:
        self.values[: self.n_factors] = 1.0
        self.values[self.n_factors : self.n_factors + self.n_categories - 1] = (
            np.linspace(1.0, -1.0, self.n_categories - 1)
        )

    def _logits(
        self, values: NDArray[np.float64], theta: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        n = self.n_factors
        intercepts = values[n : n + self.n_categories - 1]
        result: NDArray[np.float64] = (theta @ values[:n])[
            :, np.newaxis
        ] + intercepts[np.newaxis, :]
        return result

    def trace(
        self, values: NDArray[np.float64], theta: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        cumulative = expit(self._logits(values, theta))
        n_points = cumulative.shape[0]
        padded = np.hstack(
            [np.ones((n_points, 1)), cumulative, np.zeros((n_points, 1))]
        )
        probs: NDArray[np.float64] = padded[:, :-1] - padded[:, 1:]
        return probs

    def _logit_gradient(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """dQ/dz_k for every point, shape (n_points, K-1)."""
        cumulative = expit(self._logits(values, theta))
        probs = np.clip(self.trace(values, theta), PROBABILITY_FLOOR, None)
        ratio = weights / probs
        slope = cumulative * (1.0 - cumulative)
        # z_k raises P_k and lowers P_{k-1}.
        result: NDArray[np.float64] = slope * (ratio[:, 1:] - ratio[:, :-1])
        return result

    def log_likelihood_gradient(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        dz = self._logit_gradient(values, theta, weights)
        n = self.n_factors
        grad = np.zeros(self.n_parameters)
        grad[:n] = theta.T @ dz.sum(axis=1)
        grad[n : n + self.n_categories - 1] = dz.sum(axis=0)
        grad[~self.free] = 0.0
        return grad

    def set_starting_values(self, stats: ItemStartStatistics) -> None:
        n = self.n_factors
        for idx in self.free_indices:
            if idx < n:
                self.values[idx] = stats.slopes[idx]
            elif idx < n + self.n_categories - 1:
                self.values[idx] = stats.thresholds[idx - n]


class GradedRatingScaleItem(GradedItem):
    """Graded model with intercepts shared in a block and item shift c."""

    itemtype = "grsm"

    def _parameter_names(self) -> list[str]:
        return super()._parameter_names() + ["c"]

    def _logits(
        self, values: NDArray[np.float64], theta: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        return super()._logits(values, theta) + values[-1]

    def log_likelihood_gradient(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        dz = self._logit_gradient(values, theta, weights)
        n = self.n_factors
        grad = np.zeros(self.n_parameters)
        grad[:n] = theta.T @ dz.sum(axis=1)
        grad[n : n + self.n_categories - 1] = dz.sum(axis=0)
        grad[-1] = dz.sum()
        grad[~self.free] = 0.0
        return grad
