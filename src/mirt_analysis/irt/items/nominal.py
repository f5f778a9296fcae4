"""
Divide-by-total item models.

The nominal model assigns each category k the logit

    z_k = ak_k * (a . theta) + d_k

and P(Y = k | theta) = softmax(z)_k. Identification fixes the scoring
coefficient of the lowest category at 0, that of the highest at K - 1, and
d_0 = 0. Lowest and highest default to categories 0 and K - 1; a highlow
pair names other categories instead. The generalized partial credit model
fixes every scoring coefficient at ak_k = k, and the rating scale model
builds its intercepts from step parameters shared across a block of items.
"""

from collections.abc import Sequence
from typing import ClassVar

import numpy as np
from numpy.typing import NDArray

from mirt_analysis.core.errors import InputError
from mirt_analysis.core.utils import softmax
from mirt_analysis.irt.items.base import ItemModel, ItemStartStatistics


class NominalItem(ItemModel):
    itemtype = "nominal"
    fixed_scoring: ClassVar[bool] = False
    unit_slopes: ClassVar[bool] = False

    def __init__(
        self,
        item_id: int,
        n_categories: int,
        n_factors: int,
        loadings: Sequence[bool] | NDArray[np.bool_] | None = None,
        name: str | None = None,
        highlow: tuple[int, int] | None = None,
    ) -> None:
        if highlow is not None:
            if self.fixed_scoring:
                raise InputError(
                    f"Item {item_id}: highlow only applies to nominal items"
                )
            high, low = (int(k) for k in highlow)
            if high == low or not (
                0 <= high < n_categories and 0 <= low < n_categories
            ):
                raise InputError(
                    f"Item {item_id}: highlow needs two distinct categories "
                    f"in [0, {n_categories}), got {highlow}"
                )
            highlow = (high, low)
        self.highlow = highlow
        super().__init__(item_id, n_categories, n_factors, loadings, name)

    def _parameter_names(self) -> list[str]:
        k_range = range(self.n_categories)
        return (
            self.slope_names
            + [f"ak{k}" for k in k_range]
            + [f"d{k}" for k in k_range]
        )

    def _set_defaults(self) -> None:
        n = self.n_factors
        n_cat = self.n_categories
        self.values[:n] = 1.0
        if self.unit_slopes:
            self.free[:n] = False
        self.values[n : n + n_cat] = np.arange(n_cat, dtype=np.float64)
        if self.fixed_scoring:
            self.free[n : n + n_cat] = False
        else:
            high, low = self.highlow or (n_cat - 1, 0)
            middle = [k for k in range(n_cat) if k not in (high, low)]
            self.values[n + low] = 0.0
            self.values[n + high] = n_cat - 1.0
            self.values[[n + k for k in middle]] = np.arange(1, n_cat - 1)
            self.free[n + low] = False
            self.free[n + high] = False
        self.free[self.index("d0")] = False

    def _split(
        self, values: NDArray[np.float64]
    ) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
        """Slopes, scoring coefficients and category intercepts."""
        n = self.n_factors
        n_cat = self.n_categories
        return (
            values[:n],
            values[n : n + n_cat],
            values[n + n_cat : n + 2 * n_cat],
        )

    def trace(
        self, values: NDArray[np.float64], theta: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        a, ak, d = self._split(values)
        score = theta @ a
        return softmax(np.outer(score, ak) + d[np.newaxis, :], axis=1)

    def _category_gradients(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
        """Gradients with respect to slopes, ak and d."""
        a, ak, _ = self._split(values)
        probs = self.trace(values, theta)
        score = theta @ a
        totals = weights.sum(axis=1, keepdims=True)
        dz = weights - totals * probs
        grad_a = theta.T @ (dz @ ak)
        grad_ak = score @ dz
        grad_d = dz.sum(axis=0)
        return grad_a, grad_ak, grad_d

    def log_likelihood_gradient(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        grad_a, grad_ak, grad_d = self._category_gradients(
            values, theta, weights
        )
        grad = np.concatenate([grad_a, grad_ak, grad_d])
        grad[~self.free] = 0.0
        return grad

    def set_starting_values(self, stats: ItemStartStatistics) -> None:
        n = self.n_factors
        n_cat = self.n_categories
        slope_scale = 2.0 / n_cat
        for idx in self.free_indices:
            if idx < n:
                self.values[idx] = stats.slopes[idx] * slope_scale
            elif idx >= n + n_cat:
                self.values[idx] = stats.log_odds[idx - n - n_cat]


class GPCMItem(NominalItem):
    itemtype = "gpcm"
    fixed_scoring = True


class PartialCreditItem(GPCMItem):
    """Polytomous Rasch item: partial credit with unit slopes."""

    itemtype = "Rasch"
    unit_slopes = True


class RatingScaleItem(GPCMItem):
    """
    Rating scale model.

    Intercepts are d_k = sum_{h <= k} b_h + k * c with d_0 = 0; the b_h are
    shared across a block of items and c shifts each item.
    """

    itemtype = "rsm"
    unit_slopes = True

    def _parameter_names(self) -> list[str]:
        return (
            self.slope_names
            + [f"ak{k}" for k in range(self.n_categories)]
            + [f"b{k}" for k in range(1, self.n_categories)]
            + ["c"]
        )

    def _set_defaults(self) -> None:
        n = self.n_factors
        n_cat = self.n_categories
        self.values[:n] = 1.0
        self.free[: n + n_cat] = False
        self.values[n : n + n_cat] = np.arange(n_cat, dtype=np.float64)

    def _split(
        self, values: NDArray[np.float64]
    ) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
        n = self.n_factors
        n_cat = self.n_categories
        steps = values[n + n_cat : n + 2 * n_cat - 1]
        shift = values[-1]
        d = np.concatenate(
            [[0.0], np.cumsum(steps) + shift * np.arange(1, n_cat)]
        )
        return values[:n], values[n : n + n_cat], d

    def log_likelihood_gradient(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        grad_a, grad_ak, grad_d = self._category_gradients(
            values, theta, weights
        )
        # b_h enters every d_k with k >= h.
        grad_steps = np.cumsum(grad_d[::-1])[::-1][1:]
        grad_shift = np.sum(grad_d * np.arange(self.n_categories))
        grad = np.concatenate([grad_a, grad_ak, grad_steps, [grad_shift]])
        grad[~self.free] = 0.0
        return grad

    def set_starting_values(self, stats: ItemStartStatistics) -> None:
        n = self.n_factors
        n_cat = self.n_categories
        steps = np.diff(stats.log_odds)
        for idx in self.free_indices:
            if n + n_cat <= idx < n + 2 * n_cat - 1:
                self.values[idx] = steps[idx - n - n_cat]
