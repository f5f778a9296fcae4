"""
Dichotomous logistic item models.

All members of the family share the four-parameter form

    P(Y = 1 | theta) = g + (u - g) * expit(a . theta + d)

where the lower (g) and upper (u) asymptotes are stored on the logit scale.
Rasch fixes every slope at 1; 2PL fixes g = 0 and u = 1; 3PL frees g;
3PLu frees u; 4PL frees both.
"""

from typing import ClassVar

import numpy as np
from numpy.typing import NDArray
from scipy.special import expit, logit

from mirt_analysis.core.constants import PROBABILITY_FLOOR
from mirt_analysis.irt.items.base import ItemModel, ItemStartStatistics
from mirt_analysis.irt.items.transforms import LOGIT

DEFAULT_GUESS_START = 0.2
DEFAULT_UPPER_START = 0.95


class LogisticItem(ItemModel):
    itemtype = "2PL"
    dichotomous_only = True
    unit_slopes: ClassVar[bool] = False
    free_guess: ClassVar[bool] = False
    free_upper: ClassVar[bool] = False

    def _parameter_names(self) -> list[str]:
        return self.slope_names + ["d", "g", "u"]

    def _set_defaults(self) -> None:
        self.values[: self.n_factors] = 1.0
        if self.unit_slopes:
            self.free[: self.n_factors] = False
        for name, is_free, start, fixed in (
            ("g", self.free_guess, DEFAULT_GUESS_START, 0.0),
            ("u", self.free_upper, DEFAULT_UPPER_START, 1.0),
        ):
            idx = self.index(name)
            self.transforms[idx] = LOGIT
            self.lbound[idx] = 0.0
            self.ubound[idx] = 1.0
            self.free[idx] = is_free
            self.values[idx] = logit(start if is_free else fixed)

    def _unpack(
        self, values: NDArray[np.float64]
    ) -> tuple[NDArray[np.float64], float, float, float]:
        n = self.n_factors
        return values[:n], values[n], values[n + 1], values[n + 2]

    def trace(
        self, values: NDArray[np.float64], theta: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        a, d, lg, lu = self._unpack(values)
        s = expit(theta @ a + d)
        lower = expit(lg)
        upper = expit(lu)
        p1 = lower + (upper - lower) * s
        return np.column_stack([1.0 - p1, p1])

    def log_likelihood_gradient(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        a, d, lg, lu = self._unpack(values)
        s = expit(theta @ a + d)
        lower = expit(lg)
        upper = expit(lu)
        p1 = np.clip(
            lower + (upper - lower) * s,
            PROBABILITY_FLOOR,
            1.0 - PROBABILITY_FLOOR,
        )
        w = weights[:, 1] / p1 - weights[:, 0] / (1.0 - p1)
        dz = w * (upper - lower) * s * (1.0 - s)

        n = self.n_factors
        grad = np.zeros(self.n_parameters)
        grad[:n] = theta.T @ dz
        grad[n] = dz.sum()
        grad[n + 1] = np.sum(w * lower * (1.0 - lower) * (1.0 - s))
        grad[n + 2] = np.sum(w * upper * (1.0 - upper) * s)
        grad[~self.free] = 0.0
        return grad

    def set_starting_values(self, stats: ItemStartStatistics) -> None:
        n = self.n_factors
        slope_free = self.free[:n]
        self.values[:n][slope_free] = stats.slopes[slope_free]
        if self.free[n]:
            self.values[n] = stats.thresholds[0]


class RaschItem(LogisticItem):
    itemtype = "Rasch"
    unit_slopes = True


class ThreePLItem(LogisticItem):
    itemtype = "3PL"
    free_guess = True


class ThreePLuItem(LogisticItem):
    itemtype = "3PLu"
    free_upper = True


class FourPLItem(LogisticItem):
    itemtype = "4PL"
    free_guess = True
    free_upper = True
