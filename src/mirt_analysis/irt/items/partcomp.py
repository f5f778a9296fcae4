"""
Partially compensatory item models.

    P(Y = 1 | theta) = g + (1 - g) * prod_l expit(a_l * theta_l + d_l)

The product runs over the factors the item loads on, so high standing on
one trait cannot fully offset low standing on another.
"""

from typing import ClassVar

import numpy as np
from numpy.typing import NDArray
from scipy.special import expit, logit

from mirt_analysis.irt.items.base import ItemModel, ItemStartStatistics
from mirt_analysis.irt.items.logistic import DEFAULT_GUESS_START
from mirt_analysis.irt.items.transforms import LOGIT


class PartiallyCompensatoryItem(ItemModel):
    itemtype = "PC2PL"
    dichotomous_only = True
    free_guess: ClassVar[bool] = False

    def _parameter_names(self) -> list[str]:
        return (
            self.slope_names
            + [f"d{k + 1}" for k in range(self.n_factors)]
            + ["g"]
        )

    def _set_defaults(self) -> None:
        n = self.n_factors
        self.values[:n] = 1.0
        for d in np.flatnonzero(~self.loadings):
            self.fix(f"d{d + 1}", 0.0)
        idx = self.index("g")
        self.transforms[idx] = LOGIT
        self.lbound[idx] = 0.0
        self.ubound[idx] = 1.0
        self.free[idx] = self.free_guess
        self.values[idx] = logit(
            DEFAULT_GUESS_START if self.free_guess else 0.0
        )

    def trace(
        self, values: NDArray[np.float64], theta: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        n = self.n_factors
        a = values[:n]
        d = values[n : 2 * n]
        lower = expit(values[-1])
        components = expit(theta * a[np.newaxis, :] + d[np.newaxis, :])
        product = np.prod(components[:, self.loadings], axis=1)
        p1 = lower + (1.0 - lower) * product
        return np.column_stack([1.0 - p1, p1])

    def set_starting_values(self, stats: ItemStartStatistics) -> None:
        n = self.n_factors
        n_loaded = max(int(self.loadings.sum()), 1)
        per_component = np.clip(
            stats.proportions[1] ** (1.0 / n_loaded), 0.05, 0.95
        )
        for idx in self.free_indices:
            if idx < n:
                self.values[idx] = max(stats.slopes[idx], 0.5)
            elif idx < 2 * n:
                self.values[idx] = logit(per_component)


class PartiallyCompensatory3PLItem(PartiallyCompensatoryItem):
    itemtype = "PC3PL"
    free_guess = True
