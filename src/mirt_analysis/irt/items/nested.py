"""
Nested logit item models for multiple-choice data.

The keyed category follows a 4PL-type curve. Given an incorrect response,
the choice among the distractors follows a nominal model driven by the same
composite a . theta:

    P(key)         = g + (u - g) * expit(a . theta + d)
    P(distractor m) = (1 - P(key)) * softmax_m(ak_m * (a . theta) + d_m)

Distractors are indexed in category order with the key removed; ak0 and d0
are fixed at 0 for identification.
"""

from collections.abc import Sequence
from typing import ClassVar

import numpy as np
from numpy.typing import NDArray
from scipy.special import expit, logit

from mirt_analysis.core.errors import InputError
from mirt_analysis.core.utils import softmax
from mirt_analysis.irt.items.base import ItemModel, ItemStartStatistics
from mirt_analysis.irt.items.logistic import (
    DEFAULT_GUESS_START,
    DEFAULT_UPPER_START,
)
from mirt_analysis.irt.items.transforms import LOGIT


class NestedLogitItem(ItemModel):
    itemtype = "2PLNRM"
    free_guess: ClassVar[bool] = False
    free_upper: ClassVar[bool] = False

    def __init__(
        self,
        item_id: int,
        n_categories: int,
        n_factors: int,
        loadings: Sequence[bool] | NDArray[np.bool_] | None = None,
        name: str | None = None,
        key: int | None = None,
    ) -> None:
        if n_categories < 3:
            raise InputError(
                f"Item {item_id}: nested logit models need at least 3 "
                f"categories, got {n_categories}"
            )
        if key is None or not 0 <= key < n_categories:
            raise InputError(
                f"Item {item_id}: nested logit models need a key in "
                f"[0, {n_categories}), got {key}"
            )
        self.key = key
        super().__init__(item_id, n_categories, n_factors, loadings, name)

    @property
    def n_distractors(self) -> int:
        return self.n_categories - 1

    @property
    def distractor_categories(self) -> NDArray[np.int64]:
        categories = np.arange(self.n_categories)
        result: NDArray[np.int64] = categories[categories != self.key]
        return result

    def _parameter_names(self) -> list[str]:
        m_range = range(self.n_categories - 1)
        return (
            self.slope_names
            + ["d", "g", "u"]
            + [f"ak{m}" for m in m_range]
            + [f"d{m}" for m in m_range]
        )

    def _set_defaults(self) -> None:
        self.values[: self.n_factors] = 1.0
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
        self.free[self.index("ak0")] = False
        self.free[self.index("d0")] = False

    def trace(
        self, values: NDArray[np.float64], theta: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        n = self.n_factors
        n_dist = self.n_distractors
        a = values[:n]
        d, lg, lu = values[n], values[n + 1], values[n + 2]
        ak = values[n + 3 : n + 3 + n_dist]
        dk = values[n + 3 + n_dist : n + 3 + 2 * n_dist]

        score = theta @ a
        lower = expit(lg)
        upper = expit(lu)
        p_key = lower + (upper - lower) * expit(score + d)
        distractors = softmax(np.outer(score, ak) + dk[np.newaxis, :], axis=1)

        probs = np.empty((theta.shape[0], self.n_categories))
        probs[:, self.key] = p_key
        probs[:, self.distractor_categories] = (1.0 - p_key)[
            :, np.newaxis
        ] * distractors
        return probs

    def set_starting_values(self, stats: ItemStartStatistics) -> None:
        n = self.n_factors
        n_dist = self.n_distractors
        p_key = np.clip(stats.proportions[self.key], 0.02, 0.98)
        dist_props = stats.proportions[self.distractor_categories]
        dist_log_odds = np.log(dist_props) - np.log(dist_props[0])
        for idx in self.free_indices:
            if idx < n:
                self.values[idx] = stats.slopes[idx]
            elif idx == n:
                self.values[idx] = logit(p_key)
            elif n + 3 + n_dist <= idx < n + 3 + 2 * n_dist:
                self.values[idx] = dist_log_odds[idx - n - 3 - n_dist]


class ThreePLNestedItem(NestedLogitItem):
    itemtype = "3PLNRM"
    free_guess = True


class ThreePLuNestedItem(NestedLogitItem):
    itemtype = "3PLuNRM"
    free_upper = True


class FourPLNestedItem(NestedLogitItem):
    itemtype = "4PLNRM"
    free_guess = True
    free_upper = True
