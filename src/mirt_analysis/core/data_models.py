"""
Data models for IRT estimation input.

This module defines the data structures for:
- ResponseMatrix: respondent-by-item response data with optional groups
- PatternTable: unique response patterns with per-group frequencies
"""

from dataclasses import dataclass, field
from functools import cached_property

import numpy as np
from numpy.typing import ArrayLike, NDArray

from mirt_analysis.core.constants import MISSING_VALUE
from mirt_analysis.core.errors import InputError


def _coerce_responses(responses: ArrayLike) -> NDArray[np.int64]:
    """Convert raw responses to int64 with MISSING_VALUE for missing cells."""
    arr = np.asarray(responses)
    if arr.ndim != 2:
        raise InputError(f"responses must be 2D, got shape {arr.shape}")
    if arr.dtype.kind == "f":
        missing = np.isnan(arr)
        observed = arr[~missing]
        if not np.all(observed == np.round(observed)):
            raise InputError("responses must be integer category codes")
        result = np.where(missing, MISSING_VALUE, arr).astype(np.int64)
        return result
    if arr.dtype.kind not in "iub":
        raise InputError(
            f"responses must be numeric, got dtype {arr.dtype}"
        )
    return arr.astype(np.int64)


@dataclass(frozen=True)
class ResponseMatrix:
    """
    Response data for IRT estimation.

    Attributes:
        responses: Array of shape (n_respondents, n_items) containing
            category indices (0-indexed). Missing responses are indicated by
            MISSING_VALUE.
        n_categories: Number of response categories per item. Inferred from
            the largest observed category when not given.
        groups: Optional group label per respondent. Group levels are the
            sorted unique labels; the first level is the reference group.
        item_names: Optional item labels.
        category_levels: Original response code of each category, per
            item. Defaults to the codes 0..K-1 themselves.
    """

    responses: NDArray[np.int64]
    n_categories: tuple[int, ...] = field(default=())
    groups: tuple[str, ...] | None = None
    item_names: tuple[str, ...] = field(default=())
    category_levels: tuple[tuple[float, ...], ...] = field(default=())

    def __post_init__(self) -> None:
        """Validate and normalise the response matrix."""
        responses = _coerce_responses(self.responses)
        object.__setattr__(self, "responses", responses)
        n_respondents, n_items = responses.shape
        if n_respondents == 0 or n_items == 0:
            raise InputError(
                f"responses must be non-empty, got shape {responses.shape}"
            )

        observed = responses[responses != MISSING_VALUE]
        if observed.size and observed.min() < 0:
            raise InputError(
                f"Response values must be >= 0 or {MISSING_VALUE} for "
                f"missing, got min {observed.min()}"
            )

        if not self.n_categories:
            inferred = []
            for item_idx in range(n_items):
                column = responses[:, item_idx]
                column = column[column != MISSING_VALUE]
                inferred.append(int(column.max()) + 1 if column.size else 0)
            object.__setattr__(self, "n_categories", tuple(inferred))
        else:
            object.__setattr__(
                self, "n_categories", tuple(int(k) for k in self.n_categories)
            )
        if len(self.n_categories) != n_items:
            raise InputError(
                f"n_categories has {len(self.n_categories)} entries for "
                f"{n_items} items"
            )

        for item_idx, n_cat in enumerate(self.n_categories):
            column = responses[:, item_idx]
            column = column[column != MISSING_VALUE]
            if column.size and column.max() >= n_cat:
                raise InputError(
                    f"Item {item_idx} has response {column.max()} but only "
                    f"{n_cat} categories"
                )
            if np.unique(column).size < 2:
                raise InputError(
                    f"Item {item_idx} has fewer than 2 observed categories"
                )

        if self.item_names:
            names = tuple(str(name) for name in self.item_names)
            if len(names) != n_items:
                raise InputError(
                    f"item_names has {len(names)} entries for {n_items} items"
                )
        else:
            names = tuple(f"Item_{j + 1}" for j in range(n_items))
        object.__setattr__(self, "item_names", names)

        if self.category_levels:
            levels = tuple(
                tuple(float(v) for v in item_levels)
                for item_levels in self.category_levels
            )
            if len(levels) != n_items or any(
                len(item_levels) != n_cat
                for item_levels, n_cat in zip(levels, self.n_categories)
            ):
                raise InputError(
                    "category_levels needs one code per category of each item"
                )
        else:
            levels = tuple(
                tuple(float(k) for k in range(n_cat))
                for n_cat in self.n_categories
            )
        object.__setattr__(self, "category_levels", levels)

        if self.groups is not None:
            groups = tuple(str(g) for g in self.groups)
            if len(groups) != n_respondents:
                raise InputError(
                    f"groups has {len(groups)} entries for "
                    f"{n_respondents} respondents"
                )
            object.__setattr__(self, "groups", groups)

    @classmethod
    def from_array(
        cls,
        data: ArrayLike,
        groups: ArrayLike | None = None,
        item_names: tuple[str, ...] = (),
    ) -> "ResponseMatrix":
        """
        Build a response matrix from arbitrary numeric codes.

        Each item's distinct observed values are recoded, in ascending
        order, to 0..K-1. NaN and MISSING_VALUE are treated as missing.
        """
        raw = np.asarray(data, dtype=np.float64)
        if raw.ndim != 2:
            raise InputError(f"responses must be 2D, got shape {raw.shape}")
        missing = np.isnan(raw) | (raw == MISSING_VALUE)
        recoded = np.full(raw.shape, MISSING_VALUE, dtype=np.int64)
        n_categories = []
        category_levels = []
        for item_idx in range(raw.shape[1]):
            observed = ~missing[:, item_idx]
            levels, codes = np.unique(
                raw[observed, item_idx], return_inverse=True
            )
            recoded[observed, item_idx] = codes
            n_categories.append(len(levels))
            category_levels.append(tuple(float(v) for v in levels))
        group_labels = (
            None if groups is None else tuple(np.asarray(groups).astype(str))
        )
        return cls(
            responses=recoded,
            n_categories=tuple(n_categories),
            groups=group_labels,
            item_names=item_names,
            category_levels=tuple(category_levels),
        )

    def recode(self, responses: ArrayLike) -> NDArray[np.int64]:
        """
        Map responses in the original coding to category indices.

        NaN and MISSING_VALUE cells stay missing.

        Raises:
            InputError: If the column count is wrong or a value is not one
                of the item's observed codes.
        """
        raw = np.atleast_2d(np.asarray(responses, dtype=np.float64))
        if raw.ndim != 2 or raw.shape[1] != self.n_items:
            raise InputError(
                f"Expected {self.n_items} item columns, got shape {raw.shape}"
            )
        missing = np.isnan(raw) | (raw == MISSING_VALUE)
        result = np.full(raw.shape, MISSING_VALUE, dtype=np.int64)
        for item_idx, levels in enumerate(self.category_levels):
            lookup = {level: code for code, level in enumerate(levels)}
            observed = ~missing[:, item_idx]
            values = raw[observed, item_idx]
            unknown = [v for v in values if v not in lookup]
            if unknown:
                raise InputError(
                    f"{self.item_names[item_idx]} has no category coded "
                    f"{unknown[0]:g}; observed codes are "
                    f"{list(levels)}"
                )
            result[observed, item_idx] = [lookup[v] for v in values]
        return result

    @property
    def n_respondents(self) -> int:
        """Number of respondents (rows)."""
        return self.responses.shape[0]

    @property
    def n_items(self) -> int:
        """Number of items (columns)."""
        return self.responses.shape[1]

    @property
    def missing_mask(self) -> NDArray[np.bool_]:
        """Boolean mask where True indicates missing response."""
        result: NDArray[np.bool_] = self.responses == MISSING_VALUE
        return result

    @property
    def valid_mask(self) -> NDArray[np.bool_]:
        """Boolean mask where True indicates valid (non-missing) response."""
        result: NDArray[np.bool_] = self.responses != MISSING_VALUE
        return result

    @property
    def has_missing(self) -> bool:
        return bool(self.missing_mask.any())

    @cached_property
    def group_levels(self) -> tuple[str, ...]:
        """Sorted group labels; a single 'all' level when ungrouped."""
        if self.groups is None:
            return ("all",)
        return tuple(str(g) for g in np.unique(np.asarray(self.groups)))

    @property
    def n_groups(self) -> int:
        return len(self.group_levels)

    @cached_property
    def group_index(self) -> NDArray[np.int64]:
        """Group level index of each respondent."""
        if self.groups is None:
            return np.zeros(self.n_respondents, dtype=np.int64)
        lookup = {label: idx for idx, label in enumerate(self.group_levels)}
        return np.array([lookup[g] for g in self.groups], dtype=np.int64)

    def item_response_counts(self, item_idx: int) -> NDArray[np.int64]:
        """
        Count responses for each category of an item (excluding missing).

        Args:
            item_idx: Index of the item.

        Returns:
            Array of shape (n_categories[item_idx],) with counts per category.
        """
        item_responses = self.responses[:, item_idx]
        valid = item_responses[item_responses != MISSING_VALUE]
        counts = np.bincount(valid, minlength=self.n_categories[item_idx])
        return counts.astype(np.int64)

    def sum_scores(self) -> NDArray[np.int64]:
        """Sum of category indices per respondent, missing counted as 0."""
        result: NDArray[np.int64] = np.where(
            self.valid_mask, self.responses, 0
        ).sum(axis=1)
        return result

    def tabulate(self) -> "PatternTable":
        """Collapse respondents into unique response patterns."""
        return PatternTable.from_responses(self)


@dataclass(frozen=True)
class PatternTable:
    """
    Unique response patterns with per-group frequencies.

    Patterns are unique across all groups; a pattern absent from a group
    has frequency 0 in that group's column.

    Attributes:
        patterns: Array of shape (n_patterns, n_items).
        frequencies: Array of shape (n_patterns, n_groups).
        inverse: Pattern index of each respondent, shape (n_respondents,).
        n_categories: Number of categories per item.
    """

    patterns: NDArray[np.int64]
    frequencies: NDArray[np.float64]
    inverse: NDArray[np.int64]
    n_categories: tuple[int, ...]

    @classmethod
    def from_responses(cls, data: ResponseMatrix) -> "PatternTable":
        patterns, inverse = np.unique(
            data.responses, axis=0, return_inverse=True
        )
        inverse = np.asarray(inverse).reshape(-1)
        frequencies = np.zeros((len(patterns), data.n_groups))
        np.add.at(frequencies, (inverse, data.group_index), 1.0)
        return cls(
            patterns=patterns.astype(np.int64),
            frequencies=frequencies,
            inverse=inverse.astype(np.int64),
            n_categories=data.n_categories,
        )

    @classmethod
    def from_patterns(
        cls,
        patterns: ArrayLike,
        n_categories: tuple[int, ...],
        group_index: NDArray[np.int64] | None = None,
        n_groups: int = 1,
    ) -> "PatternTable":
        """Wrap explicit patterns, one row per pattern, without collapsing."""
        arr = _coerce_responses(patterns)
        if arr.shape[1] != len(n_categories):
            raise InputError(
                f"Patterns have {arr.shape[1]} columns for "
                f"{len(n_categories)} items"
            )
        for item_idx, n_cat in enumerate(n_categories):
            column = arr[:, item_idx]
            bad = (column != MISSING_VALUE) & (
                (column < 0) | (column >= n_cat)
            )
            if bad.any():
                raise InputError(
                    f"Pattern values for item {item_idx} must lie in "
                    f"[0, {n_cat}) or be missing"
                )
        if group_index is None:
            group_index = np.zeros(len(arr), dtype=np.int64)
        frequencies = np.zeros((len(arr), n_groups))
        frequencies[np.arange(len(arr)), group_index] = 1.0
        return cls(
            patterns=arr,
            frequencies=frequencies,
            inverse=np.arange(len(arr), dtype=np.int64),
            n_categories=tuple(n_categories),
        )

    @property
    def n_patterns(self) -> int:
        return self.patterns.shape[0]

    @property
    def n_items(self) -> int:
        return self.patterns.shape[1]

    @property
    def n_groups(self) -> int:
        return self.frequencies.shape[1]

    @property
    def total_frequencies(self) -> NDArray[np.float64]:
        """Frequency of each pattern summed over groups."""
        result: NDArray[np.float64] = self.frequencies.sum(axis=1)
        return result

    @property
    def n_respondents(self) -> float:
        return float(self.frequencies.sum())

    @property
    def has_missing(self) -> bool:
        return bool((self.patterns == MISSING_VALUE).any())

    @cached_property
    def indicators(self) -> tuple[NDArray[np.float64], ...]:
        """
        One-hot category indicators per item, shape (n_patterns, K_j).

        Rows for missing responses are all zero.
        """
        result = []
        rows = np.arange(self.n_patterns)
        for item_idx, n_cat in enumerate(self.n_categories):
            column = self.patterns[:, item_idx]
            onehot = np.zeros((self.n_patterns, n_cat))
            observed = column != MISSING_VALUE
            onehot[rows[observed], column[observed]] = 1.0
            result.append(onehot)
        return tuple(result)
