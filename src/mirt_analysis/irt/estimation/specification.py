"""
Model specification.

ModelSpecification is the validated description of a model's structure:
dimensionality, item types, which items load on which factors, equality
constraints, priors, fixed asymptotes, rating-scale blocks, nested-logit
keys and which latent distribution parameters are free. build_item_set
turns a specification plus response data into an ItemParameterSet.
"""

from collections.abc import Sequence
from typing import TypeVar

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, model_validator

from mirt_analysis.core.data_models import ResponseMatrix
from mirt_analysis.core.errors import InputError
from mirt_analysis.irt.estimation.parameters import (
    GroupDistribution,
    ItemParameterSet,
    SlotRef,
)
from mirt_analysis.irt.items.base import ItemModel
from mirt_analysis.irt.items.graded import GradedRatingScaleItem
from mirt_analysis.irt.items.logistic import RaschItem
from mirt_analysis.irt.items.nominal import PartialCreditItem, RatingScaleItem
from mirt_analysis.irt.items.priors import ParameterPrior
from mirt_analysis.irt.items.registry import (
    NESTED_ITEM_TYPES,
    create_item,
)


class ParameterReference(BaseModel):
    """One item parameter addressed by item position and name."""

    model_config = ConfigDict(frozen=True)

    item: int = Field(ge=0)
    name: str


class PriorSpecification(BaseModel):
    model_config = ConfigDict(frozen=True)

    item: int = Field(ge=0)
    name: str
    prior: ParameterPrior


class ModelSpecification(BaseModel):
    """
    Structure of a MIRT model.

    Attributes:
        n_factors: Number of latent dimensions.
        itemtypes: One itemtype for all items, or one per item (None
            entries take the default: 2PL for dichotomous items, graded
            otherwise).
        loadings: Confirmatory loading pattern, one row of booleans per
            item. None gives an exploratory model whose slopes are fixed
            to zero above the diagonal for identification.
        constraints: Groups of item parameters constrained to be equal.
        priors: Priors attached to individual item parameters.
        guess: Lower asymptote per item (start value if free, fixed value
            otherwise).
        upper: Upper asymptote per item (start value if free, fixed value
            otherwise).
        grsm_blocks: Block id per item for grsm items; items in a block
            share thresholds.
        rsm_blocks: Block id per item for rsm items; items in a block
            share step parameters.
        key: Keyed (correct) category per item for nested logit items.
        highlow: (highest, lowest) category per item for nominal items,
            fixing their scoring coefficients at K - 1 and 0. None entries
            keep the last and first categories.
        free_correlations: Estimate factor correlations of the reference
            group in confirmatory multidimensional models.
        free_group_means: Estimate means of non-reference groups.
        free_group_variances: Estimate covariance matrices of
            non-reference groups.
    """

    model_config = ConfigDict(frozen=True)

    n_factors: int = Field(default=1, ge=1)
    itemtypes: str | tuple[str | None, ...] | None = None
    loadings: tuple[tuple[bool, ...], ...] | None = None
    constraints: tuple[tuple[ParameterReference, ...], ...] = ()
    priors: tuple[PriorSpecification, ...] = ()
    guess: float | tuple[float | None, ...] | None = None
    upper: float | tuple[float | None, ...] | None = None
    grsm_blocks: tuple[int | None, ...] | None = None
    rsm_blocks: tuple[int | None, ...] | None = None
    key: tuple[int | None, ...] | None = None
    highlow: tuple[tuple[int, int] | None, ...] | None = None
    free_correlations: bool = False
    free_group_means: bool = True
    free_group_variances: bool = True

    @model_validator(mode="after")
    def _validate_loadings(self) -> "ModelSpecification":
        if self.loadings is not None:
            for row, pattern in enumerate(self.loadings):
                if len(pattern) != self.n_factors:
                    raise ValueError(
                        f"loadings row {row} has {len(pattern)} entries for "
                        f"{self.n_factors} factors"
                    )
                if not any(pattern):
                    raise ValueError(f"Item {row} loads on no factor")
            for factor in range(self.n_factors):
                if not any(pattern[factor] for pattern in self.loadings):
                    raise ValueError(f"No item loads on factor {factor}")
        if self.guess is not None and not isinstance(self.guess, tuple):
            if not 0.0 <= self.guess < 1.0:
                raise ValueError(f"guess must lie in [0, 1), got {self.guess}")
        if self.upper is not None and not isinstance(self.upper, tuple):
            if not 0.0 < self.upper <= 1.0:
                raise ValueError(f"upper must lie in (0, 1], got {self.upper}")
        return self

    @property
    def is_confirmatory(self) -> bool:
        return self.loadings is not None


T = TypeVar("T")


def _per_item(
    value: T | tuple[T, ...] | None, n_items: int, field: str
) -> list[T | None]:
    if value is None:
        return [None] * n_items
    if isinstance(value, tuple):
        if len(value) != n_items:
            raise InputError(
                f"{field} has {len(value)} entries for {n_items} items"
            )
        return list(value)
    return [value] * n_items


def _loading_mask(
    spec: ModelSpecification, n_items: int
) -> np.ndarray:
    if spec.loadings is not None:
        if len(spec.loadings) != n_items:
            raise InputError(
                f"loadings reference {len(spec.loadings)} items but the data "
                f"has {n_items}"
            )
        return np.array(spec.loadings, dtype=bool)
    return np.ones((n_items, spec.n_factors), dtype=bool)


def _apply_asymptote(item: ItemModel, name: str, value: float | None) -> None:
    if value is None or name not in item.names:
        return
    if not 0.0 <= value <= 1.0:
        raise InputError(f"{item.label}: {name} must lie in [0, 1]")
    if item.free[item.index(name)]:
        # Free asymptotes start strictly inside (0, 1).
        value = min(max(value, 1e-3), 1.0 - 1e-3)
    item.set_reported_value(name, value)


def _block_constraints(
    items: Sequence[ItemModel],
    blocks: Sequence[int | None],
    shared_prefix: str,
    item_class: type[ItemModel],
    field: str,
) -> list[list[SlotRef]]:
    """Equality constraints tying shared parameters within each block."""
    members: dict[int, list[int]] = {}
    for item_idx, block in enumerate(blocks):
        if block is None:
            # Without a block the shift c is confounded with the intercepts.
            if isinstance(items[item_idx], item_class):
                items[item_idx].fix("c", 0.0)
            continue
        if not isinstance(items[item_idx], item_class):
            raise InputError(
                f"{field} assigns item {item_idx} to a block but it is a "
                f"{items[item_idx].itemtype} item"
            )
        members.setdefault(block, []).append(item_idx)

    constraints: list[list[SlotRef]] = []
    for block_items in members.values():
        first = items[block_items[0]]
        first.fix("c", 0.0)
        n_cat = {items[j].n_categories for j in block_items}
        if len(n_cat) != 1:
            raise InputError(
                f"Items {block_items} in a {field} block have different "
                "numbers of categories"
            )
        shared = [n for n in first.names if n.startswith(shared_prefix)]
        shared = [n for n in shared if n[len(shared_prefix) :].isdigit()]
        if len(block_items) > 1:
            for name in shared:
                constraints.append(
                    [(j, items[j].index(name)) for j in block_items]
                )
    return constraints


def build_item_set(
    spec: ModelSpecification, data: ResponseMatrix
) -> ItemParameterSet:
    """
    Build item models and group distributions for a specification.

    Raises:
        InputError: If the specification references items, parameters or
            categories that the data does not have.
    """
    n_items = data.n_items
    mask = _loading_mask(spec, n_items)
    itemtypes = _per_item(spec.itemtypes, n_items, "itemtypes")
    keys = _per_item(spec.key, n_items, "key")
    highlows = _per_item(spec.highlow, n_items, "highlow")
    guesses = _per_item(spec.guess, n_items, "guess")
    uppers = _per_item(spec.upper, n_items, "upper")

    items: list[ItemModel] = []
    for item_idx in range(n_items):
        itemtype = itemtypes[item_idx]
        kwargs: dict[str, object] = {}
        if itemtype in NESTED_ITEM_TYPES:
            kwargs["key"] = keys[item_idx]
        if highlows[item_idx] is not None:
            kwargs["highlow"] = highlows[item_idx]
        item = create_item(
            itemtype,
            item_idx,
            data.n_categories[item_idx],
            spec.n_factors,
            mask[item_idx],
            data.item_names[item_idx],
            **kwargs,
        )
        _apply_asymptote(item, "g", guesses[item_idx])
        _apply_asymptote(item, "u", uppers[item_idx])
        items.append(item)

    if spec.loadings is None and spec.n_factors > 1:
        # Exploratory identification: zero slopes above the diagonal.
        for item_idx in range(min(n_items, spec.n_factors - 1)):
            item = items[item_idx]
            for factor in range(item_idx + 1, spec.n_factors):
                item.fix(f"a{factor + 1}", 0.0)

    for prior_spec in spec.priors:
        if prior_spec.item >= n_items:
            raise InputError(
                f"Prior references item {prior_spec.item}; data has "
                f"{n_items} items"
            )
        item = items[prior_spec.item]
        item.priors[item.index(prior_spec.name)] = prior_spec.prior

    constraints: list[list[SlotRef]] = []
    constraints += _block_constraints(
        items,
        _per_item(spec.grsm_blocks, n_items, "grsm_blocks"),
        "d",
        GradedRatingScaleItem,
        "grsm_blocks",
    )
    constraints += _block_constraints(
        items,
        _per_item(spec.rsm_blocks, n_items, "rsm_blocks"),
        "b",
        RatingScaleItem,
        "rsm_blocks",
    )
    for group in spec.constraints:
        refs: list[SlotRef] = []
        for ref in group:
            if ref.item >= n_items:
                raise InputError(
                    f"Constraint references item {ref.item}; data has "
                    f"{n_items} items"
                )
            refs.append((ref.item, items[ref.item].index(ref.name)))
        constraints.append(refs)

    groups = _build_groups(spec, items, data.group_levels)
    return ItemParameterSet(items, groups, constraints)


def _build_groups(
    spec: ModelSpecification,
    items: Sequence[ItemModel],
    group_levels: Sequence[str],
) -> list[GroupDistribution]:
    n_factors = spec.n_factors
    all_rasch = all(
        isinstance(item, RaschItem | PartialCreditItem | RatingScaleItem)
        for item in items
    )
    groups = [
        GroupDistribution(
            group_levels[0],
            n_factors,
            free_means=False,
            free_variances=all_rasch and n_factors == 1,
            free_covariances=(
                spec.free_correlations
                and spec.is_confirmatory
                and n_factors > 1
            ),
        )
    ]
    for label in group_levels[1:]:
        groups.append(
            GroupDistribution(
                label,
                n_factors,
                free_means=spec.free_group_means,
                free_variances=spec.free_group_variances,
                free_covariances=spec.free_group_variances and n_factors > 1,
            )
        )
    return groups


def null_item_set(item_set: ItemParameterSet) -> ItemParameterSet:
    """
    Independence model: every slope and scoring coefficient fixed at 0 and
    every latent distribution parameter fixed.
    """
    null = item_set.copy()
    for item in null.items:
        for idx, name in enumerate(item.names):
            if name[0] == "a" and (name[1:].isdigit() or name[1] == "k"):
                item.free[idx] = False
                item.values[idx] = 0.0
    for group in null.groups:
        group.free[:] = False
    null.constraints = tuple(
        tuple(
            (b, i)
            for b, i in group
            if null.blocks[b].free[i]
        )
        for group in null.constraints
    )
    null.reindex()
    null.synchronize()
    return null

