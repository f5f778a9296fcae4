"""
Registry mapping itemtype names to item model classes.
"""

from collections.abc import Sequence
from typing import Any

import numpy as np
from numpy.typing import NDArray

from mirt_analysis.core.errors import InputError
from mirt_analysis.irt.items.base import ItemModel
from mirt_analysis.irt.items.graded import GradedItem, GradedRatingScaleItem
from mirt_analysis.irt.items.logistic import (
    FourPLItem,
    LogisticItem,
    RaschItem,
    ThreePLItem,
    ThreePLuItem,
)
from mirt_analysis.irt.items.nested import (
    FourPLNestedItem,
    NestedLogitItem,
    ThreePLNestedItem,
    ThreePLuNestedItem,
)
from mirt_analysis.irt.items.nominal import (
    GPCMItem,
    NominalItem,
    PartialCreditItem,
    RatingScaleItem,
)
from mirt_analysis.irt.items.partcomp import (
    PartiallyCompensatory3PLItem,
    PartiallyCompensatoryItem,
)

ITEM_TYPES: dict[str, type[ItemModel]] = {
    cls.itemtype: cls
    for cls in (
        LogisticItem,
        ThreePLItem,
        ThreePLuItem,
        FourPLItem,
        GradedItem,
        GradedRatingScaleItem,
        NominalItem,
        GPCMItem,
        RatingScaleItem,
        PartiallyCompensatoryItem,
        PartiallyCompensatory3PLItem,
        NestedLogitItem,
        ThreePLNestedItem,
        ThreePLuNestedItem,
        FourPLNestedItem,
    )
}
ITEM_TYPES["Rasch"] = RaschItem

NESTED_ITEM_TYPES = frozenset(
    name
    for name, cls in ITEM_TYPES.items()
    if issubclass(cls, NestedLogitItem)
)


def resolve_item_class(itemtype: str, n_categories: int) -> type[ItemModel]:
    """Look up the class for an itemtype given the item's category count."""
    if itemtype == "Rasch" and n_categories > 2:
        return PartialCreditItem
    try:
        return ITEM_TYPES[itemtype]
    except KeyError:
        raise InputError(
            f"Unknown itemtype '{itemtype}'; expected one of "
            f"{sorted(ITEM_TYPES)}"
        ) from None


def default_itemtype(n_categories: int) -> str:
    return "2PL" if n_categories == 2 else "graded"


def create_item(
    itemtype: str | None,
    item_id: int,
    n_categories: int,
    n_factors: int,
    loadings: Sequence[bool] | NDArray[np.bool_] | None = None,
    name: str | None = None,
    **kwargs: Any,
) -> ItemModel:
    """
    Instantiate an item model.

    Args:
        itemtype: Registered itemtype name, or None for the default
            (2PL for dichotomous items, graded otherwise).
        item_id: Zero-based item position.
        n_categories: Number of response categories.
        n_factors: Number of latent dimensions.
        loadings: Which factors the item loads on.
        name: Item label.
        **kwargs: Extra constructor arguments (key for nested logit items,
            highlow for nominal items).

    Raises:
        InputError: If the itemtype is unknown or incompatible with the
            item's data, or takes none of the given arguments.
    """
    itemtype = itemtype or default_itemtype(n_categories)
    cls = resolve_item_class(itemtype, n_categories)
    if issubclass(cls, NestedLogitItem | NominalItem):
        return cls(item_id, n_categories, n_factors, loadings, name, **kwargs)
    if kwargs:
        raise InputError(
            f"Item type {itemtype} takes no options, got {sorted(kwargs)}"
        )
    return cls(item_id, n_categories, n_factors, loadings, name)


def register_itemtype(cls: type[ItemModel]) -> type[ItemModel]:
    """
    Add a user-defined item model to the registry.

    Usable as a class decorator. The class must set a unique itemtype.

    Raises:
        InputError: If the itemtype is empty or already registered.
    """
    if not cls.itemtype:
        raise InputError(f"{cls.__name__} must define an itemtype")
    if cls.itemtype in ITEM_TYPES:
        raise InputError(f"itemtype '{cls.itemtype}' is already registered")
    ITEM_TYPES[cls.itemtype] = cls
    return cls
