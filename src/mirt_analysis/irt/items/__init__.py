"""
Item response models.

Each item model owns its parameter vector (with free flags, bounds, priors
and scale transforms) and produces category probability traces at arbitrary
latent trait values.
"""

from mirt_analysis.irt.items.base import (
    ItemModel,
    ItemStartStatistics,
    ParameterBlock,
)
from mirt_analysis.irt.items.priors import ParameterPrior
from mirt_analysis.irt.items.registry import (
    ITEM_TYPES,
    create_item,
    default_itemtype,
    register_itemtype,
)

__all__ = [
    "ITEM_TYPES",
    "ItemModel",
    "ItemStartStatistics",
    "ParameterBlock",
    "ParameterPrior",
    "create_item",
    "default_itemtype",
    "register_itemtype",
]
