"""
Model parameter containers.

This module holds everything the estimators optimise:
- GroupDistribution: latent mean vector and covariance of one group
- ParameterIndex: union-find mapping raw parameter slots to canonical free
  parameters, so equality-constrained slots share one optimiser coordinate
- ItemParameterSet: the item models and group distributions of a model,
  with pack/unpack to and from the canonical free vector and a flat
  pandas parameter table that round-trips edits
"""

from collections.abc import Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.stats import multivariate_normal

from mirt_analysis.core.errors import InputError
from mirt_analysis.core.utils import is_positive_definite
from mirt_analysis.irt.items.base import ItemModel, ParameterBlock
from mirt_analysis.irt.items.priors import ParameterPrior

# (block index, parameter index) pair addressing one raw parameter slot
SlotRef = tuple[int, int]

NO_PRIOR = "none"
PARAMETER_TABLE_COLUMNS = [
    "block",
    "kind",
    "class",
    "name",
    "parnum",
    "value",
    "lbound",
    "ubound",
    "est",
    "prior_type",
    "prior_1",
    "prior_2",
    "constraint",
]


class GroupDistribution(ParameterBlock):
    """
    Multivariate normal latent distribution of one group.

    Parameters are MEAN_d for each factor followed by the lower triangle of
    the covariance matrix, COV_ij with i >= j, in row order.
    """

    def __init__(
        self,
        label: str,
        n_factors: int,
        free_means: bool = False,
        free_variances: bool = False,
        free_covariances: bool = False,
    ) -> None:
        self.n_factors = n_factors
        self._tril = np.tril_indices(n_factors)
        names = [f"MEAN_{d + 1}" for d in range(n_factors)] + [
            f"COV_{i + 1}{j + 1}" for i, j in zip(*self._tril)
        ]
        super().__init__(names, label)
        for k, (i, j) in enumerate(zip(*self._tril)):
            idx = n_factors + k
            if i == j:
                self.values[idx] = 1.0
                self.free[idx] = free_variances
            else:
                self.free[idx] = free_covariances
        self.free[:n_factors] = free_means

    def mean(self, values: NDArray[np.float64] | None = None) -> NDArray[np.float64]:
        values = self.values if values is None else values
        result: NDArray[np.float64] = values[: self.n_factors].copy()
        return result

    def cov(self, values: NDArray[np.float64] | None = None) -> NDArray[np.float64]:
        values = self.values if values is None else values
        cov = np.zeros((self.n_factors, self.n_factors))
        cov[self._tril] = values[self.n_factors :]
        result: NDArray[np.float64] = cov + np.tril(cov, -1).T
        return result

    def set_moments(
        self, mean: NDArray[np.float64], cov: NDArray[np.float64]
    ) -> None:
        """Write new moments into the free slots only."""
        candidate = np.concatenate([mean, cov[self._tril]])
        self.values[self.free] = candidate[self.free]

    def log_likelihood(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> float:
        """Weighted normal log density of theta rows."""
        cov = self.cov(values)
        if not is_positive_definite(cov):
            return -np.inf
        log_density = multivariate_normal.logpdf(
            theta, mean=self.mean(values), cov=cov
        )
        return float(np.sum(weights * log_density))

    def log_likelihood_gradient(
        self,
        values: NDArray[np.float64],
        theta: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Analytic gradient over means and lower-triangle covariances."""
        cov = self.cov(values)
        precision = np.linalg.inv(cov)
        centered = theta - self.mean(values)
        total = float(np.sum(weights))
        scatter = (centered * weights[:, np.newaxis]).T @ centered
        grad_mean = precision @ (weights @ centered)
        grad_cov = 0.5 * (
            precision @ scatter @ precision - total * precision
        )
        # Off-diagonal covariances enter the symmetric matrix twice.
        grad_cov = 2.0 * grad_cov - np.diag(np.diag(grad_cov))
        grad: NDArray[np.float64] = np.concatenate(
            [grad_mean, grad_cov[self._tril]]
        )
        grad[~self.free] = 0.0
        return grad

    def sample(self, n: int, rng: np.random.Generator) -> NDArray[np.float64]:
        result: NDArray[np.float64] = rng.multivariate_normal(
            self.mean(), self.cov(), size=n
        )
        return result


class ParameterIndex:
    """
    Union-find index of raw parameter slots.

    Every free slot maps to a canonical free-parameter index; slots joined
    by an equality constraint share the same index. Fixed slots map to -1
    and are never written by unpack.
    """

    def __init__(
        self,
        blocks: Sequence[ParameterBlock],
        constraints: Sequence[Sequence[SlotRef]] = (),
    ) -> None:
        sizes = [block.n_parameters for block in blocks]
        self.offsets = np.concatenate([[0], np.cumsum(sizes)]).astype(int)
        n_slots = int(self.offsets[-1])
        self.block_of_slot = np.repeat(np.arange(len(blocks)), sizes)
        free = (
            np.concatenate([block.free for block in blocks])
            if blocks
            else np.zeros(0, dtype=bool)
        )

        parent = list(range(n_slots))

        def find(slot: int) -> int:
            while parent[slot] != slot:
                parent[slot] = parent[parent[slot]]
                slot = parent[slot]
            return slot

        for group in constraints:
            slots = []
            for block_idx, param_idx in group:
                if not 0 <= block_idx < len(blocks):
                    raise InputError(
                        f"Constraint references unknown block {block_idx}"
                    )
                block = blocks[block_idx]
                if not 0 <= param_idx < block.n_parameters:
                    raise InputError(
                        f"Constraint references unknown parameter "
                        f"{param_idx} of {block.label}"
                    )
                if not block.free[param_idx]:
                    raise InputError(
                        f"Constrained parameter {block.label}."
                        f"{block.names[param_idx]} is fixed"
                    )
                slots.append(self.slot(block_idx, param_idx))
            for slot in slots[1:]:
                root_a, root_b = find(slots[0]), find(slot)
                if root_a != root_b:
                    parent[root_b] = root_a

        self.canonical = np.full(n_slots, -1, dtype=np.int64)
        roots: dict[int, int] = {}
        representative: list[int] = []
        for slot in range(n_slots):
            if not free[slot]:
                continue
            root = find(slot)
            if root not in roots:
                roots[root] = len(roots)
                representative.append(slot)
            self.canonical[slot] = roots[root]
        self.n_free = len(roots)
        self.representative = np.array(representative, dtype=np.int64)

    def slot(self, block_idx: int, param_idx: int) -> int:
        return int(self.offsets[block_idx] + param_idx)

    def block_canonical(self, block_idx: int) -> NDArray[np.int64]:
        """Canonical index of each slot in a block (-1 for fixed)."""
        result: NDArray[np.int64] = self.canonical[
            self.offsets[block_idx] : self.offsets[block_idx + 1]
        ]
        return result

    def locate(self, canonical_idx: int) -> SlotRef:
        """Representative (block, parameter) slot of a canonical parameter."""
        slot = int(self.representative[canonical_idx])
        block_idx = int(self.block_of_slot[slot])
        return block_idx, slot - int(self.offsets[block_idx])

    def pack(self, blocks: Sequence[ParameterBlock]) -> NDArray[np.float64]:
        x = np.empty(self.n_free)
        for canonical_idx in range(self.n_free):
            block_idx, param_idx = self.locate(canonical_idx)
            x[canonical_idx] = blocks[block_idx].values[param_idx]
        return x

    def unpack(
        self, x: NDArray[np.float64], blocks: Sequence[ParameterBlock]
    ) -> None:
        for block_idx, block in enumerate(blocks):
            canonical = self.block_canonical(block_idx)
            mask = canonical >= 0
            block.values[mask] = x[canonical[mask]]

    def components(self, block_ids: Sequence[int]) -> list[list[int]]:
        """Group blocks that share canonical parameters."""
        owner: dict[int, int] = {}
        parent = {b: b for b in block_ids}

        def find(b: int) -> int:
            while parent[b] != b:
                parent[b] = parent[parent[b]]
                b = parent[b]
            return b

        for block_idx in block_ids:
            for canonical_idx in self.block_canonical(block_idx):
                if canonical_idx < 0:
                    continue
                if canonical_idx in owner:
                    root_a = find(owner[canonical_idx])
                    root_b = find(block_idx)
                    if root_a != root_b:
                        parent[root_b] = root_a
                else:
                    owner[int(canonical_idx)] = block_idx

        grouped: dict[int, list[int]] = {}
        for block_idx in block_ids:
            grouped.setdefault(find(block_idx), []).append(block_idx)
        return list(grouped.values())


class ItemParameterSet:
    """
    Item models and group distributions of one model.

    Blocks are ordered items first, then groups; block index j < n_items
    is item j and block n_items + g is group g.
    """

    def __init__(
        self,
        items: Sequence[ItemModel],
        groups: Sequence[GroupDistribution],
        constraints: Sequence[Sequence[SlotRef]] = (),
    ) -> None:
        if not items:
            raise InputError("A model needs at least one item")
        self.items = list(items)
        self.groups = list(groups)
        self.constraints = tuple(tuple(group) for group in constraints)
        self.index = ParameterIndex(self.blocks, self.constraints)

    @property
    def blocks(self) -> list[ParameterBlock]:
        return [*self.items, *self.groups]

    @property
    def n_items(self) -> int:
        return len(self.items)

    @property
    def n_groups(self) -> int:
        return len(self.groups)

    @property
    def n_factors(self) -> int:
        return self.items[0].n_factors

    @property
    def n_free_parameters(self) -> int:
        return self.index.n_free

    def copy(self) -> "ItemParameterSet":
        clone = object.__new__(ItemParameterSet)
        clone.items = [item.copy() for item in self.items]
        clone.groups = [group.copy() for group in self.groups]
        clone.constraints = self.constraints
        clone.index = self.index
        return clone

    def reindex(self) -> None:
        """Rebuild the constraint index after free flags changed."""
        self.index = ParameterIndex(self.blocks, self.constraints)

    def pack(self) -> NDArray[np.float64]:
        return self.index.pack(self.blocks)

    def unpack(self, x: NDArray[np.float64]) -> None:
        self.index.unpack(x, self.blocks)

    def synchronize(self) -> None:
        """Copy each constrained group's representative value to its slots."""
        self.unpack(self.pack())

    def with_values(self, x: NDArray[np.float64]) -> "ItemParameterSet":
        clone = self.copy()
        clone.unpack(x)
        return clone

    def item_components(self) -> list[list[int]]:
        """Items linked by equality constraints, optimised jointly."""
        return self.index.components(list(range(self.n_items)))

    @property
    def free_parameter_labels(self) -> tuple[str, ...]:
        labels = []
        blocks = self.blocks
        for canonical_idx in range(self.index.n_free):
            block_idx, param_idx = self.index.locate(canonical_idx)
            block = blocks[block_idx]
            labels.append(f"{block.label}.{block.names[param_idx]}")
        return tuple(labels)

    def free_parameter_slot(self, canonical_idx: int) -> tuple[ParameterBlock, int]:
        block_idx, param_idx = self.index.locate(canonical_idx)
        return self.blocks[block_idx], param_idx

    def mean_cov(self, group: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        dist = self.groups[group]
        return dist.mean(), dist.cov()

    def to_frame(self) -> pd.DataFrame:
        """Flat parameter table, one row per raw parameter slot."""
        rows = []
        for block_idx, block in enumerate(self.blocks):
            canonical = self.index.block_canonical(block_idx)
            reported = block.reported_values()
            is_item = isinstance(block, ItemModel)
            for param_idx, name in enumerate(block.names):
                prior = block.priors[param_idx]
                rows.append(
                    {
                        "block": block.label,
                        "kind": "item" if is_item else "group",
                        "class": (
                            block.itemtype
                            if isinstance(block, ItemModel)
                            else "GroupPars"
                        ),
                        "name": name,
                        "parnum": self.index.slot(block_idx, param_idx),
                        "value": reported[param_idx],
                        "lbound": block.lbound[param_idx],
                        "ubound": block.ubound[param_idx],
                        "est": bool(block.free[param_idx]),
                        "prior_type": NO_PRIOR if prior is None else prior.kind,
                        "prior_1": np.nan if prior is None else prior.p1,
                        "prior_2": np.nan if prior is None else prior.p2,
                        "constraint": int(canonical[param_idx]),
                    }
                )
        return pd.DataFrame(rows, columns=PARAMETER_TABLE_COLUMNS)

    def with_frame(self, frame: pd.DataFrame) -> "ItemParameterSet":
        """
        Copy of this set with values, free flags, bounds and priors taken
        from a (possibly edited) parameter table.

        Raises:
            InputError: If the table does not describe this model's slots
                or leaves equality-constrained slots with different values.
        """
        missing = set(PARAMETER_TABLE_COLUMNS) - set(frame.columns)
        if missing:
            raise InputError(f"Parameter table lacks columns {sorted(missing)}")
        clone = self.copy()
        blocks = clone.blocks
        n_slots = int(clone.index.offsets[-1])
        if len(frame) != n_slots:
            raise InputError(
                f"Parameter table has {len(frame)} rows for {n_slots} slots"
            )

        for row in frame.itertuples(index=False):
            parnum = int(row.parnum)
            if not 0 <= parnum < n_slots:
                raise InputError(f"Unknown parnum {parnum}")
            block_idx = int(clone.index.block_of_slot[parnum])
            param_idx = parnum - int(clone.index.offsets[block_idx])
            block = blocks[block_idx]
            if block.names[param_idx] != row.name or block.label != row.block:
                raise InputError(
                    f"parnum {parnum} is {block.label}.{block.names[param_idx]}"
                    f", table says {row.block}.{row.name}"
                )
            transform = block.transforms[param_idx]
            block.values[param_idx] = transform.to_internal(float(row.value))
            block.free[param_idx] = bool(row.est)
            block.lbound[param_idx] = float(row.lbound)
            block.ubound[param_idx] = float(row.ubound)
            prior_type = str(row.prior_type)
            if prior_type == NO_PRIOR:
                block.priors[param_idx] = None
            else:
                try:
                    block.priors[param_idx] = ParameterPrior(
                        kind=prior_type,  # type: ignore[arg-type]
                        p1=float(row.prior_1),
                        p2=float(row.prior_2),
                    )
                except ValueError as e:
                    raise InputError(
                        f"Invalid prior for {block.label}.{row.name}: {e}"
                    ) from e

        clone.reindex()
        for group in clone.constraints:
            values = {blocks[b].values[i] for b, i in group}
            if len(values) > 1:
                raise InputError(
                    "Equality-constrained parameters must share one value: "
                    + ", ".join(
                        f"{blocks[b].label}.{blocks[b].names[i]}"
                        for b, i in group
                    )
                )
        return clone
