"""
Tests for group distributions, the constraint index and the parameter
table.
"""

import numpy as np
import pandas as pd
import pytest

from mirt_analysis.core.errors import InputError
from mirt_analysis.irt.estimation.parameters import (
    GroupDistribution,
    ItemParameterSet,
    ParameterIndex,
)
from mirt_analysis.irt.items import create_item
from mirt_analysis.irt.items.base import central_difference_gradient


def make_item_set(
    n_items: int = 3, constraints: tuple = ()
) -> ItemParameterSet:
    items = [create_item("2PL", j, 2, 1) for j in range(n_items)]
    groups = [GroupDistribution("all", 1)]
    return ItemParameterSet(items, groups, constraints)


class TestGroupDistribution:
    def test_parameter_names(self) -> None:
        group = GroupDistribution("g", 2)
        assert group.names == ("MEAN_1", "MEAN_2", "COV_11", "COV_21", "COV_22")

    def test_default_moments(self) -> None:
        group = GroupDistribution("g", 2)
        np.testing.assert_array_equal(group.mean(), [0.0, 0.0])
        np.testing.assert_array_equal(group.cov(), np.eye(2))

    def test_set_moments_respects_fixed(self) -> None:
        """Only free slots take new moments."""
        group = GroupDistribution("g", 2, free_means=True)
        group.set_moments(np.array([0.5, -0.5]), 2 * np.eye(2))
        np.testing.assert_array_equal(group.mean(), [0.5, -0.5])
        np.testing.assert_array_equal(group.cov(), np.eye(2))

    def test_gradient_matches_numerical(self) -> None:
        group = GroupDistribution(
            "g",
            2,
            free_means=True,
            free_variances=True,
            free_covariances=True,
        )
        group.values[:] = [0.2, -0.1, 1.3, 0.4, 0.8]
        rng = np.random.default_rng(0)
        theta = rng.normal(size=(30, 2))
        weights = rng.uniform(size=30)

        analytical = group.log_likelihood_gradient(
            group.values, theta, weights
        )
        numerical = central_difference_gradient(
            lambda v: group.log_likelihood(v, theta, weights),
            group.values,
            group.free_indices,
        )
        np.testing.assert_allclose(analytical, numerical, rtol=1e-5)

    def test_non_positive_definite_covariance(self) -> None:
        group = GroupDistribution("g", 2)
        values = np.array([0.0, 0.0, 1.0, 2.0, 1.0])
        assert group.log_likelihood(
            values, np.zeros((1, 2)), np.ones(1)
        ) == -np.inf


class TestParameterIndex:
    def test_free_slots_are_canonical(self) -> None:
        item_set = make_item_set()
        # a1 and d of three 2PL items; the group is fixed.
        assert item_set.n_free_parameters == 6

    def test_equality_constraint_shares_index(self) -> None:
        """Constrained slots map to one canonical parameter."""
        item_set = make_item_set(constraints=[[(0, 0), (1, 0), (2, 0)]])
        assert item_set.n_free_parameters == 4
        index = item_set.index
        canonical = {int(index.block_canonical(b)[0]) for b in range(3)}
        assert len(canonical) == 1

    def test_unpack_writes_constrained_slots(self) -> None:
        item_set = make_item_set(constraints=[[(0, 0), (1, 0)]])
        x = item_set.pack()
        slope = item_set.index.block_canonical(0)[0]
        x[slope] = 2.5
        item_set.unpack(x)
        assert item_set.items[0].values[0] == 2.5
        assert item_set.items[1].values[0] == 2.5

    def test_constraint_on_fixed_parameter(self) -> None:
        items = [create_item("2PL", j, 2, 1) for j in range(2)]
        with pytest.raises(InputError, match="fixed"):
            ParameterIndex(items, [[(0, 2), (1, 2)]])

    def test_constrained_items_form_one_component(self) -> None:
        item_set = make_item_set(constraints=[[(0, 0), (2, 0)]])
        components = sorted(sorted(c) for c in item_set.item_components())
        assert components == [[0, 2], [1]]

    def test_labels(self) -> None:
        item_set = make_item_set(n_items=1)
        assert item_set.free_parameter_labels == ("Item_1.a1", "Item_1.d")


class TestParameterTable:
    def test_round_trip(self) -> None:
        """An unedited table reproduces the same parameters."""
        item_set = make_item_set()
        item_set.items[1].values[1] = -0.7
        restored = item_set.with_frame(item_set.to_frame())
        np.testing.assert_allclose(restored.pack(), item_set.pack())

    def test_edit_fixes_parameter(self) -> None:
        """Setting est=False removes a parameter from the free vector."""
        item_set = make_item_set()
        frame = item_set.to_frame()
        row = (frame["block"] == "Item_2") & (frame["name"] == "a1")
        frame.loc[row, "est"] = False
        frame.loc[row, "value"] = 1.5
        edited = item_set.with_frame(frame)
        assert edited.n_free_parameters == item_set.n_free_parameters - 1
        assert edited.items[1].values[0] == 1.5

    def test_asymptotes_reported_on_probability_scale(self) -> None:
        items = [create_item("3PL", 0, 2, 1)]
        items[0].set_reported_value("g", 0.2)
        item_set = ItemParameterSet(items, [GroupDistribution("all", 1)])
        frame = item_set.to_frame()
        g = frame.loc[frame["name"] == "g", "value"].item()
        np.testing.assert_allclose(g, 0.2)

    def test_edit_adds_prior(self) -> None:
        item_set = make_item_set(n_items=1)
        frame = item_set.to_frame()
        row = frame["name"] == "a1"
        frame.loc[row, "prior_type"] = "lnorm"
        frame.loc[row, "prior_1"] = 0.0
        frame.loc[row, "prior_2"] = 0.5
        edited = item_set.with_frame(frame)
        prior = edited.items[0].priors[0]
        assert prior is not None
        assert prior.kind == "lnorm"

    def test_wrong_row_count(self) -> None:
        item_set = make_item_set()
        with pytest.raises(InputError, match="rows"):
            item_set.with_frame(item_set.to_frame().iloc[:-1])

    def test_missing_column(self) -> None:
        item_set = make_item_set()
        with pytest.raises(InputError, match="lacks columns"):
            item_set.with_frame(pd.DataFrame({"value": [1.0]}))

    def test_constrained_values_must_agree(self) -> None:
        item_set = make_item_set(constraints=[[(0, 0), (1, 0)]])
        frame = item_set.to_frame()
        frame.loc[
            (frame["block"] == "Item_1") & (frame["name"] == "a1"), "value"
        ] = 3.0
        with pytest.raises(InputError, match="share one value"):
            item_set.with_frame(frame)

    def test_copy_is_independent(self) -> None:
        item_set = make_item_set()
        clone = item_set.copy()
        clone.items[0].values[0] = 9.0
        assert item_set.items[0].values[0] == 1.0
