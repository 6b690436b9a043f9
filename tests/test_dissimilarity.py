"""
Tests for the Gower dissimilarity engine.
"""

import warnings

import numpy as np
import pandas as pd
import pytest

from pcard_segments.dissimilarity import degenerate_attributes, gower_distance_matrix
from pcard_segments.features import CATEGORICAL, CONTINUOUS
from pcard_segments.errors import SchemaViolationError


def _mixed():
    table = pd.DataFrame({
        "mean_amount": [10.0, 20.0, 30.0, 10.0],
        "prop_weekend": [0.0, 0.5, 1.0, 0.0],
        "top_merchant": ["amazon", "asda", "asda", "amazon"],
    }, index=pd.Index(["a", "b", "c", "d"], name="client_id"))
    kinds = {"mean_amount": CONTINUOUS, "prop_weekend": CONTINUOUS, "top_merchant": CATEGORICAL}
    return table, kinds


class TestMatrixProperties:

    def test_shape_and_labels(self, client_features, distance):
        assert distance.shape == (len(client_features), len(client_features))
        assert list(distance.index) == list(client_features.index)
        assert list(distance.columns) == list(client_features.index)

    def test_zero_diagonal(self, distance):
        assert np.all(np.diag(distance.to_numpy()) == 0.0)

    def test_symmetric(self, distance):
        d = distance.to_numpy()
        assert np.array_equal(d, d.T)

    def test_bounded(self, distance):
        d = distance.to_numpy()
        assert d.min() >= 0.0
        assert d.max() <= 1.0

    def test_groups_separate(self, distance):
        ids = distance.index
        same = ids.str[0].to_numpy()[:, None] == ids.str[0].to_numpy()[None, :]
        d = distance.to_numpy()
        assert d[same].max() < d[~same].min()


class TestGowerArithmetic:

    def test_identical_entities_zero(self):
        table, kinds = _mixed()
        d = gower_distance_matrix(table, kinds)
        assert d.loc["a", "d"] == 0.0

    def test_hand_computed_values(self):
        table, kinds = _mixed()
        d = gower_distance_matrix(table, kinds)
        # a vs b: 10/20 + 0.5/1 + 1, over 3 attributes
        assert d.loc["a", "b"] == pytest.approx((0.5 + 0.5 + 1.0) / 3, abs=1e-6)
        # b vs c: 10/20 + 0.5/1 + 0
        assert d.loc["b", "c"] == pytest.approx((0.5 + 0.5 + 0.0) / 3, abs=1e-6)
        # a vs c: 1 + 1 + 1
        assert d.loc["a", "c"] == pytest.approx(1.0, abs=1e-6)

    def test_categorical_mismatch_contributes_one(self):
        table = pd.DataFrame({"top_merchant": ["amazon", "asda", "amazon"]}, index=["a", "b", "c"])
        d = gower_distance_matrix(table, {"top_merchant": CATEGORICAL})
        assert d.loc["a", "b"] == 1.0
        assert d.loc["a", "c"] == 0.0

    def test_categorical_contribution_in_mixed_sum(self):
        table = pd.DataFrame({
            "mean_amount": [5.0, 5.0, 9.0],
            "top_merchant": ["amazon", "asda", "amazon"],
        }, index=["a", "b", "c"])
        d = gower_distance_matrix(table, {"mean_amount": CONTINUOUS, "top_merchant": CATEGORICAL})
        assert d.loc["a", "b"] == pytest.approx(0.5, abs=1e-6)

    def test_negative_amounts(self):
        table = pd.DataFrame({"mean_amount": [-40.0, -20.0, -10.0]}, index=["a", "b", "c"])
        d = gower_distance_matrix(table, {"mean_amount": CONTINUOUS})
        assert d.loc["a", "b"] == pytest.approx(20.0 / 30.0, abs=1e-6)
        assert d.loc["a", "c"] == pytest.approx(1.0, abs=1e-6)
        assert d.to_numpy().min() >= 0.0


class TestDegenerateAttributes:

    def test_zero_range_contributes_nothing(self):
        table = pd.DataFrame({
            "n_transactions": [20, 20, 20],
            "mean_amount": [0.0, 5.0, 10.0],
        }, index=["a", "b", "c"])
        kinds = {"n_transactions": CONTINUOUS, "mean_amount": CONTINUOUS}
        d = gower_distance_matrix(table, kinds)
        # constant column counts as an attribute but adds 0
        assert d.loc["a", "c"] == pytest.approx(0.5, abs=1e-6)
        assert degenerate_attributes(table, kinds) == ["n_transactions"]

    def test_synthetic_table_degenerates(self, client_features, kinds):
        assert "n_transactions" in degenerate_attributes(client_features, kinds)


class TestMissingValues:

    def test_pairwise_exclusion(self):
        table = pd.DataFrame({
            "mean_amount": [0.0, 10.0, np.nan],
            "top_merchant": ["amazon", "asda", "asda"],
        }, index=["a", "b", "c"])
        d = gower_distance_matrix(table, {"mean_amount": CONTINUOUS, "top_merchant": CATEGORICAL})
        assert d.loc["a", "b"] == pytest.approx(1.0)
        # only the categorical attribute is shared with c
        assert d.loc["a", "c"] == pytest.approx(1.0)
        assert d.loc["b", "c"] == pytest.approx(0.0)
        assert np.array_equal(d.to_numpy(), d.to_numpy().T)

    def test_missing_categorical(self):
        table = pd.DataFrame({
            "mean_amount": [0.0, 10.0, 5.0],
            "top_merchant": ["amazon", None, "amazon"],
        }, index=["a", "b", "c"])
        d = gower_distance_matrix(table, {"mean_amount": CONTINUOUS, "top_merchant": CATEGORICAL})
        assert d.loc["a", "b"] == pytest.approx(1.0)
        assert d.loc["a", "c"] == pytest.approx((0.5 + 0.0) / 2)

    def test_no_shared_attribute_warns(self):
        table = pd.DataFrame({
            "x": [1.0, np.nan, 3.0],
            "y": [np.nan, 2.0, 4.0],
        }, index=["a", "b", "c"])
        with pytest.warns(UserWarning):
            d = gower_distance_matrix(table, {"x": CONTINUOUS, "y": CONTINUOUS})
        assert d.loc["a", "b"] == 0.0


class TestSchemaErrors:

    def test_kind_map_mismatch(self):
        table, kinds = _mixed()
        kinds.pop("prop_weekend")
        with pytest.raises(SchemaViolationError):
            gower_distance_matrix(table, kinds)

    def test_unknown_kind(self):
        table, kinds = _mixed()
        kinds["prop_weekend"] = "ordinal"
        with pytest.raises(SchemaViolationError):
            gower_distance_matrix(table, kinds)

    def test_complete_data_does_not_warn(self):
        table, kinds = _mixed()
        with warnings.catch_warnings():
            warnings.simplefilter("error", UserWarning)
            gower_distance_matrix(table, kinds)
