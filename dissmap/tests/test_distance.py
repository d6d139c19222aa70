"""Tests for dissmap.distance module."""

import numpy as np
import pandas as pd
import pytest

from dissmap.distance import (
    calculate_pairwise_distances_matrix,
    calculate_pairwise_gower_dist_matrix,
    geodesic,
    gower_matrix,
    haversine,
    matrix_to_long,
    pairwise_distance_matrix,
)
from dissmap.io import MissingColumnsError
from dissmap.tests.fixtures import generate_example_table, generate_synthetic_site_table


class TestHaversine:
    def test_one_degree_latitude(self):
        assert haversine(0.0, 0.0, 0.0, 1.0) == pytest.approx(111195, rel=1e-4)

    def test_scalar_returns_float(self):
        assert isinstance(haversine(10.0, 50.0, 11.0, 51.0), float)

    def test_same_point(self):
        assert haversine(18.4, -33.9, 18.4, -33.9) == 0.0

    def test_vectorised(self):
        d = haversine(np.zeros(3), np.zeros(3), np.zeros(3), np.array([0.0, 1.0, 2.0]))
        assert d.shape == (3,)
        np.testing.assert_allclose(d[2], 2 * d[1])


class TestGeodesic:
    def test_one_degree_latitude_at_equator(self):
        d = geodesic(0.0, 0.0, 0.0, 1.0)
        assert d[0] == pytest.approx(110574, rel=1e-3)

    def test_close_to_haversine(self):
        d = geodesic(18.0, -34.0, 19.0, -33.0)[0]
        assert d == pytest.approx(haversine(18.0, -34.0, 19.0, -33.0), rel=5e-3)


class TestPairwiseDistanceMatrix:
    def test_symmetric_zero_diagonal(self):
        dm = pairwise_distance_matrix([0.0, 1.0, 2.0], [0.0, 0.5, 1.0])
        assert dm.shape == (3, 3)
        np.testing.assert_allclose(dm, dm.T)
        np.testing.assert_allclose(np.diag(dm), 0.0)
        assert (dm[~np.eye(3, dtype=bool)] > 0).all()

    def test_custom_function(self):
        dm = pairwise_distance_matrix([0.0, 3.0], [0.0, 4.0], method=lambda x1, y1, x2, y2: np.hypot(x2 - x1, y2 - y1))
        assert dm[0, 1] == pytest.approx(5.0)

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown distance method"):
            pairwise_distance_matrix([0.0, 1.0], [0.0, 1.0], method="manhattan")

    def test_single_site(self):
        np.testing.assert_array_equal(pairwise_distance_matrix([1.0], [2.0]), [[0.0]])


class TestCalculatePairwiseDistances:
    def test_rows_and_units(self):
        df = generate_example_table().to_frame()
        result = calculate_pairwise_distances_matrix(df, distance_fun="haversine")
        assert list(result.columns) == ["site_from", "site_to", "value"]
        assert len(result) == 3 * 2
        ab = result[(result["site_from"] == "A") & (result["site_to"] == "B")]
        assert ab["value"].iloc[0] == pytest.approx(111.195, rel=1e-4)

    def test_symmetric_long_form(self):
        table, _ = generate_synthetic_site_table(n_sites=5)
        result = calculate_pairwise_distances_matrix(table.to_frame())
        assert len(result) == 20
        lookup = {(a, b): v for a, b, v in result.itertuples(index=False)}
        for (a, b), v in lookup.items():
            assert lookup[(b, a)] == pytest.approx(v)

    def test_missing_columns(self):
        df = pd.DataFrame({"site": ["a"], "x": [0.0]})
        with pytest.raises(MissingColumnsError) as excinfo:
            calculate_pairwise_distances_matrix(df)
        assert excinfo.value.missing == ["grid_id", "y"]


class TestGowerMatrix:
    def test_properties(self):
        table, _ = generate_synthetic_site_table(n_sites=6)
        dm = gower_matrix(table.abundances)
        np.testing.assert_allclose(dm, dm.T)
        np.testing.assert_allclose(np.diag(dm), 0.0)
        assert ((dm >= 0) & (dm <= 1)).all()

    def test_missing_cells_drop_out(self):
        data = np.array([[0.0, np.nan], [1.0, 5.0], [1.0, 10.0]])
        dm = gower_matrix(data)
        # Row 0 shares only the first column with the others
        assert dm[0, 1] == pytest.approx(1.0)
        assert dm[1, 2] == pytest.approx(0.5)

    def test_no_shared_columns(self):
        data = np.array([[1.0, np.nan], [np.nan, 2.0]])
        assert np.isnan(gower_matrix(data)[0, 1])

    def test_categorical_columns(self):
        df = pd.DataFrame({"habitat": ["forest", "forest", "grass"], "cover": [0.0, 1.0, 1.0]})
        dm = gower_matrix(df)
        assert dm[0, 1] == pytest.approx(0.5)
        assert dm[1, 2] == pytest.approx(0.5)
        assert dm[0, 2] == pytest.approx(1.0)

    def test_ranges_length_checked(self):
        with pytest.raises(ValueError, match="ranges"):
            gower_matrix(np.zeros((2, 3)), ranges=[1.0, 1.0])


class TestMatrixToLong:
    def test_row_major_without_self(self):
        long = matrix_to_long(np.arange(9, dtype=float).reshape(3, 3), ["a", "b", "c"])
        assert list(zip(long["site_from"], long["site_to"])) == [
            ("a", "b"), ("a", "c"), ("b", "a"), ("b", "c"), ("c", "a"), ("c", "b"),
        ]
        np.testing.assert_array_equal(long["value"], [1, 2, 3, 5, 6, 7])

    def test_keep_self(self):
        long = matrix_to_long(np.zeros((2, 2)), ["a", "b"], exclude_self=False)
        assert len(long) == 4


class TestPairwiseGower:
    def test_layout_and_coordinates(self):
        table = generate_example_table()
        df = table.to_frame()
        result = calculate_pairwise_gower_dist_matrix(df, table.species)
        assert list(result.columns) == ["site_from", "site_to", "value", "x", "y"]
        assert len(result) == 6
        for _, row in result.iterrows():
            assert (row["x"], row["y"]) == table.coords(row["site_from"])
        assert result["value"].between(0, 1).all()

    def test_identical_sites_zero(self):
        df = pd.DataFrame({
            "grid_id": ["a", "b", "c"],
            "x": [0.0, 1.0, 2.0],
            "y": [0.0, 0.0, 0.0],
            "sp1": [1.0, 1.0, 4.0],
            "sp2": [2.0, 2.0, 0.0],
        })
        result = calculate_pairwise_gower_dist_matrix(df, ["sp1", "sp2"])
        ab = result[(result["site_from"] == "a") & (result["site_to"] == "b")]
        assert ab["value"].iloc[0] == 0.0

    def test_missing_species_column(self):
        df = generate_example_table().to_frame()
        with pytest.raises(MissingColumnsError, match="sp9"):
            calculate_pairwise_gower_dist_matrix(df, ["sp1", "sp9"])
