"""Tests for dissmap.ordination module."""

import numpy as np
import pandas as pd
import pytest

from dissmap.distance import gower_matrix
from dissmap.ordination import nmds, ordinate_prediction, pcoa
from dissmap.predict import PredictionResult
from dissmap.tests.fixtures import generate_synthetic_site_table


def _prediction(dm: np.ndarray) -> PredictionResult:
    ids = [f"s{i}" for i in range(len(dm))]
    coords = pd.DataFrame(
        {"x": np.arange(len(dm), dtype=float), "y": np.zeros(len(dm))}, index=ids
    )
    return PredictionResult(
        site_ids=ids, table=pd.DataFrame(), dissimilarity=dm, coords=coords, order=2
    )


class TestPCoA:
    def test_basic(self):
        table, _ = generate_synthetic_site_table()
        dm = gower_matrix(table.abundances)
        result = pcoa(dm, table.site_ids)
        assert result.coordinates.shape == (table.n_sites, 2)
        assert len(result.explained_variance) == 2
        assert np.all(result.explained_variance >= 0)
        assert result.explained_variance.sum() <= 1.0 + 1e-10
        assert result.method == "PCoA"

    def test_points_on_a_line(self):
        pos = np.array([0.0, 1.0, 3.0, 6.0])
        dm = np.abs(pos[:, None] - pos[None, :])
        result = pcoa(dm, list("abcd"), n_axes=2)
        assert result.explained_variance[0] == pytest.approx(1.0)
        recovered = np.abs(result.coordinates[:, 0][:, None] - result.coordinates[:, 0][None, :])
        np.testing.assert_allclose(recovered, dm, atol=1e-8)


class TestNMDS:
    def test_basic(self):
        table, _ = generate_synthetic_site_table(n_sites=9)
        dm = gower_matrix(table.abundances)
        result = nmds(dm, table.site_ids)
        assert result.coordinates.shape == (9, 2)
        assert result.stress is not None
        assert result.method == "NMDS"
        assert result.site_ids == table.site_ids

    def test_rejects_missing_pairs(self):
        dm = np.ones((4, 4)) - np.eye(4)
        dm[0, 1] = dm[1, 0] = np.nan
        with pytest.raises(ValueError, match="missing site pairs"):
            nmds(dm, list("abcd"))

    def test_rejects_non_square(self):
        with pytest.raises(ValueError, match="square"):
            nmds(np.zeros((3, 4)), list("abc"))

    def test_rejects_asymmetric(self):
        dm = np.array([[0.0, 1.0, 2.0], [1.0, 0.0, 1.0], [5.0, 1.0, 0.0]])
        with pytest.raises(ValueError, match="symmetric"):
            nmds(dm, list("abc"))

    def test_site_count_must_match(self):
        with pytest.raises(ValueError, match="site IDs"):
            nmds(np.ones((3, 3)) - np.eye(3), ["a", "b"])

    def test_too_few_sites(self):
        with pytest.raises(ValueError, match="needs more than"):
            nmds(np.array([[0.0, 1.0], [1.0, 0.0]]), ["a", "b"])


class TestSiteMatrixChecks:
    def test_pcoa_rejects_missing_pairs(self):
        dm = np.zeros((3, 3))
        dm[0, 2] = dm[2, 0] = np.nan
        with pytest.raises(ValueError, match="missing site pairs"):
            pcoa(dm, list("abc"))


class TestOrdinatePrediction:
    def test_scores_in_unit_range(self):
        table, _ = generate_synthetic_site_table(n_sites=8)
        out = ordinate_prediction(_prediction(gower_matrix(table.abundances)))
        assert list(out.columns) == ["site_id", "x", "y", "axis_1", "axis_2", "axis_3"]
        axes = out[["axis_1", "axis_2", "axis_3"]].to_numpy()
        assert axes.min() >= 0.0 and axes.max() <= 1.0
        assert axes[:, 0].max() == pytest.approx(1.0)

    def test_incomplete_matrix(self):
        dm = np.zeros((3, 3))
        dm[0, 1] = dm[1, 0] = np.nan
        with pytest.raises(ValueError, match="every site pair"):
            ordinate_prediction(_prediction(dm))

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown ordination"):
            ordinate_prediction(_prediction(np.zeros((3, 3))), method="ca")
