"""Ordination (PCoA, NMDS) of site dissimilarity matrices."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np
import pandas as pd

from .predict import PredictionResult


@dataclass
class OrdinationResult:
    """Ordination coordinates and diagnostics."""

    site_ids: list[Any]
    coordinates: np.ndarray  # shape (n_sites, n_axes)
    explained_variance: np.ndarray | None  # per axis (PCoA only)
    stress: float | None  # NMDS only
    method: str


def _site_matrix(matrix: np.ndarray, site_ids: Sequence[Any]) -> np.ndarray:
    """Validate a complete, square, symmetric site dissimilarity matrix."""
    dm = np.asarray(matrix, dtype=np.float64)
    if dm.ndim != 2 or dm.shape[0] != dm.shape[1]:
        raise ValueError(f"Dissimilarity matrix must be square, got shape {dm.shape}")
    if dm.shape[0] != len(site_ids):
        raise ValueError(
            f"Matrix has {dm.shape[0]} rows for {len(site_ids)} site IDs"
        )
    if np.isnan(dm).any():
        raise ValueError("Dissimilarity matrix has missing site pairs")
    if not np.allclose(dm, dm.T):
        raise ValueError("Dissimilarity matrix is not symmetric")
    return dm


def pcoa(matrix: np.ndarray, site_ids: Sequence[Any], n_axes: int = 2) -> OrdinationResult:
    """Principal Coordinates Analysis via classical MDS.

    Gower-centres the squared dissimilarities, eigendecomposes, and keeps
    the leading axes.
    """
    d2 = _site_matrix(matrix, site_ids) ** 2
    n = d2.shape[0]
    centre = np.eye(n) - np.full((n, n), 1.0 / n)
    gram = -0.5 * centre @ d2 @ centre

    eigenvalues, eigenvectors = np.linalg.eigh(gram)
    order = np.argsort(eigenvalues)[::-1]
    eigenvalues = eigenvalues[order]
    eigenvectors = eigenvectors[:, order]

    n_axes = max(1, min(n_axes, n - 1))
    kept = eigenvalues[:n_axes].clip(min=0)
    coords = eigenvectors[:, :n_axes] * np.sqrt(kept)

    positive = eigenvalues[eigenvalues > 0].sum()
    explained = kept / positive if positive > 0 else np.zeros(n_axes)

    return OrdinationResult(
        site_ids=list(site_ids),
        coordinates=coords,
        explained_variance=explained,
        stress=None,
        method="PCoA",
    )


def nmds(
    matrix: np.ndarray,
    site_ids: Sequence[Any],
    n_axes: int = 2,
    random_state: int = 42,
) -> OrdinationResult:
    """Non-metric Multidimensional Scaling of sites via sklearn.

    Needs at least ``n_axes + 1`` sites; stress is the normalised
    (Kruskal) stress of the final configuration.
    """
    from sklearn.manifold import MDS

    dm = _site_matrix(matrix, site_ids)
    if dm.shape[0] <= n_axes:
        raise ValueError(
            f"NMDS in {n_axes} dimensions needs more than {n_axes} sites, got {dm.shape[0]}"
        )
    mds = MDS(
        n_components=n_axes,
        metric=False,
        dissimilarity="precomputed",
        random_state=random_state,
        normalized_stress="auto",
    )
    coords = mds.fit_transform(dm)
    return OrdinationResult(
        site_ids=list(site_ids),
        coordinates=coords,
        explained_variance=None,
        stress=float(mds.stress_),
        method="NMDS",
    )


def ordinate_prediction(
    result: PredictionResult, n_axes: int = 3, method: str = "pcoa"
) -> pd.DataFrame:
    """Ordinate predicted dissimilarity into per-site axis scores in [0, 1].

    With three axes the scores can serve directly as an RGB composite when
    mapping. Requires predictions for every pair of sites.
    """
    dm = result.dissimilarity
    if np.isnan(dm).any():
        raise ValueError("Ordination needs predictions for every site pair")
    if method == "pcoa":
        ordn = pcoa(dm, result.site_ids, n_axes=n_axes)
    elif method == "nmds":
        ordn = nmds(dm, result.site_ids, n_axes=n_axes)
    else:
        raise ValueError(f"Unknown ordination method '{method}'")

    coords = ordn.coordinates
    lo = coords.min(axis=0)
    span = coords.max(axis=0) - lo
    span = np.where(span > 0, span, 1.0)
    scaled = (coords - lo) / span

    out = pd.DataFrame(
        scaled, columns=[f"axis_{i + 1}" for i in range(scaled.shape[1])]
    )
    out.insert(0, "y", result.coords["y"].to_numpy())
    out.insert(0, "x", result.coords["x"].to_numpy())
    out.insert(0, "site_id", list(result.site_ids))
    return out
