"""Synthetic site data for dissmap tests."""

from __future__ import annotations

import numpy as np
import pandas as pd

from dissmap.io import SiteTable


def generate_synthetic_site_table(
    n_sites: int = 16,
    n_species: int = 20,
    seed: int = 42,
) -> tuple[SiteTable, pd.DataFrame]:
    """Generate sites on a regular lon/lat grid with a planted temperature gradient.

    Temperature rises with latitude, rainfall with longitude. Each species
    has a Gaussian response around its own temperature optimum, so species
    composition turns over along the temperature gradient.
    """
    rng = np.random.default_rng(seed)
    side = int(np.ceil(np.sqrt(n_sites)))
    idx = np.arange(n_sites)
    site_ids = [f"site_{i:02d}" for i in range(n_sites)]
    x = 18.0 + (idx % side) * 0.5
    y = -34.0 + (idx // side) * 0.5

    temp = 10.0 + 2.0 * (y - y.min()) + rng.normal(0, 0.3, n_sites)
    rain = 400.0 + 100.0 * (x - x.min()) + rng.normal(0, 10, n_sites)

    # Narrow niches: species at the far end of the gradient are absent
    optima = np.linspace(temp.min(), temp.max(), n_species)
    width = max((temp.max() - temp.min()) / 6, 0.1)
    lam = 20.0 * np.exp(-((temp[:, None] - optima[None, :]) ** 2) / (2 * width**2))
    abundances = rng.poisson(lam).astype(np.float64)

    table = SiteTable(
        site_ids=site_ids,
        x=x,
        y=y,
        species=[f"sp_{j:02d}" for j in range(n_species)],
        abundances=abundances,
    )
    env = pd.DataFrame(
        {"temp": temp, "rain": rain},
        index=pd.Index(site_ids, name="grid_id"),
    )
    return table, env


def generate_example_table() -> SiteTable:
    """Three sites with hand-checkable values.

    A = [3, 0, 5, 0] at (0, 0), B = [0, 2, 5, 1] at (0, 1),
    C = [1, 1, 0, 0] at (1, 0).
    """
    return SiteTable(
        site_ids=["A", "B", "C"],
        x=np.array([0.0, 0.0, 1.0]),
        y=np.array([0.0, 1.0, 0.0]),
        species=["sp1", "sp2", "sp3", "sp4"],
        abundances=np.array([
            [3.0, 0.0, 5.0, 0.0],
            [0.0, 2.0, 5.0, 1.0],
            [1.0, 1.0, 0.0, 0.0],
        ]),
    )


def generate_edge_case_empty_sites(n_sites: int = 4, n_species: int = 5) -> SiteTable:
    """Table where the first two sites have no species at all."""
    rng = np.random.default_rng(0)
    abundances = rng.poisson(5, (n_sites, n_species)).astype(np.float64) + 1.0
    abundances[:2] = 0.0
    return SiteTable(
        site_ids=[f"s_{i}" for i in range(n_sites)],
        x=np.arange(n_sites, dtype=np.float64),
        y=np.zeros(n_sites),
        species=[f"sp_{j}" for j in range(n_species)],
        abundances=abundances,
    )
