"""Site tables, column validation and loaders."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Sequence

import numpy as np
import pandas as pd


class MissingColumnsError(ValueError):
    """A table lacks required identifier, coordinate or species columns."""

    def __init__(self, missing: Sequence[str], context: str = "Data frame") -> None:
        self.missing = list(missing)
        cols = ", ".join(f"'{c}'" for c in self.missing)
        super().__init__(f"{context} is missing required column(s): {cols}")


class UnknownSiteError(KeyError):
    """One or more requested site identifiers are absent from a table."""

    def __init__(self, site_ids: Iterable[Any], role: str = "site") -> None:
        self.site_ids = list(site_ids)
        ids = ", ".join(str(s) for s in self.site_ids)
        super().__init__(f"Invalid {role} ID(s): {ids}")

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable
        return str(self.args[0])


def require_columns(
    df: pd.DataFrame, columns: Iterable[str], context: str = "Data frame"
) -> None:
    """Raise :class:`MissingColumnsError` naming every absent column."""
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise MissingColumnsError(missing, context)


@dataclass
class SiteTable:
    """Site-by-species abundance matrix with site coordinates.

    ``x`` is longitude and ``y`` latitude, both in decimal degrees.
    """

    site_ids: list[Any]
    x: np.ndarray
    y: np.ndarray
    species: list[str]
    abundances: np.ndarray  # shape (n_sites, n_species)

    def __post_init__(self) -> None:
        self.x = np.asarray(self.x, dtype=np.float64)
        self.y = np.asarray(self.y, dtype=np.float64)
        self.abundances = np.asarray(self.abundances, dtype=np.float64)
        if self.abundances.ndim != 2:
            raise ValueError(
                f"abundances must be 2-D, got {self.abundances.ndim} dimension(s)"
            )
        n_sites, n_species = self.abundances.shape
        if n_sites != len(self.site_ids):
            raise ValueError(
                f"Row count {n_sites} != len(site_ids) {len(self.site_ids)}"
            )
        if n_species != len(self.species):
            raise ValueError(
                f"Col count {n_species} != len(species) {len(self.species)}"
            )
        if len(self.x) != n_sites or len(self.y) != n_sites:
            raise ValueError("x and y must hold one coordinate per site")
        seen: set[Any] = set()
        dupes = []
        for s in self.site_ids:
            if s in seen:
                dupes.append(s)
            seen.add(s)
        if dupes:
            raise ValueError(f"Duplicate site IDs: {', '.join(map(str, dupes))}")
        self._index = {s: i for i, s in enumerate(self.site_ids)}

    @property
    def n_sites(self) -> int:
        return len(self.site_ids)

    @property
    def n_species(self) -> int:
        return len(self.species)

    def index_of(self, site_id: Any) -> int:
        try:
            return self._index[site_id]
        except KeyError:
            raise UnknownSiteError([site_id]) from None

    def vector(self, site_id: Any) -> np.ndarray:
        """Species vector of one site."""
        return self.abundances[self.index_of(site_id)]

    def coords(self, site_id: Any) -> tuple[float, float]:
        i = self.index_of(site_id)
        return float(self.x[i]), float(self.y[i])

    def presence(self) -> np.ndarray:
        """Boolean presence matrix; missing cells count as absent."""
        return np.nan_to_num(self.abundances, nan=0.0) > 0

    def species_ranges(self) -> np.ndarray:
        """Per-species range (max - min) across sites, ignoring NaN."""
        ab = self.abundances
        if ab.shape[0] == 0:
            return np.zeros(self.n_species)
        finite = ~np.isnan(ab)
        hi = np.where(finite, ab, -np.inf).max(axis=0)
        lo = np.where(finite, ab, np.inf).min(axis=0)
        ranges = hi - lo
        ranges[~finite.any(axis=0)] = np.nan
        return ranges

    def subset_sites(self, site_ids: Sequence[Any]) -> SiteTable:
        """Return table with only the specified sites, in the given order."""
        indices = [self.index_of(s) for s in site_ids]
        return SiteTable(
            site_ids=list(site_ids),
            x=self.x[indices],
            y=self.y[indices],
            species=list(self.species),
            abundances=self.abundances[indices],
        )

    def filter_prevalence(self, min_prevalence: float = 0.0) -> SiteTable:
        """Remove species present in fewer than min_prevalence fraction of sites."""
        prevalence = self.presence().sum(axis=0) / max(self.n_sites, 1)
        mask = prevalence >= min_prevalence
        return SiteTable(
            site_ids=list(self.site_ids),
            x=self.x.copy(),
            y=self.y.copy(),
            species=[s for s, keep in zip(self.species, mask) if keep],
            abundances=self.abundances[:, mask],
        )

    def to_frame(
        self, site_col: str = "grid_id", x_col: str = "x", y_col: str = "y"
    ) -> pd.DataFrame:
        """Wide frame: identifier, coordinates, then one column per species."""
        df = pd.DataFrame(self.abundances, columns=list(self.species))
        df.insert(0, y_col, self.y)
        df.insert(0, x_col, self.x)
        df.insert(0, site_col, list(self.site_ids))
        return df

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        site_col: str = "grid_id",
        x_col: str = "x",
        y_col: str = "y",
        sp_cols: Sequence[str] | None = None,
    ) -> SiteTable:
        """Build from a wide frame.

        When ``sp_cols`` is omitted every numeric column other than the
        identifier and coordinate columns is taken as a species.
        """
        required = [site_col, x_col, y_col]
        if sp_cols is not None:
            required += list(sp_cols)
        require_columns(df, required)
        if sp_cols is None:
            reserved = {site_col, x_col, y_col}
            sp_cols = [
                c
                for c in df.columns
                if c not in reserved and pd.api.types.is_numeric_dtype(df[c])
            ]
        return cls(
            site_ids=df[site_col].tolist(),
            x=df[x_col].to_numpy(dtype=np.float64),
            y=df[y_col].to_numpy(dtype=np.float64),
            species=[str(c) for c in sp_cols],
            abundances=df[list(sp_cols)].to_numpy(dtype=np.float64),
        )


def _read_table(path: str | Path) -> pd.DataFrame:
    path = Path(path)
    sep = "\t" if path.suffix.lower() in (".tsv", ".tab", ".txt") else ","
    return pd.read_csv(path, sep=sep)


def load_site_table(
    path: str | Path,
    site_col: str = "grid_id",
    x_col: str = "x",
    y_col: str = "y",
    sp_cols: Sequence[str] | None = None,
) -> SiteTable:
    """Load a wide site-by-species table (CSV, or TSV by suffix)."""
    return SiteTable.from_frame(
        _read_table(path), site_col=site_col, x_col=x_col, y_col=y_col, sp_cols=sp_cols
    )


def load_environment(path: str | Path, site_col: str = "grid_id") -> pd.DataFrame:
    """Load a site-by-environment table indexed by site identifier.

    Non-numeric columns other than the identifier are dropped.
    """
    df = _read_table(path)
    require_columns(df, [site_col], context="Environment table")
    df = df.set_index(site_col)
    return df.select_dtypes(include="number")
