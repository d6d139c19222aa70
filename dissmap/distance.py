"""Geographic and Gower distance matrices between sites."""

from __future__ import annotations

from typing import Any, Callable, Sequence, Union

import numpy as np
import pandas as pd
from pyproj import Geod

from .io import require_columns

# Mean Earth radius (IUGG), metres
EARTH_RADIUS_M = 6_371_008.8

DistanceFun = Union[str, Callable[[np.ndarray, np.ndarray, np.ndarray, np.ndarray], np.ndarray]]

_WGS84 = Geod(ellps="WGS84")


def haversine(lon1, lat1, lon2, lat2, radius: float = EARTH_RADIUS_M):
    """Great-circle distance in metres between points given in degrees.

    Accepts scalars or broadcastable arrays; returns a float for scalar
    input.
    """
    lon1, lat1, lon2, lat2 = (
        np.radians(np.asarray(v, dtype=np.float64)) for v in (lon1, lat1, lon2, lat2)
    )
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    d = 2 * radius * np.arcsin(np.sqrt(np.clip(h, 0.0, 1.0)))
    if np.ndim(d) == 0:
        return float(d)
    return d


def geodesic(lon1, lat1, lon2, lat2) -> np.ndarray:
    """Ellipsoidal (WGS84) distance in metres via pyproj."""
    _, _, d = _WGS84.inv(
        np.atleast_1d(np.asarray(lon1, dtype=np.float64)),
        np.atleast_1d(np.asarray(lat1, dtype=np.float64)),
        np.atleast_1d(np.asarray(lon2, dtype=np.float64)),
        np.atleast_1d(np.asarray(lat2, dtype=np.float64)),
    )
    return np.asarray(d, dtype=np.float64)


_DISTANCE_FUNS: dict[str, Callable[..., Any]] = {
    "geodesic": geodesic,
    "haversine": haversine,
}


def pairwise_distance_matrix(
    lon: Sequence[float], lat: Sequence[float], method: DistanceFun = "geodesic"
) -> np.ndarray:
    """Full symmetric distance matrix in metres with a zero diagonal."""
    if isinstance(method, str):
        try:
            fun = _DISTANCE_FUNS[method]
        except KeyError:
            raise ValueError(
                f"Unknown distance method '{method}'. "
                f"Available: {sorted(_DISTANCE_FUNS)}"
            ) from None
    else:
        fun = method
    lon = np.asarray(lon, dtype=np.float64)
    lat = np.asarray(lat, dtype=np.float64)
    n = len(lon)
    dm = np.zeros((n, n))
    if n < 2:
        return dm
    i, j = np.triu_indices(n, k=1)
    d = np.asarray(fun(lon[i], lat[i], lon[j], lat[j]), dtype=np.float64)
    dm[i, j] = d
    dm[j, i] = d
    return dm


def gower_matrix(data, ranges: Sequence[float] | None = None) -> np.ndarray:
    """Gower dissimilarity between all rows of ``data``.

    Numeric columns contribute ``|a - b| / range`` and all other columns a
    0/1 mismatch. Each row pair averages over the columns present in both
    rows, so missing cells drop out of numerator and denominator alike. A
    column range of zero is treated as one. ``ranges`` overrides the
    per-column ranges computed from ``data``.

    Returns an ``(n_rows, n_rows)`` array; pairs with no shared columns are
    NaN.
    """
    frame = data if isinstance(data, pd.DataFrame) else pd.DataFrame(np.asarray(data))
    n = len(frame)
    if ranges is not None and len(ranges) != frame.shape[1]:
        raise ValueError(
            f"ranges has {len(ranges)} entries for {frame.shape[1]} columns"
        )
    num = np.zeros((n, n))
    den = np.zeros((n, n))
    for j, col in enumerate(frame.columns):
        values = frame[col]
        if pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values):
            x = values.to_numpy(dtype=np.float64)
            valid = ~np.isnan(x)
            if ranges is not None:
                r = float(ranges[j])
            elif valid.any():
                r = float(x[valid].max() - x[valid].min())
            else:
                r = 0.0
            if not r > 0:
                r = 1.0
            d = np.abs(x[:, None] - x[None, :]) / r
        else:
            x = values.to_numpy(dtype=object)
            valid = ~pd.isna(x)
            d = (x[:, None] != x[None, :]).astype(np.float64)
        both = valid[:, None] & valid[None, :]
        num += np.where(both, d, 0.0)
        den += both
    with np.errstate(invalid="ignore", divide="ignore"):
        out = num / den
    out[den == 0] = np.nan
    return out


def matrix_to_long(
    matrix: np.ndarray, site_ids: Sequence[Any], exclude_self: bool = True
) -> pd.DataFrame:
    """Reshape a site matrix to ``site_from, site_to, value`` rows.

    Rows are ordered by ``site_from`` then ``site_to``.
    """
    n = len(site_ids)
    ids = np.empty(n, dtype=object)
    ids[:] = list(site_ids)
    long = pd.DataFrame({
        "site_from": np.repeat(ids, n),
        "site_to": np.tile(ids, n),
        "value": np.asarray(matrix, dtype=np.float64).ravel(),
    })
    if exclude_self:
        long = long[long["site_from"] != long["site_to"]]
    return long.reset_index(drop=True)


def calculate_pairwise_distances_matrix(
    data: pd.DataFrame,
    distance_fun: DistanceFun = "geodesic",
    site_col: str = "grid_id",
    x_col: str = "x",
    y_col: str = "y",
) -> pd.DataFrame:
    """Pairwise geographic distances in kilometres, long form.

    Parameters
    ----------
    data : pd.DataFrame
        One row per site with identifier and longitude/latitude columns.
    distance_fun : str or callable
        ``"geodesic"`` (WGS84 ellipsoid), ``"haversine"`` (sphere), or a
        vectorised callable ``(lon1, lat1, lon2, lat2) -> metres``.

    Returns
    -------
    pd.DataFrame
        Columns ``site_from, site_to, value`` with self-pairs removed.
    """
    require_columns(data, [site_col, x_col, y_col])
    dm = pairwise_distance_matrix(data[x_col], data[y_col], method=distance_fun) / 1000
    return matrix_to_long(dm, data[site_col].tolist())


def calculate_pairwise_gower_dist_matrix(
    df: pd.DataFrame,
    sp_cols: Sequence[str],
    site_col: str = "grid_id",
    x_col: str = "x",
    y_col: str = "y",
) -> pd.DataFrame:
    """Pairwise Gower dissimilarity over species columns, long form.

    The ``x``/``y`` columns of the result are the coordinates of
    ``site_from``.
    """
    require_columns(df, [site_col, x_col, y_col, *sp_cols])
    dm = gower_matrix(df[list(sp_cols)].reset_index(drop=True))
    long = matrix_to_long(dm, df[site_col].tolist())
    coords = df.set_index(site_col)[[x_col, y_col]]
    long["x"] = coords[x_col].reindex(long["site_from"]).to_numpy()
    long["y"] = coords[y_col].reindex(long["site_from"]).to_numpy()
    return long
