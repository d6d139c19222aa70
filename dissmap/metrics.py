"""Site-comparison metrics and the metric registry.

Every metric shares the signature ``(vec_from, vec_to=None)`` and returns a
scalar, or ``None`` when the input shape or the statistic is degenerate.
``None`` is the missing-value marker: batch callers record it as NaN and
carry on, while precondition failures (unknown sites, mismatched lengths,
missing second vector where one is required) raise.

For higher-order comparisons ``vec_to`` may be two-dimensional, one row per
additional site. Pairwise metrics then compare ``vec_from`` against each
row and return the mean of the non-missing results.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats as sp_stats
from sklearn.metrics import mutual_info_score

from .distance import gower_matrix, haversine
from .io import UnknownSiteError, require_columns

MetricValue = Optional[float]


def _comparable(vec_from, vec_to) -> bool:
    return np.size(vec_from) > 1 and np.size(vec_to) > 1


def _paired(vec_from, vec_to) -> tuple[np.ndarray, np.ndarray]:
    a = np.asarray(vec_from, dtype=np.float64)
    b = np.asarray(vec_to, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Vector length mismatch: {a.size} vs {b.size}")
    return a, b


def _present(v: np.ndarray) -> np.ndarray:
    return np.nan_to_num(v, nan=0.0) != 0


def _higher_order(func: Callable[..., Any]) -> Callable[..., Any]:
    """Let a pairwise metric accept a stack of target vectors."""

    @functools.wraps(func)
    def wrapper(vec_from, vec_to=None, **kwargs):
        if vec_to is not None and np.ndim(vec_to) == 2:
            values = [func(vec_from, row, **kwargs) for row in vec_to]
            values = [v for v in values if v is not None and not np.isnan(v)]
            if not values:
                return None
            return float(np.mean(values))
        return func(vec_from, vec_to, **kwargs)

    return wrapper


@_higher_order
def richness(vec_from, vec_to=None) -> MetricValue:
    """Species richness, or the absolute richness difference between two sites."""
    if vec_to is None:
        return int(_present(np.asarray(vec_from, dtype=np.float64)).sum())
    if not _comparable(vec_from, vec_to):
        return None
    a, b = _paired(vec_from, vec_to)
    return int(abs(_present(a).sum() - _present(b).sum()))


@_higher_order
def turnover(vec_from, vec_to=None) -> MetricValue:
    """Proportion of the combined species pool not shared by both sites.

    0 means identical species lists, 1 means no species in common.
    """
    if vec_to is None:
        raise ValueError("Turnover calculation requires both vec_from and vec_to.")
    if not _comparable(vec_from, vec_to):
        return None
    a, b = _paired(vec_from, vec_to)
    pa, pb = _present(a), _present(b)
    total = int((pa | pb).sum())
    if total == 0:
        return None
    shared = int((pa & pb).sum())
    return (total - shared) / total


@_higher_order
def abund(vec_from, vec_to=None) -> MetricValue:
    """Total abundance, or the absolute difference of totals."""
    if vec_to is None:
        return float(np.nansum(np.asarray(vec_from, dtype=np.float64)))
    if not _comparable(vec_from, vec_to):
        return None
    a, b = _paired(vec_from, vec_to)
    return float(abs(np.nansum(a) - np.nansum(b)))


@_higher_order
def phi_coef(vec_from, vec_to=None) -> MetricValue:
    """Phi coefficient of association on presence/absence.

    Ranges from -1 (never co-occur) to +1 (always co-occur). A missing
    cell in either vector makes the coefficient missing.
    """
    if vec_to is None:
        raise ValueError("Phi coefficient requires both vec_from and vec_to.")
    a, b = _paired(vec_from, vec_to)
    if np.isnan(a).any() or np.isnan(b).any():
        return None
    i = a > 0
    j = b > 0
    A = int(np.sum(i & j))
    B = int(np.sum(i & ~j))
    C = int(np.sum(~i & j))
    D = int(np.sum(~i & ~j))
    denominator = np.sqrt(float((A + B) * (A + C) * (B + D) * (C + D)))
    if not np.isfinite(denominator) or denominator == 0:
        return None
    return (A * D - B * C) / denominator


def _correlation(vec_from, vec_to, method: str) -> MetricValue:
    if vec_to is None:
        raise ValueError("Correlation requires both vec_from and vec_to.")
    if not _comparable(vec_from, vec_to):
        return None
    a, b = _paired(vec_from, vec_to)
    complete = ~(np.isnan(a) | np.isnan(b))
    a, b = a[complete], b[complete]
    if len(a) < 2 or np.ptp(a) == 0 or np.ptp(b) == 0:
        return None
    if method == "spearman":
        stat, _ = sp_stats.spearmanr(a, b)
    else:
        stat, _ = sp_stats.pearsonr(a, b)
    stat = float(stat)
    return None if np.isnan(stat) else stat


@_higher_order
def cor_spear(vec_from, vec_to=None) -> MetricValue:
    """Spearman rank correlation over pairwise-complete positions."""
    return _correlation(vec_from, vec_to, "spearman")


@_higher_order
def cor_pears(vec_from, vec_to=None) -> MetricValue:
    """Pearson correlation over pairwise-complete positions."""
    return _correlation(vec_from, vec_to, "pearson")


@_higher_order
def diss_bcurt(vec_from, vec_to=None) -> MetricValue:
    """Bray-Curtis dissimilarity: 0 for identical sites, 1 for disjoint ones."""
    if vec_to is None:
        raise ValueError("Bray-Curtis requires both vec_from and vec_to.")
    if not _comparable(vec_from, vec_to):
        return None
    a, b = _paired(vec_from, vec_to)
    complete = ~(np.isnan(a) | np.isnan(b))
    a, b = a[complete], b[complete]
    denominator = float(np.sum(a + b))
    if denominator == 0:
        return None
    return float(np.sum(np.abs(a - b))) / denominator


@_higher_order
def gower_dissimilarity(vec_from, vec_to=None, ranges: Sequence[float] | None = None) -> MetricValue:
    """Gower dissimilarity between two sites.

    The two vectors form a two-row table with one column per index.
    ``ranges`` gives the per-column ranges used to scale numeric columns;
    without it the ranges come from the two rows alone, which reduces
    numeric columns to a differs/equals comparison.
    """
    if vec_to is None:
        raise ValueError("Gower dissimilarity requires both vec_from and vec_to.")
    if not _comparable(vec_from, vec_to):
        return None
    if len(vec_from) != len(vec_to):
        raise ValueError(f"Vector length mismatch: {len(vec_from)} vs {len(vec_to)}")
    frame = pd.DataFrame([list(vec_from), list(vec_to)])
    value = gower_matrix(frame, ranges=ranges)[0, 1]
    return None if np.isnan(value) else float(value)


@_higher_order
def mutual_info(vec_from, vec_to=None) -> MetricValue:
    """Plug-in mutual information (nats) of two vectors treated as discrete."""
    if vec_to is None:
        raise ValueError("Mutual information requires both vec_from and vec_to.")
    if not _comparable(vec_from, vec_to):
        return None
    if len(vec_from) != len(vec_to):
        raise ValueError(f"Vector length mismatch: {len(vec_from)} vs {len(vec_to)}")
    a = pd.Series(list(vec_from))
    b = pd.Series(list(vec_to))
    complete = ~(a.isna() | b.isna())
    if not complete.any():
        return None
    codes_a, _ = pd.factorize(a[complete])
    codes_b, _ = pd.factorize(b[complete])
    return float(mutual_info_score(codes_a, codes_b))


def distance(
    df: pd.DataFrame,
    site_col: str,
    vec_from: Any,
    vec_to: Any = None,
    x_col: str = "x",
    y_col: str = "y",
) -> float:
    """Great-circle distance in metres between named sites.

    With several targets the distances from ``vec_from`` to each are
    summed. Order-1 distances are undefined and raise.
    """
    require_columns(df, [site_col, x_col, y_col])
    from_rows = df.loc[df[site_col] == vec_from, [x_col, y_col]]
    if from_rows.empty:
        raise UnknownSiteError([vec_from], role="'from' site")
    lon0, lat0 = from_rows.iloc[0]

    if vec_to is None:
        raise ValueError("Order = 1 calculations are not supported for the distance function.")

    if np.ndim(vec_to) == 0:
        to_rows = df.loc[df[site_col] == vec_to, [x_col, y_col]]
        if to_rows.empty:
            raise UnknownSiteError([vec_to], role="'to' site")
        lon1, lat1 = to_rows.iloc[0]
        return haversine(lon0, lat0, lon1, lat1)

    targets = list(vec_to)
    known = set(df[site_col])
    missing = [t for t in targets if t not in known]
    if missing:
        raise UnknownSiteError(missing, role="'to' site")
    coords = df.drop_duplicates(site_col).set_index(site_col).loc[targets, [x_col, y_col]]
    d = haversine(lon0, lat0, coords[x_col].to_numpy(), coords[y_col].to_numpy())
    return float(np.nansum(d))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Metric:
    """A named metric and the inputs it needs from the dispatcher.

    Attributes:
        name: Registry key.
        func: The metric callable.
        min_order: Smallest combination size the metric supports (1 when it
            accepts a single vector).
        needs_ranges: Pass table-wide species ranges as ``ranges=``.
        needs_sites: Call as ``func(frame, site_col, id_from, id_to)`` on
            site identifiers instead of species vectors.
        description: One-line summary.
    """

    name: str
    func: Callable[..., Any]
    min_order: int = 2
    needs_ranges: bool = False
    needs_sites: bool = False
    description: str = ""


_BUILTIN_METRICS: tuple[Metric, ...] = (
    Metric("richness", richness, min_order=1,
           description="Species richness or absolute richness difference"),
    Metric("turnover", turnover,
           description="Proportion of species not shared"),
    Metric("abund", abund, min_order=1,
           description="Total abundance or absolute abundance difference"),
    Metric("phi_coef", phi_coef,
           description="Phi coefficient on presence/absence"),
    Metric("cor_spear", cor_spear,
           description="Spearman rank correlation of abundances"),
    Metric("cor_pears", cor_pears,
           description="Pearson correlation of abundances"),
    Metric("diss_bcurt", diss_bcurt,
           description="Bray-Curtis dissimilarity"),
    Metric("gower_dissimilarity", gower_dissimilarity, needs_ranges=True,
           description="Gower dissimilarity scaled by table-wide species ranges"),
    Metric("mutual_info", mutual_info,
           description="Plug-in mutual information of abundance vectors"),
    Metric("distance", distance, needs_sites=True,
           description="Haversine distance in metres (summed for higher orders)"),
)

_registry: dict[str, Metric] = {m.name: m for m in _BUILTIN_METRICS}


def register_metric(metric: Metric, *, force: bool = False) -> None:
    """Add a metric to the registry.

    Raises
    ------
    ValueError
        If the name is empty, or already registered and ``force`` is False.
    TypeError
        If ``metric.func`` is not callable.
    """
    if not metric.name or not metric.name.strip():
        raise ValueError("Metric name must be a non-empty string")
    if not callable(metric.func):
        raise TypeError(f"Metric must be callable, got: {type(metric.func).__name__}")
    if metric.name in _registry and not force:
        raise ValueError(
            f"Metric '{metric.name}' is already registered. Pass force=True to override."
        )
    _registry[metric.name] = metric


def get_metric(name: str) -> Metric:
    try:
        return _registry[name]
    except KeyError:
        raise KeyError(
            f"No metric registered as '{name}'. Available: {sorted(_registry)}"
        ) from None


def list_metrics() -> list[Metric]:
    """Registered metrics sorted by name."""
    return [_registry[k] for k in sorted(_registry)]


def resolve_metric(func: str | Metric | Callable[..., Any]) -> Metric:
    """Turn a name, a :class:`Metric` or a bare callable into a :class:`Metric`.

    Bare callables that are registered resolve to their registry entry;
    others are wrapped with ``min_order=1``.
    """
    if isinstance(func, Metric):
        return func
    if isinstance(func, str):
        return get_metric(func)
    if not callable(func):
        raise TypeError(f"Metric must be a name or callable, got: {type(func).__name__}")
    for metric in _registry.values():
        if metric.func is func:
            return metric
    return Metric(name=getattr(func, "__name__", "custom"), func=func, min_order=1)
