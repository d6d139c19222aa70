"""Order-wise dispatch of site metrics over site combinations.

Applies one metric to every combination of ``order`` distinct sites of a
site table and collects the results in long form::

    site_from | site_to | value | x | y

``x``/``y`` are the coordinates of ``site_from``. For order 1 there is no
``site_to`` column; above order 2 ``site_to`` holds the tuple of the other
sites in the combination.
"""

from __future__ import annotations

import logging
import math
from itertools import combinations
from typing import Any, Callable, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .io import SiteTable
from .metrics import Metric, resolve_metric

logger = logging.getLogger(__name__)


class IncompatibleMetricError(ValueError):
    """The requested order cannot be evaluated with the chosen metric."""


def _enumerate(n: int, k: int, ordered: bool) -> list[tuple[int, ...]]:
    if not ordered:
        return list(combinations(range(n), k))
    out: list[tuple[int, ...]] = []
    for i in range(n):
        others = [j for j in range(n) if j != i]
        out.extend((i, *rest) for rest in combinations(others, k - 1))
    return out


def count_combinations(n: int, k: int, ordered: bool = False) -> int:
    """Number of combinations :func:`sample_combinations` draws from."""
    if ordered:
        return n * math.comb(n - 1, k - 1) if n > 0 else 0
    return math.comb(n, k)


def sample_combinations(
    n: int,
    k: int,
    sample_no: int | None = None,
    seed: int = 42,
    ordered: bool = False,
) -> np.ndarray:
    """Index combinations of ``k`` out of ``n`` sites, shape ``(m, k)``.

    All combinations are returned in lexicographic order unless
    ``sample_no`` is smaller than their number, in which case that many are
    drawn at random without replacement and returned sorted. With
    ``ordered=True`` the first index is a focal site and the rest are a
    combination of the others, so each unordered set appears once per
    member.
    """
    if k < 1:
        raise ValueError(f"Combination size must be >= 1, got {k}")
    if k > n:
        raise ValueError(f"Cannot draw combinations of {k} from {n} sites")
    total = count_combinations(n, k, ordered)
    if sample_no is not None and sample_no < 0:
        raise ValueError(f"sample_no must be non-negative, got {sample_no}")
    if sample_no is None or sample_no >= total:
        return np.array(_enumerate(n, k, ordered), dtype=np.intp).reshape(-1, k)

    rng = np.random.default_rng(seed)
    if sample_no * 2 >= total:
        everything = np.array(_enumerate(n, k, ordered), dtype=np.intp).reshape(-1, k)
        pick = np.sort(rng.choice(total, size=sample_no, replace=False))
        return everything[pick]

    # Rejection sampling; the target is at most half the space
    seen: set[tuple[int, ...]] = set()
    while len(seen) < sample_no:
        draw = rng.choice(n, size=k, replace=False).tolist()
        if ordered:
            key = (draw[0], *sorted(draw[1:]))
        else:
            key = tuple(sorted(draw))
        seen.add(key)
    return np.array(sorted(seen), dtype=np.intp).reshape(-1, k)


def _evaluate_chunk(
    metric: Metric,
    combos: np.ndarray,
    abundances: np.ndarray,
    site_ids: Sequence[Any],
    ranges: np.ndarray | None = None,
    frame: pd.DataFrame | None = None,
    site_col: str = "grid_id",
) -> np.ndarray:
    out = np.full(len(combos), np.nan)
    for r, combo in enumerate(combos):
        i, rest = combo[0], combo[1:]
        if metric.needs_sites:
            if len(rest) == 0:
                target = None
            elif len(rest) == 1:
                target = site_ids[rest[0]]
            else:
                target = [site_ids[j] for j in rest]
            value = metric.func(frame, site_col, site_ids[i], target)
        elif len(rest) == 0:
            value = metric.func(abundances[i])
        else:
            vec_to = abundances[rest[0]] if len(rest) == 1 else abundances[rest]
            if metric.needs_ranges:
                value = metric.func(abundances[i], vec_to, ranges=ranges)
            else:
                value = metric.func(abundances[i], vec_to)
        if value is not None:
            out[r] = value
    return out


def compute_orderwise(
    table: SiteTable | pd.DataFrame,
    func: str | Metric | Callable[..., Any],
    order: int = 2,
    *,
    site_col: str = "grid_id",
    x_col: str = "x",
    y_col: str = "y",
    sp_cols: Sequence[str] | None = None,
    sample_no: int | None = None,
    sample_portion: float = 1.0,
    ordered: bool = False,
    n_jobs: int = 1,
    chunk_size: int = 5000,
    seed: int = 42,
) -> pd.DataFrame:
    """Evaluate a metric over all combinations of ``order`` sites.

    Parameters
    ----------
    table : SiteTable or pd.DataFrame
        Site-by-species data. A frame is converted with
        :meth:`SiteTable.from_frame` using the column arguments.
    func : str, Metric or callable
        Registry name, registry entry, or a callable with the
        ``(vec_from, vec_to=None)`` signature.
    order : int
        Combination size: 1 for per-site values, 2 for pairs, more for
        higher-order comparisons.
    sample_no : int or None
        Evaluate at most this many randomly drawn combinations.
    sample_portion : float
        Fraction of sites to keep (randomly) before forming combinations.
    ordered : bool
        Evaluate each combination once per member as focal site, so
        symmetric metrics are computed for both (a, b) and (b, a).
    n_jobs : int
        Worker count for joblib; 1 evaluates in-process.
    chunk_size : int
        Combinations per work unit.
    seed : int
        Random seed for site and combination sampling.

    Returns
    -------
    pd.DataFrame
        Long-format results; missing metric values are NaN.
    """
    if isinstance(table, pd.DataFrame):
        table = SiteTable.from_frame(
            table, site_col=site_col, x_col=x_col, y_col=y_col, sp_cols=sp_cols
        )
    metric = resolve_metric(func)

    if isinstance(order, bool) or not isinstance(order, (int, np.integer)) or order < 1:
        raise ValueError(f"order must be a positive integer, got {order!r}")
    order = int(order)
    if order < metric.min_order:
        raise IncompatibleMetricError(
            f"Metric '{metric.name}' requires order >= {metric.min_order}, got order={order}"
        )
    if not 0 < sample_portion <= 1:
        raise ValueError(f"sample_portion must be in (0, 1], got {sample_portion}")
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")

    if sample_portion < 1:
        rng = np.random.default_rng(seed)
        n_keep = max(order, int(round(table.n_sites * sample_portion)))
        n_before = table.n_sites
        n_keep = min(n_keep, n_before)
        keep = np.sort(rng.choice(n_before, size=n_keep, replace=False))
        table = table.subset_sites([table.site_ids[i] for i in keep])
        logger.debug("Subsampled %d of %d sites", n_keep, n_before)

    if order > table.n_sites:
        raise ValueError(
            f"order={order} exceeds the number of sites ({table.n_sites})"
        )

    combos = sample_combinations(
        table.n_sites, order, sample_no=sample_no, seed=seed, ordered=ordered
    )
    logger.info(
        "Computing %s over %d combinations of order %d (%d sites)",
        metric.name, len(combos), order, table.n_sites,
    )

    ranges = table.species_ranges() if metric.needs_ranges else None
    frame = table.to_frame(site_col=site_col) if metric.needs_sites else None
    chunks = [combos[s:s + chunk_size] for s in range(0, len(combos), chunk_size)]

    kwargs = dict(
        abundances=table.abundances,
        site_ids=list(table.site_ids),
        ranges=ranges,
        frame=frame,
        site_col=site_col,
    )
    if n_jobs == 1 or len(chunks) <= 1:
        results = []
        for ci, chunk in enumerate(chunks):
            results.append(_evaluate_chunk(metric, chunk, **kwargs))
            logger.debug("Chunk %d/%d done", ci + 1, len(chunks))
    else:
        results = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(_evaluate_chunk)(metric, chunk, **kwargs) for chunk in chunks
        )
    values = np.concatenate(results) if results else np.empty(0)

    ids = np.empty(table.n_sites, dtype=object)
    ids[:] = list(table.site_ids)
    first = combos[:, 0]
    data: dict[str, Any] = {"site_from": ids[first]}
    if order == 2:
        data["site_to"] = ids[combos[:, 1]]
    elif order > 2:
        site_to = np.empty(len(combos), dtype=object)
        for r, c in enumerate(combos):
            site_to[r] = tuple(ids[j] for j in c[1:])
        data["site_to"] = site_to
    data["value"] = values
    data["x"] = table.x[first]
    data["y"] = table.y[first]

    n_missing = int(np.isnan(values).sum())
    if n_missing:
        logger.info("%s: %d of %d values missing", metric.name, n_missing, len(values))
    return pd.DataFrame(data)
