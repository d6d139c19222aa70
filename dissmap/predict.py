"""Prediction of site-pair dissimilarity from a fitted MS-GDM."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import combinations
from typing import Any

import numpy as np
import pandas as pd

from .io import UnknownSiteError, require_columns
from .zeta import MSGDMModel, combination_predictors

logger = logging.getLogger(__name__)

Boundary = tuple[float, float, float, float]  # xmin, ymin, xmax, ymax


def scale_environment(
    env: pd.DataFrame, reference: pd.DataFrame | None = None
) -> pd.DataFrame:
    """Rescale each numeric column to [0, 1] by the reference min and max.

    Use the training environment as ``reference`` when scaling new sites so
    both share one scale. Constant columns map to 0.
    """
    env = env.select_dtypes(include="number")
    ref = env if reference is None else reference.select_dtypes(include="number")
    require_columns(ref, env.columns, context="Reference environment")
    lo = ref[env.columns].min()
    span = ref[env.columns].max() - lo
    span = span.where(span > 0, 1.0)
    return (env - lo) / span


@dataclass
class PredictionResult:
    """Predicted dissimilarity between site pairs."""

    site_ids: list[Any]
    table: pd.DataFrame  # site_from, site_to, zeta, turnover, value, shared_richness, x, y
    dissimilarity: np.ndarray  # shape (n_sites, n_sites), NaN where not predicted
    coords: pd.DataFrame  # indexed by site, columns x, y
    order: int


def _inside(coords: pd.DataFrame, boundary: Boundary | None) -> pd.Series:
    if boundary is None:
        return pd.Series(True, index=coords.index)
    xmin, ymin, xmax, ymax = boundary
    return (
        (coords["x"] >= xmin) & (coords["x"] <= xmax)
        & (coords["y"] >= ymin) & (coords["y"] <= ymax)
    )


def predict_dissim(
    pairs: pd.DataFrame | None,
    env_scaled: pd.DataFrame,
    model: MSGDMModel,
    calibration: pd.DataFrame,
    coords: pd.DataFrame,
    boundary: Boundary | None = None,
) -> PredictionResult:
    """Predict turnover between site pairs from environmental and spatial distance.

    The model gives normalised zeta for each pair. Turnover ``1 - zeta`` is
    then rescaled so its mean matches the calibration mean turnover for the
    model order, and zeta is converted to an expected number of shared
    species with the calibration mean richness.

    Parameters
    ----------
    pairs : pd.DataFrame or None
        ``site_from``/``site_to`` rows to predict; ``None`` predicts every
        unordered pair of sites in ``env_scaled``.
    env_scaled : pd.DataFrame
        Scaled environmental predictors indexed by site identifier.
    model : MSGDMModel
        Fitted model from :func:`~dissmap.zeta.fit_msgdm`.
    calibration : pd.DataFrame
        Indexed by order with ``mean_richness`` and ``mean_turnover``
        (see :func:`~dissmap.zeta.calibration_table`).
    coords : pd.DataFrame
        Indexed by site identifier with ``x`` (longitude) and ``y``
        (latitude).
    boundary : tuple or None
        ``(xmin, ymin, xmax, ymax)``; pairs with a site outside are dropped.

    Returns
    -------
    PredictionResult
        Long table plus the symmetric matrix of calibrated turnover.
    """
    env_predictors = [p for p in model.predictors if p != "distance"]
    require_columns(env_scaled, env_predictors, context="Environment table")
    require_columns(coords, ["x", "y"], context="Coordinate table")
    require_columns(calibration, ["mean_richness", "mean_turnover"], context="Calibration table")
    if model.order not in calibration.index:
        raise ValueError(
            f"Calibration table has no row for order {model.order}; "
            f"available orders: {list(calibration.index)}"
        )
    cal = calibration.loc[model.order]

    if pairs is None:
        candidates = list(env_scaled.index)
    else:
        require_columns(pairs, ["site_from", "site_to"], context="Pair table")
        candidates = list(pd.unique(pd.concat([pairs["site_from"], pairs["site_to"]])))
    missing = [s for s in candidates if s not in env_scaled.index]
    if missing:
        raise UnknownSiteError(missing, role="environment site")
    missing = [s for s in candidates if s not in coords.index]
    if missing:
        raise UnknownSiteError(missing, role="coordinate site")

    inside = _inside(coords.loc[candidates], boundary)
    sites = [s for s in candidates if inside.loc[s]]
    index = {s: i for i, s in enumerate(sites)}
    if pairs is None:
        combos = np.array(list(combinations(range(len(sites)), 2)), dtype=np.intp).reshape(-1, 2)
    else:
        kept = [
            (index[a], index[b])
            for a, b in zip(pairs["site_from"], pairs["site_to"])
            if a in index and b in index and a != b
        ]
        combos = np.array(kept, dtype=np.intp).reshape(-1, 2)
    if len(combos) == 0:
        raise ValueError("No site pairs left to predict")
    if boundary is not None:
        logger.info("Boundary keeps %d of %d sites", len(sites), len(candidates))

    site_env = env_scaled.loc[sites, env_predictors]
    site_xy = coords.loc[sites, ["x", "y"]]
    predictors = combination_predictors(
        site_env,
        site_xy["x"].to_numpy(),
        site_xy["y"].to_numpy(),
        combos,
        include_distance=model.include_distance,
    )
    zeta = model.predict(predictors)
    turnover = 1.0 - zeta
    mean_turnover = float(turnover.mean())
    if mean_turnover > 0 and np.isfinite(cal["mean_turnover"]):
        value = np.clip(turnover * (float(cal["mean_turnover"]) / mean_turnover), 0.0, 1.0)
    else:
        value = turnover.copy()
    shared = zeta * float(cal["mean_richness"])

    ids = np.empty(len(sites), dtype=object)
    ids[:] = sites
    first = combos[:, 0]
    table = pd.DataFrame({
        "site_from": ids[first],
        "site_to": ids[combos[:, 1]],
        "zeta": zeta,
        "turnover": turnover,
        "value": value,
        "shared_richness": shared,
        "x": site_xy["x"].to_numpy()[first],
        "y": site_xy["y"].to_numpy()[first],
    })

    dm = np.full((len(sites), len(sites)), np.nan)
    np.fill_diagonal(dm, 0.0)
    dm[combos[:, 0], combos[:, 1]] = value
    dm[combos[:, 1], combos[:, 0]] = value

    logger.info(
        "Predicted %d site pairs (mean turnover %.3f, calibrated to %.3f)",
        len(table), mean_turnover, float(np.mean(value)),
    )
    return PredictionResult(
        site_ids=sites, table=table, dissimilarity=dm, coords=site_xy, order=model.order
    )
