"""Zeta diversity and multi-site generalised dissimilarity modelling.

Zeta diversity of order k is the number of species shared by k sites,
averaged over combinations of k sites. Its decline with k, and its decay
with environmental and geographic distance among the k sites, describe how
species composition turns over across a landscape.

The MS-GDM fitted here models normalised zeta with a binomial GLM on a log
link, using monotone I-spline transforms of each predictor with
non-negative coefficients::

    log(zeta) = b0 - sum_p sum_s beta_ps * I_s(x_p),   b0 <= 0, beta >= 0

so predicted zeta never increases with distance along any predictor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import combinations
from typing import Sequence

import numpy as np
import pandas as pd
from scipy import stats as sp_stats
from scipy.interpolate import BSpline
from scipy.optimize import minimize
from scipy.special import xlogy

from .distance import haversine
from .io import SiteTable, UnknownSiteError, require_columns
from .orderwise import compute_orderwise, sample_combinations

logger = logging.getLogger(__name__)

NORMALIZATIONS = ("jaccard", "sorensen", "simpson")

_EPS = 1e-10


def _shared_species(
    presence: np.ndarray, combos: np.ndarray, normalize: str | None = None
) -> np.ndarray:
    """Species shared by every site of each combination, optionally normalised."""
    pres = presence[combos]  # (m, k, n_species)
    shared = pres.all(axis=1).sum(axis=1).astype(np.float64)
    if normalize is None:
        return shared
    norm = normalize.lower()
    if norm == "jaccard":
        denom = pres.any(axis=1).sum(axis=1).astype(np.float64)
    elif norm == "sorensen":
        denom = pres.sum(axis=2).mean(axis=1)
    elif norm == "simpson":
        denom = pres.sum(axis=2).min(axis=1).astype(np.float64)
    else:
        raise ValueError(
            f"Unknown normalisation '{normalize}'. Available: {NORMALIZATIONS}"
        )
    out = np.full(len(shared), np.nan)
    ok = denom > 0
    out[ok] = shared[ok] / denom[ok]
    return out


@dataclass(frozen=True)
class ZetaResult:
    """Zeta diversity of a single order."""

    order: int
    mean: float
    sd: float
    values: np.ndarray  # one value per sampled combination
    normalize: str | None = None


def zeta_order(
    table: SiteTable,
    order: int,
    sam: int | None = None,
    normalize: str | None = None,
    seed: int = 42,
) -> ZetaResult:
    """Zeta diversity of one order over all (or ``sam`` sampled) combinations."""
    combos = sample_combinations(table.n_sites, order, sample_no=sam, seed=seed)
    values = _shared_species(table.presence(), combos, normalize)
    finite = values[~np.isnan(values)]
    mean = float(finite.mean()) if len(finite) else float("nan")
    sd = float(finite.std(ddof=1)) if len(finite) > 1 else float("nan")
    return ZetaResult(order=order, mean=mean, sd=sd, values=values, normalize=normalize)


@dataclass(frozen=True)
class ZetaDeclineResult:
    """Zeta decline across orders with exponential and power-law fits.

    The exponential form regresses ``log(zeta)`` on order, the power law
    ``log(zeta)`` on ``log(order)``. AIC is computed on the log scale.
    """

    orders: np.ndarray
    mean: np.ndarray
    sd: np.ndarray
    exp_slope: float
    exp_intercept: float
    exp_aic: float
    pl_slope: float
    pl_intercept: float
    pl_aic: float

    @property
    def best(self) -> str | None:
        if np.isnan(self.exp_aic) or np.isnan(self.pl_aic):
            return None
        return "exponential" if self.exp_aic <= self.pl_aic else "power_law"

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"order": self.orders, "zeta_mean": self.mean, "zeta_sd": self.sd})


def _log_fit(x: np.ndarray, y: np.ndarray) -> tuple[float, float, float]:
    """Slope, intercept and AIC of a least-squares line ``log(y) ~ x``."""
    ly = np.log(y)
    fit = sp_stats.linregress(x, ly)
    resid = ly - (fit.intercept + fit.slope * x)
    n = len(x)
    rss = max(float(np.sum(resid**2)), _EPS)
    aic = n * np.log(2 * np.pi * rss / n) + n + 2 * 3
    return float(fit.slope), float(fit.intercept), float(aic)


def zeta_decline(
    table: SiteTable,
    orders: Sequence[int] | None = None,
    sam: int | None = 1000,
    seed: int = 42,
) -> ZetaDeclineResult:
    """Zeta diversity for a range of orders (default 1..min(10, n_sites))."""
    if orders is None:
        orders = range(1, min(10, table.n_sites) + 1)
    orders_arr = np.asarray(list(orders), dtype=int)
    results = [zeta_order(table, int(k), sam=sam, seed=seed) for k in orders_arr]
    mean = np.array([r.mean for r in results])
    sd = np.array([r.sd for r in results])

    valid = mean > 0
    nan = float("nan")
    exp_fit = pl_fit = (nan, nan, nan)
    if valid.sum() >= 3:
        k = orders_arr[valid].astype(np.float64)
        exp_fit = _log_fit(k, mean[valid])
        pl_fit = _log_fit(np.log(k), mean[valid])
    else:
        logger.info("Fewer than three non-zero zeta values; decline not fitted")

    return ZetaDeclineResult(
        orders=orders_arr,
        mean=mean,
        sd=sd,
        exp_slope=exp_fit[0],
        exp_intercept=exp_fit[1],
        exp_aic=exp_fit[2],
        pl_slope=pl_fit[0],
        pl_intercept=pl_fit[1],
        pl_aic=pl_fit[2],
    )


def calibration_table(
    table: SiteTable,
    orders: Sequence[int] = (1, 2, 3),
    sam: int | None = None,
    seed: int = 42,
) -> pd.DataFrame:
    """Mean richness and mean turnover per combination order.

    ``mean_richness`` is the mean number of species in the union of the k
    sites; ``mean_turnover`` the mean order-wise turnover (NaN for order 1).
    """
    presence = table.presence()
    rows = []
    for k in orders:
        combos = sample_combinations(table.n_sites, k, sample_no=sam, seed=seed)
        mean_richness = float(presence[combos].any(axis=1).sum(axis=1).mean())
        mean_turnover = float("nan")
        if k >= 2:
            values = compute_orderwise(table, "turnover", order=k, sample_no=sam, seed=seed)["value"]
            values = values.dropna()
            if len(values):
                mean_turnover = float(values.mean())
        rows.append({"order": k, "mean_richness": mean_richness, "mean_turnover": mean_turnover})
    return pd.DataFrame(rows).set_index("order")


# ---------------------------------------------------------------------------
# I-splines
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ISplineBasis:
    """Monotone I-spline basis on a fixed knot vector.

    Each basis function rises from 0 at the lower boundary knot to 1 at
    the upper one. Values outside the training range are clipped.
    """

    knots: np.ndarray  # clamped knot vector
    degree: int

    @classmethod
    def fit(cls, x: np.ndarray, n_interior_knots: int = 1, degree: int = 2) -> ISplineBasis:
        """Place boundary knots at the data range and interior knots at quantiles."""
        if degree < 1:
            raise ValueError(f"degree must be >= 1, got {degree}")
        x = np.asarray(x, dtype=np.float64)
        x = x[np.isfinite(x)]
        if len(x) == 0:
            raise ValueError("Cannot fit an I-spline basis to no finite values")
        lo, hi = float(x.min()), float(x.max())
        if hi <= lo:
            hi = lo + 1.0
        probs = np.linspace(0, 1, n_interior_knots + 2)[1:-1]
        interior = np.unique(np.quantile(x, probs)) if len(probs) else np.empty(0)
        interior = interior[(interior > lo) & (interior < hi)]
        knots = np.concatenate([[lo] * (degree + 1), interior, [hi] * (degree + 1)])
        return cls(knots=knots, degree=degree)

    @property
    def lower(self) -> float:
        return float(self.knots[0])

    @property
    def upper(self) -> float:
        return float(self.knots[-1])

    @property
    def n_splines(self) -> int:
        return len(self.knots) - self.degree - 2

    def transform(self, x: np.ndarray) -> np.ndarray:
        """Evaluate the basis, shape ``(len(x), n_splines)``."""
        x = np.asarray(x, dtype=np.float64)
        xc = np.clip(x, self.lower, np.nextafter(self.upper, self.lower))
        b = BSpline.design_matrix(xc, self.knots, self.degree).toarray()
        # Tail sums of a clamped B-spline basis are monotone; the first is 1
        tails = np.cumsum(b[:, ::-1], axis=1)[:, ::-1]
        out = np.clip(tails[:, 1:], 0.0, 1.0)
        out[x >= self.upper] = 1.0
        return out


# ---------------------------------------------------------------------------
# MS-GDM
# ---------------------------------------------------------------------------


def combination_predictors(
    env: pd.DataFrame,
    lon: Sequence[float],
    lat: Sequence[float],
    combos: np.ndarray,
    include_distance: bool = True,
) -> pd.DataFrame:
    """Distances among the sites of each combination.

    ``env`` rows, ``lon`` and ``lat`` are aligned with the site indices used
    in ``combos``. Each environmental column becomes the mean absolute
    pairwise difference within the combination; ``distance`` is the mean
    pairwise Haversine distance in kilometres.
    """
    combos = np.asarray(combos, dtype=np.intp)
    k = combos.shape[1]
    if k < 2:
        raise ValueError("Combinations need at least two sites to have distances")
    values = env.to_numpy(dtype=np.float64)
    lon = np.asarray(lon, dtype=np.float64)
    lat = np.asarray(lat, dtype=np.float64)
    pairs = list(combinations(range(k), 2))
    diffs = np.zeros((len(combos), values.shape[1]))
    dist = np.zeros(len(combos))
    for a, b in pairs:
        ia, ib = combos[:, a], combos[:, b]
        diffs += np.abs(values[ia] - values[ib])
        if include_distance:
            dist += np.asarray(haversine(lon[ia], lat[ia], lon[ib], lat[ib])) / 1000
    out = pd.DataFrame(diffs / len(pairs), columns=list(env.columns))
    if include_distance:
        out["distance"] = dist / len(pairs)
    return out


@dataclass
class MSGDMConfig:
    """Configuration for MS-GDM fitting.

    Attributes:
        order: Number of sites per combination (>= 2).
        sam: Maximum number of sampled combinations (None for all).
        normalize: Zeta normalisation: "jaccard", "sorensen" or "simpson".
        n_interior_knots: Interior I-spline knots per predictor.
        spline_degree: B-spline degree underlying the I-splines.
        include_distance: Add mean geographic distance as a predictor.
        max_iterations: L-BFGS-B iteration cap.
        random_seed: Seed for combination sampling.
    """

    order: int = 2
    sam: int | None = 1000
    normalize: str = "jaccard"
    n_interior_knots: int = 1
    spline_degree: int = 2
    include_distance: bool = True
    max_iterations: int = 500
    random_seed: int = 42


@dataclass
class MSGDMModel:
    """Fitted multi-site generalised dissimilarity model."""

    order: int
    normalize: str
    predictors: list[str]
    bases: dict[str, ISplineBasis]
    intercept: float
    coefficients: dict[str, np.ndarray]
    deviance: float
    null_deviance: float
    n_observations: int
    include_distance: bool = True
    converged: bool = True
    metadata: dict[str, object] = field(default_factory=dict)

    @property
    def explained_deviance(self) -> float:
        if self.null_deviance <= 0:
            return float("nan")
        return 1.0 - self.deviance / self.null_deviance

    def design_matrix(self, predictors: pd.DataFrame) -> np.ndarray:
        require_columns(predictors, self.predictors, context="Predictor table")
        blocks = [self.bases[p].transform(predictors[p].to_numpy()) for p in self.predictors]
        return np.hstack(blocks)

    def _beta(self) -> np.ndarray:
        return np.concatenate([self.coefficients[p] for p in self.predictors])

    def predict(self, predictors: pd.DataFrame) -> np.ndarray:
        """Predicted normalised zeta in [0, 1] for each predictor row."""
        x = self.design_matrix(predictors)
        return np.clip(np.exp(self.intercept - x @ self._beta()), 0.0, 1.0)

    def predictor_importance(self) -> pd.Series:
        """Total I-spline height per predictor (sum of its coefficients)."""
        return pd.Series(
            {p: float(self.coefficients[p].sum()) for p in self.predictors},
            name="importance",
        )


def _binomial_nll(params: np.ndarray, x: np.ndarray, y: np.ndarray) -> tuple[float, np.ndarray]:
    eta = params[0] - x @ params[1:]
    mu = np.clip(np.exp(eta), _EPS, 1 - _EPS)
    nll = -float(np.sum(xlogy(y, mu) + xlogy(1 - y, 1 - mu)))
    g = (y - mu) / (1 - mu)  # d loglik / d eta on the log link
    grad = np.empty_like(params)
    grad[0] = -g.sum()
    grad[1:] = x.T @ g
    return nll, grad


def _binomial_deviance(y: np.ndarray, mu: np.ndarray) -> float:
    mu = np.clip(mu, _EPS, 1 - _EPS)
    return 2.0 * float(np.sum(
        xlogy(y, y) - xlogy(y, mu) + xlogy(1 - y, 1 - y) - xlogy(1 - y, 1 - mu)
    ))


def fit_msgdm(
    table: SiteTable,
    env: pd.DataFrame,
    config: MSGDMConfig | None = None,
) -> MSGDMModel:
    """Fit an MS-GDM of normalised zeta on environmental and spatial distance.

    Parameters
    ----------
    table : SiteTable
        Site-by-species data with coordinates.
    env : pd.DataFrame
        Scaled environmental predictors indexed by site identifier; must
        cover every site of ``table``.
    config : MSGDMConfig or None
        Fitting options.

    Returns
    -------
    MSGDMModel
        Fitted coefficients, I-spline bases and deviance summary.
    """
    cfg = config or MSGDMConfig()
    if cfg.order < 2:
        raise ValueError(f"MS-GDM order must be >= 2, got {cfg.order}")
    if cfg.normalize is None or cfg.normalize.lower() not in NORMALIZATIONS:
        raise ValueError(
            f"MS-GDM needs a zeta normalisation in {NORMALIZATIONS}, got {cfg.normalize!r}"
        )
    if cfg.include_distance and "distance" in env.columns:
        raise ValueError("Environment column 'distance' clashes with the spatial predictor")

    missing = [s for s in table.site_ids if s not in env.index]
    if missing:
        raise UnknownSiteError(missing, role="environment site")
    env_sites = env.loc[list(table.site_ids)]
    nan_cols = [c for c in env_sites.columns if env_sites[c].isna().any()]
    if nan_cols:
        raise ValueError(f"Environment has missing values in: {', '.join(map(str, nan_cols))}")

    combos = sample_combinations(
        table.n_sites, cfg.order, sample_no=cfg.sam, seed=cfg.random_seed
    )
    y = _shared_species(table.presence(), combos, cfg.normalize)
    raw = combination_predictors(
        env_sites, table.x, table.y, combos, include_distance=cfg.include_distance
    )
    keep = ~np.isnan(y)
    if keep.sum() < 2:
        raise ValueError("Fewer than two combinations with a defined zeta value")
    y = y[keep]
    raw = raw.loc[keep].reset_index(drop=True)

    predictors = list(raw.columns)
    bases = {
        p: ISplineBasis.fit(raw[p].to_numpy(), cfg.n_interior_knots, cfg.spline_degree)
        for p in predictors
    }
    x = np.hstack([bases[p].transform(raw[p].to_numpy()) for p in predictors])

    y_mean = float(np.clip(y.mean(), _EPS, 1.0))
    params0 = np.concatenate([[np.log(y_mean)], np.full(x.shape[1], 0.01)])
    bounds = [(None, 0.0)] + [(0.0, None)] * x.shape[1]
    res = minimize(
        _binomial_nll,
        params0,
        args=(x, y),
        jac=True,
        method="L-BFGS-B",
        bounds=bounds,
        options={"maxiter": cfg.max_iterations},
    )
    if not res.success:
        logger.warning("MS-GDM optimiser did not converge: %s", res.message)

    coefficients: dict[str, np.ndarray] = {}
    start = 1
    for p in predictors:
        n = bases[p].n_splines
        coefficients[p] = np.asarray(res.x[start:start + n], dtype=np.float64)
        start += n

    mu = np.exp(res.x[0] - x @ res.x[1:])
    deviance = _binomial_deviance(y, mu)
    null_deviance = _binomial_deviance(y, np.full_like(y, y.mean()))

    model = MSGDMModel(
        order=cfg.order,
        normalize=cfg.normalize.lower(),
        predictors=predictors,
        bases=bases,
        intercept=float(res.x[0]),
        coefficients=coefficients,
        deviance=deviance,
        null_deviance=null_deviance,
        n_observations=int(len(y)),
        include_distance=cfg.include_distance,
        converged=bool(res.success),
        metadata={"n_iterations": int(res.nit)},
    )
    logger.info(
        "MS-GDM order %d: %d combinations, %d predictors, explained deviance %.3f",
        model.order, model.n_observations, len(predictors), model.explained_deviance,
    )
    return model
