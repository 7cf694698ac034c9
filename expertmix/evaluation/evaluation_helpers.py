"""
Forecast accuracy metrics and per-round loss bookkeeping.

Rounds where the observation or the forecast is missing are skipped, so
trajectories from batch runs (NaN on rejected rounds) can be passed as is.
A ``metric`` is either a name ("mse", "rmse", "mae", "mape") or a
LossFunction, in which case the score is the total loss over the sample.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..losses import LossFunction


Metric = Union[str, LossFunction]


def _pairs(y: np.ndarray, yhat: np.ndarray, nonzero: bool = False) -> Tuple[np.ndarray, np.ndarray]:
    """Flattened (y, yhat) restricted to rounds where both are finite."""
    y = np.asarray(y, dtype=float).reshape(-1)
    yhat = np.asarray(yhat, dtype=float).reshape(-1)
    keep = np.isfinite(y) & np.isfinite(yhat)
    if nonzero:
        keep &= y != 0.0
    return y[keep], yhat[keep]


def mse(y: np.ndarray, yhat: np.ndarray) -> float:
    y, yhat = _pairs(y, yhat)
    return float(np.mean((y - yhat) ** 2)) if y.size else np.nan


def rmse(y: np.ndarray, yhat: np.ndarray) -> float:
    return float(np.sqrt(mse(y, yhat)))


def mae(y: np.ndarray, yhat: np.ndarray) -> float:
    y, yhat = _pairs(y, yhat)
    return float(np.mean(np.abs(y - yhat))) if y.size else np.nan


def mape(y: np.ndarray, yhat: np.ndarray) -> float:
    """mean(|y - yhat| / |y|) over rounds with y != 0; NaN if none is left."""
    y, yhat = _pairs(y, yhat, nonzero=True)
    return float(np.mean(np.abs(y - yhat) / np.abs(y))) if y.size else np.nan


METRICS: Dict[str, Callable[[np.ndarray, np.ndarray], float]] = {
    "mse": mse,
    "rmse": rmse,
    "mae": mae,
    "mape": mape,
}


# ----------------------------
# Loss trajectories
# ----------------------------

def loss_series(y: np.ndarray, yhat: np.ndarray, loss: Optional[LossFunction] = None) -> np.ndarray:
    """Per-round L(y_t, yhat_t); NaN where either side is missing or the loss is undefined."""
    loss = loss if loss is not None else LossFunction()
    y = np.asarray(y, dtype=float).reshape(-1)
    yhat = np.asarray(yhat, dtype=float).reshape(-1)
    usable = np.isfinite(y) & np.isfinite(yhat)
    if loss.kind == "percentage":
        usable &= y != 0.0
    out = np.full(y.shape, np.nan)
    out[usable] = [loss.loss(yt, xt) for yt, xt in zip(y[usable], yhat[usable])]
    return out


def cumulative_loss(loss_t: np.ndarray) -> np.ndarray:
    """Running total that skips NaN rounds; NaN until the first finite value."""
    loss_t = np.asarray(loss_t, dtype=float).reshape(-1)
    finite = np.isfinite(loss_t)
    cum = np.cumsum(np.where(finite, loss_t, 0.0))
    cum[np.cumsum(finite) == 0] = np.nan
    return cum


def score(y: np.ndarray, yhat: np.ndarray, metric: Metric = "mse") -> float:
    if isinstance(metric, LossFunction):
        cum = cumulative_loss(loss_series(y, yhat, metric))
        return float(cum[-1]) if cum.size else np.nan
    if metric not in METRICS:
        raise ValueError(f"metric must be a LossFunction or one of {sorted(METRICS)}; got {metric!r}")
    return METRICS[metric](y, yhat)


# ----------------------------
# Best single forecaster and summary table
# ----------------------------

def best_forecaster_yhat(F: np.ndarray, y: np.ndarray, metric: Metric = "mse") -> Tuple[np.ndarray, int, float]:
    """
    Column of F (T,K) with the lowest score; lowest index on ties.
    Returns (best_yhat, best_idx, best_score).
    """
    F = np.asarray(F, dtype=float)
    y = np.asarray(y, dtype=float).reshape(-1)
    if F.ndim != 2 or F.shape[0] != y.size:
        raise ValueError(f"F must be (T,K) with T={y.size}; got shape {F.shape}")
    scores = np.array([score(y, F[:, k], metric) for k in range(F.shape[1])])
    if np.all(np.isnan(scores)):
        raise ValueError("no forecaster has a finite score")
    k = int(np.nanargmin(scores))
    return F[:, k].copy(), k, float(scores[k])


def loss_table(
    y: np.ndarray,
    F_individual: Optional[np.ndarray],
    yhats: Dict[str, np.ndarray],
    metric: Metric = "mse",
    include_best_forecaster: bool = True,
    forecaster_names: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    One row per forecast in ``yhats`` (mixtures, oracles, ...) plus, optionally,
    the best individual forecaster, sorted from best to worst.
    """
    label = metric.upper() if isinstance(metric, str) else "Loss"
    rows = []
    if include_best_forecaster:
        if F_individual is None:
            raise ValueError("F_individual must be provided to include_best_forecaster.")
        _, k, best = best_forecaster_yhat(F_individual, y, metric)
        name = forecaster_names[k] if forecaster_names and k < len(forecaster_names) else f"#{k}"
        rows.append((f"Best forecaster: {name}", best))
    rows += [(name, score(y, yhat, metric)) for name, yhat in yhats.items()]
    df = pd.DataFrame(rows, columns=["Model", label])
    return df.sort_values(by=label, kind="stable").reset_index(drop=True)


# ----------------------------
# Concentration
# ----------------------------

def hhi_from_weights(W: np.ndarray) -> np.ndarray:
    """
    Herfindahl index sum_k w_k^2 of each row of W (T,K) once normalised to sum
    to one: 1/K for uniform weights, 1 for a single expert. NaN for rows with
    non-finite or negative entries, or a non-positive sum.
    """
    W = np.asarray(W, dtype=float)
    if W.ndim != 2:
        raise ValueError("W must be (T,K)")
    totals = W.sum(axis=1)
    ok = np.isfinite(W).all(axis=1) & (W >= 0.0).all(axis=1) & (totals > 0.0)
    out = np.full(W.shape[0], np.nan)
    out[ok] = np.sum((W[ok] / totals[ok, None]) ** 2, axis=1)
    return out
