"""
Hindsight benchmarks (oracles) for online expert aggregation.

Implements, for a complete forecast matrix X (T,K) and observations y (T,):

- expert:    argmin_k Σ_t ℓ(y_t, x_{t,k})                       (lowest index on ties)
- convex:    argmin_{w∈Δ} Σ_t ℓ(y_t, w'x_t)                      QP (square) / LP otherwise
- linear:    argmin_{w∈R^K} Σ_t ℓ(y_t, w'x_t) [+ λ||w||^2]       least squares (square) / LP otherwise
- shifting:  best sequence of experts with at most m switches, by dynamic
             programming over (round, switches used, active expert)

These use the whole sample (full lookahead) and are for evaluation only;
nothing here feeds back into the online engine.

References
----------
- Cesa-Bianchi, N., & Lugosi, G. (2006). Prediction, Learning, and Games.
- Herbster, M., & Warmuth, M. (1998). Tracking the best expert.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import cvxpy as cp
import numpy as np
import pandas as pd

from ..errors import ConfigurationError, NumericalError
from ..losses import LossFunction
from .evaluation_helpers import best_forecaster_yhat, mape, rmse, score


logger = logging.getLogger(__name__)

ORACLE_MODELS = ("expert", "convex", "linear", "shifting")


@dataclass(frozen=True, eq=False)
class OracleResult:
    """
    model            "expert", "convex", "linear" or "shifting"
    coefficients     (K,) combination weights (one-hot for expert, None for shifting)
    prediction       (T,) oracle forecasts (NaN on excluded rounds)
    loss             total loss Σ_t ℓ(y_t, prediction_t) over the used rounds
    metrics          {"oracle"|"uniform"|"best_expert": {"loss", "rmse", "mape"}}
    """
    model: str
    prediction: np.ndarray
    loss: float
    metrics: Dict[str, Dict[str, float]]
    coefficients: Optional[np.ndarray] = None
    expert_index: Optional[int] = None
    assignment: Optional[np.ndarray] = None
    n_switches: Optional[int] = None
    loss_by_switches: Optional[np.ndarray] = None
    excluded: Tuple[int, ...] = ()
    expert_names: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def mean_loss(self) -> float:
        n = int(np.sum(np.isfinite(self.prediction)))
        return self.loss / n if n else float("nan")

    def summary(self) -> pd.DataFrame:
        rows = []
        labels = {"oracle": f"Oracle ({self.model})", "uniform": "Uniform", "best_expert": "Best expert"}
        for key, label in labels.items():
            m = self.metrics[key]
            rows.append((label, m["loss"], m["rmse"], m["mape"]))
        return pd.DataFrame(rows, columns=["Model", "Loss", "RMSE", "MAPE"])


# -----------------------------
# Engine
# -----------------------------

@dataclass(frozen=True)
class OracleEngine:
    """
    Batch hindsight optimiser.

    allow_zero_target   with a percentage loss, drop rounds with y == 0
                        instead of raising ConfigurationError.
    solver              cvxpy solver name; cvxpy's default when None.
    """
    loss: LossFunction = field(default_factory=LossFunction)
    allow_zero_target: bool = False
    solver: Optional[str] = None

    # -----------------------------
    # Input handling
    # -----------------------------

    def _prepare(self, forecasts, y) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        X = np.asarray(forecasts, dtype=float)
        y = np.asarray(y, dtype=float).reshape(-1)
        if X.ndim != 2:
            raise ValueError(f"`forecasts` must be 2D array (T,K); got shape {X.shape}")
        T, K = X.shape
        if T < 1 or K < 1:
            raise ValueError("`forecasts` must have T>=1 and K>=1.")
        if y.size != T:
            raise ValueError(f"y must have length T={T}, got {y.size}")

        valid = np.all(np.isfinite(X), axis=1) & np.isfinite(y)
        if self.loss.kind == "percentage":
            zero = valid & (y == 0.0)
            if np.any(zero):
                if not self.allow_zero_target:
                    raise ConfigurationError(
                        "percentage loss is undefined for zero observations; set allow_zero_target=True"
                    )
                valid &= ~zero
        if not np.any(valid):
            raise ValueError("no round with finite forecasts and observation")
        if not np.all(valid):
            logger.warning("Oracle: excluding %d of %d rounds", int(T - valid.sum()), T)
        return X, y, valid

    def loss_matrix(self, X: np.ndarray, y: np.ndarray) -> np.ndarray:
        """ℓ[t,k] = L(y_t, x_{t,k})."""
        return np.vstack([self.loss.loss(y[t], X[t]) for t in range(y.size)])

    def _total_loss(self, y: np.ndarray, yhat: np.ndarray) -> float:
        return score(y, yhat, self.loss)

    def _metrics(self, X: np.ndarray, y: np.ndarray, yhat: np.ndarray) -> Dict[str, Dict[str, float]]:
        uniform = X.mean(axis=1)
        best, _, _ = best_forecaster_yhat(X, y, metric=self.loss)
        out = {}
        for key, pred in (("oracle", yhat), ("uniform", uniform), ("best_expert", best)):
            out[key] = {"loss": self._total_loss(y, pred), "rmse": rmse(y, pred), "mape": mape(y, pred)}
        return out

    def _result(self, model: str, X, y, valid, yhat_valid, names, **extra) -> OracleResult:
        prediction = np.full(y.size, np.nan)
        prediction[valid] = yhat_valid
        Xv, yv = X[valid], y[valid]
        return OracleResult(
            model=model,
            prediction=prediction,
            loss=self._total_loss(yv, yhat_valid),
            metrics=self._metrics(Xv, yv, yhat_valid),
            excluded=tuple(int(t) for t in np.flatnonzero(~valid)),
            expert_names=tuple(names) if names is not None else tuple(f"expert_{k}" for k in range(X.shape[1])),
            **extra,
        )

    # -----------------------------
    # Convex programs
    # -----------------------------

    def _objective(self, X: np.ndarray, y: np.ndarray, w: cp.Variable) -> cp.Expression:
        resid = X @ w - y
        kind = self.loss.kind
        if kind == "square":
            return cp.sum_squares(resid)
        if kind == "absolute":
            return cp.norm1(resid)
        if kind == "percentage":
            return cp.sum(cp.multiply(1.0 / np.abs(y), cp.abs(resid)))
        tau = float(self.loss.tau)
        e = y - X @ w
        return cp.sum(cp.maximum(tau * e, (tau - 1.0) * e))

    def _solve(self, objective: cp.Expression, constraints, w: cp.Variable, what: str) -> np.ndarray:
        prob = cp.Problem(cp.Minimize(objective), constraints)
        try:
            if self.solver is None:
                prob.solve(verbose=False)
            else:
                prob.solve(solver=self.solver, verbose=False)
        except cp.SolverError as exc:
            raise NumericalError(f"{what} oracle: solver failed ({exc})") from exc
        logger.debug("%s oracle: status=%s value=%s", what, prob.status, prob.value)
        if prob.status not in (cp.OPTIMAL, cp.OPTIMAL_INACCURATE) or w.value is None:
            raise NumericalError(f"{what} oracle: problem not solved (status={prob.status})")
        return np.asarray(w.value, dtype=float).reshape(-1)

    # -----------------------------
    # Oracles
    # -----------------------------

    def best_expert(self, forecasts, y, expert_names: Optional[Sequence[str]] = None) -> OracleResult:
        X, y, valid = self._prepare(forecasts, y)
        best, k, total = best_forecaster_yhat(X[valid], y[valid], metric=self.loss)
        coef = np.zeros(X.shape[1])
        coef[k] = 1.0
        res = self._result("expert", X, y, valid, best, expert_names, coefficients=coef, expert_index=k)
        # exact cumulative loss of the chosen column
        return _replace_loss(res, total)

    def best_convex(self, forecasts, y, expert_names: Optional[Sequence[str]] = None) -> OracleResult:
        X, y, valid = self._prepare(forecasts, y)
        Xv, yv = X[valid], y[valid]
        K = X.shape[1]
        w = cp.Variable(K)
        coef = self._solve(self._objective(Xv, yv, w), [w >= 0, cp.sum(w) == 1], w, "convex")
        # clean solver noise back onto the simplex
        coef = np.clip(coef, 0.0, None)
        coef = coef / coef.sum() if coef.sum() > 0 else np.ones(K) / K
        return self._result("convex", X, y, valid, Xv @ coef, expert_names, coefficients=coef)

    def best_linear(
        self,
        forecasts,
        y,
        lambda_: float = 0.0,
        expert_names: Optional[Sequence[str]] = None,
    ) -> OracleResult:
        if lambda_ < 0:
            raise ConfigurationError(f"lambda_ must be >= 0; got {lambda_}")
        X, y, valid = self._prepare(forecasts, y)
        Xv, yv = X[valid], y[valid]
        K = X.shape[1]
        if self.loss.kind == "square":
            try:
                if lambda_ > 0:
                    coef = np.linalg.solve(Xv.T @ Xv + lambda_ * np.eye(K), Xv.T @ yv)
                else:
                    coef = np.linalg.lstsq(Xv, yv, rcond=None)[0]
            except np.linalg.LinAlgError as exc:
                raise NumericalError(f"linear oracle: least squares failed ({exc})") from exc
            if not np.all(np.isfinite(coef)):
                raise NumericalError("linear oracle: non-finite coefficients")
        else:
            w = cp.Variable(K)
            objective = self._objective(Xv, yv, w)
            if lambda_ > 0:
                objective = objective + lambda_ * cp.sum_squares(w)
            coef = self._solve(objective, [], w, "linear")
        return self._result("linear", X, y, valid, Xv @ coef, expert_names, coefficients=coef)

    def best_shifting(
        self,
        forecasts,
        y,
        max_switches: int,
        expert_names: Optional[Sequence[str]] = None,
    ) -> OracleResult:
        """
        Best expert sequence with at most ``max_switches`` changes.

        cost[j, k] is the smallest loss up to round t of a sequence ending on
        expert k with at most j switches; staying is free, moving from any
        other expert consumes one unit of budget:

            cost_t[j, k] = ℓ[t, k] + min( cost_{t-1}[j, k], min_{k'!=k} cost_{t-1}[j-1, k'] )

        Staying wins ties, the lowest expert index wins among equal ends, so
        max_switches=0 reproduces the best-expert oracle exactly.

        Backtracking keeps one switch flag per (round, budget, expert) and the
        two leaders per (round, budget): about T * (m + 1) * (K + 8) bytes,
        with m capped at T - 1.
        """
        if int(max_switches) < 0:
            raise ConfigurationError(f"max_switches must be >= 0; got {max_switches}")
        X, y, valid = self._prepare(forecasts, y)
        Xv, yv = X[valid], y[valid]
        ell = self.loss_matrix(Xv, yv)
        T, K = ell.shape
        m = min(int(max_switches), T - 1)

        cost = np.tile(ell[0], (m + 1, 1))
        # backtracking record: whether (t, j, k) was entered by a switch, and
        # the two cheapest experts of row j-1 at t (the switch source is b1,
        # or b2 when k is b1 itself)
        moved = np.zeros((T, m + 1, K), dtype=bool)
        leaders = np.zeros((T, m + 1, 2), dtype=np.int32)
        for t in range(1, T):
            new = np.empty_like(cost)
            new[0] = cost[0] + ell[t]
            for j in range(1, m + 1):
                prev = cost[j - 1]
                order = np.argsort(prev, kind="stable")
                b1 = order[0]
                b2 = order[1] if K > 1 else order[0]
                other = np.where(np.arange(K) == b1, b2, b1)
                switch = prev[other] if K > 1 else np.full(K, np.inf)
                stay = cost[j]
                move = switch < stay
                new[j] = np.where(move, switch, stay) + ell[t]
                moved[t, j] = move
                leaders[t, j] = (b1, b2)
            cost = new

        loss_by_switches = cost.min(axis=1)
        k = int(np.argmin(cost[m]))
        j = m
        assignment = np.empty(T, dtype=int)
        for t in range(T - 1, -1, -1):
            assignment[t] = k
            if moved[t, j, k]:
                b1, b2 = leaders[t, j]
                k = int(b2) if k == b1 else int(b1)
                j -= 1
        n_switches = int(np.sum(assignment[1:] != assignment[:-1]))

        res = self._result(
            "shifting",
            X,
            y,
            valid,
            Xv[np.arange(T), assignment],
            expert_names,
            assignment=assignment,
            n_switches=n_switches,
            loss_by_switches=loss_by_switches,
        )
        return _replace_loss(res, float(loss_by_switches[m]))

    def run(self, forecasts, y, model: str = "convex", **kwargs) -> OracleResult:
        """Dispatch on the oracle name: expert, convex, linear or shifting (needs max_switches)."""
        key = str(model).strip().lower()
        if key == "expert":
            return self.best_expert(forecasts, y, **kwargs)
        if key == "convex":
            return self.best_convex(forecasts, y, **kwargs)
        if key == "linear":
            return self.best_linear(forecasts, y, **kwargs)
        if key == "shifting":
            if "max_switches" not in kwargs:
                raise ConfigurationError("the shifting oracle needs max_switches")
            return self.best_shifting(forecasts, y, **kwargs)
        raise ConfigurationError(f"Unknown oracle variant: {model!r}; expected one of {ORACLE_MODELS}")


def _replace_loss(res: OracleResult, loss: float) -> OracleResult:
    metrics = {k: dict(v) for k, v in res.metrics.items()}
    metrics["oracle"]["loss"] = loss
    return OracleResult(**{**res.__dict__, "loss": loss, "metrics": metrics})


def oracle(
    forecasts,
    y,
    model: str = "convex",
    loss: Optional[LossFunction] = None,
    **kwargs,
) -> OracleResult:
    """Shortcut for ``OracleEngine(loss).run(forecasts, y, model, **kwargs)``."""
    return OracleEngine(loss=loss if loss is not None else LossFunction()).run(forecasts, y, model=model, **kwargs)


def compare_oracles(
    forecasts,
    y,
    loss: Optional[LossFunction] = None,
    max_switches: Sequence[int] = (),
) -> pd.DataFrame:
    """Total loss, RMSE and MAPE of every oracle side by side."""
    engine = OracleEngine(loss=loss if loss is not None else LossFunction())
    results = [
        ("expert", engine.best_expert(forecasts, y)),
        ("convex", engine.best_convex(forecasts, y)),
        ("linear", engine.best_linear(forecasts, y)),
    ]
    results += [(f"shifting({m})", engine.best_shifting(forecasts, y, max_switches=m)) for m in max_switches]

    rows = []
    for label, res in results:
        m = res.metrics["oracle"]
        rows.append((label, m["loss"], m["rmse"], m["mape"]))
    return pd.DataFrame(rows, columns=["Oracle", "Loss", "RMSE", "MAPE"])


__all__ = ["ORACLE_MODELS", "OracleEngine", "OracleResult", "compare_oracles", "oracle"]
