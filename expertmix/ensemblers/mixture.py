"""
Round-by-round aggregation engine.

    engine = MixtureEngine(MixtureConfig(model=EWA(eta=1.0)))
    state = engine.start(n_experts=3)
    for x_t, y_t in stream:
        yhat_t = state.predict(x_t)          # uses only w_t and x_t
        state = state.update(x_t, y_t)       # new state; the old one is still valid

    res = engine.run(forecasts, y)           # same rounds, batch

Conventions (as for the batch ensemblers):
- forecasts[t, k] predicts y[t]; align horizons before calling.
- ``res.weights[t]`` equals w_t, the weights used to predict y[t].
- A round with a wrong-length or non-finite expert vector, or a non-finite
  observation, raises RoundError and is not applied. ``run`` records it in
  ``res.errors`` and leaves NaN in that row of every trajectory.
- ``run`` over rows 1..T gives exactly the states and predictions of T
  successive ``update`` calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import cached_property
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..config import MixtureConfig, missing_hyperparameters
from ..errors import ConfigurationError, NumericalError, RoundError
from . import history as hist
from .calibration import DEFAULT_HORIZON, Calibrator
from .strategies import StrategyState, WeightUpdateStrategy, _frozen, strategy_for


logger = logging.getLogger(__name__)


# -----------------------------
# Utilities
# -----------------------------

def _check_2d_forecasts(forecasts: np.ndarray) -> Tuple[int, int]:
    if forecasts.ndim != 2:
        raise ValueError(f"`forecasts` must be 2D array (T,K); got shape {forecasts.shape}")
    T, K = forecasts.shape
    if K < 1 or T < 1:
        raise ValueError("`forecasts` must have T>=1 and K>=1.")
    return T, K


def build_strategy(config: MixtureConfig) -> WeightUpdateStrategy:
    """Fixed strategy for a fully specified model, Calibrator otherwise."""
    if missing_hyperparameters(config.model):
        return Calibrator(
            model=config.model,
            loss=config.loss,
            gradient_trick=config.gradient_trick,
            horizon=int(config.horizon or DEFAULT_HORIZON),
        )
    return strategy_for(config.model, config.loss, config.gradient_trick)


@dataclass(frozen=True, eq=False)
class RoundRecord:
    round: int                  # 1-based count of accepted rounds
    x: np.ndarray
    y: float
    prediction: float
    weights: np.ndarray         # w_t, used for the prediction
    loss: float                 # L(y, prediction)
    expert_losses: np.ndarray   # L(y, x_k)


# -----------------------------
# State
# -----------------------------

@dataclass(frozen=True, eq=False)
class MixtureState:
    """
    Immutable snapshot of a mixture after ``t`` accepted rounds.

    ``cumulative_loss[k]`` is expert k's total loss so far and
    ``mixture_loss`` the total loss of the aggregated forecasts.
    """
    engine: "MixtureEngine"
    n_experts: int
    expert_names: Tuple[str, ...]
    inner: StrategyState
    cumulative_loss: np.ndarray
    mixture_loss: float
    t: int
    trail: Optional[hist.History] = None

    @property
    def config(self) -> MixtureConfig:
        return self.engine.config

    @property
    def weights(self) -> np.ndarray:
        return self.inner.weights

    def predict(self, x) -> float:
        return self.engine.predict(self, x)

    def update(self, x, y, index: Optional[int] = None) -> "MixtureState":
        return self.engine.update(self, x, y, index=index)

    def step(self, x, y, index: Optional[int] = None) -> Tuple[float, "MixtureState"]:
        return self.engine.step(self, x, y, index=index)

    def run(self, forecasts, y) -> "MixtureResult":
        return self.engine.run(forecasts, y, state=self)

    # history views

    @property
    def records(self) -> List[RoundRecord]:
        return hist.items(self.trail)

    @property
    def predictions(self) -> np.ndarray:
        return np.array([r.prediction for r in self.records], dtype=float)

    @property
    def weight_history(self) -> np.ndarray:
        recs = self.records
        if not recs:
            return np.zeros((0, self.n_experts))
        return np.vstack([r.weights for r in recs])

    @property
    def loss_history(self) -> np.ndarray:
        return np.array([r.loss for r in self.records], dtype=float)

    def loss_table(self) -> pd.DataFrame:
        """Cumulative and mean loss of each expert and of the mixture."""
        t = max(self.t, 1)
        rows = [(name, float(c), float(c) / t) for name, c in zip(self.expert_names, self.cumulative_loss)]
        rows.append((f"Mixture ({self.config.model.name})", float(self.mixture_loss), float(self.mixture_loss) / t))
        df = pd.DataFrame(rows, columns=["Model", "Cumulative loss", "Mean loss"])
        return df.sort_values(by="Cumulative loss", ascending=True).reset_index(drop=True)


# -----------------------------
# Batch result
# -----------------------------

@dataclass
class MixtureResult:
    yhat: np.ndarray            # (T,)
    weights: np.ndarray         # (T,K) weights used at each t (pre-update)
    loss_t: np.ndarray          # (T,) loss of the mixture
    expert_loss: np.ndarray     # (T,K) loss of each expert
    state: MixtureState         # state after the last accepted round
    errors: Dict[int, str] = field(default_factory=dict)
    meta: Dict[str, np.ndarray] = field(default_factory=dict)

    @property
    def expert_names(self) -> Tuple[str, ...]:
        return self.state.expert_names

    def loss_table(self) -> pd.DataFrame:
        return self.state.loss_table()

    def weights_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.weights, columns=list(self.expert_names))


# -----------------------------
# Engine
# -----------------------------

@dataclass(frozen=True)
class MixtureEngine:
    config: MixtureConfig = field(default_factory=MixtureConfig)

    @cached_property
    def strategy(self) -> WeightUpdateStrategy:
        return build_strategy(self.config)

    def start(self, n_experts: int, expert_names: Optional[Sequence[str]] = None) -> MixtureState:
        n = int(n_experts)
        if n < 1:
            raise ConfigurationError("n_experts must be >= 1")
        names = tuple(expert_names) if expert_names is not None else tuple(f"expert_{k}" for k in range(n))
        if len(names) != n:
            raise ConfigurationError(f"expected {n} expert names, got {len(names)}")
        return MixtureState(
            engine=self,
            n_experts=n,
            expert_names=names,
            inner=self.strategy.start(n),
            cumulative_loss=_frozen(np.zeros(n)),
            mixture_loss=0.0,
            t=0,
        )

    def _check_round(self, state: MixtureState, x, y, index: int) -> Tuple[np.ndarray, float]:
        try:
            x = np.asarray(x, dtype=float)
        except (TypeError, ValueError) as exc:
            raise RoundError(f"expert vector is not numeric: {exc}", round_index=index) from exc
        if x.ndim != 1 or x.size != state.n_experts:
            raise RoundError(
                f"expected an expert vector of length {state.n_experts}, got shape {x.shape}", round_index=index
            )
        if not np.all(np.isfinite(x)):
            raise RoundError("expert vector has non-finite entries", round_index=index)
        if y is not None:
            try:
                y = float(y)
            except (TypeError, ValueError) as exc:
                raise RoundError(f"observation is not a real number: {y!r}", round_index=index) from exc
            if not np.isfinite(y):
                raise RoundError("observation is not finite", round_index=index)
            try:
                self.config.loss.check_target(y)
            except RoundError as exc:
                raise exc.at(index) from None
        return x, y

    def predict(self, state: MixtureState, x, index: Optional[int] = None) -> float:
        x, _ = self._check_round(state, x, None, state.t if index is None else index)
        return self.strategy.predict(state.inner, x)

    def update(self, state: MixtureState, x, y, index: Optional[int] = None) -> MixtureState:
        """Apply one round and return the next state; ``state`` is never modified."""
        x, y = self._check_round(state, x, y, state.t if index is None else index)
        loss = self.config.loss

        prediction = self.strategy.predict(state.inner, x)
        expert_losses = np.asarray(loss.loss(y, x), dtype=float)
        round_loss = float(loss.loss(y, prediction))

        inner = self.strategy.update(state.inner, x, y)
        if not np.all(np.isfinite(inner.weights)):
            raise NumericalError(f"{self.config.model.name}: update produced non-finite weights")

        record = RoundRecord(
            round=state.t + 1,
            x=_frozen(x),
            y=y,
            prediction=prediction,
            weights=state.weights,
            loss=round_loss,
            expert_losses=_frozen(expert_losses),
        )
        return MixtureState(
            engine=self,
            n_experts=state.n_experts,
            expert_names=state.expert_names,
            inner=inner,
            cumulative_loss=_frozen(state.cumulative_loss + expert_losses),
            mixture_loss=state.mixture_loss + round_loss,
            t=state.t + 1,
            trail=hist.append(state.trail, record),
        )

    def step(self, state: MixtureState, x, y, index: Optional[int] = None) -> Tuple[float, MixtureState]:
        """Predict, then observe y. Returns (prediction, next state)."""
        new_state = self.update(state, x, y, index=index)
        return new_state.trail.item.prediction, new_state

    def run(
        self,
        forecasts: np.ndarray,
        y: np.ndarray,
        state: Optional[MixtureState] = None,
        expert_names: Optional[Sequence[str]] = None,
    ) -> MixtureResult:
        """
        Apply every row of ``forecasts`` in order, starting from ``state``
        (a fresh state if None).

        A NumericalError aborts the run; the exception carries the last good
        state as ``exc.state`` and the failing row as ``exc.round_index``.
        """
        forecasts = np.asarray(forecasts, dtype=float)
        T, K = _check_2d_forecasts(forecasts)
        y = np.asarray(y, dtype=float).reshape(-1)
        if y.size != T:
            raise ValueError(f"y must have length T={T}, got {y.size}")

        if self.config.loss.kind == "percentage" and np.any(y == 0.0):
            if not self.config.allow_zero_target:
                raise ConfigurationError(
                    "percentage loss is undefined for zero observations; "
                    "set allow_zero_target=True to reject those rounds individually"
                )
            logger.warning("percentage loss: %d zero observations will be rejected", int(np.sum(y == 0.0)))

        if state is None:
            state = self.start(K, expert_names=expert_names)

        yhat = np.full(T, np.nan)
        W = np.full((T, K), np.nan)
        losses = np.full(T, np.nan)
        expert_loss = np.full((T, K), np.nan)
        errors: Dict[int, str] = {}

        for t in range(T):
            try:
                new_state = self.update(state, forecasts[t], y[t], index=t)
            except RoundError as exc:
                logger.warning("Rejected %s", exc)
                errors[t] = exc.reason
                continue
            except NumericalError as exc:
                exc.state = state
                exc.round_index = t
                raise
            rec = new_state.trail.item
            yhat[t] = rec.prediction
            W[t] = rec.weights
            losses[t] = rec.loss
            expert_loss[t] = rec.expert_losses
            state = new_state

        meta: Dict[str, np.ndarray] = {"cumulative_expert_loss": np.array(state.cumulative_loss)}
        if isinstance(self.strategy, Calibrator):
            meta["candidate_weights"] = np.array(state.inner.outer_weights)
        return MixtureResult(
            yhat=yhat, weights=W, loss_t=losses, expert_loss=expert_loss, state=state, errors=errors, meta=meta
        )


def mixture(forecasts: np.ndarray, y: np.ndarray, config: Optional[MixtureConfig] = None, **kwargs) -> MixtureResult:
    """Batch shortcut: ``MixtureEngine(config).run(forecasts, y)``."""
    return MixtureEngine(config if config is not None else MixtureConfig()).run(forecasts, y, **kwargs)


# -----------------------------
# Multivariate targets
# -----------------------------

@dataclass
class MultivariateResult:
    yhat: np.ndarray                    # (T,D)
    per_dimension: List[MixtureResult]

    @property
    def weights(self) -> np.ndarray:
        """(T,D,K) weight trajectories."""
        return np.stack([r.weights for r in self.per_dimension], axis=1)

    @property
    def errors(self) -> Dict[Tuple[int, int], str]:
        return {(t, d): msg for d, r in enumerate(self.per_dimension) for t, msg in r.errors.items()}


@dataclass(frozen=True)
class MultivariateMixture:
    """
    D-dimensional target handled as D independent mixtures sharing one
    configuration; forecasts have shape (T,D,K) and observations (T,D).
    """
    config: MixtureConfig = field(default_factory=MixtureConfig)

    @cached_property
    def engine(self) -> MixtureEngine:
        return MixtureEngine(self.config)

    def start(self, n_dims: int, n_experts: int, expert_names: Optional[Sequence[str]] = None) -> Tuple[MixtureState, ...]:
        return tuple(self.engine.start(n_experts, expert_names) for _ in range(int(n_dims)))

    def update(self, states: Tuple[MixtureState, ...], x, y) -> Tuple[MixtureState, ...]:
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float).reshape(-1)
        if x.ndim != 2 or x.shape[0] != len(states) or y.size != len(states):
            raise RoundError(f"expected x of shape ({len(states)}, K) and y of length {len(states)}")
        return tuple(s.update(x[d], y[d]) for d, s in enumerate(states))

    def predict(self, states: Tuple[MixtureState, ...], x) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        if x.ndim != 2 or x.shape[0] != len(states):
            raise RoundError(f"expected x of shape ({len(states)}, K), got {x.shape}")
        return np.array([s.predict(x[d]) for d, s in enumerate(states)])

    def run(self, forecasts: np.ndarray, y: np.ndarray, expert_names: Optional[Sequence[str]] = None) -> MultivariateResult:
        forecasts = np.asarray(forecasts, dtype=float)
        y = np.asarray(y, dtype=float)
        if forecasts.ndim != 3:
            raise ValueError(f"`forecasts` must be 3D array (T,D,K); got shape {forecasts.shape}")
        T, D, _ = forecasts.shape
        if y.shape != (T, D):
            raise ValueError(f"y must have shape ({T}, {D}), got {y.shape}")
        results = [self.engine.run(forecasts[:, d, :], y[:, d], expert_names=expert_names) for d in range(D)]
        return MultivariateResult(yhat=np.column_stack([r.yhat for r in results]), per_dimension=results)


__all__ = [
    "MixtureEngine",
    "MixtureResult",
    "MixtureState",
    "MultivariateMixture",
    "MultivariateResult",
    "RoundRecord",
    "build_strategy",
    "mixture",
]
