"""
Online calibration of strategy hyperparameters.

When a model record leaves eta, alpha or lambda_ unset, the Calibrator runs a
grid of fully specified copies of that model side by side and aggregates
their forecasts with an outer ML-Poly mixture, treating each copy as a
meta-expert:

    yhat_t = Σ_c π_{c,t} (w_{c,t}' x_t) = (Σ_c π_{c,t} w_{c,t})' x_t

so the calibrated mixture is still a linear combination of the experts.

Grid
----
Candidate values are powers of two. Their range depends on a horizon guess
H (16 unless configured):

    eta      2^j,  -(6 + ceil(log2 H / 2)) <= j <= 6
    alpha    0 and 2^-j,  1 <= j <= ceil(log2 H)
    lambda_  2^j,  -6 <= j <= ceil(log2 H)

Once the round count reaches H the guess is doubled (doubling trick) and the
grid is widened. Existing candidates keep their state; a new candidate is
brought up to date by replaying the stored rounds, then joins the outer
mixture with zero regret and rate 1 / B_t (B_t the running max squared
regret increment of the outer mixture).
"""

from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..config import ModelConfig, missing_hyperparameters
from ..errors import ConfigurationError
from ..losses import LossFunction
from . import history as hist
from .strategies import (
    PolynomialPotentialStrategy,
    PolynomialState,
    StrategyState,
    WeightUpdateStrategy,
    _frozen,
    default_degree,
    strategy_for,
    with_hyperparameters,
)


logger = logging.getLogger(__name__)

DEFAULT_HORIZON = 16
GRID_HALF_WIDTH = 6
LAMBDA_MIN_EXPONENT = -6

Candidate = Tuple[Tuple[str, float], ...]


def _log2_ceil(h: int) -> int:
    return max(1, int(math.ceil(math.log2(max(h, 2)))))


def candidate_axes(missing: Tuple[str, ...], horizon: int) -> Dict[str, List[float]]:
    """Grid values per missing hyperparameter for the given horizon guess."""
    L = _log2_ceil(horizon)
    axes: Dict[str, List[float]] = {}
    for name in missing:
        if name == "eta":
            low = -(GRID_HALF_WIDTH + (L + 1) // 2)
            axes[name] = [2.0 ** j for j in range(low, GRID_HALF_WIDTH + 1)]
        elif name == "alpha":
            axes[name] = [0.0] + [2.0 ** -j for j in range(1, L + 1)]
        elif name == "lambda_":
            axes[name] = [2.0 ** j for j in range(LAMBDA_MIN_EXPONENT, L + 1)]
        else:
            raise ConfigurationError(f"No calibration grid for hyperparameter {name!r}")
    return axes


def candidate_grid(missing: Tuple[str, ...], horizon: int) -> List[Candidate]:
    """Cartesian product of the axes, in a fixed order."""
    axes = candidate_axes(missing, horizon)
    names = sorted(axes)
    return [tuple(zip(names, values)) for values in itertools.product(*(axes[n] for n in names))]


@dataclass(frozen=True, eq=False)
class CalibratorState(StrategyState):
    candidates: Tuple[Candidate, ...]
    sub_states: Tuple[StrategyState, ...]
    outer: PolynomialState
    horizon: int
    rounds: int
    trail: Optional[hist.History]

    @property
    def outer_weights(self) -> np.ndarray:
        return self.outer.weights

    def best_candidate(self) -> Dict[str, float]:
        """Hyperparameters of the meta-expert with the largest outer weight."""
        return dict(self.candidates[int(np.argmax(self.outer.weights))])


@dataclass(frozen=True)
class Calibrator(WeightUpdateStrategy):
    """
    Meta-mixture over a grid of hyperparameter candidates for ``model``.

    Every candidate is an independent strategy built with ``strategy_for``;
    the outer aggregation is itself a PolynomialPotentialStrategy over the
    candidates' forecasts.
    """
    model: ModelConfig
    loss: LossFunction = LossFunction()
    gradient_trick: bool = True
    horizon: int = DEFAULT_HORIZON

    def __post_init__(self):
        if not missing_hyperparameters(self.model):
            raise ConfigurationError(f"{self.model!r} has nothing to calibrate")
        if int(self.horizon) < 1:
            raise ConfigurationError(f"horizon must be >= 1; got {self.horizon}")

    @property
    def simplex(self) -> bool:
        return bool(self.model.simplex)

    @property
    def missing(self) -> Tuple[str, ...]:
        return missing_hyperparameters(self.model)

    @property
    def outer_strategy(self) -> PolynomialPotentialStrategy:
        return PolynomialPotentialStrategy(loss=self.loss, gradient_trick=self.gradient_trick)

    def candidate_strategy(self, candidate: Candidate) -> WeightUpdateStrategy:
        model = with_hyperparameters(self.model, **dict(candidate))
        return strategy_for(model, self.loss, self.gradient_trick)

    # -----------------------------
    # Protocol
    # -----------------------------

    def start(self, n_experts: int) -> CalibratorState:
        horizon = int(self.horizon)
        candidates = tuple(candidate_grid(self.missing, horizon))
        sub_states = tuple(self.candidate_strategy(c).start(n_experts) for c in candidates)
        outer = self.outer_strategy.start(len(candidates))
        logger.debug("Calibrating %s over %d candidates (horizon=%d)", self.model.name, len(candidates), horizon)
        return CalibratorState(
            weights=self._combine(outer, sub_states),
            candidates=candidates,
            sub_states=sub_states,
            outer=outer,
            horizon=horizon,
            rounds=0,
            trail=None,
        )

    def update(self, state: CalibratorState, x: np.ndarray, y: float) -> CalibratorState:
        # forecasts of the meta-experts at this round, made before y is used
        meta_x = np.array([s.weights @ x for s in state.sub_states], dtype=float)
        outer = self.outer_strategy.update(state.outer, meta_x, y)
        sub_states = tuple(
            self.candidate_strategy(c).update(s, x, y) for c, s in zip(state.candidates, state.sub_states)
        )
        trail = hist.append(state.trail, (_frozen(x), float(y)))
        rounds = state.rounds + 1

        candidates = state.candidates
        horizon = state.horizon
        while rounds >= horizon:
            horizon *= 2
            candidates, sub_states, outer = self._extend(candidates, sub_states, outer, horizon, trail, x.size)

        return CalibratorState(
            weights=self._combine(outer, sub_states),
            candidates=candidates,
            sub_states=sub_states,
            outer=outer,
            horizon=horizon,
            rounds=rounds,
            trail=trail,
        )

    # -----------------------------
    # Helpers
    # -----------------------------

    @staticmethod
    def _combine(outer: PolynomialState, sub_states: Tuple[StrategyState, ...]) -> np.ndarray:
        stacked = np.vstack([s.weights for s in sub_states])
        return _frozen(outer.weights @ stacked)

    def _replay(self, candidate: Candidate, trail: Optional[hist.History], n_experts: int) -> StrategyState:
        strategy = self.candidate_strategy(candidate)
        state = strategy.start(n_experts)
        for x, y in hist.items(trail):
            state = strategy.update(state, x, y)
        return state

    def _extend(
        self,
        candidates: Tuple[Candidate, ...],
        sub_states: Tuple[StrategyState, ...],
        outer: PolynomialState,
        horizon: int,
        trail: Optional[hist.History],
        n_experts: int,
    ):
        known = set(candidates)
        new = [c for c in candidate_grid(self.missing, horizon) if c not in known]
        if not new:
            return candidates, sub_states, outer

        logger.debug(
            "Horizon guess doubled to %d: adding %d candidates for %s", horizon, len(new), self.model.name
        )
        new_states = tuple(self._replay(c, trail, n_experts) for c in new)
        n_total = len(candidates) + len(new)
        regret = np.concatenate([outer.regret, np.zeros(len(new))])
        # newcomers start at rate 1 / B_t
        inv_eta = np.concatenate([outer.inv_eta, np.full(len(new), outer.max_sq)])
        degree = default_degree(n_total)
        extended = PolynomialState(
            weights=_frozen(PolynomialPotentialStrategy._weights(regret, inv_eta, degree)),
            regret=_frozen(regret),
            inv_eta=_frozen(inv_eta),
            max_sq=outer.max_sq,
            degree=degree,
        )
        return candidates + tuple(new), sub_states + new_states, extended


__all__ = [
    "Calibrator",
    "CalibratorState",
    "DEFAULT_HORIZON",
    "candidate_axes",
    "candidate_grid",
]
