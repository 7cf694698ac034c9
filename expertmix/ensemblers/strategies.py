"""
Online weight-update strategies (sequential forecast combination).

Every strategy follows the same two-step protocol. At round t the combined
forecast uses the weights held by the current state,

    yhat_t = w_t' x_t,

then y_t is revealed and ``update(state, x_t, y_t)`` returns a *new* state
holding w_{t+1}. States are frozen dataclasses whose arrays are read-only, so
an earlier state stays usable after later rounds have been applied.

Variants
--------
(1) Uniform:       w_{k,t} = 1/K
(2) EWA:           w_{k,t+1} ∝ exp( -η L_{k,t} ),   L_{k,t} = Σ_{s<=t} ℓ_{k,s}
(3) FixedShare:    v_{k} ∝ w_{k,t} exp( -η ℓ_{k,t} ),  w_{t+1} = (1-α) v + α/K
(4) ML-Poly:       w_{k,t+1} ∝ η_{k,t} (R_{k,t})_+^{p-1}
                   R_{k,t} = Σ_{s<=t} r_{k,s},  r_{k,s} = ℓ_s(yhat_s) - ℓ_{k,s}
                   η_{k,t} = 1 / (Σ_{s<=t} r_{k,s}^2 + B_t),  B_t = max_{s<=t,j} r_{j,s}^2
(5) Ridge:         w_{t+1} = argmin_w λ||w - w_0||^2 + Σ_{s<=t} (y_s - w'x_s)^2
                   via a Sherman-Morrison update of (λI + Σ x x')^{-1}
(6) OGD:           w_{t+1} = Π( w_t - η_t ℓ'(yhat_t) x_t ),  η_t = η/√t or η
(7) BOA:           w_{k,t+1} ∝ exp( η Σ_{s<=t} (r_{k,s} - η r_{k,s}^2) )

Notes
-----
- ℓ_{k,t} is the loss of expert k, or its linearisation ℓ'(yhat_t) x_{k,t}
  when the gradient trick is on (LossFunction.expert_losses).
- Π is the Euclidean projection on the simplex (Duchi et al., 2008) or on the
  ball of radius ``radius``.
- ML-Poly follows Gaillard, Stoltz & van Erven (2014) with the polynomial
  potential of Cesa-Bianchi & Lugosi (2003); p = max(2, 2 ln K) gives a
  regret of order sqrt(T log K) without any learning rate.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Optional

import numpy as np

from ..config import (
    BOA,
    EWA,
    FixedShare,
    ModelConfig,
    OnlineGradient,
    PolynomialPotential,
    Ridge,
    Uniform,
    missing_hyperparameters,
)
from ..errors import ConfigurationError, NumericalError
from ..losses import LossFunction


# -----------------------------
# Utilities
# -----------------------------

def _frozen(a) -> np.ndarray:
    """Fresh float copy marked read-only."""
    out = np.array(a, dtype=float)
    out.setflags(write=False)
    return out


def _uniform(n: int) -> np.ndarray:
    return _frozen(np.ones(n) / n)


def _softmax(logw: np.ndarray) -> np.ndarray:
    logw = logw - np.max(logw)  # stability
    w = np.exp(logw)
    return w / w.sum()


def project_to_simplex(v: np.ndarray) -> np.ndarray:
    """
    Euclidean projection onto the unit simplex Δ = {w>=0, sum w = 1}.
    Duchi et al. (2008) algorithm.
    """
    v = np.asarray(v, dtype=float)
    if v.ndim != 1:
        raise ValueError("Projection expects a 1D vector.")
    n = v.size
    u = np.sort(v)[::-1]
    cssv = np.cumsum(u) - 1.0
    rho = np.where(u - cssv / (np.arange(n) + 1) > 0)[0]
    if rho.size == 0:
        # fallback: uniform
        return np.ones(n) / n
    rho = rho[-1]
    theta = cssv[rho] / (rho + 1.0)
    w = np.maximum(v - theta, 0.0)
    # numerical cleanup
    s = w.sum()
    if s <= 0:
        return np.ones(n) / n
    return w / s


def project_to_ball(v: np.ndarray, radius: float) -> np.ndarray:
    """Euclidean projection onto {w : ||w||_2 <= radius}."""
    v = np.asarray(v, dtype=float)
    norm = float(np.linalg.norm(v))
    if norm <= radius:
        return v.copy()
    return v * (radius / norm)


def default_degree(n_experts: int) -> float:
    """Exponent p = max(2, 2 ln K) of the polynomial potential."""
    return max(2.0, 2.0 * math.log(n_experts)) if n_experts > 1 else 2.0


# -----------------------------
# Base interface
# -----------------------------

@dataclass(frozen=True, eq=False)
class StrategyState:
    """Weights in force for the next prediction. Subclasses add auxiliary state."""
    weights: np.ndarray


class WeightUpdateStrategy(ABC):
    """
    Conventions:
    - ``start(K)`` returns the state used at round 1 (uniform unless noted).
    - ``predict(state, x)`` is w_t' x_t and never looks at y_t.
    - ``update(state, x, y)`` returns the state for round t+1 and leaves
      ``state`` untouched.
    """

    loss: LossFunction
    gradient_trick: bool
    simplex: bool = True

    @abstractmethod
    def start(self, n_experts: int) -> StrategyState:
        raise NotImplementedError

    @abstractmethod
    def update(self, state: StrategyState, x: np.ndarray, y: float) -> StrategyState:
        raise NotImplementedError

    @staticmethod
    def predict(state: StrategyState, x: np.ndarray) -> float:
        return float(state.weights @ x)

    def _regrets(self, state: StrategyState, x: np.ndarray, y: float) -> np.ndarray:
        """Instantaneous regret r_k = ℓ(yhat) - ℓ_k of the mixture against each expert."""
        yhat = self.predict(state, x)
        lpred = self.loss.prediction_loss(y, yhat, self.gradient_trick)
        lexp = self.loss.expert_losses(y, x, yhat, self.gradient_trick)
        return lpred - lexp


# -----------------------------
# (1) Uniform
# -----------------------------

@dataclass(frozen=True)
class UniformStrategy(WeightUpdateStrategy):
    """Equal weights 1/K for all t."""
    loss: LossFunction = LossFunction()
    gradient_trick: bool = True

    def start(self, n_experts: int) -> StrategyState:
        return StrategyState(weights=_uniform(n_experts))

    def update(self, state: StrategyState, x: np.ndarray, y: float) -> StrategyState:
        return state


# -----------------------------
# (2) EWA
# -----------------------------

@dataclass(frozen=True, eq=False)
class EWAState(StrategyState):
    cumulative: np.ndarray


@dataclass(frozen=True)
class EWAStrategy(WeightUpdateStrategy):
    """
    Exponentially weighted average forecaster:
        w_{k,t+1} ∝ exp( -η L_{k,t} )

    η = 0 keeps uniform weights; η = inf puts all mass on the expert with the
    smallest cumulative loss (lowest index on ties).
    """
    eta: float
    loss: LossFunction = LossFunction()
    gradient_trick: bool = True

    def start(self, n_experts: int) -> EWAState:
        return EWAState(weights=_uniform(n_experts), cumulative=_frozen(np.zeros(n_experts)))

    def _weights(self, cumulative: np.ndarray) -> np.ndarray:
        n = cumulative.size
        if self.eta == 0.0:
            return np.ones(n) / n
        if math.isinf(self.eta):
            w = np.zeros(n)
            w[int(np.argmin(cumulative))] = 1.0
            return w
        return _softmax(-self.eta * cumulative)

    def update(self, state: EWAState, x: np.ndarray, y: float) -> EWAState:
        yhat = self.predict(state, x)
        ell = self.loss.expert_losses(y, x, yhat, self.gradient_trick)
        cumulative = state.cumulative + ell
        return EWAState(weights=_frozen(self._weights(cumulative)), cumulative=_frozen(cumulative))


# -----------------------------
# (3) Fixed share
# -----------------------------

@dataclass(frozen=True)
class FixedShareStrategy(WeightUpdateStrategy):
    """
    Fixed-share forecaster (Herbster & Warmuth, 1998):
        v_k ∝ w_{k,t} exp( -η ℓ_{k,t} ),   w_{t+1} = (1 - α) v + α/K

    α = 0 is EWA; α > 0 keeps a floor α/K on every expert so the mixture can
    move to a new leader after a regime change.
    """
    eta: float
    alpha: float
    loss: LossFunction = LossFunction()
    gradient_trick: bool = True

    def start(self, n_experts: int) -> StrategyState:
        return StrategyState(weights=_uniform(n_experts))

    def update(self, state: StrategyState, x: np.ndarray, y: float) -> StrategyState:
        yhat = self.predict(state, x)
        ell = self.loss.expert_losses(y, x, yhat, self.gradient_trick)
        n = ell.size

        # multiplicative update in log space
        logw = np.log(np.clip(state.weights, 1e-300, None)) - self.eta * ell
        v = _softmax(logw)
        w = (1.0 - self.alpha) * v + self.alpha / n
        return StrategyState(weights=_frozen(w / w.sum()))


# -----------------------------
# (4) ML-Poly (polynomial potential)
# -----------------------------

@dataclass(frozen=True, eq=False)
class PolynomialState(StrategyState):
    regret: np.ndarray
    inv_eta: np.ndarray
    max_sq: float
    degree: float


@dataclass(frozen=True)
class PolynomialPotentialStrategy(WeightUpdateStrategy):
    """
    ML-Poly: normalised gradient of Φ(R) = Σ_k η_k (R_k)_+^p with per-expert
    adaptive rates. No learning rate to tune; uniform weights while no expert
    has positive regret.
    """
    degree: Optional[float] = None
    loss: LossFunction = LossFunction()
    gradient_trick: bool = True

    def start(self, n_experts: int) -> PolynomialState:
        p = float(self.degree) if self.degree is not None else default_degree(n_experts)
        return PolynomialState(
            weights=_uniform(n_experts),
            regret=_frozen(np.zeros(n_experts)),
            inv_eta=_frozen(np.zeros(n_experts)),
            max_sq=0.0,
            degree=p,
        )

    @staticmethod
    def _weights(regret: np.ndarray, inv_eta: np.ndarray, degree: float) -> np.ndarray:
        pos = np.maximum(regret, 0.0)
        active = pos > 0.0
        if not np.any(active):
            return np.ones(regret.size) / regret.size
        # R_k > 0 implies some r_k != 0, hence inv_eta_k >= r_k^2 > 0
        scaled = pos[active] / pos[active].max()
        w = np.zeros(regret.size)
        w[active] = scaled ** (degree - 1.0) / inv_eta[active]
        return w / w.sum()

    def update(self, state: PolynomialState, x: np.ndarray, y: float) -> PolynomialState:
        r = self._regrets(state, x, y)
        regret = state.regret + r
        max_sq = max(state.max_sq, float(np.max(r * r)))
        inv_eta = state.inv_eta + r * r + (max_sq - state.max_sq)
        return PolynomialState(
            weights=_frozen(self._weights(regret, inv_eta, state.degree)),
            regret=_frozen(regret),
            inv_eta=_frozen(inv_eta),
            max_sq=max_sq,
            degree=state.degree,
        )


# -----------------------------
# (5) Ridge
# -----------------------------

@dataclass(frozen=True, eq=False)
class RidgeState(StrategyState):
    precision_inv: Optional[np.ndarray]   # (λI + Σ x x')^{-1}, once invertible
    gram: Optional[np.ndarray]            # Σ x x', kept only while λ = 0 and singular
    moment: np.ndarray                    # λ w_0 + Σ y x


@dataclass(frozen=True)
class RidgeStrategy(WeightUpdateStrategy):
    """
    Online ridge regression shrunk towards uniform weights w_0:
        w_{t+1} = (λI + Σ x_s x_s')^{-1} (λ w_0 + Σ y_s x_s)

    The inverse is maintained with rank-one Sherman-Morrison updates. With
    λ = 0 the Gram matrix starts singular; until it has full rank the weights
    are the least-squares solution closest to w_0 (pseudo-inverse), after
    which the inverse is formed once and updated incrementally.
    """
    lambda_: float
    loss: LossFunction = LossFunction()
    gradient_trick: bool = True
    simplex: bool = False

    def start(self, n_experts: int) -> RidgeState:
        w0 = np.ones(n_experts) / n_experts
        if self.lambda_ > 0:
            return RidgeState(
                weights=_frozen(w0),
                precision_inv=_frozen(np.eye(n_experts) / self.lambda_),
                gram=None,
                moment=_frozen(self.lambda_ * w0),
            )
        return RidgeState(
            weights=_frozen(w0),
            precision_inv=None,
            gram=_frozen(np.zeros((n_experts, n_experts))),
            moment=_frozen(np.zeros(n_experts)),
        )

    def update(self, state: RidgeState, x: np.ndarray, y: float) -> RidgeState:
        moment = state.moment + y * x
        if state.precision_inv is not None:
            p_inv = self._sherman_morrison(state.precision_inv, x)
            w = p_inv @ moment
            gram = None
        else:
            gram = state.gram + np.outer(x, x)
            n = x.size
            if np.linalg.matrix_rank(gram) == n:
                try:
                    p_inv = np.linalg.inv(gram)
                except np.linalg.LinAlgError as exc:
                    raise NumericalError("Ridge: Gram matrix could not be inverted") from exc
                w = p_inv @ moment
                gram = None
            else:
                p_inv = None
                w0 = np.ones(n) / n
                w = w0 + np.linalg.pinv(gram) @ (moment - gram @ w0)
        if not np.all(np.isfinite(w)):
            raise NumericalError("Ridge: non-finite weights; the regularised Gram matrix is ill-conditioned")
        return RidgeState(
            weights=_frozen(w),
            precision_inv=None if p_inv is None else _frozen(p_inv),
            gram=None if gram is None else _frozen(gram),
            moment=_frozen(moment),
        )

    @staticmethod
    def _sherman_morrison(p_inv: np.ndarray, x: np.ndarray) -> np.ndarray:
        px = p_inv @ x
        denom = 1.0 + float(x @ px)
        if not np.isfinite(denom) or denom <= 0.0:
            raise NumericalError(f"Ridge: Sherman-Morrison denominator {denom} is not positive")
        out = p_inv - np.outer(px, px) / denom
        return 0.5 * (out + out.T)


# -----------------------------
# (6) Online gradient descent
# -----------------------------

@dataclass(frozen=True, eq=False)
class OGDState(StrategyState):
    step: int


@dataclass(frozen=True)
class OnlineGradientStrategy(WeightUpdateStrategy):
    """
    Projected online gradient descent on the mixture loss:
        w_{t+1} = Π( w_t - η_t ℓ'(y_t, w_t'x_t) x_t )
    """
    eta: float
    projection: str = "simplex"
    radius: float = 1.0
    decay: str = "sqrt"
    loss: LossFunction = LossFunction()
    gradient_trick: bool = True

    @property
    def simplex(self) -> bool:
        return self.projection == "simplex"

    def _project(self, v: np.ndarray) -> np.ndarray:
        if self.projection == "simplex":
            return project_to_simplex(v)
        return project_to_ball(v, self.radius)

    def start(self, n_experts: int) -> OGDState:
        return OGDState(weights=_frozen(self._project(np.ones(n_experts) / n_experts)), step=0)

    def update(self, state: OGDState, x: np.ndarray, y: float) -> OGDState:
        step = state.step + 1
        yhat = self.predict(state, x)
        grad_w = self.loss.gradient(y, yhat) * x
        eta_t = self.eta / math.sqrt(step) if self.decay == "sqrt" else self.eta
        w = self._project(state.weights - eta_t * grad_w)
        return OGDState(weights=_frozen(w), step=step)


# -----------------------------
# (7) BOA
# -----------------------------

@dataclass(frozen=True, eq=False)
class BOAState(StrategyState):
    score: np.ndarray


@dataclass(frozen=True)
class BOAStrategy(WeightUpdateStrategy):
    """
    Bernstein Online Aggregation (Wintenberger, 2017):
        w_{k,t+1} ∝ exp( η Σ_s (r_{k,s} - η r_{k,s}^2) )
    The second-order term penalises experts whose regret is volatile.
    """
    eta: float
    loss: LossFunction = LossFunction()
    gradient_trick: bool = True

    def start(self, n_experts: int) -> BOAState:
        return BOAState(weights=_uniform(n_experts), score=_frozen(np.zeros(n_experts)))

    def update(self, state: BOAState, x: np.ndarray, y: float) -> BOAState:
        r = self._regrets(state, x, y)
        score = state.score + r - self.eta * r * r
        return BOAState(weights=_frozen(_softmax(self.eta * score)), score=_frozen(score))


# -----------------------------
# Construction from a model record
# -----------------------------

def strategy_for(model: ModelConfig, loss: LossFunction, gradient_trick: bool = True) -> WeightUpdateStrategy:
    """Strategy for a fully specified model record (no hyperparameter left to calibrate)."""
    missing = missing_hyperparameters(model)
    if missing:
        raise ConfigurationError(f"{model.name} needs {missing} set; use a Calibrator to tune them online")

    if isinstance(model, Uniform):
        return UniformStrategy(loss=loss, gradient_trick=gradient_trick)
    if isinstance(model, EWA):
        return EWAStrategy(eta=float(model.eta), loss=loss, gradient_trick=gradient_trick)
    if isinstance(model, FixedShare):
        return FixedShareStrategy(
            eta=float(model.eta), alpha=float(model.alpha), loss=loss, gradient_trick=gradient_trick
        )
    if isinstance(model, PolynomialPotential):
        return PolynomialPotentialStrategy(degree=model.degree, loss=loss, gradient_trick=gradient_trick)
    if isinstance(model, Ridge):
        return RidgeStrategy(lambda_=float(model.lambda_), loss=loss, gradient_trick=gradient_trick)
    if isinstance(model, OnlineGradient):
        return OnlineGradientStrategy(
            eta=float(model.eta),
            projection=model.projection,
            radius=float(model.radius),
            decay=model.decay,
            loss=loss,
            gradient_trick=gradient_trick,
        )
    if isinstance(model, BOA):
        return BOAStrategy(eta=float(model.eta), loss=loss, gradient_trick=gradient_trick)

    raise ConfigurationError(f"Unknown model variant: {model!r}")


def with_hyperparameters(model: ModelConfig, **params) -> ModelConfig:
    """Copy of a model record with some hyperparameters filled in."""
    return replace(model, **params)


__all__ = [
    "BOAStrategy",
    "EWAStrategy",
    "FixedShareStrategy",
    "OnlineGradientStrategy",
    "PolynomialPotentialStrategy",
    "RidgeStrategy",
    "StrategyState",
    "UniformStrategy",
    "WeightUpdateStrategy",
    "default_degree",
    "project_to_ball",
    "project_to_simplex",
    "strategy_for",
    "with_hyperparameters",
]
