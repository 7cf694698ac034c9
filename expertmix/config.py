"""
Configuration records.

A model is one of a closed set of frozen dataclasses (a tagged union), each
carrying only the knobs that make sense for it. A hyperparameter left as
None is calibrated online (see expertmix.ensemblers.calibration).

    cfg = MixtureConfig(model=FixedShare(eta=1.0, alpha=0.05), loss=LossFunction("square"))
    cfg = MixtureConfig(model=EWA(), loss=LossFunction("pinball", tau=0.9))   # eta calibrated
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from typing import ClassVar, Dict, Literal, Optional, Tuple, Union

from .errors import ConfigurationError
from .losses import LossFunction


def _check_rate(name: str, value: Optional[float], allow_zero: bool = False, allow_inf: bool = False) -> None:
    if value is None:
        return
    v = float(value)
    if math.isnan(v):
        raise ConfigurationError(f"{name} must be a number; got NaN")
    if math.isinf(v) and not allow_inf:
        raise ConfigurationError(f"{name} must be finite")
    if v < 0 or (v == 0 and not allow_zero):
        raise ConfigurationError(f"{name} must be {'>= 0' if allow_zero else '> 0'}; got {value}")


# -----------------------------
# Model records
# -----------------------------

@dataclass(frozen=True)
class Uniform:
    """Equal weights 1/K, never updated."""
    name: ClassVar[str] = "Uniform"
    simplex: ClassVar[bool] = True
    tunable: ClassVar[Tuple[str, ...]] = ()


@dataclass(frozen=True)
class EWA:
    """Exponentially weighted average. eta=0 is Uniform, eta=inf follows the leader."""
    eta: Optional[float] = None

    name: ClassVar[str] = "EWA"
    simplex: ClassVar[bool] = True
    tunable: ClassVar[Tuple[str, ...]] = ("eta",)

    def __post_init__(self):
        _check_rate("eta", self.eta, allow_zero=True, allow_inf=True)


@dataclass(frozen=True)
class FixedShare:
    """EWA step followed by mixing a fraction alpha of uniform weight back in."""
    eta: Optional[float] = None
    alpha: Optional[float] = None

    name: ClassVar[str] = "FixedShare"
    simplex: ClassVar[bool] = True
    tunable: ClassVar[Tuple[str, ...]] = ("eta", "alpha")

    def __post_init__(self):
        _check_rate("eta", self.eta, allow_zero=True)
        if self.alpha is not None and not 0.0 <= float(self.alpha) <= 1.0:
            raise ConfigurationError(f"alpha must satisfy 0 <= alpha <= 1; got {self.alpha}")


@dataclass(frozen=True)
class PolynomialPotential:
    """
    Parameter-free polynomially weighted average (ML-Poly).

    degree is the exponent p of the potential sum_k eta_k (R_k)_+^p; None
    picks max(2, 2 ln K) once K is known. It is not a learning rate and is
    never calibrated.
    """
    degree: Optional[float] = None

    name: ClassVar[str] = "PolynomialPotential"
    simplex: ClassVar[bool] = True
    tunable: ClassVar[Tuple[str, ...]] = ()

    def __post_init__(self):
        if self.degree is not None and not float(self.degree) >= 2.0:
            raise ConfigurationError(f"degree must be >= 2; got {self.degree}")


@dataclass(frozen=True)
class Ridge:
    """Online ridge regression of y on the expert forecasts (square loss only)."""
    lambda_: Optional[float] = None

    name: ClassVar[str] = "Ridge"
    simplex: ClassVar[bool] = False
    tunable: ClassVar[Tuple[str, ...]] = ("lambda_",)

    def __post_init__(self):
        _check_rate("lambda_", self.lambda_, allow_zero=True)


@dataclass(frozen=True)
class OnlineGradient:
    """
    Projected online gradient descent, step eta_t = eta / sqrt(t) (decay="sqrt")
    or eta (decay="constant"). projection="simplex" keeps weights on the simplex,
    projection="ball" on the Euclidean ball of the given radius.
    """
    eta: Optional[float] = None
    projection: Literal["simplex", "ball"] = "simplex"
    radius: float = 1.0
    decay: Literal["sqrt", "constant"] = "sqrt"

    name: ClassVar[str] = "OnlineGradient"
    tunable: ClassVar[Tuple[str, ...]] = ("eta",)

    def __post_init__(self):
        _check_rate("eta", self.eta)
        if self.projection not in ("simplex", "ball"):
            raise ConfigurationError(f"projection must be 'simplex' or 'ball'; got {self.projection!r}")
        if self.decay not in ("sqrt", "constant"):
            raise ConfigurationError(f"decay must be 'sqrt' or 'constant'; got {self.decay!r}")
        _check_rate("radius", self.radius)

    @property
    def simplex(self) -> bool:
        return self.projection == "simplex"


@dataclass(frozen=True)
class BOA:
    """Bernstein Online Aggregation (second-order exponential weights)."""
    eta: Optional[float] = None

    name: ClassVar[str] = "BOA"
    simplex: ClassVar[bool] = True
    tunable: ClassVar[Tuple[str, ...]] = ("eta",)

    def __post_init__(self):
        _check_rate("eta", self.eta)


ModelConfig = Union[Uniform, EWA, FixedShare, PolynomialPotential, Ridge, OnlineGradient, BOA]
MODEL_TYPES = (Uniform, EWA, FixedShare, PolynomialPotential, Ridge, OnlineGradient, BOA)

# Variants whose regret guarantees rest on exp-concavity of the loss.
EXP_CONCAVE_MODELS = (EWA, FixedShare, PolynomialPotential, BOA)


def missing_hyperparameters(model: ModelConfig) -> Tuple[str, ...]:
    """Names of the tunable hyperparameters the caller left unset."""
    return tuple(name for name in model.tunable if getattr(model, name) is None)


# -----------------------------
# Mixture configuration
# -----------------------------

@dataclass(frozen=True)
class MixtureConfig:
    """
    Full configuration of one online mixture.

    gradient_trick      feed L'(y, yhat) * x_k to the updates instead of L(y, x_k).
                        None (default) turns it on only for losses that are not
                        exp-concave, i.e. off for the square loss.
    allow_zero_target   accept a percentage loss on a batch containing y == 0;
                        those rounds are then rejected one by one.
    horizon             initial horizon guess for online calibration.
    """
    model: ModelConfig = field(default_factory=EWA)
    loss: LossFunction = field(default_factory=LossFunction)
    gradient_trick: Optional[bool] = None
    allow_zero_target: bool = False
    horizon: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.model, MODEL_TYPES):
            raise ConfigurationError(f"Unknown model variant: {self.model!r}")
        if not isinstance(self.loss, LossFunction):
            raise ConfigurationError(f"loss must be a LossFunction; got {self.loss!r}")
        if self.gradient_trick is None:
            object.__setattr__(self, "gradient_trick", not self.loss.exp_concave)
        if isinstance(self.model, Ridge) and self.loss.kind != "square":
            raise ConfigurationError(f"Ridge only supports the square loss; got {self.loss}")
        if isinstance(self.model, EXP_CONCAVE_MODELS) and not self.loss.exp_concave and not self.gradient_trick:
            raise ConfigurationError(
                f"{self.model.name} with the non exp-concave {self.loss} loss needs gradient_trick=True; "
                "its regret bound does not hold otherwise"
            )
        if self.horizon is not None and int(self.horizon) < 1:
            raise ConfigurationError(f"horizon must be >= 1; got {self.horizon}")


# -----------------------------
# Name-based construction
# -----------------------------

_MODEL_NAMES: Dict[str, type] = {
    "uniform": Uniform,
    "ewa": EWA,
    "fixedshare": FixedShare,
    "fs": FixedShare,
    "polynomialpotential": PolynomialPotential,
    "mlpol": PolynomialPotential,
    "mlpoly": PolynomialPotential,
    "ridge": Ridge,
    "onlinegradient": OnlineGradient,
    "ogd": OnlineGradient,
    "boa": BOA,
}

_PARAM_ALIASES = {"lambda": "lambda_", "lam": "lambda_"}


def model_from_name(name: str, **params) -> ModelConfig:
    """
    Map a model name and keyword hyperparameters onto its record.

    >>> model_from_name("FS", eta=1.0, alpha=0.1)
    FixedShare(eta=1.0, alpha=0.1)
    """
    key = str(name).replace("_", "").replace("-", "").strip().lower()
    cls = _MODEL_NAMES.get(key)
    if cls is None:
        raise ConfigurationError(f"Unknown model variant: {name!r}")
    allowed = {f.name for f in fields(cls)}
    kwargs = {}
    for k, v in params.items():
        k = _PARAM_ALIASES.get(k, k)
        if k not in allowed:
            raise ConfigurationError(f"{cls.name} has no hyperparameter {k!r}; allowed: {sorted(allowed)}")
        kwargs[k] = v
    return cls(**kwargs)


__all__ = [
    "BOA",
    "EWA",
    "EXP_CONCAVE_MODELS",
    "FixedShare",
    "MODEL_TYPES",
    "MixtureConfig",
    "ModelConfig",
    "OnlineGradient",
    "PolynomialPotential",
    "Ridge",
    "Uniform",
    "missing_hyperparameters",
    "model_from_name",
]
