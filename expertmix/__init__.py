"""Online aggregation of expert forecasts with hindsight oracles."""

from .config import (
    BOA,
    EWA,
    FixedShare,
    MixtureConfig,
    OnlineGradient,
    PolynomialPotential,
    Ridge,
    Uniform,
    model_from_name,
)
from .ensemblers import MixtureEngine, MixtureResult, MixtureState, MultivariateMixture, mixture
from .errors import ConfigurationError, ExpertMixError, NumericalError, RoundError
from .evaluation import OracleEngine, OracleResult, oracle
from .losses import LossFunction, loss_from_name

__all__ = [
    "BOA",
    "ConfigurationError",
    "EWA",
    "ExpertMixError",
    "FixedShare",
    "LossFunction",
    "MixtureConfig",
    "MixtureEngine",
    "MixtureResult",
    "MixtureState",
    "MultivariateMixture",
    "NumericalError",
    "OnlineGradient",
    "OracleEngine",
    "OracleResult",
    "PolynomialPotential",
    "Ridge",
    "RoundError",
    "Uniform",
    "loss_from_name",
    "mixture",
    "model_from_name",
    "oracle",
]
