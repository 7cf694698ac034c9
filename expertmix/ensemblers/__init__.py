"""Online weight-update strategies, calibration and the mixture engine."""

from .calibration import Calibrator, CalibratorState, candidate_grid
from .mixture import (
    MixtureEngine,
    MixtureResult,
    MixtureState,
    MultivariateMixture,
    MultivariateResult,
    RoundRecord,
    build_strategy,
    mixture,
)
from .strategies import (
    BOAStrategy,
    EWAStrategy,
    FixedShareStrategy,
    OnlineGradientStrategy,
    PolynomialPotentialStrategy,
    RidgeStrategy,
    StrategyState,
    UniformStrategy,
    WeightUpdateStrategy,
    project_to_ball,
    project_to_simplex,
    strategy_for,
)

__all__ = [
    "BOAStrategy",
    "Calibrator",
    "CalibratorState",
    "EWAStrategy",
    "FixedShareStrategy",
    "MixtureEngine",
    "MixtureResult",
    "MixtureState",
    "MultivariateMixture",
    "MultivariateResult",
    "OnlineGradientStrategy",
    "PolynomialPotentialStrategy",
    "RidgeStrategy",
    "RoundRecord",
    "StrategyState",
    "UniformStrategy",
    "WeightUpdateStrategy",
    "build_strategy",
    "candidate_grid",
    "mixture",
    "project_to_ball",
    "project_to_simplex",
    "strategy_for",
]
