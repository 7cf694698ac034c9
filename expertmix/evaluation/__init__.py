"""Hindsight oracles, evaluation metrics and offline tuning."""

from .evaluation_helpers import (
    best_forecaster_yhat,
    cumulative_loss,
    hhi_from_weights,
    loss_series,
    loss_table,
    mae,
    mape,
    mse,
    rmse,
    score,
)
from .optuna_tuning import (
    DEFAULT_MODEL_PARAMS,
    SEARCH_RANGES,
    TuneResult,
    tune_all_models_optuna,
    tune_model_optuna,
)
from .oracle import ORACLE_MODELS, OracleEngine, OracleResult, compare_oracles, oracle

__all__ = [
    "DEFAULT_MODEL_PARAMS",
    "ORACLE_MODELS",
    "OracleEngine",
    "OracleResult",
    "SEARCH_RANGES",
    "TuneResult",
    "best_forecaster_yhat",
    "compare_oracles",
    "cumulative_loss",
    "hhi_from_weights",
    "loss_series",
    "loss_table",
    "mae",
    "mape",
    "mse",
    "oracle",
    "rmse",
    "score",
    "tune_all_models_optuna",
    "tune_model_optuna",
]
