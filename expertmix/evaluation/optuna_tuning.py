from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from ..config import MixtureConfig, ModelConfig, model_from_name
from ..ensemblers.mixture import MixtureEngine
from ..losses import LossFunction


TunableModel = str
DataSlice = Tuple[np.ndarray, np.ndarray]  # (y, F)


DEFAULT_MODEL_PARAMS: Dict[TunableModel, Dict[str, float]] = {
    "Uniform": {},
    "PolynomialPotential": {},
    "EWA": {"eta": 0.30},
    "FixedShare": {"eta": 0.30, "alpha": 0.05},
    "BOA": {"eta": 0.30},
    "Ridge": {"lambda_": 1.0},
    "OnlineGradient": {"eta": 0.05},
}

SEARCH_RANGES: Dict[TunableModel, Dict[str, Tuple[float, float]]] = {
    "EWA": {"eta": (1e-3, 10.0)},
    "FixedShare": {"eta": (1e-3, 10.0), "alpha": (1e-4, 0.5)},
    "BOA": {"eta": (1e-3, 10.0)},
    "Ridge": {"lambda_": (1e-4, 1e3)},
    "OnlineGradient": {"eta": (1e-3, 5.0)},
}


@dataclass
class TuneResult:
    model: str
    best_params: Dict[str, float]
    best_value: float


def _score(res) -> float:
    """Mean per-round loss of a batch mixture run (rejected rounds ignored)."""
    return float(np.nanmean(res.loss_t))


def _build_model(model: TunableModel, params: Optional[Dict[str, float]] = None) -> ModelConfig:
    p = dict(DEFAULT_MODEL_PARAMS.get(model, {}))
    if params:
        p.update(params)
    return model_from_name(model, **p)


def _evaluate(model: ModelConfig, slices: List[DataSlice], loss: LossFunction, gradient_trick: Optional[bool]) -> float:
    engine = MixtureEngine(MixtureConfig(model=model, loss=loss, gradient_trick=gradient_trick))
    return float(np.mean([_score(engine.run(F, y)) for y, F in slices]))


def _suggest_params(trial, model: TunableModel) -> Dict[str, float]:
    ranges = SEARCH_RANGES.get(model, {})
    return {name: trial.suggest_float(name, low, high, log=True) for name, (low, high) in ranges.items()}


def tune_model_optuna(
    model: TunableModel,
    data_slices: Iterable[DataSlice],
    n_trials: int = 40,
    seed: int = 0,
    loss: Optional[LossFunction] = None,
    gradient_trick: Optional[bool] = None,
):
    """
    Tune the fixed hyperparameters of one model family over provided slices using Optuna.

    data_slices: iterable of (y, F)
      - y: target series
      - F: (T,K) expert forecasts aligned with y

    Online calibration (leaving a hyperparameter unset) needs no held-out data;
    this is the offline alternative when past slices are available.
    """
    try:
        import optuna
    except ModuleNotFoundError as exc:
        raise ModuleNotFoundError(
            "Optuna is required for tuning. Install with `pip install optuna` "
            "or add it to project dependencies."
        ) from exc

    loss = loss if loss is not None else LossFunction()
    slices = list(data_slices)
    if len(slices) == 0:
        raise ValueError("data_slices is empty; nothing to tune on.")

    if model not in SEARCH_RANGES:
        # No tunable hyperparameters.
        best_value = _evaluate(_build_model(model), slices, loss, gradient_trick)
        dummy = optuna.create_study(direction="minimize")
        return TuneResult(model=model, best_params={}, best_value=best_value), dummy

    sampler = optuna.samplers.TPESampler(seed=seed)
    study = optuna.create_study(direction="minimize", sampler=sampler)

    def objective(trial):
        params = _suggest_params(trial, model)
        return _evaluate(_build_model(model, params), slices, loss, gradient_trick)

    study.optimize(objective, n_trials=int(n_trials), show_progress_bar=False)

    return (
        TuneResult(
            model=model,
            best_params={k: float(v) for k, v in study.best_params.items()},
            best_value=float(study.best_value),
        ),
        study,
    )


def tune_all_models_optuna(
    data_slices: Iterable[DataSlice],
    models: Optional[List[TunableModel]] = None,
    n_trials: int = 40,
    seed: int = 0,
    loss: Optional[LossFunction] = None,
    gradient_trick: Optional[bool] = None,
) -> Dict[TunableModel, TuneResult]:
    """Tune all requested models and return best params + objective values."""
    if models is None:
        models = list(DEFAULT_MODEL_PARAMS.keys())
    slices = list(data_slices)

    results: Dict[TunableModel, TuneResult] = {}
    for i, model in enumerate(models):
        result, _ = tune_model_optuna(
            model=model,
            data_slices=slices,
            n_trials=n_trials,
            seed=seed + 17 * i,
            loss=loss,
            gradient_trick=gradient_trick,
        )
        results[model] = result

    return results
