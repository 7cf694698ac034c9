import logging

import numpy as np
import pandas as pd
import pytest

from expertmix.config import (
    BOA,
    EWA,
    FixedShare,
    MixtureConfig,
    OnlineGradient,
    PolynomialPotential,
    Ridge,
    Uniform,
)
from expertmix.ensemblers.mixture import MixtureEngine, MultivariateMixture, mixture
from expertmix.ensemblers.strategies import StrategyState, UniformStrategy
from expertmix.errors import ConfigurationError, NumericalError, RoundError
from expertmix.evaluation.evaluation_helpers import cumulative_loss
from expertmix.evaluation.oracle import OracleEngine
from expertmix.losses import LossFunction


@pytest.fixture
def toy_data():
    t, n = 25, 3
    rng = np.random.default_rng(42)
    y = rng.normal(loc=1.0, size=t)
    f = y[:, None] + rng.normal(scale=[0.3, 0.8, 1.5], size=(t, n))
    return f, y


@pytest.mark.parametrize(
    "model",
    [
        Uniform(),
        EWA(eta=0.5),
        EWA(),
        FixedShare(eta=0.5, alpha=0.1),
        FixedShare(),
        PolynomialPotential(),
        Ridge(lambda_=1.0),
        Ridge(),
        OnlineGradient(eta=0.1),
        OnlineGradient(eta=0.5, projection="ball", radius=2.0, decay="constant"),
        OnlineGradient(),
        BOA(eta=0.5),
        BOA(),
    ],
)
def test_batch_equals_sequential_updates(toy_data, model):
    f, y = toy_data
    engine = MixtureEngine(MixtureConfig(model=model))
    res = engine.run(f, y)

    state = engine.start(f.shape[1])
    preds, weights = [], []
    for t in range(f.shape[0]):
        weights.append(np.array(state.weights))
        pred, state = state.step(f[t], y[t])
        preds.append(pred)

    assert np.array_equal(res.yhat, np.array(preds))
    assert np.array_equal(res.weights, np.vstack(weights))
    assert np.array_equal(res.state.weights, state.weights)
    assert res.state.mixture_loss == state.mixture_loss


def test_run_can_resume_from_a_state(toy_data):
    f, y = toy_data
    engine = MixtureEngine(MixtureConfig(model=EWA(eta=0.5)))
    full = engine.run(f, y)
    first = engine.run(f[:10], y[:10])
    rest = first.state.run(f[10:], y[10:])
    assert np.array_equal(np.concatenate([first.yhat, rest.yhat]), full.yhat)
    assert rest.state.t == f.shape[0]


def test_predict_does_not_use_observation(toy_data):
    f, y = toy_data
    state = MixtureEngine(MixtureConfig(model=EWA(eta=0.5))).start(3)
    pred = state.predict(f[0])
    assert pred == pytest.approx(float(np.mean(f[0])))
    pred_step, _ = state.step(f[0], y[0])
    assert pred_step == pred


def test_state_tracks_losses_and_history(toy_data):
    f, y = toy_data
    res = mixture(f, y, MixtureConfig(model=EWA(eta=0.5)))
    state = res.state
    assert state.t == f.shape[0]
    assert np.allclose(state.cumulative_loss, np.sum((f - y[:, None]) ** 2, axis=0))
    assert np.isclose(state.mixture_loss, np.sum((res.yhat - y) ** 2))
    assert np.allclose(state.predictions, res.yhat)
    assert np.allclose(state.weight_history, res.weights)
    assert np.allclose(state.loss_history, res.loss_t)
    assert [r.round for r in state.records] == list(range(1, f.shape[0] + 1))
    assert np.allclose(res.meta["cumulative_expert_loss"], state.cumulative_loss)
    assert np.isclose(cumulative_loss(res.loss_t)[-1], state.mixture_loss)


def test_loss_table_and_weights_frame(toy_data):
    f, y = toy_data
    res = MixtureEngine(MixtureConfig(model=EWA(eta=0.5))).run(f, y, expert_names=["a", "b", "c"])
    table = res.loss_table()
    assert isinstance(table, pd.DataFrame)
    assert list(table.columns) == ["Model", "Cumulative loss", "Mean loss"]
    assert set(table["Model"]) == {"a", "b", "c", "Mixture (EWA)"}
    assert table["Cumulative loss"].is_monotonic_increasing

    frame = res.weights_frame()
    assert list(frame.columns) == ["a", "b", "c"]
    assert frame.shape == f.shape


def test_bad_round_is_rejected_and_state_survives():
    state = MixtureEngine(MixtureConfig(model=EWA(eta=1.0))).start(2)

    with pytest.raises(RoundError, match="length 2") as excinfo:
        state.update([1.0, 2.0, 3.0], 1.0)
    assert excinfo.value.round_index == 0

    with pytest.raises(RoundError, match="non-finite"):
        state.update([1.0, np.nan], 1.0)
    with pytest.raises(RoundError, match="not finite"):
        state.update([1.0, 2.0], np.inf)
    with pytest.raises(RoundError, match="not numeric"):
        state.update(["a", 2.0], 1.0)

    assert state.t == 0
    assert np.allclose(state.weights, [0.5, 0.5])
    nxt = state.update([1.0, 2.0], 1.0)
    assert nxt.t == 1


def test_batch_run_skips_rejected_rounds(toy_data, caplog):
    f, y = toy_data
    f = f.copy()
    y = y.copy()
    f[3, 1] = np.nan
    y[7] = np.nan

    with caplog.at_level(logging.WARNING, logger="expertmix.ensemblers.mixture"):
        res = mixture(f, y, MixtureConfig(model=EWA(eta=0.5)))

    assert set(res.errors) == {3, 7}
    assert "non-finite" in res.errors[3]
    assert np.isnan(res.yhat[3]) and np.isnan(res.yhat[7])
    assert np.all(np.isnan(res.weights[3]))
    assert np.isfinite(res.yhat).sum() == f.shape[0] - 2
    assert res.state.t == f.shape[0] - 2
    assert "round 3" in caplog.text

    # the skipped rows contribute nothing
    keep = np.setdiff1d(np.arange(f.shape[0]), [3, 7])
    clean = mixture(f[keep], y[keep], MixtureConfig(model=EWA(eta=0.5)))
    assert np.array_equal(res.yhat[keep], clean.yhat)


def test_percentage_loss_with_zero_targets(toy_data):
    f, y = toy_data
    y = y.copy()
    y[2] = 0.0
    loss = LossFunction("percentage")

    with pytest.raises(ConfigurationError, match="allow_zero_target"):
        mixture(f, y, MixtureConfig(model=EWA(eta=0.5), loss=loss))

    res = mixture(f, y, MixtureConfig(model=EWA(eta=0.5), loss=loss, allow_zero_target=True))
    assert set(res.errors) == {2}
    assert np.isnan(res.yhat[2])
    assert np.isfinite(res.yhat[3])

    state = MixtureEngine(MixtureConfig(model=EWA(eta=0.5), loss=loss)).start(3)
    with pytest.raises(RoundError, match="zero observation"):
        state.update(f[0], 0.0)


class _FailingStrategy(UniformStrategy):
    def update(self, state: StrategyState, x, y) -> StrategyState:
        if y > 100.0:
            raise NumericalError("boom")
        return state


def test_numerical_error_carries_last_good_state(toy_data):
    f, y = toy_data
    y = y.copy()
    y[4] = 1000.0
    engine = MixtureEngine(MixtureConfig(model=EWA(eta=0.5)))
    engine.__dict__["strategy"] = _FailingStrategy()

    with pytest.raises(NumericalError, match="boom") as excinfo:
        engine.run(f, y)
    assert excinfo.value.round_index == 4
    assert excinfo.value.state.t == 4


def test_fixed_share_tracks_alternating_experts():
    t = 20
    y = np.ones(t)
    correct_first = (np.arange(t) // 2) % 2 == 0
    f = np.column_stack([np.where(correct_first, 1.0, 2.0), np.where(correct_first, 2.0, 1.0)])

    res = mixture(f, y, MixtureConfig(model=FixedShare(eta=1.0, alpha=0.1), gradient_trick=False))
    best = OracleEngine().best_expert(f, y)
    assert best.loss == pytest.approx(10.0)
    assert res.state.mixture_loss < best.loss


def test_input_shape_errors(toy_data):
    f, y = toy_data
    with pytest.raises(ValueError, match="2D"):
        mixture(f[:, 0], y)
    with pytest.raises(ValueError, match="length"):
        mixture(f, y[:-1])
    with pytest.raises(ConfigurationError, match="expert names"):
        MixtureEngine().start(3, expert_names=["a"])


def test_multivariate_mixture():
    rng = np.random.default_rng(9)
    t, d, k = 15, 2, 3
    y = rng.normal(size=(t, d))
    f = y[:, :, None] + rng.normal(scale=0.5, size=(t, d, k))

    mm = MultivariateMixture(MixtureConfig(model=EWA(eta=0.5)))
    res = mm.run(f, y)
    assert res.yhat.shape == (t, d)
    assert res.weights.shape == (t, d, k)
    assert res.errors == {}

    # each dimension is an independent mixture
    single = mixture(f[:, 1, :], y[:, 1], MixtureConfig(model=EWA(eta=0.5)))
    assert np.array_equal(res.yhat[:, 1], single.yhat)

    states = mm.start(d, k)
    for s in range(t):
        pred = mm.predict(states, f[s])
        states = mm.update(states, f[s], y[s])
    assert np.allclose(pred, res.yhat[-1])

    with pytest.raises(RoundError):
        mm.update(states, f[0, :1], y[0])

    with pytest.raises(RoundError, match="shape"):
        mm.predict(states, f[0, :1])
    with pytest.raises(RoundError, match="shape"):
        mm.predict(states, f[0, :, 0])
