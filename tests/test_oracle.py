import itertools

import numpy as np
import pandas as pd
import pytest

from expertmix.errors import ConfigurationError
from expertmix.evaluation.oracle import OracleEngine, compare_oracles, oracle
from expertmix.losses import LossFunction


@pytest.fixture
def toy_data():
    t, n = 40, 3
    rng = np.random.default_rng(1)
    y = rng.normal(loc=2.0, size=t)
    f = np.column_stack(
        [
            y + rng.normal(scale=0.5, size=t),
            y + 0.8 + rng.normal(scale=0.2, size=t),
            y - 0.6 + rng.normal(scale=0.3, size=t),
        ]
    )
    return f, y


@pytest.mark.parametrize(
    "loss",
    [LossFunction("square"), LossFunction("absolute"), LossFunction("pinball", tau=0.3)],
)
def test_best_expert_matches_brute_force(toy_data, loss):
    f, y = toy_data
    res = OracleEngine(loss=loss).best_expert(f, y)
    totals = [sum(loss.loss(y[t], f[t, k]) for t in range(len(y))) for k in range(f.shape[1])]
    assert res.expert_index == int(np.argmin(totals))
    assert res.loss == pytest.approx(min(totals))
    assert np.array_equal(res.prediction, f[:, res.expert_index])
    assert res.coefficients.sum() == 1.0


def test_convex_oracle_beats_uniform_for_square_loss(toy_data):
    f, y = toy_data
    res = OracleEngine().best_convex(f, y)
    assert np.all(res.coefficients >= 0.0)
    assert res.coefficients.sum() == pytest.approx(1.0)
    uniform = np.sum((f.mean(axis=1) - y) ** 2)
    assert res.loss <= uniform + 1e-6
    assert res.loss <= res.metrics["best_expert"]["loss"] + 1e-6
    assert res.metrics["uniform"]["loss"] == pytest.approx(uniform)


@pytest.mark.parametrize("loss", [LossFunction("absolute"), LossFunction("pinball", tau=0.7)])
def test_convex_oracle_linear_programs(toy_data, loss):
    f, y = toy_data
    engine = OracleEngine(loss=loss)
    res = engine.best_convex(f, y)
    assert res.coefficients.sum() == pytest.approx(1.0)
    best = engine.best_expert(f, y)
    uniform = sum(loss.loss(y[t], f[t].mean()) for t in range(len(y)))
    assert res.loss <= best.loss + 1e-4
    assert res.loss <= uniform + 1e-4


def test_linear_oracle_is_least_squares(toy_data):
    f, y = toy_data
    res = oracle(f, y, model="linear")
    expected = np.linalg.lstsq(f, y, rcond=None)[0]
    assert np.allclose(res.coefficients, expected)
    convex = oracle(f, y, model="convex")
    assert res.loss <= convex.loss + 1e-6

    ridge = OracleEngine().best_linear(f, y, lambda_=5.0)
    assert np.allclose(ridge.coefficients, np.linalg.solve(f.T @ f + 5.0 * np.eye(3), f.T @ y))

    with pytest.raises(ConfigurationError):
        OracleEngine().best_linear(f, y, lambda_=-1.0)


def test_linear_oracle_absolute_loss(toy_data):
    f, y = toy_data
    res = OracleEngine(loss=LossFunction("absolute")).best_linear(f, y)
    convex = OracleEngine(loss=LossFunction("absolute")).best_convex(f, y)
    assert res.loss <= convex.loss + 1e-4


def test_shifting_with_no_switch_is_best_expert(toy_data):
    f, y = toy_data
    engine = OracleEngine()
    shifting = engine.best_shifting(f, y, max_switches=0)
    expert = engine.best_expert(f, y)
    assert shifting.loss == expert.loss
    assert np.all(shifting.assignment == expert.expert_index)
    assert shifting.n_switches == 0
    assert np.array_equal(shifting.prediction, expert.prediction)


def test_shifting_oracle_tracks_regimes():
    t = 20
    y = np.ones(t)
    correct_first = (np.arange(t) // 2) % 2 == 0
    f = np.column_stack([np.where(correct_first, 1.0, 2.0), np.where(correct_first, 2.0, 1.0)])

    res = OracleEngine().best_shifting(f, y, max_switches=9)
    assert res.loss == 0.0
    assert res.n_switches == 9
    assert np.array_equal(res.assignment, np.where(correct_first, 0, 1))

    curve = res.loss_by_switches
    assert curve.shape == (10,)
    assert curve[0] == 10.0
    assert np.all(np.diff(curve) <= 0)

    limited = OracleEngine().best_shifting(f, y, max_switches=3)
    assert limited.n_switches <= 3
    assert limited.loss == pytest.approx(curve[3])


@pytest.mark.parametrize("loss", [LossFunction("square"), LossFunction("absolute")])
def test_shifting_oracle_matches_exhaustive_search(loss):
    rng = np.random.default_rng(11)
    t, k = 7, 3
    y = rng.normal(size=t)
    f = y[:, None] + rng.normal(size=(t, k))
    ell = np.vstack([loss.loss(y[s], f[s]) for s in range(t)])

    paths = np.array(list(itertools.product(range(k), repeat=t)))
    path_loss = ell[np.arange(t), paths].sum(axis=1)
    path_switches = np.sum(paths[:, 1:] != paths[:, :-1], axis=1)

    engine = OracleEngine(loss=loss)
    for m in range(t):
        res = engine.best_shifting(f, y, max_switches=m)
        assert res.loss == pytest.approx(path_loss[path_switches <= m].min())
        # the backtracked sequence realises the reported loss within budget
        assert res.n_switches <= m
        assert ell[np.arange(t), res.assignment].sum() == pytest.approx(res.loss)


def test_shifting_oracle_single_expert():
    f = np.array([[1.0], [2.0], [3.0]])
    y = np.array([1.0, 1.0, 1.0])
    res = OracleEngine().best_shifting(f, y, max_switches=2)
    assert res.loss == pytest.approx(5.0)
    assert res.n_switches == 0


def test_non_finite_rounds_are_excluded(toy_data):
    f, y = toy_data
    f = f.copy()
    f[5, 0] = np.nan
    res = OracleEngine().best_expert(f, y)
    assert res.excluded == (5,)
    assert np.isnan(res.prediction[5])
    keep = np.arange(len(y)) != 5
    clean = OracleEngine().best_expert(f[keep], y[keep])
    assert res.loss == clean.loss


def test_percentage_loss_zero_targets(toy_data):
    f, y = toy_data
    y = y.copy()
    y[0] = 0.0
    with pytest.raises(ConfigurationError, match="allow_zero_target"):
        OracleEngine(loss=LossFunction("percentage")).best_expert(f, y)
    res = OracleEngine(loss=LossFunction("percentage"), allow_zero_target=True).best_expert(f, y)
    assert res.excluded == (0,)


def test_dispatch_and_unknown_variant(toy_data):
    f, y = toy_data
    assert oracle(f, y, model="expert").model == "expert"
    assert oracle(f, y, model="shifting", max_switches=1).model == "shifting"
    with pytest.raises(ConfigurationError, match="max_switches"):
        oracle(f, y, model="shifting")
    with pytest.raises(ConfigurationError, match="Unknown oracle variant"):
        oracle(f, y, model="dynamic")
    with pytest.raises(ConfigurationError):
        OracleEngine().best_shifting(f, y, max_switches=-1)


def test_summary_tables(toy_data):
    f, y = toy_data
    res = oracle(f, y, model="convex")
    summary = res.summary()
    assert list(summary.columns) == ["Model", "Loss", "RMSE", "MAPE"]
    assert list(summary["Model"]) == ["Oracle (convex)", "Uniform", "Best expert"]
    assert res.mean_loss == pytest.approx(res.loss / len(y))

    table = compare_oracles(f, y, max_switches=(0, 2))
    assert isinstance(table, pd.DataFrame)
    assert list(table["Oracle"]) == ["expert", "convex", "linear", "shifting(0)", "shifting(2)"]
    losses = table.set_index("Oracle")["Loss"]
    assert losses["linear"] <= losses["convex"] + 1e-6
    assert losses["convex"] <= losses["expert"] + 1e-6
    assert losses["shifting(2)"] <= losses["shifting(0)"]
    assert losses["shifting(0)"] == losses["expert"]
