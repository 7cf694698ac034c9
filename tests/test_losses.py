import numpy as np
import pytest

from expertmix.errors import ConfigurationError, RoundError
from expertmix.losses import LossFunction, loss_from_name


def test_loss_values_for_each_kind():
    x = np.array([0.0, 2.0, 5.0])
    y = 2.0

    assert np.allclose(LossFunction("square").loss(y, x), [4.0, 0.0, 9.0])
    assert np.allclose(LossFunction("absolute").loss(y, x), [2.0, 0.0, 3.0])
    assert np.allclose(LossFunction("percentage").loss(y, x), [1.0, 0.0, 1.5])

    # e = y - x = [2, 0, -3]
    pin = LossFunction("pinball", tau=0.9).loss(y, x)
    assert np.allclose(pin, [0.9 * 2.0, 0.0, 0.1 * 3.0])


def test_scalar_inputs_return_floats():
    loss = LossFunction("square")
    assert isinstance(loss.loss(1.0, 3.0), float)
    assert isinstance(loss.gradient(1.0, 3.0), float)
    assert loss.gradient(1.0, 3.0) == pytest.approx(4.0)


def test_gradients():
    x = np.array([0.0, 4.0])
    assert np.allclose(LossFunction("absolute").gradient(2.0, x), [-1.0, 1.0])
    assert np.allclose(LossFunction("percentage").gradient(-2.0, x), [0.5, 0.5])
    assert np.allclose(LossFunction("pinball", tau=0.25).gradient(2.0, x), [-0.25, 0.75])


def test_gradient_trick_linearises_at_prediction():
    loss = LossFunction("square")
    x = np.array([1.0, 3.0])
    # L'(y, yhat) = 2 * (2 - 0) = 4
    assert np.allclose(loss.expert_losses(0.0, x, 2.0, gradient_trick=True), [4.0, 12.0])
    assert np.allclose(loss.expert_losses(0.0, x, 2.0, gradient_trick=False), [1.0, 9.0])
    assert loss.prediction_loss(0.0, 2.0, gradient_trick=True) == pytest.approx(8.0)
    assert loss.prediction_loss(0.0, 2.0, gradient_trick=False) == pytest.approx(4.0)


def test_percentage_loss_rejects_zero_observation():
    loss = LossFunction("percentage")
    with pytest.raises(RoundError, match="zero observation"):
        loss.loss(0.0, np.array([1.0, 2.0]))
    with pytest.raises(ValueError):
        loss.gradient(0.0, 1.0)


def test_invalid_loss_configuration():
    with pytest.raises(ConfigurationError, match="Unknown loss type"):
        LossFunction("huber")
    with pytest.raises(ConfigurationError, match="requires a quantile"):
        LossFunction("pinball")
    with pytest.raises(ConfigurationError, match="0 < tau < 1"):
        LossFunction("pinball", tau=1.0)
    with pytest.raises(ConfigurationError, match="only applies"):
        LossFunction("square", tau=0.5)


def test_only_square_is_exp_concave():
    assert LossFunction("square").exp_concave
    assert not LossFunction("absolute").exp_concave
    assert not LossFunction("pinball", tau=0.5).exp_concave


def test_loss_from_name_aliases():
    assert loss_from_name("MSE") == LossFunction("square")
    assert loss_from_name("mae") == LossFunction("absolute")
    assert loss_from_name("mape") == LossFunction("percentage")
    assert loss_from_name("pinball", tau=0.1) == LossFunction("pinball", tau=0.1)
    assert str(loss_from_name("pinball", tau=0.1)) == "pinball(tau=0.1)"
    with pytest.raises(ConfigurationError):
        loss_from_name("linex")
