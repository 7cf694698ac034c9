"""
Loss families shared by the online strategies and the oracles.

All functions are written as L(y, x) with x the prediction (or an expert's
forecast) and gradients taken with respect to x:

    square       L = (y - x)^2               dL/dx = 2 (x - y)
    absolute     L = |y - x|                 dL/dx = sign(x - y)
    percentage   L = |y - x| / |y|           dL/dx = sign(x - y) / |y|     (y != 0)
    pinball      L = max(tau e, (tau - 1) e) dL/dx = -tau if y > x else 1 - tau
                 with e = y - x, tau in (0, 1)

Only the square loss is exp-concave (on a bounded domain). The others need the
"gradient trick" (linearising the loss at the aggregate prediction) for the
exponential-weights regret bounds to hold.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

import numpy as np

from .errors import ConfigurationError, RoundError


LossKind = Literal["square", "absolute", "percentage", "pinball"]
LOSS_KINDS = ("square", "absolute", "percentage", "pinball")


@dataclass(frozen=True)
class LossFunction:
    kind: LossKind = "square"
    tau: Optional[float] = None

    def __post_init__(self):
        if self.kind not in LOSS_KINDS:
            raise ConfigurationError(f"Unknown loss type: {self.kind!r}; expected one of {LOSS_KINDS}")
        if self.kind == "pinball":
            if self.tau is None:
                raise ConfigurationError("pinball loss requires a quantile tau")
            if not 0.0 < float(self.tau) < 1.0:
                raise ConfigurationError(f"pinball quantile must satisfy 0 < tau < 1; got {self.tau}")
        elif self.tau is not None:
            raise ConfigurationError(f"tau only applies to the pinball loss, not {self.kind!r}")

    @property
    def exp_concave(self) -> bool:
        return self.kind == "square"

    def check_target(self, y: float) -> None:
        """Raise RoundError when the loss is undefined at this observation."""
        if self.kind == "percentage" and y == 0.0:
            raise RoundError("percentage loss is undefined for a zero observation")

    def loss(self, y: float, x):
        """Loss of prediction(s) x against observation y (x may be a vector)."""
        self.check_target(y)
        x = np.asarray(x, dtype=float)
        e = y - x
        if self.kind == "square":
            out = e * e
        elif self.kind == "absolute":
            out = np.abs(e)
        elif self.kind == "percentage":
            out = np.abs(e) / abs(y)
        else:
            tau = float(self.tau)
            out = np.maximum(tau * e, (tau - 1.0) * e)
        return float(out) if out.ndim == 0 else out

    def gradient(self, y: float, x):
        """Sub-gradient dL/dx at prediction(s) x."""
        self.check_target(y)
        x = np.asarray(x, dtype=float)
        if self.kind == "square":
            out = 2.0 * (x - y)
        elif self.kind == "absolute":
            out = np.sign(x - y)
        elif self.kind == "percentage":
            out = np.sign(x - y) / abs(y)
        else:
            tau = float(self.tau)
            out = np.where(y > x, -tau, 1.0 - tau)
        return float(out) if np.ndim(out) == 0 else out

    def expert_losses(self, y: float, x: np.ndarray, prediction: float, gradient_trick: bool) -> np.ndarray:
        """
        Per-expert losses fed to the weight updates.

        Without the gradient trick this is L(y, x_k). With it, the loss is
        linearised at the aggregate prediction: L'(y, yhat) * x_k (constant
        terms cancel in every update rule that consumes these values).
        """
        x = np.asarray(x, dtype=float)
        if gradient_trick:
            return self.gradient(y, prediction) * x
        return np.asarray(self.loss(y, x), dtype=float)

    def prediction_loss(self, y: float, prediction: float, gradient_trick: bool) -> float:
        """Aggregate counterpart of expert_losses (L'(y, yhat) * yhat under the trick)."""
        if gradient_trick:
            return float(self.gradient(y, prediction) * prediction)
        return float(self.loss(y, prediction))

    def __str__(self) -> str:
        if self.kind == "pinball":
            return f"pinball(tau={self.tau})"
        return self.kind


def loss_from_name(name: str, tau: Optional[float] = None) -> LossFunction:
    """Build a LossFunction from its configuration name ("pinball" needs tau)."""
    key = str(name).strip().lower()
    aliases = {"squared": "square", "mse": "square", "abs": "absolute", "mae": "absolute", "mape": "percentage"}
    return LossFunction(kind=aliases.get(key, key), tau=tau)


__all__ = ["LOSS_KINDS", "LossFunction", "LossKind", "loss_from_name"]
