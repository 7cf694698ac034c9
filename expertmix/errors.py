"""Error taxonomy for the aggregation engine.

ConfigurationError  fatal, raised while building a configuration or engine.
RoundError          local to one round; the round is rejected and the state
                    it was applied to stays valid.
NumericalError      a solver or linear-algebra failure (singular system,
                    infeasible/unsolved QP or LP), distinct from bad input.
"""

from __future__ import annotations

from typing import Optional


class ExpertMixError(Exception):
    """Base class for every error raised by expertmix."""


class ConfigurationError(ExpertMixError, ValueError):
    pass


class RoundError(ExpertMixError, ValueError):
    """Malformed or non-finite input for a single round."""

    def __init__(self, message: str, round_index: Optional[int] = None):
        self.round_index = round_index
        self.reason = message
        if round_index is not None:
            message = f"round {round_index}: {message}"
        super().__init__(message)

    def at(self, round_index: int) -> "RoundError":
        """Same error, tagged with the position of the offending round."""
        return RoundError(self.reason, round_index=round_index)


class NumericalError(ExpertMixError, ArithmeticError):
    pass


__all__ = [
    "ConfigurationError",
    "ExpertMixError",
    "NumericalError",
    "RoundError",
]
