from dataclasses import dataclass, field
from typing import List, Optional, Any


class SimulationError(Exception):
    """Base class for recoverable engine failures."""


class NoLeaderError(SimulationError):
    """A round was started but no honest node holds the leader role."""


class InvalidConfigurationError(SimulationError):
    """A configuration value was rejected or clamped."""


class ReentrantAdvanceError(SimulationError):
    """A manual step was requested while the previous one is still settling."""


class RoleChangeDuringRoundError(SimulationError):
    """Role reassignment was attempted while a round is in progress."""


class RoundInProgressError(SimulationError):
    """A round was started while another one is still running."""


@dataclass
class Outcome:
    """
    Typed result of every engine command. Failures carry the error instead of
    raising it, warnings carry non-fatal problems such as a clamped fault count.
    """
    ok: bool
    error: Optional[SimulationError] = None
    warnings: List[SimulationError] = field(default_factory=list)
    value: Any = None

    @classmethod
    def success(cls, value=None, warnings=None):
        return cls(ok=True, value=value, warnings=list(warnings or []))

    @classmethod
    def failure(cls, error: SimulationError):
        return cls(ok=False, error=error)

    def __bool__(self):
        return self.ok
