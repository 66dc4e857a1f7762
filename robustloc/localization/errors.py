"""
Positioning Errors.

Configuration, state and readiness errors are raised to the caller.
DegenerateSubsetError is raised by the lateration solvers and is always
handled inside the robust estimators.
"""


class PositioningError(Exception):
    """Base class for all positioning errors."""


class InvalidArgumentError(PositioningError, ValueError):
    """Malformed configuration value (raised at the mutating call)."""


class LockedError(PositioningError):
    """Configuration change or estimation attempted while estimating."""


class NotReadyError(PositioningError):
    """Estimation attempted without enough sources, readings or correspondences."""


class RobustEstimationError(PositioningError):
    """No hypothesis could be scored within the iteration budget."""


class DegenerateSubsetError(PositioningError):
    """Subset geometry does not determine a unique position."""
