"""
Estimator Listener Contract.

Listeners are called synchronously from estimate(). They receive a
read-only EstimatorView of the estimator: configuration and results can be
read, nothing can be changed. Calling back into the estimator itself while
it is estimating raises LockedError.
"""

from enum import Enum
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np

if TYPE_CHECKING:
    from robustloc.localization.position_estimator import BasePositionEstimator
    from robustloc.proto.radio_source import RadioSource
    from robustloc.proto.reading import Fingerprint
    from robustloc.proto.solution import InliersData, Solution


class EstimatorState(Enum):
    """Lifecycle state of an estimator."""

    IDLE = 'idle'
    ESTIMATING = 'estimating'


class EstimatorView:
    """Read-only handle on an estimator, passed to listener callbacks."""

    __slots__ = ('_estimator',)

    def __init__(self, estimator: 'BasePositionEstimator'):
        object.__setattr__(self, '_estimator', estimator)

    def __setattr__(self, name, value):
        raise AttributeError("EstimatorView is read-only")

    @property
    def state(self) -> EstimatorState:
        return self._estimator.state

    @property
    def is_locked(self) -> bool:
        return self._estimator.is_locked

    @property
    def is_ready(self) -> bool:
        return self._estimator.is_ready

    @property
    def dimensions(self) -> Optional[int]:
        return self._estimator.dimensions

    @property
    def sources(self) -> Optional[Sequence['RadioSource']]:
        return self._estimator.sources

    @property
    def fingerprint(self) -> Optional['Fingerprint']:
        return self._estimator.fingerprint

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        return self._estimator.initial_position

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return self._estimator.estimated_position

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return self._estimator.covariance

    @property
    def inliers_data(self) -> Optional['InliersData']:
        return self._estimator.inliers_data

    @property
    def solution(self) -> Optional['Solution']:
        return self._estimator.solution

    @property
    def ranging_solution(self) -> Optional['Solution']:
        return self._estimator.ranging_solution

    @property
    def rssi_solution(self) -> Optional['Solution']:
        return self._estimator.rssi_solution


class EstimatorListener:
    """
    Base listener with no-op callbacks.

    Usage:
        class ProgressPrinter(EstimatorListener):
            def on_estimate_progress_change(self, view, progress):
                print(f"{progress:.0%}")

        estimator.listener = ProgressPrinter()
    """

    def on_estimate_start(self, view: EstimatorView):
        """Called once before correspondences are built."""

    def on_estimate_end(self, view: EstimatorView):
        """Called once after a successful estimation, results already published."""

    def on_estimate_next_iteration(self, view: EstimatorView, iteration: int):
        """Called for every sampled subset of every robust stage."""

    def on_estimate_progress_change(self, view: EstimatorView, progress: float):
        """Called when overall progress in [0, 1] advances."""
