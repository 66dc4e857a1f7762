"""
Robust Position Estimators.

BasePositionEstimator holds what every estimator shares: sources,
fingerprint, quality scores, initial position, listener, the
IDLE/ESTIMATING state guard and atomic publication of results.

RobustPositionEstimator runs a single robust stage, over either ranging or
RSSI correspondences. The sequential estimator combining both lives in
sequential_estimator.py.

Configuration is read and written through properties. Every setter raises
LockedError while an estimation is in progress (e.g., when called from a
listener callback), leaving the previous value in place.
"""

from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Sequence, Tuple
import logging

import numpy as np

from robustloc.proto.radio_source import RadioSource
from robustloc.proto.reading import Fingerprint
from robustloc.proto.correspondence import Correspondence, CorrespondenceKind
from robustloc.proto.solution import InliersData, Solution
from robustloc.localization.errors import (
    InvalidArgumentError,
    LockedError,
    NotReadyError,
    RobustEstimationError,
)
from robustloc.localization.correspondence_builder import (
    CorrespondenceBuilder,
    CorrespondenceConfig,
    DEFAULT_FALLBACK_DISTANCE_STD_M,
    check_quality_scores,
    count_usable_readings,
)
from robustloc.localization.robust_estimator import (
    DEFAULT_CONFIDENCE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_METHOD,
    DEFAULT_PROGRESS_DELTA,
    RobustEstimatorConfig,
    RobustLaterationEstimator,
    RobustMethod,
)
from robustloc.localization.listener import EstimatorListener, EstimatorState, EstimatorView
from robustloc.metrics import get_metrics

logger = logging.getLogger(__name__)


@dataclass
class StageConfig:
    """
    Configuration of one robust stage (ranging or RSSI).

    Attributes:
        method: Sample-consensus method
        threshold: Method threshold in std units (None = method default)
        confidence: Sampling confidence
        max_iterations: Maximum sampled subsets
        preliminary_subset_size: Correspondences per subset (None = d + 1)
        use_linear_solver: Closed-form subset solutions
        use_homogeneous_solver: Homogeneous closed form
        refine_preliminary_solutions: Refine stage solution over its inliers
        fallback_distance_std_m: Std for readings without one (m)
        use_source_position_covariance: Add source position uncertainty
        evenly_distribute_readings: Interleave sources for progressive sampling
    """

    method: RobustMethod = DEFAULT_METHOD
    threshold: Optional[float] = None
    confidence: float = DEFAULT_CONFIDENCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    preliminary_subset_size: Optional[int] = None
    use_linear_solver: bool = True
    use_homogeneous_solver: bool = False
    refine_preliminary_solutions: bool = True
    fallback_distance_std_m: float = DEFAULT_FALLBACK_DISTANCE_STD_M
    use_source_position_covariance: bool = True
    evenly_distribute_readings: bool = True

    def __post_init__(self):
        """Validate by building the derived configurations."""
        self.method = self.robust_config().method
        self.correspondence_config()

    def robust_config(
        self,
        keep_covariance: bool = True,
        seed: Optional[int] = None,
    ) -> RobustEstimatorConfig:
        return RobustEstimatorConfig(
            method=self.method,
            threshold=self.threshold,
            confidence=self.confidence,
            max_iterations=self.max_iterations,
            subset_size=self.preliminary_subset_size,
            use_linear_solver=self.use_linear_solver,
            use_homogeneous_solver=self.use_homogeneous_solver,
            refine_preliminary_solutions=self.refine_preliminary_solutions,
            keep_covariance=keep_covariance,
            progress_delta=0.0,
            seed=seed,
        )

    def correspondence_config(self) -> CorrespondenceConfig:
        return CorrespondenceConfig(
            fallback_distance_std_m=self.fallback_distance_std_m,
            use_source_position_covariance=self.use_source_position_covariance,
            evenly_distribute_readings=self.evenly_distribute_readings,
        )


def config_property(name: str, doc: str) -> property:
    """Property reading/writing a field of self._config, guarded by the lock."""

    def getter(self):
        return getattr(self._config, name)

    def setter(self, value):
        self._check_not_locked()
        # replace() re-runs __post_init__ validation
        self._config = replace(self._config, **{name: value})

    return property(getter, setter, doc=doc)


class StageSettings:
    """
    Lock-guarded view on the StageConfig of an estimator.

    Usage:
        estimator.ranging.method = RobustMethod.RANSAC
        estimator.rssi.threshold = 2.0
    """

    def __init__(self, owner: 'BasePositionEstimator', attribute: str):
        self._owner = owner
        self._attribute = attribute

    @property
    def _config(self) -> StageConfig:
        return getattr(self._owner.config, self._attribute)

    @_config.setter
    def _config(self, stage: StageConfig):
        self._owner._replace_stage(self._attribute, stage)

    def _check_not_locked(self):
        self._owner._check_not_locked()

    def to_config(self) -> StageConfig:
        return self._config

    method = config_property('method', "Sample-consensus method.")
    threshold = config_property('threshold', "Method threshold (std units), None for default.")
    confidence = config_property('confidence', "Sampling confidence in (0, 1).")
    max_iterations = config_property('max_iterations', "Maximum sampled subsets.")
    use_linear_solver = config_property('use_linear_solver', "Closed-form subset solutions.")
    use_homogeneous_solver = config_property(
        'use_homogeneous_solver', "Homogeneous closed-form solver.")
    refine_preliminary_solutions = config_property(
        'refine_preliminary_solutions', "Refine stage solution over its inliers.")
    fallback_distance_std_m = config_property(
        'fallback_distance_std_m', "Std used for readings without one (m).")
    use_source_position_covariance = config_property(
        'use_source_position_covariance', "Add source position uncertainty to distances.")
    evenly_distribute_readings = config_property(
        'evenly_distribute_readings', "Interleave sources for progressive sampling.")

    @property
    def preliminary_subset_size(self) -> Optional[int]:
        """Correspondences per subset (None = dimensions + 1)."""
        return self._config.preliminary_subset_size

    @preliminary_subset_size.setter
    def preliminary_subset_size(self, value: Optional[int]):
        self._check_not_locked()
        self._owner._check_subset_size(value, self._owner.dimensions)
        self._config = replace(self._config, preliminary_subset_size=value)


@dataclass
class EstimationResults:
    """Results of one successful estimation, published as a unit."""

    solution: Solution
    ranging_solution: Optional[Solution] = None
    rssi_solution: Optional[Solution] = None


class BasePositionEstimator:
    """
    Shared state, lock guard and listener plumbing of position estimators.

    Subclasses provide self._config (with keep_covariance, progress_delta
    and seed fields), _stage_configs() and _estimate().
    """

    def __init__(
        self,
        sources: Optional[Sequence[RadioSource]] = None,
        fingerprint: Optional[Fingerprint] = None,
        source_quality_scores: Optional[Sequence[float]] = None,
        reading_quality_scores: Optional[Sequence[float]] = None,
        initial_position: Optional[Sequence[float]] = None,
        listener: Optional[EstimatorListener] = None,
    ):
        self._state = EstimatorState.IDLE
        self._view = EstimatorView(self)
        self._sources: Optional[Tuple[RadioSource, ...]] = None
        self._fingerprint: Optional[Fingerprint] = None
        self._source_quality_scores: Optional[np.ndarray] = None
        self._reading_quality_scores: Optional[np.ndarray] = None
        self._initial_position: Optional[np.ndarray] = None
        self._listener = listener
        self._results: Optional[EstimationResults] = None
        self._last_progress = 0.0
        self._iteration = 0
        self.metrics = get_metrics()

        if sources is not None:
            self.sources = sources
        if fingerprint is not None:
            self.fingerprint = fingerprint
        if source_quality_scores is not None:
            self.source_quality_scores = source_quality_scores
        if reading_quality_scores is not None:
            self.reading_quality_scores = reading_quality_scores
        if initial_position is not None:
            self.initial_position = initial_position

    # ------------------------------------------------------------------
    # State

    @property
    def state(self) -> EstimatorState:
        return self._state

    @property
    def is_locked(self) -> bool:
        """True while estimate() is running."""
        return self._state == EstimatorState.ESTIMATING

    def _check_not_locked(self):
        if self.is_locked:
            raise LockedError("Estimator is locked while estimating")

    @property
    def view(self) -> EstimatorView:
        return self._view

    # ------------------------------------------------------------------
    # Configuration

    @property
    def config(self):
        return self._config

    @config.setter
    def config(self, config):
        self._check_not_locked()
        for stage in self._stage_configs(config):
            self._check_subset_size(stage.preliminary_subset_size, self.dimensions)
        self._config = config

    def _replace_stage(self, attribute: str, stage: StageConfig):
        self._check_not_locked()
        self._config = replace(self._config, **{attribute: stage})

    def _stage_configs(self, config) -> List[StageConfig]:
        raise NotImplementedError

    keep_covariance = config_property('keep_covariance', "Keep position covariance.")
    progress_delta = config_property('progress_delta', "Minimum reported progress change.")
    seed = config_property('seed', "Seed for subset sampling (None for random).")

    @staticmethod
    def _check_subset_size(subset_size: Optional[int], dimensions: Optional[int]):
        if subset_size is None:
            return
        minimum = 3 if dimensions is None else dimensions + 1
        if subset_size < minimum:
            raise InvalidArgumentError(
                f"Subset size must be at least {minimum}: {subset_size}")

    @property
    def sources(self) -> Optional[Tuple[RadioSource, ...]]:
        return self._sources

    @sources.setter
    def sources(self, sources: Sequence[RadioSource]):
        self._check_not_locked()
        if sources is None:
            raise InvalidArgumentError("Sources cannot be None")
        sources = tuple(sources)
        if not sources:
            raise InvalidArgumentError("Sources cannot be empty")
        for source in sources:
            if not isinstance(source, RadioSource):
                raise InvalidArgumentError(f"Not a radio source: {source!r}")
        dims = {source.dimensions for source in sources}
        if len(dims) != 1:
            raise InvalidArgumentError(f"Sources mix dimensions: {sorted(dims)}")
        dimensions = dims.pop()
        for stage in self._stage_configs(self._config):
            self._check_subset_size(stage.preliminary_subset_size, dimensions)
        if self._source_quality_scores is not None:
            check_quality_scores(self._source_quality_scores, len(sources), 'source_quality_scores')
        if self._initial_position is not None and self._initial_position.size != dimensions:
            raise InvalidArgumentError("Sources do not match initial position dimensions")
        self._sources = sources

    @property
    def dimensions(self) -> Optional[int]:
        """Dimensions of the configured sources, None if no sources."""
        if not self._sources:
            return None
        return self._sources[0].dimensions

    @property
    def fingerprint(self) -> Optional[Fingerprint]:
        return self._fingerprint

    @fingerprint.setter
    def fingerprint(self, fingerprint: Fingerprint):
        self._check_not_locked()
        if fingerprint is None:
            raise InvalidArgumentError("Fingerprint cannot be None")
        if not isinstance(fingerprint, Fingerprint):
            fingerprint = Fingerprint(fingerprint)
        if self._reading_quality_scores is not None:
            check_quality_scores(
                self._reading_quality_scores, len(fingerprint), 'reading_quality_scores')
        self._fingerprint = fingerprint

    @property
    def source_quality_scores(self) -> Optional[np.ndarray]:
        return self._source_quality_scores

    @source_quality_scores.setter
    def source_quality_scores(self, scores: Optional[Sequence[float]]):
        self._check_not_locked()
        if scores is not None and self._sources is not None:
            scores = check_quality_scores(scores, len(self._sources), 'source_quality_scores')
        elif scores is not None:
            scores = np.asarray(scores, dtype=float).reshape(-1)
        self._source_quality_scores = scores

    @property
    def reading_quality_scores(self) -> Optional[np.ndarray]:
        return self._reading_quality_scores

    @reading_quality_scores.setter
    def reading_quality_scores(self, scores: Optional[Sequence[float]]):
        self._check_not_locked()
        if scores is not None and self._fingerprint is not None:
            scores = check_quality_scores(scores, len(self._fingerprint), 'reading_quality_scores')
        elif scores is not None:
            scores = np.asarray(scores, dtype=float).reshape(-1)
        self._reading_quality_scores = scores

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        return None if self._initial_position is None else self._initial_position.copy()

    @initial_position.setter
    def initial_position(self, position: Optional[Sequence[float]]):
        self._check_not_locked()
        if position is None:
            self._initial_position = None
            return
        array = np.array(position, dtype=float).reshape(-1)
        if array.size not in (2, 3) or not np.all(np.isfinite(array)):
            raise InvalidArgumentError(f"Invalid initial position: {position}")
        if self.dimensions is not None and array.size != self.dimensions:
            raise InvalidArgumentError(
                f"Initial position must have {self.dimensions} coordinates: {position}")
        self._initial_position = array

    @property
    def listener(self) -> Optional[EstimatorListener]:
        return self._listener

    @listener.setter
    def listener(self, listener: Optional[EstimatorListener]):
        self._check_not_locked()
        self._listener = listener

    # ------------------------------------------------------------------
    # Readiness

    @property
    def min_required_correspondences(self) -> Optional[int]:
        if self.dimensions is None:
            return None
        return self.dimensions + 1

    def _quality_scores_match(self) -> bool:
        if self._source_quality_scores is not None and \
                self._source_quality_scores.size != len(self._sources):
            return False
        if self._reading_quality_scores is not None and \
                self._reading_quality_scores.size != len(self._fingerprint):
            return False
        return True

    def _usable_correspondences(self, kind: CorrespondenceKind) -> int:
        return count_usable_readings(self._sources, self._fingerprint, kind)

    def _has_enough_correspondences(self) -> bool:
        raise NotImplementedError

    @property
    def is_ready(self) -> bool:
        """True when estimate() has enough data to run."""
        if self._sources is None or self._fingerprint is None:
            return False
        if len(self._sources) < self.min_required_correspondences:
            return False
        if not self._quality_scores_match():
            return False
        return self._has_enough_correspondences()

    # ------------------------------------------------------------------
    # Results

    @property
    def solution(self) -> Optional[Solution]:
        return None if self._results is None else self._results.solution

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        if self._results is None:
            return None
        return self._results.solution.position.copy()

    @property
    def covariance(self) -> Optional[np.ndarray]:
        if self._results is None or self._results.solution.covariance is None:
            return None
        return self._results.solution.covariance.copy()

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return None if self._results is None else self._results.solution.inliers_data

    @property
    def ranging_solution(self) -> Optional[Solution]:
        """Solution of the ranging stage of the last estimation, if it ran."""
        return None if self._results is None else self._results.ranging_solution

    @property
    def rssi_solution(self) -> Optional[Solution]:
        """Solution of the RSSI stage of the last estimation, if it ran."""
        return None if self._results is None else self._results.rssi_solution

    # ------------------------------------------------------------------
    # Estimation

    def estimate(self) -> np.ndarray:
        """
        Estimate position.

        Returns:
            Estimated position (d,)

        Raises:
            LockedError: If called while estimating
            NotReadyError: If not enough data is configured
            RobustEstimationError: If no stage reaches a consensus
        """
        self._check_not_locked()
        if not self.is_ready:
            raise NotReadyError("Estimator is not ready")

        self.metrics.increment('estimate_attempts')
        self._state = EstimatorState.ESTIMATING
        try:
            self._last_progress = 0.0
            self._iteration = 0
            if self._listener is not None:
                self._listener.on_estimate_start(self._view)

            results = self._estimate(np.random.default_rng(self._config.seed))
            self._notify_progress(1.0)

            # Single assignment, a failed call leaves prior results untouched
            self._results = results
            self.metrics.increment('estimate_successes')
            logger.info(
                f"Estimated position {np.round(results.solution.position, 4).tolist()} "
                f"with {results.solution.num_inliers} inliers"
            )

            if self._listener is not None:
                self._listener.on_estimate_end(self._view)
        finally:
            self._state = EstimatorState.IDLE

        return results.solution.position.copy()

    def _estimate(self, rng: np.random.Generator) -> EstimationResults:
        raise NotImplementedError

    def _notify_iteration(self):
        if self._listener is not None:
            self._listener.on_estimate_next_iteration(self._view, self._iteration)
        self._iteration += 1

    def _notify_progress(self, progress: float):
        progress = min(1.0, max(0.0, progress))
        if progress <= self._last_progress:
            return
        if progress < 1.0 and progress - self._last_progress < self._config.progress_delta:
            return
        self._last_progress = progress
        if self._listener is not None:
            self._listener.on_estimate_progress_change(self._view, progress)

    def _build_stage(
        self,
        stage: StageConfig,
        kind: CorrespondenceKind,
    ) -> Tuple[List[Correspondence], np.ndarray]:
        """
        Build correspondences of one kind and their sampling priorities.
        """
        builder = CorrespondenceBuilder(stage.correspondence_config())
        if kind == CorrespondenceKind.RANGING:
            correspondences = builder.build_ranging(
                self._sources, self._fingerprint,
                self._source_quality_scores, self._reading_quality_scores)
        else:
            correspondences = builder.build_rssi(
                self._sources, self._fingerprint,
                self._source_quality_scores, self._reading_quality_scores)
        scores = builder.sampling_scores(
            correspondences, self._source_quality_scores, self._reading_quality_scores)
        return correspondences, scores

    def _run_stage(
        self,
        stage: StageConfig,
        correspondences: List[Correspondence],
        sampling_scores: np.ndarray,
        rng: np.random.Generator,
        progress_start: float,
        progress_span: float,
    ) -> Solution:
        """
        Run one robust stage, mapping its progress to a slice of [0, 1].

        Raises:
            RobustEstimationError: If the stage reaches no consensus
        """
        engine = RobustLaterationEstimator(
            stage.robust_config(keep_covariance=self._config.keep_covariance), rng=rng)
        return engine.run(
            correspondences,
            quality_scores=sampling_scores,
            initial_position=self._initial_position,
            on_iteration=lambda _: self._notify_iteration(),
            on_progress=lambda p: self._notify_progress(progress_start + p * progress_span),
        )


@dataclass
class RobustPositionEstimatorConfig:
    """
    Configuration for single-stage robust estimation.

    Attributes:
        stage: Robust stage settings
        keep_covariance: Keep position covariance
        progress_delta: Minimum progress change reported to listeners
        seed: Seed for subset sampling (random if None)
    """

    stage: StageConfig = field(default_factory=StageConfig)
    keep_covariance: bool = True
    progress_delta: float = DEFAULT_PROGRESS_DELTA
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        if not isinstance(self.stage, StageConfig):
            raise InvalidArgumentError(f"stage must be a StageConfig: {self.stage!r}")
        if not 0 <= self.progress_delta <= 1:
            raise InvalidArgumentError(f"Progress delta must be in [0, 1]: {self.progress_delta}")


class RobustPositionEstimator(BasePositionEstimator):
    """
    Robust position from ranging readings only, or RSSI readings only.

    Usage:
        estimator = RobustPositionEstimator(
            kind=CorrespondenceKind.RANGING,
            sources=sources,
            fingerprint=fingerprint,
        )
        estimator.stage.method = RobustMethod.RANSAC
        position = estimator.estimate()
    """

    def __init__(
        self,
        kind: CorrespondenceKind = CorrespondenceKind.RANGING,
        sources: Optional[Sequence[RadioSource]] = None,
        fingerprint: Optional[Fingerprint] = None,
        config: Optional[RobustPositionEstimatorConfig] = None,
        listener: Optional[EstimatorListener] = None,
        source_quality_scores: Optional[Sequence[float]] = None,
        reading_quality_scores: Optional[Sequence[float]] = None,
        initial_position: Optional[Sequence[float]] = None,
    ):
        """
        Initialize estimator.

        Args:
            kind: Which distances to use (ranging or RSSI)
            sources: Located radio sources
            fingerprint: Readings at the unknown position
            config: Estimator configuration (uses defaults if None)
            listener: Progress listener
            source_quality_scores: Optional score per source
            reading_quality_scores: Optional score per reading
            initial_position: Optional starting position
        """
        self._kind = CorrespondenceKind(kind)
        self._config = config or RobustPositionEstimatorConfig()
        self.stage = StageSettings(self, 'stage')
        super().__init__(
            sources=sources,
            fingerprint=fingerprint,
            source_quality_scores=source_quality_scores,
            reading_quality_scores=reading_quality_scores,
            initial_position=initial_position,
            listener=listener,
        )

    @property
    def kind(self) -> CorrespondenceKind:
        return self._kind

    def _stage_configs(self, config: RobustPositionEstimatorConfig) -> List[StageConfig]:
        return [config.stage]

    def _has_enough_correspondences(self) -> bool:
        minimum = self._config.stage.preliminary_subset_size or self.min_required_correspondences
        return self._usable_correspondences(self._kind) >= minimum

    def _estimate(self, rng: np.random.Generator) -> EstimationResults:
        stage = self._config.stage
        correspondences, scores = self._build_stage(stage, self._kind)
        solution = self._run_stage(stage, correspondences, scores, rng, 0.0, 1.0)
        if self._kind == CorrespondenceKind.RANGING:
            return EstimationResults(solution=solution, ranging_solution=solution)
        return EstimationResults(solution=solution, rssi_solution=solution)
