"""
Sequential Robust Ranging + RSSI Position Estimator.

Runs two independent robust stages, one over ranging correspondences and
one over RSSI-derived correspondences, then refines a joint position over
the union of both stages' inliers.

Pipeline:
1. Build ranging and RSSI correspondences
2. Robust ranging stage (progress 0 -> 0.5)
3. Robust RSSI stage (progress 0.5 -> 1)
4. Seed: initial position, else the stage solution with more inliers
5. Weighted Gauss-Newton over all inliers, with covariance

A stage without enough correspondences is skipped. If one stage fails the
other stage's result is used. If both fail, RobustEstimationError.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence
import logging

import numpy as np

from robustloc.proto.radio_source import RadioSource
from robustloc.proto.reading import Fingerprint
from robustloc.proto.correspondence import CorrespondenceKind
from robustloc.proto.solution import InliersData, Solution
from robustloc.localization.errors import (
    DegenerateSubsetError,
    InvalidArgumentError,
    RobustEstimationError,
)
from robustloc.localization.lateration_solver import correspondence_arrays
from robustloc.localization.listener import EstimatorListener
from robustloc.localization.position_estimator import (
    BasePositionEstimator,
    EstimationResults,
    StageConfig,
    StageSettings,
    config_property,
)
from robustloc.localization.refiner import RefinerConfig, SolutionRefiner
from robustloc.localization.robust_estimator import DEFAULT_PROGRESS_DELTA, standardized_residuals

logger = logging.getLogger(__name__)

# Share of overall progress taken by each stage
RANGING_PROGRESS_SPAN = (0.0, 0.5)
RSSI_PROGRESS_SPAN = (0.5, 0.5)


@dataclass
class SequentialEstimatorConfig:
    """
    Configuration for sequential ranging + RSSI estimation.

    Attributes:
        ranging: Ranging stage settings
        rssi: RSSI stage settings
        refine_result: Refine the joint position over all inliers
        keep_covariance: Keep position covariance
        progress_delta: Minimum progress change reported to listeners
        seed: Seed for subset sampling (random if None)
    """

    ranging: StageConfig = field(default_factory=StageConfig)
    rssi: StageConfig = field(default_factory=StageConfig)
    refine_result: bool = True
    keep_covariance: bool = True
    progress_delta: float = DEFAULT_PROGRESS_DELTA
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        for name in ('ranging', 'rssi'):
            if not isinstance(getattr(self, name), StageConfig):
                raise InvalidArgumentError(f"{name} must be a StageConfig")
        if not 0 <= self.progress_delta <= 1:
            raise InvalidArgumentError(f"Progress delta must be in [0, 1]: {self.progress_delta}")


class SequentialRobustPositionEstimator(BasePositionEstimator):
    """
    Robust position from mixed ranging and RSSI readings.

    Usage:
        estimator = SequentialRobustPositionEstimator(
            sources=sources,
            fingerprint=fingerprint,
            listener=listener,
        )
        estimator.ranging.method = RobustMethod.PROSAC
        estimator.rssi.method = RobustMethod.PROMEDS

        if estimator.is_ready:
            position = estimator.estimate()
            covariance = estimator.covariance
    """

    def __init__(
        self,
        sources: Optional[Sequence[RadioSource]] = None,
        fingerprint: Optional[Fingerprint] = None,
        config: Optional[SequentialEstimatorConfig] = None,
        listener: Optional[EstimatorListener] = None,
        source_quality_scores: Optional[Sequence[float]] = None,
        reading_quality_scores: Optional[Sequence[float]] = None,
        initial_position: Optional[Sequence[float]] = None,
    ):
        """
        Initialize estimator.

        Args:
            sources: Located radio sources
            fingerprint: Readings at the unknown position
            config: Estimator configuration (uses defaults if None)
            listener: Progress listener
            source_quality_scores: Optional score per source
            reading_quality_scores: Optional score per reading
            initial_position: Optional starting position, also seeds the
                final refinement
        """
        self._config = config or SequentialEstimatorConfig()
        self.ranging = StageSettings(self, 'ranging')
        self.rssi = StageSettings(self, 'rssi')
        super().__init__(
            sources=sources,
            fingerprint=fingerprint,
            source_quality_scores=source_quality_scores,
            reading_quality_scores=reading_quality_scores,
            initial_position=initial_position,
            listener=listener,
        )

    def _stage_configs(self, config: SequentialEstimatorConfig) -> List[StageConfig]:
        return [config.ranging, config.rssi]

    refine_result = config_property(
        'refine_result', "Refine the joint position over the inliers of both stages.")

    def _stage_ready(self, stage: StageConfig, kind: CorrespondenceKind) -> bool:
        minimum = stage.preliminary_subset_size or self.min_required_correspondences
        return self._usable_correspondences(kind) >= minimum

    def _has_enough_correspondences(self) -> bool:
        return (
            self._stage_ready(self._config.ranging, CorrespondenceKind.RANGING)
            or self._stage_ready(self._config.rssi, CorrespondenceKind.RSSI)
        )

    def _estimate(self, rng: np.random.Generator) -> EstimationResults:
        config = self._config
        stage_solutions = {}
        errors = []

        stages = (
            (CorrespondenceKind.RANGING, config.ranging, RANGING_PROGRESS_SPAN),
            (CorrespondenceKind.RSSI, config.rssi, RSSI_PROGRESS_SPAN),
        )
        for kind, stage, (start, span) in stages:
            correspondences, scores = self._build_stage(stage, kind)
            minimum = stage.preliminary_subset_size or self.min_required_correspondences
            if len(correspondences) < minimum:
                logger.debug(
                    f"Skipping {kind.name} stage: {len(correspondences)} correspondences")
                continue
            try:
                stage_solutions[kind] = self._run_stage(
                    stage, correspondences, scores, rng, start, span)
            except RobustEstimationError as e:
                errors.append(f"{kind.name}: {e}")
                self.metrics.increment_drop('stage_failed')
                logger.warning(f"{kind.name} stage failed: {e}")

        if not stage_solutions:
            raise RobustEstimationError(
                "No stage reached a consensus" + (f" ({'; '.join(errors)})" if errors else ""))

        ranging_solution = stage_solutions.get(CorrespondenceKind.RANGING)
        rssi_solution = stage_solutions.get(CorrespondenceKind.RSSI)
        best = self._most_reliable(ranging_solution, rssi_solution)

        if config.refine_result:
            solution = self._combine(ranging_solution, rssi_solution, best)
        else:
            solution = best

        return EstimationResults(
            solution=solution,
            ranging_solution=ranging_solution,
            rssi_solution=rssi_solution,
        )

    @staticmethod
    def _most_reliable(
        ranging_solution: Optional[Solution],
        rssi_solution: Optional[Solution],
    ) -> Solution:
        if ranging_solution is None:
            return rssi_solution
        if rssi_solution is None:
            return ranging_solution
        if rssi_solution.num_inliers > ranging_solution.num_inliers:
            return rssi_solution
        return ranging_solution

    def _combine(
        self,
        ranging_solution: Optional[Solution],
        rssi_solution: Optional[Solution],
        best: Solution,
    ) -> Solution:
        """Refine over the inliers of every stage, seeded by initial position or best stage."""
        solutions = [s for s in (ranging_solution, rssi_solution) if s is not None]
        correspondences = tuple(c for s in solutions for c in s.correspondences)
        inliers = np.concatenate([s.inliers_data.inliers for s in solutions])
        threshold = max(s.inliers_data.threshold for s in solutions)
        inlier_correspondences = [c for s in solutions for c in s.inlier_correspondences]

        seed = self._initial_position if self._initial_position is not None else best.position
        refiner = SolutionRefiner(RefinerConfig(keep_covariance=self._config.keep_covariance))
        try:
            position, covariance, _ = refiner.refine(inlier_correspondences, seed)
        except DegenerateSubsetError as e:
            self.metrics.increment_drop('refine_failed')
            logger.warning(f"Joint refinement failed, keeping {best.method} stage solution: {e}")
            return best

        positions, distances, stds = correspondence_arrays(correspondences)
        residuals = standardized_residuals(position, positions, distances, stds)

        return Solution(
            position=position,
            covariance=covariance,
            inliers_data=InliersData(inliers=inliers, residuals=residuals, threshold=threshold),
            correspondences=correspondences,
            method='+'.join(s.method for s in solutions),
            iterations=sum(s.iterations for s in solutions),
        )
