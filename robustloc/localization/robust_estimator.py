"""
Robust Sample-Consensus Lateration.

One iterative loop parameterized by a scoring policy and a subset sampler:

    method   | scoring                        | sampling
    ---------+--------------------------------+------------
    RANSAC   | inlier count (r <= t)          | uniform
    MSAC     | sum of min(r², t²)             | uniform
    LMedS    | median r²                      | uniform
    PROSAC   | inlier count (r <= t)          | progressive
    PROMedS  | median r²                      | progressive

Residuals are standardized, r = | |x - s| - d | / std, so thresholds are
expressed in standard deviations of each correspondence.

Degenerate subsets are discarded and resampled. The run fails with
RobustEstimationError only when no hypothesis could be scored or the best
one has fewer inliers than the subset size.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple
import logging
import math

import numpy as np

from robustloc.proto.correspondence import Correspondence
from robustloc.proto.solution import InliersData, Solution
from robustloc.localization.errors import (
    DegenerateSubsetError,
    InvalidArgumentError,
    RobustEstimationError,
)
from robustloc.localization.lateration_solver import (
    LinearLaterationSolver,
    NonLinearLaterationSolver,
    NonLinearSolverConfig,
    correspondence_arrays,
)
from robustloc.localization.refiner import RefinerConfig, SolutionRefiner
from robustloc.localization.sampling import create_sampler
from robustloc.metrics import get_metrics

logger = logging.getLogger(__name__)


class RobustMethod(Enum):
    """Sample-consensus method."""

    RANSAC = 'ransac'
    LMEDS = 'lmeds'
    MSAC = 'msac'
    PROSAC = 'prosac'
    PROMEDS = 'promeds'

    @property
    def is_progressive(self) -> bool:
        """Sampling is biased by quality scores."""
        return self in (RobustMethod.PROSAC, RobustMethod.PROMEDS)

    @property
    def is_median_based(self) -> bool:
        """Scored by median residual instead of a fixed threshold."""
        return self in (RobustMethod.LMEDS, RobustMethod.PROMEDS)

    @property
    def default_threshold(self) -> float:
        if self.is_median_based:
            return DEFAULT_STOP_THRESHOLD
        return DEFAULT_THRESHOLD


DEFAULT_METHOD = RobustMethod.PROMEDS
DEFAULT_THRESHOLD = 3.0             # Standard deviations
DEFAULT_STOP_THRESHOLD = 1e-5       # Standard deviations, median-based methods
DEFAULT_INLIER_FACTOR = 1.5
DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05

# Outlier fraction assumed when sizing median-based runs
MEDIAN_OUTLIER_FRACTION = 0.5

# Consistency of the median absolute residual with a Gaussian std
MAD_TO_STD = 1.4826


@dataclass
class RobustEstimatorConfig:
    """
    Configuration for one sample-consensus run.

    Attributes:
        method: Sample-consensus method
        threshold: Inlier threshold (std units) for RANSAC/MSAC/PROSAC, stop
            threshold for LMedS/PROMedS; None selects the method default
        inlier_factor: Multiplier of the robust scale for median-based inliers
        confidence: Probability of drawing at least one outlier-free subset
        max_iterations: Maximum number of sampled subsets
        subset_size: Correspondences per subset (None = dimensions + 1)
        use_linear_solver: Solve subsets in closed form; otherwise
            Gauss-Newton from the initial position or subset centroid
        use_homogeneous_solver: Homogeneous rather than inhomogeneous
            closed form
        refine_preliminary_solutions: Refine the winning hypothesis over its
            inliers and compute covariance
        keep_covariance: Keep covariance of refined solutions
        progress_delta: Minimum progress change reported to listeners
        seed: Seed for subset sampling (random if None)
    """

    method: RobustMethod = DEFAULT_METHOD
    threshold: Optional[float] = None
    inlier_factor: float = DEFAULT_INLIER_FACTOR
    confidence: float = DEFAULT_CONFIDENCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    subset_size: Optional[int] = None
    use_linear_solver: bool = True
    use_homogeneous_solver: bool = False
    refine_preliminary_solutions: bool = True
    keep_covariance: bool = True
    progress_delta: float = DEFAULT_PROGRESS_DELTA
    seed: Optional[int] = None
    solver: NonLinearSolverConfig = field(default_factory=NonLinearSolverConfig)

    def __post_init__(self):
        """Validate configuration."""
        if not isinstance(self.method, RobustMethod):
            try:
                self.method = RobustMethod(self.method)
            except ValueError as e:
                raise InvalidArgumentError(f"Unknown robust method: {self.method}") from e
        if self.threshold is not None and not self.threshold > 0:
            raise InvalidArgumentError(f"Threshold must be positive: {self.threshold}")
        if not self.inlier_factor > 0:
            raise InvalidArgumentError(f"Inlier factor must be positive: {self.inlier_factor}")
        if not 0 < self.confidence < 1:
            raise InvalidArgumentError(f"Confidence must be in (0, 1): {self.confidence}")
        if self.max_iterations < 1:
            raise InvalidArgumentError(f"max_iterations must be >= 1: {self.max_iterations}")
        if self.subset_size is not None and self.subset_size < 3:
            raise InvalidArgumentError(f"Subset size must be >= 3: {self.subset_size}")
        if not 0 <= self.progress_delta <= 1:
            raise InvalidArgumentError(f"Progress delta must be in [0, 1]: {self.progress_delta}")

    @property
    def effective_threshold(self) -> float:
        if self.threshold is None:
            return self.method.default_threshold
        return self.threshold


def standardized_residuals(
    position: np.ndarray,
    positions: np.ndarray,
    distances: np.ndarray,
    stds: np.ndarray,
) -> np.ndarray:
    """Range residual of every correspondence in standard deviations."""
    ranges = np.linalg.norm(positions - position, axis=1)
    return np.abs(ranges - distances) / stds


def required_trials(confidence: float, good_fraction: float, subset_size: int, cap: int) -> int:
    """
    Trials needed to draw an all-inlier subset with the given confidence.

    Returns:
        Trial count in [1, cap]
    """
    if good_fraction >= 1.0:
        return 1
    p_good = good_fraction ** subset_size
    if p_good <= 0.0:
        return cap
    denominator = math.log(1.0 - p_good)
    if denominator >= 0.0:
        return cap
    trials = math.log(1.0 - confidence) / denominator
    return int(min(cap, max(1, math.ceil(trials))))


class ThresholdScoring:
    """Inlier counting (RANSAC, PROSAC) or truncated squares (MSAC)."""

    def __init__(self, threshold: float, truncated_cost: bool = False):
        self.threshold = threshold
        self.truncated_cost = truncated_cost

    def score(self, residuals: np.ndarray):
        """Score of a hypothesis (lower is better)."""
        inliers = residuals <= self.threshold
        if self.truncated_cost:
            return float(np.sum(np.minimum(residuals ** 2, self.threshold ** 2)))
        # More inliers wins, then smaller inlier residual
        return (-int(np.count_nonzero(inliers)), float(np.sum(residuals[inliers] ** 2)))

    def max_trials(self, confidence: float, subset_size: int, cap: int) -> int:
        return cap

    def update_trials(
        self, residuals: np.ndarray, confidence: float, subset_size: int, cap: int,
    ) -> int:
        good_fraction = np.count_nonzero(residuals <= self.threshold) / residuals.size
        return required_trials(confidence, good_fraction, subset_size, cap)

    def converged(self, residuals: np.ndarray) -> bool:
        return False

    def classify(self, residuals: np.ndarray, subset_size: int) -> Tuple[np.ndarray, float]:
        return residuals <= self.threshold, self.threshold


class MedianScoring:
    """Least median of squares (LMedS, PROMedS)."""

    def __init__(self, stop_threshold: float, inlier_factor: float):
        self.stop_threshold = stop_threshold
        self.inlier_factor = inlier_factor

    def score(self, residuals: np.ndarray) -> float:
        return float(np.median(residuals ** 2))

    def max_trials(self, confidence: float, subset_size: int, cap: int) -> int:
        return required_trials(confidence, 1.0 - MEDIAN_OUTLIER_FRACTION, subset_size, cap)

    def update_trials(
        self, residuals: np.ndarray, confidence: float, subset_size: int, cap: int,
    ) -> int:
        return cap

    def converged(self, residuals: np.ndarray) -> bool:
        return math.sqrt(self.score(residuals)) <= self.stop_threshold

    def classify(self, residuals: np.ndarray, subset_size: int) -> Tuple[np.ndarray, float]:
        # Rousseeuw robust scale with small sample correction
        n = residuals.size
        correction = 1.0 + 5.0 / max(n - subset_size, 1)
        scale = MAD_TO_STD * correction * math.sqrt(self.score(residuals))
        threshold = max(self.inlier_factor * scale, self.stop_threshold)
        return residuals <= threshold, threshold


def create_scoring(config: RobustEstimatorConfig):
    """Scoring policy for the configured method."""
    method = config.method
    if method.is_median_based:
        return MedianScoring(config.effective_threshold, config.inlier_factor)
    return ThresholdScoring(config.effective_threshold, truncated_cost=(method == RobustMethod.MSAC))


class RobustLaterationEstimator:
    """
    Sample-consensus lateration over distance correspondences.

    Usage:
        estimator = RobustLaterationEstimator(
            RobustEstimatorConfig(method=RobustMethod.PROSAC)
        )
        solution = estimator.run(correspondences, quality_scores)

        print(solution.position, solution.inliers_data.num_inliers)
    """

    def __init__(
        self,
        config: Optional[RobustEstimatorConfig] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        Initialize estimator.

        Args:
            config: Estimator configuration (uses defaults if None)
            rng: Random generator (seeded from config.seed if None)
        """
        self.config = config or RobustEstimatorConfig()
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)
        self.linear_solver = LinearLaterationSolver(homogeneous=self.config.use_homogeneous_solver)
        self.nonlinear_solver = NonLinearLaterationSolver(self.config.solver)
        self.refiner = SolutionRefiner(RefinerConfig(
            keep_covariance=self.config.keep_covariance,
            solver=self.config.solver,
        ))
        self.metrics = get_metrics()

    def run(
        self,
        correspondences: Sequence[Correspondence],
        quality_scores: Optional[Sequence[float]] = None,
        initial_position: Optional[np.ndarray] = None,
        on_iteration: Optional[Callable[[int], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> Solution:
        """
        Estimate position robustly.

        Args:
            correspondences: Correspondences of one dimensionality
            quality_scores: Sampling priority per correspondence for
                progressive methods (correspondence quality if None)
            initial_position: Start for Gauss-Newton subset solves
            on_iteration: Called with the index of each sampled subset
            on_progress: Called with progress in [0, 1], non-decreasing

        Returns:
            Solution with inlier classification

        Raises:
            RobustEstimationError: If no consensus could be reached
        """
        config = self.config
        correspondences = list(correspondences)
        n = len(correspondences)
        if n == 0:
            raise RobustEstimationError("No correspondences")

        dims = correspondences[0].dimensions
        subset_size = config.subset_size or dims + 1
        if subset_size < dims + 1:
            raise InvalidArgumentError(
                f"Subset size {subset_size} below minimum {dims + 1} for {dims}D")
        if n < subset_size:
            raise RobustEstimationError(
                f"Need at least {subset_size} correspondences, got {n}")

        positions, distances, stds = correspondence_arrays(correspondences)
        if quality_scores is None:
            quality_scores = [c.quality_score for c in correspondences]
        elif len(quality_scores) != n:
            raise InvalidArgumentError(
                f"Quality scores must have {n} entries, got {len(quality_scores)}")

        self.metrics.increment('robust_runs')
        scoring = create_scoring(config)
        sampler = create_sampler(
            config.method.is_progressive, n, subset_size, self.rng,
            quality_scores=quality_scores, max_samples=config.max_iterations,
        )

        max_trials = scoring.max_trials(config.confidence, subset_size, config.max_iterations)
        best_score = None
        best_position = None
        best_residuals = None
        last_progress = 0.0
        iteration = 0
        valid_trials = 0

        # Degenerate subsets count towards max_iterations only
        while valid_trials < max_trials and iteration < config.max_iterations:
            indices = sampler.sample()
            if on_iteration is not None:
                on_iteration(iteration)
            iteration += 1

            try:
                hypothesis = self._solve_subset(
                    positions[indices], distances[indices], stds[indices], initial_position)
            except DegenerateSubsetError as e:
                self.metrics.increment_drop('degenerate_subset')
                logger.debug(f"Discarding subset {indices.tolist()}: {e}")
                hypothesis = None

            if hypothesis is not None:
                valid_trials += 1
                residuals = standardized_residuals(hypothesis, positions, distances, stds)
                score = scoring.score(residuals)
                if best_score is None or score < best_score:
                    best_score = score
                    best_position = hypothesis
                    best_residuals = residuals
                    max_trials = min(max_trials, max(valid_trials, scoring.update_trials(
                        residuals, config.confidence, subset_size, config.max_iterations)))
                    if scoring.converged(residuals):
                        max_trials = valid_trials

            progress = min(1.0, max(valid_trials / max_trials, iteration / config.max_iterations))
            if on_progress is not None and progress - last_progress >= config.progress_delta \
                    and progress > last_progress:
                last_progress = progress
                on_progress(progress)

        if on_progress is not None and last_progress < 1.0:
            on_progress(1.0)

        self.metrics.record_histogram('robust_iterations', iteration)

        if best_position is None:
            self.metrics.increment('robust_failures')
            self.metrics.increment_drop('no_consensus')
            raise RobustEstimationError(
                f"{config.method.name}: no valid hypothesis in {iteration} iterations")

        inliers, threshold = scoring.classify(best_residuals, subset_size)
        inliers_data = InliersData(inliers=inliers, residuals=best_residuals, threshold=threshold)
        if inliers_data.num_inliers < subset_size:
            self.metrics.increment('robust_failures')
            self.metrics.increment_drop('no_consensus')
            raise RobustEstimationError(
                f"{config.method.name}: best hypothesis has {inliers_data.num_inliers} "
                f"inliers, need {subset_size}")

        self.metrics.record_histogram('inlier_ratio', inliers_data.inlier_ratio)

        position = best_position
        covariance = None
        if config.refine_preliminary_solutions:
            inlier_correspondences = [c for c, keep in zip(correspondences, inliers) if keep]
            try:
                position, covariance, _ = self.refiner.refine(inlier_correspondences, best_position)
            except DegenerateSubsetError as e:
                self.metrics.increment_drop('refine_failed')
                logger.debug(f"Keeping unrefined hypothesis: {e}")
                position, covariance = best_position, None

        self.metrics.increment('robust_successes')
        logger.debug(
            f"{config.method.name}: {inliers_data.num_inliers}/{n} inliers after "
            f"{iteration} iterations"
        )

        return Solution(
            position=position,
            covariance=covariance,
            inliers_data=inliers_data,
            correspondences=tuple(correspondences),
            method=config.method.name,
            iterations=iteration,
        )

    def _solve_subset(
        self,
        positions: np.ndarray,
        distances: np.ndarray,
        stds: np.ndarray,
        initial_position: Optional[np.ndarray],
    ) -> np.ndarray:
        if self.config.use_linear_solver:
            return self.linear_solver.solve_arrays(positions, distances)
        position, _ = self.nonlinear_solver.solve_arrays(
            positions, distances, 1.0 / stds ** 2, initial_position)
        return position
