"""
Solution Refiner.

Re-solves a position from all inlier correspondences of a robust run by
weighted Gauss-Newton and propagates the distance uncertainties to a
position covariance.

Weights are quality / std². With unit quality the weight matrix is the
inverse of the distance covariance and the covariance reduces to
(J^T W J)^-1. Otherwise the sandwich form is used:

    cov = (J^T W J)^-1 J^T W Σ W J (J^T W J)^-1,    Σ = diag(std²)
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple
import logging

import numpy as np

from robustloc.proto.correspondence import Correspondence
from robustloc.localization.errors import DegenerateSubsetError
from robustloc.localization.lateration_solver import (
    NonLinearLaterationSolver,
    NonLinearSolverConfig,
    correspondence_arrays,
    range_jacobian,
)
from robustloc.metrics import get_metrics

logger = logging.getLogger(__name__)


@dataclass
class RefinerConfig:
    """
    Configuration for inlier refinement.

    Attributes:
        keep_covariance: Compute and return the position covariance
        use_quality_scores: Scale weights by correspondence quality
        solver: Gauss-Newton settings
    """

    keep_covariance: bool = True
    use_quality_scores: bool = True
    solver: NonLinearSolverConfig = field(default_factory=NonLinearSolverConfig)


def quality_weights(correspondences: Sequence[Correspondence]) -> np.ndarray:
    """
    Relative weight per correspondence from quality scores.

    Scores are normalized by their maximum. Non-positive scores cannot be
    used as weights, so any such score disables quality weighting.
    """
    scores = np.array([c.quality_score for c in correspondences], dtype=float)
    if scores.size == 0 or np.any(scores <= 0) or not np.all(np.isfinite(scores)):
        return np.ones(scores.size)
    return scores / scores.max()


class SolutionRefiner:
    """
    Weighted least-squares refinement with covariance.

    Usage:
        refiner = SolutionRefiner(RefinerConfig(keep_covariance=True))
        position, covariance, iterations = refiner.refine(inliers, hypothesis)
    """

    def __init__(self, config: Optional[RefinerConfig] = None):
        """
        Initialize refiner.

        Args:
            config: Refiner configuration (uses defaults if None)
        """
        self.config = config or RefinerConfig()
        self.solver = NonLinearLaterationSolver(self.config.solver)
        self.metrics = get_metrics()

    def weights(self, correspondences: Sequence[Correspondence]) -> np.ndarray:
        """Gauss-Newton weight per correspondence."""
        _, _, stds = correspondence_arrays(correspondences)
        weights = 1.0 / stds ** 2
        if self.config.use_quality_scores:
            weights = weights * quality_weights(correspondences)
        return weights

    def refine(
        self,
        correspondences: Sequence[Correspondence],
        initial_position: np.ndarray,
    ) -> Tuple[np.ndarray, Optional[np.ndarray], int]:
        """
        Refine position over correspondences.

        Args:
            correspondences: Inlier correspondences (at least d + 1)
            initial_position: Starting position (e.g., winning hypothesis)

        Returns:
            Tuple of (position, covariance or None, iterations)

        Raises:
            DegenerateSubsetError: If geometry is degenerate, iteration
                diverges or the information matrix is singular
        """
        positions, distances, stds = correspondence_arrays(correspondences)
        weights = self.weights(correspondences)

        position, iterations = self.solver.solve_arrays(
            positions, distances, weights, initial_position)
        self.metrics.record_histogram('refine_iterations', iterations)

        covariance = None
        if self.config.keep_covariance:
            covariance = self.covariance(position, positions, stds, weights)
        return position, covariance, iterations

    @staticmethod
    def covariance(
        position: np.ndarray,
        positions: np.ndarray,
        stds: np.ndarray,
        weights: np.ndarray,
    ) -> np.ndarray:
        """
        First-order position covariance of a weighted range solution.

        Raises:
            DegenerateSubsetError: If J^T W J is singular
        """
        _, jacobian = range_jacobian(position, positions)
        jtw = jacobian.T * weights
        information = jtw @ jacobian
        try:
            information_inv = np.linalg.inv(information)
        except np.linalg.LinAlgError as e:
            raise DegenerateSubsetError(f"Singular information matrix: {e}") from e

        middle = (jtw * stds ** 2) @ jtw.T
        covariance = information_inv @ middle @ information_inv
        # Symmetrize against round-off
        covariance = 0.5 * (covariance + covariance.T)
        if not np.all(np.isfinite(covariance)):
            raise DegenerateSubsetError("Non-finite covariance")
        return covariance
