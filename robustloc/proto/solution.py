"""
Position Solution Output Schema.

Defines the output of one robust estimation run, or of the final
combination performed by the sequential estimator.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from .correspondence import Correspondence


@dataclass
class InliersData:
    """
    Inlier classification produced by a robust run.

    Attributes:
        inliers: Boolean flag per correspondence
        residuals: Standardized residual per correspondence
        threshold: Achieved inlier threshold (in standard deviations)
    """

    inliers: np.ndarray
    residuals: np.ndarray
    threshold: float

    def __post_init__(self):
        """Validate inliers data."""
        self.inliers = np.asarray(self.inliers, dtype=bool)
        self.residuals = np.asarray(self.residuals, dtype=float)
        if self.inliers.shape != self.residuals.shape:
            raise ValueError(
                f"Inliers and residuals must match: {self.inliers.shape} vs "
                f"{self.residuals.shape}"
            )
        if self.threshold < 0:
            raise ValueError(f"Threshold cannot be negative: {self.threshold}")

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))

    @property
    def inlier_ratio(self) -> float:
        if self.inliers.size == 0:
            return 0.0
        return self.num_inliers / self.inliers.size


@dataclass
class Solution:
    """
    Estimated position with optional uncertainty and inlier classification.

    Attributes:
        position: Estimated position (d,)
        covariance: Position covariance (d x d), if computed and kept
        inliers_data: Inlier classification, if produced by a robust run
        correspondences: Correspondences the solution was scored against
        method: Name of the estimation method
        iterations: Number of robust iterations performed

    Notes:
        - inliers_data is aligned with correspondences
        - covariance is None when refinement is disabled or covariance
          keeping is turned off
    """

    position: np.ndarray
    covariance: Optional[np.ndarray] = None
    inliers_data: Optional[InliersData] = None
    correspondences: Tuple[Correspondence, ...] = field(default_factory=tuple)
    method: str = ''
    iterations: int = 0

    def __post_init__(self):
        """Validate solution."""
        self.position = np.asarray(self.position, dtype=float).reshape(-1)
        if self.position.size not in (2, 3):
            raise ValueError(f"Position must have 2 or 3 coordinates: {self.position}")
        if self.covariance is not None:
            self.covariance = np.asarray(self.covariance, dtype=float)
            if self.covariance.shape != (self.position.size, self.position.size):
                raise ValueError(f"Covariance shape mismatch: {self.covariance.shape}")
        self.correspondences = tuple(self.correspondences)

    @property
    def dimensions(self) -> int:
        return int(self.position.size)

    @property
    def num_inliers(self) -> int:
        """Number of inliers, or all correspondences when not classified."""
        if self.inliers_data is None:
            return len(self.correspondences)
        return self.inliers_data.num_inliers

    @property
    def inlier_correspondences(self) -> Tuple[Correspondence, ...]:
        if self.inliers_data is None:
            return self.correspondences
        return tuple(
            c for c, is_inlier in zip(self.correspondences, self.inliers_data.inliers)
            if is_inlier
        )

    @property
    def position_std(self) -> Optional[np.ndarray]:
        """Per-axis standard deviation (m), if covariance is available."""
        if self.covariance is None:
            return None
        return np.sqrt(np.clip(np.diag(self.covariance), 0.0, None))

    def to_dict(self) -> dict:
        """Convert to dictionary for logging."""
        return {
            'position': self.position.tolist(),
            'covariance': None if self.covariance is None else self.covariance.tolist(),
            'num_correspondences': len(self.correspondences),
            'num_inliers': self.num_inliers,
            'threshold': None if self.inliers_data is None else self.inliers_data.threshold,
            'method': self.method,
            'iterations': self.iterations,
        }
