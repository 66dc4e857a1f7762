"""
Distance Correspondence Schema.

A correspondence pairs one located source with one distance estimate to the
unknown position. Correspondences are derived from readings by the
correspondence builder and are the unit the robust estimators sample,
score and refine.
"""

from dataclasses import dataclass
from typing import Optional
from enum import IntEnum

import numpy as np

from .reading import ReadingType


class CorrespondenceKind(IntEnum):
    """Origin of the distance estimate."""

    RANGING = 0     # Measured distance
    RSSI = 1        # Distance inverted from a path-loss model


@dataclass(frozen=True, eq=False)
class Correspondence:
    """
    Source position paired with an estimated distance.

    Attributes:
        source_position: Source position (d,)
        distance: Estimated distance to the unknown position (m)
        distance_std: Distance standard deviation (m), always positive
        quality_score: Caller quality score (higher is better)
        kind: Ranging or RSSI derived distance
        reading_type: Type of the reading the distance came from
        reading_index: Index of the reading within the fingerprint
        source_index: Index of the source within the configured sources
        source_position_covariance: Source position covariance (d x d), if used
    """

    source_position: np.ndarray
    distance: float
    distance_std: float
    quality_score: float = 1.0
    kind: CorrespondenceKind = CorrespondenceKind.RANGING
    reading_type: ReadingType = ReadingType.RANGING
    reading_index: int = 0
    source_index: int = 0
    source_position_covariance: Optional[np.ndarray] = None

    def __post_init__(self):
        """Validate correspondence after initialization."""
        if self.distance < 0:
            raise ValueError(f"Distance cannot be negative: {self.distance}")
        if not self.distance_std > 0:
            raise ValueError(f"Distance std must be positive: {self.distance_std}")

    @property
    def dimensions(self) -> int:
        return int(np.asarray(self.source_position).size)

    @property
    def variance(self) -> float:
        return self.distance_std ** 2
