"""
Correspondence Builder.

Turns the readings of a fingerprint into distance correspondences against
the configured sources:
- Ranging readings give one ranging correspondence
- RSSI readings give one RSSI correspondence (path-loss inversion)
- Ranging + RSSI readings give one of each

Also computes the sampling priority used by progressive (PROSAC/PROMedS)
sampling, optionally spreading readings evenly across sources.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import math

import numpy as np

from robustloc.proto.radio_source import RadioSource
from robustloc.proto.reading import Fingerprint, Reading
from robustloc.proto.correspondence import Correspondence, CorrespondenceKind
from robustloc.localization.errors import InvalidArgumentError
from robustloc.localization.path_loss import distance_from_rssi, distance_from_rssi_std
from robustloc.metrics import get_metrics

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_DISTANCE_STD_M = 1.0


@dataclass
class CorrespondenceConfig:
    """
    Configuration for correspondence building.

    Attributes:
        fallback_distance_std_m: Std used when a reading carries none (m)
        use_source_position_covariance: Inflate distance variance with the
            source position uncertainty, when the source has one
        evenly_distribute_readings: Interleave sources when ranking
            correspondences for progressive sampling
    """

    fallback_distance_std_m: float = DEFAULT_FALLBACK_DISTANCE_STD_M
    use_source_position_covariance: bool = True
    evenly_distribute_readings: bool = True

    def __post_init__(self):
        """Validate configuration."""
        if not self.fallback_distance_std_m > 0:
            raise InvalidArgumentError(
                f"Fallback distance std must be positive: {self.fallback_distance_std_m}"
            )


def check_quality_scores(
    scores: Optional[Sequence[float]],
    expected_length: int,
    name: str,
) -> Optional[np.ndarray]:
    """
    Validate a quality-score array against the item count it describes.

    Returns:
        Scores as a float array, or None if scores is None

    Raises:
        InvalidArgumentError: If length does not match or values are not finite
    """
    if scores is None:
        return None
    array = np.asarray(scores, dtype=float).reshape(-1)
    if array.size != expected_length:
        raise InvalidArgumentError(
            f"{name} must have {expected_length} entries, got {array.size}"
        )
    if not np.all(np.isfinite(array)):
        raise InvalidArgumentError(f"{name} must be finite")
    return array


class CorrespondenceBuilder:
    """
    Build distance correspondences from sources and a fingerprint.

    Usage:
        builder = CorrespondenceBuilder(CorrespondenceConfig())
        ranging, rssi = builder.build(sources, fingerprint)

        # Priority for progressive sampling
        scores = builder.sampling_scores(ranging, source_scores, reading_scores)
    """

    def __init__(self, config: Optional[CorrespondenceConfig] = None):
        """
        Initialize builder.

        Args:
            config: Builder configuration (uses defaults if None)
        """
        self.config = config or CorrespondenceConfig()
        self.metrics = get_metrics()

    def build(
        self,
        sources: Sequence[RadioSource],
        fingerprint: Fingerprint,
        source_quality_scores: Optional[Sequence[float]] = None,
        reading_quality_scores: Optional[Sequence[float]] = None,
    ) -> Tuple[List[Correspondence], List[Correspondence]]:
        """
        Build ranging and RSSI correspondences.

        Args:
            sources: Located sources (index order defines source_index)
            fingerprint: Readings (index order defines reading_index)
            source_quality_scores: Optional score per source
            reading_quality_scores: Optional score per reading

        Returns:
            Tuple of (ranging_correspondences, rssi_correspondences)
        """
        return (
            self.build_ranging(sources, fingerprint, source_quality_scores, reading_quality_scores),
            self.build_rssi(sources, fingerprint, source_quality_scores, reading_quality_scores),
        )

    def build_ranging(
        self,
        sources: Sequence[RadioSource],
        fingerprint: Fingerprint,
        source_quality_scores: Optional[Sequence[float]] = None,
        reading_quality_scores: Optional[Sequence[float]] = None,
    ) -> List[Correspondence]:
        """Build correspondences from the distances of ranging readings."""
        return self._build(
            sources, fingerprint, source_quality_scores, reading_quality_scores,
            CorrespondenceKind.RANGING,
        )

    def build_rssi(
        self,
        sources: Sequence[RadioSource],
        fingerprint: Fingerprint,
        source_quality_scores: Optional[Sequence[float]] = None,
        reading_quality_scores: Optional[Sequence[float]] = None,
    ) -> List[Correspondence]:
        """Build correspondences from the RSSI values of readings."""
        return self._build(
            sources, fingerprint, source_quality_scores, reading_quality_scores,
            CorrespondenceKind.RSSI,
        )

    def _build(
        self,
        sources: Sequence[RadioSource],
        fingerprint: Fingerprint,
        source_quality_scores: Optional[Sequence[float]],
        reading_quality_scores: Optional[Sequence[float]],
        kind: CorrespondenceKind,
    ) -> List[Correspondence]:
        source_scores = check_quality_scores(
            source_quality_scores, len(sources), 'source_quality_scores')
        reading_scores = check_quality_scores(
            reading_quality_scores, len(fingerprint), 'reading_quality_scores')

        source_indices: Dict[int, int] = {}
        for index, source in enumerate(sources):
            source_indices.setdefault(id(source), index)

        correspondences = []
        for reading_index, reading in enumerate(fingerprint):
            if kind == CorrespondenceKind.RANGING and not reading.has_ranging:
                continue
            if kind == CorrespondenceKind.RSSI and not reading.has_rssi:
                continue

            source_index = source_indices.get(id(reading.source))
            if source_index is None:
                source_index = self._find_source_by_id(sources, reading.source.source_id)
            if source_index is None:
                self.metrics.increment_drop('unknown_source')
                logger.debug(
                    f"Skipping reading {reading_index}: source "
                    f"{reading.source.source_id} not configured"
                )
                continue

            source = sources[source_index]
            if kind == CorrespondenceKind.RANGING:
                distance, std = self._ranging_distance(reading)
            else:
                if not source.has_power_model:
                    self.metrics.increment_drop('no_power_model')
                    logger.debug(
                        f"Skipping RSSI of reading {reading_index}: source "
                        f"{source.source_id} has no transmitted power"
                    )
                    continue
                distance, std = self._rssi_distance(reading, source)
                if not math.isfinite(distance):
                    self.metrics.increment_drop('invalid_rssi_distance')
                    logger.debug(
                        f"Skipping RSSI of reading {reading_index}: "
                        f"{reading.rssi_dbm} dBm gives no finite distance"
                    )
                    continue

            covariance = source.position_covariance
            if self.config.use_source_position_covariance and covariance is not None:
                std = math.sqrt(std ** 2 + float(np.mean(np.diag(covariance))))
            else:
                covariance = None

            correspondences.append(Correspondence(
                source_position=source.position,
                distance=distance,
                distance_std=std,
                quality_score=self._quality_score(
                    source_scores, reading_scores, source_index, reading_index),
                kind=kind,
                reading_type=reading.reading_type,
                reading_index=reading_index,
                source_index=source_index,
                source_position_covariance=covariance,
            ))

        self.metrics.increment('correspondences_built', len(correspondences))
        return correspondences

    @staticmethod
    def _find_source_by_id(sources: Sequence[RadioSource], source_id: str) -> Optional[int]:
        for index, source in enumerate(sources):
            if source.source_id == source_id:
                return index
        return None

    def _ranging_distance(self, reading: Reading) -> Tuple[float, float]:
        std = reading.distance_std_m
        if std is None or std <= 0:
            std = self.config.fallback_distance_std_m
        return float(reading.distance_m), float(std)

    def _rssi_distance(self, reading: Reading, source: RadioSource) -> Tuple[float, float]:
        exponent = source.effective_path_loss_exponent
        distance = distance_from_rssi(
            reading.rssi_dbm, source.transmitted_power_dbm, exponent, source.frequency_hz)
        std = distance_from_rssi_std(
            reading.rssi_dbm,
            source.transmitted_power_dbm,
            exponent,
            source.frequency_hz,
            rssi_std_db=reading.rssi_std_db,
            tx_power_std_db=source.transmitted_power_std_db,
            path_loss_exponent_std=source.path_loss_exponent_std,
        )
        if std is None or not std > 0:
            std = self.config.fallback_distance_std_m
        return distance, std

    @staticmethod
    def _quality_score(
        source_scores: Optional[np.ndarray],
        reading_scores: Optional[np.ndarray],
        source_index: int,
        reading_index: int,
    ) -> float:
        if source_scores is not None and reading_scores is not None:
            return float(source_scores[source_index] + reading_scores[reading_index])
        if source_scores is not None:
            return float(source_scores[source_index])
        if reading_scores is not None:
            return float(reading_scores[reading_index])
        return 1.0

    def sampling_scores(
        self,
        correspondences: Sequence[Correspondence],
        source_quality_scores: Optional[Sequence[float]] = None,
        reading_quality_scores: Optional[Sequence[float]] = None,
    ) -> np.ndarray:
        """
        Priority of each correspondence for progressive sampling.

        Without even distribution this is the correspondence quality score.
        With it, sources are ranked by quality and visited round-robin,
        taking each source's next best reading (ranging before ranging +
        RSSI before RSSI, then by reading quality), so that the highest
        priorities are spread over as many sources as possible.

        Returns:
            Score per correspondence (higher is sampled first)
        """
        n = len(correspondences)
        if not self.config.evenly_distribute_readings or n == 0:
            return np.array([c.quality_score for c in correspondences], dtype=float)

        groups: Dict[int, List[int]] = {}
        for index, correspondence in enumerate(correspondences):
            groups.setdefault(correspondence.source_index, []).append(index)

        def source_score(source_index: int) -> float:
            if source_quality_scores is None:
                return 0.0
            return float(source_quality_scores[source_index])

        def reading_score(index: int) -> float:
            if reading_quality_scores is None:
                return 0.0
            return float(reading_quality_scores[correspondences[index].reading_index])

        # Stable sorts keep enumeration order among equal scores
        ordered_sources = sorted(groups, key=lambda s: -source_score(s))
        queues = [
            sorted(groups[s], key=lambda i: (correspondences[i].reading_type, -reading_score(i)))
            for s in ordered_sources
        ]

        scores = np.zeros(n)
        rank = 0
        depth = 0
        while rank < n:
            for queue in queues:
                if depth < len(queue):
                    scores[queue[depth]] = n - rank
                    rank += 1
            depth += 1
        return scores


def count_usable_readings(
    sources: Sequence[RadioSource],
    fingerprint: Fingerprint,
    kind: CorrespondenceKind,
) -> int:
    """
    Number of correspondences of one kind the readings would yield.

    Counts without building or touching metrics, for readiness checks.
    """
    known_objects = {id(source) for source in sources}
    known_ids = {}
    for source in sources:
        known_ids.setdefault(source.source_id, source)
    count = 0
    for reading in fingerprint:
        source = reading.source
        if id(source) not in known_objects:
            source = known_ids.get(source.source_id)
            if source is None:
                continue
        if kind == CorrespondenceKind.RANGING and reading.has_ranging:
            count += 1
        elif kind == CorrespondenceKind.RSSI and reading.has_rssi and source.has_power_model:
            count += 1
    return count
