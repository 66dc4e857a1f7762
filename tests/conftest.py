"""
Pytest configuration and shared fixtures for robust localization tests.

This module provides reusable source layouts, fingerprint generators and
distance helpers for testing solvers, robust estimators and the
sequential ranging + RSSI estimator.
"""

import sys
import math
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from robustloc.metrics import reset_metrics
from robustloc.proto import (
    Correspondence,
    Fingerprint,
    RadioSource,
    RangingAndRssiReading,
    RangingReading,
    RssiReading,
)
from robustloc.localization.path_loss import rssi_from_distance

FREQUENCY_HZ = 2.4e9
INLIER_STD_M = 0.1
OUTLIER_STD_M = 10.0
RANGING_STD_M = 1.0
TX_POWER_STD_DB = math.sqrt(0.1)
RX_POWER_STD_DB = math.sqrt(0.5)
PATH_LOSS_EXPONENT_STD = math.sqrt(0.001)


# =============================================================================
# Metrics Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Give every test its own global metrics collector."""
    reset_metrics()
    yield


# =============================================================================
# Source Layout Fixtures
# =============================================================================


@pytest.fixture
def sources_2d() -> List[RadioSource]:
    """
    Five ranging sources around the area of interest.

    Returns:
        Sources with power models, so both ranging and RSSI readings work.
    """
    positions = [(0.0, 0.0), (20.0, 0.0), (20.0, 15.0), (0.0, 15.0), (8.0, -6.0)]
    return [
        RadioSource(
            source_id=f"S{i}",
            position=p,
            transmitted_power_dbm=-40.0,
            path_loss_exponent=2.0,
            frequency_hz=FREQUENCY_HZ,
        )
        for i, p in enumerate(positions)
    ]


@pytest.fixture
def sources_3d() -> List[RadioSource]:
    """Six non-coplanar sources."""
    positions = [
        (0.0, 0.0, 0.0), (20.0, 0.0, 3.0), (20.0, 15.0, 0.0),
        (0.0, 15.0, 5.0), (10.0, 7.0, 12.0), (5.0, -5.0, -4.0),
    ]
    return [
        RadioSource(
            source_id=f"S{i}",
            position=p,
            transmitted_power_dbm=-40.0,
            path_loss_exponent=2.0,
            frequency_hz=FREQUENCY_HZ,
        )
        for i, p in enumerate(positions)
    ]


@pytest.fixture
def true_position_2d() -> np.ndarray:
    """Known 2D position used by end-to-end tests."""
    return np.array([10.0, 5.0])


@pytest.fixture
def true_position_3d() -> np.ndarray:
    """Known 3D position used by end-to-end tests."""
    return np.array([7.0, 4.0, 2.5])


# =============================================================================
# Fingerprint Generators
# =============================================================================


def ranging_fingerprint(
    sources: Sequence[RadioSource],
    position: np.ndarray,
    distance_std_m: Optional[float] = None,
) -> Fingerprint:
    """Exact ranging readings from position to every source."""
    return Fingerprint(
        RangingReading(s, calculate_distance(s.position, position), distance_std_m)
        for s in sources
    )


def rssi_fingerprint(
    sources: Sequence[RadioSource],
    position: np.ndarray,
    rssi_std_db: Optional[float] = None,
) -> Fingerprint:
    """Exact RSSI readings from position to every source."""
    return Fingerprint(
        RssiReading(s, exact_rssi(s, position), rssi_std_db) for s in sources
    )


def exact_rssi(source: RadioSource, position: np.ndarray) -> float:
    """RSSI predicted by the source's own path-loss model."""
    return rssi_from_distance(
        calculate_distance(source.position, position),
        source.transmitted_power_dbm,
        source.effective_path_loss_exponent,
        source.frequency_hz,
    )


def exact_correspondences(
    positions: Sequence[Sequence[float]],
    position: Sequence[float],
    std: float = 1.0,
) -> List[Correspondence]:
    """Correspondences with exact distances from position."""
    return [
        Correspondence(
            source_position=np.asarray(p, dtype=float),
            distance=calculate_distance(p, position),
            distance_std=std,
            source_index=i,
            reading_index=i,
        )
        for i, p in enumerate(positions)
    ]


def random_mixed_scenario(
    rng: np.random.Generator,
    dimensions: int = 2,
    num_sources: int = 30,
    outlier_fraction: float = 0.2,
) -> Tuple[np.ndarray, List[RadioSource], Fingerprint, np.ndarray]:
    """
    Random sources with mixed readings and a share of outliers.

    Inlier errors have std INLIER_STD_M, outlier errors OUTLIER_STD_M.
    Reading quality is higher for smaller errors.

    Returns:
        Tuple of (true_position, sources, fingerprint, reading_quality_scores)
    """
    position = rng.uniform(-50.0, 50.0, dimensions)
    sources = []
    readings = []
    quality = []
    for i in range(num_sources):
        source = RadioSource(
            source_id=f"S{i}",
            position=rng.uniform(-50.0, 50.0, dimensions),
            transmitted_power_dbm=rng.uniform(-50.0, -30.0),
            transmitted_power_std_db=TX_POWER_STD_DB,
            path_loss_exponent=rng.uniform(1.6, 2.0),
            path_loss_exponent_std=PATH_LOSS_EXPONENT_STD,
            frequency_hz=FREQUENCY_HZ,
        )
        sources.append(source)

        if rng.random() < outlier_fraction:
            error = rng.normal(0.0, OUTLIER_STD_M)
        else:
            error = rng.normal(0.0, INLIER_STD_M)
        quality.append(1.0 / (1.0 + abs(error)))

        distance = max(calculate_distance(source.position, position) + error, 1e-3)
        rssi = rssi_from_distance(
            distance, source.transmitted_power_dbm, source.path_loss_exponent, FREQUENCY_HZ)
        readings.append(RangingAndRssiReading(
            source, distance, rssi,
            distance_std_m=RANGING_STD_M, rssi_std_db=RX_POWER_STD_DB,
        ))

    return position, sources, Fingerprint(readings), np.array(quality)


# =============================================================================
# Helper Functions
# =============================================================================


def calculate_distance(p1: Sequence[float], p2: Sequence[float]) -> float:
    """
    Euclidean distance between two points of the same dimension.

    Args:
        p1: First point.
        p2: Second point.

    Returns:
        Distance in the same units as input.
    """
    return float(np.linalg.norm(np.asarray(p1, dtype=float) - np.asarray(p2, dtype=float)))
