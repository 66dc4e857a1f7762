"""
Reading and Fingerprint Schemas.

Defines measurements captured at one unknown position against located
radio sources:
- RangingReading: direct distance (e.g., UWB time of flight, WiFi RTT)
- RssiReading: received signal strength
- RangingAndRssiReading: both at once

A Fingerprint is the ordered collection of readings captured at one
position. Reading order matters: per-reading quality scores are matched
by index.
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Tuple, Union
from enum import IntEnum
import math

from .radio_source import RadioSource


class ReadingType(IntEnum):
    """Kind of measurement contained in a reading (sort order for priorities)."""

    RANGING = 0
    RANGING_AND_RSSI = 1
    RSSI = 2


def _check_std(name: str, value: Optional[float]):
    if value is not None and (not math.isfinite(value) or value < 0):
        raise ValueError(f"{name} must be a non-negative finite value: {value}")


@dataclass(frozen=True)
class RangingReading:
    """
    Direct distance measurement to a source.

    Attributes:
        source: Radio source the distance was measured to
        distance_m: Measured distance (m)
        distance_std_m: Distance standard deviation (m), if available
    """

    source: RadioSource
    distance_m: float
    distance_std_m: Optional[float] = None

    def __post_init__(self):
        """Validate reading after initialization."""
        if not math.isfinite(self.distance_m) or self.distance_m < 0:
            raise ValueError(f"Distance cannot be negative: {self.distance_m}")
        _check_std('distance_std_m', self.distance_std_m)

    @property
    def reading_type(self) -> ReadingType:
        return ReadingType.RANGING

    @property
    def has_ranging(self) -> bool:
        return True

    @property
    def has_rssi(self) -> bool:
        return False


@dataclass(frozen=True)
class RssiReading:
    """
    Received signal strength measurement from a source.

    Attributes:
        source: Radio source the signal was received from
        rssi_dbm: Received power (dBm)
        rssi_std_db: RSSI standard deviation (dB), if available
    """

    source: RadioSource
    rssi_dbm: float
    rssi_std_db: Optional[float] = None

    def __post_init__(self):
        """Validate reading after initialization."""
        if not math.isfinite(self.rssi_dbm):
            raise ValueError(f"RSSI must be finite: {self.rssi_dbm}")
        _check_std('rssi_std_db', self.rssi_std_db)

    @property
    def reading_type(self) -> ReadingType:
        return ReadingType.RSSI

    @property
    def has_ranging(self) -> bool:
        return False

    @property
    def has_rssi(self) -> bool:
        return True


@dataclass(frozen=True)
class RangingAndRssiReading:
    """
    Distance and received signal strength measured together.

    Yields two independent distance estimates to the same source.
    """

    source: RadioSource
    distance_m: float
    rssi_dbm: float
    distance_std_m: Optional[float] = None
    rssi_std_db: Optional[float] = None

    def __post_init__(self):
        """Validate reading after initialization."""
        if not math.isfinite(self.distance_m) or self.distance_m < 0:
            raise ValueError(f"Distance cannot be negative: {self.distance_m}")
        if not math.isfinite(self.rssi_dbm):
            raise ValueError(f"RSSI must be finite: {self.rssi_dbm}")
        _check_std('distance_std_m', self.distance_std_m)
        _check_std('rssi_std_db', self.rssi_std_db)

    @property
    def reading_type(self) -> ReadingType:
        return ReadingType.RANGING_AND_RSSI

    @property
    def has_ranging(self) -> bool:
        return True

    @property
    def has_rssi(self) -> bool:
        return True


Reading = Union[RangingReading, RssiReading, RangingAndRssiReading]


class Fingerprint:
    """
    Ordered, read-only collection of readings captured at one position.

    Usage:
        fingerprint = Fingerprint([
            RangingReading(source_a, 4.2, 0.1),
            RssiReading(source_b, -62.0, 1.5),
        ])

        for reading in fingerprint:
            ...
    """

    def __init__(self, readings: Iterable[Reading]):
        """
        Initialize fingerprint.

        Args:
            readings: Readings in capture order
        """
        self._readings: Tuple[Reading, ...] = tuple(readings)
        for reading in self._readings:
            if not isinstance(reading, (RangingReading, RssiReading, RangingAndRssiReading)):
                raise ValueError(f"Unsupported reading: {reading!r}")

    @property
    def readings(self) -> Tuple[Reading, ...]:
        return self._readings

    def __len__(self) -> int:
        return len(self._readings)

    def __iter__(self) -> Iterator[Reading]:
        return iter(self._readings)

    def __getitem__(self, index: int) -> Reading:
        return self._readings[index]

    @property
    def num_ranging(self) -> int:
        """Number of readings carrying a distance."""
        return sum(1 for r in self._readings if r.has_ranging)

    @property
    def num_rssi(self) -> int:
        """Number of readings carrying an RSSI value."""
        return sum(1 for r in self._readings if r.has_rssi)
