"""
Radio Source Schema.

Defines located radio sources (access points, beacons, UWB anchors) used as
known reference positions during multilateration. A source may carry an RSSI
propagation model (transmitted power and path-loss exponent) so that RSSI
readings can be converted into distances.
"""

from dataclasses import dataclass
from typing import Optional, Sequence
import math

import numpy as np

DEFAULT_FREQUENCY_HZ = 2.4e9

# Free-space exponent, used when a source reports power but no exponent
DEFAULT_PATH_LOSS_EXPONENT = 2.0


@dataclass(frozen=True, eq=False)
class RadioSource:
    """
    Radio source with known location.

    Attributes:
        source_id: Identifier of the source (e.g., BSSID or anchor ID)
        position: Source position (2 or 3 coordinates, meters)
        position_covariance: Position covariance (d x d, m²), if known
        transmitted_power_dbm: Equivalent transmitted power (dBm), if known
        transmitted_power_std_db: Transmitted power standard deviation (dB)
        path_loss_exponent: Path-loss exponent of the log-distance model
        path_loss_exponent_std: Path-loss exponent standard deviation
        frequency_hz: Carrier frequency (Hz)

    Notes:
        - Sources compare by identity, two instances with the same ID are
          still different sources
        - Only sources with transmitted power can yield RSSI distances
    """

    source_id: str
    position: Sequence[float]
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_dbm: Optional[float] = None
    transmitted_power_std_db: Optional[float] = None
    path_loss_exponent: Optional[float] = None
    path_loss_exponent_std: Optional[float] = None
    frequency_hz: float = DEFAULT_FREQUENCY_HZ

    def __post_init__(self):
        """Validate and normalize source after initialization."""
        position = np.array(self.position, dtype=float).reshape(-1)
        if position.size not in (2, 3):
            raise ValueError(f"Source position must have 2 or 3 coordinates: {self.position}")
        if not np.all(np.isfinite(position)):
            raise ValueError(f"Source position must be finite: {self.position}")
        position.setflags(write=False)
        object.__setattr__(self, 'position', position)

        if self.position_covariance is not None:
            covariance = np.array(self.position_covariance, dtype=float)
            if covariance.shape != (position.size, position.size):
                raise ValueError(
                    f"Position covariance must be {position.size}x{position.size}: "
                    f"{covariance.shape}"
                )
            covariance.setflags(write=False)
            object.__setattr__(self, 'position_covariance', covariance)

        for name in ('transmitted_power_std_db', 'path_loss_exponent_std'):
            value = getattr(self, name)
            if value is not None and not value >= 0:
                raise ValueError(f"{name} must be non-negative: {value}")

        if self.path_loss_exponent is not None and not self.path_loss_exponent > 0:
            raise ValueError(f"Path-loss exponent must be positive: {self.path_loss_exponent}")

        if not self.frequency_hz > 0:
            raise ValueError(f"Frequency must be positive: {self.frequency_hz}")

    @property
    def dimensions(self) -> int:
        """Number of spatial dimensions of the source position."""
        return int(self.position.size)

    @property
    def has_power_model(self) -> bool:
        """Check if RSSI readings from this source can be converted to distances."""
        return self.transmitted_power_dbm is not None and math.isfinite(self.transmitted_power_dbm)

    @property
    def effective_path_loss_exponent(self) -> float:
        """Path-loss exponent, falling back to free space when not provided."""
        if self.path_loss_exponent is None:
            return DEFAULT_PATH_LOSS_EXPONENT
        return self.path_loss_exponent

    def to_dict(self) -> dict:
        """Convert to dictionary for logging."""
        return {
            'source_id': self.source_id,
            'position': self.position.tolist(),
            'has_position_covariance': self.position_covariance is not None,
            'transmitted_power_dbm': self.transmitted_power_dbm,
            'transmitted_power_std_db': self.transmitted_power_std_db,
            'path_loss_exponent': self.path_loss_exponent,
            'path_loss_exponent_std': self.path_loss_exponent_std,
            'frequency_hz': self.frequency_hz,
        }
