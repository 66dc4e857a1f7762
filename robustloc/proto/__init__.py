"""
Protocol Module: Data schemas.

Immutable inputs (sources, readings, fingerprints) and estimation outputs
(correspondences, inlier classification, solutions). All schemas validate
themselves on construction and raise ValueError on malformed values.
"""

from .radio_source import (
    RadioSource,
    DEFAULT_FREQUENCY_HZ,
    DEFAULT_PATH_LOSS_EXPONENT,
)
from .reading import (
    ReadingType,
    RangingReading,
    RssiReading,
    RangingAndRssiReading,
    Reading,
    Fingerprint,
)
from .correspondence import (
    Correspondence,
    CorrespondenceKind,
)
from .solution import (
    InliersData,
    Solution,
)

__all__ = [
    # Inputs
    'RadioSource',
    'DEFAULT_FREQUENCY_HZ',
    'DEFAULT_PATH_LOSS_EXPONENT',
    'ReadingType',
    'RangingReading',
    'RssiReading',
    'RangingAndRssiReading',
    'Reading',
    'Fingerprint',
    # Outputs
    'Correspondence',
    'CorrespondenceKind',
    'InliersData',
    'Solution',
]
