"""
Unit tests for data schemas.

Tests cover:
- RadioSource validation and power model
- Reading variants and Fingerprint
- Correspondence, InliersData and Solution
"""

import numpy as np
import pytest

from robustloc.proto import (
    Correspondence,
    Fingerprint,
    InliersData,
    RadioSource,
    RangingAndRssiReading,
    RangingReading,
    ReadingType,
    RssiReading,
    Solution,
)


class TestRadioSource:
    """Tests for RadioSource schema."""

    def test_create_valid_source(self):
        source = RadioSource("A", (1.0, 2.0), transmitted_power_dbm=-40.0)

        assert source.dimensions == 2
        assert source.has_power_model
        assert source.effective_path_loss_exponent == 2.0
        assert source.frequency_hz == pytest.approx(2.4e9)

    def test_position_is_read_only(self):
        source = RadioSource("A", [1.0, 2.0, 3.0])

        with pytest.raises(ValueError):
            source.position[0] = 5.0

    def test_without_power_model(self):
        assert not RadioSource("A", (0.0, 0.0)).has_power_model

    def test_invalid_position_rejected(self):
        with pytest.raises(ValueError, match="2 or 3"):
            RadioSource("A", (1.0,))
        with pytest.raises(ValueError, match="finite"):
            RadioSource("A", (1.0, float('nan')))

    def test_covariance_shape_checked(self):
        with pytest.raises(ValueError, match="covariance"):
            RadioSource("A", (0.0, 0.0), position_covariance=np.eye(3))

    def test_negative_std_rejected(self):
        with pytest.raises(ValueError, match="transmitted_power_std_db"):
            RadioSource("A", (0.0, 0.0), transmitted_power_std_db=-1.0)

    def test_nan_power_model_rejected(self):
        with pytest.raises(ValueError, match="exponent"):
            RadioSource("A", (0.0, 0.0), transmitted_power_dbm=-40.0,
                        path_loss_exponent=float('nan'))
        with pytest.raises(ValueError, match="path_loss_exponent_std"):
            RadioSource("A", (0.0, 0.0), path_loss_exponent_std=float('nan'))
        with pytest.raises(ValueError, match="transmitted_power_std_db"):
            RadioSource("A", (0.0, 0.0), transmitted_power_std_db=float('nan'))

    def test_sources_compare_by_identity(self):
        a = RadioSource("A", (0.0, 0.0))
        b = RadioSource("A", (0.0, 0.0))
        assert a != b
        assert a == a


class TestReadings:
    """Tests for reading variants and fingerprints."""

    def test_reading_types(self):
        source = RadioSource("A", (0.0, 0.0), transmitted_power_dbm=-40.0)

        ranging = RangingReading(source, 5.0, 0.1)
        rssi = RssiReading(source, -70.0, 1.0)
        both = RangingAndRssiReading(source, 5.0, -70.0)

        assert ranging.reading_type == ReadingType.RANGING
        assert rssi.reading_type == ReadingType.RSSI
        assert both.reading_type == ReadingType.RANGING_AND_RSSI
        assert both.has_ranging and both.has_rssi
        assert not rssi.has_ranging

    def test_negative_distance_rejected(self):
        source = RadioSource("A", (0.0, 0.0))
        with pytest.raises(ValueError, match="negative"):
            RangingReading(source, -1.0)
        with pytest.raises(ValueError, match="negative"):
            RangingAndRssiReading(source, -1.0, -60.0)

    def test_negative_std_rejected(self):
        source = RadioSource("A", (0.0, 0.0))
        with pytest.raises(ValueError, match="rssi_std_db"):
            RssiReading(source, -60.0, -1.0)

    def test_fingerprint_keeps_order(self):
        source = RadioSource("A", (0.0, 0.0))
        readings = [RangingReading(source, d) for d in (1.0, 2.0, 3.0)]
        fingerprint = Fingerprint(readings)

        assert len(fingerprint) == 3
        assert [r.distance_m for r in fingerprint] == [1.0, 2.0, 3.0]
        assert fingerprint[1] is readings[1]
        assert fingerprint.num_ranging == 3
        assert fingerprint.num_rssi == 0

    def test_fingerprint_rejects_unknown_items(self):
        with pytest.raises(ValueError, match="Unsupported"):
            Fingerprint([1.0])


class TestSolution:
    """Tests for correspondence and solution schemas."""

    def test_correspondence_requires_positive_std(self):
        with pytest.raises(ValueError, match="std"):
            Correspondence(source_position=np.zeros(2), distance=1.0, distance_std=0.0)

    def test_inliers_data(self):
        data = InliersData(inliers=[True, False, True], residuals=[0.1, 5.0, 0.2], threshold=1.0)

        assert data.num_inliers == 2
        assert data.inlier_ratio == pytest.approx(2 / 3)

    def test_inliers_data_shape_mismatch(self):
        with pytest.raises(ValueError, match="match"):
            InliersData(inliers=[True], residuals=[0.1, 0.2], threshold=1.0)

    def test_solution_inlier_correspondences(self):
        correspondences = [
            Correspondence(source_position=np.array([float(i), 0.0]), distance=1.0, distance_std=1.0)
            for i in range(3)
        ]
        solution = Solution(
            position=[1.0, 2.0],
            covariance=np.diag([4.0, 9.0]),
            inliers_data=InliersData([True, False, True], [0.0, 9.0, 0.0], 1.0),
            correspondences=correspondences,
        )

        assert solution.num_inliers == 2
        assert solution.inlier_correspondences == (correspondences[0], correspondences[2])
        assert np.allclose(solution.position_std, [2.0, 3.0])
        assert solution.to_dict()['num_inliers'] == 2

    def test_solution_covariance_shape_checked(self):
        with pytest.raises(ValueError, match="Covariance"):
            Solution(position=[1.0, 2.0], covariance=np.eye(3))
