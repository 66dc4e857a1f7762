"""
Unit tests for the sequential ranging + RSSI robust estimator.

Tests cover:
- Exact-data estimation with both stages
- Outlier rejection on random mixed scenarios
- Stage skipping and single-stage fallback
- refine_result, keep_covariance and initial position handling
- Lock guard, listener notifications and atomic results
"""

import numpy as np
import pytest

from robustloc.metrics import get_metrics
from robustloc.proto import (
    Fingerprint,
    RadioSource,
    RangingAndRssiReading,
    RangingReading,
    RssiReading,
)
from robustloc.localization import (
    EstimatorListener,
    EstimatorState,
    LockedError,
    NotReadyError,
    RobustEstimationError,
    RobustMethod,
    SequentialEstimatorConfig,
    SequentialRobustPositionEstimator,
    StageConfig,
)
from tests.conftest import (
    calculate_distance,
    exact_rssi,
    random_mixed_scenario,
    ranging_fingerprint,
    rssi_fingerprint,
)


def mixed_fingerprint(sources, position) -> Fingerprint:
    """Exact combined ranging + RSSI readings to every source."""
    return Fingerprint(
        RangingAndRssiReading(s, calculate_distance(s.position, position), exact_rssi(s, position))
        for s in sources
    )


def sequential_config(method=RobustMethod.PROMEDS, **kwargs) -> SequentialEstimatorConfig:
    return SequentialEstimatorConfig(
        ranging=StageConfig(method=method),
        rssi=StageConfig(method=method),
        **kwargs
    )


@pytest.fixture
def partly_collinear_sources():
    """Five sources, the first three on the x axis."""
    positions = [(0.0, 0.0), (10.0, 0.0), (20.0, 0.0), (20.0, 15.0), (0.0, 15.0)]
    return [
        RadioSource(f"S{i}", p, transmitted_power_dbm=-40.0, path_loss_exponent=2.0)
        for i, p in enumerate(positions)
    ]


class RecordingListener(EstimatorListener):
    """Listener recording every callback."""

    def __init__(self):
        self.events = []
        self.progress = []

    def on_estimate_start(self, view):
        self.events.append('start')

    def on_estimate_end(self, view):
        self.events.append('end')

    def on_estimate_progress_change(self, view, progress):
        self.progress.append(progress)


class TestExactData:
    """Noise-free readings."""

    def test_ranging_only_ransac(self, sources_2d, true_position_2d):
        """Five exact ranging readings, RANSAC, default threshold."""
        estimator = SequentialRobustPositionEstimator(
            sources=sources_2d,
            fingerprint=ranging_fingerprint(sources_2d, true_position_2d),
            config=sequential_config(RobustMethod.RANSAC, seed=0),
        )

        position = estimator.estimate()

        assert np.allclose(position, true_position_2d, atol=1e-6)
        assert estimator.inliers_data.inliers.all()
        assert estimator.rssi_solution is None
        assert estimator.ranging_solution is not None

    @pytest.mark.parametrize("method", list(RobustMethod))
    def test_both_stages(self, sources_2d, true_position_2d, method):
        estimator = SequentialRobustPositionEstimator(
            sources=sources_2d,
            fingerprint=mixed_fingerprint(sources_2d, true_position_2d),
            config=sequential_config(method, seed=1),
        )

        position = estimator.estimate()

        assert np.allclose(position, true_position_2d, atol=1e-6)
        solution = estimator.solution
        assert len(solution.correspondences) == 10
        assert solution.inliers_data.inliers.shape == (10,)
        assert solution.inliers_data.inliers.all()
        assert solution.method == f"{method.name}+{method.name}"
        assert solution.iterations == (
            estimator.ranging_solution.iterations + estimator.rssi_solution.iterations)
        assert estimator.covariance.shape == (2, 2)

    def test_rssi_only(self, sources_2d, true_position_2d):
        estimator = SequentialRobustPositionEstimator(
            sources=sources_2d,
            fingerprint=rssi_fingerprint(sources_2d, true_position_2d),
            config=sequential_config(seed=2),
        )

        position = estimator.estimate()

        assert np.allclose(position, true_position_2d, atol=1e-6)
        assert estimator.ranging_solution is None

    def test_3d(self, sources_3d, true_position_3d):
        estimator = SequentialRobustPositionEstimator(
            sources=sources_3d,
            fingerprint=mixed_fingerprint(sources_3d, true_position_3d),
            config=sequential_config(seed=3),
        )

        position = estimator.estimate()

        assert np.allclose(position, true_position_3d, atol=1e-6)
        assert estimator.covariance.shape == (3, 3)


class TestOutliers:
    """Random mixed scenarios with outliers."""

    @pytest.mark.parametrize("method", [RobustMethod.PROMEDS, RobustMethod.PROSAC, RobustMethod.MSAC])
    @pytest.mark.parametrize("dimensions", [2, 3])
    def test_outliers_rejected(self, method, dimensions):
        rng = np.random.default_rng(100 + dimensions)
        position, sources, fingerprint, quality = random_mixed_scenario(
            rng, dimensions=dimensions, num_sources=30, outlier_fraction=0.2)

        estimator = SequentialRobustPositionEstimator(
            sources=sources,
            fingerprint=fingerprint,
            reading_quality_scores=quality,
            config=sequential_config(method, seed=11),
        )

        estimate = estimator.estimate()

        assert np.linalg.norm(estimate - position) < 1.0
        assert 0 < estimator.inliers_data.num_inliers <= 60

    def test_initial_position_seeds_refinement(self):
        rng = np.random.default_rng(7)
        position, sources, fingerprint, _ = random_mixed_scenario(rng, num_sources=20)

        estimator = SequentialRobustPositionEstimator(
            sources=sources,
            fingerprint=fingerprint,
            initial_position=position + 0.5,
            config=sequential_config(seed=12),
        )

        estimate = estimator.estimate()

        assert np.linalg.norm(estimate - position) < 1.0


class TestStages:
    """Stage skipping, fallback and result selection."""

    def test_unusable_rssi_reading_skipped(self, sources_2d, true_position_2d):
        """RSSI giving no finite distance is dropped, ranging still estimates."""
        far = RadioSource("F", (5.0, 5.0), transmitted_power_dbm=0.0, path_loss_exponent=0.5)
        readings = list(ranging_fingerprint(sources_2d, true_position_2d))
        readings.append(RssiReading(far, -1700.0))

        estimator = SequentialRobustPositionEstimator(
            sources=sources_2d + [far],
            fingerprint=Fingerprint(readings),
            config=sequential_config(seed=13),
        )

        position = estimator.estimate()

        assert np.allclose(position, true_position_2d, atol=1e-6)
        assert estimator.rssi_solution is None
        assert get_metrics().get_drop_count('invalid_rssi_distance') == 1

    def test_failed_stage_falls_back(self, partly_collinear_sources, true_position_2d):
        """RSSI readings only from collinear sources never reach a consensus."""
        sources = partly_collinear_sources
        readings = [RangingReading(s, calculate_distance(s.position, true_position_2d))
                    for s in sources]
        readings += [RssiReading(s, exact_rssi(s, true_position_2d)) for s in sources[:3]]
        config = sequential_config(seed=4)
        config.rssi.max_iterations = 50

        estimator = SequentialRobustPositionEstimator(
            sources=sources, fingerprint=Fingerprint(readings), config=config)

        position = estimator.estimate()

        assert np.allclose(position, true_position_2d, atol=1e-6)
        assert estimator.rssi_solution is None
        assert get_metrics().get_drop_count('stage_failed') == 1

    def test_all_stages_fail(self, partly_collinear_sources, true_position_2d):
        sources = partly_collinear_sources
        listener = RecordingListener()
        estimator = SequentialRobustPositionEstimator(
            sources=sources,
            fingerprint=ranging_fingerprint(sources[:3], true_position_2d),
            config=sequential_config(seed=5),
            listener=listener,
        )
        estimator.ranging.max_iterations = 50
        assert estimator.is_ready

        with pytest.raises(RobustEstimationError, match="No stage"):
            estimator.estimate()

        assert listener.events == ['start']
        assert estimator.solution is None
        assert estimator.state == EstimatorState.IDLE

    def test_failure_keeps_previous_results(self, partly_collinear_sources, true_position_2d):
        sources = partly_collinear_sources
        estimator = SequentialRobustPositionEstimator(
            sources=sources,
            fingerprint=mixed_fingerprint(sources, true_position_2d),
            config=sequential_config(seed=6),
        )
        estimator.estimate()
        previous = estimator.solution

        estimator.fingerprint = ranging_fingerprint(sources[:3], true_position_2d)
        estimator.ranging.max_iterations = 50
        with pytest.raises(RobustEstimationError):
            estimator.estimate()

        assert estimator.solution is previous
        assert np.allclose(estimator.estimated_position, true_position_2d, atol=1e-6)

    def test_refine_result_disabled(self, sources_2d, true_position_2d):
        estimator = SequentialRobustPositionEstimator(
            sources=sources_2d,
            fingerprint=mixed_fingerprint(sources_2d, true_position_2d),
            config=sequential_config(seed=7),
        )
        estimator.refine_result = False

        estimator.estimate()

        assert estimator.solution in (estimator.ranging_solution, estimator.rssi_solution)
        # Equal inlier counts, ranging wins
        assert estimator.solution is estimator.ranging_solution

    def test_covariance_not_kept(self, sources_2d, true_position_2d):
        estimator = SequentialRobustPositionEstimator(
            sources=sources_2d,
            fingerprint=mixed_fingerprint(sources_2d, true_position_2d),
            config=sequential_config(seed=8, keep_covariance=False),
        )

        estimator.estimate()

        assert estimator.covariance is None
        assert estimator.ranging_solution.covariance is None
        assert estimator.rssi_solution.covariance is None


class TestReadiness:
    """Tests for is_ready."""

    def test_either_stage_is_enough(self, sources_2d, true_position_2d):
        estimator = SequentialRobustPositionEstimator(sources=sources_2d)
        assert not estimator.is_ready

        estimator.fingerprint = rssi_fingerprint(sources_2d, true_position_2d)
        assert estimator.is_ready

        estimator.fingerprint = ranging_fingerprint(sources_2d[:2], true_position_2d)
        assert not estimator.is_ready

    def test_rssi_without_power_model_not_ready(self):
        sources = [RadioSource(f"S{i}", p) for i, p in enumerate([(0, 0), (10, 0), (0, 10)])]
        estimator = SequentialRobustPositionEstimator(
            sources=sources,
            fingerprint=Fingerprint(RssiReading(s, -60.0) for s in sources),
        )

        assert not estimator.is_ready
        with pytest.raises(NotReadyError):
            estimator.estimate()


class TestListener:
    """Tests for listener callbacks and the lock guard."""

    def test_progress_spans_both_stages(self, sources_2d, true_position_2d):
        listener = RecordingListener()
        estimator = SequentialRobustPositionEstimator(
            sources=sources_2d,
            fingerprint=mixed_fingerprint(sources_2d, true_position_2d),
            config=sequential_config(RobustMethod.RANSAC, seed=9, progress_delta=0.0),
            listener=listener,
        )

        estimator.estimate()

        assert listener.events == ['start', 'end']
        assert listener.progress == sorted(listener.progress)
        assert listener.progress[-1] == 1.0
        # End of the ranging stage
        assert 0.5 in listener.progress

    def test_progress_delta_throttles(self, sources_2d, true_position_2d):
        listener = RecordingListener()
        estimator = SequentialRobustPositionEstimator(
            sources=sources_2d,
            fingerprint=mixed_fingerprint(sources_2d, true_position_2d),
            config=sequential_config(seed=10, progress_delta=0.3),
            listener=listener,
        )

        estimator.estimate()

        steps = np.diff([0.0] + listener.progress[:-1])
        assert np.all(steps >= 0.3)
        assert listener.progress[-1] == 1.0

    def test_locked_while_estimating(self, sources_2d, true_position_2d):
        class MutatingListener(EstimatorListener):
            def __init__(self, estimator):
                self.estimator = estimator
                self.locked = 0

            def on_estimate_progress_change(self, view, progress):
                for attempt in (
                    lambda: setattr(self.estimator, 'refine_result', False),
                    lambda: setattr(self.estimator.rssi, 'method', RobustMethod.LMEDS),
                    lambda: setattr(self.estimator, 'fingerprint', Fingerprint([])),
                    self.estimator.estimate,
                ):
                    try:
                        attempt()
                    except LockedError:
                        self.locked += 1

        estimator = SequentialRobustPositionEstimator(
            sources=sources_2d,
            fingerprint=mixed_fingerprint(sources_2d, true_position_2d),
        )
        listener = MutatingListener(estimator)
        estimator.listener = listener

        estimator.estimate()

        assert listener.locked > 0
        assert listener.locked % 4 == 0
        assert estimator.refine_result is True
        assert estimator.rssi.method == RobustMethod.PROMEDS
        assert len(estimator.fingerprint) == 5
