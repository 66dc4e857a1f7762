"""
Robust localization demo.

Simulates a fingerprint of mixed ranging and RSSI readings, with a share
of outliers, around a random true position, then estimates that position
with the sequential robust estimator.

Usage:
    python main.py --dimensions 3 --sources 30 --outliers 20 --method prosac
"""

import sys
import logging
import argparse
from typing import List, Tuple

import numpy as np

import config
from robustloc.proto import (
    Fingerprint,
    RadioSource,
    RangingAndRssiReading,
    RangingReading,
    RssiReading,
)
from robustloc.localization import (
    EstimatorListener,
    RobustEstimationError,
    RobustMethod,
    SequentialEstimatorConfig,
    SequentialRobustPositionEstimator,
    StageConfig,
    rssi_from_distance,
)
from robustloc.metrics import get_metrics

logging.basicConfig(
    level=getattr(logging, config.LOGGING_CONFIG["level"]),
    format=config.LOGGING_CONFIG["format"]
)
logger = logging.getLogger(__name__)


class ProgressLogger(EstimatorListener):
    """Log estimator lifecycle."""

    def on_estimate_start(self, view):
        logger.info("Estimation started")

    def on_estimate_progress_change(self, view, progress):
        logger.debug(f"Progress {progress:.0%}")

    def on_estimate_end(self, view):
        logger.info("Estimation finished")


def simulate(
    dimensions: int,
    num_sources: int,
    outlier_fraction: float,
    rng: np.random.Generator,
) -> Tuple[np.ndarray, List[RadioSource], Fingerprint, np.ndarray]:
    """
    Simulate sources and one fingerprint.

    Returns:
        Tuple of (true_position, sources, fingerprint, reading_quality_scores)
    """
    scenario = config.DEMO_SCENARIO
    half_size = scenario["area_half_size_m"]
    true_position = rng.uniform(-half_size, half_size, dimensions)

    sources = []
    readings = []
    quality = []
    for i in range(num_sources):
        position = rng.uniform(-half_size, half_size, dimensions)
        tx_power = rng.uniform(*scenario["tx_power_dbm_range"])
        exponent = rng.uniform(*scenario["path_loss_exponent_range"])
        source = RadioSource(
            source_id=f"S{i:02d}",
            position=position,
            transmitted_power_dbm=tx_power,
            transmitted_power_std_db=scenario["tx_power_std_db"],
            path_loss_exponent=exponent,
            path_loss_exponent_std=scenario["path_loss_exponent_std"],
            frequency_hz=scenario["frequency_hz"],
        )
        sources.append(source)

        distance = float(np.linalg.norm(position - true_position))
        if rng.random() < outlier_fraction:
            error = rng.normal(0.0, scenario["outlier_std_m"])
        else:
            error = rng.normal(0.0, scenario["inlier_std_m"])
        # Readings with larger errors report lower quality
        quality.append(1.0 / (1.0 + abs(error)))
        distance = max(distance + error, 1e-3)
        rssi = rssi_from_distance(distance, tx_power, exponent, scenario["frequency_hz"])

        # Mix of reading kinds
        kind = i % 3
        if kind == 0:
            readings.append(RangingReading(source, distance, scenario["ranging_std_m"]))
        elif kind == 1:
            readings.append(RssiReading(source, rssi, scenario["rx_power_std_db"]))
        else:
            readings.append(RangingAndRssiReading(
                source, distance, rssi,
                distance_std_m=scenario["ranging_std_m"],
                rssi_std_db=scenario["rx_power_std_db"],
            ))

    return true_position, sources, Fingerprint(readings), np.array(quality)


def main():
    """Run the demo."""
    scenario = config.DEMO_SCENARIO
    defaults = config.ESTIMATOR_DEFAULTS

    parser = argparse.ArgumentParser(description='Robust ranging + RSSI localization demo')
    parser.add_argument('--dimensions', type=int, choices=(2, 3), default=scenario["dimensions"],
                        help='2D or 3D positioning')
    parser.add_argument('--sources', '-n', type=int, default=scenario["num_sources"],
                        help='Number of radio sources')
    parser.add_argument('--outliers', type=float, default=scenario["outlier_fraction"] * 100,
                        help='Outlier percentage')
    parser.add_argument('--method', '-m', type=str, default=defaults["method"],
                        choices=[m.value for m in RobustMethod],
                        help='Robust method for both stages')
    parser.add_argument('--seed', '-s', type=int, default=scenario["seed"],
                        help='Random seed')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Enable debug logging')

    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    rng = np.random.default_rng(args.seed)
    true_position, sources, fingerprint, reading_scores = simulate(
        args.dimensions, args.sources, args.outliers / 100.0, rng)

    stage = StageConfig(
        method=RobustMethod(args.method),
        confidence=defaults["confidence"],
        max_iterations=defaults["max_iterations"],
        use_homogeneous_solver=defaults["use_homogeneous_solver"],
        fallback_distance_std_m=defaults["fallback_distance_std_m"],
    )
    estimator_config = SequentialEstimatorConfig(
        ranging=stage,
        rssi=stage,
        refine_result=defaults["refine_result"],
        keep_covariance=defaults["keep_covariance"],
        progress_delta=defaults["progress_delta"],
        seed=args.seed,
    )
    estimator = SequentialRobustPositionEstimator(
        sources=sources,
        fingerprint=fingerprint,
        config=estimator_config,
        listener=ProgressLogger(),
        reading_quality_scores=reading_scores,
    )

    try:
        position = estimator.estimate()
    except RobustEstimationError as e:
        logger.error(f"Estimation failed: {e}")
        return 1

    error = float(np.linalg.norm(position - true_position))
    print("=" * 60)
    print(f"True position:      {np.round(true_position, 3).tolist()}")
    print(f"Estimated position: {np.round(position, 3).tolist()}")
    print(f"Error:              {error:.3f} m")
    if estimator.covariance is not None:
        print(f"Position std:       {np.round(estimator.solution.position_std, 3).tolist()}")
    for name, solution in (('ranging', estimator.ranging_solution),
                           ('rssi', estimator.rssi_solution)):
        if solution is not None:
            print(f"{name:8s} stage:     {solution.num_inliers}/{len(solution.correspondences)} "
                  f"inliers, {solution.iterations} iterations")
    print("=" * 60)
    print(get_metrics().format_summary())
    return 0


if __name__ == "__main__":
    sys.exit(main())
