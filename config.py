"""
Robust localization demo configuration.
"""

# Estimator defaults (per stage unless noted)
ESTIMATOR_DEFAULTS = {
    "method": "promeds",              # ransac | lmeds | msac | prosac | promeds
    "confidence": 0.99,
    "max_iterations": 5000,
    "use_homogeneous_solver": False,
    "fallback_distance_std_m": 1.0,
    "refine_result": True,            # Joint refinement over both stages
    "keep_covariance": True,
    "progress_delta": 0.05,
}

# Simulated scenario
DEMO_SCENARIO = {
    "dimensions": 2,
    "num_sources": 20,
    "area_half_size_m": 50.0,         # Sources and position in [-50, 50]
    "outlier_fraction": 0.2,
    "outlier_std_m": 10.0,
    "inlier_std_m": 0.1,
    "ranging_std_m": 1.0,
    "frequency_hz": 2.4e9,
    "tx_power_dbm_range": (-50.0, -30.0),
    "tx_power_std_db": 0.3162,        # sqrt(0.1)
    "rx_power_std_db": 0.7071,        # sqrt(0.5)
    "path_loss_exponent_range": (1.6, 2.0),
    "path_loss_exponent_std": 0.0316,  # sqrt(0.001)
    "seed": 42,
}

# Logging
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}
