"""
Localization Module: Robust multilateration.

Key classes:
- CorrespondenceBuilder: Readings -> distance correspondences
- LinearLaterationSolver: Closed-form (homogeneous/inhomogeneous) lateration
- NonLinearLaterationSolver: Weighted Gauss-Newton lateration
- RobustLaterationEstimator: RANSAC/LMedS/MSAC/PROSAC/PROMedS engine
- SolutionRefiner: Inlier refinement with covariance
- RobustPositionEstimator: Single-stage (ranging or RSSI) estimator
- SequentialRobustPositionEstimator: Ranging stage + RSSI stage + joint
  refinement
"""

from .errors import (
    PositioningError,
    InvalidArgumentError,
    LockedError,
    NotReadyError,
    RobustEstimationError,
    DegenerateSubsetError,
)
from .path_loss import (
    dbm_to_power,
    power_to_dbm,
    distance_from_rssi,
    rssi_from_distance,
    distance_from_rssi_std,
)
from .correspondence_builder import (
    CorrespondenceBuilder,
    CorrespondenceConfig,
    count_usable_readings,
)
from .lateration_solver import (
    LinearLaterationSolver,
    NonLinearLaterationSolver,
    NonLinearSolverConfig,
)
from .sampling import (
    UniformSampler,
    ProsacSampler,
)
from .refiner import (
    SolutionRefiner,
    RefinerConfig,
)
from .robust_estimator import (
    RobustMethod,
    RobustEstimatorConfig,
    RobustLaterationEstimator,
)
from .listener import (
    EstimatorListener,
    EstimatorState,
    EstimatorView,
)
from .position_estimator import (
    StageConfig,
    StageSettings,
    RobustPositionEstimator,
    RobustPositionEstimatorConfig,
)
from .sequential_estimator import (
    SequentialRobustPositionEstimator,
    SequentialEstimatorConfig,
)

__all__ = [
    # Errors
    'PositioningError',
    'InvalidArgumentError',
    'LockedError',
    'NotReadyError',
    'RobustEstimationError',
    'DegenerateSubsetError',
    # Path loss
    'dbm_to_power',
    'power_to_dbm',
    'distance_from_rssi',
    'rssi_from_distance',
    'distance_from_rssi_std',
    # Correspondences
    'CorrespondenceBuilder',
    'CorrespondenceConfig',
    'count_usable_readings',
    # Solvers
    'LinearLaterationSolver',
    'NonLinearLaterationSolver',
    'NonLinearSolverConfig',
    'UniformSampler',
    'ProsacSampler',
    'SolutionRefiner',
    'RefinerConfig',
    'RobustMethod',
    'RobustEstimatorConfig',
    'RobustLaterationEstimator',
    # Estimators
    'EstimatorListener',
    'EstimatorState',
    'EstimatorView',
    'StageConfig',
    'StageSettings',
    'RobustPositionEstimator',
    'RobustPositionEstimatorConfig',
    'SequentialRobustPositionEstimator',
    'SequentialEstimatorConfig',
]
