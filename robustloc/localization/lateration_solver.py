"""
Lateration Solvers.

Solve a position from distances to known source positions, in 2D or 3D:

- LinearLaterationSolver: closed form, exact for d + 1 correspondences and
  least squares for more. Two formulations:
    * inhomogeneous: differences of squared-distance equations against the
      first source, A x = b
    * homogeneous: unknown vector augmented with |x|², null vector of the
      stacked equations by SVD
- NonLinearLaterationSolver: weighted Gauss-Newton over range residuals,
  used to polish linear solutions or when no linear solve is wanted.

Degenerate geometry (collinear sources in 2D, coplanar in 3D) raises
DegenerateSubsetError.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from robustloc.proto.correspondence import Correspondence
from robustloc.localization.errors import DegenerateSubsetError, InvalidArgumentError

# Relative singular value below which geometry is treated as degenerate
DEGENERACY_TOL = 1e-9


def correspondence_arrays(
    correspondences: Sequence[Correspondence],
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Stack correspondences into arrays.

    Returns:
        Tuple of (positions (n, d), distances (n,), stds (n,))
    """
    positions = np.array([c.source_position for c in correspondences], dtype=float)
    distances = np.array([c.distance for c in correspondences], dtype=float)
    stds = np.array([c.distance_std for c in correspondences], dtype=float)
    return positions, distances, stds


def check_geometry(positions: np.ndarray):
    """
    Reject source sets that do not span the space.

    Raises:
        DegenerateSubsetError: If fewer than d + 1 sources, or sources are
            collinear (2D) / coplanar (3D)
    """
    n, dims = positions.shape
    if n < dims + 1:
        raise DegenerateSubsetError(f"Need at least {dims + 1} sources, got {n}")

    centered = positions - positions.mean(axis=0)
    singular_values = np.linalg.svd(centered, compute_uv=False)
    if singular_values[0] <= 0 or singular_values[dims - 1] < DEGENERACY_TOL * singular_values[0]:
        raise DegenerateSubsetError("Source positions do not span the space")


class LinearLaterationSolver:
    """
    Closed-form lateration.

    Usage:
        solver = LinearLaterationSolver(homogeneous=True)
        position = solver.solve(correspondences)
    """

    def __init__(self, homogeneous: bool = False):
        """
        Initialize solver.

        Args:
            homogeneous: Use the homogeneous (SVD) formulation
        """
        self.homogeneous = homogeneous

    def solve(self, correspondences: Sequence[Correspondence]) -> np.ndarray:
        """
        Solve position from d + 1 or more correspondences.

        Raises:
            DegenerateSubsetError: If the subset does not determine a position
        """
        positions, distances, _ = correspondence_arrays(correspondences)
        return self.solve_arrays(positions, distances)

    def solve_arrays(self, positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
        """
        Solve position from source positions (n, d) and distances (n,).

        Raises:
            DegenerateSubsetError: If the subset does not determine a position
        """
        positions = np.asarray(positions, dtype=float)
        distances = np.asarray(distances, dtype=float)
        check_geometry(positions)

        if self.homogeneous:
            return self._solve_homogeneous(positions, distances)
        return self._solve_inhomogeneous(positions, distances)

    @staticmethod
    def _solve_inhomogeneous(positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
        # 2 (s_i - s_0) . x = |s_i|² - |s_0|² - d_i² + d_0²
        reference = positions[0]
        a = 2.0 * (positions[1:] - reference)
        sq_norms = np.sum(positions ** 2, axis=1)
        b = sq_norms[1:] - sq_norms[0] - distances[1:] ** 2 + distances[0] ** 2

        if a.shape[0] == a.shape[1]:
            try:
                x = np.linalg.solve(a, b)
            except np.linalg.LinAlgError as e:
                raise DegenerateSubsetError(f"Singular lateration system: {e}") from e
        else:
            x, _, rank, _ = np.linalg.lstsq(a, b, rcond=None)
            if rank < a.shape[1]:
                raise DegenerateSubsetError("Rank-deficient lateration system")

        if not np.all(np.isfinite(x)):
            raise DegenerateSubsetError("Non-finite lateration solution")
        return x

    @staticmethod
    def _solve_homogeneous(positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
        # [-2 s_i, 1, |s_i|² - d_i²] . [x, |x|², 1] = 0
        n, dims = positions.shape
        a = np.empty((n, dims + 2))
        a[:, :dims] = -2.0 * positions
        a[:, dims] = 1.0
        a[:, dims + 1] = np.sum(positions ** 2, axis=1) - distances ** 2

        # Column scaling keeps squared terms comparable to coordinates
        scale = np.linalg.norm(a, axis=0)
        scale[scale == 0] = 1.0
        _, singular_values, vt = np.linalg.svd(a / scale)

        # A second (near) null direction means the solution is not unique
        if n >= dims + 1 and singular_values[dims] < DEGENERACY_TOL * singular_values[0]:
            raise DegenerateSubsetError("Homogeneous system has no unique null vector")

        h = vt[-1] / scale
        if abs(h[-1]) < DEGENERACY_TOL * np.linalg.norm(h):
            raise DegenerateSubsetError("Homogeneous solution at infinity")

        x = h[:dims] / h[-1]
        if not np.all(np.isfinite(x)):
            raise DegenerateSubsetError("Non-finite lateration solution")
        return x


@dataclass
class NonLinearSolverConfig:
    """
    Configuration for Gauss-Newton lateration.

    Attributes:
        max_iterations: Maximum Gauss-Newton iterations
        convergence_tol_m: Step size below which iteration stops (m)
        damping: Diagonal regularization of the normal equations
    """

    max_iterations: int = 50
    convergence_tol_m: float = 1e-10
    damping: float = 1e-9

    def __post_init__(self):
        """Validate configuration."""
        if self.max_iterations < 1:
            raise InvalidArgumentError(f"max_iterations must be >= 1: {self.max_iterations}")
        if self.convergence_tol_m <= 0:
            raise InvalidArgumentError(
                f"convergence_tol_m must be positive: {self.convergence_tol_m}")
        if self.damping < 0:
            raise InvalidArgumentError(f"damping cannot be negative: {self.damping}")


def range_jacobian(position: np.ndarray, positions: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Predicted ranges and their Jacobian with respect to the position.

    Returns:
        Tuple of (ranges (n,), jacobian (n, d))
    """
    deltas = position - positions
    ranges = np.linalg.norm(deltas, axis=1)
    jacobian = np.zeros_like(deltas)
    valid = ranges > 1e-12
    jacobian[valid] = deltas[valid] / ranges[valid, None]
    return ranges, jacobian


class NonLinearLaterationSolver:
    """
    Weighted Gauss-Newton lateration.

    Minimizes sum_i w_i (|x - s_i| - d_i)².

    Usage:
        solver = NonLinearLaterationSolver()
        position, iterations = solver.solve(correspondences, initial_position)
    """

    def __init__(self, config: Optional[NonLinearSolverConfig] = None):
        """
        Initialize solver.

        Args:
            config: Solver configuration (uses defaults if None)
        """
        self.config = config or NonLinearSolverConfig()

    def solve(
        self,
        correspondences: Sequence[Correspondence],
        initial_position: Optional[np.ndarray] = None,
        weights: Optional[np.ndarray] = None,
    ) -> Tuple[np.ndarray, int]:
        """
        Refine position from correspondences.

        Args:
            correspondences: Correspondences (at least d + 1)
            initial_position: Starting point (centroid of sources if None)
            weights: Per-correspondence weights (1 / std² if None)

        Returns:
            Tuple of (position, iterations)
        """
        positions, distances, stds = correspondence_arrays(correspondences)
        if weights is None:
            weights = 1.0 / stds ** 2
        return self.solve_arrays(positions, distances, weights, initial_position)

    def solve_arrays(
        self,
        positions: np.ndarray,
        distances: np.ndarray,
        weights: np.ndarray,
        initial_position: Optional[np.ndarray] = None,
    ) -> Tuple[np.ndarray, int]:
        """
        Refine position from arrays.

        Raises:
            DegenerateSubsetError: If geometry is degenerate or iteration diverges
        """
        positions = np.asarray(positions, dtype=float)
        distances = np.asarray(distances, dtype=float)
        weights = np.asarray(weights, dtype=float)
        check_geometry(positions)
        dims = positions.shape[1]

        if initial_position is None:
            x = positions.mean(axis=0)
        else:
            x = np.array(initial_position, dtype=float).reshape(-1)
            if x.size != dims:
                raise InvalidArgumentError(
                    f"Initial position must have {dims} coordinates: {initial_position}")

        iteration = 0
        for iteration in range(self.config.max_iterations):
            ranges, jacobian = range_jacobian(x, positions)
            residuals = ranges - distances

            # Normal equations: J^T W J dx = -J^T W r
            jtw = jacobian.T * weights
            jtwj = jtw @ jacobian
            jtwr = jtw @ residuals
            damping = self.config.damping * max(np.trace(jtwj) / dims, 1.0)

            try:
                delta_x = np.linalg.solve(jtwj + damping * np.eye(dims), -jtwr)
            except np.linalg.LinAlgError:
                delta_x = np.linalg.lstsq(jtwj, -jtwr, rcond=None)[0]

            x = x + delta_x
            if not np.all(np.isfinite(x)):
                raise DegenerateSubsetError("Gauss-Newton iteration diverged")

            if np.linalg.norm(delta_x) < self.config.convergence_tol_m * max(1.0, np.linalg.norm(x)):
                break

        return x, iteration + 1
