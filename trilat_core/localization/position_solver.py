"""
Target Position Solver (gradient descent multilateration).

Minimizes the sum of squared range residuals

    f(p) = sum_i (||p - a_i|| - d_i)^2

over the candidate position p, given anchor positions a_i and measured
distances d_i, using fixed-step gradient descent. The run stops early when
the gradient magnitude drops below the convergence threshold, otherwise it
returns the last candidate after max_iterations. Non-convergence is not an
error: it is reported through PositionEstimate.converged.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple
import logging
import time

import numpy as np

from trilat_core.proto.position_estimate import PositionEstimate, FixType, create_no_fix
from trilat_core.localization.signal_model import is_usable_distance
from trilat_core.metrics import get_metrics

logger = logging.getLogger(__name__)


class InitialGuess(str, Enum):
    """Strategy for the starting candidate of each solve."""

    ORIGIN = "origin"        # Coordinate origin every run
    CENTROID = "centroid"    # Mean of the anchor positions
    PREVIOUS = "previous"    # Warm start from the previous fix


@dataclass
class SolverConfig:
    """
    Configuration for the position solver.

    Attributes:
        max_iterations: Iteration cap
        step_size: Gradient descent learning rate
        convergence_threshold: Stop when the gradient norm is below this
        initial_guess: Starting point strategy
        min_anchors: Minimum eligible anchors needed for a solve
    """

    max_iterations: int = 100
    step_size: float = 0.1
    convergence_threshold: float = 0.001
    initial_guess: InitialGuess = InitialGuess.ORIGIN
    min_anchors: int = 3

    def __post_init__(self):
        self.initial_guess = InitialGuess(self.initial_guess)
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1: {self.max_iterations}")
        if self.step_size <= 0:
            raise ValueError(f"step_size must be positive: {self.step_size}")
        if self.convergence_threshold <= 0:
            raise ValueError(f"convergence_threshold must be positive: {self.convergence_threshold}")
        if self.min_anchors < 1:
            raise ValueError(f"min_anchors must be >= 1: {self.min_anchors}")


@dataclass(frozen=True)
class RangeObservation:
    """One anchor position with its measured distance to the target."""

    anchor_id: str
    position: Tuple[float, float, float]
    distance_m: float


class PositionSolver:
    """
    Solve the target position from anchor ranges.

    Usage:
        solver = PositionSolver(SolverConfig())

        observations = [
            RangeObservation("A0", (0.0, 0.0, 0.0), 2.236),
            RangeObservation("A1", (4.0, 0.0, 0.0), 2.236),
            RangeObservation("A2", (0.0, 4.0, 0.0), 3.606),
        ]
        estimate = solver.solve(observations)

        if estimate.has_valid_fix:
            print(f"Target position: {estimate.pos}")
    """

    def __init__(self, config: Optional[SolverConfig] = None, target_id: str = "PHONE"):
        """
        Initialize position solver.

        Args:
            config: Solver configuration (uses defaults if None)
            target_id: ID stamped on produced estimates
        """
        self.config = config or SolverConfig()
        self.target_id = target_id
        self.metrics = get_metrics()

    def initial_guess(
        self,
        anchor_positions: np.ndarray,
        previous: Optional[Sequence[float]] = None
    ) -> np.ndarray:
        """
        Starting candidate for a run according to the configured strategy.

        Args:
            anchor_positions: (n, 3) array of anchor positions
            previous: Previous fix, used by the PREVIOUS strategy

        Returns:
            Starting position as a float array of shape (3,)
        """
        strategy = self.config.initial_guess
        if strategy == InitialGuess.CENTROID and len(anchor_positions):
            return anchor_positions.mean(axis=0)
        if strategy == InitialGuess.PREVIOUS and previous is not None:
            return np.asarray(previous, dtype=float)
        return np.zeros(3)

    def solve(
        self,
        observations: List[RangeObservation],
        initial_guess: Optional[Sequence[float]] = None,
        previous: Optional[Sequence[float]] = None,
    ) -> PositionEstimate:
        """
        Solve target position from range observations.

        Args:
            observations: Anchor positions with measured distances
            initial_guess: Explicit starting point (overrides the strategy)
            previous: Previous fix for the PREVIOUS strategy

        Returns:
            PositionEstimate; NO_FIX if fewer than min_anchors usable ranges
        """
        usable = [o for o in observations if is_usable_distance(o.distance_m)]
        t_solve = time.time()

        if len(usable) < self.config.min_anchors:
            last = tuple(previous) if previous is not None else (0.0, 0.0, 0.0)
            return create_no_fix(self.target_id, t_solve, last)

        self.metrics.increment('solve_attempts')

        anchors = np.array([o.position for o in usable], dtype=float)
        measured = np.array([o.distance_m for o in usable], dtype=float)

        if initial_guess is not None:
            x = np.asarray(initial_guess, dtype=float).copy()
        else:
            x = self.initial_guess(anchors, previous)

        step = self.config.step_size
        threshold = self.config.convergence_threshold
        converged = False
        gradient_norm = 0.0
        iterations = 0

        for iterations in range(1, self.config.max_iterations + 1):
            diff = x - anchors
            computed = np.linalg.norm(diff, axis=1)
            residuals = computed - measured

            # Anchors coinciding with the candidate have no defined direction
            mask = computed > 0
            gradient = np.sum(
                2.0 * residuals[mask, None] * diff[mask] / computed[mask, None],
                axis=0,
            )

            x = x - step * gradient

            gradient_norm = float(np.linalg.norm(gradient))
            if gradient_norm < threshold:
                converged = True
                break

        if not np.all(np.isfinite(x)):
            # Step size too large for this geometry
            self.metrics.increment('solve_unconverged')
            logger.warning(f"Solve diverged after {iterations} iterations")
            last = tuple(previous) if previous is not None else (0.0, 0.0, 0.0)
            return create_no_fix(self.target_id, t_solve, last)

        final_residuals = np.linalg.norm(x - anchors, axis=1) - measured
        sum_squared_error = float(np.sum(final_residuals ** 2))
        residual_rms = float(np.sqrt(np.mean(final_residuals ** 2)))

        if converged:
            self.metrics.increment('solve_converged')
            logger.debug(
                f"Solve converged after {iterations} iterations, "
                f"residual {residual_rms:.4f} m"
            )
        else:
            self.metrics.increment('solve_unconverged')
            logger.warning(
                f"Solve did not converge after {iterations} iterations, "
                f"gradient {gradient_norm:.6f}, residual {residual_rms:.4f} m"
            )

        self.metrics.record_histogram('solve_iterations', iterations)
        self.metrics.record_histogram('solve_residual_m', residual_rms)

        return PositionEstimate(
            target_id=self.target_id,
            t_solve=t_solve,
            fix_type=FixType.FIX_3D,
            pos=(float(x[0]), float(x[1]), float(x[2])),
            num_anchors_used=len(usable),
            anchor_ids=[o.anchor_id for o in usable],
            residual_m=residual_rms,
            sum_squared_error=sum_squared_error,
            iterations=iterations,
            converged=converged,
            gradient_norm=gradient_norm,
        )
