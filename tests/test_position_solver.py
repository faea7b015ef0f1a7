"""
Unit tests for the gradient descent position solver.

Tests cover:
- Recovery of a known position from exact ranges
- Minimum anchor count (NO_FIX)
- Determinism for identical inputs
- Unconverged runs and their diagnostics
- Initial guess strategies
"""

import numpy as np
import pytest

from trilat_core.localization import (
    InitialGuess,
    PositionSolver,
    RangeObservation,
    SolverConfig,
)
from trilat_core.metrics import get_metrics
from trilat_core.proto import FixType

from tests.conftest import calculate_distance_3d


class TestSolverConfig:
    """Tests for SolverConfig defaults and validation."""

    def test_defaults(self):
        config = SolverConfig()

        assert config.max_iterations == 100
        assert config.step_size == 0.1
        assert config.convergence_threshold == 0.001
        assert config.initial_guess == InitialGuess.ORIGIN
        assert config.min_anchors == 3

    def test_initial_guess_from_string(self):
        config = SolverConfig(initial_guess="centroid")
        assert config.initial_guess == InitialGuess.CENTROID

    @pytest.mark.parametrize("kwargs", [
        {"max_iterations": 0},
        {"step_size": 0.0},
        {"convergence_threshold": -1.0},
        {"min_anchors": 0},
    ])
    def test_invalid_values_raise(self, kwargs):
        with pytest.raises(ValueError):
            SolverConfig(**kwargs)

    def test_unknown_strategy_raises(self):
        with pytest.raises(ValueError):
            SolverConfig(initial_guess="random")


class TestSolve:
    """Tests for PositionSolver.solve()."""

    def test_recovers_known_position(self, exact_observations, target_position):
        """Three coplanar anchors, exact ranges: converges to the target."""
        solver = PositionSolver()
        estimate = solver.solve(exact_observations)

        assert estimate.fix_type == FixType.FIX_3D
        assert estimate.converged
        assert estimate.iterations < 100
        assert estimate.num_anchors_used == 3
        assert estimate.anchor_ids == ["A0", "A1", "A2"]
        for got, want in zip(estimate.pos, target_position):
            assert got == pytest.approx(want, abs=0.01)
        assert estimate.residual_m < 0.01

    def test_counts_converged_solve(self, exact_observations):
        PositionSolver().solve(exact_observations)
        metrics = get_metrics()

        assert metrics.get_counter('solve_attempts') == 1
        assert metrics.get_counter('solve_converged') == 1
        assert metrics.get_histogram_stats('solve_iterations')['count'] == 1

    def test_two_anchors_no_fix(self, exact_observations):
        """Fewer than three anchors: no solve, NO_FIX."""
        estimate = PositionSolver().solve(exact_observations[:2])

        assert estimate.fix_type == FixType.NO_FIX
        assert not estimate.has_valid_fix
        assert get_metrics().get_counter('solve_attempts') == 0

    def test_unusable_distances_do_not_count(self, exact_observations):
        observations = list(exact_observations[:2]) + [
            RangeObservation("A2", (0.0, 4.0, 0.0), float("inf")),
        ]
        estimate = PositionSolver().solve(observations)

        assert estimate.fix_type == FixType.NO_FIX

    def test_no_fix_keeps_previous_position(self):
        estimate = PositionSolver().solve([], previous=(1.0, 2.0, 3.0))

        assert estimate.fix_type == FixType.NO_FIX
        assert estimate.pos == (1.0, 2.0, 3.0)

    def test_deterministic(self, exact_observations):
        """Identical inputs give bit-identical outputs."""
        solver = PositionSolver()
        first = solver.solve(exact_observations)
        second = solver.solve(exact_observations)

        assert first.pos == second.pos
        assert first.iterations == second.iterations

    def test_unconverged_still_returns_fix(self, exact_observations):
        """Hitting the iteration cap is reported, not raised."""
        solver = PositionSolver(SolverConfig(max_iterations=3))
        estimate = solver.solve(exact_observations)

        assert estimate.fix_type == FixType.FIX_3D
        assert not estimate.converged
        assert estimate.iterations == 3
        assert estimate.gradient_norm > solver.config.convergence_threshold
        assert get_metrics().get_counter('solve_unconverged') == 1

    def test_divergence_returns_no_fix(self, exact_observations):
        """A step size far too large for the geometry blows up to NO_FIX."""
        solver = PositionSolver(SolverConfig(step_size=1e200, max_iterations=50))
        estimate = solver.solve(exact_observations)

        assert estimate.fix_type == FixType.NO_FIX

    def test_more_anchors_than_minimum(self, anchor_positions):
        """Over-determined problem with an anchor off the plane."""
        target = (1.5, 1.5, 1.0)
        positions = list(anchor_positions) + [(4.0, 4.0, 3.0)]
        observations = [
            RangeObservation(f"A{i}", p, calculate_distance_3d(p, target))
            for i, p in enumerate(positions)
        ]

        solver = PositionSolver(SolverConfig(max_iterations=2000))
        estimate = solver.solve(observations, initial_guess=(1.0, 1.0, 0.5))

        assert estimate.num_anchors_used == 4
        for got, want in zip(estimate.pos, target):
            assert got == pytest.approx(want, abs=0.05)


class TestInitialGuess:
    """Tests for the initial guess strategies."""

    def test_origin(self):
        solver = PositionSolver()
        anchors = np.array([[0.0, 0.0, 0.0], [4.0, 0.0, 0.0], [0.0, 4.0, 0.0]])

        assert solver.initial_guess(anchors).tolist() == [0.0, 0.0, 0.0]

    def test_centroid(self):
        solver = PositionSolver(SolverConfig(initial_guess=InitialGuess.CENTROID))
        anchors = np.array([[0.0, 0.0, 0.0], [3.0, 0.0, 0.0], [0.0, 3.0, 3.0]])

        assert solver.initial_guess(anchors).tolist() == [1.0, 1.0, 1.0]

    def test_previous_falls_back_to_origin(self):
        solver = PositionSolver(SolverConfig(initial_guess=InitialGuess.PREVIOUS))
        anchors = np.zeros((3, 3))

        assert solver.initial_guess(anchors).tolist() == [0.0, 0.0, 0.0]
        assert solver.initial_guess(anchors, previous=(1.0, 2.0, 0.5)).tolist() == [1.0, 2.0, 0.5]

    def test_warm_start_needs_fewer_iterations(self, exact_observations, target_position):
        solver = PositionSolver(SolverConfig(initial_guess=InitialGuess.PREVIOUS))

        cold = solver.solve(exact_observations)
        warm = solver.solve(exact_observations, previous=target_position)

        assert warm.iterations < cold.iterations
