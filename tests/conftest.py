"""
Pytest configuration and shared fixtures for trilateration hub tests.

Provides reusable fixtures for the signal model, solver, registry,
coordination service and anchor session tests.
"""

import sys
import math
from pathlib import Path
from typing import List, Tuple

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from trilat_core.domain import CoordinationService
from trilat_core.localization import (
    AnchorRegistry,
    PositionSolver,
    RangeObservation,
    RegistryConfig,
)
from trilat_core.metrics import reset_metrics


# =============================================================================
# Global State
# =============================================================================


@pytest.fixture(autouse=True)
def clean_metrics():
    """Every test starts with zeroed global metrics."""
    reset_metrics()
    yield
    reset_metrics()


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Anchor Layout Fixtures
# =============================================================================


@pytest.fixture
def anchor_positions() -> List[Tuple[float, float, float]]:
    """
    Three coplanar anchors used across solver and service tests.

    Returns:
        List of (x, y, z) tuples in meters.
    """
    return [
        (0.0, 0.0, 0.0),
        (4.0, 0.0, 0.0),
        (0.0, 4.0, 0.0),
    ]


@pytest.fixture
def target_position() -> Tuple[float, float, float]:
    return (2.0, 1.0, 0.0)


@pytest.fixture
def exact_observations(anchor_positions, target_position) -> List[RangeObservation]:
    """Noise-free ranges from each anchor to target_position."""
    return [
        RangeObservation(f"A{i}", pos, calculate_distance_3d(pos, target_position))
        for i, pos in enumerate(anchor_positions)
    ]


# =============================================================================
# Registry / Service Fixtures
# =============================================================================


@pytest.fixture
def registry(clock) -> AnchorRegistry:
    """Registry driven by the fake clock."""
    return AnchorRegistry(config=RegistryConfig(), clock=clock)


@pytest.fixture
def service(registry) -> CoordinationService:
    return CoordinationService(registry=registry, solver=PositionSolver())


class RecordingHandle:
    """Stand-in for a session handle: records frames and close calls."""

    def __init__(self):
        self.closed = False
        self.node_lists = []

    def close(self):
        self.closed = True

    def send_node_list(self, nodes):
        self.node_lists.append(nodes)


@pytest.fixture
def handle_factory():
    return RecordingHandle


# =============================================================================
# Helper Functions
# =============================================================================


def calculate_distance_3d(
    p1: Tuple[float, float, float], p2: Tuple[float, float, float]
) -> float:
    """
    Calculate Euclidean distance between two 3D points.

    Args:
        p1: First point (x, y, z).
        p2: Second point (x, y, z).

    Returns:
        Distance in the same units as input.
    """
    return math.sqrt(
        (p1[0] - p2[0]) ** 2 + (p1[1] - p2[1]) ** 2 + (p1[2] - p2[2]) ** 2
    )
