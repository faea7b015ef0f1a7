"""
Localization Module: Signal model, position solver, anchor registry.

Key classes:
- CalibrationParams / rssi_to_distance: RSSI -> distance path loss model
- PositionSolver: Gradient descent multilateration of the target
- AnchorRegistry: Concurrent-safe anchor records and the target
- ReadWriteLock: Shared/exclusive lock guarding the registry
"""

from .signal_model import (
    CalibrationParams,
    DEFAULT_CALIBRATION,
    rssi_to_distance,
    is_usable_distance,
)
from .position_solver import (
    PositionSolver,
    SolverConfig,
    InitialGuess,
    RangeObservation,
)
from .anchor_state import (
    AnchorState,
    ConnectionState,
    RegistrySnapshot,
    TargetState,
)
from .anchor_registry import (
    AnchorRegistry,
    RegistryConfig,
    Registration,
    UnknownAnchorError,
)
from .rw_lock import ReadWriteLock

__all__ = [
    # Signal model
    'CalibrationParams',
    'DEFAULT_CALIBRATION',
    'rssi_to_distance',
    'is_usable_distance',
    # Solver
    'PositionSolver',
    'SolverConfig',
    'InitialGuess',
    'RangeObservation',
    # Registry
    'AnchorState',
    'ConnectionState',
    'RegistrySnapshot',
    'TargetState',
    'AnchorRegistry',
    'RegistryConfig',
    'Registration',
    'UnknownAnchorError',
    'ReadWriteLock',
]
