"""
Anchor and target state representation.

Immutable views returned by AnchorRegistry.snapshot(). They are built under
the registry read lock and never share mutable state with the registry, so
a reader holding one can never observe a partially updated record.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple
import time

from trilat_core.localization.signal_model import CalibrationParams
from trilat_core.proto.position_estimate import PositionEstimate


class ConnectionState(str, Enum):
    """Connection liveness of an anchor."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class AnchorState:
    """
    Anchor state at snapshot time.

    Attributes:
        anchor_id: Anchor identifier (e.g., "A0", "A1")
        hardware_id: Durable hardware identifier (MAC or peer address)
        position: Fixed position (X, Y, Z) in meters
        calibration: Anchor-specific calibration, None if using the default
        last_distance: Latest usable distance estimate (m), None if none
        last_rssi: Latest reported RSSI (dBm)
        last_seen: Epoch seconds of the last inbound frame
        last_measurement: Epoch seconds of the last distance-bearing report
        connection_state: CONNECTED while a session handle is attached
        eligible: True if the distance is positive and current at snapshot time
    """

    anchor_id: str
    hardware_id: str
    position: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    calibration: Optional[CalibrationParams] = None
    last_distance: Optional[float] = None
    last_rssi: Optional[float] = None
    last_seen: float = 0.0
    last_measurement: Optional[float] = None
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    eligible: bool = False

    @property
    def is_connected(self) -> bool:
        return self.connection_state == ConnectionState.CONNECTED

    def last_seen_age(self, now: Optional[float] = None) -> float:
        """Seconds since the last inbound frame."""
        return (time.time() if now is None else now) - self.last_seen

    def to_dict(self, now: Optional[float] = None) -> dict:
        """
        Serialize to dictionary.

        Returns:
            Dict representation suitable for JSON/logging
        """
        return {
            'id': self.anchor_id,
            'mac': self.hardware_id,
            'status': self.connection_state.value,
            'position': {
                'X': self.position[0],
                'Y': self.position[1],
                'Z': self.position[2],
            },
            'calibration': self.calibration.to_dict() if self.calibration else None,
            'last_distance': self.last_distance,
            'last_rssi': self.last_rssi,
            'last_seen_age_s': round(self.last_seen_age(now), 3),
            'eligible': self.eligible,
        }


@dataclass(frozen=True)
class TargetState:
    """
    The single tracked target.

    Attributes:
        target_id: Target identifier ("PHONE")
        position: Last computed position (X, Y, Z)
        updated_at: Epoch seconds of the last position write, None if never
        last_fix: Diagnostics of the solve that produced the position
    """

    target_id: str = "PHONE"
    position: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    updated_at: Optional[float] = None
    last_fix: Optional[PositionEstimate] = None

    def to_dict(self) -> dict:
        return {
            'id': self.target_id,
            'position': {
                'X': self.position[0],
                'Y': self.position[1],
                'Z': self.position[2],
            },
            'updated_at': self.updated_at,
            'last_fix': self.last_fix.to_dict() if self.last_fix else None,
        }


@dataclass(frozen=True)
class RegistrySnapshot:
    """Read-only copy of every anchor plus the target."""

    time: float
    anchors: Dict[str, AnchorState] = field(default_factory=dict)
    target: TargetState = field(default_factory=TargetState)

    def get_eligible_anchors(self) -> list:
        """Anchor IDs with a positive, current distance estimate."""
        return sorted(aid for aid, state in self.anchors.items() if state.eligible)

    def get_connected_anchors(self) -> list:
        """Anchor IDs with an attached session."""
        return sorted(aid for aid, state in self.anchors.items() if state.is_connected)
