"""
Anchor Registry.

Owns every anchor record and the single target record. All mutation happens
under the exclusive side of a reader/writer lock for its full duration;
snapshots and eligible-set copies take the shared side. Callers only ever
receive immutable views, never the internal records.

Anchor records are never deleted: a disconnect clears the connection handle
so that position and calibration survive a reconnect of the same hardware.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import logging
import math
import time

from trilat_core.localization.anchor_state import (
    AnchorState,
    ConnectionState,
    RegistrySnapshot,
    TargetState,
)
from trilat_core.localization.position_solver import RangeObservation
from trilat_core.localization.rw_lock import ReadWriteLock
from trilat_core.localization.signal_model import (
    CalibrationParams,
    DEFAULT_CALIBRATION,
    is_usable_distance,
    rssi_to_distance,
)
from trilat_core.proto.position_estimate import PositionEstimate

logger = logging.getLogger(__name__)


class UnknownAnchorError(LookupError):
    """Operation addressed an anchor id the registry has never assigned."""

    def __init__(self, anchor_id: str):
        super().__init__(f"Unknown anchor id: {anchor_id}")
        self.anchor_id = anchor_id


@dataclass
class RegistryConfig:
    """
    Configuration for the anchor registry.

    Attributes:
        stale_after_s: Max age of a distance for the anchor to stay eligible
                       (None disables the age check)
        id_prefix: Prefix of sequentially allocated anchor ids
        target_id: ID of the tracked target
    """

    stale_after_s: Optional[float] = 30.0
    id_prefix: str = "A"
    target_id: str = "PHONE"


@dataclass(frozen=True)
class Registration:
    """
    Outcome of register_or_reuse().

    Attributes:
        anchor_id: Assigned (or reused) anchor id
        is_new: True if a new record was created
        displaced_handle: Previous active handle replaced by this
                          registration; the caller must close it
    """

    anchor_id: str
    is_new: bool
    displaced_handle: Any = None


@dataclass
class _AnchorRecord:
    anchor_id: str
    hardware_id: str
    position: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    calibration: Optional[CalibrationParams] = None
    last_distance: Optional[float] = None
    last_rssi: Optional[float] = None
    last_seen: float = 0.0
    last_measurement: Optional[float] = None
    handle: Any = None


class AnchorRegistry:
    """
    Concurrent-safe registry of anchors and the target.

    Usage:
        registry = AnchorRegistry()
        reg = registry.register_or_reuse("AA:BB:CC:DD:EE:01", handle=session)
        registry.set_position(reg.anchor_id, (0.0, 0.0, 2.0))
        registry.record_measurement(reg.anchor_id, rssi=-65)

        observations, version = registry.eligible_observations()
    """

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        default_calibration: Optional[CalibrationParams] = None,
        clock=time.time,
    ):
        """
        Initialize registry.

        Args:
            config: Registry configuration (uses defaults if None)
            default_calibration: Fallback calibration pair
            clock: Time source returning epoch seconds
        """
        self.config = config or RegistryConfig()
        self._clock = clock
        self._lock = ReadWriteLock()
        self._anchors: Dict[str, _AnchorRecord] = {}
        self._by_hardware: Dict[str, str] = {}
        self._next_index = 0
        self._default_calibration = default_calibration or DEFAULT_CALIBRATION
        self._target = TargetState(target_id=self.config.target_id)
        # Bumped on every distance-bearing measurement; orders target writes
        self._version = 0
        self._target_version = -1

    # =========================================================================
    # Mutations (exclusive)
    # =========================================================================

    def register_or_reuse(self, hardware_id: str, handle: Any = None) -> Registration:
        """
        Look up an anchor by hardware id, creating it on first sight.

        Reusing an existing record attaches the new handle and refreshes
        liveness. If a different handle was active it is returned as
        displaced_handle (last completed registration wins).

        Args:
            hardware_id: Durable hardware identifier (e.g. MAC address)
            handle: Connection handle to attach

        Returns:
            Registration with the anchor id
        """
        if not hardware_id:
            raise ValueError("hardware_id must be non-empty")

        with self._lock.write_locked():
            now = self._clock()
            anchor_id = self._by_hardware.get(hardware_id)

            if anchor_id is None:
                anchor_id = f"{self.config.id_prefix}{self._next_index}"
                self._next_index += 1
                self._anchors[anchor_id] = _AnchorRecord(
                    anchor_id=anchor_id,
                    hardware_id=hardware_id,
                    last_seen=now,
                    handle=handle,
                )
                self._by_hardware[hardware_id] = anchor_id
                registration = Registration(anchor_id, is_new=True)
            else:
                record = self._anchors[anchor_id]
                displaced = record.handle
                if displaced is handle:
                    displaced = None
                record.handle = handle
                record.last_seen = now
                registration = Registration(anchor_id, is_new=False, displaced_handle=displaced)

        logger.info(
            f"{'Registered' if registration.is_new else 'Reused'} anchor "
            f"{registration.anchor_id} for {hardware_id}"
        )
        return registration

    def record_measurement(
        self,
        anchor_id: str,
        rssi: Optional[float] = None,
        distance: Optional[float] = None,
    ) -> Optional[float]:
        """
        Store the latest measurement of an anchor (last value wins).

        A directly reported usable distance is taken as is; otherwise the
        distance is derived from rssi with the anchor's calibration.

        Args:
            anchor_id: Anchor id
            rssi: Reported RSSI (dBm)
            distance: Reported distance (m)

        Returns:
            The usable distance stored, or None if no usable distance
            resulted (the anchor is then not eligible)

        Raises:
            UnknownAnchorError: If anchor_id is not registered
        """
        with self._lock.write_locked():
            record = self._require(anchor_id)
            now = self._clock()
            record.last_seen = now

            if rssi is not None:
                record.last_rssi = rssi

            if rssi is None and distance is None:
                return None

            candidate = distance if is_usable_distance(distance) else None
            if candidate is None and rssi is not None:
                candidate = rssi_to_distance(rssi, record.calibration or self._default_calibration)

            record.last_measurement = now
            record.last_distance = candidate if is_usable_distance(candidate) else None
            self._version += 1
            return record.last_distance

    def touch(self, anchor_id: str):
        """Refresh the liveness timestamp of an anchor."""
        with self._lock.write_locked():
            self._require(anchor_id).last_seen = self._clock()

    def set_position(self, anchor_id: str, position: Tuple[float, float, float]):
        """
        Set the fixed position of an anchor.

        Raises:
            UnknownAnchorError: If anchor_id is not registered
            ValueError: If the position is not three finite numbers
        """
        position = tuple(float(c) for c in position)
        if len(position) != 3 or not all(math.isfinite(c) for c in position):
            raise ValueError(f"Position must be three finite numbers: {position}")

        with self._lock.write_locked():
            self._require(anchor_id).position = position

        logger.info(f"Set position for anchor {anchor_id}: ({position[0]:.2f}, {position[1]:.2f}, {position[2]:.2f})")

    def set_calibration(self, anchor_id: str, params: CalibrationParams):
        """
        Set the calibration pair of an anchor.

        Raises:
            UnknownAnchorError: If anchor_id is not registered
        """
        with self._lock.write_locked():
            self._require(anchor_id).calibration = params

        logger.info(
            f"Updated calibration for anchor {anchor_id}: "
            f"RSSI@1m={params.rssi_at_1m:.2f}, PathLoss={params.path_loss:.2f}"
        )

    def set_default_calibration(self, params: CalibrationParams):
        """Replace the process-wide fallback calibration pair."""
        with self._lock.write_locked():
            self._default_calibration = params

        logger.info(
            f"Updated default calibration: "
            f"RSSI@1m={params.rssi_at_1m:.2f}, PathLoss={params.path_loss:.2f}"
        )

    def mark_disconnected(self, anchor_id: str, handle: Any = None) -> bool:
        """
        Detach the connection handle of an anchor, keeping the record.

        Args:
            anchor_id: Anchor id
            handle: If given, only detach when it is still the active handle

        Returns:
            True if the anchor was marked disconnected
        """
        with self._lock.write_locked():
            record = self._anchors.get(anchor_id)
            if record is None or record.handle is None:
                return False
            if handle is not None and record.handle is not handle:
                return False
            record.handle = None

        logger.info(f"Anchor {anchor_id} marked as disconnected")
        return True

    def update_target(self, estimate: PositionEstimate, version: Optional[int] = None) -> bool:
        """
        Write the target position from a valid fix.

        Args:
            estimate: Solver output
            version: Measurement version the solve was computed from; a
                     write older than the current one is ignored

        Returns:
            True if the target was updated
        """
        if not estimate.has_valid_fix:
            return False

        with self._lock.write_locked():
            if version is not None:
                if version < self._target_version:
                    return False
                self._target_version = version
            self._target = TargetState(
                target_id=self._target.target_id,
                position=tuple(estimate.pos),
                updated_at=self._clock(),
                last_fix=estimate,
            )
        return True

    # =========================================================================
    # Reads (shared)
    # =========================================================================

    def eligible_observations(self) -> Tuple[List[RangeObservation], int]:
        """
        Copy of the anchors eligible for solving.

        Returns:
            Tuple of (observations sorted by anchor id, measurement version)
        """
        with self._lock.read_locked():
            now = self._clock()
            observations = [
                RangeObservation(r.anchor_id, r.position, r.last_distance)
                for r in self._anchors.values()
                if self._is_eligible(r, now)
            ]
            version = self._version
        observations.sort(key=lambda o: o.anchor_id)
        return observations, version

    def snapshot(self) -> RegistrySnapshot:
        """
        Read-only copy of all anchors and the target.

        Returns:
            RegistrySnapshot built under the shared lock
        """
        with self._lock.read_locked():
            now = self._clock()
            anchors = {aid: self._view(r, now) for aid, r in self._anchors.items()}
            target = self._target
        return RegistrySnapshot(time=now, anchors=anchors, target=target)

    def get(self, anchor_id: str) -> AnchorState:
        """
        Read-only view of one anchor.

        Raises:
            UnknownAnchorError: If anchor_id is not registered
        """
        with self._lock.read_locked():
            return self._view(self._require(anchor_id), self._clock())

    def target(self) -> TargetState:
        """Current target state."""
        with self._lock.read_locked():
            return self._target

    def get_calibration(self, anchor_id: Optional[str] = None) -> CalibrationParams:
        """Effective calibration of an anchor, or the default pair."""
        with self._lock.read_locked():
            record = self._anchors.get(anchor_id) if anchor_id else None
            if record is not None and record.calibration is not None:
                return record.calibration
            return self._default_calibration

    def connected_handles(self) -> List[Tuple[str, Any]]:
        """(anchor_id, handle) pairs of every connected anchor."""
        with self._lock.read_locked():
            return [
                (aid, r.handle) for aid, r in sorted(self._anchors.items())
                if r.handle is not None
            ]

    def node_list(self) -> List[Dict[str, str]]:
        """Known anchors as [{id, mac}] sorted by id."""
        with self._lock.read_locked():
            return [
                {'id': aid, 'mac': r.hardware_id}
                for aid, r in sorted(self._anchors.items())
            ]

    def __contains__(self, anchor_id: str) -> bool:
        with self._lock.read_locked():
            return anchor_id in self._anchors

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._anchors)

    # =========================================================================
    # Helpers (caller holds the lock)
    # =========================================================================

    def _require(self, anchor_id: str) -> _AnchorRecord:
        record = self._anchors.get(anchor_id)
        if record is None:
            raise UnknownAnchorError(anchor_id)
        return record

    def _is_eligible(self, record: _AnchorRecord, now: float) -> bool:
        if not is_usable_distance(record.last_distance):
            return False
        stale_after = self.config.stale_after_s
        if stale_after is None:
            return True
        return record.last_measurement is not None and now - record.last_measurement <= stale_after

    def _view(self, record: _AnchorRecord, now: float) -> AnchorState:
        return AnchorState(
            anchor_id=record.anchor_id,
            hardware_id=record.hardware_id,
            position=record.position,
            calibration=record.calibration,
            last_distance=record.last_distance,
            last_rssi=record.last_rssi,
            last_seen=record.last_seen,
            last_measurement=record.last_measurement,
            connection_state=(
                ConnectionState.CONNECTED if record.handle is not None
                else ConnectionState.DISCONNECTED
            ),
            eligible=self._is_eligible(record, now),
        )
