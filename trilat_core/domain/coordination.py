"""
Coordination Service.

Owns the anchor registry and the position solver, and is the single entry
point used by anchor sessions and the HTTP layer:

- Sessions register anchors, report measurements and disconnect
- Every accepted distance-bearing report triggers a solve over all
  eligible anchors; a valid fix is written to the target
- The read path (visualization, status) works on registry snapshots

The solver never runs under the registry lock: eligible anchors are copied
first and the result is written back with a single exclusive update.
"""

from typing import Any, Optional, Tuple
import asyncio
import logging

from trilat_core.localization.anchor_registry import (
    AnchorRegistry,
    Registration,
    UnknownAnchorError,
)
from trilat_core.localization.position_solver import InitialGuess, PositionSolver
from trilat_core.localization.signal_model import CalibrationParams
from trilat_core.proto.anchor_messages import encode_node_list
from trilat_core.proto.position_estimate import PositionEstimate
from trilat_core.metrics import get_metrics

logger = logging.getLogger(__name__)

# Calibration requests addressed to this id update the fallback pair
DEFAULT_CALIBRATION_ID = "default"


class CoordinationService:
    """
    Coordinate anchor sessions, the registry and the solver.

    Usage:
        service = CoordinationService()

        reg = service.register_anchor("AA:BB:CC:DD:EE:01", session)
        service.update_anchor_position(reg.anchor_id, (0.0, 0.0, 2.0))
        estimate = service.handle_report(reg.anchor_id, rssi=-62)

        data = service.visualization()
    """

    def __init__(
        self,
        registry: Optional[AnchorRegistry] = None,
        solver: Optional[PositionSolver] = None,
    ):
        """
        Initialize coordination service.

        Args:
            registry: Anchor registry (new default registry if None)
            solver: Position solver (default configuration if None)
        """
        self.registry = registry or AnchorRegistry()
        self.solver = solver or PositionSolver(target_id=self.registry.config.target_id)
        self.metrics = get_metrics()

    @property
    def target_id(self) -> str:
        return self.registry.config.target_id

    # =========================================================================
    # Session path
    # =========================================================================

    def register_anchor(self, hardware_id: str, handle: Any = None) -> Registration:
        """
        Register (or re-attach) an anchor for a session.

        If another session was attached to the same hardware it is closed;
        the latest registration wins.
        """
        registration = self.registry.register_or_reuse(hardware_id, handle)
        self.metrics.increment('registrations')

        displaced = registration.displaced_handle
        if displaced is not None:
            logger.info(f"Anchor {registration.anchor_id} reconnected with new connection, closing previous")
            displaced.close()

        return registration

    def broadcast_node_list(self):
        """Send the known anchor list to every connected anchor."""
        nodes = self.registry.node_list()
        for anchor_id, handle in self.registry.connected_handles():
            handle.send_node_list(nodes)
        logger.debug(f"Broadcast node list of {len(nodes)} anchors")

    def touch(self, anchor_id: str):
        """Refresh liveness of an anchor."""
        try:
            self.registry.touch(anchor_id)
        except UnknownAnchorError:
            self.metrics.increment_drop('unknown_anchor')
            raise

    def disconnect(self, anchor_id: str, handle: Any = None) -> bool:
        """Mark an anchor disconnected if handle is still its active session."""
        return self.registry.mark_disconnected(anchor_id, handle)

    def handle_report(
        self,
        anchor_id: str,
        rssi: Optional[float] = None,
        distance: Optional[float] = None,
    ) -> Optional[PositionEstimate]:
        """
        Record a distance-bearing report and attempt a solve.

        Args:
            anchor_id: Reporting anchor
            rssi: Reported RSSI (dBm)
            distance: Reported distance (m)

        Returns:
            The solver estimate, or None if no solve was attempted
        """
        usable = self.registry.record_measurement(anchor_id, rssi=rssi, distance=distance)

        if usable is None:
            self.metrics.increment_drop('invalid_distance')
            logger.warning(
                f"No usable distance from {anchor_id} (rssi={rssi}, distance={distance})"
            )
            return None

        self.metrics.increment('reports_accepted')
        logger.debug(f"Distance from {anchor_id}: RSSI={rssi}, Distance={usable:.2f}m")

        return self.try_solve()

    def try_solve(self) -> Optional[PositionEstimate]:
        """
        Solve the target position from all eligible anchors.

        Returns:
            The solver estimate, or None if there are not enough eligible
            anchors (the target keeps its previous position)
        """
        observations, version = self.registry.eligible_observations()

        if len(observations) < self.solver.config.min_anchors:
            self.metrics.increment_drop('insufficient_anchors')
            logger.debug(
                f"Not enough anchors with distance measurements for trilateration: "
                f"{len(observations)}"
            )
            return None

        previous = None
        if self.solver.config.initial_guess == InitialGuess.PREVIOUS:
            target = self.registry.target()
            if target.updated_at is not None:
                previous = target.position

        estimate = self.solver.solve(observations, previous=previous)

        if self.registry.update_target(estimate, version):
            x, y, z = estimate.pos
            logger.info(
                f"Updated {self.target_id} position: ({x:.2f}, {y:.2f}, {z:.2f})"
                f"{'' if estimate.converged else ' [unconverged]'}"
            )

        return estimate

    # =========================================================================
    # Administrative path
    # =========================================================================

    def update_anchor_position(self, anchor_id: str, position: Tuple[float, float, float]):
        """
        Set the fixed position of an anchor.

        Raises:
            UnknownAnchorError: If the anchor id is unknown
            ValueError: If the position is invalid
        """
        try:
            self.registry.set_position(anchor_id, position)
        except UnknownAnchorError:
            self.metrics.increment_drop('unknown_anchor')
            raise

    def update_calibration(self, anchor_id: str, rssi_at_1m: float, path_loss: float):
        """
        Set the calibration pair of an anchor, or the default pair.

        Raises:
            UnknownAnchorError: If the anchor id is unknown
            ValueError: If the calibration pair is invalid
        """
        params = CalibrationParams(rssi_at_1m=float(rssi_at_1m), path_loss=float(path_loss))

        if anchor_id == DEFAULT_CALIBRATION_ID:
            self.registry.set_default_calibration(params)
            return

        try:
            self.registry.set_calibration(anchor_id, params)
        except UnknownAnchorError:
            self.metrics.increment_drop('unknown_anchor')
            raise

    # =========================================================================
    # Read path
    # =========================================================================

    def visualization(self) -> dict:
        """
        Anchor and target positions for the visualization client.

        Returns:
            {"nodes": {id: {X, Y, Z}}, "clients": {target_id: {X, Y, Z}}}
        """
        snapshot = self.registry.snapshot()

        nodes = {
            anchor_id: {'X': s.position[0], 'Y': s.position[1], 'Z': s.position[2]}
            for anchor_id, s in sorted(snapshot.anchors.items())
        }
        target = snapshot.target

        return {
            'nodes': nodes,
            'clients': {
                target.target_id: {
                    'X': target.position[0],
                    'Y': target.position[1],
                    'Z': target.position[2],
                },
            },
        }

    def status(self) -> dict:
        """Anchor roster, liveness summary, target and metrics."""
        snapshot = self.registry.snapshot()

        return {
            'total_nodes': len(snapshot.anchors),
            'connected_nodes': len(snapshot.get_connected_anchors()),
            'eligible_nodes': len(snapshot.get_eligible_anchors()),
            'nodes': {
                anchor_id: state.to_dict(now=snapshot.time)
                for anchor_id, state in sorted(snapshot.anchors.items())
            },
            'default_calibration': self.registry.get_calibration().to_dict(),
            'target': snapshot.target.to_dict(),
            'metrics': self.metrics.to_dict(),
        }

    def log_status(self):
        """Log a full registry snapshot."""
        snapshot = self.registry.snapshot()

        logger.info("=== Node Status ===")
        logger.info(f"Total nodes: {len(snapshot.anchors)}")

        for anchor_id, state in sorted(snapshot.anchors.items()):
            x, y, z = state.position
            logger.info(
                f"Node {anchor_id}: {state.connection_state.value.upper()}, "
                f"Position: ({x:.2f}, {y:.2f}, {z:.2f}), "
                f"Last seen: {state.last_seen_age(snapshot.time):.0f}s ago"
            )

        if snapshot.anchors:
            x, y, z = snapshot.target.position
            logger.info(f"{snapshot.target.target_id} position: ({x:.2f}, {y:.2f}, {z:.2f})")
        logger.info("===================")

    async def run_status_reporter(self, interval_s: float):
        """Log a registry snapshot every interval_s seconds until cancelled."""
        while True:
            await asyncio.sleep(interval_s)
            self.log_status()
