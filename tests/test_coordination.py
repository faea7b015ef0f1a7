"""
Unit tests for the coordination service.

Tests cover:
- Registration and displacement of previous sessions
- Report handling and solve triggering
- Insufficient anchors leave the target unchanged
- Administrative position and calibration updates
- Visualization and status payloads
"""

import asyncio
import logging

import pytest

from trilat_core.domain import CoordinationService, DEFAULT_CALIBRATION_ID
from trilat_core.localization import (
    AnchorRegistry,
    InitialGuess,
    PositionSolver,
    SolverConfig,
    UnknownAnchorError,
)
from trilat_core.metrics import get_metrics
from trilat_core.proto import FixType

from tests.conftest import calculate_distance_3d


def place_anchors(service, positions, handle_factory=None):
    """Register one anchor per position and set its coordinates."""
    ids = []
    for i, pos in enumerate(positions):
        handle = handle_factory() if handle_factory else None
        reg = service.register_anchor(f"AA:00:00:00:00:{i:02d}", handle)
        service.update_anchor_position(reg.anchor_id, pos)
        ids.append(reg.anchor_id)
    return ids


class TestRegistration:
    """Tests for register_anchor()."""

    def test_counts_registrations(self, service):
        service.register_anchor("AA:00:00:00:00:01")
        service.register_anchor("AA:00:00:00:00:01")

        assert get_metrics().get_counter('registrations') == 2

    def test_displaced_session_closed(self, service, handle_factory):
        old, new = handle_factory(), handle_factory()
        service.register_anchor("AA:00:00:00:00:01", old)
        service.register_anchor("AA:00:00:00:00:01", new)

        assert old.closed
        assert not new.closed

    def test_broadcast_node_list(self, service, handle_factory):
        first, second = handle_factory(), handle_factory()
        service.register_anchor("AA:00:00:00:00:01", first)
        service.register_anchor("AA:00:00:00:00:02", second)
        service.broadcast_node_list()

        expected = [
            {'id': 'A0', 'mac': 'AA:00:00:00:00:01'},
            {'id': 'A1', 'mac': 'AA:00:00:00:00:02'},
        ]
        assert first.node_lists == [expected]
        assert second.node_lists == [expected]

    def test_disconnect(self, service, handle_factory):
        handle = handle_factory()
        reg = service.register_anchor("AA:00:00:00:00:01", handle)

        assert service.disconnect(reg.anchor_id, handle)
        assert service.status()['connected_nodes'] == 0
        assert service.status()['total_nodes'] == 1


class TestReports:
    """Tests for handle_report() and try_solve()."""

    def test_solves_after_third_anchor(self, service, anchor_positions, target_position):
        ids = place_anchors(service, anchor_positions)
        distances = [calculate_distance_3d(p, target_position) for p in anchor_positions]

        assert service.handle_report(ids[0], distance=distances[0]) is None
        assert service.handle_report(ids[1], distance=distances[1]) is None
        estimate = service.handle_report(ids[2], distance=distances[2])

        assert estimate.fix_type == FixType.FIX_3D
        target = service.registry.target()
        for got, want in zip(target.position, target_position):
            assert got == pytest.approx(want, abs=0.01)
        assert get_metrics().get_counter('reports_accepted') == 3
        assert get_metrics().get_drop_count('insufficient_anchors') == 2

        histograms = service.status()['metrics']['histograms']
        assert histograms['solve_iterations']['count'] == 1
        assert histograms['solve_residual_m']['max'] < 0.01

    def test_rssi_report_uses_calibration(self, service, anchor_positions):
        ids = place_anchors(service, anchor_positions)
        service.handle_report(ids[0], rssi=-60.0)

        assert service.registry.get(ids[0]).last_distance == pytest.approx(1.0)

    def test_insufficient_anchors_keep_target(self, service, clock, anchor_positions):
        """Losing an anchor to staleness leaves the last position in place."""
        ids = place_anchors(service, anchor_positions)
        for anchor_id in ids:
            service.handle_report(anchor_id, distance=2.0)
        solved = service.registry.target()
        assert solved.updated_at is not None

        clock.advance(31.0)
        assert service.handle_report(ids[0], distance=1.5) is None

        assert service.registry.target() == solved

    def test_invalid_distance_dropped(self, service, anchor_positions):
        ids = place_anchors(service, anchor_positions)

        assert service.handle_report(ids[0], distance=-3.0) is None
        assert get_metrics().get_drop_count('invalid_distance') == 1
        assert get_metrics().get_counter('reports_accepted') == 0

    def test_unknown_anchor_report(self, service):
        with pytest.raises(UnknownAnchorError):
            service.handle_report("A7", rssi=-60.0)

    def test_unknown_anchor_touch_counted(self, service):
        with pytest.raises(UnknownAnchorError):
            service.touch("A7")

        assert get_metrics().get_drop_count('unknown_anchor') == 1

    def test_warm_start_uses_previous_fix(self, clock, anchor_positions, target_position):
        registry = AnchorRegistry(clock=clock)
        solver = PositionSolver(SolverConfig(initial_guess=InitialGuess.PREVIOUS))
        service = CoordinationService(registry=registry, solver=solver)
        ids = place_anchors(service, anchor_positions)
        distances = [calculate_distance_3d(p, target_position) for p in anchor_positions]

        for anchor_id, d in zip(ids, distances):
            first = service.handle_report(anchor_id, distance=d)
        second = service.handle_report(ids[0], distance=distances[0])

        assert second.iterations < first.iterations


class TestAdministrative:
    """Tests for update_anchor_position() and update_calibration()."""

    def test_unknown_position_counted(self, service):
        with pytest.raises(UnknownAnchorError):
            service.update_anchor_position("A5", (1.0, 1.0, 1.0))

        assert get_metrics().get_drop_count('unknown_anchor') == 1
        assert service.status()['total_nodes'] == 0

    def test_anchor_calibration(self, service):
        reg = service.register_anchor("AA:00:00:00:00:01")
        service.update_calibration(reg.anchor_id, -50.0, 3.0)

        calibration = service.registry.get_calibration(reg.anchor_id)
        assert (calibration.rssi_at_1m, calibration.path_loss) == (-50.0, 3.0)

    def test_default_calibration(self, service):
        service.update_calibration(DEFAULT_CALIBRATION_ID, -65.0, 2.5)

        assert service.status()['default_calibration'] == {'rssi_at_1m': -65.0, 'path_loss': 2.5}

    def test_invalid_calibration(self, service):
        reg = service.register_anchor("AA:00:00:00:00:01")

        with pytest.raises(ValueError):
            service.update_calibration(reg.anchor_id, -60.0, 0.0)

    def test_unknown_calibration(self, service):
        with pytest.raises(UnknownAnchorError):
            service.update_calibration("A3", -60.0, 2.0)


class TestReadPath:
    """Tests for visualization() and status()."""

    def test_visualization_empty(self, service):
        assert service.visualization() == {
            'nodes': {},
            'clients': {'PHONE': {'X': 0.0, 'Y': 0.0, 'Z': 0.0}},
        }

    def test_visualization_nodes(self, service, anchor_positions):
        place_anchors(service, anchor_positions)
        nodes = service.visualization()['nodes']

        assert list(nodes) == ['A0', 'A1', 'A2']
        assert nodes['A1'] == {'X': 4.0, 'Y': 0.0, 'Z': 0.0}

    def test_status(self, service, anchor_positions, handle_factory):
        ids = place_anchors(service, anchor_positions, handle_factory)
        service.handle_report(ids[0], rssi=-70.0)

        status = service.status()

        assert status['total_nodes'] == 3
        assert status['connected_nodes'] == 3
        assert status['eligible_nodes'] == 1
        assert status['nodes']['A0']['last_rssi'] == -70.0
        assert status['nodes']['A0']['mac'] == 'AA:00:00:00:00:00'
        assert status['target']['last_fix'] is None
        assert status['metrics']['counters']['reports_accepted'] == 1

    def test_log_status(self, service, anchor_positions, caplog):
        place_anchors(service, anchor_positions)

        with caplog.at_level(logging.INFO, logger="trilat_core.domain.coordination"):
            service.log_status()

        assert "Total nodes: 3" in caplog.text
        assert "Node A2" in caplog.text

    def test_status_reporter_logs_periodically(self, service, caplog):
        async def run():
            task = asyncio.create_task(service.run_status_reporter(0.01))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        with caplog.at_level(logging.INFO, logger="trilat_core.domain.coordination"):
            asyncio.run(run())

        assert caplog.text.count("=== Node Status ===") >= 1
