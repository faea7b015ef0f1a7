"""
Tests for configuration wiring in main.build_service().
"""

import config
from main import build_service
from trilat_core.localization import InitialGuess


class TestDefaults:
    """Default configuration values."""

    def test_server(self):
        assert config.SERVER_CONFIG["port"] == 3200
        assert config.SERVER_CONFIG["ws_path"] == "/ws"

    def test_build_service(self):
        service = build_service()

        assert service.target_id == "PHONE"
        assert service.solver.config.max_iterations == 100
        assert service.solver.config.initial_guess == InitialGuess.ORIGIN
        assert service.registry.config.stale_after_s == 30.0
        assert service.registry.get_calibration().to_dict() == {'rssi_at_1m': -60.0, 'path_loss': 2.0}
