"""
Trilateration hub main program.

Accepts anchor connections, turns their RSSI/distance reports into a 3D
position of the target and serves the result over HTTP.
"""

import argparse
import logging

import uvicorn

import config
from network_server import create_app
from trilat_core.domain import CoordinationService
from trilat_core.io import SessionConfig
from trilat_core.localization import (
    AnchorRegistry,
    CalibrationParams,
    PositionSolver,
    RegistryConfig,
    SolverConfig,
)

logger = logging.getLogger(__name__)


def build_service() -> CoordinationService:
    """Create the coordination service from the config module."""
    registry = AnchorRegistry(
        config=RegistryConfig(**config.REGISTRY_CONFIG),
        default_calibration=CalibrationParams(**config.SIGNAL_CONFIG),
    )
    solver = PositionSolver(
        config=SolverConfig(**config.SOLVER_CONFIG),
        target_id=registry.config.target_id,
    )
    return CoordinationService(registry=registry, solver=solver)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Trilateration hub server')
    parser.add_argument('--host', '-H', type=str, default=None,
                        help='Listen address')
    parser.add_argument('--port', '-p', type=int, default=None,
                        help='Listen port')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Enable debug logging')

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, config.LOGGING_CONFIG["level"]),
        format=config.LOGGING_CONFIG["format"],
    )
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.host:
        config.SERVER_CONFIG["host"] = args.host
    if args.port:
        config.SERVER_CONFIG["port"] = args.port

    app = create_app(
        service=build_service(),
        session_config=SessionConfig(**config.SESSION_CONFIG),
        status_interval_s=config.STATUS_CONFIG["interval_s"],
    )

    host = config.SERVER_CONFIG["host"]
    port = config.SERVER_CONFIG["port"]
    logger.info(f"Starting trilateration server on {host}:{port}")

    # Exits the process if the port cannot be bound
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="debug" if args.debug else "info",
        log_config=None,
    )


if __name__ == "__main__":
    main()
