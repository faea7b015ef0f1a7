"""
Trilateration hub configuration.
"""

# Server configuration
SERVER_CONFIG = {
    "host": "0.0.0.0",        # Listen on all interfaces
    "port": 3200,             # HTTP + WebSocket port
    "ws_path": "/ws",         # Anchor connection path
}

# Anchor session configuration
SESSION_CONFIG = {
    "identity_timeout_s": 0.5,    # Push ID if the anchor has not registered by then
    "outbound_queue_size": 64,    # Max frames waiting per connection
    "close_timeout_s": 2.0,       # Max time to flush frames on close
}

# Default calibration pair (used until an anchor is calibrated)
SIGNAL_CONFIG = {
    "rssi_at_1m": -60.0,      # dBm at 1 meter
    "path_loss": 2.0,         # 2.0 free space, 3.0-4.0 indoor
}

# Position solver configuration
SOLVER_CONFIG = {
    "max_iterations": 100,
    "step_size": 0.1,
    "convergence_threshold": 0.001,
    "initial_guess": "origin",    # origin | centroid | previous
    "min_anchors": 3,
}

# Anchor registry configuration
REGISTRY_CONFIG = {
    "stale_after_s": 30.0,    # Distance older than this is not used for solving
    "id_prefix": "A",         # Anchor ids: A0, A1, ...
    "target_id": "PHONE",
}

# Background status log
STATUS_CONFIG = {
    "interval_s": 30.0,
}

# Logging configuration
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}
