"""
Domain Module: Coordination of anchors, registry and solver.

Implements:
- Registration and reconnect handling
- Solve triggering on distance-bearing reports
- Visualization and status read path
"""

from .coordination import (
    CoordinationService,
    DEFAULT_CALIBRATION_ID,
)

__all__ = [
    'CoordinationService',
    'DEFAULT_CALIBRATION_ID',
]
