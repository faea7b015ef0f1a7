"""
RSSI signal model.

Log-distance path loss model converting a received signal strength into an
estimated distance:

    distance = 10 ^ ((rssi_at_1m - rssi) / (10 * path_loss))

The result is always finite and positive for finite inputs, but can
overflow to inf for extreme RSSI values; callers must check
`is_usable_distance()` before handing a distance to the solver.
"""

from dataclasses import dataclass
import math
from typing import Optional


@dataclass(frozen=True)
class CalibrationParams:
    """
    Per-anchor calibration pair.
    
    Attributes:
        rssi_at_1m: Expected RSSI at 1 meter (dBm)
        path_loss: Path loss exponent, ~2.0 free space to ~4.0 indoor
    """
    
    rssi_at_1m: float = -60.0
    path_loss: float = 2.0
    
    def __post_init__(self):
        """Validate calibration pair."""
        if not math.isfinite(self.rssi_at_1m):
            raise ValueError(f"rssi_at_1m must be finite: {self.rssi_at_1m}")
        
        if not math.isfinite(self.path_loss) or self.path_loss <= 0:
            raise ValueError(f"path_loss must be positive and finite: {self.path_loss}")
    
    def to_dict(self) -> dict:
        return {'rssi_at_1m': self.rssi_at_1m, 'path_loss': self.path_loss}


# Process-wide fallback when an anchor has no calibration of its own
DEFAULT_CALIBRATION = CalibrationParams()


def rssi_to_distance(
    rssi: float,
    calibration: Optional[CalibrationParams] = None
) -> float:
    """
    Estimate distance in meters from an RSSI value.
    
    Args:
        rssi: Received signal strength (dBm)
        calibration: Calibration pair (uses DEFAULT_CALIBRATION if None)
        
    Returns:
        Estimated distance in meters (inf if the exponent overflows)
    """
    params = calibration or DEFAULT_CALIBRATION
    exponent = (params.rssi_at_1m - rssi) / (10.0 * params.path_loss)
    try:
        return math.pow(10.0, exponent)
    except OverflowError:
        return math.inf


def is_usable_distance(distance: Optional[float]) -> bool:
    """True if distance is a positive, finite number of meters."""
    return (
        distance is not None and
        not isinstance(distance, bool) and
        math.isfinite(distance) and
        distance > 0
    )
