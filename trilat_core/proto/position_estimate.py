"""
Position Estimate Output Schema.

Defines the output format for target position estimates produced by the
position solver, including the convergence diagnostics of the run.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from enum import IntEnum
import math
import time


class FixType(IntEnum):
    """Type of position fix."""
    
    NO_FIX = 0          # Solver not run or no usable solution
    FIX_3D = 2          # 3D position (X, Y, Z)


@dataclass
class PositionEstimate:
    """
    Target position estimate from multilateration.
    
    Attributes:
        target_id: ID of the target (e.g., "PHONE")
        t_solve: Time at which the position was solved (epoch seconds)
        fix_type: Type of fix (NO_FIX, FIX_3D)
        pos: Position (X, Y, Z) in meters
        num_anchors_used: Number of anchors used in the solution
        anchor_ids: List of anchor IDs used
        residual_m: RMS range residual at the returned position (m)
        sum_squared_error: Sum of squared range residuals (m^2)
        iterations: Number of gradient descent iterations run
        converged: True if the gradient norm fell below the threshold
        gradient_norm: Gradient magnitude at the last iteration
        
    Notes:
        - An unconverged fix is still a FIX_3D; callers decide what to do
          with converged=False
        - For NO_FIX, pos holds the last known position
    """
    
    target_id: str
    t_solve: float
    fix_type: FixType
    pos: Tuple[float, float, float]
    num_anchors_used: int
    anchor_ids: List[str] = field(default_factory=list)
    residual_m: float = 0.0
    sum_squared_error: float = 0.0
    iterations: int = 0
    converged: bool = False
    gradient_norm: Optional[float] = None
    
    def __post_init__(self):
        """Validate position estimate."""
        if self.num_anchors_used < 0:
            raise ValueError(f"Num anchors cannot be negative: {self.num_anchors_used}")
        
        if self.residual_m < 0:
            raise ValueError(f"Residual cannot be negative: {self.residual_m}")
        
        if not all(math.isfinite(c) for c in self.pos):
            raise ValueError(f"Position must be finite: {self.pos}")
    
    @property
    def has_valid_fix(self) -> bool:
        """Check if this is a valid position fix (not NO_FIX)."""
        return self.fix_type != FixType.NO_FIX
    
    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'target_id': self.target_id,
            't_solve': self.t_solve,
            'fix_type': self.fix_type.name,
            'pos': {'X': self.pos[0], 'Y': self.pos[1], 'Z': self.pos[2]},
            'num_anchors_used': self.num_anchors_used,
            'anchor_ids': list(self.anchor_ids),
            'residual_m': self.residual_m,
            'sum_squared_error': self.sum_squared_error,
            'iterations': self.iterations,
            'converged': self.converged,
            'gradient_norm': self.gradient_norm,
        }


def create_no_fix(
    target_id: str,
    t_solve: Optional[float] = None,
    last_pos: Tuple[float, float, float] = (0.0, 0.0, 0.0)
) -> PositionEstimate:
    """
    Create a NO_FIX position estimate.
    
    Args:
        target_id: Target ID
        t_solve: Solve time (defaults to now)
        last_pos: Last known position (default: origin)
        
    Returns:
        PositionEstimate with NO_FIX
    """
    return PositionEstimate(
        target_id=target_id,
        t_solve=time.time() if t_solve is None else t_solve,
        fix_type=FixType.NO_FIX,
        pos=last_pos,
        num_anchors_used=0,
    )
