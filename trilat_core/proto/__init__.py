"""
Protocol Module: Message schemas.

- Anchor wire messages (structured JSON frames and legacy text frames)
- Defensive parsing: malformed frames raise MessageDecodeError
- Position estimate output with solver diagnostics
"""

from .anchor_messages import (
    AnchorMessage,
    CalibrationReport,
    LegacyRegister,
    MessageDecodeError,
    PingMessage,
    PongMessage,
    PositionReport,
    RangeReport,
    RegisterMessage,
    RssiMeasurement,
    decode_message,
    encode_id_assignment,
    encode_legacy_id,
    encode_node_list,
    encode_pong,
)
from .position_estimate import (
    PositionEstimate,
    FixType,
    create_no_fix,
)

__all__ = [
    # Anchor messages
    'AnchorMessage',
    'CalibrationReport',
    'LegacyRegister',
    'MessageDecodeError',
    'PingMessage',
    'PongMessage',
    'PositionReport',
    'RangeReport',
    'RegisterMessage',
    'RssiMeasurement',
    'decode_message',
    'encode_id_assignment',
    'encode_legacy_id',
    'encode_node_list',
    'encode_pong',
    # Position estimate
    'PositionEstimate',
    'FixType',
    'create_no_fix',
]
