"""
Anchor Wire Message Schemas.

Defines the frames exchanged with anchor nodes over the `/ws` connection:
- Structured frames: JSON objects tagged by a `type` field
- Legacy frames: plain text control words (PING/PONG, REGISTER, ID:<id>)

Inbound frames are parsed defensively by `decode_message()`; anything that
cannot be decoded raises MessageDecodeError and must be discarded by the
caller without closing the connection.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union
import json
import math


# Legacy text protocol
LEGACY_PING = "PING"
LEGACY_PONG = "PONG"
LEGACY_REGISTER = "REGISTER"
LEGACY_ID_PREFIX = "ID:"


class MessageDecodeError(ValueError):
    """Inbound frame is malformed or of an unknown type."""


@dataclass(frozen=True)
class RegisterMessage:
    """Structured registration request keyed by a durable hardware id."""

    mac: str


@dataclass(frozen=True)
class LegacyRegister:
    """Plain-text `REGISTER` request (no hardware id on the wire)."""


@dataclass(frozen=True)
class PingMessage:
    """Liveness ping, either plain-text `PING` or `{"type": "ping"}`."""

    legacy: bool = True


@dataclass(frozen=True)
class PongMessage:
    """Liveness reply from an anchor; only refreshes last-seen."""

    legacy: bool = True


@dataclass(frozen=True)
class RssiMeasurement:
    """Single RSSI reading of one target."""

    target_id: Optional[str]
    rssi: float


@dataclass(frozen=True)
class RangeReport:
    """
    Distance-bearing report from an anchor.

    Covers both the `distance` report ({rssi, distance}) and the
    `rssi_report` ({node_id, timestamp, measurements}) forms.

    Attributes:
        node_id: Anchor id claimed by the sender (informational)
        timestamp: Sender timestamp (informational, sender clock)
        rssi: Latest RSSI (dBm), if reported
        distance: Directly reported distance (m), if reported
        measurements: Per-target RSSI readings from `rssi_report`
    """

    node_id: Optional[str] = None
    timestamp: Optional[float] = None
    rssi: Optional[float] = None
    distance: Optional[float] = None
    measurements: Tuple[RssiMeasurement, ...] = field(default_factory=tuple)

    def latest_rssi(self, target_id: Optional[str] = None) -> Optional[float]:
        """
        RSSI to use for this report (last value wins).

        Readings tagged with target_id are preferred; when none match,
        every reading is treated as a reading of the single target.
        """
        if self.measurements:
            matching = [m for m in self.measurements if target_id and m.target_id == target_id]
            readings = matching or list(self.measurements)
            return readings[-1].rssi
        return self.rssi


@dataclass(frozen=True)
class PositionReport:
    """Administrative position update sent by an anchor."""

    x: float
    y: float
    z: float

    @property
    def position(self) -> Tuple[float, float, float]:
        return (self.x, self.y, self.z)


@dataclass(frozen=True)
class CalibrationReport:
    """Per-anchor calibration pair sent by an anchor."""

    rssi_at_1m: float
    path_loss: float


AnchorMessage = Union[
    RegisterMessage, LegacyRegister, PingMessage, PongMessage,
    RangeReport, PositionReport, CalibrationReport,
]


def _number(payload: Dict, key: str, required: bool = True) -> Optional[float]:
    """Read a finite numeric field from a decoded JSON object."""
    value = payload.get(key)
    if value is None:
        if required:
            raise MessageDecodeError(f"missing field '{key}'")
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MessageDecodeError(f"field '{key}' must be a number, got {value!r}")
    try:
        value = float(value)
    except OverflowError:
        raise MessageDecodeError(f"field '{key}' out of range")
    if not math.isfinite(value):
        raise MessageDecodeError(f"field '{key}' must be finite, got {value!r}")
    return value


def _optional_str(payload: Dict, key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    return str(value)


def _decode_register(payload: Dict) -> RegisterMessage:
    mac = payload.get("mac")
    if not isinstance(mac, str) or not mac.strip():
        raise MessageDecodeError("register requires a non-empty 'mac'")
    return RegisterMessage(mac=mac.strip().upper())


def _decode_distance(payload: Dict) -> RangeReport:
    rssi = _number(payload, "rssi", required=False)
    distance = _number(payload, "distance", required=False)
    if rssi is None and distance is None:
        raise MessageDecodeError("distance report requires 'rssi' or 'distance'")
    return RangeReport(
        node_id=_optional_str(payload, "node_id"),
        timestamp=_number(payload, "timestamp", required=False),
        rssi=rssi,
        distance=distance,
    )


def _decode_rssi_report(payload: Dict) -> RangeReport:
    if "measurements" not in payload:
        # Flat form: {rssi, distance}
        return _decode_distance(payload)

    raw = payload["measurements"]
    if not isinstance(raw, list) or not raw:
        raise MessageDecodeError("'measurements' must be a non-empty list")

    measurements = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise MessageDecodeError(f"measurement must be an object, got {entry!r}")
        measurements.append(RssiMeasurement(
            target_id=_optional_str(entry, "target_id"),
            rssi=_number(entry, "rssi"),
        ))

    return RangeReport(
        node_id=_optional_str(payload, "node_id"),
        timestamp=_number(payload, "timestamp", required=False),
        rssi=measurements[-1].rssi,
        distance=_number(payload, "distance", required=False),
        measurements=tuple(measurements),
    )


def _decode_position(payload: Dict) -> PositionReport:
    return PositionReport(
        x=_number(payload, "X"),
        y=_number(payload, "Y"),
        z=_number(payload, "Z"),
    )


def _decode_calibration(payload: Dict) -> CalibrationReport:
    path_loss = _number(payload, "path_loss")
    if path_loss <= 0:
        raise MessageDecodeError(f"'path_loss' must be positive, got {path_loss}")
    return CalibrationReport(
        rssi_at_1m=_number(payload, "rssi_at_1m"),
        path_loss=path_loss,
    )


_DECODERS = {
    "register": _decode_register,
    "distance": _decode_distance,
    "distance_report": _decode_distance,
    "rssi_report": _decode_rssi_report,
    "position": _decode_position,
    "calibration": _decode_calibration,
    "ping": lambda payload: PingMessage(legacy=False),
    "pong": lambda payload: PongMessage(legacy=False),
}

_LEGACY_FRAMES = {
    LEGACY_PING: PingMessage(legacy=True),
    LEGACY_PONG: PongMessage(legacy=True),
    LEGACY_REGISTER: LegacyRegister(),
}


def decode_message(text: str) -> AnchorMessage:
    """
    Decode one inbound text frame.

    Args:
        text: Raw frame text

    Returns:
        One of the AnchorMessage dataclasses

    Raises:
        MessageDecodeError: If the frame is malformed or of an unknown type
    """
    if text is None:
        raise MessageDecodeError("empty frame")

    stripped = text.strip()
    if stripped in _LEGACY_FRAMES:
        return _LEGACY_FRAMES[stripped]

    try:
        payload = json.loads(stripped)
    except (ValueError, RecursionError) as e:
        raise MessageDecodeError(f"unrecognised text frame: {stripped[:64]!r}") from e

    if not isinstance(payload, dict):
        raise MessageDecodeError(f"frame must be a JSON object, got {type(payload).__name__}")

    msg_type = payload.get("type")
    decoder = _DECODERS.get(msg_type) if isinstance(msg_type, str) else None
    if decoder is None:
        raise MessageDecodeError(f"unknown message type {msg_type!r}")

    return decoder(payload)


# =============================================================================
# Service -> anchor frames
# =============================================================================


def encode_id_assignment(anchor_id: str) -> str:
    """Structured identity confirmation."""
    return json.dumps({"type": "id_assignment", "id": anchor_id})


def encode_legacy_id(anchor_id: str) -> str:
    """Plain-text identity confirmation (`ID:<id>`)."""
    return f"{LEGACY_ID_PREFIX}{anchor_id}"


def encode_node_list(nodes: List[Dict[str, str]]) -> str:
    """Known peers broadcast: nodes is a list of {id, mac}."""
    return json.dumps({"type": "node_list", "nodes": nodes})


def encode_pong(legacy: bool) -> str:
    """Liveness reply matching the style of the ping."""
    return LEGACY_PONG if legacy else json.dumps({"type": "pong"})
