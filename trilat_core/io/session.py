"""
Anchor session protocol.

One AnchorSession per anchor connection. The session owns three pieces:

- a reader task that moves inbound frames from the transport into an inbox
- the processing loop that decodes and dispatches frames by session state
- a single writer task that drains the outbox, so the transport is never
  written to concurrently

State machine:

    CONNECTING --handshake_ok--> AWAITING_IDENTITY --identity_confirmed--> ACTIVE
        |                              |                                     |
        +-----------------------transport_closed-----------------------------+--> CLOSED

Reports are only accepted in ACTIVE. An anchor that does not register within
identity_timeout_s is pushed an identity keyed by its peer address.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import asyncio
import logging

from trilat_core.localization.anchor_registry import UnknownAnchorError
from trilat_core.proto.anchor_messages import (
    CalibrationReport,
    LegacyRegister,
    MessageDecodeError,
    PingMessage,
    PongMessage,
    PositionReport,
    RangeReport,
    RegisterMessage,
    decode_message,
    encode_id_assignment,
    encode_legacy_id,
    encode_node_list,
    encode_pong,
)
from trilat_core.metrics import get_metrics

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle state of one anchor connection."""

    CONNECTING = "connecting"
    AWAITING_IDENTITY = "awaiting_identity"
    ACTIVE = "active"
    CLOSED = "closed"


class SessionEvent(str, Enum):
    """Events driving the session state machine."""

    HANDSHAKE_OK = "handshake_ok"
    IDENTITY_CONFIRMED = "identity_confirmed"
    TRANSPORT_CLOSED = "transport_closed"


TRANSITIONS = {
    (SessionState.CONNECTING, SessionEvent.HANDSHAKE_OK): SessionState.AWAITING_IDENTITY,
    (SessionState.CONNECTING, SessionEvent.TRANSPORT_CLOSED): SessionState.CLOSED,
    (SessionState.AWAITING_IDENTITY, SessionEvent.IDENTITY_CONFIRMED): SessionState.ACTIVE,
    (SessionState.AWAITING_IDENTITY, SessionEvent.TRANSPORT_CLOSED): SessionState.CLOSED,
    # Re-registration of an active anchor
    (SessionState.ACTIVE, SessionEvent.IDENTITY_CONFIRMED): SessionState.ACTIVE,
    (SessionState.ACTIVE, SessionEvent.TRANSPORT_CLOSED): SessionState.CLOSED,
}


class InvalidTransitionError(RuntimeError):
    """Event not allowed in the current session state."""


@dataclass
class SessionConfig:
    """
    Configuration for anchor sessions.

    Attributes:
        identity_timeout_s: Seconds to wait for a register frame before
                            pushing an identity (None never pushes)
        outbound_queue_size: Max frames waiting for the writer
        close_timeout_s: Max seconds to flush pending frames on close
    """

    identity_timeout_s: Optional[float] = 0.5
    outbound_queue_size: int = 64
    close_timeout_s: float = 2.0


class Transport:
    """
    Bidirectional text frame connection used by a session.

    Attributes:
        peer: Peer address, used as hardware id for anchors that do not
              register with one
    """

    peer: str = "unknown"

    async def accept(self):
        """Complete the transport handshake."""
        raise NotImplementedError

    async def receive(self) -> Optional[str]:
        """Next inbound text frame, or None once the connection is closed."""
        raise NotImplementedError

    async def send(self, text: str):
        """Write one text frame."""
        raise NotImplementedError

    async def close(self):
        """Close the connection (must be safe to call more than once)."""
        raise NotImplementedError


# Writer sentinel: flush done, close the transport
_CLOSE = object()


class AnchorSession:
    """
    Per-connection protocol handler.

    Usage:
        session = AnchorSession(transport, service, SessionConfig())
        await session.run()   # returns once the connection is closed
    """

    def __init__(self, transport: Transport, service, config: Optional[SessionConfig] = None):
        """
        Initialize session.

        Args:
            transport: Connected transport (handshake not yet completed)
            service: CoordinationService handling registrations and reports
            config: Session configuration (uses defaults if None)
        """
        self.transport = transport
        self.service = service
        self.config = config or SessionConfig()
        self.metrics = get_metrics()

        self.state = SessionState.CONNECTING
        self.anchor_id: Optional[str] = None
        self.structured = False

        self._inbox: Optional[asyncio.Queue] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._identity_timer: Optional[asyncio.TimerHandle] = None
        self._closing = False

    @property
    def label(self) -> str:
        return self.anchor_id or self.transport.peer

    def _fire(self, event: SessionEvent):
        """Apply a state machine event."""
        new_state = TRANSITIONS.get((self.state, event))
        if new_state is None:
            raise InvalidTransitionError(f"{event.value} not allowed in state {self.state.value}")
        logger.debug(f"Session {self.label}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    # =========================================================================
    # Outbound
    # =========================================================================

    def send(self, text: str) -> bool:
        """
        Queue a frame for the writer.

        Returns:
            False if the session is closing or the outbox is full
        """
        if self._outbox is None or self._closing or self.state == SessionState.CLOSED:
            return False
        try:
            self._outbox.put_nowait(text)
        except asyncio.QueueFull:
            self.metrics.increment_drop('outbound_overflow')
            logger.warning(f"Outbound queue full for {self.label}, dropping frame")
            return False
        return True

    def send_node_list(self, nodes: list):
        """Forward a node list to anchors speaking the structured protocol."""
        if self.structured:
            self.send(encode_node_list(nodes))

    def close(self):
        """Stop reading; pending frames are flushed before the transport closes."""
        if self._closing or self.state == SessionState.CLOSED:
            return
        self._closing = True
        if self._reader_task is not None:
            self._reader_task.cancel()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self):
        """Drive the session until the connection closes."""
        try:
            await self.transport.accept()
        except Exception as e:
            logger.error(f"Handshake with {self.transport.peer} failed: {e}")
            self._fire(SessionEvent.TRANSPORT_CLOSED)
            return

        self._fire(SessionEvent.HANDSHAKE_OK)
        self.metrics.increment('sessions_opened')
        logger.info(f"Client connected: {self.transport.peer}")

        loop = asyncio.get_running_loop()
        self._inbox = asyncio.Queue()
        self._outbox = asyncio.Queue(maxsize=self.config.outbound_queue_size)
        self._reader_task = loop.create_task(self._read_loop())
        self._writer_task = loop.create_task(self._write_loop())

        if self.config.identity_timeout_s is not None:
            self._identity_timer = loop.call_later(
                self.config.identity_timeout_s, self._on_identity_timeout
            )

        if self._closing:
            self._reader_task.cancel()

        try:
            await self._process_loop()
        finally:
            await self._shutdown()

    async def _read_loop(self):
        try:
            while True:
                text = await self.transport.receive()
                if text is None:
                    logger.info(f"Client disconnected: {self.label}")
                    break
                await self._inbox.put(text)
        except Exception as e:
            logger.warning(f"Read error from {self.label}: {e}")
        finally:
            self._inbox.put_nowait(None)

    async def _write_loop(self):
        while True:
            item = await self._outbox.get()
            if item is _CLOSE:
                return
            try:
                await self.transport.send(item)
            except Exception as e:
                logger.warning(f"Error sending to {self.label}: {e}")
                self.close()
                return

    async def _process_loop(self):
        while True:
            text = await self._inbox.get()
            if text is None:
                return

            self.metrics.increment('messages_in')
            try:
                message = decode_message(text)
            except MessageDecodeError as e:
                self.metrics.increment_drop('parse_error')
                logger.warning(f"Discarding malformed frame from {self.label}: {e}")
                continue

            try:
                if self.state == SessionState.AWAITING_IDENTITY:
                    self._handle_unidentified(message)
                elif self.state == SessionState.ACTIVE:
                    self.service.touch(self.anchor_id)
                    self._handle_active(message)
            except (ValueError, UnknownAnchorError) as e:
                logger.warning(f"Discarding {type(message).__name__} from {self.label}: {e}")

    async def _shutdown(self):
        if self._identity_timer is not None:
            self._identity_timer.cancel()

        if not self._reader_task.done():
            self._reader_task.cancel()
        await asyncio.wait({self._reader_task})

        self._closing = True
        if self.state != SessionState.CLOSED:
            self._fire(SessionEvent.TRANSPORT_CLOSED)

        if self.anchor_id is not None:
            self.service.disconnect(self.anchor_id, self)

        try:
            self._outbox.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            self._writer_task.cancel()
        done, _ = await asyncio.wait({self._writer_task}, timeout=self.config.close_timeout_s)
        if not done:
            self._writer_task.cancel()
            await asyncio.wait({self._writer_task})

        try:
            await self.transport.close()
        except Exception as e:
            logger.debug(f"Error closing transport for {self.label}: {e}")

        self.metrics.increment('sessions_closed')
        logger.info(f"Closing connection for {self.label}")

    # =========================================================================
    # Identity
    # =========================================================================

    def _on_identity_timeout(self):
        self._identity_timer = None
        if self.state != SessionState.AWAITING_IDENTITY or self._closing:
            return
        logger.info(f"No registration from {self.transport.peer}, sending ID proactively")
        self._confirm_identity(self._peer_hardware_id(), structured=False)

    def _peer_hardware_id(self) -> str:
        return f"peer:{self.transport.peer}"

    def _confirm_identity(self, hardware_id: str, structured: bool):
        registration = self.service.register_anchor(hardware_id, self)

        previous = self.anchor_id
        self.anchor_id = registration.anchor_id
        if previous is not None and previous != self.anchor_id:
            self.service.disconnect(previous, self)

        self._fire(SessionEvent.IDENTITY_CONFIRMED)
        if self._identity_timer is not None:
            self._identity_timer.cancel()
            self._identity_timer = None

        if structured:
            self.structured = True
            self.send(encode_id_assignment(self.anchor_id))
            self.service.broadcast_node_list()
        else:
            self.send(encode_legacy_id(self.anchor_id))

        logger.info(f"ID {self.anchor_id} sent to {self.transport.peer}")

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _handle_unidentified(self, message):
        if isinstance(message, RegisterMessage):
            self._confirm_identity(message.mac, structured=True)
        elif isinstance(message, LegacyRegister):
            logger.info(f"Got REGISTER from {self.transport.peer}, sending ID confirmation")
            self._confirm_identity(self._peer_hardware_id(), structured=False)
        elif isinstance(message, PingMessage):
            self.send(encode_pong(message.legacy))
        elif isinstance(message, PongMessage):
            pass
        else:
            self.metrics.increment_drop('not_registered')
            logger.warning(
                f"Discarding {type(message).__name__} from {self.transport.peer}: "
                f"identity not confirmed"
            )

    def _handle_active(self, message):
        if isinstance(message, RangeReport):
            if message.node_id is not None and message.node_id != self.anchor_id:
                logger.debug(f"Report from {self.anchor_id} claims node_id {message.node_id}")
            self.service.handle_report(
                self.anchor_id,
                rssi=message.latest_rssi(self.service.target_id),
                distance=message.distance,
            )
        elif isinstance(message, PositionReport):
            self.service.update_anchor_position(self.anchor_id, message.position)
        elif isinstance(message, CalibrationReport):
            self.service.update_calibration(
                self.anchor_id, message.rssi_at_1m, message.path_loss
            )
        elif isinstance(message, PingMessage):
            self.send(encode_pong(message.legacy))
        elif isinstance(message, RegisterMessage):
            self._confirm_identity(message.mac, structured=True)
        elif isinstance(message, LegacyRegister):
            self.send(encode_legacy_id(self.anchor_id))
        elif isinstance(message, PongMessage):
            pass
