"""
I/O Module: Per-connection anchor session protocol.

- Explicit session state machine (transition table)
- One reader task per connection feeding an inbox
- One writer task per connection draining a bounded outbox
- Disconnect/reconnect tolerance (records survive, last registration wins)
"""

from .session import (
    AnchorSession,
    InvalidTransitionError,
    SessionConfig,
    SessionEvent,
    SessionState,
    Transport,
    TRANSITIONS,
)

__all__ = [
    'AnchorSession',
    'InvalidTransitionError',
    'SessionConfig',
    'SessionEvent',
    'SessionState',
    'Transport',
    'TRANSITIONS',
]
