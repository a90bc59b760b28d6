"""Error taxonomy shared by the signaling client and the relay.

None of these are fatal to a connection: callers log them at the boundary and
carry on with the next message.
"""

from __future__ import annotations


class SignalingError(Exception):
    default_detail: str = "Signaling error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ProtocolError(SignalingError):
    """Malformed JSON, unknown message type or a missing required field."""

    default_detail = "Malformed signaling message."


class SessionStateError(SignalingError):
    """Message refers to an unknown call or is invalid in the current state."""

    default_detail = "Message not valid for the current call state."


class TransportError(SignalingError):
    """The underlying connection was lost or could not be written to."""

    default_detail = "Signaling connection lost."


class PersistenceError(SignalingError):
    """A call outcome or telemetry aggregate could not be stored."""

    default_detail = "Storage operation failed."
