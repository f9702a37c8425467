class ChatCoreError(Exception):
    """Base class for errors raised by the room fanout core."""


class InvalidState(ChatCoreError):
    """Operation attempted in the wrong connection state, e.g. chat before join."""


class ProtocolViolation(ChatCoreError):
    """Malformed or unexpected frame content."""


class DeliveryFailure(ChatCoreError):
    """A send to one connection failed."""

    def __init__(self, connection_id: str, reason: str):
        super().__init__(f"delivery to {connection_id} failed: {reason}")
        self.connection_id = connection_id
        self.reason = reason
