from __future__ import annotations

from .message import Message


class SyncError(Exception):
    """Base class for errors raised by the sync engine."""


class BackendUnavailable(SyncError):
    """The backend could not serve a subscribe, fetch or append call."""


class StaleResponse(SyncError):
    """A response arrived after its conversation was closed."""

    def __init__(self, conv_id: str, operation: str) -> None:
        self.conv_id = conv_id
        self.operation = operation
        super().__init__(f"{operation} for {conv_id} resolved after close")


class OrderingViolation(SyncError):
    """Inserting ``message`` would break the ascending timeline order."""

    def __init__(self, message: Message, reason: str) -> None:
        self.message = message
        self.reason = reason
        super().__init__(f"dropping {message.msg_id} in {message.conv_id}: {reason}")


class ConversationNotFound(SyncError):
    def __init__(self, conv_id: str) -> None:
        self.conv_id = conv_id
        super().__init__(f"unknown conversation {conv_id}")


class ConversationClosed(SyncError):
    def __init__(self, conv_id: str) -> None:
        self.conv_id = conv_id
        super().__init__(f"conversation {conv_id} is closed")
