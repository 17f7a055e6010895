from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, tzinfo
from enum import Enum
from typing import Any, Dict


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Message:
    """A confirmed chat message as stored by the backend."""

    msg_id: str
    conv_id: str
    body: str
    sender_id: str
    sent_at_ms: int


@dataclass(frozen=True)
class DraftMessage:
    """An outgoing message that has not been assigned an id or timestamp yet."""

    conv_id: str
    body: str
    sender_id: str


class EventKind(Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class MessageEvent:
    kind: EventKind
    message: Message


def start_of_day_ms(now_ms: int | None = None, tz: tzinfo | None = None) -> int:
    """Return midnight of the calendar day containing ``now_ms``.

    The local timezone is used unless ``tz`` is given. The result is the
    cutoff separating live messages (at or after it) from history.
    """

    if now_ms is None:
        now_ms = _now_ms()
    moment = datetime.fromtimestamp(now_ms / 1000, tz=tz)
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp() * 1000)


def message_to_dict(message: Message) -> Dict[str, Any]:
    return {
        "msg_id": message.msg_id,
        "conv_id": message.conv_id,
        "body": message.body,
        "sender_id": message.sender_id,
        "sent_at_ms": message.sent_at_ms,
    }


def message_from_dict(payload: Any) -> Message:
    """Parse the JSON wire shape of a message, raising ``ValueError`` if malformed."""

    if not isinstance(payload, dict):
        raise ValueError("message payload must be an object")
    for key in ("msg_id", "conv_id", "body", "sender_id"):
        if not isinstance(payload.get(key), str):
            raise ValueError(f"{key} must be a string")
    sent_at_ms = payload.get("sent_at_ms")
    if not isinstance(sent_at_ms, int) or isinstance(sent_at_ms, bool):
        raise ValueError("sent_at_ms must be an integer")
    return Message(
        msg_id=payload["msg_id"],
        conv_id=payload["conv_id"],
        body=payload["body"],
        sender_id=payload["sender_id"],
        sent_at_ms=sent_at_ms,
    )
