"""Turns an ordered message sequence into render-ready chat bubbles."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence

from .message import Message


class GroupPosition(Enum):
    HEAD = "head"
    MIDDLE = "middle"
    TAIL = "tail"


@dataclass(frozen=True)
class Drawable:
    message: Message
    position: GroupPosition
    outgoing: bool = False


def group_positions(messages: Sequence[Message]) -> List[GroupPosition]:
    """Mark each message as the head, middle or tail of its same-sender run.

    The head check wins, so a run of one message is a ``HEAD`` and never a
    ``TAIL``. The renderer depends on this.
    """

    positions: List[GroupPosition] = []
    last = len(messages) - 1
    for index, message in enumerate(messages):
        if index == 0 or messages[index - 1].sender_id != message.sender_id:
            positions.append(GroupPosition.HEAD)
        elif index == last or messages[index + 1].sender_id != message.sender_id:
            positions.append(GroupPosition.TAIL)
        else:
            positions.append(GroupPosition.MIDDLE)
    return positions


def project(messages: Sequence[Message], current_user_id: str | None = None) -> List[Drawable]:
    return [
        Drawable(
            message=message,
            position=position,
            outgoing=current_user_id is not None and message.sender_id == current_user_id,
        )
        for message, position in zip(messages, group_positions(messages))
    ]
