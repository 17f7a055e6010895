from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Tuple

from .errors import BackendUnavailable, ConversationNotFound
from .message import DraftMessage, EventKind, Message, MessageEvent, _now_ms
from .ports import ConversationInfo, LiveSubscription


def _new_msg_id() -> str:
    return f"m_{secrets.token_urlsafe(12)}"


@dataclass(frozen=True)
class StoredMessage:
    seq: int
    message: Message

    @property
    def order_key(self) -> Tuple[int, int]:
        return (self.message.sent_at_ms, self.seq)


class MemoryBackend:
    """In-process message store implementing the backend port.

    Messages are ordered by ``sent_at_ms`` and then by arrival sequence,
    which is monotonic per conversation starting at 1. Setting
    ``available`` to ``False`` makes every port call fail with
    :class:`BackendUnavailable`.
    """

    def __init__(
        self,
        *,
        now_func: Callable[[], int] = _now_ms,
        id_factory: Callable[[], str] = _new_msg_id,
    ) -> None:
        self.available = True
        self._now = now_func
        self._new_id = id_factory
        self._members: Dict[str, Tuple[str, ...]] = {}
        self._messages: Dict[str, Dict[str, StoredMessage]] = {}
        self._next_seq: Dict[str, int] = {}
        self._subscriptions: Dict[str, List[LiveSubscription]] = {}

    def create_conversation(self, conv_id: str, member_ids: Iterable[str] = ()) -> ConversationInfo:
        if conv_id in self._members:
            raise ValueError("conversation already exists")
        self._members[conv_id] = tuple(sorted(set(member_ids)))
        self._messages[conv_id] = {}
        self._next_seq[conv_id] = 1
        return ConversationInfo(conv_id=conv_id, member_ids=self._members[conv_id], first_msg_id=None)

    def insert(
        self,
        conv_id: str,
        body: str,
        sender_id: str,
        sent_at_ms: int,
        msg_id: str | None = None,
    ) -> Message:
        """Store a message with an explicit timestamp and notify live subscribers."""

        stored = self._require(conv_id)
        msg_id = msg_id or self._new_id()
        if msg_id in stored:
            raise ValueError(f"duplicate msg_id {msg_id}")
        message = Message(msg_id=msg_id, conv_id=conv_id, body=body, sender_id=sender_id, sent_at_ms=sent_at_ms)
        seq = self._next_seq[conv_id]
        self._next_seq[conv_id] = seq + 1
        stored[msg_id] = StoredMessage(seq=seq, message=message)
        self._broadcast(MessageEvent(EventKind.ADDED, message))
        return message

    def modify(self, conv_id: str, msg_id: str, body: str) -> Message:
        stored = self._require(conv_id)
        current = stored.get(msg_id)
        if current is None:
            raise KeyError(msg_id)
        message = Message(
            msg_id=msg_id,
            conv_id=conv_id,
            body=body,
            sender_id=current.message.sender_id,
            sent_at_ms=current.message.sent_at_ms,
        )
        stored[msg_id] = StoredMessage(seq=current.seq, message=message)
        self._broadcast(MessageEvent(EventKind.MODIFIED, message))
        return message

    def remove(self, conv_id: str, msg_id: str) -> bool:
        current = self._require(conv_id).pop(msg_id, None)
        if current is None:
            return False
        self._broadcast(MessageEvent(EventKind.REMOVED, current.message))
        return True

    def messages(self, conv_id: str) -> List[Message]:
        return [entry.message for entry in self._ordered(conv_id)]

    def subscriber_count(self, conv_id: str) -> int:
        return len(self._subscriptions.get(conv_id, []))

    async def describe_conversation(self, conv_id: str) -> ConversationInfo | None:
        self._check_available()
        if conv_id not in self._members:
            return None
        ordered = self._ordered(conv_id)
        return ConversationInfo(
            conv_id=conv_id,
            member_ids=self._members[conv_id],
            first_msg_id=ordered[0].message.msg_id if ordered else None,
        )

    async def subscribe_live(self, conv_id: str, cutoff_ms: int) -> LiveSubscription:
        self._check_available()
        self._require(conv_id)

        def _cancel() -> None:
            self._unsubscribe(subscription)

        subscription = LiveSubscription(conv_id, cutoff_ms, on_cancel=_cancel)
        for entry in self._ordered(conv_id):
            if entry.message.sent_at_ms >= cutoff_ms:
                subscription.deliver(MessageEvent(EventKind.ADDED, entry.message))
        self._subscriptions.setdefault(conv_id, []).append(subscription)
        return subscription

    async def fetch_older_page(
        self,
        conv_id: str,
        before_id: str | None,
        page_size: int,
        *,
        cutoff_ms: int,
    ) -> List[Message]:
        self._check_available()
        if page_size < 1:
            raise ValueError("page_size must be positive")
        stored = self._require(conv_id)
        candidates = [entry for entry in self._ordered(conv_id) if entry.message.sent_at_ms < cutoff_ms]
        if before_id is not None:
            anchor = stored.get(before_id)
            if anchor is None:
                raise ValueError(f"unknown cursor {before_id}")
            candidates = [entry for entry in candidates if entry.order_key < anchor.order_key]
        return [entry.message for entry in candidates[-page_size:]]

    async def append(self, conv_id: str, draft: DraftMessage) -> Message:
        self._check_available()
        if draft.conv_id != conv_id:
            raise ValueError("draft belongs to another conversation")
        return self.insert(conv_id, draft.body, draft.sender_id, self._now())

    def _ordered(self, conv_id: str) -> List[StoredMessage]:
        return sorted(self._require(conv_id).values(), key=lambda entry: entry.order_key)

    def _require(self, conv_id: str) -> Dict[str, StoredMessage]:
        stored = self._messages.get(conv_id)
        if stored is None:
            raise ConversationNotFound(conv_id)
        return stored

    def _check_available(self) -> None:
        if not self.available:
            raise BackendUnavailable("memory backend offline")

    def _broadcast(self, event: MessageEvent) -> None:
        for subscription in list(self._subscriptions.get(event.message.conv_id, [])):
            if event.message.sent_at_ms >= subscription.cutoff_ms:
                subscription.deliver(event)

    def _unsubscribe(self, subscription: LiveSubscription) -> None:
        subs = self._subscriptions.get(subscription.conv_id)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.conv_id, None)
