from __future__ import annotations

import bisect
import logging
from typing import Dict, List, Sequence, Set, Tuple

from .errors import OrderingViolation
from .message import EventKind, Message, MessageEvent

logger = logging.getLogger(__name__)


class Timeline:
    """Merged message state of one open conversation.

    ``live`` holds messages delivered by the live subscription (at or after
    ``cutoff_ms``) and ``history`` holds the pages fetched below the cutoff.
    Both are kept ascending by ``sent_at_ms``; equal timestamps keep their
    insertion order. A message id appears at most once across both.
    """

    def __init__(self, conv_id: str, cutoff_ms: int, page_size: int) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.conv_id = conv_id
        self.cutoff_ms = cutoff_ms
        self.page_size = page_size
        self.live: List[Message] = []
        self.history: List[Message] = []
        self.history_cursor: str | None = None
        self.history_exhausted = False
        self.pending_page_request = False
        self.subscription_active = False
        self.revision = 0
        self._live_keys: List[int] = []
        self._live_by_id: Dict[str, Message] = {}
        self._history_ids: Set[str] = set()

    def apply_live_event(self, event: MessageEvent) -> bool:
        """Apply one live change; return whether the timeline changed."""

        message = event.message
        if message.conv_id != self.conv_id:
            logger.warning("%s", OrderingViolation(message, f"live event outside {self.conv_id}"))
            return False
        if event.kind is EventKind.ADDED or event.kind is EventKind.MODIFIED:
            return self._upsert_live(message)
        if event.kind is EventKind.REMOVED:
            return self._remove_live(message.msg_id)
        raise TypeError(f"unhandled event kind: {event.kind!r}")

    def apply_history_page(self, page: Sequence[Message]) -> int:
        """Prepend an ascending page of older messages.

        Returns the number of messages accepted. Duplicates are skipped and
        entries that would break ordering are logged and dropped. The cursor
        moves to the oldest id the backend returned even when that entry was
        dropped, so the next page starts below it instead of repeating it. A
        short page marks the history exhausted for good.
        """

        upper = self.history[0].sent_at_ms if self.history else None
        accepted: List[Message] = []
        seen: Set[str] = set()
        previous: int | None = None
        for message in page:
            if message.msg_id in seen or self.contains(message.msg_id):
                logger.debug("skipping duplicate %s in history page for %s", message.msg_id, self.conv_id)
                continue
            try:
                self._check_page_entry(message, previous, upper)
            except OrderingViolation as exc:
                logger.warning("%s", exc)
                continue
            accepted.append(message)
            seen.add(message.msg_id)
            previous = message.sent_at_ms

        if accepted:
            self.history[:0] = accepted
            self._history_ids.update(seen)
            self.revision += 1
        if page:
            self.history_cursor = page[0].msg_id
        if len(page) < self.page_size:
            self.history_exhausted = True
        return len(accepted)

    def snapshot(self) -> Tuple[Message, ...]:
        return tuple(self.history) + tuple(self.live)

    def contains(self, msg_id: str) -> bool:
        return msg_id in self._live_by_id or msg_id in self._history_ids

    @property
    def oldest_loaded_id(self) -> str | None:
        if self.history:
            return self.history[0].msg_id
        if self.live:
            return self.live[0].msg_id
        return None

    def dump_history(self) -> None:
        self.history.clear()
        self._history_ids.clear()
        self.revision += 1

    def _upsert_live(self, message: Message) -> bool:
        existing = self._live_by_id.get(message.msg_id)
        if (
            existing is not None
            and existing.sent_at_ms == message.sent_at_ms
            and existing.body == message.body
        ):
            logger.debug("live event for %s is a no-op", message.msg_id)
            return False
        try:
            self._check_live_entry(message)
        except OrderingViolation as exc:
            logger.warning("%s", exc)
            return False

        if existing is None:
            self._insert_live(message)
        elif existing.sent_at_ms == message.sent_at_ms:
            self.live[self._live_index(existing)] = message
        else:
            self._pop_live(existing)
            self._insert_live(message)
        self._live_by_id[message.msg_id] = message
        self.revision += 1
        return True

    def _remove_live(self, msg_id: str) -> bool:
        existing = self._live_by_id.pop(msg_id, None)
        if existing is None:
            return False
        self._pop_live(existing)
        self.revision += 1
        return True

    def _check_live_entry(self, message: Message) -> None:
        if message.msg_id in self._history_ids:
            raise OrderingViolation(message, "already loaded as history")
        if message.sent_at_ms < self.cutoff_ms:
            raise OrderingViolation(message, "live message older than the cutoff")

    def _check_page_entry(self, message: Message, previous: int | None, upper: int | None) -> None:
        if message.conv_id != self.conv_id:
            raise OrderingViolation(message, "page entry from another conversation")
        if message.sent_at_ms >= self.cutoff_ms:
            raise OrderingViolation(message, "history message not older than the cutoff")
        if upper is not None and message.sent_at_ms > upper:
            raise OrderingViolation(message, "history page newer than loaded history")
        if previous is not None and message.sent_at_ms < previous:
            raise OrderingViolation(message, "history page not ascending")

    def _insert_live(self, message: Message) -> None:
        index = bisect.bisect_right(self._live_keys, message.sent_at_ms)
        self._live_keys.insert(index, message.sent_at_ms)
        self.live.insert(index, message)

    def _pop_live(self, message: Message) -> None:
        index = self._live_index(message)
        del self._live_keys[index]
        del self.live[index]

    def _live_index(self, message: Message) -> int:
        index = bisect.bisect_left(self._live_keys, message.sent_at_ms)
        while self.live[index].msg_id != message.msg_id:
            index += 1
        return index
