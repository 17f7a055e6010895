"""Interfaces the sync engine consumes: the message backend and the identity provider."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Tuple, Union, runtime_checkable

from .errors import BackendUnavailable
from .message import DraftMessage, Message, MessageEvent

_END = object()


@dataclass(frozen=True)
class ConversationInfo:
    conv_id: str
    member_ids: Tuple[str, ...]
    first_msg_id: Optional[str]


class LiveSubscription:
    """Async iterator over the change events of one live query.

    Producers call :meth:`deliver` and :meth:`fail`; the consumer iterates.
    Iteration stops once :meth:`cancel` is called, and a failure is raised
    to the consumer after the events delivered before it.
    """

    def __init__(
        self,
        conv_id: str,
        cutoff_ms: int,
        on_cancel: Callable[[], None] | None = None,
    ) -> None:
        self.conv_id = conv_id
        self.cutoff_ms = cutoff_ms
        self.cancelled = False
        self._on_cancel = on_cancel
        self._queue: asyncio.Queue[Union[MessageEvent, BackendUnavailable, object]] = asyncio.Queue()
        self._finished = False

    def deliver(self, event: MessageEvent) -> None:
        if self.cancelled or self._finished:
            return
        self._queue.put_nowait(event)

    def fail(self, error: BackendUnavailable) -> None:
        if self.cancelled or self._finished:
            return
        self._queue.put_nowait(error)

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self._queue.put_nowait(_END)
        on_cancel, self._on_cancel = self._on_cancel, None
        if on_cancel is not None:
            on_cancel()

    def backlog(self) -> int:
        """Number of delivered events not yet consumed."""

        if self.cancelled or self._finished:
            return 0
        return self._queue.qsize()

    def __aiter__(self) -> "LiveSubscription":
        return self

    async def __anext__(self) -> MessageEvent:
        if self.cancelled or self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END or self.cancelled:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, BackendUnavailable):
            self._finished = True
            raise item
        return item  # type: ignore[return-value]


@runtime_checkable
class BackendPort(Protocol):
    """Remote message store used by the engine.

    Every method raises :class:`BackendUnavailable` on transport or service
    failure. ``fetch_older_page`` returns at most ``page_size`` messages in
    ascending order, all older than ``cutoff_ms`` and older than the message
    ``before_id`` when given; fewer than ``page_size`` means no more history.
    """

    async def describe_conversation(self, conv_id: str) -> ConversationInfo | None:
        ...

    async def subscribe_live(self, conv_id: str, cutoff_ms: int) -> LiveSubscription:
        ...

    async def fetch_older_page(
        self,
        conv_id: str,
        before_id: str | None,
        page_size: int,
        *,
        cutoff_ms: int,
    ) -> List[Message]:
        ...

    async def append(self, conv_id: str, draft: DraftMessage) -> Message:
        ...


@runtime_checkable
class IdentityProvider(Protocol):
    def current_user_id(self) -> str:
        ...


class StaticIdentity:
    """Identity provider for a fixed, already authenticated user."""

    def __init__(self, user_id: str) -> None:
        if not user_id:
            raise ValueError("user_id required")
        self._user_id = user_id

    def current_user_id(self) -> str:
        return self._user_id
