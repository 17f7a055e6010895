"""Per-conversation sessions: open, live merge, pagination and close."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import tzinfo
from enum import Enum
from typing import Callable, Optional, Set, Tuple, Union

from .config import SyncConfig
from .errors import BackendUnavailable, ConversationClosed, ConversationNotFound, StaleResponse
from .message import DraftMessage, EventKind, Message, MessageEvent, _now_ms, start_of_day_ms
from .observable import Observable, Signal
from .pagination import PaginationController, ScrollSignal, ScrollThrottle
from .ports import BackendPort, IdentityProvider, LiveSubscription
from .projector import Drawable, project
from .timeline import Timeline

logger = logging.getLogger(__name__)


class LifecycleState(Enum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"


class ArrivalReaction(Enum):
    SCROLL_TO_BOTTOM = "scroll_to_bottom"
    NOTIFY = "notify"


@dataclass(frozen=True)
class LiveEventReceived:
    event: MessageEvent


@dataclass(frozen=True)
class PageLoaded:
    timeline: Timeline
    page: Tuple[Message, ...]


@dataclass(frozen=True)
class PageFailed:
    timeline: Timeline
    error: BackendUnavailable


@dataclass(frozen=True)
class ScrollSettled:
    nearest_top: float


@dataclass(frozen=True)
class SubscriptionEnded:
    error: BackendUnavailable


SessionEvent = Union[LiveEventReceived, PageLoaded, PageFailed, ScrollSettled, SubscriptionEnded]


class ConversationSession:
    """Handle on one conversation, owned by whatever currently displays it.

    Live events, page resolutions and settled scroll positions are queued
    and applied one at a time by a single consumer task, so the timeline is
    only ever mutated from one place.
    """

    def __init__(
        self,
        conv_id: str,
        backend: BackendPort,
        identity: IdentityProvider,
        config: SyncConfig,
        *,
        now_func: Callable[[], int] = _now_ms,
        tz: tzinfo | None = None,
    ) -> None:
        self.conv_id = conv_id
        self.state = LifecycleState.CLOSED
        self.timeline: Optional[Timeline] = None
        self.pagination: Optional[PaginationController] = None
        self.is_initial_load = False
        self.view_model: Observable[Tuple[Drawable, ...]] = Observable(())
        self.history_loading: Observable[bool] = Observable(False)
        self.reactions: Signal[ArrivalReaction] = Signal()
        self._backend = backend
        self._identity = identity
        self._config = config
        self._now = now_func
        self._tz = tz
        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._subscription: Optional[LiveSubscription] = None
        self._throttle = ScrollThrottle(config.scroll_settle_s, self._scroll_settled)
        self._last_scroll: Optional[ScrollSignal] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._fetch_tasks: Set[asyncio.Task] = set()

    async def open(self) -> None:
        """Confirm the conversation exists, subscribe live and request the first page."""

        if self.state is not LifecycleState.CLOSED:
            raise RuntimeError(f"cannot open {self.conv_id} while {self.state.value}")
        self.state = LifecycleState.OPENING
        try:
            info = await self._backend.describe_conversation(self.conv_id)
            if info is None:
                raise ConversationNotFound(self.conv_id)
            cutoff_ms = start_of_day_ms(self._now(), self._tz)
            subscription = await self._backend.subscribe_live(self.conv_id, cutoff_ms)
        except BaseException:
            self.state = LifecycleState.CLOSED
            raise

        timeline = Timeline(self.conv_id, cutoff_ms, self._config.page_size)
        timeline.subscription_active = True
        self.timeline = timeline
        self.pagination = PaginationController(timeline, self._issue_fetch, self._config, info.first_msg_id)
        self.is_initial_load = True
        self._events = asyncio.Queue()
        self._subscription = subscription
        self._last_scroll = None
        self._consumer_task = asyncio.create_task(self._consume())
        self._pump_task = asyncio.create_task(self._pump(subscription))
        self.state = LifecycleState.OPEN
        self.pagination.request()
        logger.info("opened conversation %s (cutoff=%d)", self.conv_id, cutoff_ms)

    async def close(self) -> None:
        """Cancel the live subscription and in-flight page fetches, then discard all timeline state."""

        if self.state is not LifecycleState.OPEN:
            return
        self.state = LifecycleState.CLOSING
        self._throttle.cancel()
        if self._subscription is not None:
            self._subscription.cancel()
        tasks = [task for task in (self._pump_task, self._consumer_task) if task is not None]
        tasks.extend(self._fetch_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self.timeline is not None:
            self.timeline.subscription_active = False
            self.timeline.dump_history()
        self.timeline = None
        self.pagination = None
        self._subscription = None
        self._pump_task = None
        self._consumer_task = None
        self._fetch_tasks.clear()
        self.is_initial_load = False
        self.history_loading.set(False)
        self.view_model.set(())
        self.state = LifecycleState.CLOSED
        logger.info("closed conversation %s", self.conv_id)

    def on_scroll(self, signal: ScrollSignal) -> None:
        if self.state is not LifecycleState.OPEN:
            return
        self._last_scroll = signal
        self._throttle.push(signal)

    async def send(self, body: str) -> Message:
        """Append a message; it shows up in the timeline via the live subscription."""

        if self.state is not LifecycleState.OPEN:
            raise ConversationClosed(self.conv_id)
        draft = DraftMessage(conv_id=self.conv_id, body=body, sender_id=self._identity.current_user_id())
        message = await self._backend.append(self.conv_id, draft)
        if self.state is not LifecycleState.OPEN:
            logger.debug("%s", StaleResponse(self.conv_id, "append"))
        return message

    async def drain(self) -> None:
        """Wait until in-flight pages, pending scroll checks and queued events are applied."""

        while self.state is LifecycleState.OPEN:
            await self._events.join()
            if self._fetch_tasks:
                await asyncio.gather(*self._fetch_tasks, return_exceptions=True)
            elif self._throttle.pending:
                await asyncio.sleep(self._throttle.remaining())
            elif self._subscription is not None and self._subscription.backlog():
                await asyncio.sleep(0)
            elif self._events.empty():
                return

    def _post(self, event: SessionEvent) -> bool:
        if self.state is not LifecycleState.OPEN:
            return False
        self._events.put_nowait(event)
        return True

    def _issue_fetch(self, cursor: str | None) -> None:
        assert self.timeline is not None
        self.history_loading.set(True)
        task = asyncio.create_task(self._fetch_page(cursor, self.timeline))
        self._fetch_tasks.add(task)
        task.add_done_callback(self._fetch_tasks.discard)

    async def _fetch_page(self, cursor: str | None, timeline: Timeline) -> None:
        try:
            page = await self._backend.fetch_older_page(
                self.conv_id, cursor, self._config.page_size, cutoff_ms=timeline.cutoff_ms
            )
        except BackendUnavailable as exc:
            outcome: SessionEvent = PageFailed(timeline, exc)
        else:
            outcome = PageLoaded(timeline, tuple(page))
        if timeline is not self.timeline or not self._post(outcome):
            logger.debug("%s", StaleResponse(self.conv_id, "fetch_older_page"))

    async def _pump(self, subscription: LiveSubscription) -> None:
        try:
            async for event in subscription:
                self._post(LiveEventReceived(event))
        except BackendUnavailable as exc:
            logger.error("live subscription for %s ended: %s", self.conv_id, exc)
            self._post(SubscriptionEnded(exc))

    async def _consume(self) -> None:
        while True:
            event = await self._events.get()
            try:
                self._dispatch(event)
            except Exception:
                logger.exception("failed to apply %s to %s", type(event).__name__, self.conv_id)
            finally:
                self._events.task_done()

    def _dispatch(self, event: SessionEvent) -> None:
        if isinstance(event, LiveEventReceived):
            self._on_live_event(event.event)
        elif isinstance(event, PageLoaded):
            if event.timeline is self.timeline:
                self._on_page_settled(event.page, None)
        elif isinstance(event, PageFailed):
            if event.timeline is self.timeline:
                self._on_page_settled(None, event.error)
        elif isinstance(event, ScrollSettled):
            assert self.pagination is not None
            self.pagination.evaluate(event.nearest_top)
        elif isinstance(event, SubscriptionEnded):
            assert self.timeline is not None
            self.timeline.subscription_active = False
        else:
            raise TypeError(f"unhandled session event: {event!r}")

    def _on_live_event(self, event: MessageEvent) -> None:
        assert self.timeline is not None
        if not self.timeline.apply_live_event(event):
            return
        self._refresh()
        if event.kind is EventKind.ADDED and not self.is_initial_load:
            self.reactions.emit(self._reaction_for(event.message))

    def _on_page_settled(self, page: Tuple[Message, ...] | None, error: BackendUnavailable | None) -> None:
        assert self.pagination is not None
        if error is not None:
            self.pagination.fail(error)
        else:
            assert page is not None
            if self.pagination.resolve(page):
                self._refresh()
        self.history_loading.set(False)
        if self.is_initial_load:
            self.is_initial_load = False
            self.reactions.emit(ArrivalReaction.SCROLL_TO_BOTTOM)

    def _reaction_for(self, message: Message) -> ArrivalReaction:
        if message.sender_id == self._identity.current_user_id():
            return ArrivalReaction.SCROLL_TO_BOTTOM
        scroll = self._last_scroll
        if scroll is None or scroll.distance_from_bottom < self._config.near_bottom_threshold:
            return ArrivalReaction.SCROLL_TO_BOTTOM
        return ArrivalReaction.NOTIFY

    def _refresh(self) -> None:
        assert self.timeline is not None
        drawables = project(self.timeline.snapshot(), self._identity.current_user_id())
        self.view_model.set(tuple(drawables))

    def _scroll_settled(self, _latest: ScrollSignal, nearest_top: float) -> None:
        self._post(ScrollSettled(nearest_top))


class ChatSync:
    """Opens conversation sessions against one backend for the current user."""

    def __init__(
        self,
        backend: BackendPort,
        identity: IdentityProvider,
        config: SyncConfig | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
        tz: tzinfo | None = None,
    ) -> None:
        self.backend = backend
        self.identity = identity
        self.config = config or SyncConfig()
        self._now = now_func
        self._tz = tz

    async def open(self, conv_id: str) -> ConversationSession:
        session = ConversationSession(
            conv_id,
            self.backend,
            self.identity,
            self.config,
            now_func=self._now,
            tz=self._tz,
        )
        await session.open()
        return session
