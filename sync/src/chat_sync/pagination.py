from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Sequence

from .config import SyncConfig
from .errors import BackendUnavailable
from .message import Message
from .timeline import Timeline

logger = logging.getLogger(__name__)


class PaginationState(Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class ScrollSignal:
    """Scroll position of the message list container."""

    scroll_top: float
    content_height: float
    viewport_height: float

    @property
    def distance_from_top(self) -> float:
        return max(self.scroll_top, 0)

    @property
    def distance_from_bottom(self) -> float:
        return max(self.content_height - self.scroll_top - self.viewport_height, 0)


class ScrollThrottle:
    """Collapses bursts of scroll signals into one evaluation per window.

    The first signal of a burst schedules the evaluation ``delay_s`` later;
    later signals only update it, so the delay stays bounded while scrolling
    continues. The nearest distance from the top seen in the window is
    reported so a brief crossing of the top threshold is not lost.
    """

    def __init__(self, delay_s: float, callback: Callable[[ScrollSignal, float], None]) -> None:
        self.delay_s = delay_s
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._latest: ScrollSignal | None = None
        self._nearest_top: float | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def remaining(self) -> float:
        if self._handle is None:
            return 0.0
        return max(self._handle.when() - asyncio.get_running_loop().time(), 0.0)

    def push(self, signal: ScrollSignal) -> None:
        self._latest = signal
        if self._nearest_top is None or signal.distance_from_top < self._nearest_top:
            self._nearest_top = signal.distance_from_top
        if self._handle is None:
            self._handle = asyncio.get_running_loop().call_later(self.delay_s, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._latest = None
        self._nearest_top = None

    def _fire(self) -> None:
        latest, nearest_top = self._latest, self._nearest_top
        self._handle = None
        self._latest = None
        self._nearest_top = None
        if latest is not None and nearest_top is not None:
            self._callback(latest, nearest_top)


class PaginationController:
    """Decides when the next older page of a conversation is requested.

    ``issue`` starts the fetch for the given cursor; its outcome comes back
    through :meth:`resolve` or :meth:`fail`. At most one request is
    outstanding, and none is issued once the history is exhausted.
    """

    def __init__(
        self,
        timeline: Timeline,
        issue: Callable[[str | None], None],
        config: SyncConfig,
        first_msg_id: str | None = None,
    ) -> None:
        self.timeline = timeline
        self.config = config
        self.first_msg_id = first_msg_id
        self.state = PaginationState.IDLE
        self.requests_issued = 0
        self.last_error: BackendUnavailable | None = None
        self._issue = issue

    def should_request(self, distance_from_top: float) -> bool:
        if self.state is not PaginationState.IDLE:
            return False
        timeline = self.timeline
        if timeline.pending_page_request or timeline.history_exhausted:
            return False
        if distance_from_top >= self.config.near_top_threshold:
            return False
        oldest = timeline.oldest_loaded_id
        if oldest is not None and oldest == self.first_msg_id:
            return False
        return True

    def evaluate(self, distance_from_top: float) -> bool:
        if not self.should_request(distance_from_top):
            return False
        self.request()
        return True

    def request(self) -> None:
        """Issue a page request for the current cursor, bypassing the scroll check."""

        if self.state is not PaginationState.IDLE or self.timeline.pending_page_request:
            raise RuntimeError("a page request is already outstanding")
        self.state = PaginationState.REQUESTING
        self.timeline.pending_page_request = True
        self.requests_issued += 1
        logger.debug("requesting page before %s for %s", self.timeline.history_cursor, self.timeline.conv_id)
        self._issue(self.timeline.history_cursor)

    def resolve(self, page: Sequence[Message]) -> int:
        self._require_requesting()
        self.timeline.pending_page_request = False
        accepted = self.timeline.apply_history_page(page)
        if self.timeline.history_exhausted:
            self.state = PaginationState.EXHAUSTED
            logger.info("history of %s exhausted after %d pages", self.timeline.conv_id, self.requests_issued)
        else:
            self.state = PaginationState.IDLE
        return accepted

    def fail(self, error: BackendUnavailable) -> None:
        self._require_requesting()
        self.timeline.pending_page_request = False
        self.state = PaginationState.IDLE
        self.last_error = error
        logger.warning("history page for %s not loaded: %s", self.timeline.conv_id, error)

    def _require_requesting(self) -> None:
        if self.state is not PaginationState.REQUESTING:
            raise RuntimeError(f"no page request outstanding (state={self.state.value})")
