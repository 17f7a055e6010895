"""aiohttp adapter speaking the development gateway's HTTP + WebSocket protocol."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import BackendUnavailable
from .message import DraftMessage, EventKind, Message, MessageEvent, message_from_dict
from .ports import ConversationInfo, LiveSubscription

logger = logging.getLogger(__name__)

EVENT_FRAME_TYPES = {
    "message.added": EventKind.ADDED,
    "message.modified": EventKind.MODIFIED,
    "message.removed": EventKind.REMOVED,
}

_TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ValueError)


def conversation_info_from_dict(payload: Any) -> ConversationInfo:
    if not isinstance(payload, dict):
        raise ValueError("conversation payload must be an object")
    conv_id = payload.get("conv_id")
    member_ids = payload.get("member_ids") or []
    first_msg_id = payload.get("first_msg_id")
    if not isinstance(conv_id, str):
        raise ValueError("conv_id must be a string")
    if not isinstance(member_ids, list) or any(not isinstance(member, str) for member in member_ids):
        raise ValueError("member_ids must be a list of strings")
    if first_msg_id is not None and not isinstance(first_msg_id, str):
        raise ValueError("first_msg_id must be a string")
    return ConversationInfo(conv_id=conv_id, member_ids=tuple(member_ids), first_msg_id=first_msg_id)


def event_from_frame(frame: Any) -> Optional[MessageEvent]:
    """Decode a live frame; returns ``None`` for frames that carry no change."""

    if not isinstance(frame, dict) or frame.get("v") != 1:
        raise ValueError("unsupported frame")
    kind = EVENT_FRAME_TYPES.get(frame.get("t"))
    if kind is None:
        return None
    return MessageEvent(kind, message_from_dict(frame.get("body")))


class _RejectedRequest(Exception):
    def __init__(self, status: int) -> None:
        self.status = status
        super().__init__(f"request rejected with status {status}")


class HttpBackend:
    """Backend port over HTTP for queries and appends and a WebSocket per live query.

    Reads are retried up to ``max_attempts`` times with a linear backoff;
    appends are sent once. Transport failures surface as
    :class:`BackendUnavailable`.
    """

    def __init__(
        self,
        base_url: str,
        session: aiohttp.ClientSession,
        *,
        max_attempts: int = 3,
        retry_delay_s: float = 0.2,
        timeout_s: float = 10.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._max_attempts = max_attempts
        self._retry_delay_s = retry_delay_s
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def describe_conversation(self, conv_id: str) -> ConversationInfo | None:
        try:
            payload = await self._request_json("GET", f"/v1/conversations/{conv_id}", retry=True)
        except _RejectedRequest as exc:
            if exc.status == 404:
                return None
            raise BackendUnavailable(f"describe {conv_id}: {exc}") from exc
        try:
            return conversation_info_from_dict(payload)
        except ValueError as exc:
            raise BackendUnavailable(f"describe {conv_id}: malformed response") from exc

    async def fetch_older_page(
        self,
        conv_id: str,
        before_id: str | None,
        page_size: int,
        *,
        cutoff_ms: int,
    ) -> List[Message]:
        body = {"before_id": before_id, "page_size": page_size, "cutoff_ms": cutoff_ms}
        try:
            payload = await self._request_json("POST", f"/v1/conversations/{conv_id}/page", body, retry=True)
        except _RejectedRequest as exc:
            raise BackendUnavailable(f"page for {conv_id}: {exc}") from exc
        try:
            return [message_from_dict(item) for item in payload["messages"]]
        except (KeyError, TypeError, ValueError) as exc:
            raise BackendUnavailable(f"page for {conv_id}: malformed response") from exc

    async def append(self, conv_id: str, draft: DraftMessage) -> Message:
        body = {"body": draft.body, "sender_id": draft.sender_id}
        try:
            payload = await self._request_json("POST", f"/v1/conversations/{conv_id}/messages", body, retry=False)
        except _RejectedRequest as exc:
            raise BackendUnavailable(f"append to {conv_id}: {exc}") from exc
        try:
            return message_from_dict(payload["message"])
        except (KeyError, TypeError, ValueError) as exc:
            raise BackendUnavailable(f"append to {conv_id}: malformed response") from exc

    async def subscribe_live(self, conv_id: str, cutoff_ms: int) -> LiveSubscription:
        url = f"{self.base_url}/v1/conversations/{conv_id}/live"
        try:
            ws = await self._session.ws_connect(url, params={"cutoff_ms": str(cutoff_ms)}, heartbeat=30.0)
        except _TRANSPORT_ERRORS as exc:
            raise BackendUnavailable(f"live subscription for {conv_id}: {exc}") from exc

        reader_task: Optional[asyncio.Task] = None

        def _cancel() -> None:
            if reader_task is not None:
                reader_task.cancel()

        subscription = LiveSubscription(conv_id, cutoff_ms, on_cancel=_cancel)
        reader_task = asyncio.create_task(self._read_live(ws, subscription))
        return subscription

    async def _read_live(self, ws: aiohttp.ClientWebSocketResponse, subscription: LiveSubscription) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        event = event_from_frame(msg.json())
                    except ValueError as exc:
                        logger.warning("ignoring malformed live frame for %s: %s", subscription.conv_id, exc)
                        continue
                    if event is not None:
                        subscription.deliver(event)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
            subscription.fail(BackendUnavailable(f"live stream for {subscription.conv_id} closed"))
        finally:
            await ws.close()

    async def _request_json(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        retry: bool,
    ) -> Any:
        attempts = self._max_attempts if retry else 1
        last_err: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                async with self._session.request(
                    method, f"{self.base_url}{path}", json=payload, timeout=self._timeout
                ) as response:
                    if 400 <= response.status < 500:
                        raise _RejectedRequest(response.status)
                    response.raise_for_status()
                    return await response.json()
            except _TRANSPORT_ERRORS as exc:
                last_err = exc
                if attempt < attempts:
                    delay = self._retry_delay_s * attempt
                    logger.warning("%s %s retry %d: %s (sleep %.2fs)", method, path, attempt, exc, delay)
                    await asyncio.sleep(delay)
        raise BackendUnavailable(f"{method} {path} failed: {last_err}") from last_err
