"""Development gateway serving a MemoryBackend over HTTP and WebSocket."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

from aiohttp import WSMsgType, web

from .errors import BackendUnavailable, ConversationNotFound
from .message import DraftMessage, EventKind, MessageEvent, message_to_dict
from .memory_backend import MemoryBackend

logger = logging.getLogger(__name__)

FRAME_TYPES = {
    EventKind.ADDED: "message.added",
    EventKind.MODIFIED: "message.modified",
    EventKind.REMOVED: "message.removed",
}


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _not_found(conv_id: str) -> web.Response:
    return web.json_response({"code": "not_found", "message": f"unknown conversation {conv_id}"}, status=404)


def _event_frame(event: MessageEvent) -> dict[str, Any]:
    return {"v": 1, "t": FRAME_TYPES[event.kind], "body": message_to_dict(event.message)}


async def _json_body(request: web.Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    if not isinstance(body, dict):
        return None
    return body


@web.middleware
async def unavailable_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except BackendUnavailable as exc:
        return web.json_response({"code": "unavailable", "message": str(exc)}, status=503)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_conversation_create(request: web.Request) -> web.Response:
    backend: MemoryBackend = request.app["backend"]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    conv_id = body.get("conv_id")
    member_ids = body.get("member_ids") or []
    if not isinstance(conv_id, str) or not conv_id:
        return _invalid_request("conv_id required")
    if not isinstance(member_ids, list) or any(not isinstance(member, str) for member in member_ids):
        return _invalid_request("member_ids must be a list of strings")
    try:
        info = backend.create_conversation(conv_id, member_ids)
    except ValueError as exc:
        return web.json_response({"code": "conflict", "message": str(exc)}, status=409)
    return web.json_response({"conv_id": info.conv_id, "member_ids": list(info.member_ids)})


async def handle_conversation_describe(request: web.Request) -> web.Response:
    backend: MemoryBackend = request.app["backend"]
    conv_id = request.match_info["conv_id"]
    info = await backend.describe_conversation(conv_id)
    if info is None:
        return _not_found(conv_id)
    return web.json_response(
        {"conv_id": info.conv_id, "member_ids": list(info.member_ids), "first_msg_id": info.first_msg_id}
    )


async def handle_page(request: web.Request) -> web.Response:
    backend: MemoryBackend = request.app["backend"]
    conv_id = request.match_info["conv_id"]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    before_id = body.get("before_id")
    page_size = body.get("page_size")
    cutoff_ms = body.get("cutoff_ms")
    if before_id is not None and not isinstance(before_id, str):
        return _invalid_request("before_id must be a string")
    if not isinstance(page_size, int) or page_size < 1:
        return _invalid_request("page_size must be a positive integer")
    if not isinstance(cutoff_ms, int):
        return _invalid_request("cutoff_ms required")
    try:
        page = await backend.fetch_older_page(conv_id, before_id, page_size, cutoff_ms=cutoff_ms)
    except ConversationNotFound:
        return _not_found(conv_id)
    except ValueError as exc:
        return _invalid_request(str(exc))
    return web.json_response({"messages": [message_to_dict(message) for message in page]})


async def handle_append(request: web.Request) -> web.Response:
    backend: MemoryBackend = request.app["backend"]
    conv_id = request.match_info["conv_id"]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    text = body.get("body")
    sender_id = body.get("sender_id")
    if not isinstance(text, str) or not isinstance(sender_id, str) or not sender_id:
        return _invalid_request("body and sender_id required")
    try:
        message = await backend.append(conv_id, DraftMessage(conv_id=conv_id, body=text, sender_id=sender_id))
    except ConversationNotFound:
        return _not_found(conv_id)
    return web.json_response({"message": message_to_dict(message)})


async def handle_live(request: web.Request) -> web.StreamResponse:
    backend: MemoryBackend = request.app["backend"]
    conv_id = request.match_info["conv_id"]
    try:
        cutoff_ms = int(request.query.get("cutoff_ms", ""))
    except ValueError:
        return _invalid_request("cutoff_ms required")
    try:
        subscription = await backend.subscribe_live(conv_id, cutoff_ms)
    except ConversationNotFound:
        return _not_found(conv_id)

    ws = web.WebSocketResponse()
    await ws.prepare(request)

    async def writer() -> None:
        async for event in subscription:
            await ws.send_json(_event_frame(event))

    writer_task = asyncio.create_task(writer())
    try:
        async for msg in ws:
            if msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
    finally:
        subscription.cancel()
        writer_task.cancel()
        await asyncio.gather(writer_task, return_exceptions=True)
    return ws


def create_app(backend: MemoryBackend | None = None) -> web.Application:
    app = web.Application(middlewares=[unavailable_middleware])
    app["backend"] = backend or MemoryBackend()
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/conversations", handle_conversation_create)
    app.router.add_get("/v1/conversations/{conv_id}", handle_conversation_describe)
    app.router.add_post("/v1/conversations/{conv_id}/page", handle_page)
    app.router.add_post("/v1/conversations/{conv_id}/messages", handle_append)
    app.router.add_get("/v1/conversations/{conv_id}/live", handle_live)
    return app


def main(argv: list[str] | None = None) -> int:
    """Entry point for the development gateway CLI."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="chat-sync development gateway")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run an in-memory gateway")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger.info("serving development gateway on %s:%d", args.host, args.port)
    web.run_app(create_app(), host=args.host, port=args.port)
    return 0


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
