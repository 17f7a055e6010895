import asyncio
import contextlib
import importlib.util
import io
import unittest
from datetime import timezone
from unittest import mock

_aiohttp_spec = importlib.util.find_spec("aiohttp")
if _aiohttp_spec is None:
    raise RuntimeError("aiohttp must be installed for HTTP backend tests")

import aiohttp
from aiohttp.test_utils import TestClient, TestServer

from chat_sync.config import SyncConfig
from chat_sync.dev_gateway import create_app, main
from chat_sync.errors import BackendUnavailable
from chat_sync.http_backend import HttpBackend, event_from_frame
from chat_sync.lifecycle import ChatSync
from chat_sync.memory_backend import MemoryBackend
from chat_sync.message import DraftMessage, EventKind
from chat_sync.ports import StaticIdentity

from sync_test_util import CUTOFF_MS, NOW_MS, history_messages, wait_for


class HttpBackendTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.memory = MemoryBackend(now_func=lambda: NOW_MS)
        self.memory.create_conversation("c1", ["alice", "bob"])
        for message in history_messages(7):
            self.memory.insert("c1", message.body, message.sender_id, message.sent_at_ms, message.msg_id)
        self.memory.insert("c1", "good morning", "bob", CUTOFF_MS + 1000, "t0")
        self.server = TestServer(create_app(self.memory))
        await self.server.start_server()
        self.session = aiohttp.ClientSession()
        self.backend = HttpBackend(str(self.server.make_url("/")), self.session, retry_delay_s=0)

    async def asyncTearDown(self):
        await self.session.close()
        await self.server.close()

    async def test_describe_conversation(self):
        info = await self.backend.describe_conversation("c1")

        self.assertEqual(info.member_ids, ("alice", "bob"))
        self.assertEqual(info.first_msg_id, "h000")
        self.assertIsNone(await self.backend.describe_conversation("missing"))

    async def test_fetch_older_page(self):
        first = await self.backend.fetch_older_page("c1", None, 5, cutoff_ms=CUTOFF_MS)
        rest = await self.backend.fetch_older_page("c1", first[0].msg_id, 5, cutoff_ms=CUTOFF_MS)

        self.assertEqual([m.msg_id for m in first], ["h002", "h003", "h004", "h005", "h006"])
        self.assertEqual([m.msg_id for m in rest], ["h000", "h001"])

    async def test_rejected_page_request_is_unavailable(self):
        with self.assertRaises(BackendUnavailable):
            await self.backend.fetch_older_page("c1", "nope", 5, cutoff_ms=CUTOFF_MS)

    async def test_append_stores_message(self):
        message = await self.backend.append("c1", DraftMessage(conv_id="c1", body="hi", sender_id="alice"))

        self.assertEqual(message.sent_at_ms, NOW_MS)
        self.assertEqual(self.memory.messages("c1")[-1], message)

    async def test_live_subscription_replays_and_streams(self):
        subscription = await self.backend.subscribe_live("c1", CUTOFF_MS)
        await wait_for(lambda: self.memory.subscriber_count("c1") == 1)
        self.memory.insert("c1", "still there?", "alice", CUTOFF_MS + 2000, "t1")
        self.memory.remove("c1", "t0")

        events = [await asyncio.wait_for(subscription.__anext__(), 2) for _ in range(3)]

        self.assertEqual(
            [(event.kind, event.message.msg_id) for event in events],
            [(EventKind.ADDED, "t0"), (EventKind.ADDED, "t1"), (EventKind.REMOVED, "t0")],
        )
        subscription.cancel()
        await wait_for(lambda: self.memory.subscriber_count("c1") == 0)

    async def test_service_errors_are_retried_then_unavailable(self):
        self.memory.available = False

        with self.assertLogs("chat_sync.http_backend", level="WARNING") as logs:
            with self.assertRaises(BackendUnavailable):
                await self.backend.describe_conversation("c1")

        self.assertEqual(len(logs.records), 2)

    async def test_connection_refused_is_unavailable(self):
        backend = HttpBackend("http://127.0.0.1:1", self.session, max_attempts=2, retry_delay_s=0)

        with self.assertLogs("chat_sync.http_backend", level="WARNING"):
            with self.assertRaises(BackendUnavailable):
                await backend.fetch_older_page("c1", None, 5, cutoff_ms=CUTOFF_MS)
        with self.assertRaises(BackendUnavailable):
            await backend.subscribe_live("c1", CUTOFF_MS)

    async def test_session_over_http(self):
        sync = ChatSync(
            self.backend,
            StaticIdentity("alice"),
            SyncConfig(page_size=5, scroll_settle_s=0),
            now_func=lambda: NOW_MS,
            tz=timezone.utc,
        )
        session = await sync.open("c1")
        try:
            await wait_for(lambda: len(session.view_model.value) == 6)
            sent = await session.send("hello over http")
            await wait_for(lambda: len(session.view_model.value) == 7)

            last = session.view_model.value[-1]
            self.assertEqual(last.message.msg_id, sent.msg_id)
            self.assertTrue(last.outgoing)
            self.assertEqual(session.timeline.history_cursor, "h002")
        finally:
            await session.close()
        await wait_for(lambda: self.memory.subscriber_count("c1") == 0)


class EventFrameTests(unittest.TestCase):
    def test_decodes_change_frames(self):
        frame = {
            "v": 1,
            "t": "message.modified",
            "body": {"msg_id": "m1", "conv_id": "c1", "body": "x", "sender_id": "bob", "sent_at_ms": 5},
        }

        event = event_from_frame(frame)

        self.assertIs(event.kind, EventKind.MODIFIED)
        self.assertEqual(event.message.sent_at_ms, 5)

    def test_ignores_other_frame_types(self):
        self.assertIsNone(event_from_frame({"v": 1, "t": "ping", "body": {}}))

    def test_rejects_unknown_versions_and_bodies(self):
        with self.assertRaises(ValueError):
            event_from_frame({"v": 2, "t": "message.added", "body": {}})
        with self.assertRaises(ValueError):
            event_from_frame({"v": 1, "t": "message.added", "body": {"msg_id": "m1"}})


class DevGatewayTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.memory = MemoryBackend()
        self.server = TestServer(create_app(self.memory))
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def test_healthz(self):
        resp = await self.client.get("/healthz")

        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_create_conversation(self):
        resp = await self.client.post("/v1/conversations", json={"conv_id": "c1", "member_ids": ["bob", "alice"]})
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.json(), {"conv_id": "c1", "member_ids": ["alice", "bob"]})

        again = await self.client.post("/v1/conversations", json={"conv_id": "c1"})
        self.assertEqual(again.status, 409)

        bad = await self.client.post("/v1/conversations", json={"member_ids": "alice"})
        self.assertEqual(bad.status, 400)

    async def test_request_validation(self):
        self.memory.create_conversation("c1")

        page = await self.client.post("/v1/conversations/c1/page", json={"page_size": 0, "cutoff_ms": 0})
        self.assertEqual(page.status, 400)
        malformed = await self.client.post("/v1/conversations/c1/page", data="{")
        self.assertEqual(malformed.status, 400)
        append = await self.client.post("/v1/conversations/c1/messages", json={"body": "hi"})
        self.assertEqual(append.status, 400)
        live = await self.client.get("/v1/conversations/c1/live")
        self.assertEqual(live.status, 400)

    async def test_unknown_conversation(self):
        for method, path, body in (
            ("GET", "/v1/conversations/nope", None),
            ("POST", "/v1/conversations/nope/page", {"page_size": 5, "cutoff_ms": 0}),
            ("POST", "/v1/conversations/nope/messages", {"body": "hi", "sender_id": "alice"}),
            ("GET", "/v1/conversations/nope/live?cutoff_ms=0", None),
        ):
            with self.subTest(path=path):
                resp = await self.client.request(method, path, json=body)
                self.assertEqual(resp.status, 404)
                self.assertEqual((await resp.json())["code"], "not_found")

    async def test_unavailable_backend_maps_to_503(self):
        self.memory.create_conversation("c1")
        self.memory.available = False

        resp = await self.client.get("/v1/conversations/c1")

        self.assertEqual(resp.status, 503)
        self.assertEqual((await resp.json())["code"], "unavailable")

    async def test_live_socket_sends_change_frames(self):
        self.memory.create_conversation("c1")
        self.memory.insert("c1", "hi", "bob", 10, "m1")

        ws = await self.client.ws_connect("/v1/conversations/c1/live", params={"cutoff_ms": "0"})
        replay = await ws.receive_json(timeout=2)
        self.memory.modify("c1", "m1", "hello")
        modified = await ws.receive_json(timeout=2)
        await ws.close()

        self.assertEqual(replay["t"], "message.added")
        self.assertEqual(modified["t"], "message.modified")
        self.assertEqual(modified["body"]["body"], "hello")
        await wait_for(lambda: self.memory.subscriber_count("c1") == 0)


class DevGatewayCliTests(unittest.TestCase):
    def test_serve_runs_app(self):
        with mock.patch("chat_sync.dev_gateway.web.run_app") as run_app, mock.patch(
            "chat_sync.dev_gateway.logging.basicConfig"
        ) as basic_config:
            self.assertEqual(main(["serve", "--port", "9001", "--log-level", "DEBUG"]), 0)

        self.assertEqual(run_app.call_args.kwargs, {"host": "127.0.0.1", "port": 9001})
        self.assertEqual(basic_config.call_args.kwargs["level"], "DEBUG")

    def test_command_is_required(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                main([])


if __name__ == "__main__":
    unittest.main()
