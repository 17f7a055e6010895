import asyncio
import unittest

from chat_sync.errors import BackendUnavailable, ConversationNotFound
from chat_sync.memory_backend import MemoryBackend
from chat_sync.message import DraftMessage, EventKind
from chat_sync.ports import BackendPort

from sync_test_util import CUTOFF_MS, NOW_MS, history_messages


async def take(subscription, count):
    return [await asyncio.wait_for(subscription.__anext__(), 1) for _ in range(count)]


class TestMemoryBackend(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        ids = iter(f"n{index}" for index in range(100))
        self.backend = MemoryBackend(now_func=lambda: NOW_MS, id_factory=lambda: next(ids))
        self.backend.create_conversation("c1", ["bob", "alice", "bob"])
        self.history = [
            self.backend.insert("c1", message.body, message.sender_id, message.sent_at_ms, message.msg_id)
            for message in history_messages(5)
        ]
        self.today = self.backend.insert("c1", "today", "bob", CUTOFF_MS + 10, "t0")

    def test_satisfies_backend_port(self):
        self.assertIsInstance(self.backend, BackendPort)

    async def test_describe_reports_members_and_first_message(self):
        info = await self.backend.describe_conversation("c1")

        self.assertEqual(info.member_ids, ("alice", "bob"))
        self.assertEqual(info.first_msg_id, "h000")
        self.assertIsNone(await self.backend.describe_conversation("missing"))

    def test_create_twice_is_rejected(self):
        with self.assertRaises(ValueError):
            self.backend.create_conversation("c1")

    async def test_pages_walk_backwards_from_cutoff(self):
        first = await self.backend.fetch_older_page("c1", None, 2, cutoff_ms=CUTOFF_MS)
        second = await self.backend.fetch_older_page("c1", first[0].msg_id, 2, cutoff_ms=CUTOFF_MS)
        last = await self.backend.fetch_older_page("c1", second[0].msg_id, 2, cutoff_ms=CUTOFF_MS)

        self.assertEqual([m.msg_id for m in first], ["h003", "h004"])
        self.assertEqual([m.msg_id for m in second], ["h001", "h002"])
        self.assertEqual([m.msg_id for m in last], ["h000"])

    async def test_equal_timestamps_page_by_arrival(self):
        self.backend.create_conversation("c2")
        for msg_id in ("a", "b", "c"):
            self.backend.insert("c2", msg_id, "alice", CUTOFF_MS - 1, msg_id)

        page = await self.backend.fetch_older_page("c2", "c", 5, cutoff_ms=CUTOFF_MS)

        self.assertEqual([m.msg_id for m in page], ["a", "b"])

    async def test_page_argument_errors(self):
        with self.assertRaises(ValueError):
            await self.backend.fetch_older_page("c1", "nope", 2, cutoff_ms=CUTOFF_MS)
        with self.assertRaises(ValueError):
            await self.backend.fetch_older_page("c1", None, 0, cutoff_ms=CUTOFF_MS)
        with self.assertRaises(ConversationNotFound):
            await self.backend.fetch_older_page("missing", None, 2, cutoff_ms=CUTOFF_MS)

    async def test_subscription_replays_today_then_streams_changes(self):
        subscription = await self.backend.subscribe_live("c1", CUTOFF_MS)
        self.assertEqual(subscription.backlog(), 1)

        self.backend.insert("c1", "old", "bob", CUTOFF_MS - 1)
        added = self.backend.insert("c1", "new", "alice", CUTOFF_MS + 20)
        self.backend.modify("c1", "t0", "edited")
        self.backend.remove("c1", added.msg_id)
        events = await take(subscription, 4)

        self.assertEqual(
            [(event.kind, event.message.msg_id) for event in events],
            [
                (EventKind.ADDED, "t0"),
                (EventKind.ADDED, added.msg_id),
                (EventKind.MODIFIED, "t0"),
                (EventKind.REMOVED, added.msg_id),
            ],
        )
        self.assertEqual(events[2].message.body, "edited")
        self.assertEqual(subscription.backlog(), 0)

    async def test_cancel_unsubscribes(self):
        subscription = await self.backend.subscribe_live("c1", CUTOFF_MS)
        self.assertEqual(self.backend.subscriber_count("c1"), 1)

        subscription.cancel()
        subscription.cancel()
        self.backend.insert("c1", "after", "bob", CUTOFF_MS + 30)

        self.assertEqual(self.backend.subscriber_count("c1"), 0)
        self.assertEqual([event async for event in subscription], [])

    async def test_append_assigns_id_and_time(self):
        message = await self.backend.append("c1", DraftMessage(conv_id="c1", body="hi", sender_id="alice"))

        self.assertEqual(message.msg_id, "n0")
        self.assertEqual(message.sent_at_ms, NOW_MS)
        self.assertEqual(self.backend.messages("c1")[-1], message)

    async def test_unavailable_backend_fails_every_call(self):
        self.backend.available = False
        draft = DraftMessage(conv_id="c1", body="hi", sender_id="alice")

        for call in (
            self.backend.describe_conversation("c1"),
            self.backend.subscribe_live("c1", CUTOFF_MS),
            self.backend.fetch_older_page("c1", None, 2, cutoff_ms=CUTOFF_MS),
            self.backend.append("c1", draft),
        ):
            with self.assertRaises(BackendUnavailable):
                await call


if __name__ == "__main__":
    unittest.main()
