import asyncio
import unittest

from chatsync.directory import DirectoryError
from chatsync.events import ConversationOpened, Disconnected, NewMessage
from chatsync.identity import AuthError
from chatsync.models import PHASE_CONNECTED, PHASE_DISCONNECTED, PHASE_ERROR, message_from_payload
from chatsync.roles import Role
from chatsync.session import MessagingSession, SessionNotStartedError
from chatsync.transport import NotConnectedError

from .fake_backend import FakeBackend, frame, iso_at, message_payload, wait_until


class MessagingSessionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = FakeBackend()
        await self.backend.start()
        self.token = self.backend.issue_token(1)
        self.backend.partners = [
            {"user_id": 2, "name": "Bea", "role": "employer"},
            {"user_id": 7, "name": "Grace", "role": "supervisor"},
        ]
        self.backend.conversations = [
            {
                "partner_id": 2,
                "partner_name": "Bea",
                "partner_role": "employer",
                "last_message": {"message": "hello back", "created_at": iso_at(5), "is_sender": True},
                "unread_count": 3,
            }
        ]
        self.backend.history[2] = [message_payload(1, 2, 1, "hey"), message_payload(5, 1, 2, "hello back")]
        self.changes = []
        self.sessions = []

    async def asyncTearDown(self):
        for session in self.sessions:
            await session.close()
        await self.backend.close()

    async def _session(self, token=None, *, connect=True, **config):
        session = MessagingSession(
            token or self.token,
            self.backend.config(**config),
            on_change=self.changes.append,
        )
        self.sessions.append(session)
        await session.start(connect=connect)
        await session.drain()
        return session

    def _seen(self, kind):
        return len([event for event in self.changes if isinstance(event, kind)])

    async def test_start_loads_snapshot_and_connects(self):
        session = await self._session()
        store = session.store

        self.assertEqual(store.connection.phase, PHASE_CONNECTED)
        self.assertEqual([c.partner_id for c in store.conversations()], [2])
        self.assertEqual(store.conversation(2).unread_count, 3)
        self.assertEqual([p.name for p in store.available_partners()], ["Grace"])
        self.assertEqual(store.identity.user_id, 1)

    async def test_open_conversation_with_live_message_stays_read(self):
        session = await self._session()
        await session.open_conversation(2)
        await session.drain()

        store = session.store
        self.assertEqual(store.open_partner_id, 2)
        self.assertEqual([m.message_id for m in store.messages(2)], [1, 5])
        self.assertEqual(store.conversation(2).unread_count, 0)

        await self.backend.push(frame("new_message", message_payload(100, 2, 1, "live")))
        await wait_until(lambda: self._seen(NewMessage) == 1)
        await session.drain()

        self.assertEqual([m.message_id for m in store.messages(2)], [1, 5, 100])
        self.assertEqual(store.conversation(2).unread_count, 0)
        self.assertEqual(store.conversation(2).last_message.text, "live")
        await wait_until(lambda: len(self.backend.frames_of("mark_read")) == 2)
        self.assertEqual({f["body"]["partner_id"] for f in self.backend.frames_of("mark_read")}, {2})

    async def test_redelivery_after_reconnect_is_deduplicated(self):
        session = await self._session()
        await session.open_conversation(2)
        await self.backend.push(frame("new_message", message_payload(100, 2, 1, "live")))
        await wait_until(lambda: self._seen(NewMessage) == 1)
        await session.drain()

        await self.backend.drop_connections()
        await wait_until(lambda: self.backend.connections == 2 and session.transport.connected)
        await self.backend.push(frame("new_message", message_payload(100, 2, 1, "live")))
        await wait_until(lambda: self._seen(NewMessage) == 2)
        await session.drain()

        store = session.store
        self.assertEqual([m.message_id for m in store.messages(2)], [1, 5, 100])
        self.assertEqual(store.conversation(2).unread_count, 0)
        self.assertEqual(self._seen(Disconnected), 0)
        self.assertEqual(store.connection.phase, PHASE_CONNECTED)

    async def test_send_while_disconnected_fails_and_leaves_log_alone(self):
        session = await self._session(connect=False)
        await session.open_conversation(2)
        await session.drain()
        before = session.store.messages(2)

        with self.assertRaises(NotConnectedError):
            await session.send_message(2, "hello")
        await session.drain()

        self.assertEqual(session.store.messages(2), before)
        self.assertEqual(self.backend.received, [])
        self.assertEqual(session.store.conversation(2).unread_count, 0)

    async def test_message_from_new_partner_matches_later_resync(self):
        session = await self._session()
        await self.backend.push(frame("new_message", message_payload(40, 7, 1, "first contact")))
        await wait_until(lambda: self._seen(NewMessage) == 1)
        await session.drain()

        local = session.store.conversation(7)
        self.assertEqual(local.partner_name, "Grace")
        self.assertIs(local.partner_role, Role.SUPERVISOR)
        self.assertEqual(local.unread_count, 1)
        self.assertEqual(local.last_message.text, "first contact")
        self.assertEqual([c.partner_id for c in session.store.conversations()], [7, 2])
        live_preview = local.last_message

        self.backend.conversations.append(
            {
                "partner_id": 7,
                "partner_name": "Grace",
                "partner_role": "supervisor",
                "last_message": {"message": "first contact", "created_at": iso_at(40), "is_sender": False},
                "unread_count": 1,
            }
        )
        await session.refresh()
        await session.drain()

        resynced = session.store.conversation(7)
        self.assertEqual(resynced.unread_count, 1)
        self.assertEqual(resynced.last_message, live_preview)

    async def test_send_is_visible_only_through_the_acknowledgement(self):
        session = await self._session()
        message = await session.send_message(2, "  see you  ")
        await session.drain()

        self.assertEqual(message.body, "see you")
        self.assertEqual(session.store.messages(2), [message])
        self.assertEqual(session.store.conversation(2).unread_count, 3)
        self.assertTrue(session.store.conversation(2).last_message.is_sender)

        with self.assertRaises(ValueError):
            await session.send_message(2, "   ")

    async def test_failed_refresh_leaves_store_unchanged(self):
        session = await self._session()
        self.backend.conversations = []
        self.backend.fail_status["/partners"] = 500

        with self.assertRaises(DirectoryError):
            await session.refresh()
        await session.drain()
        self.assertEqual([c.partner_id for c in session.store.conversations()], [2])
        self.assertEqual(len(session.store.partners()), 2)

    async def test_failed_conversation_listing_fails_the_refresh(self):
        session = await self._session()
        self.backend.partners.append({"user_id": 9, "name": "Ian", "role": "alumni"})
        self.backend.fail_status["/conversations"] = 500

        with self.assertRaises(DirectoryError) as ctx:
            await session.refresh()
        await session.drain()
        self.assertEqual(ctx.exception.kind, "server")
        self.assertEqual(len(session.store.partners()), 2)
        self.assertEqual(session.store.conversation(2).unread_count, 3)

    async def test_consumer_survives_a_failing_observer(self):
        calls = []

        def observer(event):
            calls.append(event)
            if len(calls) == 1:
                raise RuntimeError("observer broke")

        session = MessagingSession(self.token, self.backend.config(), on_change=observer)
        self.sessions.append(session)
        await session.start(connect=False, load=False)

        with self.assertLogs("chatsync.session", level="ERROR"):
            session.submit(NewMessage(message_from_payload(message_payload(10, 2, 1, "first"))))
            session.submit(object())
            session.submit(NewMessage(message_from_payload(message_payload(11, 3, 1, "second"))))
            await session.drain()

        self.assertTrue(session.started)
        self.assertEqual(session.store.conversation(2).unread_count, 1)
        self.assertEqual(session.store.conversation(3).last_message.text, "second")
        self.assertEqual(len(calls), 2)

    async def test_close_waits_for_cancelled_effects(self):
        session = await self._session(connect=False)
        started = asyncio.Event()
        cleaned = []

        async def stuck_mark_read(partner_id, watermark=None):
            started.set()
            try:
                await asyncio.Event().wait()
            finally:
                cleaned.append(partner_id)

        session.receipts.mark_read = stuck_mark_read
        session.submit(ConversationOpened(partner_id=2))
        await asyncio.wait_for(started.wait(), 2.0)
        effects = list(session._effects)

        with self.assertRaises(asyncio.TimeoutError):
            await asyncio.wait_for(session.close(), 0.2)
        self.assertEqual(cleaned, [2])
        self.assertTrue(all(task.done() for task in effects))

    async def test_partial_refreshes(self):
        session = await self._session()
        self.backend.partners.append({"user_id": 9, "name": "Ian", "role": "alumni"})
        self.backend.conversations[0]["unread_count"] = 6

        await session.refresh_partners()
        await session.drain()
        self.assertEqual([p.name for p in session.store.available_partners()], ["Grace", "Ian"])
        self.assertEqual(session.store.conversation(2).unread_count, 3)

        await session.refresh_conversations()
        await session.drain()
        self.assertEqual(session.store.conversation(2).unread_count, 6)

    async def test_failed_open_keeps_selection(self):
        session = await self._session()
        self.backend.fail_status["/messages"] = 500

        with self.assertRaises(DirectoryError):
            await session.open_conversation(2)
        await session.drain()
        self.assertIsNone(session.store.open_partner_id)
        self.assertEqual(session.store.conversation(2).unread_count, 3)

    async def test_close_conversation(self):
        session = await self._session()
        await session.open_conversation(2)
        session.close_conversation()
        await session.drain()
        self.assertIsNone(session.store.open_partner_id)

    async def test_unreachable_channel_keeps_rest_data(self):
        session = await self._session(ws_url="http://127.0.0.1:1/ws")

        self.assertEqual(session.store.connection.phase, PHASE_ERROR)
        self.assertIn("connect failed", session.store.connection.last_error)
        self.assertEqual(len(session.store.conversations()), 1)

    async def test_invalid_credential_is_fatal(self):
        session = MessagingSession("not-a-token", self.backend.config())
        with self.assertRaises(AuthError):
            await session.start()
        self.assertFalse(session.started)
        with self.assertRaises(SessionNotStartedError):
            session.store
        await session.close()

    async def test_close_records_disconnect(self):
        session = await self._session()
        await session.close()

        self.assertEqual(session.store.connection.phase, PHASE_DISCONNECTED)
        self.assertEqual(self.changes[-1], Disconnected("closed by client"))
        await wait_until(lambda: not self.backend.sockets)

    async def test_async_context_manager(self):
        async with MessagingSession(self.token, self.backend.config()) as session:
            self.assertTrue(session.started)
            self.assertTrue(session.transport.connected)
        self.assertFalse(session.started)


if __name__ == "__main__":
    unittest.main()
