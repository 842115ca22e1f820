import dataclasses
import unittest
from datetime import datetime, timedelta, timezone

from chatsync.models import ChatPartner, Identity, LastMessage, Message
from chatsync.roles import Role
from chatsync.store import ConversationStore, MessageLog

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _msg(message_id, sender_id=2, receiver_id=1, offset_s=None):
    offset = message_id if offset_s is None else offset_s
    return Message(message_id, sender_id, receiver_id, f"m{message_id}", T0 + timedelta(seconds=offset))


class MessageLogTests(unittest.TestCase):
    def test_insert_keeps_creation_order(self):
        log = MessageLog()
        for message in (_msg(3), _msg(1), _msg(2)):
            self.assertTrue(log.insert(message))
        self.assertEqual([m.message_id for m in log.snapshot()], [1, 2, 3])
        self.assertEqual(log.newest().message_id, 3)

    def test_equal_timestamps_order_by_id(self):
        log = MessageLog()
        log.insert(_msg(9, offset_s=0))
        log.insert(_msg(4, offset_s=0))
        self.assertEqual([m.message_id for m in log.snapshot()], [4, 9])

    def test_duplicate_id_is_rejected(self):
        log = MessageLog()
        self.assertTrue(log.insert(_msg(1)))
        self.assertFalse(log.insert(dataclasses.replace(_msg(1), body="changed")))
        self.assertEqual(len(log), 1)
        self.assertEqual(log.get(1).body, "m1")
        self.assertIn(1, log)

    def test_replace_swaps_in_place(self):
        log = MessageLog()
        for message_id in (1, 2, 3):
            log.insert(_msg(message_id))
        log.replace(dataclasses.replace(_msg(2), is_read=True))
        self.assertEqual([m.is_read for m in log.snapshot()], [False, True, False])
        self.assertTrue(log.get(2).is_read)


class ConversationStoreQueryTests(unittest.TestCase):
    def setUp(self):
        self.store = ConversationStore(Identity(user_id=1, name="Me", role=Role.STUDENT_TRAINEE))
        self.store.set_partners(
            [
                ChatPartner(2, "Bea", Role.EMPLOYER),
                ChatPartner(3, "al", Role.SUPERVISOR),
                ChatPartner(4, "Cole", Role.OJT_HEAD),
            ]
        )
        older = self.store.ensure_conversation(2)
        older.last_message = LastMessage("old", T0, False)
        older.unread_count = 2
        newer = self.store.ensure_conversation(3)
        newer.last_message = LastMessage("new", T0 + timedelta(minutes=5), True)
        self.store.ensure_conversation(5)

    def test_conversations_most_recent_first(self):
        self.assertEqual([c.partner_id for c in self.store.conversations()], [3, 2, 5])

    def test_new_conversation_takes_name_from_partner_directory(self):
        self.assertEqual(self.store.conversation(2).partner_name, "Bea")
        self.assertIs(self.store.conversation(2).partner_role, Role.EMPLOYER)
        self.assertEqual(self.store.conversation(5).partner_name, "")
        self.assertIs(self.store.conversation(5).partner_role, Role.UNKNOWN)

    def test_partners_sorted_by_name(self):
        self.assertEqual([p.name for p in self.store.partners()], ["al", "Bea", "Cole"])
        self.assertEqual([p.user_id for p in self.store.available_partners()], [4])

    def test_search(self):
        self.assertEqual([c.partner_id for c in self.store.search_conversations(" BE ")], [2])
        self.assertEqual(self.store.search_partners("co")[0].user_id, 4)
        self.assertEqual(self.store.search_partners("bea"), [])

    def test_unread_totals_and_empty_logs(self):
        self.assertEqual(self.store.total_unread(), 2)
        self.assertEqual(self.store.messages(2), [])
        self.assertIsNone(self.store.conversation(99))
        self.assertEqual(self.store.self_id, 1)


if __name__ == "__main__":
    unittest.main()
