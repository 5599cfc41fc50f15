import unittest

from chatter.accounts import InMemoryAccountStore
from chatter.engine import Coordinator
from chatter.errors import InvalidRequest, Unauthenticated, UnknownRecipient
from chatter.history import MessageStatus

STATUS_ORDER = {"sent": 0, "delivered": 1, "seen": 2}


class CoordinatorTestCase(unittest.TestCase):
    def setUp(self):
        self.coordinator = Coordinator()
        self.inbox: dict[str, list[dict]] = {}

    def connect(self, handle: str, user_id: str | None = None) -> None:
        self.inbox[handle] = []
        self.coordinator.on_connect(handle, self.inbox[handle].append)
        if user_id is not None:
            self.coordinator.on_login(handle, user_id)

    def frames(self, handle: str, frame_type: str) -> list[dict]:
        return [f for f in self.inbox[handle] if f["t"] == frame_type]

    def clear(self) -> None:
        for frames in self.inbox.values():
            frames.clear()


class PresenceFlowTests(CoordinatorTestCase):
    def test_login_broadcasts_online_users_to_every_connection(self):
        self.connect("anon")
        self.connect("c-alice", "alice")
        self.connect("c-bob", "bob")

        latest = self.frames("anon", "presence.online")[-1]
        self.assertEqual(latest["body"]["users"], ["alice", "bob"])

    def test_disconnect_of_last_session_goes_offline(self):
        self.connect("c-alice", "alice")
        self.connect("c-bob-1", "bob")
        self.connect("c-bob-2", "bob")

        self.coordinator.on_disconnect("c-bob-1")
        self.assertTrue(self.coordinator.presence.is_online("bob"))
        self.assertEqual(self.frames("c-alice", "presence.online")[-1]["body"]["users"], ["alice", "bob"])

        self.coordinator.on_disconnect("c-bob-2")
        self.assertFalse(self.coordinator.presence.is_online("bob"))
        self.assertEqual(self.frames("c-alice", "presence.online")[-1]["body"]["users"], ["alice"])

    def test_disconnected_connection_gets_nothing_more(self):
        self.connect("c-alice", "alice")
        self.connect("c-bob", "bob")
        self.coordinator.on_disconnect("c-bob")
        self.clear()

        self.coordinator.on_send("c-alice", "bob", "hi")

        self.assertEqual(self.inbox["c-bob"], [])

    def test_relogin_on_same_connection_switches_identity(self):
        self.connect("c1", "alice")
        self.coordinator.on_login("c1", "bob")

        self.assertFalse(self.coordinator.presence.is_online("alice"))
        self.assertTrue(self.coordinator.presence.is_online("bob"))

    def test_unauthenticated_actions_raise(self):
        self.connect("anon")
        for call in (
            lambda: self.coordinator.on_send("anon", "bob", "hi"),
            lambda: self.coordinator.on_get_history("anon", "bob"),
            lambda: self.coordinator.on_set_peek("anon", "bob"),
            lambda: self.coordinator.on_clear_peek("anon", "bob"),
            lambda: self.coordinator.on_poll_status("anon", "bob"),
        ):
            with self.assertRaises(Unauthenticated):
                call()
        self.assertEqual(len(self.coordinator.history.list_messages("anon_bob")), 0)


class DeliveryFlowTests(CoordinatorTestCase):
    def test_send_to_offline_user_is_sent_and_only_echoed(self):
        self.connect("c-alice", "alice")
        self.clear()

        message = self.coordinator.on_send("c-alice", "bob", "hi")

        self.assertEqual(message.status, MessageStatus.SENT)
        echoed = self.frames("c-alice", "chat.message")
        self.assertEqual(len(echoed), 1)
        self.assertEqual(echoed[0]["body"]["message"]["status"], "sent")
        self.assertEqual(self.frames("c-alice", "chat.seen"), [])

    def test_bob_connecting_later_does_not_change_status(self):
        self.connect("c-alice", "alice")
        message = self.coordinator.on_send("c-alice", "bob", "hi")
        self.connect("c-bob", "bob")

        stored = self.coordinator.history.list_messages(message.conv_id)[0]
        self.assertEqual(stored.status, MessageStatus.SENT)

    def test_send_to_peeking_user_is_seen_with_notification(self):
        self.connect("c-alice", "alice")
        self.connect("c-bob", "bob")
        self.coordinator.on_set_peek("c-bob", "alice")
        self.clear()

        message = self.coordinator.on_send("c-alice", "bob", "hi")

        self.assertEqual(message.status, MessageStatus.SEEN)
        alice_msg = self.frames("c-alice", "chat.message")[0]
        bob_msg = self.frames("c-bob", "chat.message")[0]
        self.assertEqual(alice_msg, bob_msg)
        self.assertEqual(alice_msg["body"]["message"]["status"], "seen")
        self.assertEqual(len(self.frames("c-alice", "chat.seen")), 1)
        self.assertEqual(self.frames("c-bob", "chat.seen"), [])

    def test_delivered_then_poll_after_peek_becomes_seen(self):
        self.connect("c-alice", "alice")
        self.connect("c-bob", "bob")
        message = self.coordinator.on_send("c-alice", "bob", "hi")
        self.assertEqual(message.status, MessageStatus.DELIVERED)
        self.assertEqual(self.frames("c-bob", "chat.message")[0]["body"]["message"]["status"], "delivered")

        self.coordinator.on_set_peek("c-bob", "alice")
        self.clear()
        newly_seen = self.coordinator.on_poll_status("c-alice", "bob")

        self.assertEqual([m.msg_id for m in newly_seen], [message.msg_id])
        seen = self.frames("c-alice", "chat.seen")
        self.assertEqual(len(seen), 1)
        self.assertEqual(seen[0]["body"]["message"]["msg_id"], message.msg_id)
        self.assertEqual(self.inbox["c-bob"], [])

        self.clear()
        self.assertEqual(self.coordinator.on_poll_status("c-alice", "bob"), [])
        self.assertEqual(self.inbox["c-alice"], [])

    def test_history_fetch_emits_one_seen_per_message_to_sender(self):
        self.connect("c-alice", "alice")
        first = self.coordinator.on_send("c-alice", "bob", "one")
        second = self.coordinator.on_send("c-alice", "bob", "two")
        self.connect("c-bob", "bob")
        self.connect("c-carol", "carol")
        self.clear()

        history = self.coordinator.on_get_history("c-bob", "alice", request_id="h1")

        self.assertEqual([m.msg_id for m in history], [first.msg_id, second.msg_id])
        reply = self.frames("c-bob", "chat.history")
        self.assertEqual(len(reply), 1)
        self.assertEqual(reply[0]["id"], "h1")
        self.assertEqual([m["status"] for m in reply[0]["body"]["messages"]], ["seen", "seen"])
        seen_ids = [f["body"]["message"]["msg_id"] for f in self.frames("c-alice", "chat.seen")]
        self.assertEqual(seen_ids, [first.msg_id, second.msg_id])
        self.assertEqual(self.frames("c-bob", "chat.seen"), [])
        self.assertEqual(self.inbox["c-carol"], [])

    def test_history_reply_goes_to_requesting_connection_only(self):
        self.connect("c-bob-1", "bob")
        self.connect("c-bob-2", "bob")
        self.clear()

        self.coordinator.on_get_history("c-bob-1", "alice")

        self.assertEqual(len(self.frames("c-bob-1", "chat.history")), 1)
        self.assertEqual(self.inbox["c-bob-2"], [])

    def test_status_never_regresses_across_operations(self):
        self.connect("c-alice", "alice")
        self.connect("c-bob", "bob")
        self.coordinator.on_set_peek("c-bob", "alice")
        message = self.coordinator.on_send("c-alice", "bob", "hi")
        self.coordinator.on_clear_peek("c-bob", "alice")
        self.coordinator.on_get_history("c-bob", "alice")
        self.coordinator.on_poll_status("c-alice", "bob")

        observed = [
            f["body"]["message"]["status"]
            for f in self.inbox["c-alice"]
            if f["t"] in {"chat.message", "chat.seen"} and f["body"]["message"]["msg_id"] == message.msg_id
        ]
        ranks = [STATUS_ORDER[s] for s in observed]
        self.assertEqual(ranks, sorted(ranks))
        self.assertEqual(observed.count("seen"), 2)

    def test_unknown_recipient_accepted_by_default(self):
        accounts = InMemoryAccountStore()
        self.coordinator = Coordinator(accounts=accounts)
        self.connect("c-alice", "alice")

        message = self.coordinator.on_send("c-alice", "nobody", "hi")

        self.assertEqual(message.status, MessageStatus.SENT)

    def test_unknown_recipient_rejected_when_configured(self):
        accounts = InMemoryAccountStore()
        self.coordinator = Coordinator(accounts=accounts, reject_unknown_recipients=True)
        self.connect("c-alice", "alice")

        with self.assertRaises(UnknownRecipient):
            self.coordinator.on_send("c-alice", "nobody", "hi")


class PeekFlowTests(CoordinatorTestCase):
    def test_peek_notifies_both_parties_with_same_set(self):
        self.connect("c-alice", "alice")
        self.connect("c-bob", "bob")
        self.connect("c-carol", "carol")
        self.clear()

        self.coordinator.on_set_peek("c-alice", "bob")

        to_alice = self.frames("c-alice", "chat.peekers")
        to_bob = self.frames("c-bob", "chat.peekers")
        self.assertEqual(to_alice[0]["body"], {"with_user": "bob", "peekers": ["alice"]})
        self.assertEqual(to_bob[0]["body"], {"with_user": "alice", "peekers": ["alice"]})
        self.assertEqual(self.inbox["c-carol"], [])

    def test_peek_at_self_rejected(self):
        self.connect("c-alice", "alice")
        with self.assertRaises(InvalidRequest):
            self.coordinator.on_set_peek("c-alice", "alice")

    def test_stale_clear_changes_nothing(self):
        self.connect("c-alice", "alice")
        self.connect("c-bob", "bob")
        self.coordinator.on_set_peek("c-alice", "carol")
        self.clear()

        self.coordinator.on_clear_peek("c-alice", "bob")

        self.assertTrue(self.coordinator.peeks.is_peeking("alice", "carol"))
        self.assertEqual(self.inbox["c-alice"], [])
        self.assertEqual(self.inbox["c-bob"], [])

    def test_disconnect_clears_peeks_at_departed_user(self):
        self.connect("c-bob", "bob")
        self.connect("c-carol", "carol")
        self.coordinator.on_set_peek("c-carol", "bob")
        self.clear()

        self.coordinator.on_disconnect("c-bob")

        self.assertFalse(self.coordinator.presence.is_online("bob"))
        self.assertFalse(self.coordinator.peeks.is_peeking("carol", "bob"))
        update = self.frames("c-carol", "chat.peekers")
        self.assertEqual(update[-1]["body"], {"with_user": "bob", "peekers": []})

    def test_disconnect_with_second_session_keeps_peek(self):
        self.connect("c-bob-1", "bob")
        self.connect("c-bob-2", "bob")
        self.coordinator.on_set_peek("c-bob-1", "alice")

        self.coordinator.on_disconnect("c-bob-1")

        self.assertTrue(self.coordinator.peeks.is_peeking("bob", "alice"))

    def test_expire_peeks_notifies(self):
        clock = {"now": 0}
        self.coordinator = Coordinator(peek_ttl_ms=1000, now_func=lambda: clock["now"])
        self.connect("c-alice", "alice")
        self.connect("c-bob", "bob")
        self.coordinator.on_set_peek("c-bob", "alice")
        self.clear()

        clock["now"] = 5000
        self.coordinator.expire_peeks()

        self.assertEqual(self.frames("c-alice", "chat.peekers")[0]["body"], {"with_user": "bob", "peekers": []})
        message = self.coordinator.on_send("c-alice", "bob", "hi")
        self.assertEqual(message.status, MessageStatus.DELIVERED)


if __name__ == "__main__":
    unittest.main()
