import unittest

from chatsync.message_log import MessageLog
from chatsync.models import (
    STATUS_CONFIRMED,
    STATUS_FAILED,
    STATUS_PENDING,
    ChannelMessagesTopic,
    Message,
    PresenceEntry,
    PresenceTopic,
    UserProfile,
    parse_documents,
)
from chatsync.presence import PresenceSet
from chatsync.search import ENTER_TERM, MATCHES, NO_RESULTS, search


def make_message(msg_id, sent_at, text="hello", channel="ideas", author_id="u1", name="Ada"):
    return Message(
        id=msg_id,
        channel=channel,
        author_id=author_id,
        author_display_name=name,
        author_avatar_url="",
        text=text,
        sent_at=sent_at,
    )


def make_echo(local_id, text, created_ms, author_id="u1", channel="ideas"):
    return Message(
        id=local_id,
        channel=channel,
        author_id=author_id,
        author_display_name="Ada",
        author_avatar_url="",
        text=text,
        sent_at=None,
        status=STATUS_PENDING,
        local_created_ms=created_ms,
    )


def entry(user_id, name=None):
    return PresenceEntry(user_id=user_id, display_name=name or user_id, email=f"{user_id}@example.com", avatar_url="")


class TestMessageLog(unittest.TestCase):
    def test_reapplying_snapshot_is_idempotent(self):
        log = MessageLog()
        snapshot = [make_message("a", 2), make_message("b", 1)]

        self.assertTrue(log.apply_snapshot(snapshot))
        first = log.messages
        self.assertFalse(log.apply_snapshot(snapshot))

        self.assertEqual(log.messages, first)
        self.assertEqual([m.id for m in first], ["b", "a"])

    def test_duplicate_ids_within_snapshot_collapse(self):
        log = MessageLog()
        log.apply_snapshot([make_message("a", 1), make_message("a", 1)])
        self.assertEqual(len(log), 1)

    def test_orders_by_sent_at_regardless_of_input_order(self):
        log = MessageLog()
        log.apply_snapshot([make_message("c", 30), make_message("a", 10), make_message("b", 20)])
        self.assertEqual([m.id for m in log], ["a", "b", "c"])

    def test_equal_timestamps_keep_first_arrival_order(self):
        log = MessageLog()
        log.apply_snapshot([make_message("x", 5), make_message("y", 5)])
        log.apply_snapshot([make_message("y", 5), make_message("x", 5)])
        self.assertEqual([m.id for m in log], ["x", "y"])

        log.apply_snapshot([make_message("z", 5), make_message("y", 5), make_message("x", 5)])
        self.assertEqual([m.id for m in log], ["x", "y", "z"])

    def test_log_mirrors_latest_snapshot(self):
        log = MessageLog()
        log.apply_snapshot([make_message("a", 1), make_message("b", 2)])
        log.apply_snapshot([make_message("b", 2)])
        self.assertEqual([m.id for m in log], ["b"])

        self.assertTrue(log.apply_snapshot([]))
        self.assertTrue(log.is_empty)

    def test_reset_clears_messages_and_echoes(self):
        log = MessageLog()
        log.apply_snapshot([make_message("a", 1)])
        log.append(make_echo("local-1", "hi", 1))

        self.assertTrue(log.reset())
        self.assertEqual(log.messages, ())
        self.assertFalse(log.reset())

    def test_echo_reconciled_by_author_text_and_channel(self):
        log = MessageLog(reconcile_window_ms=5_000)
        log.append(make_echo("local-1", "hi", created_ms=1_000))
        self.assertEqual(log.messages[0].status, STATUS_PENDING)

        log.apply_snapshot([make_message("srv-1", 1_200, text="hi")])

        self.assertEqual([m.id for m in log], ["srv-1"])
        self.assertEqual(log.messages[0].status, STATUS_CONFIRMED)

    def test_echo_outside_window_is_kept_pending(self):
        log = MessageLog(reconcile_window_ms=5_000)
        log.append(make_echo("local-1", "hi", created_ms=1_000))

        log.apply_snapshot([make_message("srv-old", 100_000, text="hi")])

        self.assertEqual([m.id for m in log], ["srv-old", "local-1"])

    def test_echo_in_other_channel_is_not_reconciled(self):
        log = MessageLog()
        log.append(make_echo("local-1", "hi", created_ms=1_000))
        log.apply_snapshot([make_message("srv-1", 1_000, text="hi", channel="support")])
        self.assertEqual([m.id for m in log], ["srv-1", "local-1"])

    def test_acknowledged_id_wins_over_content_match(self):
        log = MessageLog()
        log.append(make_echo("local-1", "same", 1_000))
        log.append(make_echo("local-2", "same", 1_001))
        log.confirm("local-2", "srv-2")

        log.apply_snapshot([make_message("srv-2", 1_100, text="same")])

        self.assertEqual([m.id for m in log], ["srv-2", "local-1"])

    def test_confirm_after_snapshot_already_arrived(self):
        log = MessageLog(reconcile_window_ms=5_000)
        log.append(make_echo("local-1", "x", 1_000))
        log.apply_snapshot([make_message("srv-1", 999_999, text="x")])
        self.assertEqual([m.id for m in log], ["srv-1", "local-1"])

        self.assertTrue(log.confirm("local-1", "srv-1"))
        self.assertEqual([m.id for m in log], ["srv-1"])

    def test_failed_echo_stays_until_discarded(self):
        log = MessageLog()
        log.append(make_echo("local-1", "hi", 1_000))
        self.assertTrue(log.mark_failed("local-1"))
        self.assertFalse(log.mark_failed("local-1"))

        log.apply_snapshot([make_message("srv-1", 1_000, text="something else")])
        self.assertEqual([(m.id, m.status) for m in log], [("srv-1", STATUS_CONFIRMED), ("local-1", STATUS_FAILED)])

        self.assertTrue(log.discard("local-1"))
        self.assertEqual([m.id for m in log], ["srv-1"])

    def test_failed_echo_replaced_when_write_was_stored(self):
        log = MessageLog(reconcile_window_ms=5_000)
        log.append(make_echo("local-1", "hi", 1_000))
        log.mark_failed("local-1")

        log.apply_snapshot([make_message("srv-1", 1_500, text="hi")])

        self.assertEqual([(m.id, m.status) for m in log], [("srv-1", STATUS_CONFIRMED)])
        self.assertIsNone(log.get("local-1"))

    def test_failed_echo_outside_window_stays(self):
        log = MessageLog(reconcile_window_ms=5_000)
        log.append(make_echo("local-1", "hi", 1_000))
        log.mark_failed("local-1")

        log.apply_snapshot([make_message("srv-1", 60_000, text="hi")])

        self.assertEqual([m.status for m in log], [STATUS_CONFIRMED, STATUS_FAILED])

    def test_arrival_order_forgets_retracted_records(self):
        log = MessageLog()
        log.append(make_echo("local-1", "pending", 1_000))
        log.apply_snapshot([make_message("a", 1), make_message("b", 2)])
        log.apply_snapshot([make_message("b", 2)])

        self.assertEqual(set(log._arrival), {"b", "local-1"})

        log.apply_snapshot([make_message("a", 2), make_message("b", 2)])
        self.assertEqual([m.id for m in log], ["b", "a", "local-1"])

    def test_append_rejects_authoritative_messages(self):
        log = MessageLog()
        with self.assertRaises(ValueError):
            log.append(make_message("a", 1))


class TestPresenceSet(unittest.TestCase):
    def test_local_user_is_excluded(self):
        presence = PresenceSet(self_user_id="me")
        presence.apply_snapshot([entry("me"), entry("a"), entry("b")])

        self.assertEqual(set(presence.entries), {"a", "b"})
        self.assertNotIn("me", presence)

    def test_snapshot_replaces_previous_set(self):
        presence = PresenceSet()
        presence.apply_snapshot([entry("a"), entry("b")])

        self.assertTrue(presence.apply_snapshot([entry("c")]))
        self.assertEqual(set(presence.entries), {"c"})
        self.assertFalse(presence.apply_snapshot([entry("c")]))

    def test_entries_keyed_by_user_id(self):
        presence = PresenceSet()
        presence.apply_snapshot([entry("a", "Old"), entry("a", "New")])
        self.assertEqual(len(presence), 1)
        self.assertEqual(presence.entries["a"].display_name, "New")

    def test_iteration_is_sorted_by_name(self):
        presence = PresenceSet()
        presence.apply_snapshot([entry("z", "Zed"), entry("a", "amy")])
        self.assertEqual([e.user_id for e in presence], ["a", "z"])


class TestSearch(unittest.TestCase):
    def setUp(self):
        self.log = [
            make_message("1", 1, text="Launch plan", name="Ada"),
            make_message("2", 2, text="budget", name="Grace"),
            make_message("3", 3, text="another PLAN", name="Linus"),
        ]

    def test_blank_term_asks_for_input(self):
        for term in ("", "   "):
            result = search(term, self.log)
            self.assertEqual(result.state, ENTER_TERM)
            self.assertEqual(result.messages, ())

    def test_no_match_is_distinct_state(self):
        result = search("zzz-no-match", self.log)
        self.assertEqual(result.state, NO_RESULTS)
        self.assertFalse(result.has_matches)

    def test_case_insensitive_text_match_keeps_log_order(self):
        result = search("plan", self.log)
        self.assertEqual(result.state, MATCHES)
        self.assertEqual([m.id for m in result.messages], ["1", "3"])

    def test_matches_author_name(self):
        self.assertEqual([m.id for m in search("GRACE", self.log).messages], ["2"])

    def test_single_letter_returns_chronological_results(self):
        self.assertEqual([m.id for m in search("a", self.log).messages], ["1", "2", "3"])


class TestModels(unittest.TestCase):
    def test_topics_compare_by_value(self):
        self.assertEqual(ChannelMessagesTopic("ideas"), ChannelMessagesTopic("ideas"))
        self.assertNotEqual(ChannelMessagesTopic("ideas"), ChannelMessagesTopic("support"))
        self.assertEqual(PresenceTopic(), PresenceTopic())
        self.assertEqual(len({ChannelMessagesTopic("a"), ChannelMessagesTopic("a"), PresenceTopic()}), 2)

    def test_message_from_document_defaults_display_name(self):
        message = Message.from_document(
            {"id": "m1", "channel": "ideas", "user_id": "u1", "email": "ada@example.com", "text": "hi", "ts_ms": 5}
        )
        self.assertEqual(message.author_display_name, "ada")
        self.assertTrue(message.author_avatar_url.startswith("https://ui-avatars.com/api/?name=ada"))
        self.assertEqual(message.sent_at, 5)

    def test_message_from_document_rejects_malformed(self):
        bad_docs = [
            {"channel": "ideas", "user_id": "u1", "text": "hi"},
            {"id": "m1", "channel": "ideas", "user_id": "u1", "text": ""},
            {"id": "m1", "channel": "ideas", "user_id": "u1", "text": " \n\t "},
            {"id": "m1", "channel": "ideas", "user_id": "u1", "text": "hi", "ts_ms": "soon"},
            {"id": "m1", "channel": "ideas", "user_id": "u1", "text": "hi", "ts_ms": True},
            "not a document",
        ]
        for doc in bad_docs:
            with self.assertRaises(ValueError):
                Message.from_document(doc)

    def test_parse_documents_keeps_what_parses(self):
        docs = [{"uid": "a"}, {"email": "x@example.com"}, {"uid": "b", "display_name": "Bee"}]
        entries, skipped = parse_documents(docs, PresenceEntry.from_document)
        self.assertEqual([e.user_id for e in entries], ["a", "b"])
        self.assertEqual(skipped, 1)

    def test_user_profile_fallbacks(self):
        user = UserProfile(uid="u1", email="grace.hopper@example.com")
        self.assertEqual(user.name, "grace.hopper")
        self.assertIn("grace.hopper%40example.com", user.avatar_url)

        named = UserProfile(uid="u2", email="a@example.com", display_name="Ada L", photo_url="https://img/a.png")
        self.assertEqual(named.name, "Ada L")
        self.assertEqual(named.avatar_url, "https://img/a.png")


if __name__ == "__main__":
    unittest.main()
