import datetime as dt
import unittest

from chatsync.models import STATUS_FAILED, STATUS_PENDING, Message, PresenceEntry
from chatsync.render import (
    ENTER_TERM_TEXT,
    FALLBACK_AVATAR,
    NO_MESSAGES_TEXT,
    NO_RESULTS_TEXT,
    NO_USERS_TEXT,
    SIGNED_OUT_TEXT,
    format_time,
    message_line,
    render_message,
    render_message_log,
    render_presence,
    render_search,
)
from chatsync.search import search

UTC = dt.timezone.utc


def make_message(text="hi", sent_at=1_700_000_000_000, author_id="bob", name="Bob", status=None):
    message = Message(
        id="m1",
        channel="ideas",
        author_id=author_id,
        author_display_name=name,
        author_avatar_url="",
        text=text,
        sent_at=sent_at,
    )
    return message.with_status(status) if status else message


class TestRender(unittest.TestCase):
    def test_format_time(self):
        self.assertEqual(format_time(1_700_000_000_000, UTC), "22:13")
        self.assertEqual(format_time(None), "Just now")

    def test_user_content_is_escaped(self):
        html = render_message(make_message(text="<script>alert(1)</script>", name='"Eve" & co'), tz=UTC)
        self.assertNotIn("<script>", html)
        self.assertIn("&lt;script&gt;alert(1)&lt;/script&gt;", html)
        self.assertIn("&quot;Eve&quot; &amp; co", html)

    def test_sent_and_received_classes(self):
        own = render_message(make_message(author_id="me", sent_at=None, status=STATUS_PENDING), "me")
        other = render_message(make_message(), "me", UTC)

        self.assertTrue(own.startswith('<div class="message sent pending">'))
        self.assertIn("Just now", own)
        self.assertTrue(other.startswith('<div class="message received">'))
        self.assertIn(FALLBACK_AVATAR, other)

    def test_message_log_placeholders(self):
        self.assertIn(SIGNED_OUT_TEXT, render_message_log([make_message()], signed_in=False))
        self.assertIn(NO_MESSAGES_TEXT, render_message_log([]))
        self.assertEqual(render_message_log([make_message()], tz=UTC).count('class="message '), 1)

    def test_presence(self):
        self.assertIn(NO_USERS_TEXT, render_presence([]))
        html = render_presence([PresenceEntry("u1", "<b>Ann</b>", "ann@example.com", "https://img/a.png")])
        self.assertIn("&lt;b&gt;Ann&lt;/b&gt;", html)
        self.assertIn("ann@example.com", html)

    def test_search_states(self):
        log = [make_message(text="launch plan")]
        self.assertIn(ENTER_TERM_TEXT, render_search(search(" ", log)))
        self.assertIn(NO_RESULTS_TEXT, render_search(search("zzz", log)))
        self.assertIn("launch plan", render_search(search("plan", log), UTC))

    def test_message_line(self):
        self.assertEqual(message_line(make_message(), UTC), "[22:13] Bob: hi")
        failed = make_message(sent_at=None, status=STATUS_FAILED)
        self.assertEqual(message_line(failed), "[Just now] Bob: hi (failed)")


if __name__ == "__main__":
    unittest.main()
