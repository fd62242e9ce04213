"""
Tests for Notification System
=============================

Channel fan-out, failure isolation, Telegram payloads and splitting.
"""

import json
import urllib.error
from unittest.mock import MagicMock, patch

from core.notifications import (
    FileNotificationChannel,
    LogNotificationChannel,
    Notification,
    NotificationChannel,
    NotificationKind,
    Notifier,
    TelegramNotificationChannel,
    create_notifier,
    split_message,
)


class FailingChannel(NotificationChannel):
    name = "failing"

    def send(self, notification):
        raise RuntimeError("channel down")

    def is_available(self):
        return True


class TestNotifier:
    """Tests for the fan-out notifier."""

    def test_sends_to_all_channels(self, tmp_path):
        """Each available channel that accepts counts once."""
        path = tmp_path / "notifications.jsonl"
        notifier = Notifier([LogNotificationChannel(), FileNotificationChannel(str(path))])

        count = notifier.notify("ETH/SOL entered", NotificationKind.ENTRY, {"z": 2.4})

        assert count == 2
        record = json.loads(path.read_text(encoding="utf-8").splitlines()[0])
        assert record["kind"] == "entry"
        assert record["details"] == {"z": 2.4}

    def test_channel_failure_is_isolated(self):
        """A raising channel never fails the caller."""
        notifier = Notifier([FailingChannel(), LogNotificationChannel()])

        count = notifier.notify("hello")

        assert count == 1
        assert notifier.get_statistics()["channel_failures"] == 1

    def test_unavailable_channel_skipped(self):
        """Channels reporting unavailable are not called."""
        channel = MagicMock(spec=NotificationChannel)
        channel.is_available.return_value = False
        notifier = Notifier([channel])

        assert notifier.notify("hello") == 0
        channel.send.assert_not_called()

    def test_history_kept(self):
        """Every notification is recorded with its kind."""
        notifier = Notifier()
        notifier.notify("scan done", NotificationKind.SCAN)

        assert notifier.history[-1].kind == NotificationKind.SCAN
        assert notifier.history[-1].message == "scan done"


class TestTelegram:
    """Tests for the Telegram channel."""

    @patch("core.notifications.urllib.request.urlopen")
    def test_posts_chat_id_and_text(self, mock_urlopen):
        """sendMessage gets chat_id and text as JSON."""
        mock_urlopen.return_value.__enter__.return_value.status = 200
        channel = TelegramNotificationChannel("123:abc", "42")

        assert channel.send(Notification("ETH/SOL closed"))

        request = mock_urlopen.call_args[0][0]
        assert request.full_url == "https://api.telegram.org/bot123:abc/sendMessage"
        assert json.loads(request.data) == {"chat_id": "42", "text": "ETH/SOL closed"}

    @patch("core.notifications.urllib.request.urlopen")
    def test_network_error_returns_false(self, mock_urlopen):
        """URLError is reported as a failed send."""
        mock_urlopen.side_effect = urllib.error.URLError("unreachable")
        channel = TelegramNotificationChannel("123:abc", "42")

        assert channel.send(Notification("hello")) is False

    @patch("core.notifications.urllib.request.urlopen")
    def test_long_message_split(self, mock_urlopen):
        """Messages over the limit go out in several requests."""
        mock_urlopen.return_value.__enter__.return_value.status = 200
        channel = TelegramNotificationChannel("123:abc", "42")
        text = "\n".join(["x" * 100] * 60)

        assert channel.send(Notification(text))
        assert mock_urlopen.call_count == 2

    def test_unavailable_without_credentials(self):
        """Missing token or chat id disables the channel."""
        assert not TelegramNotificationChannel("", "42").is_available()
        assert not TelegramNotificationChannel("123:abc", "").is_available()


class TestSplitMessage:
    """Tests for message splitting."""

    def test_short_message_untouched(self):
        assert split_message("hello", 10) == ["hello"]

    def test_splits_on_lines(self):
        """Chunks respect the limit and keep the full text."""
        text = "aaaa\nbbbb\ncccc\n"

        chunks = split_message(text, 10)

        assert chunks == ["aaaa\nbbbb\n", "cccc\n"]
        assert "".join(chunks) == text

    def test_overlong_line_cut(self):
        """A single line longer than the limit is hard-split."""
        chunks = split_message("x" * 25, 10)

        assert [len(c) for c in chunks] == [10, 10, 5]


class TestFactory:
    """Tests for create_notifier."""

    def test_telegram_without_token_skipped(self):
        """Enabled but unconfigured Telegram falls back to the log channel only."""
        notifier = create_notifier({"log": True, "telegram": {"enabled": True}})

        assert notifier.get_statistics()["channels"] == ["log"]

    def test_all_channels(self, tmp_path):
        """Log, file and Telegram when fully configured."""
        notifier = create_notifier({
            "log": True,
            "file_path": str(tmp_path / "n.jsonl"),
            "telegram": {"enabled": True, "bot_token": "123:abc", "chat_id": 42},
        })

        assert notifier.get_statistics()["channels"] == ["log", "file", "telegram"]
