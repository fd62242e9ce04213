"""
Notification System Module
==========================

Outbound notifications for trade entries, exits and status reports.

Features:
- Multi-channel notifications (Telegram, file, log)
- Notification kinds for routing and audit
- Audit trail of all notifications (JSONL file channel)
- notify() never raises: a failed channel never fails the transition
"""

from __future__ import annotations

import json
import logging
import threading
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
TELEGRAM_MAX_MESSAGE_LENGTH = 4096


class NotificationKind(str, Enum):
    """What a notification is about."""
    ENTRY = "entry"
    EXIT = "exit"
    PARTIAL_EXIT = "partial_exit"
    STATUS = "status"
    SCAN = "scan"
    SYSTEM = "system"


@dataclass
class Notification:
    """One outbound message."""
    message: str
    kind: NotificationKind = NotificationKind.SYSTEM
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class NotificationChannel(ABC):
    """Abstract base class for notification channels."""

    name = "channel"

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification. Returns True if successful."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if channel is available."""
        pass


class FileNotificationChannel(NotificationChannel):
    """
    File-based notification channel.

    Appends notifications to a JSONL file.
    """

    name = "file"

    def __init__(self, filepath: str = "logs/notifications.jsonl"):
        self.filepath = Path(filepath)
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def send(self, notification: Notification) -> bool:
        """Write notification to file."""
        try:
            with self._lock:
                with open(self.filepath, "a", encoding="utf-8") as f:
                    f.write(json.dumps(notification.to_dict(), default=str) + "\n")
            return True
        except OSError as e:
            logger.error(f"Failed to write notification to file: {e}")
            return False

    def is_available(self) -> bool:
        """File channel is always available."""
        return True


class LogNotificationChannel(NotificationChannel):
    """Writes notifications to the application log."""

    name = "log"

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def send(self, notification: Notification) -> bool:
        logger.log(self.level, f"[{notification.kind.value}] {notification.message}")
        return True

    def is_available(self) -> bool:
        return True


class TelegramNotificationChannel(NotificationChannel):
    """
    Telegram Bot API channel.

    Posts to https://api.telegram.org/bot<token>/sendMessage with chat_id
    and text. Messages longer than Telegram's limit are split on line
    boundaries.
    """

    name = "telegram"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout_seconds: float = 10.0,
        parse_mode: str | None = None,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout_seconds
        self.parse_mode = parse_mode

    @property
    def url(self) -> str:
        return TELEGRAM_API_URL.format(token=self.bot_token)

    def send(self, notification: Notification) -> bool:
        """Send every chunk of the message; True only if all were accepted."""
        for chunk in split_message(notification.message, TELEGRAM_MAX_MESSAGE_LENGTH):
            if not self._send_text(chunk):
                return False
        return True

    def _send_text(self, text: str) -> bool:
        payload: dict[str, Any] = {"chat_id": self.chat_id, "text": text}
        if self.parse_mode:
            payload["parse_mode"] = self.parse_mode

        request = urllib.request.Request(
            self.url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                return response.status == 200
        except urllib.error.URLError as e:
            logger.error(f"Telegram notification failed: {e}")
            return False

    def is_available(self) -> bool:
        return bool(self.bot_token and self.chat_id)


def split_message(text: str, limit: int) -> list[str]:
    """Split text into chunks of at most limit characters, on newlines where possible."""
    if len(text) <= limit:
        return [text]

    chunks = []
    current = ""
    for line in text.splitlines(keepends=True):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) > limit:
            chunks.append(current)
            current = ""
        current += line
    if current:
        chunks.append(current)
    return chunks


class Notifier:
    """
    Fans a message out to every available channel.

    notify() never raises; channel failures are logged and counted.
    """

    def __init__(self, channels: list[NotificationChannel] | None = None):
        self.channels = channels if channels is not None else [LogNotificationChannel()]
        self._history: list[Notification] = []
        self._max_history = 100
        self._stats = {"sent": 0, "channel_failures": 0}
        self._lock = threading.Lock()

    def notify(
        self,
        message: str,
        kind: NotificationKind = NotificationKind.SYSTEM,
        details: dict[str, Any] | None = None,
    ) -> int:
        """
        Send a message through all available channels.

        Returns:
            Number of channels that accepted the message
        """
        notification = Notification(message=message, kind=kind, details=details or {})

        with self._lock:
            self._history.append(notification)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]

        success_count = 0
        for channel in self.channels:
            try:
                if not channel.is_available():
                    continue
                if channel.send(notification):
                    success_count += 1
                else:
                    self._stats["channel_failures"] += 1
            except Exception:
                # Isolate channel failures from the caller
                self._stats["channel_failures"] += 1
                logger.exception(f"Notification channel {channel.name} raised")

        self._stats["sent"] += 1
        logger.debug(
            f"Notification [{kind.value}] sent to {success_count}/{len(self.channels)} channels"
        )
        return success_count

    @property
    def history(self) -> list[Notification]:
        return list(self._history)

    def get_statistics(self) -> dict[str, Any]:
        return {
            "channels": [c.name for c in self.channels],
            **self._stats,
        }


def create_notifier(config: dict[str, Any] | None = None) -> Notifier:
    """Factory function to create a Notifier from the notifications section."""
    config = config or {}
    channels: list[NotificationChannel] = []

    if config.get("log", True):
        channels.append(LogNotificationChannel())

    file_path = config.get("file_path")
    if file_path:
        channels.append(FileNotificationChannel(file_path))

    telegram = config.get("telegram", {})
    if telegram.get("enabled", False):
        token = telegram.get("bot_token", "")
        chat_id = str(telegram.get("chat_id", ""))
        if token and chat_id:
            channels.append(TelegramNotificationChannel(
                token, chat_id, timeout_seconds=telegram.get("timeout_seconds", 10.0)
            ))
        else:
            logger.warning("Telegram enabled but bot_token/chat_id missing; channel skipped")

    return Notifier(channels)
