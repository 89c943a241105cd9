"""Best-effort build notifications (Telegram bot API)."""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import requests

from kforge.errors import NotificationWarning
from kforge.settings import Settings

PHOTO_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "webp", "bmp"})
AUDIO_EXTENSIONS = frozenset({"mp3", "m4a", "flac", "wav", "ogg"})
VIDEO_EXTENSIONS = frozenset({"mp4", "mkv", "mov", "avi", "webm"})
ANIMATION_EXTENSIONS = frozenset({"gif"})
VOICE_EXTENSIONS = frozenset({"oga", "opus"})

REQUEST_TIMEOUT = 60.0


class Notifier(Protocol):
    enabled: bool

    def send_message(self, text: str) -> None:
        """Send a text message; never raises."""

    def send_file(self, path: Path, caption: str = "") -> None:
        """Upload a file with a caption; never raises."""


class NullNotifier:
    """Notifier used when credentials are absent: every call is a silent no-op."""

    enabled = False

    def send_message(self, text: str) -> None:
        return None

    def send_file(self, path: Path, caption: str = "") -> None:
        return None


@dataclass(slots=True)
class TelegramNotifier:
    chat_id: str
    token: str
    api: str = "https://api.telegram.org"
    enabled: bool = True

    def send_message(self, text: str) -> None:
        self._post(
            "sendMessage",
            data={"text": text.replace("_", "-"), "parse_mode": "html", "chat_id": self.chat_id},
        )

    def send_file(self, path: Path, caption: str = "") -> None:
        method = upload_method(path)
        field_name = method.removeprefix("send").lower()
        with path.open("rb") as handle:
            self._post(
                method,
                data={
                    "caption": caption,
                    "chat_id": self.chat_id,
                    "disable_web_page_preview": "true",
                },
                files={field_name: (path.name, handle)},
            )

    def _post(self, method: str, **kwargs: object) -> None:
        url = f"{self.api}/bot{self.token}/{method}"
        try:
            response = requests.post(url, timeout=REQUEST_TIMEOUT, **kwargs)  # type: ignore[arg-type]
            response.raise_for_status()
        except requests.RequestException as exc:
            warnings.warn(
                f"Notification `{method}` could not be delivered: {exc.__class__.__name__}",
                NotificationWarning,
                stacklevel=3,
            )


def upload_method(path: Path) -> str:
    """Pick the bot API upload endpoint from the file extension."""
    extension = path.suffix.lstrip(".").lower()
    if len(extension) < 3 and extension != "ai":
        return "sendDocument"
    if extension in PHOTO_EXTENSIONS:
        return "sendPhoto"
    if extension in AUDIO_EXTENSIONS:
        return "sendAudio"
    if extension in VIDEO_EXTENSIONS:
        return "sendVideo"
    if extension in ANIMATION_EXTENSIONS:
        return "sendAnimation"
    if extension in VOICE_EXTENSIONS:
        return "sendVoice"
    return "sendDocument"


def notifier_from(settings: Settings) -> Notifier:
    if not settings.notifications_configured:
        return NullNotifier()
    return TelegramNotifier(
        chat_id=settings.telegram_chat_id,
        token=settings.telegram_bot_token,
        api=settings.telegram_api,
    )
