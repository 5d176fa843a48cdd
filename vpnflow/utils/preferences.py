"""Persisted user preferences."""

import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class NotificationPreferences(BaseModel):
    """User choices about session expiry notifications."""

    has_asked_user_consent: bool = False
    user_wants_notifications: bool = False


class Preferences(Protocol):
    """Get/set access to the notification consent flags."""

    has_asked_user_consent: bool
    user_wants_notifications: bool


class InMemoryPreferences:
    """Preferences that live only as long as the process."""

    def __init__(self, has_asked_user_consent: bool = False, user_wants_notifications: bool = False):
        self.has_asked_user_consent = has_asked_user_consent
        self.user_wants_notifications = user_wants_notifications


class JSONPreferences:
    """Preferences stored in a JSON file, written on every change."""

    def __init__(self, path: Path):
        self.path = path
        self._values = self._load()

    def _load(self) -> NotificationPreferences:
        if not self.path.exists():
            return NotificationPreferences()
        try:
            return NotificationPreferences.model_validate_json(self.path.read_text())
        except (OSError, ValidationError) as e:
            logger.error("Ignoring unreadable preferences file %s: %s", self.path, e)
            return NotificationPreferences()

    def _save(self) -> None:
        write_atomically(self.path, self._values.model_dump_json(indent=2))

    @property
    def has_asked_user_consent(self) -> bool:
        return self._values.has_asked_user_consent

    @has_asked_user_consent.setter
    def has_asked_user_consent(self, value: bool) -> None:
        self._values.has_asked_user_consent = value
        self._save()

    @property
    def user_wants_notifications(self) -> bool:
        return self._values.user_wants_notifications

    @user_wants_notifications.setter
    def user_wants_notifications(self, value: bool) -> None:
        self._values.user_wants_notifications = value
        self._save()


def write_atomically(path: Path, text: str, mode: int = 0o600) -> None:
    """Replace a file's contents so readers never see a partial write."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
