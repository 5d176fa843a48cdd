"""Per-target local storage and the connection attempt record."""

import logging
from datetime import datetime
from pathlib import Path
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..api.models import ConnectableTarget, Profile
from ..utils.preferences import write_atomically
from .session import utcnow

logger = logging.getLogger(__name__)

TARGETS_DIR = "targets"
ATTEMPT_FILE = "last_connection_attempt.json"
SELECTED_PROFILE_FILE = "selected_profile_id.txt"
KEY_PAIR_FILE = "wireguard_key_pair.json"


class ConnectionAttemptRecord(BaseModel):
    """What a running tunnel was connected to, with which profile.

    Saved when the flow starts enabling the tunnel so a restarted process
    can rebuild its state without going through the network again.
    Static config targets leave the server fields unset.
    """

    model_config = ConfigDict(frozen=True)

    target: ConnectableTarget
    profiles: tuple[Profile, ...] = ()
    selected_profile_id: str | None = None
    session_expires_at: datetime | None = None
    session_authenticated_at: datetime | None = None
    server_api_base_url: str | None = None
    server_api_version: str | None = None
    should_ask_for_password_on_reconnect: bool = False
    attempt_id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def selected_profile(self) -> Profile | None:
        return next((p for p in self.profiles if p.profile_id == self.selected_profile_id), None)


class WireGuardKeyPair(BaseModel):
    """Key pair whose public half the server puts in WireGuard configs."""

    model_config = ConfigDict(frozen=True)

    private_key: str = Field(repr=False)
    public_key: str


class AttemptStore:
    """A single-slot store for the connection attempt record."""

    def __init__(self, path: Path):
        self.path = path

    def save(self, record: ConnectionAttemptRecord) -> None:
        """Overwrite the slot with the given record."""
        write_atomically(self.path, record.model_dump_json(indent=2))
        logger.debug("Saved connection attempt %s to %s", record.attempt_id, self.path)

    def load(self) -> ConnectionAttemptRecord | None:
        """Return the saved record, or None if there is none or it is unreadable."""
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error("Could not read connection attempt %s: %s", self.path, e)
            return None
        try:
            return ConnectionAttemptRecord.model_validate_json(text)
        except ValidationError as e:
            logger.error("Ignoring invalid connection attempt %s: %s", self.path, e)
            return None

    def remove(self) -> None:
        self.path.unlink(missing_ok=True)


class DataStore:
    """Local storage directory of one connectable target."""

    def __init__(self, root: Path):
        self.root = root
        self.attempts = AttemptStore(root / ATTEMPT_FILE)

    @classmethod
    def for_target(cls, data_dir: Path, target: ConnectableTarget) -> "DataStore":
        return cls(data_dir / TARGETS_DIR / target.local_storage_path)

    @property
    def selected_profile_id(self) -> str | None:
        """Profile the user last connected with."""
        try:
            value = (self.root / SELECTED_PROFILE_FILE).read_text().strip()
        except FileNotFoundError:
            return None
        return value or None

    @selected_profile_id.setter
    def selected_profile_id(self, value: str | None) -> None:
        path = self.root / SELECTED_PROFILE_FILE
        if value is None:
            path.unlink(missing_ok=True)
        else:
            write_atomically(path, value + "\n", mode=0o644)

    def save_attempt(self, record: ConnectionAttemptRecord) -> None:
        self.attempts.save(record)

    def load_key_pair(self) -> WireGuardKeyPair | None:
        """Return the stored WireGuard key pair, or None if there is none usable."""
        path = self.root / KEY_PAIR_FILE
        try:
            return WireGuardKeyPair.model_validate_json(path.read_text())
        except FileNotFoundError:
            return None
        except ValidationError as e:
            logger.error("Ignoring invalid key pair %s: %s", path, e)
            return None

    def save_key_pair(self, key_pair: WireGuardKeyPair) -> None:
        write_atomically(self.root / KEY_PAIR_FILE, key_pair.model_dump_json(indent=2))

    def load_attempt(self) -> ConnectionAttemptRecord | None:
        return self.attempts.load()

    def remove_attempt(self) -> None:
        self.attempts.remove()


def find_active_attempt(data_dir: Path, attempt_id: UUID | None = None) -> ConnectionAttemptRecord | None:
    """Find the saved attempt record of the running tunnel.

    With an attempt id, only the record of that attempt matches;
    otherwise the most recent record wins.
    """
    records = []
    for path in sorted((data_dir / TARGETS_DIR).glob(f"*/{ATTEMPT_FILE}")):
        record = AttemptStore(path).load()
        if record is None:
            continue
        if attempt_id is not None and record.attempt_id != attempt_id:
            continue
        records.append(record)
    if not records:
        return None
    return max(records, key=lambda r: r.created_at)
