"""Session expiry tracking."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Union

from ..utils.config import AppConfig

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class ExpiryPolicy:
    """Business rules around session expiry.

    The external session is the browser session at the server's identity
    provider; renewing before it lapses would silently reuse it.
    """

    about_to_expire_threshold: timedelta = timedelta(minutes=15)
    external_session_duration: timedelta = timedelta(minutes=30)
    notification_buffer: timedelta = timedelta(minutes=2)
    normal_notice: timedelta = timedelta(minutes=60)
    minimum_delay: timedelta = timedelta(seconds=5)
    expired_grace: timedelta = timedelta(seconds=2)
    merge_window: timedelta = timedelta(seconds=6)
    tick_interval: timedelta = timedelta(seconds=30)

    @classmethod
    def from_config(cls, config: AppConfig) -> "ExpiryPolicy":
        return cls(
            about_to_expire_threshold=timedelta(minutes=config.about_to_expire_minutes),
            external_session_duration=timedelta(minutes=config.external_session_minutes),
            tick_interval=timedelta(seconds=config.expiry_tick_seconds),
        )


@dataclass(frozen=True)
class ValidFor:
    """Session is valid for a while yet; remaining is in whole minutes."""

    remaining: timedelta
    can_renew: bool = False

    @property
    def should_show_renew_session_button(self) -> bool:
        return self.can_renew

    def __str__(self) -> str:
        minutes = int(self.remaining.total_seconds() // 60)
        days, minutes = divmod(minutes, 24 * 60)
        hours, minutes = divmod(minutes, 60)
        if days:
            return f"Valid for {days}d {hours}h"
        if hours:
            return f"Valid for {hours}h {minutes}m"
        return f"Valid for {minutes}m"


@dataclass(frozen=True)
class AboutToExpire:
    """Session expires within the about-to-expire threshold."""

    @property
    def should_show_renew_session_button(self) -> bool:
        return True

    def __str__(self) -> str:
        return "Session is about to expire"


@dataclass(frozen=True)
class Expired:
    """Session has expired."""

    @property
    def should_show_renew_session_button(self) -> bool:
        return True

    def __str__(self) -> str:
        return "Session has expired"


SessionStatus = Union[ValidFor, AboutToExpire, Expired]


def session_status(
    now: datetime,
    expires_at: datetime,
    authenticated_at: datetime | None,
    policy: ExpiryPolicy = ExpiryPolicy(),
) -> SessionStatus:
    """Compute the session status at a point in time."""
    now, expires_at = as_utc(now), as_utc(expires_at)
    if now >= expires_at:
        return Expired()
    remaining = expires_at - now
    if remaining <= policy.about_to_expire_threshold:
        return AboutToExpire()
    can_renew = (
        authenticated_at is None
        or now - as_utc(authenticated_at) >= policy.external_session_duration
    )
    return ValidFor(remaining=timedelta(minutes=remaining // timedelta(minutes=1)), can_renew=can_renew)


class SessionExpiryTracker:
    """Emit session status changes on a timer.

    The handler is called once with the initial status on start() and
    then only when the status changes. stop() cancels the timer; no
    callbacks happen afterwards.
    """

    def __init__(
        self,
        expires_at: datetime,
        authenticated_at: datetime | None,
        handler: Callable[[SessionStatus], None],
        policy: ExpiryPolicy = ExpiryPolicy(),
        clock: Clock = utcnow,
    ):
        self.expires_at = as_utc(expires_at)
        self.authenticated_at = as_utc(authenticated_at) if authenticated_at else None
        self.handler = handler
        self.policy = policy
        self.clock = clock
        self._status: SessionStatus | None = None
        self._task: asyncio.Task | None = None
        self._stopped = False

    @property
    def status(self) -> SessionStatus | None:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def refresh(self) -> SessionStatus | None:
        """Recompute the status now, calling the handler if it changed."""
        if self._stopped:
            return self._status
        status = session_status(self.clock(), self.expires_at, self.authenticated_at, self.policy)
        if status != self._status:
            self._status = status
            self.handler(status)
        return status

    def start(self) -> None:
        """Emit the current status and start ticking. Needs a running loop."""
        if self.is_running:
            return
        self._stopped = False
        self.refresh()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        interval = self.policy.tick_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            try:
                self.refresh()
            except Exception:
                logger.exception("Session status handler failed")

    def stop(self) -> None:
        self._stopped = True
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def __aenter__(self) -> "SessionExpiryTracker":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.stop()
