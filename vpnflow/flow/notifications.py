"""Session expiry notifications.

Decides whether and when to remind the user about an expiring session,
asks for consent once, and schedules alerts through a notification
center. Scheduling is best-effort: failures turn notifications off but
never reach the connection flow.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Protocol
from uuid import UUID

from ..utils.preferences import Preferences
from .session import Clock, ExpiryPolicy, as_utc, utcnow

logger = logging.getLogger(__name__)

SESSION_ABOUT_TO_EXPIRE_ID = "session-about-to-expire"
SESSION_HAS_EXPIRED_ID = "session-has-expired"
SESSION_EXPIRY_CATEGORY = "session-expiry"


@dataclass(frozen=True)
class NotificationRequest:
    """A local alert to be delivered after a delay."""

    identifier: str
    title: str
    body: str
    delay: timedelta
    attempt_id: UUID | None = None
    category: str = SESSION_EXPIRY_CATEGORY


class NotificationCenter(Protocol):
    """OS-level notification delivery."""

    async def request_permission(self) -> bool:
        ...

    async def add(self, request: NotificationRequest) -> None:
        """Schedule a request, replacing a pending one with the same identifier."""
        ...

    def remove_pending(self, identifiers: Iterable[str]) -> None:
        ...

    def remove_all_pending(self) -> None:
        ...

    def pending(self) -> list[NotificationRequest]:
        ...


class ConsentPrompt(Protocol):
    async def ask_consent(self) -> bool:
        """Ask whether the user wants to be notified before sessions expire."""
        ...


class SettingsGuidance(Protocol):
    def show_notifications_disabled(self, app_name: str) -> None:
        """Tell the user how to allow notifications in system settings."""
        ...


@dataclass(frozen=True)
class NotificationPlan:
    """Delays of the session expiry notifications.

    about_to_expire_delay is None when it would fire too close to the
    expiry itself to be useful.
    """

    about_to_expire_delay: timedelta | None
    has_expired_delay: timedelta


def plan_notifications(
    now: datetime,
    expires_at: datetime,
    authenticated_at: datetime | None,
    policy: ExpiryPolicy = ExpiryPolicy(),
) -> NotificationPlan:
    """Work out when to fire the session expiry notifications.

    The about-to-expire notice normally fires an hour before expiry, but
    not before the external session has lapsed (minus a buffer), so that
    renewing asks the user to log in again.
    """
    seconds_to_expiry = int((as_utc(expires_at) - as_utc(now)).total_seconds())
    normal = seconds_to_expiry - int(policy.normal_notice.total_seconds())
    if authenticated_at is None:
        candidate = normal
    else:
        since_auth = int((as_utc(now) - as_utc(authenticated_at)).total_seconds())
        after_external_session = int(
            (policy.external_session_duration - policy.notification_buffer).total_seconds()
        ) - since_auth
        candidate = max(normal, after_external_session)

    if candidate >= seconds_to_expiry:
        # Short-lived session, typically a test server
        about_to_expire = seconds_to_expiry // 2 + 1
    elif candidate < 0:
        about_to_expire = int(policy.minimum_delay.total_seconds())
    else:
        about_to_expire = candidate
    about_to_expire = max(1, min(about_to_expire, max(seconds_to_expiry, 1)))

    has_expired = max(seconds_to_expiry, 0) + int(policy.expired_grace.total_seconds())

    if seconds_to_expiry - about_to_expire > policy.merge_window.total_seconds():
        return NotificationPlan(timedelta(seconds=about_to_expire), timedelta(seconds=has_expired))
    return NotificationPlan(None, timedelta(seconds=has_expired))


class NotificationScheduler:
    """Schedule session expiry notifications with user consent."""

    def __init__(
        self,
        center: NotificationCenter,
        preferences: Preferences,
        consent_prompt: ConsentPrompt | None = None,
        guidance: SettingsGuidance | None = None,
        policy: ExpiryPolicy = ExpiryPolicy(),
        clock: Clock = utcnow,
        app_name: str = "vpnflow",
    ):
        self.center = center
        self.preferences = preferences
        self.consent_prompt = consent_prompt
        self.guidance = guidance
        self.policy = policy
        self.clock = clock
        self.app_name = app_name
        self._lock = asyncio.Lock()

    @property
    def is_enabled(self) -> bool:
        return self.preferences.user_wants_notifications

    async def attempt_scheduling(
        self,
        expires_at: datetime,
        authenticated_at: datetime | None,
        attempt_id: UUID,
    ) -> bool:
        """Schedule notifications, asking the user first if never asked.

        Returns:
            True if notifications were scheduled
        """
        async with self._lock:
            prefs = self.preferences
            if not prefs.has_asked_user_consent and not prefs.user_wants_notifications:
                wants_notifications = await self._ask_consent()
                prefs.has_asked_user_consent = True
                if not wants_notifications:
                    return False
                prefs.user_wants_notifications = True
            elif not prefs.user_wants_notifications:
                return False

            if not await self._authorize():
                return False
            return await self._schedule(expires_at, authenticated_at, attempt_id)

    async def schedule(
        self,
        expires_at: datetime,
        authenticated_at: datetime | None,
        attempt_id: UUID,
    ) -> bool:
        """Schedule notifications if the user has opted in; never prompts."""
        async with self._lock:
            if not self.preferences.user_wants_notifications:
                return False
            if not await self._authorize():
                return False
            return await self._schedule(expires_at, authenticated_at, attempt_id)

    def deschedule(self) -> None:
        """Cancel all pending notifications."""
        try:
            self.center.remove_all_pending()
        except Exception as e:
            logger.error("Could not deschedule notifications: %s", e)
            return
        logger.debug("Session expiry notifications descheduled")

    async def enable_notifications(self) -> bool:
        """Turn notifications on, subject to OS permission."""
        async with self._lock:
            self.preferences.user_wants_notifications = True
            return await self._authorize()

    def disable_notifications(self) -> None:
        self.preferences.user_wants_notifications = False

    def is_about_to_expire_pending(self) -> bool:
        return any(r.identifier == SESSION_ABOUT_TO_EXPIRE_ID for r in self.center.pending())

    async def _ask_consent(self) -> bool:
        if self.consent_prompt is None:
            return False
        try:
            return await self.consent_prompt.ask_consent()
        except Exception as e:
            logger.error("Notification consent prompt failed: %s", e)
            return False

    async def _authorize(self) -> bool:
        """Request OS permission; on denial turn notifications off."""
        logger.info("Requesting authorization for notifications")
        try:
            granted = await self.center.request_permission()
        except Exception as e:
            logger.error("Error requesting notification authorization: %s", e)
            granted = False

        if granted:
            logger.info("Notifications authorized")
            return True

        logger.info("Notifications not authorized")
        self.preferences.user_wants_notifications = False
        if self.guidance is not None:
            self.guidance.show_notifications_disabled(self.app_name)
        return False

    async def _schedule(
        self,
        expires_at: datetime,
        authenticated_at: datetime | None,
        attempt_id: UUID,
    ) -> bool:
        plan = plan_notifications(self.clock(), expires_at, authenticated_at, self.policy)
        local_time = as_utc(expires_at).astimezone().strftime("%H:%M")

        requests = []
        if plan.about_to_expire_delay is not None:
            requests.append(NotificationRequest(
                identifier=SESSION_ABOUT_TO_EXPIRE_ID,
                title="Your VPN session is expiring",
                body=f"Session expires at {local_time}",
                delay=plan.about_to_expire_delay,
                attempt_id=attempt_id,
            ))
        requests.append(NotificationRequest(
            identifier=SESSION_HAS_EXPIRED_ID,
            title="Your VPN session has expired",
            body=f"Session expired at {local_time}",
            delay=plan.has_expired_delay,
            attempt_id=attempt_id,
        ))

        try:
            self.center.remove_pending([SESSION_ABOUT_TO_EXPIRE_ID, SESSION_HAS_EXPIRED_ID])
            for request in requests:
                await self.center.add(request)
                logger.debug(
                    "'%s' notification scheduled to fire in %d seconds",
                    request.title, request.delay.total_seconds(),
                )
        except Exception as e:
            logger.error("Error scheduling session expiry notifications: %s", e)
            return False
        return True


class LocalNotificationCenter:
    """Deliver notifications from this process using the event loop."""

    def __init__(self, deliver: Callable[[NotificationRequest], None], permission_granted: bool = True):
        self.deliver = deliver
        self.permission_granted = permission_granted
        self._pending: dict[str, tuple[NotificationRequest, asyncio.TimerHandle]] = {}

    async def request_permission(self) -> bool:
        return self.permission_granted

    async def add(self, request: NotificationRequest) -> None:
        self.remove_pending([request.identifier])
        handle = asyncio.get_running_loop().call_later(
            request.delay.total_seconds(), self._fire, request.identifier
        )
        self._pending[request.identifier] = (request, handle)

    def _fire(self, identifier: str) -> None:
        request, _ = self._pending.pop(identifier)
        self.deliver(request)

    def remove_pending(self, identifiers: Iterable[str]) -> None:
        for identifier in identifiers:
            entry = self._pending.pop(identifier, None)
            if entry is not None:
                entry[1].cancel()

    def remove_all_pending(self) -> None:
        self.remove_pending(list(self._pending))

    def pending(self) -> list[NotificationRequest]:
        return [request for request, _ in self._pending.values()]
