"""Connection flow, session expiry and notifications."""

from .connection import ConnectionFlow, FlowContinuationPolicy
from .errors import ConnectionFlowError, NoProfiles, NoSelectedProfile, SelectedProfileNotFound
from .notifications import NotificationScheduler
from .session import ExpiryPolicy, SessionExpiryTracker
from .state import FlowStatus, InternalState
from .storage import ConnectionAttemptRecord, DataStore

__all__ = [
    "ConnectionFlow",
    "FlowContinuationPolicy",
    "ConnectionFlowError",
    "NoProfiles",
    "NoSelectedProfile",
    "SelectedProfileNotFound",
    "NotificationScheduler",
    "ExpiryPolicy",
    "SessionExpiryTracker",
    "FlowStatus",
    "InternalState",
    "ConnectionAttemptRecord",
    "DataStore",
]
