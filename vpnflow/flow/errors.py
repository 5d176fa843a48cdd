"""Errors raised by the connection flow itself."""


class ConnectionFlowError(Exception):
    """Base exception for connection flow errors."""

    pass


class NoProfiles(ConnectionFlowError):
    """No profiles found"""

    pass


class NoSelectedProfile(ConnectionFlowError):
    """No profile selected"""

    pass


class SelectedProfileNotFound(ConnectionFlowError):
    """Selected profile doesn't exist"""

    pass


class InvalidFlowState(ConnectionFlowError):
    """Operation is inconsistent with the current flow state"""

    pass


class InvalidTransition(ConnectionFlowError):
    """Internal state change along an undefined edge"""

    pass
