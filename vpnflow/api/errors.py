"""Errors raised by the server API layer."""


class ServerAPIError(Exception):
    """Base exception for server API errors."""

    pass


class ServerInfoError(ServerAPIError):
    """Server discovery document could not be fetched or parsed."""

    pass


class ProfileListError(ServerAPIError):
    """Available profiles could not be fetched."""

    pass


class ProfileConfigError(ServerAPIError):
    """Error fetching profile configuration.

    Usually means the profile list is stale; callers may offer to
    restart the flow from profile discovery.
    """

    pass


class DisconnectReportError(ServerAPIError):
    """Server could not be told about a relinquished configuration."""

    pass


class AuthorizationError(ServerAPIError):
    """No usable authorization could be obtained."""

    pass


class AuthorizationCancelled(AuthorizationError):
    """The user cancelled interactive authorization."""

    pass


class RequestCancelled(ServerAPIError):
    """An in-flight request was cancelled by the caller."""

    pass


def is_user_cancelled(error: BaseException) -> bool:
    """Check if an error stems from a user cancellation."""
    return isinstance(error, (AuthorizationCancelled, RequestCancelled))


def is_retryable(error: BaseException) -> bool:
    """Check if restarting the flow from profile discovery may help."""
    return isinstance(error, ProfileConfigError)
