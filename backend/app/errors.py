"""
Provider error taxonomy shared by the mail and calendar services.

Routers translate these into HTTP responses; services raise them so callers
can tell "retry later" apart from "the user must reconnect their account".
"""

from typing import Optional


RECONNECT_MESSAGE = (
    "Google account access has been revoked. Please reconnect your account."
)
NOT_CONNECTED_MESSAGE = (
    "No active Gmail connection found. Please connect your account."
)


class ProviderError(Exception):
    """Base class for failures talking to the mail/calendar provider."""


class TransientProviderError(ProviderError):
    """
    Network error, non-auth HTTP error, or a one-off refresh failure.

    Retryable by the caller. ``status_code`` is the provider's HTTP status
    when there was one (None for network errors).
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AccessRevokedError(ProviderError):
    """The refresh grant was revoked; the connection has been deactivated."""

    def __init__(self, message: str = RECONNECT_MESSAGE):
        super().__init__(message)


class NotConnectedError(ProviderError):
    """The user has no active provider connection at all."""

    def __init__(self, message: str = NOT_CONNECTED_MESSAGE):
        super().__init__(message)


class OAuthExchangeError(ProviderError):
    """Google rejected an authorization code during the connect flow."""


class AttachmentMaterializationError(Exception):
    """One attachment could not be fetched, decoded, stored or signed."""
