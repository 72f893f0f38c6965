"""
Core exception classes for Cloud Downtime.
"""


class CloudDowntimeError(Exception):
    """Base exception for all Cloud Downtime errors."""

    def __init__(self, message: str, details: str = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(CloudDowntimeError):
    """Raised when configuration is invalid or missing."""
    pass


class ValidationError(CloudDowntimeError):
    """Raised when a downtime window or other input is malformed."""
    pass


class AuthenticationError(CloudDowntimeError):
    """Raised when no usable session can be obtained for an account."""
    pass


class AuthorizationError(CloudDowntimeError):
    """Raised when the provider rejects an operation for the session's identity."""
    pass


class TransientProviderError(CloudDowntimeError):
    """Raised when a provider API call fails for network or service reasons."""
    pass


class NotFoundError(CloudDowntimeError):
    """Raised when a group, window or account vanished between read and use."""
    pass


class StateError(CloudDowntimeError):
    """Raised when reading or writing persisted state fails."""
    pass
