"""Exceptions raised by fileswatch."""

from typing import Optional


class FilesWatchError(Exception):
    """Base exception for all fileswatch errors."""


class ConfigError(FilesWatchError):
    """Raised when the configuration file or a watch pair is malformed.

    A malformed watch pair fails startup for that pair only.
    """


class StateCorrupt(FilesWatchError):
    """Raised when the persisted sync state of a watch pair cannot be parsed.

    The engine for that watch pair refuses to start rather than silently
    resetting its state.
    """

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class LocalIoError(FilesWatchError):
    """Raised when the local filesystem cannot be read or written."""

    retryable = True

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class RemoteError(FilesWatchError):
    """Raised by the remote store when an operation fails.

    The remote store classifies each failure as retryable (rate limiting,
    transient server errors, network errors) or fatal.
    """

    retryable = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class RemoteAuthenticationError(RemoteError):
    """Raised when the API key is invalid or missing (401)."""


class RemotePermissionError(RemoteError):
    """Raised when access to a remote resource is forbidden (403)."""


class RemoteNotFoundError(RemoteError):
    """Raised when a remote resource does not exist (404)."""


class RemoteRateLimitError(RemoteError):
    """Raised when the API rate limit is exceeded (429)."""

    retryable = True


class RemoteServerError(RemoteError):
    """Raised on transient server-side failures (5xx)."""

    retryable = True


class RemoteNetworkError(RemoteError):
    """Raised when the remote store cannot be reached."""

    retryable = True


class RemoteInvalidResponseError(RemoteError):
    """Raised when the remote store returns an unexpected response."""


class RemoteUploadError(RemoteError):
    """Raised when an upload cannot be completed."""


class RemoteDownloadError(RemoteError):
    """Raised when a download cannot be completed."""
