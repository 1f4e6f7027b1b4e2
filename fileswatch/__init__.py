"""files-watch - keep local directories in sync with Files.com."""

from .api import FilesClient
from .exceptions import (
    ConfigError,
    FilesWatchError,
    LocalIoError,
    RemoteAuthenticationError,
    RemoteDownloadError,
    RemoteError,
    RemoteInvalidResponseError,
    RemoteNetworkError,
    RemoteNotFoundError,
    RemotePermissionError,
    RemoteRateLimitError,
    RemoteServerError,
    RemoteUploadError,
    StateCorrupt,
)
from .models import RemoteEntry

__version__ = "0.1.0"

__all__ = [
    "FilesClient",
    "RemoteEntry",
    "FilesWatchError",
    "ConfigError",
    "StateCorrupt",
    "LocalIoError",
    "RemoteError",
    "RemoteAuthenticationError",
    "RemoteDownloadError",
    "RemoteInvalidResponseError",
    "RemoteNetworkError",
    "RemoteNotFoundError",
    "RemotePermissionError",
    "RemoteRateLimitError",
    "RemoteServerError",
    "RemoteUploadError",
]
