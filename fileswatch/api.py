"""API client for Files.com."""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any
from urllib.parse import quote

import httpx

from .config import get_api_key, get_api_url
from .exceptions import (
    ConfigError,
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
)
from .models import RemoteEntry

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://app.files.com/api/rest/v1"

# Largest page the folders endpoint hands out
LIST_PAGE_SIZE = 1000


def encode_path(path: str) -> str:
    """Percent-encode every segment of a remote path.

    Only ASCII letters, digits and ``-_.~`` stay unencoded, so slashes
    inside a segment cannot be produced by accident.

    Examples:
        >>> encode_path("/docs/my report.txt")
        '/docs/my%20report.txt'
        >>> encode_path("/")
        '/'
    """
    segments = [quote(s, safe="") for s in path.split("/") if s]
    return "/" + "/".join(segments)


class FilesClient:
    """Client for the Files.com REST API.

    Implements the :class:`~fileswatch.sync.remote.RemoteStore` interface.
    Requests to the API carry the ``X-FilesAPI-Key`` header; the signed
    upload and download URLs returned by the API are fetched with a second
    client that sends no credentials.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
        max_retries: int = 1,
        retry_delay: float = 1.0,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the Files.com client.

        Args:
            api_key: API key (read from ``FILES_API_KEY`` if not provided)
            api_url: API base URL (read from ``FILES_API_URL`` if not provided)
            max_retries: Immediate retries of a transient failure. Transfers
                are retried again by the scheduler, so keep this low.
            retry_delay: Initial delay between retries in seconds
            timeout: Per-request timeout in seconds
            transport: Custom httpx transport (for tests)
        """
        self.api_key = api_key or get_api_key()
        self.api_url = (api_url or get_api_url() or DEFAULT_API_URL).rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._transport = transport

        if not self.api_key:
            raise ConfigError(
                "API key not configured. Please set FILES_API_KEY environment "
                "variable or pass --api-key."
            )

        self._client: httpx.Client | None = None
        self._transfer_client: httpx.Client | None = None
        # Engines and their workers share one client
        self._client_lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client for API calls."""
        with self._client_lock:
            if self._client is None or self._client.is_closed:
                self._client = httpx.Client(
                    headers={
                        "X-FilesAPI-Key": self.api_key,
                        "Accept": "application/json",
                    },
                    timeout=httpx.Timeout(self.timeout),
                    follow_redirects=True,
                    transport=self._transport,
                )
            return self._client

    def _get_transfer_client(self) -> httpx.Client:
        """Get or create the httpx client for signed upload/download URLs."""
        with self._client_lock:
            if self._transfer_client is None or self._transfer_client.is_closed:
                self._transfer_client = httpx.Client(
                    timeout=httpx.Timeout(self.timeout),
                    follow_redirects=True,
                    transport=self._transport,
                )
            return self._transfer_client

    def close(self) -> None:
        """Close the clients and release connections."""
        with self._client_lock:
            for client in (self._client, self._transfer_client):
                if client is not None and not client.is_closed:
                    client.close()
            self._client = None
            self._transfer_client = None

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff with +/- 25% jitter (``attempt`` is 0-based)."""
        base_delay = self.retry_delay * (2**attempt)
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    def _handle_http_error(
        self, e: httpx.HTTPStatusError, attempt: int
    ) -> tuple[RemoteError, bool]:
        """Map an HTTP error onto the remote error taxonomy.

        Args:
            e: The HTTP error exception
            attempt: Current attempt number (0-based)

        Returns:
            Tuple of (exception to raise, should_retry)

        Raises:
            RemoteAuthenticationError: On 401
            RemotePermissionError: On 403
            RemoteNotFoundError: On 404
        """
        status_code = e.response.status_code
        url = e.request.url.copy_with(query=None)

        if status_code == 401:
            raise RemoteAuthenticationError(
                "Invalid API key or unauthorized access"
            ) from e
        elif status_code == 403:
            raise RemotePermissionError(f"Access forbidden: {url.path}") from e
        elif status_code == 404:
            raise RemoteNotFoundError(f"Not found: {url.path}") from e

        error_msg = f"Request failed with status {status_code}"
        try:
            if e.response.content:
                error_data = e.response.json()
                if isinstance(error_data, dict):
                    msg = error_data.get("error") or error_data.get("message")
                    if msg:
                        error_msg = f"{error_msg}: {msg}"
        except ValueError:
            pass

        error: RemoteError
        if status_code == 429:
            error = RemoteRateLimitError("Rate limit exceeded - please try again later")
        elif 500 <= status_code < 600:
            error = RemoteServerError(error_msg)
        else:
            error = RemoteError(error_msg)
        return (error, error.retryable and attempt < self.max_retries)

    def _send(
        self, client: httpx.Client, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        """Send a request with retry logic.

        Raises:
            RemoteError: If the request fails after all retries
        """
        last_exception: RemoteError | None = None

        for attempt in range(self.max_retries + 1):
            try:
                response = client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as e:
                error, should_retry = self._handle_http_error(e, attempt)
                last_exception = error
                if not should_retry:
                    raise error from e

                delay = self._calculate_retry_delay(attempt)
                if isinstance(error, RemoteRateLimitError):
                    retry_after = e.response.headers.get("Retry-After")
                    if retry_after and retry_after.isdigit():
                        delay = float(retry_after)
                logger.debug(f"{method} {url} failed ({error}), retry in {delay:.1f}s")
                time.sleep(delay)
            except httpx.RequestError as e:
                error = RemoteNetworkError(f"Network error: {e}")
                last_exception = error
                if attempt >= self.max_retries:
                    raise error from e
                delay = self._calculate_retry_delay(attempt)
                logger.debug(f"{method} {url} failed ({e}), retry in {delay:.1f}s")
                time.sleep(delay)

        if last_exception:
            raise last_exception
        raise RemoteError("Request failed after all retry attempts")

    @staticmethod
    def _parse_json(response: httpx.Response) -> Any:
        content_type = response.headers.get("Content-Type", "")
        if not response.content:
            return {}
        if "json" not in content_type:
            if "text/html" in content_type:
                raise RemoteAuthenticationError(
                    "Invalid API key - server returned HTML instead of JSON"
                )
            raise RemoteInvalidResponseError(
                f"Unexpected response type: {content_type}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise RemoteInvalidResponseError("Invalid JSON response from server") from e

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        """Make an API request and return the decoded JSON body.

        Args:
            method: HTTP method
            endpoint: API endpoint path (already encoded)
            **kwargs: Additional arguments passed to httpx

        Returns:
            Response JSON data
        """
        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        response = self._send(self._get_client(), method, url, **kwargs)
        return self._parse_json(response)

    # =========================
    # Upload Operations
    # =========================

    def begin_upload(self, remote_path: str, size: int) -> dict[str, Any]:
        """Start an upload and return the first upload part.

        Parent folders are created by the server.

        Returns:
            Part with ``upload_uri``, ``http_method``, ``headers`` and ``ref``
        """
        parts = self._request(
            "POST",
            f"/file_actions/begin_upload{encode_path(remote_path)}",
            json={"mkdir_parents": True, "size": size},
        )
        if isinstance(parts, dict):
            parts = [parts]
        if not parts or not isinstance(parts[0], dict):
            raise RemoteUploadError(f"No upload parts returned for {remote_path}")
        return parts[0]

    def upload(self, remote_path: str, data: bytes) -> RemoteEntry:
        """Upload ``data`` to ``remote_path``, replacing any existing file.

        Args:
            remote_path: Full remote path of the file
            data: File content

        Returns:
            The stored file entry
        """
        part = self.begin_upload(remote_path, len(data))

        upload_uri = part.get("upload_uri")
        if upload_uri:
            method = (part.get("http_method") or "PUT").upper()
            if method not in ("PUT", "POST"):
                method = "PUT"
            headers = {str(k): str(v) for k, v in (part.get("headers") or {}).items()}
            headers["Content-Length"] = str(len(data))
            self._send(
                self._get_transfer_client(),
                method,
                upload_uri,
                content=data,
                headers=headers,
            )

        form = {"action": "end"}
        if part.get("ref"):
            form["ref"] = part["ref"]
        result = self._request("POST", f"/files{encode_path(remote_path)}", data=form)
        if not isinstance(result, dict) or not result:
            raise RemoteUploadError(f"Upload of {remote_path} was not confirmed")

        entry = RemoteEntry.from_api_response(result)
        if not result.get("size"):
            entry.size = len(data)
        logger.debug(f"Uploaded {remote_path} ({len(data)} bytes)")
        return entry

    # =========================
    # Download Operations
    # =========================

    def download(self, remote_path: str) -> tuple[bytes, RemoteEntry]:
        """Download a file.

        Args:
            remote_path: Full remote path of the file

        Returns:
            Tuple of (content, file entry)
        """
        info = self._request("GET", f"/files{encode_path(remote_path)}")
        if not isinstance(info, dict):
            raise RemoteInvalidResponseError(f"Unexpected metadata for {remote_path}")
        download_uri = info.get("download_uri")
        if not download_uri:
            raise RemoteDownloadError(f"No download URL returned for {remote_path}")

        response = self._send(self._get_transfer_client(), "GET", download_uri)
        data = response.content

        entry = RemoteEntry.from_api_response(info)
        if entry.size and entry.size != len(data):
            raise RemoteDownloadError(
                f"Incomplete download of {remote_path}: got {len(data)} of "
                f"{entry.size} bytes",
                retryable=True,
            )
        entry.size = len(data)
        return data, entry

    # =========================
    # Listing and deletion
    # =========================

    def list_folder(
        self, remote_path: str, cursor: str | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Fetch one page of a folder listing.

        Returns:
            Tuple of (file entities, cursor of the next page or None)
        """
        params: dict[str, Any] = {"per_page": LIST_PAGE_SIZE}
        if cursor:
            params["cursor"] = cursor
        url = f"{self.api_url}/folders{encode_path(remote_path)}"
        response = self._send(self._get_client(), "GET", url, params=params)
        items = self._parse_json(response)
        if items == {}:
            items = []
        if not isinstance(items, list):
            raise RemoteInvalidResponseError(
                f"Unexpected folder listing for {remote_path}"
            )
        return items, response.headers.get("X-Files-Cursor-Next") or None

    def list(self, remote_path: str) -> list[RemoteEntry]:
        """Recursively list every file and folder below ``remote_path``."""
        entries: list[RemoteEntry] = []
        folders = [remote_path]
        while folders:
            folder = folders.pop()
            cursor = None
            while True:
                items, cursor = self.list_folder(folder, cursor)
                for item in items:
                    entry = RemoteEntry.from_api_response(item)
                    entries.append(entry)
                    if entry.is_dir:
                        folders.append(entry.path)
                if not cursor:
                    break
        logger.debug(f"Listed {len(entries)} entries below {remote_path}")
        return entries

    def delete(self, remote_path: str) -> None:
        """Delete the file at ``remote_path``."""
        self._request("DELETE", f"/files{encode_path(remote_path)}")
        logger.debug(f"Deleted {remote_path}")
