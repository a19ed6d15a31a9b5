"""HTTP client for the remote object store.

This module provides:
- GraphClient: HTTP client for the drive content API (Microsoft Graph)
- Folder existence/creation with a per-process folder cache
- Small PUT uploads and resumable session-based chunked uploads
- Paged listing and free-text search
- APIError hierarchy mapping HTTP failures to retry decisions
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any
from urllib.parse import quote

import httpx

from fieldsync.core.config import MIB, ContainerRef, RemoteConfig
from fieldsync.core.types import TransferCancelled

logger = logging.getLogger(__name__)

CONFLICT_BEHAVIOR = "@microsoft.graph.conflictBehavior"
NEXT_LINK = "@odata.nextLink"
PREFER_NON_INDEXED = "HonorNonIndexedQueriesWarningMayFailRandomly"

# Response bodies are kept for diagnosis but truncated
BODY_PREVIEW_LIMIT = 500

DEFAULT_CHUNK_SIZE = 5 * MIB
DEFAULT_PAGE_SIZE = 999


class APIError(Exception):
    """Base exception for API errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AuthenticationError(APIError):
    """Token missing, invalid or expired."""


class NotFoundError(APIError):
    """Resource not found."""


class ConflictError(APIError):
    """Unexpected conflict reported by the store."""


class BadRequestError(APIError):
    """Request rejected as malformed (not retried)."""


class RateLimitedError(APIError):
    """Store asked us to slow down."""

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: int | None = 429,
        body: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code, body)
        self.retry_after = retry_after


class ServerError(APIError):
    """5xx response from the store."""

    retryable = True


class TransportError(APIError):
    """Timeout or connection failure before a response was received."""

    retryable = True


class UploadSessionError(APIError):
    """A chunk of a resumable upload was rejected."""


def _truncate(text: str, limit: int = BODY_PREVIEW_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _quote_path(path: str) -> str:
    """Percent-encode a drive path, keeping separators."""
    return quote(path.strip("/"), safe="/")


def odata_escape(value: str) -> str:
    """Escape a literal for use inside an OData string."""
    return value.replace("'", "''")


@dataclass
class RemoteItem:
    """Item metadata from a listing or upload response."""

    id: str
    name: str
    version_tag: str
    container_id: str
    size: int = 0
    is_file: bool = True

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], container_id: str | None = None
    ) -> RemoteItem:
        """Create from a driveItem dictionary."""
        parent = data.get("parentReference") or {}
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            version_tag=str(data.get("eTag") or ""),
            container_id=container_id or str(parent.get("driveId") or ""),
            size=int(data.get("size") or 0),
            is_file="folder" not in data,
        )


@dataclass
class RemoteQuery:
    """A listing request.

    Either a free-text ``search`` inside a drive, or an OData ``filter``
    over the items of a document library (``site_id``/``list_id``).
    """

    search: str | None = None
    filter: str | None = None
    site_id: str | None = None
    list_id: str | None = None
    page_size: int = DEFAULT_PAGE_SIZE

    @classmethod
    def for_search(cls, text: str) -> RemoteQuery:
        return cls(search=text)

    @classmethod
    def for_filter(cls, filter_expr: str, site_id: str, list_id: str) -> RemoteQuery:
        return cls(filter=filter_expr, site_id=site_id, list_id=list_id)


class GraphClient:
    """HTTP client for the drive content API.

    A single instance is shared by all workers of a cycle; the underlying
    httpx connection pool is safe for concurrent use. The bearer token is
    set once per cycle, before any worker starts.
    """

    def __init__(
        self,
        config: RemoteConfig,
        token: str | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Connection settings.
            token: Optional initial bearer token.
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.api_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            follow_redirects=True,
            headers={"Accept": "application/json"},
        )
        # Upload session URLs are pre-authenticated and must not get our token
        self._session_client = httpx.Client(
            timeout=config.session_timeout,
            verify=config.verify_ssl,
        )
        self._container_ids: dict[str, str] = {}
        self._container_lock = threading.Lock()
        self._ensured: set[str] = set()
        self._folder_lock = threading.Lock()
        self._path_locks: dict[str, threading.Lock] = {}

        if token:
            self.set_token(token)

    def close(self) -> None:
        """Close the HTTP clients."""
        self._client.close()
        self._session_client.close()

    def __enter__(self) -> GraphClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def set_token(self, token: str) -> None:
        """Use a new bearer token for subsequent requests."""
        self._client.headers["Authorization"] = f"Bearer {token}"

    @property
    def ensured_folders(self) -> frozenset[str]:
        """Remote folders confirmed to exist during this process lifetime."""
        with self._folder_lock:
            return frozenset(self._ensured)

    # === Request plumbing ===

    def _send(
        self,
        method: str,
        url: str,
        *,
        cancel: threading.Event | None = None,
        session: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, translating transport failures."""
        if cancel is not None and cancel.is_set():
            raise TransferCancelled(f"{method} {url} cancelled")
        client = self._session_client if session else self._client
        try:
            return client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

    def _handle_response(self, response: httpx.Response, operation: str) -> httpx.Response:
        """Raise the matching APIError for a non-success response."""
        if response.is_success:
            return response

        status = response.status_code
        body = _truncate(response.text)
        message = f"{operation} failed: {status} {response.reason_phrase}"

        if status in (401, 403):
            raise AuthenticationError(message, status, body)
        if status == 404:
            raise NotFoundError(message, status, body)
        if status == 409:
            raise ConflictError(message, status, body)
        if status == 400:
            logger.warning("%s returned 400: %s", operation, body)
            raise BadRequestError(f"{message} {body}", status, body)
        if status == 429 or (status == 503 and "Retry-After" in response.headers):
            raise RateLimitedError(
                message,
                status,
                body,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise ServerError(message, status, body)
        raise APIError(message, status, body)

    def _get_json(self, url: str, operation: str, **kwargs: Any) -> dict[str, Any]:
        response = self._handle_response(self._send("GET", url, **kwargs), operation)
        data: dict[str, Any] = response.json()
        return data

    # === Containers ===

    def resolve_container_id(self, ref: ContainerRef) -> str:
        """Resolve a container reference to its drive id.

        The result is cached for the lifetime of the client.

        Raises:
            ValueError: If the reference locates nothing.
            APIError: If the lookup request fails.
        """
        if ref.drive_id:
            return ref.drive_id
        if not ref.site_id:
            raise ValueError("Container reference needs drive_id or site_id")

        with self._container_lock:
            cached = self._container_ids.get(ref.key)
        if cached:
            return cached

        if ref.list_id:
            url = f"/sites/{ref.site_id}/lists/{ref.list_id}/drive"
        else:
            url = f"/sites/{ref.site_id}/drive"
        data = self._get_json(url, "GET drive id")
        drive_id = str(data.get("id") or "")
        if not drive_id:
            raise APIError(f"No drive id returned for {url}")

        with self._container_lock:
            self._container_ids[ref.key] = drive_id
        logger.debug("Resolved container %s -> %s", ref.key, drive_id)
        return drive_id

    # === Folders ===

    def folder_exists(
        self, container_id: str, path: str, cancel: threading.Event | None = None
    ) -> bool:
        """Check whether a folder exists (GET by path, 404 means absent)."""
        try:
            self._handle_response(
                self._send(
                    "GET",
                    f"/drives/{container_id}/root:/{_quote_path(path)}",
                    cancel=cancel,
                ),
                f"GET folder {path}",
            )
        except NotFoundError:
            return False
        return True

    def create_folder(
        self,
        container_id: str,
        parent: str,
        name: str,
        cancel: threading.Event | None = None,
    ) -> None:
        """Create a folder under ``parent`` (empty string means the root).

        A 409 response means another creator won the race and is treated
        as success.
        """
        if parent:
            url = f"/drives/{container_id}/root:/{_quote_path(parent)}:/children"
        else:
            url = f"/drives/{container_id}/root/children"
        body = {"name": name, "folder": {}, CONFLICT_BEHAVIOR: "replace"}
        try:
            self._handle_response(
                self._send("POST", url, json=body, cancel=cancel),
                f"create folder {name}",
            )
        except ConflictError:
            logger.debug("Folder %s/%s already exists (409)", parent, name)

    def ensure_folder(
        self, container_id: str, path: str, cancel: threading.Event | None = None
    ) -> None:
        """Make sure every segment of ``path`` exists remotely.

        Segments already confirmed during this process lifetime are never
        re-verified. Each remote path has its own lock, so workers only
        wait for each other when they walk the same path.
        """
        segments = [s for s in path.replace("\\", "/").split("/") if s]
        current = ""
        for segment in segments:
            parent = current
            current = f"{current}/{segment}" if current else segment
            cache_key = f"{container_id}:{current}"
            with self._folder_lock:
                if cache_key in self._ensured:
                    continue
                path_lock = self._path_locks.setdefault(cache_key, threading.Lock())

            with path_lock:
                with self._folder_lock:
                    if cache_key in self._ensured:
                        continue
                if not self.folder_exists(container_id, current, cancel=cancel):
                    logger.info("Creating remote folder %s", current)
                    self.create_folder(container_id, parent, segment, cancel=cancel)
                with self._folder_lock:
                    self._ensured.add(cache_key)

    # === Uploads ===

    def upload_small(
        self,
        container_id: str,
        folder: str,
        name: str,
        data: bytes,
        cancel: threading.Event | None = None,
    ) -> RemoteItem | None:
        """Upload a whole object with a single PUT (replacing any existing one)."""
        url = f"/drives/{container_id}/root:/{_quote_path(f'{folder}/{name}')}:/content"
        response = self._handle_response(
            self._send(
                "PUT",
                url,
                params={CONFLICT_BEHAVIOR: "replace"},
                content=data,
                headers={"Content-Type": "application/octet-stream"},
                cancel=cancel,
            ),
            f"PUT {name}",
        )
        return self._item_from_response(response, container_id)

    def create_upload_session(
        self,
        container_id: str,
        folder: str,
        name: str,
        cancel: threading.Event | None = None,
    ) -> str:
        """Create a resumable upload session and return its upload URL."""
        url = (
            f"/drives/{container_id}/root:/{_quote_path(f'{folder}/{name}')}"
            ":/createUploadSession"
        )
        data = self._handle_response(
            self._send(
                "POST",
                url,
                json={"item": {CONFLICT_BEHAVIOR: "replace"}},
                cancel=cancel,
            ),
            "createUploadSession",
        ).json()
        upload_url = str(data.get("uploadUrl") or "")
        if not upload_url:
            raise APIError("createUploadSession returned no uploadUrl")
        return upload_url

    def upload_large(
        self,
        container_id: str,
        folder: str,
        name: str,
        stream: IO[bytes],
        size: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        cancel: threading.Event | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> RemoteItem | None:
        """Upload an object through a resumable session.

        Chunks are read from ``stream`` and sent strictly in order with a
        ``Content-Range`` header; 202 means more chunks are expected and
        200/201 means the object is complete.

        Raises:
            UploadSessionError: If the store rejects a chunk.
            TransferCancelled: If cancellation is observed between chunks.
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

        upload_url = self.create_upload_session(container_id, folder, name, cancel=cancel)
        sent = 0
        response: httpx.Response | None = None

        while sent < size:
            if cancel is not None and cancel.is_set():
                raise TransferCancelled(f"Upload of {name} cancelled at byte {sent}/{size}")
            chunk = stream.read(min(chunk_size, size - sent))
            if not chunk:
                raise UploadSessionError(
                    f"Source for {name} ended at byte {sent}, expected {size}"
                )
            end = sent + len(chunk) - 1
            response = self._send(
                "PUT",
                upload_url,
                session=True,
                content=chunk,
                headers={
                    "Content-Range": f"bytes {sent}-{end}/{size}",
                    "Content-Type": "application/octet-stream",
                },
                cancel=cancel,
            )
            if response.status_code not in (200, 201, 202):
                self._handle_response(response, f"PUT chunk {sent}-{end} of {name}")
                raise UploadSessionError(
                    f"Upload chunk failed for {name}: {response.status_code}",
                    response.status_code,
                )
            sent += len(chunk)
            logger.debug("Sent %s bytes %d-%d/%d", name, sent - len(chunk), end, size)
            if on_progress:
                on_progress(sent, size)

        if response is None or response.status_code == 202:
            return None
        return self._item_from_response(response, container_id)

    @staticmethod
    def _item_from_response(
        response: httpx.Response, container_id: str
    ) -> RemoteItem | None:
        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict) or "id" not in data:
            return None
        return RemoteItem.from_dict(data, container_id)

    # === Listing ===

    def iter_pages(
        self,
        url: str,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        cancel: threading.Event | None = None,
    ) -> Iterator[dict[str, Any]]:
        """Yield every entry of a paged collection, following next links."""
        next_url: str | None = url
        page_params = params
        while next_url:
            data = self._get_json(
                next_url,
                f"GET {next_url}",
                params=page_params,
                headers=headers,
                cancel=cancel,
            )
            for entry in data.get("value") or []:
                if isinstance(entry, dict):
                    yield entry
            next_url = data.get(NEXT_LINK)
            # The next link already carries the query
            page_params = None

    def list_or_search(
        self,
        container_id: str,
        query: RemoteQuery,
        cancel: threading.Event | None = None,
    ) -> list[RemoteItem]:
        """Run a filtered list query or a drive search and return all items.

        Filtered queries return list items with an expanded driveItem;
        their container id comes from the item's parent reference.
        Search results are restricted to files.
        """
        if query.filter is not None:
            if not (query.site_id and query.list_id):
                raise ValueError("Filtered queries need site_id and list_id")
            url = f"/sites/{query.site_id}/lists/{query.list_id}/items"
            params = {
                "$expand": "driveItem",
                "$filter": f"({query.filter})",
                "$top": str(query.page_size),
            }
            items = []
            for entry in self.iter_pages(
                url,
                params=params,
                headers={"Prefer": PREFER_NON_INDEXED},
                cancel=cancel,
            ):
                drive_item = entry.get("driveItem")
                if not isinstance(drive_item, dict):
                    continue
                item = RemoteItem.from_dict(drive_item)
                if item.id and item.name and item.container_id:
                    items.append(item)
            return items

        if query.search is None:
            raise ValueError("Query needs either search or filter")
        text = odata_escape(query.search)
        url = f"/drives/{container_id}/root/search(q='{quote(text, safe='')}')"
        items = []
        for entry in self.iter_pages(
            url, params={"$top": str(query.page_size)}, cancel=cancel
        ):
            if "file" not in entry:
                continue
            item = RemoteItem.from_dict(entry, container_id)
            if item.id and item.name:
                items.append(item)
        return items

    # === Downloads ===

    def download_item(
        self,
        container_id: str,
        item_id: str,
        destination: Path,
        cancel: threading.Event | None = None,
    ) -> int:
        """Stream an item's content to ``destination``.

        Content is written to a temporary sibling and renamed into place,
        so an interrupted download never leaves a truncated file.

        Returns:
            Number of bytes written.
        """
        if cancel is not None and cancel.is_set():
            raise TransferCancelled(f"Download of {item_id} cancelled")
        url = f"/drives/{container_id}/items/{item_id}/content"
        partial = destination.with_name(destination.name + ".partial")
        written = 0
        try:
            with self._client.stream("GET", url) as response:
                if not response.is_success:
                    response.read()
                    self._handle_response(response, f"GET content {item_id}")
                with partial.open("wb") as f:
                    for block in response.iter_bytes():
                        if cancel is not None and cancel.is_set():
                            raise TransferCancelled(f"Download of {item_id} cancelled")
                        f.write(block)
                        written += len(block)
        except httpx.TimeoutException as e:
            partial.unlink(missing_ok=True)
            raise TransportError(f"GET content {item_id} timed out: {e}") from e
        except httpx.TransportError as e:
            partial.unlink(missing_ok=True)
            raise TransportError(f"GET content {item_id} failed: {e}") from e
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        partial.replace(destination)
        return written

