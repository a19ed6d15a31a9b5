"""File upload with size-based protocol selection.

This module provides:
- FileUploader: Sends one queued file to its remote folder, either as a
  single PUT or through a chunked upload session
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from fieldsync.client.api import DEFAULT_CHUNK_SIZE
from fieldsync.client.sync.types import ProgressCallback, QueueItem
from fieldsync.core.config import MIB

if TYPE_CHECKING:
    from fieldsync.client.api import GraphClient

logger = logging.getLogger(__name__)

DEFAULT_SMALL_UPLOAD_THRESHOLD = 4 * MIB


def join_remote(*parts: str) -> str:
    """Join remote path parts with "/", dropping empty segments."""
    segments = []
    for part in parts:
        segments.extend(s for s in part.replace("\\", "/").split("/") if s)
    return "/".join(segments)


class FileUploader:
    """Uploads files small enough in one request, larger ones in chunks.

    Usage:
        uploader = FileUploader(client, small_upload_threshold=4 * MIB)
        remote_path = uploader.upload(item, drive_id, "FieldSync/client-042")
    """

    def __init__(
        self,
        client: GraphClient,
        small_upload_threshold: int = DEFAULT_SMALL_UPLOAD_THRESHOLD,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        """Initialize the uploader.

        Args:
            client: Remote client shared by all workers.
            small_upload_threshold: Largest size (bytes) sent with a single PUT.
            chunk_size: Chunk size for session uploads.
            progress_callback: Optional callback (bytes_sent, total) for chunked uploads.
        """
        self._client = client
        self._threshold = small_upload_threshold
        self._chunk_size = chunk_size
        self._progress_callback = progress_callback

    def upload(
        self,
        item: QueueItem,
        container_id: str,
        remote_folder: str,
        cancel: threading.Event | None = None,
    ) -> str:
        """Upload a queued file, creating its remote folder if needed.

        Returns:
            Remote path of the uploaded object ("/folder/name").

        Raises:
            OSError: If the local file cannot be read.
            APIError: If the remote store rejects a request.
            TransferCancelled: If cancellation is observed.
        """
        self._client.ensure_folder(container_id, remote_folder, cancel=cancel)

        size = item.local_path.stat().st_size
        if size <= self._threshold:
            logger.debug("Uploading %s (%d bytes) in one request", item.relative_path, size)
            data = item.local_path.read_bytes()
            self._client.upload_small(container_id, remote_folder, item.name, data, cancel=cancel)
        else:
            logger.debug(
                "Uploading %s (%d bytes) in %d byte chunks",
                item.relative_path,
                size,
                self._chunk_size,
            )
            with item.local_path.open("rb") as f:
                self._client.upload_large(
                    container_id,
                    remote_folder,
                    item.name,
                    f,
                    size,
                    chunk_size=self._chunk_size,
                    cancel=cancel,
                    on_progress=self._progress_callback,
                )

        return "/" + join_remote(remote_folder, item.name)
