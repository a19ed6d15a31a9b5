"""Bulk download of remote objects matching name prefixes.

This module provides:
- BulkDownloader: Finds remote objects by prefix, skips the ones the
  change index already has, and downloads the rest concurrently
- build_prefix_filter: OData ``startswith`` filter over one list field
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

from fieldsync.client.api import (
    BadRequestError,
    GraphClient,
    NotFoundError,
    RemoteItem,
    RemoteQuery,
    odata_escape,
)
from fieldsync.client.index import ChangeIndex
from fieldsync.client.sync.events import (
    DownloadCompleted,
    DownloadProgress,
    EventBus,
    FileDownloaded,
)
from fieldsync.client.sync.retry import classify_error
from fieldsync.client.sync.types import DownloadSummary
from fieldsync.client.sync.workers import BoundedWorkerPool
from fieldsync.core.config import RemoteConfig
from fieldsync.core.types import ErrorKind

if TYPE_CHECKING:
    from fieldsync.client.auth import TokenProvider
    from fieldsync.client.state import StatsStore
    from fieldsync.core.config import DownloadConfig

logger = logging.getLogger(__name__)

# List fields holding the file name, tried in order
FILTER_FIELDS = ("FileLeafRef", "LinkFilename")


def merge_prefixes(*groups: Iterable[str]) -> list[str]:
    """Union of prefix lists, case-insensitive, first spelling wins."""
    seen: set[str] = set()
    merged = []
    for group in groups:
        for prefix in group:
            prefix = prefix.strip()
            if prefix and prefix.lower() not in seen:
                seen.add(prefix.lower())
                merged.append(prefix)
    return merged


def build_prefix_filter(field_name: str, prefixes: list[str]) -> str:
    """``startswith(fields/X,'a') or startswith(fields/X,'b')``."""
    return " or ".join(
        f"startswith(fields/{field_name},'{odata_escape(p)}')" for p in prefixes
    )


class BulkDownloader:
    """Downloads new or changed remote objects into a local folder.

    Usage:
        downloader = BulkDownloader(config.download, StaticTokenProvider(token))
        summary = downloader.download_matching(Path("reports"), ["ACME-"])
    """

    def __init__(
        self,
        config: DownloadConfig,
        token_provider: TokenProvider,
        client: GraphClient | None = None,
        remote: RemoteConfig | None = None,
        bus: EventBus | None = None,
        stats: StatsStore | None = None,
    ) -> None:
        """Initialize the downloader.

        Args:
            config: Download settings.
            token_provider: Source of bearer tokens.
            client: Remote client; one is created from ``remote`` if omitted.
            remote: Connection settings used when ``client`` is omitted.
            bus: Event bus for progress events.
            stats: Optional persisted totals.
        """
        self._config = config
        self._token_provider = token_provider
        self._owns_client = client is None
        self._client = client or GraphClient(remote or RemoteConfig())
        self._bus = bus or EventBus()
        self._stats = stats

    @property
    def events(self) -> EventBus:
        return self._bus

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def download_matching(
        self,
        target_folder: Path,
        extra_prefixes: Iterable[str] | None = None,
        cancel: threading.Event | None = None,
    ) -> DownloadSummary:
        """Download every matching object that is new or changed.

        Per-item failures are logged and counted; they never stop the
        batch. The change index is saved once, after all downloads.

        Args:
            target_folder: Local folder receiving the files and the index.
            extra_prefixes: Prefixes added to the configured ones.
            cancel: Optional cancellation event.

        Returns:
            DownloadSummary of the pass.

        Raises:
            TokenError: If no token can be obtained.
            APIError: If the container cannot be resolved or listed.
        """
        summary = DownloadSummary()
        prefixes = merge_prefixes(self._config.wanted_prefixes, extra_prefixes or [])
        if not prefixes:
            logger.info("No prefixes configured, nothing to download")
            self._bus.emit(DownloadCompleted(summary))
            return summary

        target_folder = Path(target_folder)
        target_folder.mkdir(parents=True, exist_ok=True)
        index = ChangeIndex(target_folder, self._config.index_filename)

        self._client.set_token(self._token_provider.get_token())
        container_id = self._client.resolve_container_id(self._config.container)

        candidates = self._find_candidates(container_id, prefixes, cancel)
        summary.candidates = len(candidates)

        wanted = []
        for item in candidates:
            if index.should_download(item.id, item.version_tag, self._config.skip_unchanged):
                wanted.append(item)
            else:
                summary.skipped_unchanged += 1
        logger.info(
            "%d matching object(s), %d to download, %d unchanged",
            len(candidates),
            len(wanted),
            summary.skipped_unchanged,
        )

        progress_lock = threading.Lock()
        done = 0

        def download_one(item: RemoteItem) -> Path | None:
            nonlocal done
            destination = target_folder / item.name
            try:
                size = self._client.download_item(
                    item.container_id or container_id, item.id, destination, cancel=cancel
                )
            except Exception as e:
                if classify_error(e) is not ErrorKind.CANCELLED:
                    logger.warning("Failed to download %s: %s", item.name, e)
                return None
            index.record(item.id, item.version_tag)
            self._bus.emit(FileDownloaded(destination, item.id, size))
            with progress_lock:
                done += 1
                current = done
            self._bus.emit(DownloadProgress(current, len(wanted)))
            return destination

        pool = BoundedWorkerPool(self._config.max_workers, name="download")
        try:
            results = pool.run(wanted, download_one, cancel=cancel)
        finally:
            index.save()

        summary.downloaded = [path for path in results if path is not None]
        summary.failed = len(wanted) - len(summary.downloaded)
        if self._stats is not None and summary.downloaded:
            self._stats.add(downloaded=len(summary.downloaded))

        logger.info(
            "Download finished: %d downloaded, %d failed", len(summary.downloaded), summary.failed
        )
        self._bus.emit(DownloadCompleted(summary))
        return summary

    def _find_candidates(
        self,
        container_id: str,
        prefixes: list[str],
        cancel: threading.Event | None,
    ) -> list[RemoteItem]:
        """Query the store and keep files matching the suffix and a prefix."""
        found = None
        if not self._config.force_drive_search:
            found = self._query_list(prefixes, cancel)
        if found is None:
            found = []
            for prefix in prefixes:
                found.extend(
                    self._client.list_or_search(
                        container_id, RemoteQuery.for_search(prefix), cancel=cancel
                    )
                )

        suffix = self._config.name_suffix.lower()
        lowered = [p.lower() for p in prefixes]
        seen: set[tuple[str, str]] = set()
        candidates = []
        for item in found:
            key = (item.container_id or container_id, item.id)
            if key in seen or not item.is_file:
                continue
            name = item.name.lower()
            if suffix and not name.endswith(suffix):
                continue
            if not any(name.startswith(p) for p in lowered):
                continue
            seen.add(key)
            candidates.append(item)

        # Files land flat in the target folder: one object per name
        by_name: dict[str, RemoteItem] = {}
        candidates.sort(key=lambda i: (i.name.lower(), i.container_id or container_id, i.id))
        for item in candidates:
            chosen = by_name.setdefault(item.name.lower(), item)
            if chosen is not item:
                logger.warning(
                    "Skipping %s (id %s): same name as already selected id %s",
                    item.name,
                    item.id,
                    chosen.id,
                )
        return list(by_name.values())

    def _query_list(
        self, prefixes: list[str], cancel: threading.Event | None
    ) -> list[RemoteItem] | None:
        """Filtered list query; None if the library rejects every field."""
        container = self._config.container
        if not (container.site_id and container.list_id):
            return None
        for field_name in FILTER_FIELDS:
            query = RemoteQuery.for_filter(
                build_prefix_filter(field_name, prefixes),
                container.site_id,
                container.list_id,
            )
            try:
                return self._client.list_or_search("", query, cancel=cancel)
            except (BadRequestError, NotFoundError) as e:
                logger.debug("Filter on %s rejected: %s", field_name, e)
        logger.info("Filtered queries rejected, falling back to drive search")
        return None
