"""Change index for incremental downloads.

This module provides:
- ChangeIndex: persisted map of remote object id -> version tag (ETag)

The index is a pure cache. Losing or corrupting it only causes
redundant re-downloads, never incorrect behaviour.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_INDEX_FILENAME = ".index.json"


class ChangeIndex:
    """Remote object id -> version tag map stored inside a download folder.

    Safe for concurrent use by download workers.
    """

    def __init__(self, folder: Path, filename: str = DEFAULT_INDEX_FILENAME) -> None:
        """Load the index from ``folder``.

        A missing or unreadable index file starts an empty map.

        Args:
            folder: Download target folder holding the index file.
            filename: Name of the index file.
        """
        self._path = Path(folder) / filename
        self._lock = threading.Lock()
        self._tags: dict[str, str] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def __len__(self) -> int:
        with self._lock:
            return len(self._tags)

    def get(self, object_id: str) -> str | None:
        """Recorded version tag for ``object_id``, if any."""
        with self._lock:
            return self._tags.get(object_id)

    def should_download(
        self, object_id: str, version_tag: str, skip_unchanged: bool = True
    ) -> bool:
        """Decide whether an object needs downloading.

        Returns False only when skipping is enabled, both identifiers are
        present and the recorded tag matches exactly.
        """
        if not skip_unchanged:
            return True
        if not object_id.strip() or not version_tag.strip():
            return True
        with self._lock:
            previous = self._tags.get(object_id)
        return previous is None or previous != version_tag

    def record(self, object_id: str, version_tag: str) -> None:
        """Upsert the tag for an object (in memory only)."""
        if not object_id.strip() or not version_tag.strip():
            return
        with self._lock:
            self._tags[object_id] = version_tag

    def save(self) -> bool:
        """Persist the index.

        Failures are logged and reported through the return value; a lost
        index only costs re-downloads.
        """
        with self._lock:
            payload = json.dumps(self._tags, indent=2, sort_keys=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(payload, encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as e:
            logger.warning("Could not save change index %s: %s", self._path, e)
            return False
        return True

    def _load(self) -> None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read change index %s: %s", self._path, e)
            return

        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Change index %s is corrupt, starting empty", self._path)
            return
        if not isinstance(data, dict):
            logger.warning("Change index %s is not a map, starting empty", self._path)
            return
        self._tags = {str(k): str(v) for k, v in data.items() if isinstance(v, str)}
        logger.debug("Loaded %d entries from %s", len(self._tags), self._path)
