"""
Per-file timestamp cache.

Remembers the modification time of every file imported from a dropbox so
that a later run over the same directory skips files that did not change.
Entries are grouped by a persistent dropbox id, which lets several
dropboxes share one cache file.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union


logger = logging.getLogger(__name__)

DEFAULT_DROPBOX_ID = "default"


class TimestampCache:
    """JSON-backed map of file path -> last imported mtime."""

    def __init__(self, cache_path: Union[str, Path], dropbox_id: Optional[str] = None):
        self.cache_path = Path(cache_path)
        self.dropbox_id = dropbox_id or DEFAULT_DROPBOX_ID
        self._data: Dict[str, Dict[str, float]] = self._load()

    def _load(self) -> Dict[str, Dict[str, float]]:
        if not self.cache_path.exists():
            return {}
        try:
            with open(self.cache_path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable timestamp cache {self.cache_path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed timestamp cache {self.cache_path}")
            return {}
        return data

    def _save(self) -> None:
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.cache_path.with_name(self.cache_path.name + ".tmp")
        with open(temp_path, "w") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        os.replace(temp_path, self.cache_path)

    @property
    def _entries(self) -> Dict[str, float]:
        return self._data.setdefault(self.dropbox_id, {})

    @staticmethod
    def _key(file_path: Union[str, Path]) -> str:
        return str(Path(file_path).resolve())

    def get_cached_timestamp(self, file_path: Union[str, Path]) -> Optional[float]:
        """Last imported mtime of the file, or None if never imported."""
        return self._entries.get(self._key(file_path))

    def write_timestamp_cache(
        self,
        file_path: Union[str, Path],
        mtime: Optional[float] = None,
    ) -> None:
        """Record an imported file (current mtime unless given) and persist."""
        if mtime is None:
            mtime = Path(file_path).stat().st_mtime
        self._entries[self._key(file_path)] = mtime
        self._save()

    def needs_import(self, file_path: Union[str, Path]) -> bool:
        """True if the file was never imported or changed since."""
        cached = self.get_cached_timestamp(file_path)
        if cached is None:
            return True
        try:
            return Path(file_path).stat().st_mtime > cached
        except OSError:
            return False

    def prune(self) -> int:
        """Drop entries for files that no longer exist. Returns the count removed."""
        entries = self._entries
        gone = [key for key in entries if not Path(key).exists()]
        for key in gone:
            del entries[key]
        if gone:
            self._save()
        return len(gone)
