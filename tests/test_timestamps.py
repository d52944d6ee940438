"""
Tests for the persisted timestamp cache.
"""

import json
import os

from cartingest.timestamps import TimestampCache


class TestTimestampCache:
    """Test import bookkeeping across runs."""

    def test_new_file_needs_import(self, tmp_path):
        path = tmp_path / "a.wav"
        path.write_bytes(b"audio")
        cache = TimestampCache(tmp_path / "cache.json")
        assert cache.get_cached_timestamp(path) is None
        assert cache.needs_import(path) is True

    def test_recorded_file_skipped(self, tmp_path):
        path = tmp_path / "a.wav"
        path.write_bytes(b"audio")
        cache = TimestampCache(tmp_path / "cache.json")
        cache.write_timestamp_cache(path)
        assert cache.needs_import(path) is False

    def test_newer_file_imported_again(self, tmp_path):
        path = tmp_path / "a.wav"
        path.write_bytes(b"audio")
        cache = TimestampCache(tmp_path / "cache.json")
        cache.write_timestamp_cache(path)

        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 5))
        assert cache.needs_import(path) is True

    def test_persisted(self, tmp_path):
        path = tmp_path / "a.wav"
        path.write_bytes(b"audio")
        cache_path = tmp_path / "cache.json"
        TimestampCache(cache_path).write_timestamp_cache(path, mtime=123.0)

        assert TimestampCache(cache_path).get_cached_timestamp(path) == 123.0
        data = json.loads(cache_path.read_text())
        assert data["default"][str(path.resolve())] == 123.0

    def test_dropbox_ids_are_separate(self, tmp_path):
        path = tmp_path / "a.wav"
        path.write_bytes(b"audio")
        cache_path = tmp_path / "cache.json"
        TimestampCache(cache_path, "music").write_timestamp_cache(path)

        assert TimestampCache(cache_path, "music").needs_import(path) is False
        assert TimestampCache(cache_path, "news").needs_import(path) is True

    def test_unreadable_cache_starts_empty(self, tmp_path):
        cache_path = tmp_path / "cache.json"
        cache_path.write_text("{broken")
        cache = TimestampCache(cache_path)
        assert cache.get_cached_timestamp(tmp_path / "a.wav") is None

    def test_prune(self, tmp_path):
        kept = tmp_path / "kept.wav"
        gone = tmp_path / "gone.wav"
        kept.write_bytes(b"audio")
        gone.write_bytes(b"audio")
        cache = TimestampCache(tmp_path / "cache.json")
        cache.write_timestamp_cache(kept)
        cache.write_timestamp_cache(gone)
        gone.unlink()

        assert cache.prune() == 1
        assert cache.get_cached_timestamp(kept) is not None
        assert cache.get_cached_timestamp(gone) is None
