"""
Tests for dropbox stability tracking.
"""

import pytest

from cartingest.stability import DropboxStore, StabilityTracker, matches_filters


def scan_times(tracker, directory, store, count):
    """Scan count times, returning every file handed out."""
    handed_out = []
    for _ in range(count):
        handed_out.extend(tracker.scan(directory, store))
    return handed_out


class TestFilters:
    """Test include/exclude patterns."""

    def test_no_patterns(self, tmp_path):
        assert matches_filters(tmp_path / "a.wav", [], []) is True

    def test_include(self, tmp_path):
        assert matches_filters(tmp_path / "a.wav", ["*.wav"], []) is True
        assert matches_filters(tmp_path / "a.mp3", ["*.wav"], []) is False

    def test_exclude_wins(self, tmp_path):
        assert matches_filters(tmp_path / "a.wav", ["*.wav"], ["a.*"]) is False


class TestStabilityTracker:
    """Test when files are handed to the importer."""

    def test_threshold_must_be_two_or_more(self):
        with pytest.raises(ValueError):
            StabilityTracker(threshold=1)

    def test_stable_file_after_threshold(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir)
        tracker = StabilityTracker(threshold=2)
        store = DropboxStore()

        assert tracker.scan(dropbox_dir, store) == []  # first sighting
        assert tracker.scan(dropbox_dir, store) == []  # unchanged once
        assert tracker.scan(dropbox_dir, store) == [path]
        assert path in store.settled

    def test_handed_out_exactly_once(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir)
        tracker = StabilityTracker(threshold=2)
        store = DropboxStore()

        assert scan_times(tracker, dropbox_dir, store, 10) == [path]

    def test_growing_file_is_held_back(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir, frames=100)
        tracker = StabilityTracker(threshold=2)
        store = DropboxStore()

        tracker.scan(dropbox_dir, store)
        for frames in (200, 300, 400, 500):
            wav_factory("spot.wav", directory=dropbox_dir, frames=frames)
            assert tracker.scan(dropbox_dir, store) == []
            assert store.get(path).pass_count == 0

        assert tracker.scan(dropbox_dir, store) == []
        assert tracker.scan(dropbox_dir, store) == [path]

    def test_size_change_resets_count(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir, frames=100)
        tracker = StabilityTracker(threshold=3)
        store = DropboxStore()

        scan_times(tracker, dropbox_dir, store, 3)
        assert store.get(path).pass_count == 2

        wav_factory("spot.wav", directory=dropbox_dir, frames=200)
        tracker.scan(dropbox_dir, store)
        assert store.get(path).pass_count == 0
        assert store.get(path).observed_size == path.stat().st_size

    def test_vanished_file_is_forgotten(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir)
        tracker = StabilityTracker(threshold=2)
        store = DropboxStore()

        tracker.scan(dropbox_dir, store)
        assert path in store

        path.unlink()
        assert tracker.scan(dropbox_dir, store) == []
        assert path not in store
        assert len(store) == 0

    def test_hidden_and_filtered_files_ignored(self, dropbox_dir, wav_factory):
        wav_factory(".partial.wav", directory=dropbox_dir)
        wav_factory("notes.wav.tmp", directory=dropbox_dir)
        tracker = StabilityTracker(threshold=2, exclude_patterns=["*.tmp"])
        store = DropboxStore()

        assert scan_times(tracker, dropbox_dir, store, 5) == []
        assert len(store) == 0

    def test_non_audio_settles_without_import(self, dropbox_dir):
        (dropbox_dir / "readme.txt").write_text("not audio")
        tracker = StabilityTracker(threshold=2)
        store = DropboxStore()

        assert scan_times(tracker, dropbox_dir, store, 5) == []
        assert dropbox_dir / "readme.txt" in store.settled

    def test_name_order(self, dropbox_dir, wav_factory):
        b = wav_factory("b.wav", directory=dropbox_dir)
        a = wav_factory("a.wav", directory=dropbox_dir)
        tracker = StabilityTracker(threshold=2)
        store = DropboxStore()

        assert scan_times(tracker, dropbox_dir, store, 3) == [a, b]

    def test_changed_after_import_is_tracked_again(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir, frames=100)
        tracker = StabilityTracker(threshold=2)
        store = DropboxStore()

        assert scan_times(tracker, dropbox_dir, store, 3) == [path]
        tracker.mark_imported(path, store)

        wav_factory("spot.wav", directory=dropbox_dir, frames=200)
        assert scan_times(tracker, dropbox_dir, store, 3) == [path]

    def test_requeued_file_returned_by_next_scan(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir)
        tracker = StabilityTracker(threshold=3)
        store = DropboxStore()

        assert scan_times(tracker, dropbox_dir, store, 4) == [path]
        tracker.requeue(path, store)

        assert path not in store.settled
        assert tracker.scan(dropbox_dir, store) == [path]

    def test_requeued_file_that_changed_waits_again(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir, frames=100)
        tracker = StabilityTracker(threshold=2)
        store = DropboxStore()

        assert scan_times(tracker, dropbox_dir, store, 3) == [path]
        tracker.requeue(path, store)
        wav_factory("spot.wav", directory=dropbox_dir, frames=200)

        assert tracker.scan(dropbox_dir, store) == []
        assert scan_times(tracker, dropbox_dir, store, 2) == [path]

    def test_missing_directory(self, tmp_path):
        tracker = StabilityTracker(threshold=2)
        assert tracker.scan(tmp_path / "missing", DropboxStore()) == []

    def test_stores_are_independent(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir)
        tracker = StabilityTracker(threshold=2)
        first, second = DropboxStore(), DropboxStore()

        assert scan_times(tracker, dropbox_dir, first, 3) == [path]
        assert path not in second.settled
        assert scan_times(tracker, dropbox_dir, second, 3) == [path]


class TestRetries:
    """Test failed imports and the retry budget."""

    def test_failed_file_is_retried(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir)
        tracker = StabilityTracker(threshold=2, retry_budget=3)
        store = DropboxStore()

        assert scan_times(tracker, dropbox_dir, store, 3) == [path]
        assert tracker.mark_failed(path, store) is True
        assert store.get(path).failed is True
        assert store.failures[path] == 1

        # Must prove stable again before the retry
        assert tracker.scan(dropbox_dir, store) == []
        assert tracker.scan(dropbox_dir, store) == [path]

    def test_abandoned_after_budget(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir)
        tracker = StabilityTracker(threshold=2, retry_budget=2)
        store = DropboxStore()

        assert scan_times(tracker, dropbox_dir, store, 3) == [path]
        assert tracker.mark_failed(path, store) is True
        assert scan_times(tracker, dropbox_dir, store, 2) == [path]
        assert tracker.mark_failed(path, store) is False

        assert path in store.abandoned
        assert scan_times(tracker, dropbox_dir, store, 10) == []

    def test_abandoned_file_replaced(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir, frames=100)
        tracker = StabilityTracker(threshold=2, retry_budget=1)
        store = DropboxStore()

        assert scan_times(tracker, dropbox_dir, store, 3) == [path]
        assert tracker.mark_failed(path, store) is False

        wav_factory("spot.wav", directory=dropbox_dir, frames=200)
        assert scan_times(tracker, dropbox_dir, store, 3) == [path]
        assert path not in store.abandoned

    def test_success_clears_failures(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir)
        tracker = StabilityTracker(threshold=2, retry_budget=3)
        store = DropboxStore()

        scan_times(tracker, dropbox_dir, store, 3)
        tracker.mark_failed(path, store)
        scan_times(tracker, dropbox_dir, store, 2)
        tracker.mark_imported(path, store)

        assert path not in store.failures
        assert path in store.settled

    def test_failed_file_removed(self, dropbox_dir, wav_factory):
        path = wav_factory("spot.wav", directory=dropbox_dir)
        tracker = StabilityTracker(threshold=2)
        store = DropboxStore()

        scan_times(tracker, dropbox_dir, store, 3)
        path.unlink()
        assert tracker.mark_failed(path, store) is False
        assert path not in store.failures
