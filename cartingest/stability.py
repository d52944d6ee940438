"""
Dropbox file stability tracking.

Uploaders and editors often create a file and keep appending to it, pausing
between buffer flushes. A file in a dropbox is only handed to the importer
after its size has stayed the same over several consecutive polls.

All tracking state lives in a DropboxStore that the caller owns and passes
into every scan, so separate dropboxes never share state.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .container import is_importable


logger = logging.getLogger(__name__)

# (size, mtime) of a file when it was last looked at
Signature = Tuple[int, float]


@dataclass
class WatchedFile:
    """A dropbox file that is not yet known to be stable."""
    path: Path
    observed_size: int
    pass_count: int = 0
    checked: bool = False
    failed: bool = False


@dataclass
class DropboxStore:
    """
    Tracking state of one dropbox.

    Attributes:
        entries: Files still being watched for stability
        settled: Files already handed out, with their signature at the time;
            they are ignored until they change
        failures: Failed import attempts per file
        abandoned: Files that used up their retry budget
    """
    entries: Dict[Path, WatchedFile] = field(default_factory=dict)
    settled: Dict[Path, Signature] = field(default_factory=dict)
    failures: Dict[Path, int] = field(default_factory=dict)
    abandoned: Dict[Path, Signature] = field(default_factory=dict)

    def __contains__(self, path) -> bool:
        return Path(path) in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, path) -> Optional[WatchedFile]:
        return self.entries.get(Path(path))

    def forget(self, path: Path) -> None:
        self.entries.pop(path, None)
        self.settled.pop(path, None)
        self.failures.pop(path, None)
        self.abandoned.pop(path, None)


def matches_filters(
    file_path: Path,
    include_patterns: Sequence[str],
    exclude_patterns: Sequence[str],
) -> bool:
    """
    Apply include/exclude glob patterns to a file name.

    Args:
        file_path: Path to file
        include_patterns: Glob patterns to include (empty = all)
        exclude_patterns: Glob patterns to exclude

    Returns:
        True if the file should be considered
    """
    for pattern in exclude_patterns:
        if file_path.match(pattern):
            return False

    if include_patterns:
        return any(file_path.match(pattern) for pattern in include_patterns)

    return True


def _signature(path: Path) -> Optional[Signature]:
    try:
        stat = path.stat()
    except OSError:
        return None
    return stat.st_size, stat.st_mtime


class StabilityTracker:
    """
    Decides when dropbox files are safe to import.

    Args:
        threshold: Consecutive polls with an unchanged size before a file
            is ready (at least 2)
        retry_budget: Failed imports tolerated before a file is abandoned
        include_patterns: Only consider files matching one of these globs
        exclude_patterns: Never consider files matching these globs
    """

    def __init__(
        self,
        threshold: int = 3,
        retry_budget: int = 3,
        include_patterns: Sequence[str] = (),
        exclude_patterns: Sequence[str] = (),
    ):
        if threshold < 2:
            raise ValueError(f"Stability threshold must be at least 2, got {threshold}")
        self.threshold = threshold
        self.retry_budget = retry_budget
        self.include_patterns = list(include_patterns)
        self.exclude_patterns = list(exclude_patterns)

    def _candidates(self, directory: Path) -> List[Path]:
        try:
            children = sorted(directory.iterdir())
        except FileNotFoundError:
            logger.warning(f"Dropbox directory missing: {directory}")
            return []
        return [
            path for path in children
            if not path.name.startswith(".")
            and path.is_file()
            and matches_filters(path, self.include_patterns, self.exclude_patterns)
        ]

    def scan(self, directory: Union[str, Path], store: DropboxStore) -> List[Path]:
        """
        Poll a directory once.

        Returns:
            Files that became ready during this poll, in name order. Each
            file is returned once; it is only returned again after it
            changes or after mark_failed() schedules a retry.
        """
        directory = Path(directory)
        ready = []
        present = set()

        for path in self._candidates(directory):
            signature = _signature(path)
            if signature is None:
                continue
            present.add(path)
            size = signature[0]

            if path in store.settled:
                if store.settled[path] == signature:
                    continue
                logger.debug(f"{path.name} changed after import, tracking again")
                del store.settled[path]
                store.failures.pop(path, None)

            if path in store.abandoned:
                if store.abandoned[path] == signature:
                    continue
                logger.debug(f"{path.name} changed after being abandoned, tracking again")
                del store.abandoned[path]
                store.failures.pop(path, None)

            entry = store.entries.get(path)
            if entry is None:
                store.entries[path] = WatchedFile(path=path, observed_size=size)
                logger.debug(f"Tracking {path.name} ({size} bytes)")
                continue

            entry.checked = True
            if size != entry.observed_size:
                logger.debug(f"{path.name} still growing: {entry.observed_size} -> {size}")
                entry.observed_size = size
                entry.pass_count = 0
                continue

            entry.pass_count += 1
            if entry.pass_count < self.threshold:
                continue

            del store.entries[path]
            store.settled[path] = signature
            if not is_importable(path):
                logger.debug(f"Ignoring {path.name}: not a recognised audio file")
                continue
            ready.append(path)

        for path in list(store.entries):
            if path not in present:
                logger.debug(f"{path.name} disappeared, no longer tracking")
                store.forget(path)
        for tracked in (store.settled, store.abandoned):
            for path in list(tracked):
                if path not in present:
                    store.forget(path)

        return ready

    def requeue(self, path: Union[str, Path], store: DropboxStore) -> None:
        """
        Hand a ready file back for the next poll.

        For files returned by scan() that the caller did not get to. The
        next scan returns the file again if it has not changed.
        """
        path = Path(path)
        store.settled.pop(path, None)
        signature = _signature(path)
        if signature is None:
            store.forget(path)
            return
        store.entries[path] = WatchedFile(
            path=path, observed_size=signature[0], pass_count=self.threshold - 1, checked=True
        )

    def mark_imported(self, path: Union[str, Path], store: DropboxStore) -> None:
        """Record the file's current signature after a successful import."""
        path = Path(path)
        store.failures.pop(path, None)
        signature = _signature(path)
        if signature is None:
            store.forget(path)
        else:
            store.settled[path] = signature

    def mark_failed(self, path: Union[str, Path], store: DropboxStore) -> bool:
        """
        Record a failed import.

        Returns:
            True if the file will be retried once it is stable again, False
            if it will not be: either it used up its retry budget (and is
            now in store.abandoned) or it no longer exists
        """
        path = Path(path)
        failures = store.failures.get(path, 0) + 1
        store.failures[path] = failures
        store.settled.pop(path, None)

        signature = _signature(path)
        if signature is None:
            store.forget(path)
            return False

        if failures >= self.retry_budget:
            store.abandoned[path] = signature
            store.entries.pop(path, None)
            logger.warning(f"Giving up on {path.name} after {failures} failed attempt(s)")
            return False

        store.entries[path] = WatchedFile(
            path=path, observed_size=signature[0], checked=True, failed=True
        )
        logger.debug(f"Will retry {path.name} (attempt {failures} of {self.retry_budget})")
        return True
