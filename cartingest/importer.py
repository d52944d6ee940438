"""
Batch and dropbox import runs.

process_file_list() imports an explicit list of files once. DropboxRunner
polls a directory, hands each file to the orchestrator as soon as the
StabilityTracker considers it complete, and keeps going until stopped.
Both collect one ImportResult per file in an ImportJob; a rejected file
never stops the run.
"""

import glob
import json
import logging
import signal
import sys
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, TextIO, Union

from .events import FileSkippedEvent, RunCompletedEvent, RunStartedEvent
from .orchestrator import ImportOrchestrator, ImportOutcome, ImportResult
from .stability import DropboxStore, StabilityTracker
from .timestamps import TimestampCache


logger = logging.getLogger(__name__)

SLEEP_INCREMENT = 0.5


@dataclass
class SkippedFile:
    """A file that was seen but deliberately not imported."""
    path: Path
    reason: str


@dataclass
class ImportJob:
    """Represents one import run and its results."""
    group: str
    mode: str = "batch"
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    # Results
    results: List[ImportResult] = field(default_factory=list)
    skipped: List[SkippedFile] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    stopped: bool = False

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def duration_seconds(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    def counts(self) -> Dict[str, int]:
        """Number of results per outcome, including outcomes that never occurred."""
        counts = {outcome.value: 0 for outcome in ImportOutcome}
        for result in self.results:
            counts[result.outcome.value] += 1
        return counts

    @property
    def exit_code(self) -> int:
        return 0 if self.failure_count == 0 else 1

    def to_dict(self) -> Dict:
        """Convert job to dictionary for serialization."""
        return {
            "run_id": self.run_id,
            "group": self.group,
            "mode": self.mode,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "stopped": self.stopped,
            "files": [r.to_dict() for r in self.results],
            "skipped": [{"path": str(s.path), "reason": s.reason} for s in self.skipped],
            "summary": {
                "total_files": len(self.results),
                "successful": self.success_count,
                "failed": self.failure_count,
                "skipped": len(self.skipped),
                "outcomes": self.counts(),
            },
        }

    def save_report(self, output_path: Union[str, Path]):
        """Save job report to JSON file."""
        output_path = Path(output_path)
        with open(output_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


def expand_file_specs(entries: Iterable[str], stdin: Optional[TextIO] = None) -> List[Path]:
    """
    Turn command line file arguments into an ordered list of files.

    An entry may be a file, a directory (its visible files, in name order), a
    glob pattern, or '-' to read more entries from stdin, one per line.
    Entries naming a file that does not exist are kept so the import reports
    them.
    """
    files: List[Path] = []
    for entry in entries:
        if entry == "-":
            lines = (stdin or sys.stdin).read().splitlines()
            files.extend(expand_file_specs([line.strip() for line in lines if line.strip()]))
            continue

        path = Path(entry)
        if path.is_dir():
            files.extend(
                child for child in sorted(path.iterdir())
                if child.is_file() and not child.name.startswith(".")
            )
        elif path.exists() or not any(c in entry for c in "*?["):
            files.append(path)
        else:
            matches = sorted(glob.glob(entry))
            if not matches:
                logger.warning(f"No files match {entry}")
            files.extend(Path(m) for m in matches if Path(m).is_file())
    return files


@contextmanager
def stop_on_signals(callback: Callable[[], None]) -> Iterator[None]:
    """
    Call callback on SIGINT/SIGTERM instead of interrupting mid-file.

    The previous handlers are restored on exit.
    """

    def signal_handler(signum, frame):
        logger.info("Received interrupt signal, stopping after the current file")
        callback()

    previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    for sig in previous:
        signal.signal(sig, signal_handler)
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _start(job: ImportJob, orchestrator: ImportOrchestrator, total_files: int) -> None:
    job.start_time = datetime.now()
    orchestrator.run_id = job.run_id
    orchestrator.event_bus.emit(RunStartedEvent(
        run_id=job.run_id,
        mode=job.mode,
        group=job.group,
        total_files=total_files,
    ))


def _finish(job: ImportJob, orchestrator: ImportOrchestrator) -> ImportJob:
    job.end_time = datetime.now()
    counts = job.counts()
    logger.info(
        "Import finished: " + ", ".join(f"{name}={count}" for name, count in counts.items())
        + (f", skipped={len(job.skipped)}" if job.skipped else "")
    )
    orchestrator.event_bus.emit(RunCompletedEvent(
        run_id=job.run_id,
        counts=counts,
        duration_seconds=job.duration_seconds,
        stopped=job.stopped,
    ))
    return job


def _skip(job: ImportJob, orchestrator: ImportOrchestrator, path: Path, reason: str) -> None:
    logger.info(f"Skipping {path.name}: {reason}")
    job.skipped.append(SkippedFile(path, reason))
    orchestrator.event_bus.emit(FileSkippedEvent(run_id=job.run_id, path=str(path), reason=reason))


def _record_import(cache: Optional[TimestampCache], result: ImportResult) -> None:
    # The mtime recorded is the one after any repair
    if cache is not None and result.success and result.path.exists():
        cache.write_timestamp_cache(result.path)


def process_file_list(
    orchestrator: ImportOrchestrator,
    files: Iterable[Union[str, Path]],
    cache: Optional[TimestampCache] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> ImportJob:
    """
    Import a list of files once, in the given order.

    Args:
        orchestrator: Configured orchestrator
        files: Files to import
        cache: Timestamp cache; unchanged files already imported are skipped
        should_stop: Checked between files; True ends the run early

    Returns:
        ImportJob with one result per attempted file
    """
    files = [Path(f) for f in files]
    job = ImportJob(group=orchestrator.settings.group, mode="batch")
    _start(job, orchestrator, len(files))

    for path in files:
        if should_stop is not None and should_stop():
            job.stopped = True
            break
        if cache is not None and path.exists() and not cache.needs_import(path):
            _skip(job, orchestrator, path, "unchanged since last import")
            continue
        result = orchestrator.import_file(path)
        job.results.append(result)
        _record_import(cache, result)

    return _finish(job, orchestrator)


class DropboxRunner:
    """
    Imports files from a watched directory as they become stable.

    Args:
        orchestrator: Configured orchestrator
        directory: Dropbox directory
        cache: Timestamp cache shared across runs
        tracker: Stability tracker (default: built from the orchestrator's settings)
        store: Tracking state (default: a fresh store)
        sleep: Sleep function, replaceable in tests
    """

    def __init__(
        self,
        orchestrator: ImportOrchestrator,
        directory: Union[str, Path],
        cache: Optional[TimestampCache] = None,
        tracker: Optional[StabilityTracker] = None,
        store: Optional[DropboxStore] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = orchestrator.settings
        self.orchestrator = orchestrator
        self.directory = Path(directory)
        self.cache = cache
        self.tracker = tracker or StabilityTracker(
            threshold=settings.stability_passes,
            retry_budget=settings.retry_budget,
            include_patterns=settings.include_patterns,
            exclude_patterns=settings.exclude_patterns,
        )
        self.store = store if store is not None else DropboxStore()
        self.interval = settings.scan_interval
        self._sleep = sleep
        self.running = False

    def stop(self) -> None:
        """Ask the run to end after the file currently being imported."""
        if self.running:
            logger.info("Stopping dropbox run")
        self.running = False

    def _wait(self) -> None:
        elapsed = 0.0
        while elapsed < self.interval and self.running:
            step = min(SLEEP_INCREMENT, self.interval - elapsed)
            self._sleep(step)
            elapsed += step

    def _handle(self, job: ImportJob, path: Path) -> None:
        if self.cache is not None and not self.cache.needs_import(path):
            _skip(job, self.orchestrator, path, "unchanged since last import")
            return

        result = self.orchestrator.import_file(path)
        job.results.append(result)
        if result.success:
            self.tracker.mark_imported(path, self.store)
            _record_import(self.cache, result)
        elif not self.tracker.mark_failed(path, self.store):
            if path in self.store.abandoned:
                _skip(job, self.orchestrator, path, "retry budget exhausted")
            else:
                logger.info(f"{path.name} disappeared after a failed import, not retrying")

    def run(self, max_scans: Optional[int] = None) -> ImportJob:
        """
        Poll the dropbox until stopped.

        Args:
            max_scans: End after this many polls (None = until stopped)

        Returns:
            ImportJob with every result of the run
        """
        job = ImportJob(group=self.orchestrator.settings.group, mode="dropbox")
        _start(job, self.orchestrator, 0)
        logger.info(f"Watching {self.directory} (every {self.interval}s)")

        self.running = True
        scans = 0
        while self.running:
            ready = self.tracker.scan(self.directory, self.store)
            for index, path in enumerate(ready):
                if not self.running:
                    for pending in ready[index:]:
                        self.tracker.requeue(pending, self.store)
                    break
                self._handle(job, path)

            scans += 1
            if max_scans is not None and scans >= max_scans:
                break
            self._wait()

        job.stopped = not self.running
        self.running = False
        return _finish(job, self.orchestrator)
