"""
Import event system.

Provides EventBus for publish/subscribe and typed events for the lifecycle
of an import run and of each file in it. The CLI progress bar and reports
subscribe here; the orchestrator and runners only emit.
"""

import logging
from enum import Enum, auto
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime


logger = logging.getLogger(__name__)


class EventType(Enum):
    """Enumeration of all import event types."""
    RUN_STARTED = auto()
    FILE_STATE_CHANGED = auto()
    FILE_COMMITTED = auto()
    FILE_REJECTED = auto()
    FILE_SKIPPED = auto()
    RUN_COMPLETED = auto()


@dataclass
class ImportEvent:
    """Base class for all import events.

    Attributes:
        run_id: Identifier of the import run
        timestamp: When the event occurred
        metadata: Additional event-specific data
    """
    run_id: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_type: EventType = field(init=False, default=None)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {
            "event_type": self.event_type.name,
            "run_id": self.run_id,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class RunStartedEvent(ImportEvent):
    """Emitted when a batch or dropbox run begins.

    Attributes:
        mode: 'batch' or 'dropbox'
        group: Target group
        total_files: Number of files queued (0 for dropbox runs)
    """
    mode: str = ""
    group: str = ""
    total_files: int = 0

    def __post_init__(self):
        self.event_type = EventType.RUN_STARTED


@dataclass
class FileStateChangedEvent(ImportEvent):
    """Emitted on every state transition of one file's import."""
    path: str = ""
    old_state: str = ""
    new_state: str = ""

    def __post_init__(self):
        self.event_type = EventType.FILE_STATE_CHANGED


@dataclass
class FileCommittedEvent(ImportEvent):
    """Emitted when a file was imported."""
    path: str = ""
    cart: int = 0
    cut: int = 0

    def __post_init__(self):
        self.event_type = EventType.FILE_COMMITTED


@dataclass
class FileRejectedEvent(ImportEvent):
    """Emitted when a file's import ended in a rejection.

    Attributes:
        outcome: Outcome name (FileBad, NoCart, NoCut)
        reason: Human-readable reason
    """
    path: str = ""
    outcome: str = ""
    reason: str = ""

    def __post_init__(self):
        self.event_type = EventType.FILE_REJECTED


@dataclass
class FileSkippedEvent(ImportEvent):
    """Emitted when a file is not imported (unchanged since last run, retries exhausted)."""
    path: str = ""
    reason: str = ""

    def __post_init__(self):
        self.event_type = EventType.FILE_SKIPPED


@dataclass
class RunCompletedEvent(ImportEvent):
    """Emitted when a run finishes or is stopped.

    Attributes:
        counts: Number of results per outcome
        duration_seconds: Total run time
        stopped: True if the run was interrupted
    """
    counts: Dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0
    stopped: bool = False

    def __post_init__(self):
        self.event_type = EventType.RUN_COMPLETED


# Type alias for event handlers
EventHandler = Callable[[ImportEvent], None]


class EventBus:
    """Event bus for publish/subscribe pattern.

    Example:
        bus = EventBus()

        def on_committed(event: FileCommittedEvent) -> None:
            print(f"Imported {event.path} to cart {event.cart}")

        bus.subscribe(EventType.FILE_COMMITTED, on_committed)
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[EventHandler]] = {
            event_type: [] for event_type in EventType
        }
        self._global_subscribers: List[EventHandler] = []

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe a handler to a specific event type."""
        self._subscribers[event_type].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe a handler to all event types."""
        self._global_subscribers.append(handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> bool:
        """Unsubscribe a handler from a specific event type.

        Returns:
            True if handler was found and removed, False otherwise
        """
        if handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)
            return True
        return False

    def emit(self, event: ImportEvent) -> None:
        """Emit an event to all subscribers.

        A failing handler is logged and does not stop delivery to the rest.
        """
        event_type = event.event_type

        for handler in self._subscribers.get(event_type, []) + self._global_subscribers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(f"Event handler failed for {event_type.name}: {e}")

    def clear(self) -> None:
        """Remove all subscribers."""
        self._subscribers = {event_type: [] for event_type in EventType}
        self._global_subscribers.clear()


class EventRecorder:
    """Collects every emitted event; handy for reports and tests."""

    def __init__(self, bus: Optional[EventBus] = None):
        self.events: List[ImportEvent] = []
        if bus is not None:
            bus.subscribe_all(self.events.append)

    def of_type(self, event_type: EventType) -> List[ImportEvent]:
        return [e for e in self.events if e.event_type == event_type]
