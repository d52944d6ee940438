"""
Tests for the import event bus.
"""

from cartingest.events import (
    EventBus,
    EventRecorder,
    EventType,
    FileCommittedEvent,
    FileRejectedEvent,
    RunStartedEvent,
)


class TestEventBus:
    """Test publish/subscribe delivery."""

    def test_subscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.FILE_COMMITTED, received.append)

        bus.emit(FileCommittedEvent(path="a.wav", cart=100, cut=1))
        bus.emit(FileRejectedEvent(path="b.wav", outcome="FileBad"))

        assert len(received) == 1
        assert received[0].cart == 100

    def test_subscribe_all(self):
        bus = EventBus()
        recorder = EventRecorder(bus)
        bus.emit(RunStartedEvent(mode="batch", group="MUSIC"))
        bus.emit(FileCommittedEvent(path="a.wav"))
        assert [e.event_type for e in recorder.events] == [
            EventType.RUN_STARTED, EventType.FILE_COMMITTED,
        ]

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.FILE_COMMITTED, received.append)
        assert bus.unsubscribe(EventType.FILE_COMMITTED, received.append) is True
        assert bus.unsubscribe(EventType.FILE_COMMITTED, received.append) is False
        bus.emit(FileCommittedEvent())
        assert received == []

    def test_failing_handler_does_not_stop_delivery(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe(EventType.FILE_COMMITTED, broken)
        bus.subscribe(EventType.FILE_COMMITTED, received.append)
        bus.emit(FileCommittedEvent())
        assert len(received) == 1

    def test_clear(self):
        bus = EventBus()
        recorder = EventRecorder(bus)
        bus.clear()
        bus.emit(FileCommittedEvent())
        assert recorder.events == []

    def test_to_dict(self):
        data = FileCommittedEvent(run_id="abc", path="a.wav").to_dict()
        assert data["event_type"] == "FILE_COMMITTED"
        assert data["run_id"] == "abc"
