# ==============================================================================
# QUEUE STATE TESTS
# ==============================================================================

from dispatch_core.models import QueueState
from dispatch_core.observability import get_logger
from dispatch_core.queue_state import QueueStateLogger, notify_observer
from tests.conftest import ManualClock


class RecordingLogger:
    def __init__(self) -> None:
        self.warnings: list[str] = []
        self.exceptions: list[str] = []

    def warning(self, message: str, **extra) -> None:
        self.warnings.append(message)

    def exception(self, message: str, exc: BaseException, **extra) -> None:
        self.exceptions.append(message)


class TestQueueStateLogger:
    def test_pause_message(self, clock: ManualClock):
        log = RecordingLogger()
        observer = QueueStateLogger(clock=clock, logger=log)

        observer.on_queue_state_change(
            QueueState.PAUSED_CAPACITY, {"model_id": "m1", "kind": "Training"},
        )

        assert log.warnings == ["Training is paused for m1. Reason: out of capacity"]

    def test_server_reason_wins(self, clock: ManualClock):
        log = RecordingLogger()
        observer = QueueStateLogger(clock=clock, logger=log)

        observer.on_queue_state_change(
            QueueState.PAUSED_RATE_LIMIT,
            {"session_id": "samp-1", "kind": "Sampling", "queue_state_reason": "maintenance"},
        )

        assert log.warnings == ["Sampling is paused for samp-1. Reason: maintenance"]

    def test_debounced_per_identifier(self, clock: ManualClock):
        log = RecordingLogger()
        observer = QueueStateLogger(clock=clock, logger=log)
        meta = {"model_id": "m1"}

        observer.on_queue_state_change(QueueState.PAUSED_CAPACITY, meta)
        clock.advance(30.0)
        observer.on_queue_state_change(QueueState.PAUSED_RATE_LIMIT, meta)
        observer.on_queue_state_change(QueueState.PAUSED_CAPACITY, {"model_id": "m2"})
        clock.advance(31.0)
        observer.on_queue_state_change(QueueState.PAUSED_CAPACITY, meta)

        assert len(log.warnings) == 3
        assert "m2" in log.warnings[1]

    def test_active_not_logged(self, clock: ManualClock):
        log = RecordingLogger()
        QueueStateLogger(clock=clock, logger=log).on_queue_state_change(
            QueueState.ACTIVE, {"model_id": "m1"},
        )
        assert log.warnings == []


def test_observer_exception_is_logged():
    class Broken:
        def on_queue_state_change(self, queue_state, metadata):
            raise RuntimeError("observer bug")

    log = RecordingLogger()
    notify_observer(Broken(), QueueState.PAUSED_CAPACITY, {}, log)

    assert log.exceptions == ["queue state observer raised"]


def test_missing_observer_is_noop():
    notify_observer(None, QueueState.PAUSED_CAPACITY, {}, get_logger("tests"))
