"""
Queue-state observation.

The poller reports server queue transitions (active ↔ paused) to an
observer. The default observer turns pauses into a human-readable
warning, debounced so that a long pause does not flood the log.
"""

from __future__ import annotations

import time
from typing import Any, Mapping, Protocol

from .clock import Clock
from .models import QueueState
from .observability import StructuredLogger, get_logger


DEFAULT_DEBOUNCE_SECONDS = 60.0


class QueueStateObserver(Protocol):
    def on_queue_state_change(
        self,
        queue_state: QueueState,
        metadata: Mapping[str, Any],
    ) -> None: ...


def _pause_reason(queue_state: QueueState, reason: str | None) -> str:
    if reason:
        return reason
    match queue_state:
        case QueueState.PAUSED_RATE_LIMIT:
            return "concurrent request rate limit hit"
        case QueueState.PAUSED_CAPACITY:
            return "out of capacity"
        case _:
            return "unknown"


class QueueStateLogger:
    """
    Logs queue pauses at most once per `debounce` seconds per identifier.

    metadata keys read: "model_id" / "session_id" (identifier),
    "queue_state_reason" (server-provided reason), "kind" ("Training"
    or "Sampling", used in the message).
    """

    def __init__(
        self,
        *,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        clock: Clock = time.monotonic,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._debounce = debounce
        self._clock = clock
        self._logger = logger or get_logger(__name__)
        self._last_logged: dict[str, float] = {}

    def on_queue_state_change(
        self,
        queue_state: QueueState,
        metadata: Mapping[str, Any],
    ) -> None:
        if queue_state is QueueState.ACTIVE:
            return

        identifier = str(
            metadata.get("model_id") or metadata.get("session_id") or "unknown"
        )
        now = self._clock()
        last = self._last_logged.get(identifier)
        if last is not None and now - last < self._debounce:
            return
        self._last_logged[identifier] = now

        kind = metadata.get("kind", "Training")
        reason = _pause_reason(queue_state, metadata.get("queue_state_reason"))
        self._logger.warning(
            f"{kind} is paused for {identifier}. Reason: {reason}",
            queue_state=queue_state.value,
        )


def notify_observer(
    observer: QueueStateObserver | None,
    queue_state: QueueState,
    metadata: Mapping[str, Any],
    logger: StructuredLogger,
) -> None:
    """Deliver a transition; observer exceptions are logged and dropped."""
    if observer is None:
        return
    try:
        observer.on_queue_state_change(queue_state, metadata)
    except Exception as exc:
        logger.exception("queue state observer raised", exc, queue_state=queue_state.value)
