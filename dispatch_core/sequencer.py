"""
Sequencer Module: Per-Session Ordered Transmission
===================================================

Mutating operations on one session must reach the service in program
order, tagged with strictly increasing sequence ids. The Sequencer holds
an asyncio.Lock for the *send* phase of one logical call only:

    caller A: [lock ── send c0 (seq 0) ── send c1 (seq 1) ── unlock] → poll...
    caller B:                                                  [lock ── send (seq 2) ── unlock] → poll...

Polling happens outside the lock, so many operations can be in flight on
the server while transmission stays strictly ordered.

Invariants:
    - Every send attempt consumes exactly one sequence id, success or not
    - Reserved ids are strictly increasing with no reuse
    - A failed send ends that call's burst; the session stays usable
    - An invalidated session rejects all further submissions
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

from .errors import (
    DispatchError,
    Err,
    Ok,
    Result,
    SequencerInvariantError,
    internal_error,
    session_invalidated_error,
)
from .observability import get_logger


logger = get_logger(__name__)

C = TypeVar("C")
R = TypeVar("R")


@dataclass(slots=True)
class SequencedSession:
    """
    Per-session ordering state.

    Attributes:
        session_id: Server-side session or model id
        next_seq_id: Next id to hand out (starts at 0)
        invalidated: True once the session may no longer send
        invalidation_reason: Why the session was invalidated; None while
            it is still usable
        high_water: Last id handed out (-1 before the first)
    """
    session_id: str
    next_seq_id: int = 0
    invalidated: bool = False
    invalidation_reason: str | None = None
    high_water: int = -1


@dataclass(slots=True, frozen=True)
class SentChunk(Generic[C, R]):
    """One transmitted chunk with the id it carried and the send acknowledgement."""
    seq_id: int
    chunk: C
    response: R


class Sequencer:
    """
    Serialises send bursts for one session.

    Usage:
        sequencer = Sequencer(model_id)
        sent = await sequencer.submit_ordered(chunks, send_chunk)
        match sent:
            case Ok(items): ...   # items[i].seq_id strictly increasing
            case Err(error): ...
    """

    def __init__(self, session_id: str, *, start_seq_id: int = 0) -> None:
        assert start_seq_id >= 0, "start_seq_id must be >= 0"
        self._session = SequencedSession(
            session_id,
            next_seq_id=start_seq_id,
            high_water=start_seq_id - 1,
        )
        self._lock = asyncio.Lock()

    @property
    def session(self) -> SequencedSession:
        return self._session

    @property
    def next_seq_id(self) -> int:
        return self._session.next_seq_id

    def invalidate(self, reason: str) -> None:
        """Mark the session unusable; later submissions fail fast."""
        if not self._session.invalidated:
            logger.warning(
                "session invalidated",
                session_id=self._session.session_id,
                reason=reason,
            )
        self._session.invalidated = True
        self._session.invalidation_reason = reason

    def _reserve(self) -> int:
        session = self._session
        seq_id = session.next_seq_id
        if seq_id <= session.high_water:
            raise SequencerInvariantError(
                f"seq_id {seq_id} not above high-water mark {session.high_water} "
                f"for session {session.session_id}"
            )
        session.next_seq_id = seq_id + 1
        session.high_water = seq_id
        return seq_id

    async def submit_ordered(
        self,
        chunks: Sequence[C],
        send: Callable[[C, int], Awaitable[Result[R, DispatchError]]],
    ) -> Result[list[SentChunk[C, R]], DispatchError]:
        """
        Send `chunks` in order, each with its own sequence id.

        The lock is held for the whole burst so chunks of one call are
        never interleaved with another call's chunks. The first failed
        send stops the burst and is returned; its id stays consumed.
        An exception from `send` invalidates the session.
        """
        async with self._lock:
            session = self._session
            if session.invalidated:
                return Err(session_invalidated_error(
                    session.session_id, session.invalidation_reason,
                ))

            sent: list[SentChunk[C, R]] = []
            for index, chunk in enumerate(chunks):
                seq_id = self._reserve()
                try:
                    result = await send(chunk, seq_id)
                except asyncio.CancelledError:
                    # Transmission state unknown: the id may or may not
                    # have reached the server.
                    self.invalidate(f"send cancelled at seq_id {seq_id}")
                    raise
                except Exception as exc:
                    self.invalidate(f"send crashed at seq_id {seq_id}: {exc}")
                    logger.exception(
                        "sequenced send crashed",
                        exc,
                        session_id=session.session_id,
                        seq_id=seq_id,
                    )
                    return Err(internal_error(f"Send crashed: {exc}", exc=exc))

                match result:
                    case Ok(response):
                        sent.append(SentChunk(seq_id, chunk, response))
                    case Err(error):
                        logger.warning(
                            "sequenced send failed",
                            session_id=session.session_id,
                            seq_id=seq_id,
                            chunk_index=index,
                            chunks=len(chunks),
                            error=str(error),
                        )
                        return Err(error)
            return Ok(sent)

    async def submit(
        self,
        payload: C,
        send: Callable[[C, int], Awaitable[Result[R, DispatchError]]],
    ) -> Result[SentChunk[C, R], DispatchError]:
        """Single-request form of submit_ordered."""
        result = await self.submit_ordered([payload], send)
        return result.map(lambda sent: sent[0])

