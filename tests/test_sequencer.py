# ==============================================================================
# SEQUENCER TESTS
# ==============================================================================
# Per-session ordering, failure handling and invalidation
# ==============================================================================

import asyncio
import random

import pytest

from dispatch_core.errors import (
    Err,
    ErrorCode,
    Ok,
    SequencerInvariantError,
    status_error,
)
from dispatch_core.sequencer import Sequencer


class TestOrdering:
    """Sequence ids and transmission order under concurrency."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_get_gapless_increasing_ids(self):
        sequencer = Sequencer("model-1")
        transmitted: list[tuple[int, int, int]] = []
        rng = random.Random(7)

        async def run_caller(caller: int) -> None:
            chunks = list(range(rng.randint(1, 3)))

            async def send(chunk: int, seq_id: int):
                # Yield mid-burst so other callers get a chance to interleave.
                await asyncio.sleep(0)
                transmitted.append((seq_id, caller, chunk))
                return Ok({"request_id": f"{caller}-{chunk}"})

            result = await sequencer.submit_ordered(chunks, send)
            assert isinstance(result, Ok)
            assert [item.chunk for item in result.value] == chunks

        await asyncio.gather(*(run_caller(caller) for caller in range(20)))

        seq_ids = [seq_id for seq_id, _, _ in transmitted]
        assert seq_ids == list(range(len(transmitted)))
        assert sequencer.next_seq_id == len(transmitted)

        # Each caller's chunks are contiguous and in order.
        by_caller: dict[int, list[tuple[int, int]]] = {}
        for seq_id, caller, chunk in transmitted:
            by_caller.setdefault(caller, []).append((seq_id, chunk))
        for entries in by_caller.values():
            ids = [seq_id for seq_id, _ in entries]
            assert ids == list(range(ids[0], ids[0] + len(ids)))
            assert [chunk for _, chunk in entries] == list(range(len(entries)))

    @pytest.mark.asyncio
    async def test_start_seq_id(self):
        sequencer = Sequencer("model-1", start_seq_id=10)

        async def send(chunk, seq_id):
            return Ok(seq_id)

        result = await sequencer.submit("payload", send)

        assert result.value.seq_id == 10
        assert result.value.response == 10
        assert sequencer.next_seq_id == 11

    @pytest.mark.asyncio
    async def test_empty_burst_consumes_nothing(self):
        sequencer = Sequencer("model-1")

        async def send(chunk, seq_id):
            raise AssertionError("not called")

        assert await sequencer.submit_ordered([], send) == Ok([])
        assert sequencer.next_seq_id == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_send_consumes_id_and_stops_burst(self):
        sequencer = Sequencer("model-1")
        attempted: list[int] = []

        async def send(chunk, seq_id):
            attempted.append(seq_id)
            if chunk == "bad":
                return Err(status_error("rejected", status_code=400))
            return Ok(chunk)

        result = await sequencer.submit_ordered(["a", "bad", "c"], send)

        assert isinstance(result, Err)
        assert result.error.status_code == 400
        assert attempted == [0, 1]
        assert sequencer.next_seq_id == 2

    @pytest.mark.asyncio
    async def test_session_usable_after_failure(self):
        sequencer = Sequencer("model-1")

        async def failing(chunk, seq_id):
            return Err(status_error("busy", status_code=503))

        async def ok(chunk, seq_id):
            return Ok(seq_id)

        assert isinstance(await sequencer.submit("x", failing), Err)
        result = await sequencer.submit("y", ok)

        assert result.value.seq_id == 1

    @pytest.mark.asyncio
    async def test_crash_invalidates_session(self):
        sequencer = Sequencer("model-1")

        async def crash(chunk, seq_id):
            raise RuntimeError("serializer bug")

        async def ok(chunk, seq_id):
            return Ok(seq_id)

        crashed = await sequencer.submit("x", crash)
        assert isinstance(crashed, Err)
        assert crashed.error.code is ErrorCode.INTERNAL
        assert sequencer.session.invalidated is True

        rejected = await sequencer.submit("y", ok)
        assert isinstance(rejected, Err)
        assert rejected.error.code is ErrorCode.SESSION_INVALIDATED
        assert "serializer bug" in rejected.error.message

    @pytest.mark.asyncio
    async def test_explicit_invalidation(self):
        sequencer = Sequencer("model-1")
        sequencer.invalidate("owner restarted")

        async def ok(chunk, seq_id):
            return Ok(seq_id)

        result = await sequencer.submit("x", ok)
        assert result.error.code is ErrorCode.SESSION_INVALIDATED
        assert sequencer.next_seq_id == 0
        assert sequencer.session.invalidation_reason == "owner restarted"
        assert "owner restarted" in result.error.message

    def test_fresh_session_has_no_invalidation_reason(self):
        session = Sequencer("model-1").session
        assert session.invalidated is False
        assert session.invalidation_reason is None

    @pytest.mark.asyncio
    async def test_counter_regression_is_fatal(self):
        sequencer = Sequencer("model-1")

        async def ok(chunk, seq_id):
            return Ok(seq_id)

        await sequencer.submit("x", ok)
        sequencer.session.next_seq_id = 0

        with pytest.raises(SequencerInvariantError):
            await sequencer.submit("y", ok)
