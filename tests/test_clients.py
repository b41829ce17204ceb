# ==============================================================================
# CLIENT TESTS
# ==============================================================================
# Service, training and sampling dispatchers over a scripted transport
# ==============================================================================

import asyncio
import dataclasses

import pytest

from dispatch_core.clients import (
    ASAMPLE_PATH,
    CREATE_MODEL_PATH,
    CREATE_SAMPLING_SESSION_PATH,
    CREATE_SESSION_PATH,
    FORWARD_BACKWARD_PATH,
    FORWARD_PATH,
    OPTIM_STEP_PATH,
    SAVE_WEIGHTS_FOR_SAMPLER_PATH,
    SESSION_HEARTBEAT_PATH,
    ServiceClient,
    TrainingClient,
)
from dispatch_core.config import (
    ChunkingConfig,
    DispatchCoreConfig,
    HeartbeatConfig,
    TrafficClass,
)
from dispatch_core.errors import Err, ErrorCode, Ok, status_error
from dispatch_core.future import RETRIEVE_PATH, Poller
from dispatch_core.rate_limiter import RateLimiterRegistry
from tests.conftest import (
    FakeTransport,
    ManualClock,
    RecordingObserver,
    RecordingSleep,
)


def completed(result):
    return {"status": "completed", "result": result}


def make_service(
    config: DispatchCoreConfig,
    transport: FakeTransport,
    clock: ManualClock,
    sleep: RecordingSleep,
    registry: RateLimiterRegistry | None = None,
) -> ServiceClient:
    return ServiceClient(
        config,
        registry=registry or RateLimiterRegistry(clock=clock, sleep=sleep),
        transport=transport,
        observer=RecordingObserver(),
        clock=clock,
        sleep=sleep,
    )


# ==============================================================================
# SERVICE CLIENT
# ==============================================================================

class TestServiceClient:
    @pytest.mark.asyncio
    async def test_session_created_once(self, core_config, transport, clock, sleep):
        transport.script(CREATE_SESSION_PATH, {"session_id": "s1"})
        service = make_service(core_config, transport, clock, sleep)

        first, second = await asyncio.gather(service.create_session(), service.create_session())

        assert first == Ok("s1") and second == Ok("s1")
        assert len(transport.calls_to(CREATE_SESSION_PATH)) == 1
        assert transport.calls[0].traffic_class is TrafficClass.CONTROL
        await service.close()

    @pytest.mark.asyncio
    async def test_session_response_without_id(self, core_config, transport, clock, sleep):
        transport.script(CREATE_SESSION_PATH, {})
        service = make_service(core_config, transport, clock, sleep)

        result = await service.create_session()

        assert result.error.code is ErrorCode.INVALID_RESPONSE
        await service.close()

    @pytest.mark.asyncio
    async def test_create_model_polled_to_model_id(self, core_config, transport, clock, sleep):
        transport.script(CREATE_SESSION_PATH, {"session_id": "s1"})
        transport.script(CREATE_MODEL_PATH, {"request_id": "req-model"})
        transport.script(RETRIEVE_PATH, completed({"model_id": "m2"}))
        service = make_service(core_config, transport, clock, sleep)

        result = await service.create_training_client("base-8b", lora_config={"rank": 8})

        assert isinstance(result, Ok)
        assert result.value.model_id == "m2"
        body = transport.calls_to(CREATE_MODEL_PATH)[0].body
        assert body["session_id"] == "s1"
        assert body["model_seq_id"] == 0
        assert body["lora_config"] == {"rank": 8}
        await service.close()

    @pytest.mark.asyncio
    async def test_create_model_immediate_ack(self, core_config, transport, clock, sleep):
        transport.script(CREATE_SESSION_PATH, {"session_id": "s1"})
        transport.script(CREATE_MODEL_PATH, {"model_id": "m1"})
        service = make_service(core_config, transport, clock, sleep)

        result = await service.create_training_client("base-8b")

        assert result.value.model_id == "m1"
        assert transport.calls_to(RETRIEVE_PATH) == []
        await service.close()

    @pytest.mark.asyncio
    async def test_training_client_requires_model(self, core_config, transport, clock, sleep):
        service = make_service(core_config, transport, clock, sleep)

        result = await service.create_training_client()

        assert result.error.code is ErrorCode.VALIDATION
        assert transport.calls == []
        await service.close()

    @pytest.mark.asyncio
    async def test_heartbeat_stops_on_user_error(self, core_config, transport, clock, sleep):
        config = dataclasses.replace(core_config, heartbeat=HeartbeatConfig(interval=5.0))
        transport.script(CREATE_SESSION_PATH, {"session_id": "s1"})
        transport.script(
            SESSION_HEARTBEAT_PATH,
            {},
            status_error("unknown session", status_code=404),
        )
        service = make_service(config, transport, clock, sleep)

        await service.create_session()
        for _ in range(20):
            await asyncio.sleep(0)

        beats = transport.calls_to(SESSION_HEARTBEAT_PATH)
        assert len(beats) == 2
        assert all(b.traffic_class is TrafficClass.CONTROL for b in beats)
        assert beats[0].body == {"session_id": "s1"}
        assert sleep.delays[:2] == [5.0, 5.0]
        await service.close()

    @pytest.mark.asyncio
    async def test_close_closes_transport(self, core_config, transport, clock, sleep):
        async with make_service(core_config, transport, clock, sleep):
            pass
        assert transport.closed is True


# ==============================================================================
# TRAINING CLIENT
# ==============================================================================

class TestTrainingClient:
    """Ordered sends, chunking and combining."""

    @staticmethod
    def fb_result(outputs: int, loss: float) -> dict:
        return {
            "loss_fn_outputs": [{"logprobs": [0.0]} for _ in range(outputs)],
            "loss_fn_output_type": "scalar",
            "metrics": {"loss": loss, "tokens:sum": outputs * 10},
        }

    @pytest.mark.asyncio
    async def test_chunked_forward_backward(self, core_config, transport, clock, sleep):
        config = dataclasses.replace(core_config, chunking=ChunkingConfig(max_items=2))
        results = {
            "fb-0": self.fb_result(2, 1.0),
            "fb-1": self.fb_result(2, 2.0),
            "fb-2": self.fb_result(1, 4.0),
            "opt-3": {"step": 1},
        }
        transport.route(
            FORWARD_BACKWARD_PATH,
            lambda call: {"request_id": f"fb-{call.body['seq_id']}"},
        )
        transport.route(OPTIM_STEP_PATH, lambda call: {"request_id": f"opt-{call.body['seq_id']}"})
        transport.route(RETRIEVE_PATH, lambda call: completed(results[call.body["request_id"]]))
        service = make_service(config, transport, clock, sleep)
        training = (await service.create_training_client(model_id="m1")).unwrap()

        data = [{"model_input": {"chunks": [{"tokens": [i]}]}} for i in range(5)]
        sent = await training.forward_backward(data, "cross_entropy")
        assert isinstance(sent, Ok)
        combined = await sent.value

        assert isinstance(combined, Ok)
        assert combined.value["metrics"]["loss"] == pytest.approx(2.0)
        assert combined.value["metrics"]["tokens:sum"] == 50
        assert len(combined.value["loss_fn_outputs"]) == 5

        calls = transport.calls_to(FORWARD_BACKWARD_PATH)
        assert [c.body["seq_id"] for c in calls] == [0, 1, 2]
        assert [len(c.body["forward_backward_input"]["data"]) for c in calls] == [2, 2, 1]
        assert all(c.traffic_class is TrafficClass.BULK_ORDERED for c in calls)
        assert calls[0].body["forward_backward_input"]["loss_fn"] == "cross_entropy"

        step = await training.optim_step({"learning_rate": 1e-4})
        assert await step.value == Ok({"step": 1})
        assert transport.calls_to(OPTIM_STEP_PATH)[0].body["seq_id"] == 3
        await service.close()

    @pytest.mark.asyncio
    async def test_single_chunk_returns_child_future(self, core_config, transport, clock, sleep):
        transport.script(FORWARD_PATH, {"request_id": "f-0"})
        transport.script(RETRIEVE_PATH, completed(self.fb_result(1, 0.5)))
        service = make_service(core_config, transport, clock, sleep)
        training = TrainingClient(service, "m1")

        sent = await training.forward([{"model_input": {"chunks": []}}], "cross_entropy")

        future = sent.value
        assert future.request_id == "f-0"
        result = await future
        assert result.value["metrics"]["loss"] == 0.5
        body = transport.calls_to(FORWARD_PATH)[0].body
        assert body["forward_input"]["loss_fn"] == "cross_entropy"
        assert "forward_backward_input" not in body
        await service.close()

    @pytest.mark.asyncio
    async def test_handles_to_same_model_share_sequence(
        self, core_config, transport, clock, sleep,
    ):
        transport.route(OPTIM_STEP_PATH, lambda call: {"step": call.body["seq_id"]})
        service = make_service(core_config, transport, clock, sleep)
        first = (await service.create_training_client(model_id="m1")).unwrap()
        second = (await service.create_training_client(model_id="m1")).unwrap()
        other = (await service.create_training_client(model_id="m2")).unwrap()

        await first.optim_step({"learning_rate": 1e-4})
        await second.optim_step({"learning_rate": 1e-4})
        await other.optim_step({"learning_rate": 1e-4})

        bodies = [c.body for c in transport.calls_to(OPTIM_STEP_PATH)]
        assert [(b["model_id"], b["seq_id"]) for b in bodies] == [("m1", 0), ("m1", 1), ("m2", 0)]
        assert first.sequencer is second.sequencer
        assert other.sequencer is not first.sequencer
        await service.close()

    @pytest.mark.asyncio
    async def test_send_failure_returned_as_err(self, core_config, transport, clock, sleep):
        transport.script(FORWARD_PATH, status_error("bad loss_fn", status_code=400))
        service = make_service(core_config, transport, clock, sleep)
        training = TrainingClient(service, "m1")

        sent = await training.forward([{"model_input": {"chunks": []}}], "nope")

        assert isinstance(sent, Err)
        assert sent.error.status_code == 400
        assert training.sequencer.session.invalidated is False
        await service.close()

    @pytest.mark.asyncio
    async def test_empty_data_rejected(self, core_config, transport, clock, sleep):
        service = make_service(core_config, transport, clock, sleep)
        training = TrainingClient(service, "m1")

        sent = await training.forward_backward([], "cross_entropy")

        assert sent.error.code is ErrorCode.VALIDATION
        assert training.sequencer.next_seq_id == 0
        await service.close()

    @pytest.mark.asyncio
    async def test_ephemeral_sampler_export(self, core_config, transport, clock, sleep):
        transport.script(SAVE_WEIGHTS_FOR_SAMPLER_PATH, {"path": "tmp://w"}, {"path": "tmp://w2"})
        service = make_service(core_config, transport, clock, sleep)
        training = TrainingClient(service, "m1")

        first = await training.save_weights_for_sampler()
        named = await training.save_weights_for_sampler("final")

        assert await first.value == Ok({"path": "tmp://w"})
        assert await named.value == Ok({"path": "tmp://w2"})
        bodies = [c.body for c in transport.calls_to(SAVE_WEIGHTS_FOR_SAMPLER_PATH)]
        assert bodies[0]["sampling_session_seq_id"] == 0
        assert bodies[0]["path"] is None
        assert bodies[1]["sampling_session_seq_id"] is None
        assert [b["seq_id"] for b in bodies] == [0, 1]
        await service.close()


# ==============================================================================
# SAMPLING CLIENT
# ==============================================================================

class TestSamplingClient:
    """Concurrent sends honouring shared backoff."""

    @staticmethod
    async def open_sampler(service: ServiceClient, transport: FakeTransport):
        transport.script(CREATE_SESSION_PATH, {"session_id": "s1"})
        transport.script(CREATE_SAMPLING_SESSION_PATH, {"sampling_session_id": "samp-1"})
        return (await service.create_sampling_client(base_model="base-8b")).unwrap()

    @pytest.mark.asyncio
    async def test_sample_body_and_immediate_result(self, core_config, transport, clock, sleep):
        transport.script(ASAMPLE_PATH, {"sequences": [{"tokens": [1, 2]}]})
        service = make_service(core_config, transport, clock, sleep)
        sampler = await self.open_sampler(service, transport)

        sent = await sampler.sample({"chunks": [{"tokens": [5]}]}, {"max_tokens": 4}, num_samples=2)

        assert await sent.value == Ok({"sequences": [{"tokens": [1, 2]}]})
        call = transport.calls_to(ASAMPLE_PATH)[0]
        assert call.traffic_class is TrafficClass.BULK_CONCURRENT
        assert call.max_retries == 0
        assert call.body["sampling_session_id"] == "samp-1"
        assert call.body["seq_id"] == 0
        assert call.body["num_samples"] == 2
        await service.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pause", [
        {"type": "try_again", "queue_state": "paused_capacity", "retry_after_ms": 3000},
        {"status": "try_again", "queue_state": "paused_rate_limit", "retry_after_ms": 3000},
    ])
    async def test_waits_out_pause_reported_by_training_poll(
        self, core_config, transport, clock, sleep, pause,
    ):
        registry = RateLimiterRegistry(clock=clock, sleep=sleep)
        limiter = registry.for_key("https://api.example.test:443", "test-key")

        # A training-side poll sees the queue paused with a 3s hint.
        training_transport = FakeTransport()
        training_transport.script(
            RETRIEVE_PATH,
            pause,
            completed({"ok": True}),
        )
        training_poller = Poller(
            training_transport,
            rate_limiter=limiter,
            clock=clock,
            sleep=RecordingSleep(),
        )
        assert await training_poller.poll("train-1") == Ok({"ok": True})
        deadline = limiter.deadline
        assert limiter.remaining() == pytest.approx(3.0)

        sent_at: list[float] = []

        def on_sample(call):
            sent_at.append(clock.now)
            return {"sequences": []}

        transport.route(ASAMPLE_PATH, on_sample)
        service = make_service(core_config, transport, clock, sleep, registry=registry)
        assert service.rate_limiter is limiter
        sampler = await self.open_sampler(service, transport)

        sent = await sampler.sample({"chunks": []}, {})

        assert isinstance(sent, Ok)
        assert pytest.approx(3.0) in sleep.delays
        assert sent_at[0] >= deadline
        await service.close()

    @pytest.mark.asyncio
    async def test_429_records_backoff_for_everyone(self, core_config, transport, clock, sleep):
        transport.script(
            ASAMPLE_PATH,
            status_error("slow down", status_code=429, retry_after_seconds=2.0),
            {"sequences": []},
        )
        service = make_service(core_config, transport, clock, sleep)
        sampler = await self.open_sampler(service, transport)

        first = await sampler.sample({"chunks": []}, {})

        assert first.error.code is ErrorCode.RATE_LIMITED
        assert service.rate_limiter.remaining() == pytest.approx(2.0)

        second = await sampler.sample({"chunks": []}, {})

        assert isinstance(second, Ok)
        assert sleep.delays == [pytest.approx(2.0)]
        seq_ids = [c.body["seq_id"] for c in transport.calls_to(ASAMPLE_PATH)]
        assert seq_ids == [0, 1]
        await service.close()

    @pytest.mark.asyncio
    async def test_invalid_num_samples(self, core_config, transport, clock, sleep):
        service = make_service(core_config, transport, clock, sleep)
        sampler = await self.open_sampler(service, transport)

        result = await sampler.sample({"chunks": []}, {}, num_samples=0)

        assert result.error.code is ErrorCode.VALIDATION
        assert transport.calls_to(ASAMPLE_PATH) == []
        await service.close()
