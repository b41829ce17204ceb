"""
Clients Module: Dispatcher Facades
===================================

ServiceClient
    Owns the shared machinery for one endpoint and credential: transport,
    RateLimiter (via the registry), background executor, poller and
    combiner. Creates sessions, keeps them alive, and hands out dispatchers.

TrainingClient
    Ordered dispatcher for one model. Every mutating call goes through the
    model's Sequencer on the BULK_ORDERED class; results are polled in the
    background and chunked calls are merged by the Combiner.

SamplingClient
    Concurrent dispatcher. Waits out shared backoff, takes a per-client
    sequence id, passes admission control and sends on BULK_CONCURRENT
    without transport retries. A 429 records backoff for every dispatcher
    sharing the RateLimiter.

Every dispatcher call returns Result[RemoteFuture, DispatchError]: Err when
the send itself failed, otherwise a future that resolves to the result.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from functools import partial
from typing import Any, Awaitable, Callable, Mapping, Sequence

import httpx

from .chunking import chunk_items
from .clock import Clock
from .combiner import Combiner, Rules, combine_forward_backward_results
from .config import DispatchCoreConfig, TrafficClass, get_config
from .dispatch import SamplingDispatch, estimate_request_bytes
from .engine import BackgroundTaskExecutor
from .errors import (
    DispatchError,
    Err,
    Ok,
    Result,
    invalid_response_error,
    validation_error,
)
from .future import Poller, RemoteFuture
from .observability import configure_logging, get_logger, set_session_id
from .queue_state import QueueStateLogger, QueueStateObserver
from .rate_limiter import RateLimiter, RateLimiterRegistry
from .sequencer import Sequencer
from .transport import HTTPTransport, Transport


logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

# =============================================================================
# ENDPOINTS
# =============================================================================
CREATE_SESSION_PATH = "/api/v1/create_session"
SESSION_HEARTBEAT_PATH = "/api/v1/session_heartbeat"
CREATE_MODEL_PATH = "/api/v1/create_model"
CREATE_SAMPLING_SESSION_PATH = "/api/v1/create_sampling_session"
FORWARD_BACKWARD_PATH = "/api/v1/forward_backward"
FORWARD_PATH = "/api/v1/forward"
OPTIM_STEP_PATH = "/api/v1/optim_step"
SAVE_WEIGHTS_PATH = "/api/v1/save_weights"
LOAD_WEIGHTS_PATH = "/api/v1/load_weights"
SAVE_WEIGHTS_FOR_SAMPLER_PATH = "/api/v1/save_weights_for_sampler"
ASAMPLE_PATH = "/api/v1/asample"


def _require_str(payload: Mapping[str, Any], key: str, path: str) -> Result[str, DispatchError]:
    value = payload.get(key)
    if isinstance(value, str) and value:
        return Ok(value)
    return Err(invalid_response_error(f"{path} response missing {key!r}"))


class ServiceClient:
    """
    Entry point holding everything shared by one endpoint and credential.

    Usage:
        async with ServiceClient(config) as service:
            training = (await service.create_training_client("base-model")).unwrap()
            match await training.forward_backward(data, "cross_entropy"):
                case Ok(future):
                    result = await future
                case Err(error):
                    ...
    """

    def __init__(
        self,
        config: DispatchCoreConfig | None = None,
        *,
        registry: RateLimiterRegistry | None = None,
        transport: Transport | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        observer: QueueStateObserver | None = None,
        clock: Clock = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._config = config or get_config()
        configure_logging(self._config.log_level)
        client_config = self._config.client

        self._registry = registry or RateLimiterRegistry(clock=clock, sleep=sleep)
        self._rate_limiter = self._registry.for_key(
            client_config.base_url, client_config.api_key,
        )
        self._transport: Transport = transport or HTTPTransport(
            client_config,
            self._config.transport,
            self._config.retry,
            rate_limiter=self._rate_limiter,
            sleep=sleep,
            http_transport=http_transport,
        )
        self._executor = BackgroundTaskExecutor(self._config.background_tasks)
        self._poller = Poller(
            self._transport,
            config=self._config.polling,
            rate_limiter=self._rate_limiter,
            observer=observer or QueueStateLogger(clock=clock),
            executor=self._executor,
            category_scheme=client_config.category_scheme,
            clock=clock,
            sleep=sleep,
        )
        self._combiner = Combiner(self._executor)
        self._sleep = sleep

        self._session_id: str | None = None
        self._session_lock = asyncio.Lock()
        self._model_seq_ids = itertools.count()
        self._sampling_seq_ids = itertools.count()
        self._sequencers: dict[str, Sequencer] = {}
        self._heartbeat_task: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Shared machinery
    # -------------------------------------------------------------------------

    @property
    def config(self) -> DispatchCoreConfig:
        return self._config

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    def sequencer_for(self, model_id: str) -> Sequencer:
        """The one Sequencer for `model_id`, shared by every handle to it."""
        sequencer = self._sequencers.get(model_id)
        if sequencer is not None:
            return sequencer
        return self._sequencers.setdefault(model_id, Sequencer(model_id))

    @property
    def registry(self) -> RateLimiterRegistry:
        return self._registry

    @property
    def poller(self) -> Poller:
        return self._poller

    @property
    def combiner(self) -> Combiner:
        return self._combiner

    @property
    def executor(self) -> BackgroundTaskExecutor:
        return self._executor

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def future_from_ack(
        self,
        ack: Mapping[str, Any],
        *,
        request_type: str,
        parse: Callable[[Any], Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> RemoteFuture[Any]:
        """
        Future for a send acknowledgement.

        An acknowledgement carrying a request id is polled; one without is
        already the result and resolves immediately.
        """
        request_id = ack.get("request_id")
        if isinstance(request_id, str) and request_id:
            return self._poller.poll(
                request_id,
                request_type=request_type,
                parse=parse,
                metadata=metadata,
            )

        async def _immediate() -> Result[Any, DispatchError]:
            return Ok(parse(ack) if parse is not None else dict(ack))

        task = self._executor.spawn(
            _immediate(), name=f"immediate:{request_type}", describe=f"Parsing {request_type}",
        )
        return RemoteFuture(task)

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def create_session(
        self,
        *,
        tags: Sequence[str] | None = None,
    ) -> Result[str, DispatchError]:
        """Create (once) the server session that owns models and samplers."""
        async with self._session_lock:
            if self._session_id is not None:
                return Ok(self._session_id)

            result = await self._transport.post(
                CREATE_SESSION_PATH,
                {
                    "tags": list(tags or ()),
                    "user_metadata": self._config.client.user_metadata,
                },
                traffic_class=TrafficClass.CONTROL,
            )
            match result.and_then(
                lambda payload: _require_str(payload, "session_id", CREATE_SESSION_PATH)
            ):
                case Ok(session_id):
                    self._session_id = session_id
                    set_session_id(session_id)
                    logger.info("session created", session_id=session_id)
                    if self._config.heartbeat.enabled:
                        self._heartbeat_task = asyncio.create_task(
                            self._heartbeat_loop(session_id),
                            name=f"heartbeat:{session_id}",
                        )
                    return Ok(session_id)
                case Err(error):
                    return Err(error)

    async def _heartbeat_loop(self, session_id: str) -> None:
        interval = self._config.heartbeat.interval
        while True:
            await self._sleep(interval)
            result = await self._transport.post(
                SESSION_HEARTBEAT_PATH,
                {"session_id": session_id},
                traffic_class=TrafficClass.CONTROL,
            )
            if isinstance(result, Err):
                logger.warning(
                    "session heartbeat failed",
                    session_id=session_id,
                    error=str(result.error),
                )
                if result.error.is_user_error:
                    return

    # -------------------------------------------------------------------------
    # Dispatcher factories
    # -------------------------------------------------------------------------

    async def create_training_client(
        self,
        base_model: str | None = None,
        *,
        model_id: str | None = None,
        lora_config: Mapping[str, Any] | None = None,
        user_metadata: Mapping[str, str] | None = None,
    ) -> Result[TrainingClient, DispatchError]:
        """
        Attach to `model_id`, or create a new model from `base_model`.
        """
        if model_id is not None:
            return Ok(TrainingClient(self, model_id))
        if not base_model:
            return Err(validation_error(
                "base_model is required when model_id is not given",
                field_name="base_model",
            ))

        session = await self.create_session()
        if isinstance(session, Err):
            return session

        body = {
            "session_id": session.value,
            "model_seq_id": next(self._model_seq_ids),
            "base_model": base_model,
            "user_metadata": dict(user_metadata or self._config.client.user_metadata or {}),
            "lora_config": dict(lora_config or {}),
        }
        result = await self._transport.post(
            CREATE_MODEL_PATH, body, traffic_class=TrafficClass.CONTROL,
        )
        if isinstance(result, Err):
            return result

        future = self.future_from_ack(
            result.value,
            request_type="create_model",
            parse=lambda payload: payload["model_id"],
            metadata={"kind": "Training", "session_id": session.value},
        )
        created = await future
        return created.map(lambda new_model_id: TrainingClient(self, new_model_id))

    async def create_sampling_client(
        self,
        *,
        base_model: str | None = None,
        model_path: str | None = None,
        dispatch: SamplingDispatch | None = None,
    ) -> Result[SamplingClient, DispatchError]:
        """Open a sampling session for a base model or saved weights."""
        if not base_model and not model_path:
            return Err(validation_error(
                "either base_model or model_path is required",
                field_name="base_model",
            ))

        session = await self.create_session()
        if isinstance(session, Err):
            return session

        result = await self._transport.post(
            CREATE_SAMPLING_SESSION_PATH,
            {
                "session_id": session.value,
                "sampling_session_seq_id": next(self._sampling_seq_ids),
                "base_model": base_model,
                "model_path": model_path,
            },
            traffic_class=TrafficClass.CONTROL,
        )
        return result.and_then(
            lambda payload: _require_str(
                payload, "sampling_session_id", CREATE_SAMPLING_SESSION_PATH,
            )
        ).map(lambda sampling_session_id: SamplingClient(
            self, sampling_session_id, dispatch=dispatch,
        ))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Stop heartbeats, drain background polls and close connections."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None
        await self._executor.stop()
        await self._transport.close()

    async def __aenter__(self) -> ServiceClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


class TrainingClient:
    """
    Ordered dispatcher for one model.

    All operations share the model's sequence counter, so the server
    applies them in call order even though their results are polled
    concurrently. The counter lives on the ServiceClient, so every
    handle it creates for the same model draws from one sequence.
    """

    def __init__(self, service: ServiceClient, model_id: str) -> None:
        self._service = service
        self._model_id = model_id
        self._sequencer = service.sequencer_for(model_id)
        self._sampler_seq_ids = itertools.count()
        self._metadata = {"model_id": model_id, "kind": "Training"}

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def sequencer(self) -> Sequencer:
        return self._sequencer

    async def forward_backward(
        self,
        data: Sequence[Mapping[str, Any]],
        loss_fn: str,
        *,
        loss_fn_config: Mapping[str, Any] | None = None,
        rules: Rules | None = None,
    ) -> Result[RemoteFuture[dict[str, Any]], DispatchError]:
        """Forward and backward pass over `data`, chunked and combined."""
        return await self._chunked(
            "forward_backward", FORWARD_BACKWARD_PATH, data, loss_fn, loss_fn_config, rules,
        )

    async def forward(
        self,
        data: Sequence[Mapping[str, Any]],
        loss_fn: str,
        *,
        loss_fn_config: Mapping[str, Any] | None = None,
        rules: Rules | None = None,
    ) -> Result[RemoteFuture[dict[str, Any]], DispatchError]:
        """Forward pass only."""
        return await self._chunked(
            "forward", FORWARD_PATH, data, loss_fn, loss_fn_config, rules,
        )

    async def optim_step(
        self,
        adam_params: Mapping[str, Any],
    ) -> Result[RemoteFuture[Any], DispatchError]:
        return await self._single(
            "optim_step",
            OPTIM_STEP_PATH,
            lambda seq_id: {
                "model_id": self._model_id,
                "seq_id": seq_id,
                "adam_params": dict(adam_params),
            },
        )

    async def save_state(self, name: str) -> Result[RemoteFuture[Any], DispatchError]:
        return await self._single(
            "save_weights",
            SAVE_WEIGHTS_PATH,
            lambda seq_id: {"model_id": self._model_id, "path": name, "seq_id": seq_id},
        )

    async def load_state(
        self,
        path: str,
        *,
        optimizer: bool = False,
    ) -> Result[RemoteFuture[Any], DispatchError]:
        """Load weights, and optimizer state when `optimizer` is set."""
        return await self._single(
            "load_weights",
            LOAD_WEIGHTS_PATH,
            lambda seq_id: {
                "model_id": self._model_id,
                "path": path,
                "seq_id": seq_id,
                "optimizer": optimizer,
            },
        )

    async def save_weights_for_sampler(
        self,
        name: str | None = None,
    ) -> Result[RemoteFuture[Any], DispatchError]:
        """
        Export weights for sampling. Without a name the server creates an
        ephemeral sampler identified by a client-side sampling sequence id.
        """
        sampling_session_seq_id = next(self._sampler_seq_ids) if name is None else None
        return await self._single(
            "save_weights_for_sampler",
            SAVE_WEIGHTS_FOR_SAMPLER_PATH,
            lambda seq_id: {
                "model_id": self._model_id,
                "path": name,
                "sampling_session_seq_id": sampling_session_seq_id,
                "seq_id": seq_id,
            },
        )

    async def _chunked(
        self,
        request_type: str,
        path: str,
        data: Sequence[Mapping[str, Any]],
        loss_fn: str,
        loss_fn_config: Mapping[str, Any] | None,
        rules: Rules | None,
    ) -> Result[RemoteFuture[dict[str, Any]], DispatchError]:
        if not data:
            return Err(validation_error("data must not be empty", field_name="data"))

        input_key = f"{request_type}_input"
        chunking = self._service.config.chunking
        chunks = chunk_items(
            data, max_items=chunking.max_items, max_units=chunking.max_units,
        )

        async def send(chunk: list[Mapping[str, Any]], seq_id: int) -> Result[dict[str, Any], DispatchError]:
            return await self._service.transport.post(
                path,
                {
                    "model_id": self._model_id,
                    "seq_id": seq_id,
                    input_key: {
                        "data": list(chunk),
                        "loss_fn": loss_fn,
                        "loss_fn_config": dict(loss_fn_config) if loss_fn_config else None,
                    },
                },
                traffic_class=TrafficClass.BULK_ORDERED,
            )

        sent = await self._sequencer.submit_ordered(chunks, send)
        if isinstance(sent, Err):
            return sent

        futures = [
            self._service.future_from_ack(
                item.response,
                request_type=request_type,
                metadata=self._metadata,
            )
            for item in sent.value
        ]
        logger.debug(
            "chunks submitted",
            model_id=self._model_id,
            request_type=request_type,
            chunks=len(futures),
            seq_ids=[item.seq_id for item in sent.value],
        )
        if len(futures) == 1:
            return Ok(futures[0])
        return Ok(self._service.combiner.combine(
            futures,
            reducer=partial(combine_forward_backward_results, rules=rules),
        ))

    async def _single(
        self,
        request_type: str,
        path: str,
        build_body: Callable[[int], dict[str, Any]],
    ) -> Result[RemoteFuture[Any], DispatchError]:
        async def send(_: None, seq_id: int) -> Result[dict[str, Any], DispatchError]:
            return await self._service.transport.post(
                path, build_body(seq_id), traffic_class=TrafficClass.BULK_ORDERED,
            )

        sent = await self._sequencer.submit(None, send)
        return sent.map(lambda item: self._service.future_from_ack(
            item.response,
            request_type=request_type,
            metadata=self._metadata,
        ))


class SamplingClient:
    """
    Concurrent dispatcher for one sampling session.

    Sends are not ordered; each takes the next per-client sequence id at
    the moment it is admitted.
    """

    def __init__(
        self,
        service: ServiceClient,
        sampling_session_id: str,
        *,
        dispatch: SamplingDispatch | None = None,
    ) -> None:
        self._service = service
        self._sampling_session_id = sampling_session_id
        self._seq_ids = itertools.count()
        self._dispatch = dispatch or SamplingDispatch(
            service.config.dispatch, rate_limiter=service.rate_limiter,
        )
        self._metadata = {"session_id": sampling_session_id, "kind": "Sampling"}

    @property
    def sampling_session_id(self) -> str:
        return self._sampling_session_id

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._service.rate_limiter

    async def sample(
        self,
        prompt: Mapping[str, Any],
        sampling_params: Mapping[str, Any],
        *,
        num_samples: int = 1,
        include_prompt_logprobs: bool = False,
        topk_prompt_logprobs: int = 0,
    ) -> Result[RemoteFuture[Any], DispatchError]:
        """
        Submit one sampling request.

        Waits while the shared RateLimiter reports a backoff. The backoff
        is left in place after a successful send so that other dispatchers
        keep honouring it until it expires.
        """
        if num_samples < 1:
            return Err(validation_error("num_samples must be >= 1", field_name="num_samples"))

        limiter = self._service.rate_limiter
        await limiter.wait_until_clear()

        seq_id = next(self._seq_ids)
        body = {
            "sampling_session_id": self._sampling_session_id,
            "seq_id": seq_id,
            "num_samples": num_samples,
            "prompt": dict(prompt),
            "sampling_params": dict(sampling_params),
            "prompt_logprobs": include_prompt_logprobs,
            "topk_prompt_logprobs": topk_prompt_logprobs,
        }

        async with self._dispatch.limit(estimate_request_bytes(body)):
            result = await self._service.transport.post(
                ASAMPLE_PATH,
                body,
                traffic_class=TrafficClass.BULK_CONCURRENT,
                max_retries=0,
            )

        match result:
            case Err(error):
                if error.status_code == 429:
                    limiter.record_backoff(error.retry_after_seconds)
                return Err(error)
            case Ok(ack):
                return Ok(self._service.future_from_ack(
                    ack,
                    request_type="sample",
                    metadata=self._metadata,
                ))
