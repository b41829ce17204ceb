"""
Combiner Module: Merging Chunked Results
=========================================

A logical call split into N chunks produces N futures. The Combiner
awaits them concurrently and merges their results into one:

    - list fields        → concatenated in chunk order
    - `metrics` mapping  → reduced per key (see below)
    - numeric fields     → reduced like a metric of the same name
    - anything else      → taken from the first chunk (warning if chunks disagree)

Metric Reduction:
    The rule for a key is looked up in order:
        1. explicit rule for the full key
        2. explicit rule for the suffix after the last ':'
        3. built-in suffix (sum, min, max, mean, slack, unique)
        4. weighted mean
    Keys come from the first chunk; a key missing from a later chunk is
    skipped for that chunk rather than counted as zero.

Failure:
    The first child to resolve with an error resolves the combined future
    with that error.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, Final, Mapping, Sequence

from .engine import BackgroundTaskExecutor, run_to_result
from .errors import DispatchError, Err, Ok, Result
from .future import RemoteFuture
from .observability import get_logger


logger = get_logger(__name__)


class Reduction(str, Enum):
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    MEAN = "mean"
    SLACK = "slack"
    UNIQUE = "unique"
    FIRST = "first"
    IDENTITY = "identity"


BUILTIN_SUFFIXES: Final[dict[str, Reduction]] = {
    "sum": Reduction.SUM,
    "min": Reduction.MIN,
    "max": Reduction.MAX,
    "mean": Reduction.MEAN,
    "slack": Reduction.SLACK,
    "unique": Reduction.UNIQUE,
}

Rules = Mapping[str, Reduction | str]


def resolve_reduction(name: str, rules: Rules | None = None) -> Reduction:
    """Reduction rule for metric `name`."""
    suffix = name.rsplit(":", 1)[1] if ":" in name else None
    if rules:
        if name in rules:
            return Reduction(rules[name])
        if suffix is not None and suffix in rules:
            return Reduction(rules[suffix])
    if suffix is not None and suffix in BUILTIN_SUFFIXES:
        return BUILTIN_SUFFIXES[suffix]
    return Reduction.MEAN


def _weighted_mean(values: Sequence[float], weights: Sequence[float]) -> float:
    total_weight = sum(weights)
    if total_weight == 0:
        return 0.0
    return sum(v * w for v, w in zip(values, weights)) / total_weight


def _reduce_values(
    name: str,
    reduction: Reduction,
    values: list[float],
    weights: list[float],
) -> dict[str, Any]:
    match reduction:
        case Reduction.SUM:
            return {name: sum(values)}
        case Reduction.MIN:
            return {name: min(values)}
        case Reduction.MAX:
            return {name: max(values)}
        case Reduction.MEAN:
            return {name: _weighted_mean(values, weights)}
        case Reduction.SLACK:
            return {name: max(values) - _weighted_mean(values, weights)}
        case Reduction.UNIQUE:
            out = {name: values[0]}
            for index, value in enumerate(values[1:], start=2):
                out[f"{name}_{index}"] = value
            return out
        case Reduction.FIRST:
            return {name: values[0]}
        case Reduction.IDENTITY:
            if any(v != values[0] for v in values[1:]):
                logger.warning("identity metric differs across chunks", metric=name)
            return {name: values[0]}


def reduce_metrics(
    metrics: Sequence[Mapping[str, float]],
    weights: Sequence[float] | None = None,
    rules: Rules | None = None,
) -> dict[str, Any]:
    """
    Merge per-chunk metric mappings.

    Args:
        metrics: One mapping per chunk, in chunk order
        weights: Per-chunk weight for mean and slack (default 1.0 each)
        rules: Explicit reduction rules by full name or suffix

    Raises:
        ValueError: weights and metrics differ in length
    """
    if not metrics:
        return {}
    if weights is None:
        weights = [1.0] * len(metrics)
    if len(weights) != len(metrics):
        raise ValueError(
            f"got {len(weights)} weights for {len(metrics)} metric sets"
        )

    out: dict[str, Any] = {}
    for name in metrics[0]:
        values: list[float] = []
        kept_weights: list[float] = []
        for chunk_metrics, weight in zip(metrics, weights):
            if name in chunk_metrics:
                values.append(chunk_metrics[name])
                kept_weights.append(weight)
        reduction = resolve_reduction(name, rules)
        out.update(_reduce_values(name, reduction, values, kept_weights))
    return out


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def combine_results(
    results: Sequence[Mapping[str, Any]],
    weights: Sequence[float] | None = None,
    rules: Rules | None = None,
) -> dict[str, Any]:
    """
    Merge chunk results field by field, driven by the first chunk's keys.
    """
    if not results:
        return {}
    if weights is None:
        weights = [1.0] * len(results)
    if len(weights) != len(results):
        raise ValueError(f"got {len(weights)} weights for {len(results)} results")

    combined: dict[str, Any] = {}
    for key, first in results[0].items():
        present = [(r[key], w) for r, w in zip(results, weights) if key in r]
        values = [v for v, _ in present]
        kept_weights = [w for _, w in present]

        if isinstance(first, list):
            merged: list[Any] = []
            for value in values:
                merged.extend(value)
            combined[key] = merged
        elif key == "metrics" and isinstance(first, Mapping):
            combined[key] = reduce_metrics(values, kept_weights, rules)
        elif _is_number(first) and all(_is_number(v) for v in values):
            combined.update(_reduce_values(
                key, resolve_reduction(key, rules), values, kept_weights,
            ))
        else:
            if any(v != first for v in values[1:]):
                logger.warning(
                    f"mixed {key} across chunks, using the first",
                    field=key,
                    first=first,
                )
            combined[key] = first
    return combined


def combine_forward_backward_results(
    outputs: Sequence[Mapping[str, Any]],
    rules: Rules | None = None,
) -> dict[str, Any]:
    """Chunk weights are the number of loss_fn_outputs each produced."""
    weights = [float(len(o.get("loss_fn_outputs") or ())) for o in outputs]
    return combine_results(outputs, weights, rules)


class Combiner:
    """
    Awaits child futures concurrently and merges their results.

    Usage:
        combined = combiner.combine(chunk_futures, reducer=combine_forward_backward_results)
        match await combined:
            case Ok(result): ...
            case Err(error): ...   # first child failure
    """

    def __init__(self, executor: BackgroundTaskExecutor | None = None) -> None:
        self._executor = executor

    def combine(
        self,
        futures: Sequence[RemoteFuture[Any]],
        *,
        reducer: Callable[[list[Any]], Any] | None = None,
        weights: Sequence[float] | None = None,
        rules: Rules | None = None,
        cancel_on_failure: bool = False,
    ) -> RemoteFuture[Any]:
        """
        Args:
            futures: Children in chunk order
            reducer: Custom merge of the ordered child values; defaults
                to combine_results with `weights` and `rules`
            cancel_on_failure: Cancel the remaining children once one fails
        """
        children = list(futures)

        def _merge(values: list[Any]) -> Any:
            if reducer is not None:
                return reducer(values)
            return combine_results(values, weights, rules)

        coro = self._gather(children, _merge, cancel_on_failure)
        describe = f"Combining {len(children)} chunk results"
        if self._executor is not None:
            task = self._executor.spawn(coro, name="combine", describe=describe)
        else:
            task = asyncio.create_task(run_to_result(coro, describe=describe))
        return RemoteFuture(task)

    @staticmethod
    async def _gather(
        children: list[RemoteFuture[Any]],
        merge: Callable[[list[Any]], Any],
        cancel_on_failure: bool,
    ) -> Result[Any, DispatchError]:
        waiters = {
            asyncio.ensure_future(child.result()): index
            for index, child in enumerate(children)
        }
        values: list[Any] = [None] * len(children)
        try:
            while waiters:
                done, _ = await asyncio.wait(
                    waiters, return_when=asyncio.FIRST_COMPLETED,
                )
                # Deterministic pick when several finish together.
                for waiter in sorted(done, key=waiters.__getitem__):
                    index = waiters.pop(waiter)
                    match waiter.result():
                        case Ok(value):
                            values[index] = value
                        case Err(error):
                            if cancel_on_failure:
                                for child in children:
                                    child.cancel()
                            return Err(error)
        finally:
            for waiter in waiters:
                waiter.cancel()
        return Ok(merge(values))
