"""
Chunking of one logical call into ordered sub-requests.

A chunk closes when it holds `max_items` items or when the next item
would push its size estimate past `max_units`. Splitting depends only
on the items themselves, so the same input always yields the same
chunks, in input order.
"""

from __future__ import annotations

from typing import Any, Callable, Iterator, Mapping, Sequence, TypeVar


T = TypeVar("T")

Estimator = Callable[[Any], int]


def _chunk_length(chunk: Any) -> int:
    if not isinstance(chunk, Mapping):
        return len(chunk) if isinstance(chunk, Sequence) and not isinstance(chunk, str) else 1
    if "length" in chunk and isinstance(chunk["length"], int):
        return chunk["length"]
    for key in ("tokens", "data"):
        value = chunk.get(key)
        if isinstance(value, (list, tuple, bytes, str)):
            return len(value)
    location = chunk.get("location")
    if isinstance(location, str):
        return len(location.encode())
    return 0


def estimate_number_count(datum: Any) -> int:
    """
    Size estimate of one training datum in scalar units.

    Sum of model input chunk lengths (tokens, encoded image bytes,
    asset locations, or an explicit `length`) plus the length of every
    loss function input's `data` list.
    """
    if not isinstance(datum, Mapping):
        return 1

    total = 0
    model_input = datum.get("model_input")
    if isinstance(model_input, Mapping):
        for chunk in model_input.get("chunks", ()):
            total += _chunk_length(chunk)
    elif isinstance(model_input, Sequence) and not isinstance(model_input, str):
        total += len(model_input)

    loss_fn_inputs = datum.get("loss_fn_inputs")
    if isinstance(loss_fn_inputs, Mapping):
        for value in loss_fn_inputs.values():
            if isinstance(value, Mapping):
                data = value.get("data")
                if isinstance(data, (list, tuple)):
                    total += len(data)
            elif isinstance(value, (list, tuple)):
                total += len(value)
    return total


def iter_chunks(
    items: Sequence[T],
    *,
    max_items: int,
    max_units: int,
    estimate: Estimator = estimate_number_count,
) -> Iterator[list[T]]:
    assert max_items >= 1, "max_items must be >= 1"
    assert max_units >= 1, "max_units must be >= 1"

    current: list[T] = []
    current_units = 0
    for item in items:
        units = estimate(item)
        if current and (
            len(current) >= max_items or current_units + units > max_units
        ):
            yield current
            current, current_units = [], 0
        current.append(item)
        current_units += units
    if current:
        yield current


def chunk_items(
    items: Sequence[T],
    *,
    max_items: int,
    max_units: int,
    estimate: Estimator = estimate_number_count,
) -> list[list[T]]:
    """
    Split `items` into ordered chunks. Never returns an empty chunk;
    an item larger than `max_units` on its own forms a chunk by itself.
    """
    return list(iter_chunks(
        items, max_items=max_items, max_units=max_units, estimate=estimate,
    ))
