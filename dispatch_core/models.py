"""
Models Module: Retrieve Response Schemas
=========================================

Covers:
    - The closed set of retrieve responses: pending, completed,
      failed, try_again

Validation:
    - Frozen models, unknown fields ignored for forward compatibility
    - Queue state parsing is case-insensitive with an UNKNOWN fallback
    - Anything outside the closed set is rejected with ValueError
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any, Literal, Mapping, TypeAlias

from pydantic import BaseModel as PydanticBaseModel
from pydantic import ConfigDict, Field, field_validator


# =============================================================================
# BASE MODEL
# =============================================================================

class BaseModel(PydanticBaseModel):
    """
    Base model shared by all wire schemas.

    Capabilities:
        - frozen=True: immutable once parsed
        - extra='ignore': tolerate fields added by newer servers
        - populate_by_name: alias support for field mapping
    """
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )


# =============================================================================
# ENUMS
# =============================================================================

class QueueState(str, Enum):
    """Server-side queue condition reported with try_again responses."""
    ACTIVE = "active"
    PAUSED_RATE_LIMIT = "paused_rate_limit"
    PAUSED_CAPACITY = "paused_capacity"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: object) -> QueueState:
        """Case-insensitive parse; anything unrecognised becomes UNKNOWN."""
        if isinstance(raw, QueueState):
            return raw
        if isinstance(raw, str):
            try:
                return cls(raw.strip().lower())
            except ValueError:
                return cls.UNKNOWN
        return cls.UNKNOWN

    @property
    def is_paused(self) -> bool:
        return self in (QueueState.PAUSED_RATE_LIMIT, QueueState.PAUSED_CAPACITY)


class FutureStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    TRY_AGAIN = "try_again"


# =============================================================================
# RETRIEVE SCHEMAS
# =============================================================================

class FuturePending(BaseModel):
    status: Literal["pending"] = "pending"


class FutureCompleted(BaseModel):
    status: Literal["completed"] = "completed"
    result: Any = None


class FutureFailed(BaseModel):
    status: Literal["failed"] = "failed"
    error: Any = None
    category: Any = None

    @property
    def message(self) -> str:
        if isinstance(self.error, Mapping):
            return str(self.error.get("message") or self.error)
        if self.error is None:
            return "Request failed"
        return str(self.error)

    @property
    def raw_category(self) -> object:
        if self.category is not None:
            return self.category
        if isinstance(self.error, Mapping):
            return self.error.get("category")
        return None


class TryAgain(BaseModel):
    """Server asked the client to poll again later."""
    type: Literal["try_again"] = "try_again"
    request_id: str | None = None
    queue_state: QueueState = QueueState.UNKNOWN
    retry_after_ms: float | None = Field(default=None, ge=0)
    queue_state_reason: str | None = None

    @field_validator("queue_state", mode="before")
    @classmethod
    def _parse_queue_state(cls, value: object) -> QueueState:
        return QueueState.parse(value)

    @field_validator("retry_after_ms", mode="before")
    @classmethod
    def _drop_unusable_hint(cls, value: object) -> object:
        # Negative or non-finite hints fall back to local backoff.
        if isinstance(value, str):
            try:
                value = float(value)
            except ValueError:
                return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if not math.isfinite(value) or value < 0:
                return None
        return value

    @property
    def retry_after_seconds(self) -> float | None:
        if self.retry_after_ms is None:
            return None
        return self.retry_after_ms / 1000.0


RetrieveResponse: TypeAlias = FuturePending | FutureCompleted | FutureFailed | TryAgain


def parse_retrieve_response(payload: object) -> RetrieveResponse:
    """
    Map a retrieve payload onto the closed response set.

    Recognised shapes:
        {"type": "try_again", ...}
        {"status": "try_again", ...}
        {"status": "pending" | "completed" | "failed", ...}
        a bare result object (has "loss_fn_output_type" or "type"),
        which is treated as already completed

    Raises:
        ValueError: payload matches none of the shapes
        pydantic.ValidationError: payload matched a shape but its
            fields are invalid
    """
    if not isinstance(payload, Mapping):
        raise ValueError(f"retrieve response must be an object, got {type(payload).__name__}")

    if payload.get("type") == "try_again":
        return TryAgain.model_validate(payload)

    status = payload.get("status")
    if isinstance(status, str):
        match status.lower():
            case FutureStatus.PENDING.value:
                return FuturePending()
            case FutureStatus.TRY_AGAIN.value:
                return TryAgain.model_validate(payload)
            case FutureStatus.COMPLETED.value:
                return FutureCompleted(result=payload.get("result"))
            case FutureStatus.FAILED.value:
                return FutureFailed(
                    error=payload.get("error"),
                    category=payload.get("category"),
                )

    if "loss_fn_output_type" in payload or "type" in payload:
        return FutureCompleted(result=dict(payload))

    raise ValueError(f"unrecognised retrieve response: {sorted(payload)}")

