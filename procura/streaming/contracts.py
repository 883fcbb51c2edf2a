from __future__ import annotations

import time
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class RunEventType(str, Enum):
    STAGE_CHANGE = "stage_change"
    SERVICES_CHANGE = "services_change"
    ACTIVITY = "activity"
    UPDATE_ACTIVITY = "update_activity"
    QUOTE = "quote"
    CALL_UPDATE = "call_update"
    CALLS_CHANGE = "calls_change"
    SUMMARY = "summary"
    EMAIL_SENT = "email_sent"
    INVOICE_RECEIVED = "invoice_received"


class DropRange(BaseModel):
    start_seq: int
    end_seq: int

    @model_validator(mode="after")
    def validate_range(self):
        if self.start_seq > self.end_seq:
            raise ValueError("start_seq must be <= end_seq")
        return self


class RunEvent(BaseModel):
    schema_v: Literal["1.0"] = "1.0"
    run_id: str
    seq: int
    mono_ts_ms: int
    event_type: RunEventType
    payload: dict[str, Any] = Field(default_factory=dict)
    wall_ts: str | int | None = None

    @model_validator(mode="after")
    def validate_payload(self):
        ranges = self.payload.get("dropped_seq_ranges")
        if ranges is None:
            return self
        parsed = [DropRange.model_validate(item) for item in ranges]
        for i in range(1, len(parsed)):
            if parsed[i].start_seq <= parsed[i - 1].end_seq:
                raise ValueError("dropped_seq_ranges must be non-overlapping and ascending")
        return self

    def to_sse(self) -> str:
        return f"event: {self.event_type.value}\ndata: {self.model_dump_json()}\n\n"


class EventClass(str, Enum):
    MUST_DELIVER = "must_deliver"
    BEST_EFFORT = "best_effort"


# Observers rely on these to know where a run stands; a full subscriber
# queue evicts its oldest entry to make room for them.
MUST_DELIVER_EVENTS: set[RunEventType] = {
    RunEventType.STAGE_CHANGE,
    RunEventType.SUMMARY,
    RunEventType.EMAIL_SENT,
    RunEventType.INVOICE_RECEIVED,
}


def event_class(event_type: RunEventType) -> EventClass:
    if event_type in MUST_DELIVER_EVENTS:
        return EventClass.MUST_DELIVER
    return EventClass.BEST_EFFORT


def mono_ts_ms_now() -> int:
    return int(time.monotonic_ns() / 1_000_000)


def wall_ts_now_iso() -> str:
    return datetime.now(UTC).isoformat()
