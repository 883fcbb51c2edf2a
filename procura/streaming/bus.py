from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from .contracts import (
    EventClass,
    RunEvent,
    RunEventType,
    event_class,
    mono_ts_ms_now,
    wall_ts_now_iso,
)


@dataclass
class _RunBusState:
    next_seq: int = 0
    pending_dropped_ranges: list[tuple[int, int]] = field(default_factory=list)
    services_snapshot: dict[str, Any] | None = None


@dataclass
class StreamBusConfig:
    subscriber_queue_size: int = 256
    max_payload_bytes: int = 64_000


class StreamBus:
    """
    Best-effort push channel keyed by run id.
    Publishing never blocks on a slow observer: each subscriber owns a bounded
    queue, best-effort events are dropped when it is full, must-deliver events
    evict the oldest queued event instead.
    """

    def __init__(self, config: StreamBusConfig | None = None):
        self.config = config or StreamBusConfig()
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._run_states: dict[str, _RunBusState] = {}
        self._lock = asyncio.Lock()
        self.dropped_deliveries = 0

    async def subscribe(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.subscriber_queue_size)
        async with self._lock:
            self._subscribers[run_id].add(queue)
            state = self._run_states.get(run_id)
            snapshot = dict(state.services_snapshot) if state and state.services_snapshot is not None else None
        if snapshot is not None:
            # Late subscribers still learn which services are busy right now.
            queue.put_nowait(
                RunEvent(
                    run_id=run_id,
                    seq=-1,
                    mono_ts_ms=mono_ts_ms_now(),
                    wall_ts=wall_ts_now_iso(),
                    event_type=RunEventType.SERVICES_CHANGE,
                    payload={**snapshot, "replayed": True},
                )
            )
        return queue

    async def unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        async with self._lock:
            if run_id in self._subscribers:
                self._subscribers[run_id].discard(queue)
                if not self._subscribers[run_id]:
                    self._subscribers.pop(run_id, None)

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, ()))

    def has_run_state(self, run_id: str) -> bool:
        return run_id in self._run_states

    async def clear_run(self, run_id: str) -> None:
        """Drop sequence and snapshot state for a finished run. Open subscriptions stay attached."""
        async with self._lock:
            self._run_states.pop(run_id, None)

    async def publish(
        self,
        *,
        run_id: str,
        event_type: RunEventType,
        payload: dict[str, Any] | None = None,
    ) -> RunEvent | None:
        payload = dict(payload or {})
        event_type = RunEventType(event_type)

        async with self._lock:
            state = self._run_states.setdefault(run_id, _RunBusState())
            cls = event_class(event_type)
            event_bytes = len(json.dumps(payload, sort_keys=True, default=str).encode("utf-8"))

            if cls == EventClass.BEST_EFFORT and event_bytes > self.config.max_payload_bytes:
                dropped_seq = state.next_seq
                state.next_seq += 1
                self._append_drop_range(state.pending_dropped_ranges, dropped_seq, dropped_seq)
                return None

            seq = state.next_seq
            state.next_seq += 1
            payload_out = dict(payload)
            if state.pending_dropped_ranges:
                payload_out["dropped_seq_ranges"] = [
                    {"start_seq": start, "end_seq": end} for start, end in state.pending_dropped_ranges
                ]
                state.pending_dropped_ranges.clear()

            event = RunEvent(
                run_id=run_id,
                seq=seq,
                mono_ts_ms=mono_ts_ms_now(),
                wall_ts=wall_ts_now_iso(),
                event_type=event_type,
                payload=payload_out,
            )

            if event_type == RunEventType.SERVICES_CHANGE:
                state.services_snapshot = dict(payload)

            subscribers = list(self._subscribers.get(run_id, set()))

        for queue in subscribers:
            self._deliver(queue, event, cls)
        return event

    def _deliver(self, queue: asyncio.Queue, event: RunEvent, cls: EventClass) -> None:
        try:
            queue.put_nowait(event)
            return
        except asyncio.QueueFull:
            if cls != EventClass.MUST_DELIVER:
                self.dropped_deliveries += 1
                return
        try:
            queue.get_nowait()
            self.dropped_deliveries += 1
        except asyncio.QueueEmpty:
            pass
        queue.put_nowait(event)

    @staticmethod
    def _append_drop_range(ranges: list[tuple[int, int]], start: int, end: int) -> None:
        if not ranges:
            ranges.append((start, end))
            return
        prev_start, prev_end = ranges[-1]
        if start <= (prev_end + 1):
            ranges[-1] = (prev_start, max(prev_end, end))
            return
        ranges.append((start, end))
