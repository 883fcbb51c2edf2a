from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator

from .bus import StreamBus
from .contracts import RunEventType, wall_ts_now_iso


class Service(str, Enum):
    MEMORY = "memory"
    REASONING = "reasoning"
    VOICE = "voice"
    MAIL = "mail"


class ActivityTracker:
    """
    Reference-counted "service busy" flags per run.
    Two overlapping activations of the same service keep the flag on until
    both have released it; observers only hear about real flips.
    """

    def __init__(self, bus: StreamBus):
        self.bus = bus
        self._counts: dict[str, dict[Service, int]] = defaultdict(lambda: {service: 0 for service in Service})
        self._lock = asyncio.Lock()

    def snapshot(self, run_id: str) -> dict[str, bool]:
        counts = self._counts.get(run_id)
        if counts is None:
            return {service.value: False for service in Service}
        return {service.value: counts[service] > 0 for service in Service}

    async def acquire(self, run_id: str, service: Service) -> None:
        service = Service(service)
        async with self._lock:
            counts = self._counts[run_id]
            counts[service] += 1
            flipped = counts[service] == 1
            snapshot = self.snapshot(run_id)
        if flipped:
            await self.bus.publish(run_id=run_id, event_type=RunEventType.SERVICES_CHANGE, payload=snapshot)

    async def release(self, run_id: str, service: Service) -> None:
        service = Service(service)
        async with self._lock:
            counts = self._counts.get(run_id)
            if counts is None or counts[service] == 0:
                return
            counts[service] -= 1
            flipped = counts[service] == 0
            snapshot = self.snapshot(run_id)
            if not any(counts.values()):
                self._counts.pop(run_id, None)
        if flipped:
            await self.bus.publish(run_id=run_id, event_type=RunEventType.SERVICES_CHANGE, payload=snapshot)

    @asynccontextmanager
    async def active(self, run_id: str, service: Service) -> AsyncIterator[None]:
        await self.acquire(run_id, service)
        try:
            yield
        finally:
            await self.release(run_id, service)


class ActivityFeed:
    """Publishes activity / update_activity events for one observer timeline."""

    def __init__(self, bus: StreamBus):
        self.bus = bus

    async def start(
        self,
        run_id: str,
        *,
        kind: str,
        title: str,
        description: str = "",
        status: str = "running",
        tool: str = "orchestrator",
        **extra: Any,
    ) -> str:
        activity_id = uuid.uuid4().hex[:12]
        payload = {
            "id": activity_id,
            "type": kind,
            "title": title,
            "description": description,
            "timestamp": wall_ts_now_iso(),
            "status": status,
            "tool": tool,
            **extra,
        }
        await self.bus.publish(run_id=run_id, event_type=RunEventType.ACTIVITY, payload=payload)
        return activity_id

    async def update(self, run_id: str, activity_id: str, **updates: Any) -> None:
        await self.bus.publish(
            run_id=run_id,
            event_type=RunEventType.UPDATE_ACTIVITY,
            payload={"id": activity_id, "updates": updates},
        )

    async def error(self, run_id: str, title: str, description: str) -> str:
        return await self.start(run_id, kind="system", title=title, description=description, status="error")

    async def stage(self, run_id: str, stage: str, **extra: Any) -> None:
        await self.bus.publish(
            run_id=run_id,
            event_type=RunEventType.STAGE_CHANGE,
            payload={"stage": stage, **extra},
        )
