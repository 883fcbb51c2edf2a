from __future__ import annotations

import asyncio
import traceback
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple

from procura.logging import log_crash, log_event

RoundKey = Tuple[str, int]
RetryKey = Tuple[str, int, str]
FireCallback = Callable[[str, int], Awaitable[None]]


class WatchdogRegistry:
    """
    Explicit owner of the stale-call timers and retry markers.

    One timer per (run, round): `arm` is a no-op while a timer is pending.
    Retry markers are kept per (run, round, counterparty) so a counterparty is
    retried at most once per round.
    """

    def __init__(self, timeout_seconds: float = 45.0, on_fire: Optional[FireCallback] = None):
        self.timeout_seconds = float(timeout_seconds)
        self._on_fire = on_fire
        self._timers: Dict[RoundKey, asyncio.Task] = {}
        self._retried: Set[RetryKey] = set()

    def bind(self, on_fire: FireCallback) -> None:
        self._on_fire = on_fire

    def is_armed(self, run_id: str, round_number: int) -> bool:
        task = self._timers.get((run_id, int(round_number)))
        return task is not None and not task.done()

    def arm(self, run_id: str, round_number: int, delay: Optional[float] = None) -> bool:
        """Start the timer for (run, round). Returns False when one is already pending."""
        key = (run_id, int(round_number))
        if self.is_armed(*key):
            return False
        wait = self.timeout_seconds if delay is None else max(0.0, float(delay))
        self._timers[key] = asyncio.create_task(self._wait_and_fire(key, wait))
        log_event("watchdog_armed", {"run_id": run_id, "round": key[1], "timeout_seconds": wait})
        return True

    def cancel(self, run_id: str, round_number: int) -> bool:
        key = (run_id, int(round_number))
        task = self._timers.pop(key, None)
        if task is None:
            return False
        # The firing callback may itself trigger the completion check that cancels us.
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        log_event("watchdog_cancelled", {"run_id": run_id, "round": key[1]})
        return True

    def was_retried(self, run_id: str, round_number: int, counterparty_id: str) -> bool:
        return (run_id, int(round_number), counterparty_id) in self._retried

    def mark_retried(self, run_id: str, round_number: int, counterparty_id: str) -> bool:
        """Claim the single retry for this counterparty and round. False if already claimed."""
        key = (run_id, int(round_number), counterparty_id)
        if key in self._retried:
            return False
        self._retried.add(key)
        return True

    def forget_run(self, run_id: str) -> None:
        for key in [key for key in self._timers if key[0] == run_id]:
            self.cancel(*key)
        self._retried = {key for key in self._retried if key[0] != run_id}

    async def close(self) -> None:
        tasks = list(self._timers.values())
        self._timers.clear()
        current = asyncio.current_task()
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _wait_and_fire(self, key: RoundKey, wait: float) -> None:
        await asyncio.sleep(wait)
        if self._timers.get(key) is asyncio.current_task():
            self._timers.pop(key, None)
        if self._on_fire is None:
            return
        run_id, round_number = key
        log_event("watchdog_fired", {"run_id": run_id, "round": round_number, "level": "warning"})
        try:
            await self._on_fire(run_id, round_number)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(
                "watchdog_fire_failed",
                {"run_id": run_id, "round": round_number, "error": str(exc), "level": "error"},
            )
            log_crash(exc, traceback.format_exc())
