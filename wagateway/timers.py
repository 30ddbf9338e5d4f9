from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional


LOGGER = logging.getLogger("wagateway.timers")

TimerCallback = Callable[[], Awaitable[Any]]


@dataclass(slots=True)
class _Timer:
    kind: str
    delay: float
    task: asyncio.Task[Any]


class TimerService:
    """Cancellable delayed callbacks, at most one per phone.

    Scheduling a timer for a phone replaces the previous one. A firing timer
    is detached from the table before its callback runs, so the callback may
    schedule a follow-up timer for the same phone.
    """

    def __init__(self) -> None:
        self._timers: Dict[str, _Timer] = {}

    def schedule(self, phone: str, delay: float, callback: TimerCallback, *, kind: str) -> None:
        self.cancel(phone)
        task = asyncio.get_running_loop().create_task(self._run(phone, delay, callback, kind))
        self._timers[phone] = _Timer(kind=kind, delay=delay, task=task)
        LOGGER.debug("stage=timer_scheduled phone=%s kind=%s delay=%.1f", phone, kind, delay)

    def cancel(self, phone: str, *, kind: Optional[str] = None) -> bool:
        timer = self._timers.get(phone)
        if timer is None:
            return False
        if kind is not None and timer.kind != kind:
            return False
        self._timers.pop(phone, None)
        if not timer.task.done() and timer.task is not asyncio.current_task():
            timer.task.cancel()
        LOGGER.debug("stage=timer_cancelled phone=%s kind=%s", phone, timer.kind)
        return True

    def pending(self, phone: str) -> Optional[str]:
        timer = self._timers.get(phone)
        if timer is None or timer.task.done():
            return None
        return timer.kind

    def pending_delay(self, phone: str) -> Optional[float]:
        timer = self._timers.get(phone)
        return timer.delay if timer is not None else None

    async def _run(self, phone: str, delay: float, callback: TimerCallback, kind: str) -> None:
        await asyncio.sleep(delay)
        current = self._timers.get(phone)
        if current is not None and current.task is asyncio.current_task():
            self._timers.pop(phone, None)
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("stage=timer_callback_failed phone=%s kind=%s", phone, kind)

    async def shutdown(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.task.cancel()
        for timer in timers:
            with contextlib.suppress(asyncio.CancelledError):
                await timer.task


__all__ = ["TimerService", "TimerCallback"]
