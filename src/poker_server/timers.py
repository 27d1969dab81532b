# src/poker_server/timers.py
import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict

from .logger import logger
from .models import utcnow
from .round_controller import TimerTicket

AutoLockCallback = Callable[[TimerTicket], Awaitable[None]]


class AutoLockScheduler:
    """
    Runs one pending auto-lock task per room.

    Scheduling a ticket for a room cancels whatever task that room already
    had. Cancellation is best-effort: a task that has already woken up still
    runs its callback, and the callback is expected to re-check the ticket
    against the room's current round.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._tasks: Dict[str, asyncio.Task] = {}
        self._clock = clock

    def schedule(self, ticket: TimerTicket, callback: AutoLockCallback) -> asyncio.Task:
        self.cancel(ticket.room_code)
        delay = max(0.0, (ticket.ends_at - self._clock()).total_seconds())
        task = asyncio.create_task(self._fire(ticket, delay, callback))
        self._tasks[ticket.room_code] = task
        logger.debug(f"Auto-lock for room '{ticket.room_code}' scheduled in {delay:.1f}s.")
        return task

    def cancel(self, room_code: str):
        task = self._tasks.pop(room_code, None)
        if task and not task.done():
            task.cancel()

    def pending(self, room_code: str) -> bool:
        task = self._tasks.get(room_code)
        return task is not None and not task.done()

    async def shutdown(self):
        """Cancels every pending task and waits for them to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _fire(self, ticket: TimerTicket, delay: float, callback: AutoLockCallback):
        await asyncio.sleep(delay)
        # Once the callback starts, cancel() must no longer reach this task.
        if self._tasks.get(ticket.room_code) is asyncio.current_task():
            del self._tasks[ticket.room_code]
        try:
            await callback(ticket)
        except Exception:
            logger.error(f"Auto-lock failed for room '{ticket.room_code}'.", exc_info=True)
