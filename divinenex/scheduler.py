"""
Cancellable periodic background tasks bound to the application lifespan.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from divinenex.locks import SweepLock

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs ``func`` in a worker thread after ``initial_delay_seconds`` and then
    every ``interval_seconds`` until stopped.

    A run is skipped when ``lock`` is held elsewhere. The lock TTL equals the
    interval, so a crashed holder blocks at most one cycle.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Any],
        *,
        interval_seconds: float,
        initial_delay_seconds: float = 0.0,
        lock: Optional[SweepLock] = None,
    ):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.lock = lock
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._loop(), name=f"periodic:{self.name}"
        )
        logger.info(
            "Scheduled %s every %.0fs (first run in %.0fs)",
            self.name, self.interval_seconds, self.initial_delay_seconds,
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("%s ended with an error", self.name)
        logger.info("Stopped %s", self.name)

    async def _release(self) -> None:
        try:
            await asyncio.to_thread(self.lock.release, self.name)
        except Exception:
            logger.exception("Could not release %s lock", self.name)

    async def run_once(self) -> Any:
        # Lock calls may hit the network, so they run off the event loop too.
        acquired = False
        try:
            if self.lock is not None:
                acquired = await asyncio.to_thread(
                    self.lock.acquire, self.name, self.interval_seconds
                )
                if not acquired:
                    logger.info("Skipping %s: another run holds the lock", self.name)
                    return None
            result = await asyncio.to_thread(self.func)
            self.runs += 1
            return result
        except Exception:
            logger.exception("%s run failed", self.name)
            return None
        finally:
            if acquired:
                await self._release()

    async def _loop(self) -> None:
        await asyncio.sleep(self.initial_delay_seconds)
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("%s cycle failed", self.name)
            await asyncio.sleep(self.interval_seconds)
