"""
Background dispatcher for fire-and-forget side effects.

Referral fuel payments and lifecycle events must never block or fail the
primary operation that triggered them. They are submitted here as
coroutine factories, run as tracked asyncio tasks, and their failures are
logged with the job name instead of disappearing with an unawaited task.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

JobFactory = Callable[..., Awaitable[Any]]


class BackgroundDispatcher:
    """
    Usage:
        dispatcher = BackgroundDispatcher()
        dispatcher.submit("referral_fuel", pay_referral, session_factory, agent_id, 2.0)
        ...
        await dispatcher.drain()   # on shutdown / in tests
    """

    def __init__(self, max_concurrency: int = 8):
        self._tasks: set[asyncio.Task] = set()
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self.submitted = 0
        self.failed = 0

    def submit(self, name: str, job: JobFactory, *args, **kwargs) -> Optional[asyncio.Task]:
        """Schedule ``job(*args, **kwargs)``; returns None outside a running loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(f"Background job '{name}' dropped: no running event loop")
            return None

        task = loop.create_task(self._run(name, job, *args, **kwargs), name=f"bg:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.submitted += 1
        return task

    async def _run(self, name: str, job: JobFactory, *args, **kwargs) -> None:
        async with self._semaphore:
            try:
                await job(*args, **kwargs)
            except Exception:
                self.failed += 1
                logger.exception(f"Background job '{name}' failed")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for all submitted jobs to finish."""
        if not self._tasks:
            return
        done, not_done = await asyncio.wait(set(self._tasks), timeout=timeout)
        if not_done:
            logger.warning(f"{len(not_done)} background jobs still running after drain timeout")
