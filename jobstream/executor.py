"""Task executor shared by the workflow engine and the ingestion pipelines.

Constructed once at startup and passed by reference; it owns the concurrency
limit and every background task it spawns.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskExecutor:
    """Bounded runner for pipeline work plus a registry of background tasks."""

    def __init__(self, max_concurrency: int = 4, *, name: str = "jobstream") -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.name = name
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task] = set()
        self._closed = False
        self._active = 0
        self.peak_active = 0

    @property
    def active(self) -> int:
        return self._active

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` while holding one concurrency slot."""
        async with self._semaphore:
            self._active += 1
            self.peak_active = max(self.peak_active, self._active)
            try:
                return await awaitable
            finally:
                self._active -= 1

    def spawn(self, coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
        """Start a tracked background task (not bounded by the semaphore)."""
        if self._closed:
            coro.close()
            raise RuntimeError(f"executor {self.name} is shut down")
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self, *, cancel: bool = True, timeout: float | None = 10.0) -> None:
        """Stop accepting work; cancel (or drain) tracked tasks."""
        self._closed = True
        tasks = list(self._tasks)
        if not tasks:
            return
        if cancel:
            for task in tasks:
                task.cancel()
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} task(s) still running after executor shutdown")
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    f"Background task {task.get_name()} ended with error: {task.exception()!r}",
                    extra={"executor": self.name},
                )
