"""Fire-and-forget dispatch of post-commit side effects."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from loguru import logger

from heist_api.observability.heist import get_heist_store


class BackgroundDispatcher:
    """Run side effects as tracked asyncio tasks.

    Failures are logged and counted; they never propagate to the code that
    scheduled them. ``drain`` waits for everything scheduled so far, which is
    what the application shutdown hook and the tests use.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, label: str, factory: Callable[[], Awaitable[object]]) -> asyncio.Task | None:
        if self._closed:
            logger.warning("Dispatcher closed, dropping side effect", label=label)
            return None
        task = asyncio.create_task(self._run(label, factory))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, label: str, factory: Callable[[], Awaitable[object]]) -> None:
        try:
            await factory()
        except Exception as exc:  # noqa: BLE001
            get_heist_store().record_side_effect_failure(label)
            logger.exception("Background side effect failed", label=label, error=str(exc))

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        await self.drain()
        logger.info("Background dispatcher stopped")
