from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    transcribe = "transcribe"
    summarize = "summarize"


TaskKey = tuple[str, OperationKind]


class TaskDeduplicator:
    """Single-flight map: at most one in-flight operation per key.

    Concurrent callers with the same key share the first caller's task and
    observe its exact outcome. The entry is dropped as soon as the task
    settles, so the next request starts a fresh operation.
    """

    def __init__(self) -> None:
        self._pending: dict[Hashable, asyncio.Task] = {}

    async def request_or_join(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._pending.get(key)
        if task is not None:
            logger.info("Joining in-flight task %s", key)
        else:
            task = asyncio.ensure_future(factory())
            self._pending[key] = task
            task.add_done_callback(lambda done, key=key: self._settle(key, done))
            logger.info("Task started: %s (%d pending)", key, len(self._pending))
        # Shielded so one caller giving up does not cancel the shared work.
        return await asyncio.shield(task)

    def _settle(self, key: Hashable, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled() and task.exception() is not None:
            logger.info("Task failed: %s (%s)", key, task.exception())
        else:
            logger.info("Task settled: %s (%d pending)", key, len(self._pending))

    def is_pending(self, key: Hashable) -> bool:
        return key in self._pending

    @property
    def active_count(self) -> int:
        return len(self._pending)
