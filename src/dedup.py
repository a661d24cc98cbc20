"""
In-flight build registry.

At most one build task exists per key. Callers arriving while a build is
running attach to the same task and observe the same result; the entry is
dropped once the task settles, so a failed build can be retried cleanly.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Tuple

from errors import ServiceShuttingDownError

logger = logging.getLogger(__name__)


class BuildRegistry:
    def __init__(self, name: str = "builds"):
        self.name = name
        self._jobs: Dict[Hashable, asyncio.Task] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._jobs)

    def is_running(self, key: Hashable) -> bool:
        return key in self._jobs

    def acquire(self, key: Hashable,
                factory: Callable[[], Awaitable[Any]]) -> Tuple[asyncio.Task, bool]:
        """
        Return the running task for key, starting one from factory if none exists.

        The boolean is True when this call created the task.
        """
        task = self._jobs.get(key)
        if task is not None:
            logger.debug(f"[{self.name}] attaching to in-flight build {key}")
            return task, False

        if self._closed:
            raise ServiceShuttingDownError()

        task = asyncio.ensure_future(factory())
        self._jobs[key] = task
        task.add_done_callback(lambda t, k=key: self._release(k, t))
        logger.debug(f"[{self.name}] started build {key}")
        return task, True

    async def run_exclusive(self, key: Hashable,
                            factory: Callable[[], Awaitable[Any]]) -> Any:
        task, _ = self.acquire(key, factory)
        # A cancelled waiter must not cancel the build for everyone else
        return await asyncio.shield(task)

    def _release(self, key: Hashable, task: asyncio.Task):
        if self._jobs.get(key) is task:
            del self._jobs[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(
                f"[{self.name}] build {key} failed: {task.exception()}")

    def close(self):
        """Refuse new builds; running builds are left to settle."""
        self._closed = True

    async def wait_all(self):
        """Wait for every in-flight build to settle, ignoring outcomes."""
        pending = list(self._jobs.values())
        if pending:
            logger.info(
                f"[{self.name}] waiting for {len(pending)} in-flight builds")
            await asyncio.gather(*pending, return_exceptions=True)
