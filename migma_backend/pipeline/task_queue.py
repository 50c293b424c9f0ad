# pipeline/task_queue.py
# ============================================================================
# BACKGROUND TASK QUEUE
# ============================================================================
# Best-effort work that must not hold up a webhook response. Every task is
# tracked until it finishes so shutdown can drain it; failures are logged
# with the context the task was submitted with and never re-raised.
# ============================================================================

import asyncio
from typing import Any, Awaitable, Optional

import structlog

logger = structlog.get_logger().bind(component="task_queue")


class BackgroundTaskQueue:
    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self.completed = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, coro: Awaitable[Any], **context) -> asyncio.Task:
        task = asyncio.create_task(self._run(name, coro, context), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, coro: Awaitable[Any], context: dict) -> Optional[Any]:
        try:
            result = await coro
        except asyncio.CancelledError:
            logger.warning("background_task_cancelled", task=name, **context)
            raise
        except Exception as e:
            self.failed += 1
            logger.error(
                "side_effect_failed",
                task=name,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            return None
        self.completed += 1
        logger.info("side_effect_completed", task=name, **context)
        return result

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every in-flight task; cancel stragglers after `timeout`."""
        # Tasks may submit follow-up tasks, so loop until the set stays empty
        while self._tasks:
            tasks = list(self._tasks)
            logger.info("task_queue_draining", pending=len(tasks))
            _, still_running = await asyncio.wait(tasks, timeout=timeout)
            if still_running:
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)
                logger.warning("task_queue_drain_timeout", cancelled=len(still_running))
                return
