import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorHandler = Callable[[BaseException], Awaitable[None] | None]


async def run_sync(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run blocking work (SQLAlchemy sessions) in the default executor so the loop keeps serving."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


class JobRunner:
    """Owns background coroutines started from request handlers.

    Every job keeps a strong reference until it finishes and gets a completion
    callback: a job that raises or is cancelled has ``on_error`` invoked, so
    its persisted state is always moved to a terminal value.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._closing = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine[Any, Any, Any], name: str, on_error: ErrorHandler | None = None) -> asyncio.Task:
        if self._closing:
            coro.close()
            raise RuntimeError("JobRunner is shut down")
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, on_error))
        logger.debug("Job %s submitted (%d pending)", name, len(self._tasks))
        return task

    def _finished(self, task: asyncio.Task, on_error: ErrorHandler | None) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            exc: BaseException | None = asyncio.CancelledError()
            logger.warning("Job %s was cancelled", task.get_name())
        else:
            exc = task.exception()
            if exc is not None:
                logger.error("Job %s crashed", task.get_name(), exc_info=exc)
        if exc is None or on_error is None:
            return
        try:
            result = on_error(exc)
            if asyncio.iscoroutine(result):
                # Completion callbacks are plain functions; finish async handlers on the loop
                follow_up = asyncio.get_running_loop().create_task(result, name=f"{task.get_name()}:on_error")
                self._tasks.add(follow_up)
                follow_up.add_done_callback(self._tasks.discard)
        except Exception:
            logger.exception("Error handler of job %s failed", task.get_name())

    async def drain(self) -> None:
        """Wait until every submitted job (and its error handler) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0) -> None:
        self._closing = True
        if not self._tasks:
            return
        logger.info("Waiting for %d background job(s)", len(self._tasks))
        _done, still_running = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
        # Cancellation callbacks may have queued error handlers
        await self.drain()
