"""Serialize render jobs onto a single GPU context.

HTTP handlers call :meth:`RenderScheduler.submit`, which takes a permit from an
admission gate, enqueues the job on a bounded FIFO queue and waits for its
result. One consumer task drains the queue and runs the handler for each job in
turn, so at most one job touches the GPU context at any time. A failing job
resolves its own future with the exception; the consumer keeps running.
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from render_errors import RenderTimeout

logger = logging.getLogger("preview_renderer.scheduler")

DEFAULT_QUEUE_SIZE = 10
DEFAULT_MAX_IN_FLIGHT = 1


class GpuWorker:
    """A dedicated thread that creates and exclusively owns the GPU context.

    The context is built lazily by ``context_factory`` on the worker thread, so
    GL state never crosses threads. ``run(fn, *args)`` executes ``fn(context, *args)``
    on that thread.
    """

    def __init__(self, context_factory: Callable[[], Any], *, name: str = "gpu"):
        self._factory = context_factory
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._context: Optional[Any] = None

    def _call(self, fn: Callable[..., Any], args: tuple) -> Any:
        if self._context is None:
            self._context = self._factory()
        return fn(self._context, *args)

    async def run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._call, fn, args)

    def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Blocking variant of :meth:`run` for callers without an event loop."""
        return self._executor.submit(self._call, fn, args).result()

    def _release(self) -> None:
        if self._context is None:
            return
        close = getattr(self._context, "close", None)
        if close is not None:
            close()
        self._context = None

    def shutdown(self) -> None:
        try:
            self._executor.submit(self._release).result()
        finally:
            self._executor.shutdown(wait=True)


@dataclass
class Job:
    request: Any
    result: "asyncio.Future[Any]"
    enqueued_at: float = field(default_factory=time.perf_counter)
    abandoned: bool = False


class RenderScheduler:
    def __init__(
        self,
        handler: Callable[[Any], Awaitable[Any]],
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        timeout: Optional[float] = None,
        on_stop: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        if queue_size < 1 or max_in_flight < 1:
            raise ValueError("queue_size and max_in_flight must be at least 1")
        self._handler = handler
        self.queue_size = queue_size
        self.max_in_flight = max_in_flight
        self.timeout = timeout
        self._on_stop = on_stop
        self._queue: Optional["asyncio.Queue[Job]"] = None
        self._gate: Optional[asyncio.Semaphore] = None
        self._consumer: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._gate = asyncio.Semaphore(self.max_in_flight)
        self._consumer = asyncio.create_task(self._consume(), name="render-consumer")
        logger.info(
            "Render scheduler started (queue_size=%d, max_in_flight=%d, timeout=%s)",
            self.queue_size,
            self.max_in_flight,
            self.timeout,
        )

    async def stop(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        if self._on_stop is not None:
            await self._on_stop()
        logger.info("Render scheduler stopped")

    async def submit(self, request: Any) -> Any:
        """Run ``request`` through the handler and return its result.

        Waits for an admission permit first; the permit is held until the result
        arrives. Errors raised by the handler are re-raised here.
        """
        if not self.running:
            raise RuntimeError("Render scheduler is not running.")

        async with self._gate:
            job = Job(request=request, result=asyncio.get_running_loop().create_future())
            await self._queue.put(job)
            # Shielded so a departing caller never cancels a job the GPU may already be running.
            waiter = asyncio.shield(job.result)
            try:
                if self.timeout is None:
                    return await waiter
                return await asyncio.wait_for(waiter, self.timeout)
            except asyncio.TimeoutError:
                job.abandoned = True
                raise RenderTimeout(f"Render did not finish within {self.timeout:g}s") from None
            except asyncio.CancelledError:
                job.abandoned = True
                raise

    async def _consume(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()

    async def _run(self, job: Job) -> None:
        started = time.perf_counter()
        logger.debug("Job picked up after %.3fs in queue", started - job.enqueued_at)
        try:
            result = await self._handler(job.request)
        except Exception as exc:
            logger.warning("Render job failed with %s: %s", type(exc).__name__, exc)
            outcome_ok = False
            outcome: Any = exc
        else:
            outcome_ok = True
            outcome = result
        logger.info("Render job finished in %.3fs", time.perf_counter() - started)

        if job.abandoned or job.result.done():
            logger.info("Caller went away; dropping render result")
            return
        if outcome_ok:
            job.result.set_result(outcome)
        else:
            job.result.set_exception(outcome)
