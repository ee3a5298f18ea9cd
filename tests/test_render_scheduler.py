import asyncio
import threading

import pytest

from render_errors import NoMesh, RenderTimeout
from render_scheduler import GpuWorker, RenderScheduler


class RecordingHandler:
    def __init__(self, delay=0.01, fail_on=()):
        self.delay = delay
        self.fail_on = set(fail_on)
        self.active = 0
        self.max_active = 0
        self.order = []

    async def __call__(self, request):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            self.order.append(request)
            if request in self.fail_on:
                raise NoMesh()
            return request * 10
        finally:
            self.active -= 1


def test_jobs_run_one_at_a_time_in_fifo_order():
    handler = RecordingHandler()

    async def run():
        scheduler = RenderScheduler(handler, queue_size=10, max_in_flight=1)
        await scheduler.start()
        try:
            return await asyncio.gather(*(scheduler.submit(i) for i in range(5)))
        finally:
            await scheduler.stop()

    results = asyncio.run(run())

    assert results == [0, 10, 20, 30, 40]
    assert handler.max_active == 1
    assert handler.order == [0, 1, 2, 3, 4]


def test_failed_job_is_returned_to_its_caller_only():
    handler = RecordingHandler(fail_on={1})

    async def run():
        scheduler = RenderScheduler(handler)
        await scheduler.start()
        try:
            return await asyncio.gather(*(scheduler.submit(i) for i in range(3)), return_exceptions=True)
        finally:
            await scheduler.stop()

    first, second, third = asyncio.run(run())

    assert first == 0
    assert isinstance(second, NoMesh)
    assert third == 20


def test_caller_timeout_does_not_stop_the_scheduler():
    handler = RecordingHandler(delay=0.2)

    async def run():
        scheduler = RenderScheduler(handler, timeout=0.05)
        await scheduler.start()
        try:
            with pytest.raises(RenderTimeout):
                await scheduler.submit(1)
            scheduler.timeout = None
            return await scheduler.submit(2)
        finally:
            await scheduler.stop()

    assert asyncio.run(run()) == 20
    # the abandoned job still ran to completion before the next one started
    assert handler.order == [1, 2]
    assert handler.max_active == 1


def test_cancelled_caller_does_not_cancel_the_job():
    handler = RecordingHandler(delay=0.05)

    async def run():
        scheduler = RenderScheduler(handler)
        await scheduler.start()
        try:
            caller = asyncio.create_task(scheduler.submit(7))
            await asyncio.sleep(0.01)
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller
            return await scheduler.submit(8)
        finally:
            await scheduler.stop()

    assert asyncio.run(run()) == 80
    assert handler.order == [7, 8]


def test_submit_requires_a_running_scheduler():
    async def run():
        await RenderScheduler(RecordingHandler()).submit(1)

    with pytest.raises(RuntimeError):
        asyncio.run(run())


def test_stop_runs_the_shutdown_hook():
    stopped = []

    async def on_stop():
        stopped.append(True)

    async def run():
        scheduler = RenderScheduler(RecordingHandler(), on_stop=on_stop)
        await scheduler.start()
        assert scheduler.running
        await scheduler.stop()
        assert not scheduler.running

    asyncio.run(run())
    assert stopped == [True]


def test_invalid_limits_are_rejected():
    with pytest.raises(ValueError):
        RenderScheduler(RecordingHandler(), queue_size=0)
    with pytest.raises(ValueError):
        RenderScheduler(RecordingHandler(), max_in_flight=0)


class _Context:
    def __init__(self):
        self.thread = threading.get_ident()
        self.closed = False

    def close(self):
        self.closed = True


def test_gpu_worker_owns_one_context_on_one_thread():
    created = []

    def factory():
        context = _Context()
        created.append(context)
        return context

    worker = GpuWorker(factory)

    async def run():
        first = await worker.run(lambda ctx, x: (ctx, threading.get_ident(), x), 1)
        second = await worker.run(lambda ctx, x: (ctx, threading.get_ident(), x), 2)
        return first, second

    try:
        (ctx_a, thread_a, one), (ctx_b, thread_b, two) = asyncio.run(run())
        third = worker.call(lambda ctx: threading.get_ident())
    finally:
        worker.shutdown()

    assert len(created) == 1
    assert ctx_a is ctx_b
    assert thread_a == thread_b == ctx_a.thread == third
    assert thread_a != threading.get_ident()
    assert (one, two) == (1, 2)
    assert ctx_a.closed


def test_gpu_worker_propagates_errors():
    worker = GpuWorker(_Context)

    def explode(ctx):
        raise ValueError("bad scene")

    try:
        with pytest.raises(ValueError):
            worker.call(explode)
    finally:
        worker.shutdown()
