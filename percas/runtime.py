"""Named runtimes that run coroutines on worker threads and blocking calls on a pool."""

from __future__ import annotations

import asyncio
import concurrent.futures
import itertools
import logging
import os
import threading
from collections.abc import Callable, Coroutine, Generator
from datetime import timedelta
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEFAULT_MAX_BLOCKING_THREADS = 512
_DEFAULT_THREAD_KEEP_ALIVE = timedelta(seconds=10)


def num_cpus() -> int:
    """The number of logical CPUs this process may use, falling back to 1."""
    try:
        count = len(os.sched_getaffinity(0))
    except (AttributeError, OSError):
        count = os.cpu_count() or 0
    if count < 1:
        logger.warning("failed to fetch the available parallelism (fallback to 1)")
        return 1
    return count


class JoinHandle(Generic[T]):
    """The outcome of a spawned task; wait on it with `result()` or `await` it."""

    def __init__(self, future: concurrent.futures.Future[T]) -> None:
        self._future = future

    def result(self, timeout: float | None = None) -> T:
        """Wait for the task and return its value, re-raising whatever it raised."""
        return self._future.result(timeout)

    def done(self) -> bool:
        return self._future.done()

    def __await__(self) -> Generator[Any, None, T]:
        return asyncio.wrap_future(self._future).__await__()


def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
    asyncio.set_event_loop(loop)
    try:
        loop.run_forever()
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()


class Runtime:
    """A pool of event-loop worker threads plus a pool for blocking calls."""

    def __init__(
        self,
        name: str,
        thread_name: str,
        worker_threads: int,
        max_blocking_threads: int,
        thread_keep_alive: timedelta,
    ) -> None:
        self.name = name
        self.thread_name = thread_name
        self.worker_threads = worker_threads
        self.max_blocking_threads = max_blocking_threads
        # The standard thread pool keeps idle threads until shutdown; recorded for reference.
        self.thread_keep_alive = thread_keep_alive
        self._lock = threading.Lock()
        self._closed = False
        self._loops = [asyncio.new_event_loop() for _ in range(worker_threads)]
        self._threads = [
            threading.Thread(target=_run_loop, args=(loop,), name=thread_name, daemon=True)
            for loop in self._loops
        ]
        for thread in self._threads:
            thread.start()
        self._next_loop = itertools.cycle(self._loops)
        self._blocking = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_blocking_threads, thread_name_prefix=thread_name
        )

    def __repr__(self) -> str:
        return f"Runtime(name={self.name!r}, worker_threads={self.worker_threads})"

    def spawn(self, coro: Coroutine[Any, Any, T]) -> JoinHandle[T]:
        """Schedule a coroutine on one of the worker threads."""
        if not asyncio.iscoroutine(coro):
            raise TypeError(f"expected a coroutine, got {coro!r}")
        with self._lock:
            if self._closed:
                coro.close()
                raise RuntimeError(f"runtime {self.name!r} is shut down")
            loop = next(self._next_loop)
        return JoinHandle(asyncio.run_coroutine_threadsafe(coro, loop))

    def spawn_blocking(self, func: Callable[[], T]) -> JoinHandle[T]:
        """Run a function on the pool dedicated to blocking operations."""
        with self._lock:
            if self._closed:
                raise RuntimeError(f"runtime {self.name!r} is shut down")
            return JoinHandle(self._blocking.submit(func))

    def block_on(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run a coroutine on the runtime and wait for its result."""
        if threading.current_thread() in self._threads:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise RuntimeError("cannot block on the runtime from one of its own workers")
        return self.spawn(coro).result()

    def shutdown(self) -> None:
        """Stop the workers, cancelling unfinished tasks; safe to call twice."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for loop in self._loops:
            loop.call_soon_threadsafe(loop.stop)
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join()
        self._blocking.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> Runtime:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()


class Builder:
    """Configures and creates a `Runtime`."""

    def __init__(self, runtime_name: str, thread_name: str) -> None:
        self._runtime_name = str(runtime_name)
        self._thread_name = str(thread_name)
        self._worker_threads = num_cpus()
        self._max_blocking_threads = _DEFAULT_MAX_BLOCKING_THREADS
        self._thread_keep_alive = _DEFAULT_THREAD_KEEP_ALIVE

    def worker_threads(self, val: int) -> Builder:
        """Set the number of worker threads; must be above 0."""
        if isinstance(val, bool) or not isinstance(val, int) or val <= 0:
            raise ValueError(f"worker threads must be greater than 0, got {val!r}")
        self._worker_threads = val
        return self

    def max_blocking_threads(self, val: int) -> Builder:
        """Set the limit of threads for blocking operations; must be above 0."""
        if isinstance(val, bool) or not isinstance(val, int) or val <= 0:
            raise ValueError(f"max blocking threads must be greater than 0, got {val!r}")
        self._max_blocking_threads = val
        return self

    def thread_keep_alive(self, duration: timedelta) -> Builder:
        if not isinstance(duration, timedelta) or duration < timedelta(0):
            raise ValueError(f"keep-alive must be a non-negative timedelta, got {duration!r}")
        self._thread_keep_alive = duration
        return self

    def runtime_name(self, val: str) -> Builder:
        self._runtime_name = str(val)
        return self

    def thread_name(self, val: str) -> Builder:
        self._thread_name = str(val)
        return self

    def build(self) -> Runtime:
        return Runtime(
            self._runtime_name,
            self._thread_name,
            self._worker_threads,
            self._max_blocking_threads,
            self._thread_keep_alive,
        )


def make_runtime(runtime_name: str, thread_name: str, worker_threads: int) -> Runtime:
    logger.info(
        "creating runtime with runtime_name: %s, thread_name: %s, work_threads: %s",
        runtime_name,
        thread_name,
        worker_threads,
    )
    return Builder(runtime_name, thread_name).worker_threads(worker_threads).build()