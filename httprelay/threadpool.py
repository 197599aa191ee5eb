"""A fixed-size pool of worker threads fed from a shared task queue."""

from __future__ import annotations

import logging
import os
import threading
from collections import deque
from concurrent.futures import Future
from typing import Any, Callable

log = logging.getLogger(__name__)


class ThreadPool:
    """Runs submitted callables on a fixed set of worker threads.

    A pool asked for one thread or fewer gets two. Without a size it
    uses one thread per CPU.
    """

    def __init__(self, num: int | None = None) -> None:
        if num is None:
            num = os.cpu_count() or 0
        self._size = 2 if num <= 1 else num
        self._idle = self._size
        self._tasks: deque[tuple[Future, Callable[..., Any], tuple, dict]] = deque()
        self._stopped = False
        self._cond = threading.Condition()
        self._threads = [
            threading.Thread(target=self._worker, name=f"pool-worker-{i}", daemon=True)
            for i in range(self._size)
        ]
        for thread in self._threads:
            thread.start()

    def commit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Queue ``fn(*args, **kwargs)`` and return a future for its result."""
        future: Future = Future()
        with self._cond:
            if self._stopped:
                raise RuntimeError("ThreadPool had stopped, can't commit new tasks")
            self._tasks.append((future, fn, args, kwargs))
            self._cond.notify()
        return future

    def idle_thread_count(self) -> int:
        """Number of workers not currently running a task."""
        with self._cond:
            return self._idle

    def stop(self) -> None:
        """Stop accepting tasks, wake the workers and wait for them to finish.

        Tasks still queued when the workers exit are cancelled.
        """
        with self._cond:
            self._stopped = True
            self._cond.notify_all()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current and thread.is_alive():
                log.debug("Join thread %s", thread.name)
                thread.join()
        with self._cond:
            leftovers = list(self._tasks)
            self._tasks.clear()
        for future, _, _, _ in leftovers:
            future.cancel()

    def __enter__(self) -> ThreadPool:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _worker(self) -> None:
        while not self._stopped:
            with self._cond:
                self._cond.wait_for(lambda: self._stopped or bool(self._tasks))
                if not self._tasks:
                    return
                future, fn, args, kwargs = self._tasks.popleft()
                self._idle -= 1
            try:
                if future.set_running_or_notify_cancel():
                    try:
                        result = fn(*args, **kwargs)
                    except BaseException as exc:  # handed to the caller via the future
                        future.set_exception(exc)
                    else:
                        future.set_result(result)
            finally:
                with self._cond:
                    self._idle += 1