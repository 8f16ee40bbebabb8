"""Background execution of session operations for synchronous callers.

Each operation is a coroutine; the runner owns an event loop on a worker
thread so a UI or other blocking host can submit work and get a
``concurrent.futures.Future`` back immediately.
"""

import asyncio
import concurrent.futures
import threading
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

from unicloud.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Callback = Callable[[T | None, BaseException | None], None]


class BackgroundRunner:
    """Runs coroutines on a dedicated event loop thread."""

    def __init__(self, name: str = "unicloud-runner") -> None:
        self._name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._started = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError("BackgroundRunner is not started")
        return self._loop

    @property
    def thread_id(self) -> int | None:
        return self._thread.ident if self._thread else None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "BackgroundRunner":
        if self.is_running:
            return self
        self._started.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        self._started.wait()
        logger.debug(f"{self._name} started")
        return self

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._started.set()
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

    def submit(
        self,
        coro: Coroutine[Any, Any, T],
        callback: Callback[T] | None = None,
    ) -> "concurrent.futures.Future[T]":
        """Schedule ``coro`` on the runner thread.

        ``callback(result, error)`` is invoked on the runner thread once the
        coroutine finishes; exactly one of the two arguments is set.
        """
        if not self.is_running:
            self.start()
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        if callback is not None:
            future.add_done_callback(lambda done: self._deliver(done, callback))
        return future

    @staticmethod
    def _deliver(future: "concurrent.futures.Future[T]", callback: Callback[T]) -> None:
        if future.cancelled():
            return
        error = future.exception()
        try:
            if error is not None:
                callback(None, error)
            else:
                callback(future.result(), None)
        except Exception:
            logger.exception("Background callback failed")

    def stop(self, timeout: float | None = 5.0) -> None:
        if not self.is_running or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        self._loop = None
        logger.debug(f"{self._name} stopped")

    def __enter__(self) -> "BackgroundRunner":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
