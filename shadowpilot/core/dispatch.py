"""
ShadowPilot Callback Dispatch
=============================
Observer callbacks (status changes, reconnection results) are marshaled onto
one designated context so observers see events serialized, in order.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


class SerialDispatcher:
    """Runs submitted callables one at a time on a single daemon thread."""

    def __init__(self, name: str = "shadowpilot-callbacks"):
        self._queue: "queue.Queue[Optional[tuple]]" = queue.Queue()
        self._thread = threading.Thread(target=self._run, daemon=True, name=name)
        self._closed = False
        self._thread.start()

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        if self._closed:
            logger.debug(f"Dispatcher closed, dropping {fn!r}")
            return
        self._queue.put((fn, args))

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Block until everything submitted so far has run."""
        done = threading.Event()
        self.submit(done.set)
        return done.wait(timeout)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(None)  # sentinel
        self._thread.join(timeout=2)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                break
            fn, args = item
            try:
                fn(*args)
            except Exception as e:
                logger.debug(f"Callback error: {e}")


class StatusBus:
    """Observer registry whose notifications go through a dispatcher."""

    def __init__(self, dispatcher: Optional[Any] = None):
        self.dispatcher = dispatcher or InlineDispatcher()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[Any], None]] = []

    def subscribe(self, callback: Callable[[Any], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def unsubscribe(self, callback: Callable[[Any], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def publish(self, event: Any) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for cb in callbacks:
            self.dispatcher.submit(cb, event)


class InlineDispatcher:
    """Runs callables immediately on the calling thread."""

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.debug(f"Callback error: {e}")

    def drain(self, timeout: Optional[float] = None) -> bool:
        return True

    def close(self) -> None:
        pass
