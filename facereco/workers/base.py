"""Cooperative step-loop workers and the FIFO queues that feed them.

A worker owns a control queue and a single-threaded loop. Public methods only
post control messages; the loop dispatches every pending message (in arrival
order) before running one bounded ``_step()``. Cancelling a multi-step session
therefore takes effect at the next step boundary.

The loop runs either on a background thread (``start_thread()``) or on the
caller's thread (``run_until_idle()``), which is what tests and CLIs use.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, Generic, List, Optional, Tuple, TypeVar

T = TypeVar("T")

LOGGER = logging.getLogger("facereco.workers")


class PendingQueue(Generic[T]):
    """Thread-safe FIFO with ``clear()`` and non-blocking ``pop()``."""

    def __init__(self) -> None:
        self._items: Deque[T] = deque()
        self._lock = threading.Lock()

    def push(self, item: T) -> None:
        with self._lock:
            self._items.append(item)

    def pop(self) -> Optional[T]:
        with self._lock:
            if not self._items:
                return None
            return self._items.popleft()

    def clear(self) -> int:
        with self._lock:
            dropped = len(self._items)
            self._items.clear()
            return dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class CooperativeWorker:
    """Base class for step-chunked workers driven by control messages."""

    name = "worker"
    EVENTS: Tuple[str, ...] = ()

    def __init__(self, poll_interval_s: float = 0.002) -> None:
        self.poll_interval_s = poll_interval_s
        self._controls: "queue.Queue[Tuple[Callable[..., None], Tuple[Any, ...]]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._shutdown = threading.Event()
        self._listeners: Dict[str, List[Callable[..., None]]] = {event: [] for event in self.EVENTS}

    # -- subclass hooks -------------------------------------------------
    @property
    def active(self) -> bool:
        raise NotImplementedError

    def _step(self) -> bool:
        """Do one bounded unit of work. Return False when nothing could be done."""
        raise NotImplementedError

    def _abort(self) -> None:
        """Halt the current session after an unexpected error."""
        raise NotImplementedError

    # -- control messages -----------------------------------------------
    def _post(self, handler: Callable[..., None], *args: Any) -> None:
        self._controls.put((handler, args))

    def _dispatch_controls(self) -> int:
        handled = 0
        while True:
            try:
                handler, args = self._controls.get_nowait()
            except queue.Empty:
                return handled
            try:
                handler(*args)
            except Exception:
                LOGGER.exception("%s control message %s failed", self.name, handler.__name__)
            handled += 1

    def run_once(self) -> bool:
        """Dispatch pending control messages, then run a single step if active."""
        handled = self._dispatch_controls()
        if not self.active:
            return handled > 0
        try:
            return self._step()
        except Exception:
            LOGGER.exception("%s step failed; halting session", self.name)
            self._abort()
            return True

    def run_until_idle(self, max_steps: Optional[int] = None) -> int:
        """Run on the calling thread until no further progress can be made.

        Returns the number of productive iterations.
        """
        steps = 0
        while max_steps is None or steps < max_steps:
            if not self.run_once():
                break
            steps += 1
        return steps

    # -- background thread ------------------------------------------------
    @property
    def running(self) -> bool:
        """True while the loop runs on its own thread."""
        return self._thread is not None and self._thread.is_alive()

    def start_thread(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._shutdown.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        LOGGER.debug("%s thread started", self.name)

    def shutdown(self, timeout: float = 2.0) -> None:
        self._shutdown.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None

    def _run_loop(self) -> None:
        while not self._shutdown.is_set():
            if self.active or not self._controls.empty():
                if not self.run_once():
                    # Input queue empty: poll again shortly.
                    self._shutdown.wait(self.poll_interval_s)
                continue
            try:
                handler, args = self._controls.get(timeout=0.05)
            except queue.Empty:
                continue
            try:
                handler(*args)
            except Exception:
                LOGGER.exception("%s control message %s failed", self.name, handler.__name__)

    # -- events ---------------------------------------------------------------
    def connect(self, event: str, callback: Callable[..., None]) -> None:
        """Register ``callback`` for ``event``; it runs on the worker's thread."""
        if event not in self._listeners:
            raise ValueError(f"{self.name} has no event {event!r}; expected one of {self.EVENTS}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            callback(*args)
