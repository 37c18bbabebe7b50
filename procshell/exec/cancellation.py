"""
Cancellation tokens shared by every stage of a run.

A token is a one-way latch: once cancelled it stays cancelled. Callbacks
registered on it run exactly once, on the thread that calls ``cancel()``
(or immediately, if the token is already cancelled).
"""

import logging
import threading
from datetime import timedelta
from typing import Callable, List, Optional, Union


logger = logging.getLogger(__name__)

Callback = Callable[[], None]


class CancellationToken:
    """Thread-safe cancellation signal."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callback] = []
        self._timer: Optional[threading.Timer] = None
        self._unlinks: List[Callable[[], None]] = []

    @classmethod
    def linked(cls, *parents: Optional["CancellationToken"]) -> "CancellationToken":
        """
        Create a token that is cancelled when any parent is cancelled.

        Cancelling the child does not cancel the parents. ``None`` parents
        are ignored, so ``linked(maybe_token)`` is always safe.
        """
        child = cls()
        for parent in parents:
            if parent is not None:
                child._unlinks.append(parent.add_callback(child.cancel))
        return child

    def detach(self) -> None:
        """Stop listening to the parents this token was linked to."""
        unlinks, self._unlinks = self._unlinks, []
        for unlink in unlinks:
            unlink()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Cancel the token and run pending callbacks. Idempotent."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

        for callback in callbacks:
            try:
                callback()
            except Exception:
                # One failing callback must not prevent the others from running
                logger.exception("Cancellation callback failed")

    def cancel_after(self, delay: Union[float, timedelta]) -> "CancellationToken":
        """Schedule cancellation after ``delay`` seconds. Returns self."""
        seconds = delay.total_seconds() if isinstance(delay, timedelta) else float(delay)
        timer = threading.Timer(seconds, self.cancel)
        timer.daemon = True
        with self._lock:
            if self._event.is_set():
                return self
            if self._timer is not None:
                self._timer.cancel()
            self._timer = timer
        timer.start()
        return self

    def add_callback(self, callback: Callback) -> Callable[[], None]:
        """
        Run ``callback`` on cancellation.

        Returns:
            A function that unregisters the callback
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                registered = True
            else:
                registered = False

        if not registered:
            callback()
            return lambda: None

        def remove() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return remove

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. Returns ``cancelled``."""
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
