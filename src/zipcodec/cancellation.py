"""Cooperative cancellation for long-running archive operations."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from .exceptions import CancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Read-only view of a cancellation request.

    Operations poll ``is_cancellation_requested`` at safe points (between
    entries, between chunks) and register cleanup with
    ``on_cancellation_requested``.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_cancellation_requested(self) -> bool:
        return self._event.is_set()

    def on_cancellation_requested(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Run *callback* when cancellation is requested.

        The callback runs immediately if cancellation was already requested.

        Returns:
            A function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def dispose() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return dispose
        callback()
        return lambda: None

    def raise_if_cancellation_requested(self) -> None:
        if self._event.is_set():
            raise CancelledError()

    def _cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        logger.debug("Cancellation requested")
        for callback in callbacks:
            callback()


class CancellationTokenSource:
    """Owner side of a :class:`CancellationToken`.

    Example:
        >>> source = CancellationTokenSource()
        >>> threading.Thread(target=extract, args=("a.zip", "out"), kwargs={"token": source.token}).start()
        >>> source.cancel()
    """

    def __init__(self) -> None:
        self.token = CancellationToken()

    def cancel(self) -> None:
        self.token._cancel()

