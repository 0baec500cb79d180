from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from panelhub.core.logging import short_error
from panelhub.services.adapters.base import BackendUnavailableError, OperationCancelledError

logger = logging.getLogger(__name__)


class CancelToken:
    """Cancellation signal shared between a caller and an in-flight operation.

    Transports register closers that shut their socket down; ``cancel()``
    runs them from the caller's thread, which unblocks pending I/O in the
    worker thread.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            self._run(cb)

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._unregister(callback)
        self._run(callback)
        return lambda: None

    def _unregister(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            logger.debug("cancel callback failed err=%s", short_error(e))


@dataclass(frozen=True)
class OperationScope:
    deadline: Optional[float] = None  # time.monotonic() based
    token: Optional[CancelToken] = None

    @property
    def cancelled(self) -> bool:
        return bool(self.token and self.token.cancelled)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def check(self) -> None:
        if self.cancelled:
            raise OperationCancelledError("operation cancelled by caller")
        left = self.remaining()
        if left is not None and left <= 0:
            raise BackendUnavailableError("deadline exceeded")

    def timeout(self, default: float) -> float:
        """The shorter of ``default`` and what is left of the deadline."""
        self.check()
        left = self.remaining()
        if left is None:
            return default
        return max(0.001, min(default, left))

    @contextmanager
    def on_cancel(self, callback: Callable[[], None]) -> Iterator[None]:
        if self.token is None:
            yield
            return
        unregister = self.token.register(callback)
        try:
            yield
        finally:
            unregister()


_current: ContextVar[OperationScope] = ContextVar("panelhub_operation_scope", default=OperationScope())


def current_scope() -> OperationScope:
    return _current.get()


@contextmanager
def operation_scope(
    deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
) -> Iterator[OperationScope]:
    """Bind a deadline (seconds from now) and/or cancel token to the calling context."""
    parent = _current.get()
    absolute = time.monotonic() + deadline if deadline is not None else None
    if parent.deadline is not None and (absolute is None or parent.deadline < absolute):
        absolute = parent.deadline
    scope = OperationScope(deadline=absolute, token=cancel or parent.token)
    reset = _current.set(scope)
    try:
        yield scope
    finally:
        _current.reset(reset)
