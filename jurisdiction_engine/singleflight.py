"""Collapse concurrent identical lookups into one upstream call."""

import logging
import threading
from typing import Callable, Dict, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Call:
    def __init__(self):
        self.done = threading.Event()
        self.result = None
        self.error: BaseException = None
        self.waiters = 0


class SingleFlight:
    """Per-key call deduplication.

    The first caller for a key runs ``fn``; callers arriving while it runs
    block until it finishes and receive the same result, or the same
    exception re-raised.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._calls: Dict[str, _Call] = {}
        self.collapsed = 0

    def do(self, key: str, fn: Callable[[], T]) -> T:
        with self._lock:
            call = self._calls.get(key)
            if call is not None:
                call.waiters += 1
                self.collapsed += 1
                leader = False
            else:
                call = _Call()
                self._calls[key] = call
                leader = True

        if not leader:
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.result

        try:
            call.result = fn()
        except BaseException as e:
            call.error = e
            raise
        finally:
            with self._lock:
                del self._calls[key]
            call.done.set()
            if call.waiters:
                logger.debug(f"Single-flight: {call.waiters} waiter(s) shared the lookup for {key}")
        return call.result

    def in_flight(self) -> int:
        with self._lock:
            return len(self._calls)
