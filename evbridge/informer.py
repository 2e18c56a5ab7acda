"""Watches a reflector for changed keys and hands them to a handler, retrying failures."""

from __future__ import annotations

import logging
import queue
import random
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, TypeVar

from evbridge.priority_queue import Item, PriorityQueue

log = logging.getLogger(__name__)

DEFAULT_DELTA_QUEUE_SIZE = 1024
DEFAULT_RETRY_QUEUE_SIZE = 1024
DEFAULT_WORKER_NUM = 20

_DAY = 24 * 3600.0
_STOP = object()

T = TypeVar("T")


class ReflectorClosedError(Exception):
    """Raised by :meth:`Reflector.watch` once the reflector has been closed."""

    def __init__(self, message: str = "reflector closed") -> None:
        super().__init__(message)


class PermanentError(Exception):
    """Wraps an error that :func:`retry` must not retry."""

    def __init__(self, err: BaseException) -> None:
        super().__init__(str(err))
        self.err = err


def is_reflector_closed_error(err: Optional[BaseException]) -> bool:
    """Tell whether ``err`` is, wraps or was caused by a :class:`ReflectorClosedError`."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, ReflectorClosedError):
            return True
        seen.add(id(err))
        err = err.err if isinstance(err, PermanentError) else err.__cause__
    return False


class Reflector(ABC):
    """Source of changed keys and their current values."""

    @abstractmethod
    def watch(self) -> list[str]:
        """Block until some keys change and return them.

        Raises :class:`ReflectorClosedError` once the reflector is closed.
        Called from a single thread only.
        """

    @abstractmethod
    def get(self, key: str) -> Any:
        """Return the current value of ``key``, or ``None`` if it no longer exists.

        Must be thread-safe.
        """

    @abstractmethod
    def close(self) -> None:
        """Release the reflector; pending and later watches raise ReflectorClosedError."""


class Handler(ABC):
    """Processes keys reported by a reflector."""

    @abstractmethod
    def handle(self, key: str) -> None:
        """Handle ``key``; raise to have it retried. Must be thread-safe."""


class ExponentialBackOff:
    """Randomised exponential back-off that gives up after a maximum elapsed time.

    :meth:`next_backoff` returns the delay in seconds, or ``None`` once the
    policy says to stop. A ``max_elapsed_time`` of zero never stops.
    """

    def __init__(
        self,
        initial_interval: float = 0.5,
        randomization_factor: float = 0.5,
        multiplier: float = 1.5,
        max_interval: float = 60.0,
        max_elapsed_time: float = 15 * 60.0,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.initial_interval = initial_interval
        self.randomization_factor = randomization_factor
        self.multiplier = multiplier
        self.max_interval = max_interval
        self.max_elapsed_time = max_elapsed_time
        self._clock = clock
        self._rng = rng
        self._current = initial_interval
        self._start = clock()

    def reset(self) -> None:
        """Start over from the initial interval."""
        self._current = self.initial_interval
        self._start = self._clock()

    def next_backoff(self) -> Optional[float]:
        """Return the next delay in seconds, or ``None`` to stop retrying."""
        elapsed = self._clock() - self._start
        current = self._current
        if self.randomization_factor == 0:
            delay = current
        else:
            delta = self.randomization_factor * current
            low, high = current - delta, current + delta
            delay = low + self._rng() * (high - low)

        if current >= self.max_interval / self.multiplier:
            self._current = self.max_interval
        else:
            self._current = current * self.multiplier

        if self.max_elapsed_time and elapsed + delay > self.max_elapsed_time:
            return None
        return delay


def retry(
    operation: Callable[[], T],
    backoff: Optional[ExponentialBackOff] = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """Call ``operation`` until it succeeds, sleeping as ``backoff`` dictates.

    A :class:`PermanentError` stops at once and its wrapped error is raised.
    When the back-off gives up, the last error is raised.
    """
    policy = backoff if backoff is not None else ExponentialBackOff()
    policy.reset()
    while True:
        try:
            return operation()
        except PermanentError as permanent:
            raise permanent.err
        except Exception:
            delay = policy.next_backoff()
            if delay is None:
                raise
            sleep(delay)


class Informer:
    """Feeds keys from a reflector to a handler on a worker pool.

    Keys whose handling fails are retried with exponential back-off for up to
    a day; a key reported again while waiting has its back-off restarted.
    """

    def __init__(
        self,
        reflector: Reflector,
        handler: Handler,
        delta_queue_size: int = DEFAULT_DELTA_QUEUE_SIZE,
        retry_queue_size: int = DEFAULT_RETRY_QUEUE_SIZE,
        worker_num: int = DEFAULT_WORKER_NUM,
    ) -> None:
        self.reflector = reflector
        self.handler = handler
        self.worker_num = worker_num
        self._delta_queue: queue.Queue[Any] = queue.Queue(maxsize=delta_queue_size)
        self._retry_queue: queue.Queue[Any] = queue.Queue(maxsize=retry_queue_size)
        self._slots = threading.BoundedSemaphore(worker_num)
        self._closed = threading.Event()

    def watch_and_handle(self) -> None:
        """Watch and handle keys until :meth:`close` is called; blocks."""
        delta_thread = threading.Thread(
            target=self._consume_deltas, name="informer-delta", daemon=True
        )
        retry_thread = threading.Thread(
            target=self._consume_retries, name="informer-retry", daemon=True
        )
        delta_thread.start()
        retry_thread.start()
        try:
            while not self._closed.is_set():
                keys = self._watch()
                if keys is None:
                    continue
                for key in keys:
                    self._delta_queue.put(key)
        finally:
            self._delta_queue.put(_STOP)
            delta_thread.join()
            retry_thread.join()

    def close(self) -> None:
        """Stop watching and close the reflector."""
        self._closed.set()
        try:
            self.reflector.close()
        except Exception as err:  # noqa: BLE001 - a failed close is only reported
            log.error("close reflector failed: %s", err)

    def _watch(self) -> Optional[list[str]]:
        try:
            return list(self.reflector.watch())
        except Exception as err:
            if is_reflector_closed_error(err):
                return None
            log.error("watch error: %s", err)

        def attempt() -> list[str]:
            try:
                return list(self.reflector.watch())
            except Exception as err:
                if is_reflector_closed_error(err):
                    raise PermanentError(err) from err
                log.error("retry watch error: %s", err)
                raise

        try:
            return retry(attempt, ExponentialBackOff(max_elapsed_time=_DAY), self._closed.wait)
        except Exception as err:
            if not is_reflector_closed_error(err):
                log.error("retry watch failed after 24 hours: %s", err)
            return None

    def _consume_deltas(self) -> None:
        with ThreadPoolExecutor(
            max_workers=self.worker_num, thread_name_prefix="informer-worker"
        ) as pool:
            while True:
                key = self._delta_queue.get()
                if key is _STOP:
                    break
                self._slots.acquire()
                pool.submit(self._handle_delta, key)
        self._retry_queue.put(_STOP)

    def _handle_delta(self, key: str) -> None:
        try:
            self.handler.handle(key)
        except Exception as err:
            log.error("handle key %s error: %s", key, err)
            self._retry_queue.put(key)
        finally:
            self._slots.release()

    def _consume_retries(self) -> None:
        pq = PriorityQueue()
        items: dict[str, Item] = {}
        while True:
            timeout = max(0.0, pq.peek().priority - time.monotonic()) if pq else _DAY
            try:
                key = self._retry_queue.get(timeout=timeout)
            except queue.Empty:
                if pq:
                    self._retry_due(pq, items)
                continue

            if key is _STOP:
                return

            item = items.get(key)
            if item is None:
                policy = ExponentialBackOff(max_elapsed_time=_DAY)
                delay = policy.next_backoff() or 0.0
                item = Item(value=key, priority=time.monotonic() + delay, backoff=policy)
                items[key] = item
                pq.push(item)
                continue

            item.backoff.reset()
            delay = item.backoff.next_backoff() or 0.0
            pq.update(item, key, time.monotonic() + delay)

    def _retry_due(self, pq: PriorityQueue, items: dict[str, Item]) -> None:
        item = pq.pop()
        key = item.value
        try:
            self.handler.handle(key)
        except Exception as err:
            delay = item.backoff.next_backoff()
            if delay is None:
                del items[key]
                log.error("handle key %s error: %s, stop retry", key, err)
                return
            item.priority = time.monotonic() + delay
            pq.push(item)
            log.error("handle key %s error: %s, retry after %.3fs", key, err, delay)
            return
        del items[key]