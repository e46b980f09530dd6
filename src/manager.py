"""Work queue and worker pool driving the Reconciler.

A key is never handed to two workers at once: adding a key that is being
processed marks it dirty and it is queued again when the pass finishes.
Delayed requeues sit in a timer heap until due, one timer per key (the
earliest).
"""

import heapq
import itertools
import logging
import signal
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Optional, Union

from api.types import ObjectKey
from cluster.store import ResourceStore
from config import ControllerConfig
from reconciler.core import Reconciler

logger = logging.getLogger(__name__)

BACKOFF_BASE = 0.005
BACKOFF_MAX = 1000.0


def _seconds(delay: Union[timedelta, float, int, None]) -> float:
    if delay is None:
        return 0.0
    if isinstance(delay, timedelta):
        return delay.total_seconds()
    return float(delay)


class RateLimiter:
    """Per-key exponential backoff: base * 2**failures, capped."""

    def __init__(self, base: float = BACKOFF_BASE, maximum: float = BACKOFF_MAX):
        self.base = base
        self.maximum = maximum
        self._failures: dict[ObjectKey, int] = {}
        self._lock = threading.Lock()

    def when(self, key: ObjectKey) -> float:
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return min(self.base * (2 ** failures), self.maximum)

    def failures(self, key: ObjectKey) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: ObjectKey) -> None:
        with self._lock:
            self._failures.pop(key, None)


class WorkQueue:
    """Deduplicating FIFO of ObjectKeys with delayed adds."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[ObjectKey] = deque()
        self._dirty: set[ObjectKey] = set()
        self._processing: set[ObjectKey] = set()
        self._waiting: list[tuple[float, int, ObjectKey]] = []
        self._due: dict[ObjectKey, float] = {}
        self._seq = itertools.count()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutdown

    def _add_locked(self, key: ObjectKey) -> None:
        if self._shutdown or key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.append(key)
            self._cond.notify()

    def add(self, key: ObjectKey) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: ObjectKey, delay: Union[timedelta, float, int, None]) -> None:
        """Queue key once delay has passed; a key keeps only its earliest timer."""
        seconds = _seconds(delay)
        if seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            due = self._clock() + seconds
            current = self._due.get(key)
            if current is not None and current <= due:
                return
            self._due[key] = due
            heapq.heappush(self._waiting, (due, next(self._seq), key))
            self._cond.notify()

    def _promote_due_locked(self) -> Optional[float]:
        """Move due timers into the queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            due, _, key = heapq.heappop(self._waiting)
            # Entries replaced by an earlier timer for the same key are skipped
            if self._due.get(key) != due:
                continue
            del self._due[key]
            self._add_locked(key)
        while self._waiting and self._due.get(self._waiting[0][2]) != self._waiting[0][0]:
            heapq.heappop(self._waiting)
        if self._waiting:
            return self._waiting[0][0] - now
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[ObjectKey]:
        """Block for the next key; None on shutdown or timeout."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutdown:
                    return None
                wait = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: ObjectKey) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()


class Manager:
    """Runs reconcile passes on a bounded pool of workers.

    Args:
        reconciler: Reconciler to drive
        store: Store listed on every resync and watched when it supports it
        config: Supplies worker count and resync period
    """

    def __init__(self, reconciler: Reconciler, store: ResourceStore, config: Optional[ControllerConfig] = None):
        self.reconciler = reconciler
        self.store = store
        self.config = config or reconciler.config
        self.queue = WorkQueue()
        self.limiter = RateLimiter()
        self._stop = threading.Event()
        self._cancels: dict[ObjectKey, threading.Event] = {}
        self._cancels_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._threads: list[threading.Thread] = []

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def enqueue_all(self) -> int:
        resources = self.store.list()
        for resource in resources:
            self.queue.add(resource.key)
        return len(resources)

    def process(self, key: ObjectKey) -> None:
        """Run one pass for key and schedule what comes next."""
        cancel = threading.Event()
        with self._cancels_lock:
            self._cancels[key] = cancel
        if self._stop.is_set():
            cancel.set()
        try:
            result = self.reconciler.reconcile_object(key, cancel)
        except Exception as e:
            delay = self.limiter.when(key)
            logger.error(f"[{key}] Reconcile error: {e}, retrying in {delay:.3f}s")
            self.queue.add_after(key, delay)
        else:
            if result.requeue_after:
                self.limiter.forget(key)
                self.queue.add_after(key, result.requeue_after)
            elif result.requeue:
                self.queue.add_after(key, self.limiter.when(key))
            else:
                self.limiter.forget(key)
        finally:
            with self._cancels_lock:
                self._cancels.pop(key, None)
            self.queue.done(key)

    def _worker(self) -> None:
        while not self._stop.is_set():
            key = self.queue.get(timeout=1.0)
            if key is None:
                continue
            self.process(key)

    def _resync(self) -> None:
        period = _seconds(self.config.resync_period)
        while not self._stop.wait(period):
            try:
                count = self.enqueue_all()
                logger.debug(f"Resync queued {count} object(s)")
            except Exception as e:
                logger.error(f"Resync failed: {e}")

    def _watch(self) -> None:
        try:
            self.store.watch(self.queue.add, self._stop)
        except Exception as e:
            logger.error(f"Watch stopped: {e}")

    def start(self) -> None:
        workers = self.config.max_concurrent_reconciles
        logger.info(f"Starting manager with {workers} worker(s)")
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='reconcile')
        for _ in range(workers):
            self._executor.submit(self._worker)

        self.enqueue_all()
        self._threads.append(threading.Thread(target=self._resync, name='resync', daemon=True))
        if hasattr(self.store, 'watch'):
            self._threads.append(threading.Thread(target=self._watch, name='watch', daemon=True))
        for thread in self._threads:
            thread.start()

    def stop(self, wait: bool = True) -> None:
        """Cancel in-flight passes and stop the workers."""
        if self._stop.is_set():
            return
        logger.info("Stopping manager")
        self._stop.set()
        with self._cancels_lock:
            for cancel in self._cancels.values():
                cancel.set()
        self.queue.shut_down()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def run(self) -> None:
        """Start and block until SIGTERM or Ctrl-C."""
        def handle_sigterm(signum, frame):
            logger.info("Received SIGTERM")
            self.stop(wait=False)

        signal.signal(signal.SIGTERM, handle_sigterm)
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Shutdown requested")
        finally:
            self.stop()
