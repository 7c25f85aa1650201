"""Work queue, rate limiter and controller worker pool.

The queue follows the usual controller discipline:

* a key waiting in the queue is stored once no matter how often it is added
  (updates are coalesced);
* a key being processed is never handed to a second worker; adding it while
  it is processing marks it dirty and it is queued again once the worker
  calls :meth:`WorkQueue.done`;
* failed keys come back through :meth:`WorkQueue.add_rate_limited` after a
  per-key exponential backoff.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from collections import deque
from threading import Condition, Event, Thread
from typing import Callable, Deque, Dict, Hashable, List, Optional, Set, Tuple

from atomix_controller.errors import AtomixError
from atomix_controller.reconcile import Deadline, Reconciler
from atomix_controller.resources import ObjectKey, ResourceKind

LOG = logging.getLogger(__name__)

Clock = Callable[[], float]


class ItemExponentialFailureRateLimiter:
    """Per-item delay of ``base * 2**failures`` capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.01, max_delay: float = 5.0) -> None:
        self._base = base_delay
        self._max = max_delay
        self._failures: Dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        failures = self._failures.get(item, 0)
        self._failures[item] = failures + 1
        # keep 2**failures within float range
        if failures > 62:
            return self._max
        return min(self._base * (2 ** failures), self._max)

    def forget(self, item: Hashable) -> None:
        self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        return self._failures.get(item, 0)


class WorkQueue:
    def __init__(
        self,
        rate_limiter: Optional[ItemExponentialFailureRateLimiter] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()
        self._clock = clock
        self._cond = Condition()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._waiting: List[Tuple[float, int, Hashable]] = []
        self._seq = itertools.count()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutdown

    def add(self, item: Hashable) -> None:
        with self._cond:
            self._add_locked(item)

    def add_after(self, item: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutdown:
                return
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._seq), item))
            self._cond.notify()

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self._rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self._rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self._rate_limiter.num_requeues(item)

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """Return the next item, or ``None`` on timeout or shutdown."""

        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_waiting()
                if self._queue:
                    item = self._queue.popleft()
                    self._dirty.discard(item)
                    self._processing.add(item)
                    return item
                if self._shutdown:
                    return None
                wait = self._next_wait(deadline)
                if wait is not None and wait <= 0:
                    return None
                self._cond.wait(wait)

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._waiting)

    # ------------------------------------------------------------------
    # Internals (caller holds the condition)
    # ------------------------------------------------------------------
    def _add_locked(self, item: Hashable) -> None:
        if self._shutdown or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify()

    def _promote_waiting(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, item = heapq.heappop(self._waiting)
            self._add_locked(item)

    def _next_wait(self, deadline: Optional[float]) -> Optional[float]:
        now = self._clock()
        candidates = []
        if deadline is not None:
            candidates.append(deadline - now)
        if self._waiting:
            candidates.append(max(self._waiting[0][0] - now, 0.001))
        return min(candidates) if candidates else None


Mapper = Callable[[dict], List[ObjectKey]]


def enqueue_object(obj: dict) -> List[ObjectKey]:
    """Map an object to its own key."""

    return [ObjectKey.of(obj)]


class Controller:
    """Drive one :class:`~atomix_controller.reconcile.Reconciler` from a queue.

    Watches are declared with :meth:`watch`; the
    :class:`~atomix_manager.registry.ControllerRegistry` feeds matching events
    through the mapper and enqueues the resulting keys.  Workers reconcile
    keys concurrently but never the same key twice at once.
    """

    def __init__(
        self,
        name: str,
        reconciler: Reconciler,
        *,
        workers: int = 1,
        reconcile_timeout: Optional[float] = None,
        queue: Optional[WorkQueue] = None,
    ) -> None:
        self.name = name
        self._reconciler = reconciler
        self._workers = workers
        self._timeout = reconcile_timeout
        self.queue = queue or WorkQueue()
        self._watches: Dict[ResourceKind, List[Mapper]] = {}
        self._threads: List[Thread] = []
        self._stop = Event()

    @property
    def kind(self) -> ResourceKind:
        return self._reconciler.kind

    def watch(self, kind: ResourceKind, mapper: Mapper = enqueue_object) -> "Controller":
        self._watches.setdefault(kind, []).append(mapper)
        return self

    def mappers_for(self, kind: ResourceKind) -> List[Mapper]:
        return list(self._watches.get(kind, ()))

    def watched_kinds(self) -> List[ResourceKind]:
        return list(self._watches)

    def enqueue(self, key: ObjectKey) -> None:
        self.queue.add(key)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------
    def process_next(self, timeout: Optional[float] = None) -> bool:
        key = self.queue.get(timeout)
        if key is None:
            return False
        try:
            self._reconcile(key)
        finally:
            self.queue.done(key)
        return True

    def _reconcile(self, key) -> None:
        try:
            result = self._reconciler.reconcile(key, Deadline(self._timeout))
        except AtomixError as exc:
            LOG.warning(
                "%s: reconcile of '%s' failed (%s): %s; retry %d",
                self.name,
                key,
                exc.code,
                exc,
                self.queue.num_requeues(key) + 1,
            )
            self.queue.add_rate_limited(key)
            return
        except Exception:
            LOG.exception("%s: unexpected error reconciling '%s'", self.name, key)
            self.queue.add_rate_limited(key)
            return

        self.queue.forget(key)
        if result.requeue_after:
            self.queue.add_after(key, result.requeue_after)
        elif result.requeue:
            self.queue.add(key)

    def drain(self, max_iterations: int = 1000) -> int:
        """Process ready keys inline until the queue is empty.

        Delayed (backed-off) keys are not waited for.  Returns the number of
        reconciliations performed.
        """

        processed = 0
        while processed < max_iterations and self.process_next(timeout=0):
            processed += 1
        return processed

    # ------------------------------------------------------------------
    # Worker threads
    # ------------------------------------------------------------------
    def start(self) -> None:
        for index in range(self._workers):
            thread = Thread(
                target=self._run_worker, name=f"{self.name}-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        LOG.info("Started controller %s with %d workers", self.name, self._workers)

    def _run_worker(self) -> None:
        while not self._stop.is_set():
            self.process_next(timeout=0.5)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        LOG.info("Stopped controller %s", self.name)
