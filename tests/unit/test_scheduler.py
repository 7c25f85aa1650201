from threading import Event
from typing import List, Optional

from atomix_controller.errors import ConflictError
from atomix_controller.reconcile import DONE, REQUEUE, Deadline, Reconciler, Result
from atomix_controller.resources import ObjectKey, ResourceKind
from atomix_manager.scheduler import (
    Controller,
    ItemExponentialFailureRateLimiter,
    WorkQueue,
)

KEY = ObjectKey("default", "app")


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class RecordingReconciler(Reconciler):
    kind = ResourceKind.PROFILE

    def __init__(self, results: Optional[List[object]] = None) -> None:
        self.results = list(results or [])
        self.calls: List[ObjectKey] = []
        self.deadlines: List[Deadline] = []

    def reconcile(self, key, deadline=None) -> Result:
        self.calls.append(key)
        self.deadlines.append(deadline)
        outcome = self.results.pop(0) if self.results else DONE
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def build_controller(results=None, clock=None):
    clock = clock or FakeClock()
    reconciler = RecordingReconciler(results)
    queue = WorkQueue(ItemExponentialFailureRateLimiter(0.5, 4.0), clock=clock)
    controller = Controller("profile-controller", reconciler, queue=queue, reconcile_timeout=10)
    return controller, reconciler, clock


def test_rate_limiter_backs_off_exponentially():
    limiter = ItemExponentialFailureRateLimiter(0.01, 0.05)

    delays = [limiter.when(KEY) for _ in range(5)]

    assert delays == [0.01, 0.02, 0.04, 0.05, 0.05]
    assert limiter.num_requeues(KEY) == 5
    limiter.forget(KEY)
    assert limiter.when(KEY) == 0.01


def test_queue_coalesces_pending_keys():
    queue = WorkQueue()

    queue.add(KEY)
    queue.add(KEY)
    queue.add(ObjectKey("default", "other"))

    assert len(queue) == 2


def test_key_is_never_handed_out_twice():
    queue = WorkQueue()
    queue.add(KEY)

    assert queue.get(timeout=0) == KEY
    queue.add(KEY)
    assert len(queue) == 0
    assert queue.get(timeout=0) is None

    queue.done(KEY)
    assert queue.get(timeout=0) == KEY


def test_delayed_keys_wait_for_the_clock():
    clock = FakeClock()
    queue = WorkQueue(clock=clock)

    queue.add_after(KEY, 2.0)
    assert queue.get(timeout=0) is None
    assert queue.pending_delayed() == 1

    clock.now += 2.0
    assert queue.get(timeout=0) == KEY
    assert queue.pending_delayed() == 0


def test_shutdown_releases_waiters():
    queue = WorkQueue()
    queue.shutdown()

    queue.add(KEY)

    assert queue.get() is None


def test_controller_requeues_after_transition():
    controller, reconciler, _ = build_controller([REQUEUE, REQUEUE, DONE])
    controller.enqueue(KEY)

    assert controller.drain() == 3
    assert reconciler.calls == [KEY, KEY, KEY]


def test_controller_passes_reconcile_deadline():
    controller, reconciler, clock = build_controller()
    controller.enqueue(KEY)

    controller.drain()

    assert 0 < reconciler.deadlines[0].remaining() <= 10


def test_controller_backs_off_failed_keys():
    controller, reconciler, clock = build_controller(
        [ConflictError("stale"), ValueError("boom"), DONE]
    )
    controller.enqueue(KEY)

    assert controller.drain() == 1
    assert controller.queue.num_requeues(KEY) == 1
    assert controller.queue.pending_delayed() == 1

    clock.now += 0.5
    assert controller.drain() == 1
    assert controller.queue.num_requeues(KEY) == 2

    clock.now += 0.5
    assert controller.drain() == 0
    clock.now += 0.5
    assert controller.drain() == 1
    assert controller.queue.num_requeues(KEY) == 0
    assert len(reconciler.calls) == 3


def test_controller_requeue_after():
    controller, reconciler, clock = build_controller([Result(requeue_after=30.0)])
    controller.enqueue(KEY)

    controller.drain()
    assert controller.queue.pending_delayed() == 1

    clock.now += 30.0
    controller.drain()
    assert reconciler.calls == [KEY, KEY]


def test_controller_watches():
    controller, _, _ = build_controller()

    controller.watch(ResourceKind.PROFILE).watch(
        ResourceKind.POD, lambda obj: [KEY]
    )

    assert controller.kind is ResourceKind.PROFILE
    assert controller.watched_kinds() == [ResourceKind.PROFILE, ResourceKind.POD]
    assert len(controller.mappers_for(ResourceKind.POD)) == 1
    assert controller.mappers_for(ResourceKind.STORE) == []


class SignallingReconciler(RecordingReconciler):
    def __init__(self) -> None:
        super().__init__()
        self.called = Event()

    def reconcile(self, key, deadline=None) -> Result:
        result = super().reconcile(key, deadline)
        self.called.set()
        return result


def test_controller_workers_process_queue():
    reconciler = SignallingReconciler()
    controller = Controller("profile-controller", reconciler, workers=2)
    controller.enqueue(KEY)

    controller.start()
    try:
        assert reconciler.called.wait(2.0)
    finally:
        controller.stop(timeout=2.0)

    assert reconciler.calls == [KEY]
