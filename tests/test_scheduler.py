import threading

import pytest

from taskweave.memory import Allocator, TrackedAllocator
from taskweave.scheduler import (
    Config,
    Fiber,
    FiberState,
    Scheduler,
    WaitingFibers,
    schedule,
)
from taskweave.task import Task


class _Countdown:
    def __init__(self, n):
        self.remaining = n
        self.lock = threading.Lock()
        self.finished = threading.Event()

    def tick(self):
        with self.lock:
            self.remaining -= 1
            if self.remaining == 0:
                self.finished.set()


def test_construct_and_shutdown():
    scheduler = Scheduler(Config())
    scheduler.shutdown()
    assert Scheduler.get() is None


def test_bind_get_unbind():
    scheduler = Scheduler(Config())
    scheduler.bind()
    assert Scheduler.get() is scheduler
    scheduler.unbind()
    assert Scheduler.get() is None
    scheduler.shutdown()


def test_bind_twice_raises():
    scheduler = Scheduler(Config())
    scheduler.bind()
    try:
        with pytest.raises(RuntimeError):
            scheduler.bind()
    finally:
        scheduler.unbind()
        scheduler.shutdown()


def test_unbind_without_bind_raises():
    with pytest.raises(RuntimeError):
        Scheduler(Config()).unbind()


def test_check_config():
    allocator = TrackedAllocator(Allocator.default)
    cfg = Config().set_allocator(allocator).set_worker_thread_count(10)
    with Scheduler(cfg) as scheduler:
        got = scheduler.config()
        assert got.allocator is allocator
        assert got.worker_thread_count == 10
    assert allocator.stats().num_allocations() == 0


def test_all_cores_config():
    assert Config.all_cores().worker_thread_count >= 1


def test_destruct_with_pending_tasks():
    scheduler = Scheduler(Config())
    scheduler.bind()
    counter = []
    for _ in range(1000):
        schedule(lambda: counter.append(1))
    scheduler.unbind()
    scheduler.shutdown()
    assert len(counter) == 1000


def test_schedule_with_args():
    scheduler = Scheduler(Config())
    scheduler.bind()
    got = []
    schedule(
        lambda s, i, b: got.append(f"s: '{s}', i: {i}, b: {str(b).lower()}"),
        "a string", 42, True,
    )
    scheduler.unbind()
    scheduler.shutdown()
    assert got == ["s: 'a string', i: 42, b: true"]


def test_tasks_only_scheduled_on_worker_threads():
    with Scheduler(Config().set_worker_thread_count(8)) as scheduler:
        threads = set()
        lock = threading.Lock()
        countdown = _Countdown(2000)

        def record():
            with lock:
                threads.add(threading.get_ident())
            countdown.tick()

        for _ in range(2000):
            scheduler.enqueue(Task(record))
        assert countdown.finished.wait(30)
        assert 1 <= len(threads) <= scheduler.config().worker_thread_count
        assert threading.get_ident() not in threads


def test_workers_are_bound_to_scheduler():
    with Scheduler(Config().set_worker_thread_count(4)) as scheduler:
        seen = []
        countdown = _Countdown(100)

        def check():
            seen.append(Scheduler.get())
            countdown.tick()

        for _ in range(100):
            scheduler.enqueue(Task(check))
        assert countdown.finished.wait(30)
        assert seen == [scheduler] * 100


def test_schedule_single_threaded_without_bind_raises():
    scheduler = Scheduler(Config())
    with pytest.raises(RuntimeError, match="Did you forget to call"):
        scheduler.enqueue(Task(lambda: None))
    scheduler.shutdown()


def test_fiber_wait_and_notify_single_threaded():
    scheduler = Scheduler(Config())
    scheduler.bind()
    lock = threading.Lock()
    state = {"flag": False}
    fibers = []
    results = []

    def waiter():
        with lock:
            fiber = Fiber.current()
            fibers.append(fiber)
            results.append(fiber.wait(lock, lambda: state["flag"]))

    def signaller():
        with lock:
            state["flag"] = True
        fibers[0].notify()

    schedule(waiter)
    schedule(signaller)
    scheduler.unbind()
    assert Scheduler.get() is None
    scheduler.shutdown()
    assert results == [True]
    assert len(fibers) == 1


def test_fiber_wait_timeout_single_threaded():
    scheduler = Scheduler(Config())
    scheduler.bind()
    lock = threading.Lock()
    results = []

    def waiter():
        with lock:
            results.append(Fiber.current().wait(lock, lambda: False, 0.02))

    schedule(waiter)
    scheduler.unbind()
    assert Scheduler.get() is None
    scheduler.shutdown()
    assert results == [False]


def test_fiber_wait_multi_threaded():
    with Scheduler(Config().set_worker_thread_count(2)) as scheduler:
        lock = threading.Lock()
        state = {"flag": False}
        registered = threading.Event()
        fibers = []
        countdown = _Countdown(1)
        results = []

        def waiter():
            with lock:
                fibers.append(Fiber.current())
                registered.set()
                results.append(fibers[0].wait(lock, lambda: state["flag"]))
            countdown.tick()

        scheduler.enqueue(Task(waiter))
        assert registered.wait(10)
        assert Fiber.current() is None
        with lock:
            state["flag"] = True
        fibers[0].notify()
        assert countdown.finished.wait(10)
        assert results == [True]


def test_fiber_current_outside_worker_is_none():
    assert Fiber.current() is None


def test_fiber_state_strings():
    scheduler = Scheduler(Config())
    scheduler.bind()
    observed = []
    schedule(lambda: observed.append(str(Fiber.current().state)))
    scheduler.unbind()
    scheduler.shutdown()
    assert observed == ["Running"]
    assert [str(s) for s in FiberState] == [
        "Idle", "Yielded", "Queued", "Running", "Waiting",
    ]


class _Dummy:
    pass


def test_waiting_fibers_ordering():
    waiting = WaitingFibers()
    assert not waiting
    a, b, c = _Dummy(), _Dummy(), _Dummy()
    waiting.add(3.0, a)
    waiting.add(1.0, b)
    waiting.add(2.0, c)
    assert waiting
    assert waiting.next() == 1.0
    assert waiting.take(0.5) is None
    assert waiting.take(2.5) is b
    assert waiting.take(2.5) is c
    assert waiting.take(2.5) is None
    assert a in waiting
    assert waiting.take(10.0) is a
    assert not waiting


def test_waiting_fibers_erase():
    waiting = WaitingFibers()
    a, b = _Dummy(), _Dummy()
    waiting.add(1.0, a)
    waiting.add(1.0, b)
    waiting.erase(a)
    assert a not in waiting
    assert b in waiting
    waiting.erase(a)
    assert waiting.take(5.0) is b
    assert not waiting


def test_waiting_fibers_errors():
    waiting = WaitingFibers()
    with pytest.raises(RuntimeError):
        waiting.next()
    a = _Dummy()
    waiting.add(1.0, a)
    with pytest.raises(RuntimeError):
        waiting.add(2.0, a)


def test_config_rejects_negative_count():
    with pytest.raises(ValueError):
        Config().set_worker_thread_count(-1)


def test_schedule_without_bound_scheduler_raises():
    with pytest.raises(RuntimeError):
        schedule(lambda: None)