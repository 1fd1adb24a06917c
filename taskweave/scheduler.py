"""A work-stealing task scheduler whose tasks run on cooperatively switched fibers."""

from __future__ import annotations

import bisect
import enum
import functools
import random
import threading
import time
import traceback
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from .memory import Allocation, Allocator, Request, Usage
from .task import Task, TaskFlags
from .thread import Affinity, Policy, Thread

_local = threading.local()

_SPIN_DURATION = 0.001
_SPIN_CHECKS = 256
_NUM_SPINNING_SLOTS = 8


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise RuntimeError(message)


class _FiberExit(BaseException):
    """Raised inside a fiber that is being torn down."""


class FiberState(enum.Enum):
    """Lifecycle states of a fiber."""

    IDLE = "Idle"
    YIELDED = "Yielded"
    QUEUED = "Queued"
    RUNNING = "Running"
    WAITING = "Waiting"

    def __str__(self) -> str:
        return self.value


@dataclass
class Config:
    """Scheduler configuration. Setters return the config for chaining."""

    worker_thread_count: int = 0
    allocator: Allocator = field(default_factory=lambda: Allocator.default)
    affinity_policy: Optional[Policy] = None
    initializer: Optional[Callable[[int], Any]] = None
    fiber_stack_size: int = 1024 * 1024

    @classmethod
    def all_cores(cls) -> "Config":
        """Return a config with one worker thread per logical CPU."""
        return cls().set_worker_thread_count(Thread.num_logical_cpus())

    def set_worker_thread_count(self, count: int) -> "Config":
        if count < 0:
            raise ValueError("worker thread count must not be negative")
        self.worker_thread_count = count
        return self

    def set_allocator(self, allocator: Allocator) -> "Config":
        self.allocator = allocator
        return self

    def set_affinity_policy(self, policy: Optional[Policy]) -> "Config":
        self.affinity_policy = policy
        return self

    def set_initializer(self, initializer: Optional[Callable[[int], Any]]) -> "Config":
        self.initializer = initializer
        return self

    def set_fiber_stack_size(self, size: int) -> "Config":
        if size <= 0:
            raise ValueError("fiber stack size must be positive")
        self.fiber_stack_size = size
        return self


class Fiber:
    """A cooperatively scheduled thread of execution owned by one worker."""

    def __init__(self, worker: "_Worker", fiber_id: int) -> None:
        _require(worker is not None, "No Scheduler worker bound")
        self.id = fiber_id
        self.state = FiberState.RUNNING
        self.worker = worker
        self._resume = threading.Semaphore(0)
        self._killed = False
        self._thread: Optional[threading.Thread] = None
        self._stack: Optional[Allocation] = None

    @classmethod
    def _create(
        cls, worker: "_Worker", fiber_id: int, func: Callable[[], None]
    ) -> "Fiber":
        fiber = cls(worker, fiber_id)
        cfg = worker.scheduler.config()
        fiber._stack = cfg.allocator.allocate(
            Request(size=cfg.fiber_stack_size, alignment=16, usage=Usage.STACK)
        )

        def body() -> None:
            fiber._resume.acquire()
            if fiber._killed:
                return
            _local.worker = worker
            _local.scheduler = worker.scheduler
            try:
                func()
            except _FiberExit:
                pass

        fiber._thread = threading.Thread(
            target=body, name=f"Fiber<{fiber_id}>", daemon=True
        )
        fiber._thread.start()
        return fiber

    def _kill(self) -> None:
        self._killed = True
        self._resume.release()
        if self._thread is not None:
            self._thread.join()
        if self._stack is not None:
            stack, self._stack = self._stack, None
            self.worker.scheduler.config().allocator.free(stack)

    @staticmethod
    def current() -> Optional["Fiber"]:
        """Return the fiber executing on this thread, if any."""
        worker = _Worker.current()
        return worker.current_fiber if worker is not None else None

    def notify(self) -> None:
        """Reschedule this fiber if it is blocked."""
        self.worker.enqueue_fiber(self)

    def wait(
        self,
        lock: Any,
        predicate: Callable[[], bool],
        timeout: Optional[float] = None,
    ) -> bool:
        """Block until ``predicate`` holds; ``lock`` must be held by the caller.

        ``timeout`` is in seconds. Returns False if it elapsed first.
        """
        _require(
            self.worker is _Worker.current(),
            "Fiber.wait() must only be called on the currently executing fiber",
        )
        deadline = None if timeout is None else time.monotonic() + timeout
        return self.worker.wait(lock, deadline, predicate)

    def switch_to(self, to: "Fiber") -> None:
        """Hand execution to ``to`` and block until this fiber is resumed."""
        _require(
            self.worker is _Worker.current(),
            "Fiber.switch_to() must only be called on the currently executing fiber",
        )
        if to is self:
            return
        to._resume.release()
        self._resume.acquire()
        if self._killed:
            raise _FiberExit()

    def __repr__(self) -> str:
        return f"Fiber(id={self.id}, state={self.state})"


class WaitingFibers:
    """Fibers blocked with a deadline, ordered by that deadline."""

    def __init__(self) -> None:
        self._timeouts: List[Tuple[float, int, Any]] = []
        self._fibers: Dict[Any, float] = {}

    def __bool__(self) -> bool:
        return bool(self._fibers)

    def __len__(self) -> int:
        return len(self._fibers)

    def take(self, timeout: float) -> Optional[Any]:
        """Remove and return the earliest fiber whose deadline is at or before ``timeout``."""
        if not self._timeouts:
            return None
        deadline, _, fiber = self._timeouts[0]
        if timeout < deadline:
            return None
        self._timeouts.pop(0)
        _require(self._fibers.pop(fiber, None) is not None,
                 "WaitingFibers.take() maps out of sync")
        return fiber

    def next(self) -> float:
        """Return the earliest deadline."""
        _require(bool(self._timeouts),
                 "WaitingFibers.next() called when there are no waiting fibers")
        return self._timeouts[0][0]

    def add(self, timeout: float, fiber: Any) -> None:
        """Record ``fiber`` as waiting until ``timeout``."""
        _require(fiber not in self._fibers, "WaitingFibers.add() fiber already waiting")
        bisect.insort(self._timeouts, (timeout, id(fiber), fiber))
        self._fibers[fiber] = timeout

    def erase(self, fiber: Any) -> None:
        """Forget ``fiber`` if it is waiting."""
        timeout = self._fibers.pop(fiber, None)
        if timeout is None:
            return
        index = bisect.bisect_left(self._timeouts, (timeout, id(fiber)))
        _require(
            index < len(self._timeouts) and self._timeouts[index][2] is fiber,
            "WaitingFibers.erase() maps out of sync",
        )
        del self._timeouts[index]

    def __contains__(self, fiber: object) -> bool:
        return fiber in self._fibers


class _Mode(enum.Enum):
    MULTI_THREADED = "multi"
    SINGLE_THREADED = "single"


class _Work:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.added = threading.Condition(self.lock)
        self.tasks: Deque[Task] = deque()
        self.fibers: Deque[Fiber] = deque()
        self.waiting = WaitingFibers()
        self.num = 0
        self.num_blocked_fibers = 0
        self.notify_added = False

    def wait(self, predicate: Callable[[], bool]) -> None:
        self.notify_added = True
        if self.waiting:
            remaining = self.waiting.next() - time.monotonic()
            self.added.wait_for(predicate, timeout=max(remaining, 0.0))
        else:
            self.added.wait_for(predicate)
        self.notify_added = False


class _Worker:
    def __init__(self, scheduler: "Scheduler", mode: _Mode, worker_id: int) -> None:
        self.id = worker_id
        self.mode = mode
        self.scheduler = scheduler
        self.work = _Work()
        self.idle_fibers: Set[Fiber] = set()
        self.worker_fibers: List[Fiber] = []
        self.main_fiber: Optional[Fiber] = None
        self.current_fiber: Optional[Fiber] = None
        self.shutdown = False
        self._thread: Optional[Thread] = None
        self._rng = random.Random()

    @staticmethod
    def current() -> Optional["_Worker"]:
        return getattr(_local, "worker", None)

    def start(self) -> None:
        if self.mode is _Mode.MULTI_THREADED:
            cfg = self.scheduler.config()
            affinity = cfg.affinity_policy.get(self.id)
            self._thread = Thread(affinity, self._thread_main)
        else:
            _local.worker = self
            self.main_fiber = Fiber(self, 0)
            self.current_fiber = self.main_fiber

    def _thread_main(self) -> None:
        Thread.set_name(f"Thread<{self.id:02d}>")
        initializer = self.scheduler.config().initializer
        if initializer is not None:
            initializer(self.id)
        _local.scheduler = self.scheduler
        _local.worker = self
        self.main_fiber = Fiber(self, 0)
        self.current_fiber = self.main_fiber
        with self.work.lock:
            self.run()
        self._release_fibers()
        _local.worker = None
        _local.scheduler = None

    def _release_fibers(self) -> None:
        fibers, self.worker_fibers = self.worker_fibers, []
        for fiber in fibers:
            fiber._kill()
        self.main_fiber = None

    def stop(self) -> None:
        if self.mode is _Mode.MULTI_THREADED:
            def set_shutdown() -> None:
                self.shutdown = True

            self.enqueue_task(Task(set_shutdown, TaskFlags.SAME_THREAD))
            self._thread.join()
        else:
            with self.work.lock:
                self.shutdown = True
                self.run_until_shutdown()
            self._release_fibers()
            _local.worker = None

    def wait(
        self, wait_lock: Any, timeout: Optional[float], predicate: Callable[[], bool]
    ) -> bool:
        while not predicate():
            self.work.lock.acquire()
            # Release the caller's lock only once the work lock is held, so a
            # notify cannot slip in before this fiber is suspended.
            wait_lock.release()
            self.suspend(timeout)
            self.work.lock.release()
            wait_lock.acquire()
            if timeout is not None and time.monotonic() >= timeout:
                return False
        return True

    def suspend(self, timeout: Optional[float]) -> None:
        fiber = self.current_fiber
        if timeout is not None:
            self._change_state(fiber, FiberState.RUNNING, FiberState.WAITING)
            self.work.waiting.add(timeout, fiber)
        else:
            self._change_state(fiber, FiberState.RUNNING, FiberState.YIELDED)

        self.wait_for_work()

        self.work.num_blocked_fibers += 1
        if self.work.fibers:
            self.work.num -= 1
            to = self.work.fibers.popleft()
            self._assert_state(to, FiberState.QUEUED)
            self.switch_to_fiber(to)
        elif self.idle_fibers:
            to = self.idle_fibers.pop()
            self._assert_state(to, FiberState.IDLE)
            self.switch_to_fiber(to)
        else:
            self.switch_to_fiber(self._create_worker_fiber())
        self.work.num_blocked_fibers -= 1

        self.current_fiber.state = FiberState.RUNNING

    def try_lock(self) -> bool:
        return self.work.lock.acquire(blocking=False)

    def enqueue_fiber(self, fiber: Fiber) -> None:
        with self.work.lock:
            if fiber.state in (FiberState.RUNNING, FiberState.QUEUED):
                return
            if fiber.state is FiberState.WAITING:
                self.work.waiting.erase(fiber)
            notify = self.work.notify_added
            self.work.fibers.append(fiber)
            _require(fiber not in self.work.waiting,
                     "fiber is unexpectedly in the waiting list")
            fiber.state = FiberState.QUEUED
            self.work.num += 1
            if notify:
                self.work.added.notify()

    def enqueue_task(self, task: Task) -> None:
        self.work.lock.acquire()
        self.enqueue_and_unlock(task)

    def enqueue_and_unlock(self, task: Task) -> None:
        notify = self.work.notify_added
        self.work.tasks.append(task)
        self.work.num += 1
        if notify:
            self.work.added.notify()
        self.work.lock.release()

    def steal(self) -> Optional[Task]:
        if self.work.num == 0:
            return None
        if not self.work.lock.acquire(blocking=False):
            return None
        try:
            tasks = self.work.tasks
            if not tasks or tasks[0].is_(TaskFlags.SAME_THREAD):
                return None
            self.work.num -= 1
            return tasks.popleft()
        finally:
            self.work.lock.release()

    def run(self) -> None:
        if self.mode is _Mode.MULTI_THREADED:
            work = self.work
            work.wait(lambda: work.num > 0 or bool(work.waiting) or self.shutdown)
        self._assert_state(self.current_fiber, FiberState.RUNNING)
        self.run_until_shutdown()
        self.switch_to_fiber(self.main_fiber)

    def run_until_shutdown(self) -> None:
        work = self.work
        while not self.shutdown or work.num > 0 or work.num_blocked_fibers > 0:
            self.wait_for_work()
            self.run_until_idle()

    def wait_for_work(self) -> None:
        work = self.work
        _require(work.num == len(work.fibers) + len(work.tasks), "work.num out of sync")
        if work.num > 0:
            return
        if self.mode is _Mode.MULTI_THREADED:
            self.scheduler._on_begin_spinning(self.id)
            work.lock.release()
            self._spin_for_work()
            work.lock.acquire()
        work.wait(
            lambda: work.num > 0 or (self.shutdown and work.num_blocked_fibers == 0)
        )
        if work.waiting:
            self._enqueue_fiber_timeouts()

    def _enqueue_fiber_timeouts(self) -> None:
        now = time.monotonic()
        while True:
            fiber = self.work.waiting.take(now)
            if fiber is None:
                return
            self._change_state(fiber, FiberState.WAITING, FiberState.QUEUED)
            self.work.fibers.append(fiber)
            self.work.num += 1

    @staticmethod
    def _assert_state(fiber: Fiber, state: FiberState) -> None:
        _require(
            fiber.state is state,
            f"fiber {fiber.id} was in state {fiber.state}, but expected {state}",
        )

    def _change_state(self, fiber: Fiber, old: FiberState, new: FiberState) -> None:
        self._assert_state(fiber, old)
        fiber.state = new

    def _spin_for_work(self) -> None:
        start = time.perf_counter()
        while time.perf_counter() - start < _SPIN_DURATION:
            for _ in range(_SPIN_CHECKS):
                if self.work.num > 0:
                    return
            stolen = self.scheduler._steal_work(self, self._rng.getrandbits(64))
            if stolen is not None:
                with self.work.lock:
                    self.work.tasks.append(stolen)
                    self.work.num += 1
                return
            time.sleep(0)

    def run_until_idle(self) -> None:
        work = self.work
        self._assert_state(self.current_fiber, FiberState.RUNNING)
        _require(work.num == len(work.fibers) + len(work.tasks), "work.num out of sync")
        while work.fibers or work.tasks:
            while work.fibers:
                work.num -= 1
                fiber = work.fibers.popleft()
                _require(fiber not in self.idle_fibers, "dequeued fiber is idle")
                _require(fiber is not self.current_fiber,
                         "dequeued fiber is currently running")
                self._assert_state(fiber, FiberState.QUEUED)
                current = self.current_fiber
                self._change_state(current, FiberState.RUNNING, FiberState.IDLE)
                _require(current not in self.idle_fibers, "fiber already idle")
                self.idle_fibers.add(current)
                self.switch_to_fiber(fiber)
                self._change_state(self.current_fiber, FiberState.IDLE, FiberState.RUNNING)

            if work.tasks:
                work.num -= 1
                task = work.tasks.popleft()
                work.lock.release()
                try:
                    task()
                except Exception:
                    traceback.print_exc()
                del task
                work.lock.acquire()

    def _create_worker_fiber(self) -> Fiber:
        fiber = Fiber._create(self, len(self.worker_fibers) + 1, self.run)
        self.worker_fibers.append(fiber)
        return fiber

    def switch_to_fiber(self, to: Fiber) -> None:
        _require(to is self.main_fiber or to not in self.idle_fibers,
                 "switching to idle fiber")
        current = self.current_fiber
        self.current_fiber = to
        current.switch_to(to)


class Scheduler:
    """Runs tasks on worker threads, or on threads that have bound it."""

    def __init__(self, config: Optional[Config] = None) -> None:
        cfg = config if config is not None else Config()
        cfg = Config(
            worker_thread_count=cfg.worker_thread_count,
            allocator=cfg.allocator,
            affinity_policy=cfg.affinity_policy,
            initializer=cfg.initializer,
            fiber_stack_size=cfg.fiber_stack_size,
        )
        if cfg.worker_thread_count > 0 and cfg.affinity_policy is None:
            cfg.affinity_policy = Policy.any_of(Affinity.all())
        self._cfg = cfg
        self._spin_lock = threading.Lock()
        self._spinning_workers = [-1] * _NUM_SPINNING_SLOTS
        self._next_spinning_idx = 0
        self._next_enqueue_idx = 0
        self._st_lock = threading.Lock()
        self._st_unbound = threading.Condition(self._st_lock)
        self._st_workers: Dict[int, _Worker] = {}
        self._closed = False
        self._worker_threads: List[_Worker] = [
            cfg.allocator.create(_Worker, self, _Mode.MULTI_THREADED, i)
            for i in range(cfg.worker_thread_count)
        ]
        for worker in self._worker_threads:
            worker.start()

    @staticmethod
    def get() -> Optional["Scheduler"]:
        """Return the scheduler bound to the calling thread, if any."""
        return getattr(_local, "scheduler", None)

    def bind(self) -> None:
        """Bind this scheduler to the calling thread."""
        if Scheduler.get() is not None:
            raise RuntimeError("Scheduler already bound")
        _local.scheduler = self
        with self._st_lock:
            worker = self._cfg.allocator.create(
                _Worker, self, _Mode.SINGLE_THREADED, -1
            )
            worker.start()
            self._st_workers[threading.get_ident()] = worker

    def unbind(self) -> None:
        """Run this thread's outstanding work, then unbind the scheduler."""
        scheduler = Scheduler.get()
        if scheduler is None:
            raise RuntimeError("No scheduler bound")
        worker = _Worker.current()
        worker.stop()
        with scheduler._st_lock:
            found = scheduler._st_workers.pop(threading.get_ident(), None)
            _require(found is not None, "single threaded worker not found")
            _require(found is worker, "worker is not bound?")
            if not scheduler._st_workers:
                scheduler._st_unbound.notify()
        scheduler._cfg.allocator.destroy(worker)
        _local.scheduler = None

    def enqueue(self, task: Task) -> None:
        """Queue ``task`` for execution."""
        if task.is_(TaskFlags.SAME_THREAD):
            worker = _Worker.current()
            _require(worker is not None, "no worker on the current thread")
            worker.enqueue_task(task)
            return
        count = self._cfg.worker_thread_count
        if count > 0:
            while True:
                with self._spin_lock:
                    self._next_spinning_idx -= 1
                    slot = self._next_spinning_idx % _NUM_SPINNING_SLOTS
                    idx = self._spinning_workers[slot]
                    self._spinning_workers[slot] = -1
                    if idx < 0:
                        idx = self._next_enqueue_idx % count
                        self._next_enqueue_idx += 1
                worker = self._worker_threads[idx]
                if worker.try_lock():
                    worker.enqueue_and_unlock(task)
                    return
        worker = _Worker.current()
        if worker is None:
            raise RuntimeError(
                "single threaded worker not found. "
                "Did you forget to call Scheduler.bind()?"
            )
        worker.enqueue_task(task)

    def config(self) -> Config:
        """Return the configuration in effect."""
        return self._cfg

    def _steal_work(self, thief: _Worker, source: int) -> Optional[Task]:
        count = self._cfg.worker_thread_count
        if count > 0:
            victim = self._worker_threads[source % count]
            if victim is not thief:
                return victim.steal()
        return None

    def _on_begin_spinning(self, worker_id: int) -> None:
        with self._spin_lock:
            slot = self._next_spinning_idx % _NUM_SPINNING_SLOTS
            self._next_spinning_idx += 1
            self._spinning_workers[slot] = worker_id

    def shutdown(self) -> None:
        """Wait for every bound thread to unbind and all work to finish."""
        if self._closed:
            return
        self._closed = True
        with self._st_lock:
            self._st_unbound.wait_for(lambda: not self._st_workers)
        for worker in reversed(self._worker_threads):
            worker.stop()
        workers, self._worker_threads = self._worker_threads, []
        for worker in reversed(workers):
            self._cfg.allocator.destroy(worker)

    def __enter__(self) -> "Scheduler":
        return self

    def __exit__(self, *args: Any) -> None:
        self.shutdown()


def schedule(func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    """Run ``func(*args, **kwargs)`` on the scheduler bound to this thread."""
    scheduler = Scheduler.get()
    if scheduler is None:
        raise RuntimeError("no scheduler is bound to the current thread")
    scheduler.enqueue(Task(functools.partial(func, *args, **kwargs)))