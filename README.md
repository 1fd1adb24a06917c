# taskweave

A small work-stealing task scheduler for Python programs. Work is submitted
as tasks and run by a pool of worker threads, or by the thread the scheduler
is bound to when no worker threads are configured. Tasks and threads can
wait for one another with a `WaitGroup`.

## Installing

```
pip install taskweave
```

## Scheduling tasks

```python
from taskweave.scheduler import Config, Scheduler, schedule
from taskweave.waitgroup import WaitGroup

config = Config().set_worker_thread_count(4)

with Scheduler(config) as scheduler:
    scheduler.bind()
    wg = WaitGroup(3)
    results = []

    def work(n):
        results.append(n * n)
        wg.done()

    for n in range(3):
        schedule(work, n)

    wg.wait()
    scheduler.unbind()

print(sorted(results))  # [0, 1, 4]
```

`schedule(func, *args, **kwargs)` queues `func(*args, **kwargs)` on the
scheduler bound to the calling thread and raises `RuntimeError` if none is
bound. `Scheduler.get()` returns the scheduler bound to the calling thread,
or `None`.

- `Scheduler.bind()` binds the scheduler to the calling thread; binding a
  second time on the same thread raises `RuntimeError`.
- `Scheduler.unbind()` runs the thread's outstanding work, then unbinds.
- `Scheduler.shutdown()` waits until every bound thread has unbound, then
  stops the worker threads once all their queued work has run. Leaving a
  `with Scheduler(...)` block calls `shutdown()`; entering it does not bind.
- `Scheduler.enqueue(task)` queues a `Task` directly. Worker threads bind
  the scheduler to themselves, so `Scheduler.get()` works inside tasks.

An exception raised by a task is printed with its traceback and does not
stop the worker.

### Configuration

`Config` setters return the config, so they can be chained:
`set_worker_thread_count`, `set_allocator`, `set_affinity_policy`,
`set_initializer` (called with each worker's id when its thread starts) and
`set_fiber_stack_size`. `Config.all_cores()` gives one worker thread per
logical CPU. `Scheduler.config()` returns the configuration in effect.

With zero worker threads, tasks run on the thread the scheduler is bound
to, when that thread waits or unbinds. Calling `enqueue` from a thread
with no bound worker then raises `RuntimeError`.

## Tasks

`taskweave.task.Task` wraps a callable together with `TaskFlags`. A task
flagged `TaskFlags.SAME_THREAD` is queued on the calling thread's worker
and is never stolen by another worker.

```python
from taskweave.task import Task, TaskFlags

task = Task(lambda: print("hello"), TaskFlags.SAME_THREAD)
assert task.is_(TaskFlags.SAME_THREAD)
task()
```

## Wait groups

`taskweave.waitgroup.WaitGroup(initial_count)` holds a counter. `add(n)`
raises it, `done()` lowers it by one and returns `True` when it reaches
zero (calling it at zero raises `RuntimeError`), and `wait()` blocks until
it is zero. A plain thread blocks; a task running on a scheduler worker
yields instead, so its worker can run other tasks meanwhile.

## Allocation tracking

`taskweave.memory.TrackedAllocator` wraps an allocator (for example
`HeapAllocator` or `Allocator.default`) and counts allocations and bytes
for each `Usage`. Its `stats()` method returns a `Stats` snapshot with
`num_allocations()` and `bytes_allocated()`. Pass a tracked allocator to
`Config.set_allocator` to see what the scheduler allocates: its workers
and the stack allocations of its fibers.

## Containers and threads

`taskweave.containers` provides `Vector`, `LinkedList` and `take()`.
`taskweave.thread` provides `Thread`, `Affinity`, `Core` and `Policy`
(`Policy.any_of`, `Policy.one_of`), which the scheduler uses to start its
workers. Affinity is applied only where the platform supports it.

## Limitations

Fibers are not stack-switching coroutines: each one runs on its own Python
thread, and control is handed between them so that only one fiber of a
worker runs at a time. `fiber_stack_size` sets the size of the allocation
recorded for each fiber, not a real stack size. There is no command-line
tool; the package is a library only.

## Running the tests

```
pip install -e ".[test]"
pytest
```