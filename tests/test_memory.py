import mmap
import threading

import pytest

from taskweave.memory import (
    Allocation,
    Allocator,
    HeapAllocator,
    Request,
    Stats,
    TrackedAllocator,
    Usage,
    UsageStats,
    align_up,
    page_size,
)


class _Closable:
    def __init__(self, name):
        self.name = name
        self.closed = False

    def close(self):
        self.closed = True


def test_page_size_matches_host_and_is_power_of_two():
    size = page_size()
    assert size == mmap.PAGESIZE
    assert size & (size - 1) == 0


@pytest.mark.parametrize("alignment", [1, 2, 4, 8, 16, 64])
@pytest.mark.parametrize("val", [0, 1, 3, 7, 8, 9, 63, 64, 65, 1000])
def test_align_up_invariants(val, alignment):
    result = align_up(val, alignment)
    assert result % alignment == 0
    assert result >= val
    assert result - val < alignment


def test_align_up_keeps_aligned_values():
    assert align_up(64, 64) == 64
    assert align_up(0, 8) == 0


def test_align_up_rejects_zero_alignment():
    with pytest.raises(ValueError):
        align_up(5, 0)


def test_heap_allocate_returns_zeroed_buffer_of_requested_size():
    allocator = HeapAllocator()
    request = Request(size=32, alignment=8, usage=Usage.VECTOR)
    allocation = allocator.allocate(request)
    assert allocation.request == request
    assert len(allocation.buffer) == request.size
    assert not any(allocation.buffer)
    allocator.free(allocation)


def test_heap_double_free_raises():
    allocator = HeapAllocator()
    allocation = allocator.allocate(Request(size=4))
    allocator.free(allocation)
    with pytest.raises(ValueError):
        allocator.free(allocation)


def test_heap_free_of_foreign_allocation_raises():
    allocator = HeapAllocator()
    with pytest.raises(ValueError):
        allocator.free(Allocation(buffer=bytearray(4), request=Request(size=4)))
    with pytest.raises(ValueError):
        allocator.free(Allocation())


@pytest.mark.parametrize("alignment", [3, 6, -1])
def test_heap_rejects_bad_alignment(alignment):
    with pytest.raises(ValueError):
        HeapAllocator().allocate(Request(size=8, alignment=alignment))


def test_heap_rejects_negative_size():
    with pytest.raises(ValueError):
        HeapAllocator().allocate(Request(size=-1))


def test_default_allocator_round_trip():
    request = Request(size=16, alignment=16)
    allocation = Allocator.default.allocate(request)
    assert len(allocation.buffer) == request.size
    Allocator.default.free(allocation)


def test_stats_start_empty():
    stats = Stats()
    assert stats.num_allocations() == 0
    assert stats.bytes_allocated() == 0
    assert set(stats.by_usage) == set(Usage)


def test_stats_sum_across_usages():
    stats = Stats()
    stats.by_usage[Usage.STACK] = UsageStats(count=2, bytes=100)
    stats.by_usage[Usage.LIST] = UsageStats(count=1, bytes=24)
    assert stats.num_allocations() == 2 + 1
    assert stats.bytes_allocated() == 100 + 24


def test_tracked_allocator_counts_and_releases():
    tracked = TrackedAllocator(HeapAllocator())
    first = Request(size=10, usage=Usage.STACK)
    second = Request(size=20, usage=Usage.STACK)
    a = tracked.allocate(first)
    b = tracked.allocate(second)

    stats = tracked.stats()
    assert stats.by_usage[Usage.STACK].count == 2
    assert stats.by_usage[Usage.STACK].bytes == first.size + second.size
    assert stats.num_allocations() == 2
    assert stats.by_usage[Usage.VECTOR].count == 0

    tracked.free(a)
    tracked.free(b)
    stats = tracked.stats()
    assert stats.num_allocations() == 0
    assert stats.bytes_allocated() == 0


def test_tracked_stats_is_a_snapshot():
    tracked = TrackedAllocator(HeapAllocator())
    before = tracked.stats()
    allocation = tracked.allocate(Request(size=8, usage=Usage.LIST))
    assert before.num_allocations() == 0
    assert tracked.stats().num_allocations() == 1
    tracked.free(allocation)


def test_tracked_abnormal_free_raises():
    tracked = TrackedAllocator(HeapAllocator())
    foreign = HeapAllocator().allocate(Request(size=8, usage=Usage.STL))
    with pytest.raises(ValueError, match="abnormal"):
        tracked.free(foreign)


def test_tracked_free_larger_than_recorded_raises():
    inner = HeapAllocator()
    tracked = TrackedAllocator(inner)
    small = tracked.allocate(Request(size=4, usage=Usage.VECTOR))
    bogus = Allocation(buffer=small.buffer, request=Request(size=400, usage=Usage.VECTOR))
    with pytest.raises(ValueError):
        tracked.free(bogus)
    assert tracked.stats().by_usage[Usage.VECTOR].count == 1
    tracked.free(small)
    assert tracked.stats().by_usage[Usage.VECTOR].count == 0


def test_tracked_allocator_is_thread_safe():
    tracked = TrackedAllocator(HeapAllocator())
    request = Request(size=3, usage=Usage.STACK)
    per_thread = 200
    thread_count = 8
    results = []
    results_lock = threading.Lock()

    def work():
        local = [tracked.allocate(request) for _ in range(per_thread)]
        with results_lock:
            results.extend(local)

    threads = [threading.Thread(target=work) for _ in range(thread_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    stats = tracked.stats()
    assert stats.by_usage[Usage.STACK].count == per_thread * thread_count
    assert stats.by_usage[Usage.STACK].bytes == per_thread * thread_count * request.size
    for allocation in results:
        tracked.free(allocation)
    assert tracked.stats().num_allocations() == 0


def test_create_and_destroy_tracks_create_usage():
    tracked = TrackedAllocator(HeapAllocator())
    obj = tracked.create(_Closable, "item")
    assert obj.name == "item"
    assert tracked.stats().by_usage[Usage.CREATE].count == 1
    tracked.destroy(obj)
    assert obj.closed is True
    assert tracked.stats().by_usage[Usage.CREATE].count == 0
    assert tracked.stats().bytes_allocated() == 0


def test_create_passes_keyword_arguments():
    allocator = HeapAllocator()
    obj = allocator.create(dict, alpha=1)
    assert obj == {"alpha": 1}
    allocator.destroy(obj)


def test_destroy_unknown_object_raises():
    allocator = HeapAllocator()
    with pytest.raises(ValueError):
        allocator.destroy(_Closable("stranger"))


def test_destroy_twice_raises():
    allocator = HeapAllocator()
    obj = allocator.create(_Closable, "once")
    allocator.destroy(obj)
    with pytest.raises(ValueError):
        allocator.destroy(obj)


def test_usage_values_fixed_by_format():
    assert int(Usage.UNDEFINED) == 0
    assert [u.name for u in Usage] == [
        "UNDEFINED",
        "STACK",
        "CREATE",
        "VECTOR",
        "LIST",
        "STL",
    ]
    assert Request().usage is Usage.UNDEFINED
    tracked = TrackedAllocator(HeapAllocator())
    allocation = tracked.allocate(Request(size=1, usage=Usage(1)))
    assert tracked.stats().by_usage[Usage.STACK].count == 1
    tracked.free(allocation)
    assert tracked.stats().by_usage[Usage.STACK].count == 0