"""Memory allocation interfaces and an allocation-tracking wrapper."""

from __future__ import annotations

import abc
import copy
import enum
import mmap
import struct
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, Optional, Tuple, TypeVar

T = TypeVar("T")

_POINTER_ALIGNMENT = struct.calcsize("P")


def page_size() -> int:
    """Return the size in bytes of a virtual memory page on this host."""
    return mmap.PAGESIZE


def align_up(val: int, alignment: int) -> int:
    """Round ``val`` up to the next multiple of ``alignment``."""
    if alignment <= 0:
        raise ValueError("alignment must be positive")
    return alignment * ((val + alignment - 1) // alignment)


class Usage(enum.IntEnum):
    """Intended usage of an allocation, used by allocation trackers."""

    UNDEFINED = 0
    STACK = 1  # Fiber stack
    CREATE = 2  # Allocator.create()
    VECTOR = 3  # containers.Vector
    LIST = 4  # containers.LinkedList
    STL = 5  # General container storage


@dataclass(frozen=True)
class Request:
    """Everything needed to make an allocation."""

    size: int = 0
    alignment: int = 0
    use_guards: bool = False
    usage: Usage = Usage.UNDEFINED


@dataclass
class Allocation:
    """The result of an allocation: its memory and the request that made it."""

    buffer: Optional[bytearray] = None
    request: Request = field(default_factory=Request)


class Allocator(abc.ABC):
    """Interface to a memory allocator.

    Subclasses must call ``super().__init__()``.
    """

    default: ClassVar["Allocator"]

    def __init__(self) -> None:
        self._created_lock = threading.Lock()
        self._created: Dict[int, Tuple[Any, Allocation]] = {}

    @abc.abstractmethod
    def allocate(self, request: Request) -> Allocation:
        """Allocate memory; the returned allocation carries ``request``."""

    @abc.abstractmethod
    def free(self, allocation: Allocation) -> None:
        """Release memory returned by :meth:`allocate`."""

    def create(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Construct an object and record an allocation for it.

        The object must later be released with :meth:`destroy`.
        """
        obj = factory(*args, **kwargs)
        request = Request(
            size=sys.getsizeof(obj),
            alignment=_POINTER_ALIGNMENT,
            usage=Usage.CREATE,
        )
        allocation = self.allocate(request)
        with self._created_lock:
            self._created[id(obj)] = (obj, allocation)
        return obj

    def destroy(self, obj: Any) -> None:
        """Close (if it can be closed) and release an object from :meth:`create`."""
        with self._created_lock:
            entry = self._created.get(id(obj))
            if entry is None or entry[0] is not obj:
                raise ValueError("object was not created by this allocator")
            del self._created[id(obj)]
        close = getattr(obj, "close", None)
        if callable(close):
            close()
        self.free(entry[1])


class HeapAllocator(Allocator):
    """Allocator that hands out zero-filled byte buffers."""

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._live: Dict[int, bytearray] = {}

    def allocate(self, request: Request) -> Allocation:
        if request.size < 0:
            raise ValueError("allocation size must not be negative")
        alignment = request.alignment
        if alignment < 0 or alignment & (alignment - 1):
            raise ValueError("alignment must be zero or a power of two")
        buffer = bytearray(request.size)
        with self._lock:
            self._live[id(buffer)] = buffer
        return Allocation(buffer=buffer, request=request)

    def free(self, allocation: Allocation) -> None:
        buffer = allocation.buffer
        with self._lock:
            if buffer is None or self._live.get(id(buffer)) is not buffer:
                raise ValueError("allocation is not live in this allocator")
            del self._live[id(buffer)]


@dataclass
class UsageStats:
    """Allocation counters for one usage."""

    count: int = 0
    bytes: int = 0


@dataclass
class Stats:
    """Allocation counters for every usage."""

    by_usage: Dict[Usage, UsageStats] = field(
        default_factory=lambda: {usage: UsageStats() for usage in Usage}
    )

    def num_allocations(self) -> int:
        """Total number of live allocations across all usages."""
        return sum(stats.count for stats in self.by_usage.values())

    def bytes_allocated(self) -> int:
        """Total number of requested bytes live across all usages."""
        return sum(stats.bytes for stats in self.by_usage.values())


class TrackedAllocator(Allocator):
    """Wraps an allocator and keeps statistics on the allocations it makes."""

    def __init__(self, allocator: Allocator) -> None:
        super().__init__()
        self._allocator = allocator
        self._lock = threading.Lock()
        self._stats = Stats()

    def stats(self) -> Stats:
        """Return a snapshot of the current statistics."""
        with self._lock:
            return copy.deepcopy(self._stats)

    def allocate(self, request: Request) -> Allocation:
        with self._lock:
            usage_stats = self._stats.by_usage[Usage(request.usage)]
            usage_stats.count += 1
            usage_stats.bytes += request.size
        return self._allocator.allocate(request)

    def free(self, allocation: Allocation) -> None:
        request = allocation.request
        with self._lock:
            usage_stats = self._stats.by_usage[Usage(request.usage)]
            if usage_stats.count <= 0 or usage_stats.bytes < request.size:
                raise ValueError("TrackedAllocator detected abnormal free()")
            usage_stats.count -= 1
            usage_stats.bytes -= request.size
        self._allocator.free(allocation)


Allocator.default = HeapAllocator()