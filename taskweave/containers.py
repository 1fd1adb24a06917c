"""Containers that draw their storage from an :class:`Allocator`."""

from __future__ import annotations

import struct
from collections import deque
from typing import Any, Generic, Iterable, Iterator, List, Optional, TypeVar, Union

from .memory import Allocation, Allocator, Request, Usage, align_up

T = TypeVar("T")

_POINTER_SIZE = struct.calcsize("P")
# Nominal per-element footprints used when sizing allocation requests.
_ITEM_SIZE = _POINTER_SIZE
_ENTRY_SIZE = 3 * _POINTER_SIZE  # value, next, prev
_CHAIN_SIZE = 2 * _POINTER_SIZE  # allocation record, next


def take(container: Union[deque, set, "Vector[Any]", list]) -> Any:
    """Remove and return the front value of a queue, or any value of a set."""
    if isinstance(container, (set, frozenset)):
        if not container:
            raise KeyError("take() called on an empty set")
        return container.pop()  # type: ignore[union-attr]
    if isinstance(container, deque):
        if not container:
            raise IndexError("take() called on an empty deque")
        return container.popleft()
    if isinstance(container, list):
        if not container:
            raise IndexError("take() called on an empty list")
        return container.pop(0)
    raise TypeError(f"take() does not support {type(container).__name__}")


class Vector(Generic[T]):
    """A sequence that keeps ``base_capacity`` elements inline.

    Once it grows past that, storage is requested from the allocator; each
    growth at least doubles the capacity, with a minimum of eight elements.
    """

    def __init__(
        self,
        allocator: Optional[Allocator] = None,
        base_capacity: int = 16,
        items: Iterable[T] = (),
    ) -> None:
        if base_capacity < 0:
            raise ValueError("base_capacity must not be negative")
        self.allocator = allocator if allocator is not None else Allocator.default
        self._base_capacity = base_capacity
        self._capacity = base_capacity
        self._allocation: Optional[Allocation] = None
        self._items: List[T] = []
        initial = list(items)
        self.reserve(len(initial))
        self._items.extend(initial)

    def append(self, item: T) -> None:
        """Add ``item`` to the end."""
        self.reserve(len(self._items) + 1)
        self._items.append(item)

    def pop(self) -> T:
        """Remove and return the last element."""
        if not self._items:
            raise IndexError("pop() called on empty vector")
        return self._items.pop()

    def front(self) -> T:
        """Return the first element."""
        if not self._items:
            raise IndexError("front() called on empty vector")
        return self._items[0]

    def back(self) -> T:
        """Return the last element."""
        if not self._items:
            raise IndexError("back() called on empty vector")
        return self._items[-1]

    def _check_index(self, index: int) -> int:
        count = len(self._items)
        if index < 0:
            index += count
        if not 0 <= index < count:
            raise IndexError(f"index {index} exceeds vector size {count}")
        return index

    def __getitem__(self, index: int) -> T:
        return self._items[self._check_index(index)]

    def __setitem__(self, index: int, value: T) -> None:
        self._items[self._check_index(index)] = value

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Vector):
            return self._items == other._items
        if isinstance(other, list):
            return self._items == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"Vector({self._items!r})"

    def capacity(self) -> int:
        """Return the number of elements storable without growing."""
        return self._capacity

    def resize(self, n: int, fill: Optional[T] = None) -> None:
        """Grow with ``fill`` or shrink from the end until ``n`` elements remain."""
        if n < 0:
            raise ValueError("size must not be negative")
        self.reserve(n)
        count = len(self._items)
        if n > count:
            self._items.extend([fill] * (n - count))  # type: ignore[list-item]
        else:
            del self._items[n:]

    def reserve(self, n: int) -> None:
        """Ensure room for at least ``n`` elements."""
        if n <= self._capacity:
            return
        capacity = max(n * 2, 8)
        allocation = self.allocator.allocate(
            Request(
                size=_ITEM_SIZE * capacity,
                alignment=_ITEM_SIZE,
                usage=Usage.VECTOR,
            )
        )
        self._release()
        self._allocation = allocation
        self._capacity = capacity

    def _release(self) -> None:
        if self._allocation is not None:
            allocation, self._allocation = self._allocation, None
            self.allocator.free(allocation)

    def close(self) -> None:
        """Drop every element and return any allocated storage."""
        self._items.clear()
        self._release()
        self._capacity = self._base_capacity

    def __enter__(self) -> "Vector[T]":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class _Entry:
    __slots__ = ("value", "next", "prev", "owner", "live")

    def __init__(self, owner: "LinkedList[Any]") -> None:
        self.value: Any = None
        self.next: Optional[_Entry] = None
        self.prev: Optional[_Entry] = None
        self.owner = owner
        self.live = False


class LinkedList(Generic[T]):
    """A list with constant-time insertion at the front and removal anywhere.

    Entries are reused after erasure; storage is only released by
    :meth:`close`.
    """

    def __init__(self, allocator: Optional[Allocator] = None) -> None:
        self.allocator = allocator if allocator is not None else Allocator.default
        self._size = 0
        self._capacity = 0
        self._allocations: List[Allocation] = []
        self._free: List[_Entry] = []
        self._head: Optional[_Entry] = None

    def _grow(self, count: int) -> None:
        entries_size = _ENTRY_SIZE * count
        chain_offset = align_up(entries_size, _POINTER_SIZE)
        allocation = self.allocator.allocate(
            Request(
                size=chain_offset + _CHAIN_SIZE,
                alignment=_POINTER_SIZE,
                usage=Usage.LIST,
            )
        )
        self._free.extend(_Entry(self) for _ in range(count))
        self._allocations.append(allocation)
        self._capacity += count

    def push_front(self, value: T) -> _Entry:
        """Insert ``value`` at the front; return a handle for :meth:`erase`."""
        if not self._free:
            self._grow(max(self._capacity, 8))
        entry = self._free.pop()
        entry.value = value
        entry.live = True
        entry.prev = None
        entry.next = self._head
        if self._head is not None:
            self._head.prev = entry
        self._head = entry
        self._size += 1
        return entry

    def erase(self, handle: _Entry) -> None:
        """Remove the element identified by ``handle``."""
        if not isinstance(handle, _Entry) or handle.owner is not self or not handle.live:
            raise ValueError("handle does not refer to an element of this list")
        if self._head is handle:
            self._head = handle.next
        if handle.prev is not None:
            handle.prev.next = handle.next
        if handle.next is not None:
            handle.next.prev = handle.prev
        handle.prev = handle.next = None
        handle.value = None
        handle.live = False
        self._free.append(handle)
        self._size -= 1

    def __iter__(self) -> Iterator[T]:
        entry = self._head
        while entry is not None:
            following = entry.next
            yield entry.value
            entry = following

    def __len__(self) -> int:
        return self._size

    def capacity(self) -> int:
        """Return the number of entries held, in use or free."""
        return self._capacity

    def close(self) -> None:
        """Drop every element and release all storage."""
        entry = self._head
        while entry is not None:
            following = entry.next
            entry.value = None
            entry.live = False
            entry.next = entry.prev = None
            entry = following
        self._head = None
        self._free.clear()
        self._size = 0
        self._capacity = 0
        allocations, self._allocations = self._allocations, []
        for allocation in reversed(allocations):
            self.allocator.free(allocation)

    def __enter__(self) -> "LinkedList[T]":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()