"""Threads of execution with optional CPU affinity."""

from __future__ import annotations

import abc
import os
import threading
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Iterable, Iterator, List, Union


@dataclass(frozen=True, order=True)
class Core:
    """A logical processor, identified by its index."""

    index: int


def _as_core(value: Union[Core, int]) -> Core:
    return value if isinstance(value, Core) else Core(int(value))


class Affinity:
    """The set of cores a thread is allowed to run on, kept sorted."""

    supported: ClassVar[bool] = hasattr(os, "sched_setaffinity")

    def __init__(self, cores: Iterable[Union[Core, int]] = ()) -> None:
        self._cores: List[Core] = sorted({_as_core(core) for core in cores})

    @staticmethod
    def all() -> "Affinity":
        """Return an affinity holding every core available to the process."""
        getter = getattr(os, "sched_getaffinity", None)
        if getter is not None:
            try:
                return Affinity(getter(0))
            except OSError:
                pass
        return Affinity(range(os.cpu_count() or 1))

    def __len__(self) -> int:
        return len(self._cores)

    def __getitem__(self, index: int) -> Core:
        return self._cores[index]

    def __iter__(self) -> Iterator[Core]:
        return iter(self._cores)

    def __contains__(self, core: object) -> bool:
        if isinstance(core, int):
            core = Core(core)
        return core in self._cores

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Affinity):
            return NotImplemented
        return self._cores == other._cores

    def __repr__(self) -> str:
        return f"Affinity({[core.index for core in self._cores]!r})"

    def add(self, other: "Affinity") -> "Affinity":
        """Add the cores of ``other``; return self."""
        self._cores = sorted(set(self._cores).union(other._cores))
        return self

    def remove(self, other: "Affinity") -> "Affinity":
        """Remove the cores of ``other``; return self."""
        excluded = set(other._cores)
        self._cores = [core for core in self._cores if core not in excluded]
        return self


class Policy(abc.ABC):
    """Chooses the affinity for a thread given its id."""

    @staticmethod
    def any_of(affinity: Affinity) -> "Policy":
        """Return a policy that allows every core in ``affinity``."""
        return _AnyOfPolicy(Affinity(affinity))

    @staticmethod
    def one_of(affinity: Affinity) -> "Policy":
        """Return a policy giving thread ``n`` the core ``affinity[n % len]``."""
        return _OneOfPolicy(Affinity(affinity))

    @abc.abstractmethod
    def get(self, thread_id: int) -> Affinity:
        """Return the affinity for the thread with ``thread_id``."""


class _AnyOfPolicy(Policy):
    def __init__(self, affinity: Affinity) -> None:
        self._affinity = affinity

    def get(self, thread_id: int) -> Affinity:
        return Affinity(self._affinity)


class _OneOfPolicy(Policy):
    def __init__(self, affinity: Affinity) -> None:
        self._affinity = affinity

    def get(self, thread_id: int) -> Affinity:
        if not len(self._affinity):
            return Affinity()
        return Affinity([self._affinity[thread_id % len(self._affinity)]])


class Thread:
    """Starts ``func`` on a new thread restricted to ``affinity``."""

    def __init__(self, affinity: Affinity, func: Callable[[], Any]) -> None:
        self._affinity = Affinity(affinity)
        self._func = func
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        if Affinity.supported and len(self._affinity):
            try:
                os.sched_setaffinity(0, {core.index for core in self._affinity})
            except (OSError, ValueError):
                pass
        self._func()

    def join(self) -> None:
        """Block until the thread has finished."""
        self._thread.join()

    @staticmethod
    def set_name(name: str) -> None:
        """Name the currently executing thread."""
        threading.current_thread().name = name

    @staticmethod
    def num_logical_cpus() -> int:
        """Return the number of logical CPUs on the system."""
        return os.cpu_count() or 1