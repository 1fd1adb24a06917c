"""Units of work handed to a scheduler."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable, Optional


class TaskFlags(enum.IntFlag):
    """Options that control how a task is scheduled."""

    NONE = 0
    # Run the task on the same thread that scheduled it. This avoids waking
    # another thread when the scheduling thread is about to block on the task.
    SAME_THREAD = 1


@dataclass
class Task:
    """A callable unit of work, optionally carrying scheduling flags."""

    function: Optional[Callable[[], Any]] = None
    flags: TaskFlags = TaskFlags.NONE

    def __bool__(self) -> bool:
        """Return True if the task holds a function to run."""
        return self.function is not None

    def __call__(self) -> Any:
        """Run the task's function."""
        if self.function is None:
            raise RuntimeError("task has no function to run")
        return self.function()

    def is_(self, flag: TaskFlags) -> bool:
        """Return True if the task was created with every bit of ``flag``."""
        return (int(self.flags) & int(flag)) == int(flag)