"""Task scheduling with worker threads, wait groups, containers and allocation tracking."""

__version__ = "0.1.0"

__all__ = ["containers", "memory", "scheduler", "task", "thread", "waitgroup"]