"""Runtime helpers: guarded execution with error reporting, and a thread-based background task manager."""

__version__ = "0.1.0"
__all__ = ["safego", "task_types", "task_scheduler", "task_runtime", "task_manager"]