"""Types, errors, options and name rules for background tasks.

A :class:`Task` is a definition made with :func:`trigger` (runs on demand)
or :func:`every` (runs periodically). Durations are seconds as ``float``;
timestamps are timezone-aware :class:`datetime.datetime` values, or ``None``
where nothing has happened yet.
"""

from __future__ import annotations

import enum
import json
import sys
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from zkit.safego import (
    Context,
    ErrorHandler,
    PanicHandler,
    Tag,
    format_tags,
)

__all__ = [
    "TaskError",
    "AlreadyStartedError",
    "ClosedError",
    "NotRunningError",
    "SkippedError",
    "PanickedError",
    "InvalidNameError",
    "DuplicateNameError",
    "State",
    "OverlapPolicy",
    "EveryMode",
    "RunKind",
    "Status",
    "Snapshot",
    "RunStartInfo",
    "RunFinishInfo",
    "TaskKind",
    "Task",
    "TaskFunc",
    "trigger",
    "every",
    "normalize_name",
    "validate_name",
    "TaskOptions",
    "ManagerOptions",
]


TaskFunc = Callable[[Context], Optional[BaseException]]


def _quote(s: str) -> str:
    return json.dumps(s, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TaskError(Exception):
    """Base class for task manager errors."""

    default_message = "task: error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message if message is not None else self.default_message)


class AlreadyStartedError(TaskError):
    """Start was called more than once."""

    default_message = "task: manager already started"


class ClosedError(TaskError):
    """The manager is shutting down or already stopped."""

    default_message = "task: manager closed"


class NotRunningError(TaskError):
    """The operation needs a running manager."""

    default_message = "task: manager not running"


class SkippedError(TaskError):
    """A run opportunity was dropped under the skip overlap policy."""

    default_message = "task: trigger skipped"


class PanickedError(TaskError):
    """A run raised an exception (it was recovered and reported)."""

    default_message = "task: run panicked"


class InvalidNameError(TaskError, ValueError):
    """A task name does not match ``[A-Za-z0-9._-]``."""

    default_message = "task: invalid name"

    def __init__(self, name: str = "", reason: str = "") -> None:
        self.name = name
        self.reason = reason
        if reason:
            super().__init__(f"{self.default_message}: {_quote(name)}: {reason}")
        else:
            super().__init__()


class DuplicateNameError(TaskError, ValueError):
    """A non-empty task name is already registered with the manager."""

    default_message = "task: duplicate name"

    def __init__(self, name: str = "") -> None:
        self.name = name
        if name:
            super().__init__(f"{self.default_message}: {_quote(name)}")
        else:
            super().__init__()


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class _LabeledEnum(enum.Enum):
    def __str__(self) -> str:
        return str(self.value)


class State(_LabeledEnum):
    """Lifecycle state of a task."""

    NOT_STARTED = "not-started"
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class OverlapPolicy(_LabeledEnum):
    """How run opportunities are handled when max concurrency is reached."""

    SKIP = "skip"
    MERGE = "merge"


class EveryMode(_LabeledEnum):
    """Scheduling semantics of a periodic task."""

    FIXED_DELAY = "fixed-delay"
    FIXED_RATE = "fixed-rate"


class RunKind(_LabeledEnum):
    """Why a run started."""

    TRIGGER = "trigger"
    SCHEDULE = "schedule"


class TaskKind(_LabeledEnum):
    """Whether a task runs on demand or periodically."""

    TRIGGER = "trigger"
    EVERY = "every"


# ---------------------------------------------------------------------------
# Status and hook payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Status:
    """A point-in-time view of one task.

    ``last_error`` holds the most recent *failure* ("panic" for a raised
    exception); it is not cleared by a later success. ``canceled_count``
    counts context cancellations that were filtered out of reporting.
    ``next_run`` is set for periodic tasks only.
    """

    name: str = ""
    tags: tuple[Tag, ...] = ()
    state: State = State.NOT_STARTED

    running: int = 0
    pending: bool = False

    run_count: int = 0
    fail_count: int = 0
    success_count: int = 0
    canceled_count: int = 0

    last_started: Optional[datetime] = None
    last_finished: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_duration: float = 0.0
    last_error: str = ""

    next_run: Optional[datetime] = None


@dataclass(frozen=True)
class Snapshot:
    """A point-in-time view of all tasks of a manager."""

    tasks: tuple[Status, ...] = ()

    def get(self, name: str) -> Optional[Status]:
        """Return the first status with this name, or None."""
        return next((st for st in self.tasks if st.name == name), None)


@dataclass(frozen=True)
class RunStartInfo:
    """Passed to run-start hooks."""

    name: str
    tags: tuple[Tag, ...]
    kind: RunKind
    scheduled_at: Optional[datetime]
    started_at: datetime


@dataclass(frozen=True)
class RunFinishInfo:
    """Passed to run-finish hooks."""

    name: str
    tags: tuple[Tag, ...]
    kind: RunKind
    scheduled_at: Optional[datetime]
    started_at: datetime
    finished_at: datetime
    duration: float
    err: str = ""
    panicked: bool = False


RunStartHook = Callable[[RunStartInfo], None]
RunFinishHook = Callable[[RunFinishInfo], None]


# ---------------------------------------------------------------------------
# Task definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Task:
    """A task definition that can be registered with a manager."""

    kind: TaskKind
    fn: Optional[TaskFunc]
    interval: float = 0.0


def _seconds(value: Union[float, int, timedelta]) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def trigger(fn: TaskFunc) -> Task:
    """Create a task that runs when triggered."""
    return Task(TaskKind.TRIGGER, fn)


def every(interval: Union[float, int, timedelta], fn: TaskFunc) -> Task:
    """Create a task that runs every ``interval`` (seconds or timedelta).

    The interval must be positive; registering a task with a non-positive
    interval fails.
    """
    return Task(TaskKind.EVERY, fn, _seconds(interval))


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------

_NAME_CHARS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789._-")


def normalize_name(name: str) -> str:
    """Strip surrounding whitespace. Empty names stay empty."""
    return name.strip()


def validate_name(name: str) -> None:
    """Raise InvalidNameError unless ``name`` is empty or matches ``[A-Za-z0-9._-]``."""
    for ch in name:
        if ch in _NAME_CHARS:
            continue
        if ch == "/":
            raise InvalidNameError(name, "contains '/' (not allowed)")
        if ch in " \t\r\n":
            raise InvalidNameError(name, "contains whitespace (not allowed)")
        raise InvalidNameError(name, "contains invalid char (allowed: [A-Za-z0-9._-])")


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


def _normalize_tags(tags: Iterable[Any]) -> tuple[Tag, ...]:
    return tuple(t if isinstance(t, Tag) else Tag(str(t[0]), str(t[1])) for t in tags)


@dataclass
class TaskOptions:
    """Resolved configuration for one registered task.

    On construction the name is normalized and validated, tags are turned
    into :class:`Tag` values, and the overlap policy defaults by kind: merge
    for trigger tasks, skip for periodic ones. A ValueError is raised for a
    non-positive ``max_concurrent``, a missing function or a non-positive
    periodic interval.
    """

    kind: TaskKind
    fn: Optional[TaskFunc]
    interval: float = 0.0
    name: str = ""
    tags: tuple[Tag, ...] = ()
    overlap: Optional[OverlapPolicy] = None
    max_concurrent: int = 1
    every_mode: EveryMode = EveryMode.FIXED_DELAY
    start_immediately: bool = False
    error_handler: Optional[ErrorHandler] = None
    panic_handler: Optional[PanicHandler] = None
    report_context_cancel: bool = False
    on_run_start: Optional[RunStartHook] = None
    on_run_finish: Optional[RunFinishHook] = None

    def __post_init__(self) -> None:
        self.name = normalize_name(self.name)
        validate_name(self.name)
        self.tags = _normalize_tags(self.tags)
        self.interval = _seconds(self.interval)
        if self.overlap is None:
            self.overlap = OverlapPolicy.MERGE if self.kind is TaskKind.TRIGGER else OverlapPolicy.SKIP
        if self.max_concurrent <= 0:
            raise ValueError(
                f"task: max_concurrent={self.max_concurrent} is invalid (must be > 0)"
            )
        if self.fn is None:
            raise ValueError("task: task function is None")
        if self.kind is TaskKind.EVERY and self.interval <= 0:
            raise ValueError(f"task: every interval={self.interval}s is invalid (must be > 0)")


@dataclass(frozen=True)
class ManagerOptions:
    """Manager-wide hooks and the defaults for tasks added to it."""

    on_run_start: Optional[RunStartHook] = None
    on_run_finish: Optional[RunFinishHook] = None
    error_handler: Optional[ErrorHandler] = None
    panic_handler: Optional[PanicHandler] = None
    report_context_cancel: bool = False


# ---------------------------------------------------------------------------
# stderr reporting
# ---------------------------------------------------------------------------

_stderr_lock = threading.Lock()


def _header(kind: str, name: str, tags: tuple[Tag, ...]) -> str:
    out = f"task: {kind}"
    if name:
        out += f" name={_quote(name)}"
    if tags:
        out += f" tags={format_tags(tags)}"
    return out


def _write_stderr(text: str) -> None:
    with _stderr_lock:
        sys.stderr.write(text)
        sys.stderr.flush()


def _report_panic_to_stderr(name: str, tags: tuple[Tag, ...], value: Any, stack: str = "") -> None:
    text = f"{_header('panic', name, tags)} value={value}\n"
    if stack:
        text += stack if stack.endswith("\n") else stack + "\n"
    _write_stderr(text)


def _report_error_to_stderr(name: str, tags: tuple[Tag, ...], err: BaseException) -> None:
    _write_stderr(f"{_header('error', name, tags)} err={err}\n")