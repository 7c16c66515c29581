"""Schedulers for periodic tasks.

Two modes are supported:

* fixed delay: the next run opportunity comes ``interval`` after the most
  recent completion of any run, whether it was scheduled or triggered by
  hand. A tick that fires while a run is still in flight and is dropped by
  the skip policy does not restart the clock; the scheduler waits for the
  next completion and counts from there.
* fixed rate: run opportunities line up with ``base + k * interval``. Missed
  ticks are never caught up; only the next future tick is scheduled.

Both loops run until their context is cancelled, then mark the task as
stopping. They talk to the task through a small host interface made of the
``_request_scheduled_run``, ``_set_next_run``, ``_completion_snapshot``,
``_last_finished`` and ``_set_stopping`` methods.
"""

from __future__ import annotations

import enum
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Union

from zkit.safego import Context

__all__ = [
    "next_tick_after",
    "CompletionSignal",
    "run_fixed_delay",
    "run_fixed_rate",
]

_POLL = 0.005

Interval = Union[float, int, timedelta]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_timedelta(interval: Interval) -> timedelta:
    if isinstance(interval, timedelta):
        return interval
    return timedelta(seconds=float(interval))


def next_tick_after(base: datetime, interval: Interval, now: datetime) -> datetime:
    """Return the first ``base + k * interval`` (k >= 1) strictly after ``now``.

    A non-positive interval yields ``now``; a ``now`` before ``base`` yields
    ``base + interval``.
    """
    step = _as_timedelta(interval)
    if step <= timedelta(0):
        return now
    if now < base:
        return base + step
    k = (now - base) // step + 1
    return base + step * k


class CompletionSignal:
    """A broadcast that fires once per run completion.

    :meth:`snapshot` returns the event for the next completion; :meth:`rotate`
    sets that event and installs a fresh one, so a snapshot taken before a
    completion is never missed, however fast the run finishes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()

    def snapshot(self) -> threading.Event:
        """Return the event that the next :meth:`rotate` will set."""
        with self._lock:
            return self._event

    def rotate(self) -> None:
        """Release everyone waiting on the current event and start a new one."""
        with self._lock:
            fired, self._event = self._event, threading.Event()
        fired.set()


class _SchedulerHost(Protocol):
    def _request_scheduled_run(self, scheduled_at: datetime) -> bool: ...

    def _set_next_run(self, next_run: Optional[datetime]) -> None: ...

    def _completion_snapshot(self) -> threading.Event: ...

    def _last_finished(self) -> Optional[datetime]: ...

    def _set_stopping(self) -> None: ...


class _Wake(enum.Enum):
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    DUE = "due"


def _wait_any(
    ctx: Context,
    completed: Optional[threading.Event],
    deadline: Optional[datetime],
) -> _Wake:
    """Block until the context is cancelled, a run completes, or the deadline passes."""
    while True:
        if ctx.done():
            return _Wake.CANCELLED
        if completed is not None and completed.is_set():
            return _Wake.COMPLETED
        step = _POLL
        if deadline is not None:
            remaining = (deadline - _now()).total_seconds()
            if remaining <= 0:
                return _Wake.DUE
            step = min(step, remaining)
        if completed is not None:
            completed.wait(step)
        else:
            ctx.wait(step)


def _after_last_finished(host: _SchedulerHost, step: timedelta) -> datetime:
    finished = host._last_finished()
    return (finished if finished is not None else _now()) + step


def run_fixed_delay(
    runtime: _SchedulerHost,
    ctx: Context,
    base: Optional[datetime],
    interval: Interval,
    start_immediately: bool,
) -> None:
    """Run the fixed-delay loop for ``runtime`` until ``ctx`` is cancelled."""
    step = _as_timedelta(interval)
    if base is None:
        base = _now()
    next_run = base if start_immediately else base + step

    while True:
        runtime._set_next_run(next_run)
        completed = runtime._completion_snapshot()
        wake = _wait_any(ctx, completed, next_run)
        if wake is _Wake.CANCELLED:
            runtime._set_stopping()
            return
        if wake is _Wake.DUE:
            # Take the snapshot before requesting, so a fast completion is seen.
            after_request = runtime._completion_snapshot()
            runtime._request_scheduled_run(next_run)
            if _wait_any(ctx, after_request, None) is _Wake.CANCELLED:
                runtime._set_stopping()
                return
        next_run = _after_last_finished(runtime, step)


def run_fixed_rate(
    runtime: _SchedulerHost,
    ctx: Context,
    base: Optional[datetime],
    interval: Interval,
    start_immediately: bool,
) -> None:
    """Run the fixed-rate loop for ``runtime`` until ``ctx`` is cancelled."""
    step = _as_timedelta(interval)
    if base is None:
        base = _now()
    if start_immediately:
        runtime._request_scheduled_run(base)

    next_run = next_tick_after(base, step, _now())
    while True:
        runtime._set_next_run(next_run)
        if _wait_any(ctx, None, next_run) is _Wake.CANCELLED:
            runtime._set_stopping()
            return
        runtime._request_scheduled_run(next_run)
        next_run = next_tick_after(base, step, _now())