"""The runtime behind one registered task: runs, overlap handling and status."""

from __future__ import annotations

import enum
import threading
import time
import traceback
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from zkit.safego import (
    Context,
    ErrorInfo,
    PanicInfo,
    background,
    is_context_cancel,
)
from zkit.task_scheduler import CompletionSignal, run_fixed_delay, run_fixed_rate
from zkit.task_types import (
    ClosedError,
    EveryMode,
    ManagerOptions,
    NotRunningError,
    OverlapPolicy,
    PanickedError,
    RunFinishInfo,
    RunKind,
    RunStartInfo,
    SkippedError,
    State,
    Status,
    TaskKind,
    TaskOptions,
    _report_error_to_stderr,
    _report_panic_to_stderr,
)

if TYPE_CHECKING:
    from zkit.task_manager import Manager

__all__ = ["TaskRuntime"]

_POLL = 0.005


class _ManagerState(enum.IntEnum):
    NOT_STARTED = 0
    RUNNING = 1
    STOPPING = 2
    STOPPED = 3


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _stack_of(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


class _Waiter:
    """Receives the outcome of one run; only the first delivery counts."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._delivered = False
        self.err: Optional[BaseException] = None
        self.panicked = False

    def deliver(self, err: Optional[BaseException], panicked: bool = False) -> None:
        with self._lock:
            if self._delivered:
                return
            self._delivered = True
            self.err = err
            self.panicked = panicked
        self._event.set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def ready(self) -> bool:
        return self._event.is_set()


class TaskRuntime:
    """A registered task handle.

    Triggering before the manager starts, or once it is shutting down, is a
    no-op: :meth:`try_trigger` returns False.
    """

    def __init__(self, manager: "Manager", options: TaskOptions, manager_options: ManagerOptions) -> None:
        self._manager = manager
        self._kind = options.kind
        self._fn = options.fn
        self._name = options.name
        self._tags = tuple(options.tags)
        self._overlap = options.overlap
        self._max_concurrent = options.max_concurrent
        self._interval = options.interval
        self._every_mode = options.every_mode
        self._start_immediately = options.start_immediately
        self._error_handler = options.error_handler
        self._panic_handler = options.panic_handler
        self._report_context_cancel = options.report_context_cancel
        self._start_hooks = [h for h in (manager_options.on_run_start, options.on_run_start) if h is not None]
        self._finish_hooks = [h for h in (manager_options.on_run_finish, options.on_run_finish) if h is not None]

        self._lock = threading.Lock()
        self._state = State.NOT_STARTED
        self._running = 0
        self._pending = False
        self._pending_waiters: list[_Waiter] = []

        self._run_count = 0
        self._fail_count = 0
        self._success_count = 0
        self._canceled_count = 0
        self._last_started: Optional[datetime] = None
        self._last_finished_at: Optional[datetime] = None
        self._last_success: Optional[datetime] = None
        self._last_duration = 0.0
        self._last_error = ""

        self._base_time: Optional[datetime] = None
        self._next_run: Optional[datetime] = None
        self._completion = CompletionSignal()
        self._scheduler_started = False

    # -- public handle ---------------------------------------------------

    def name(self) -> str:
        """Return the normalized task name (may be empty)."""
        return self._name

    def trigger(self) -> None:
        """Request a run opportunity, ignoring whether it was accepted."""
        self.try_trigger()

    def try_trigger(self) -> bool:
        """Request a run opportunity and report whether it was accepted."""
        accepted, _ = self._request_run(RunKind.TRIGGER, None, None)
        return accepted

    def trigger_and_wait(self, ctx: Optional[Context] = None) -> None:
        """Request a run and wait for it to complete.

        Raises NotRunningError, ClosedError, SkippedError, PanickedError, the
        context's cancellation error, or the error the run returned.
        """
        if ctx is None:
            ctx = background()
        waiter = _Waiter()
        _, err = self._request_run(RunKind.TRIGGER, None, waiter)
        if err is not None:
            raise err
        while not waiter.wait(_POLL):
            if ctx.done() and not waiter.ready():
                self._remove_pending_waiter(waiter)
                cause = ctx.err()
                raise cause if cause is not None else ClosedError()
        if waiter.panicked:
            raise PanickedError()
        if waiter.err is not None:
            raise waiter.err

    def status(self) -> Status:
        """Return a snapshot of this task's status."""
        with self._lock:
            return Status(
                name=self._name,
                tags=self._tags,
                state=self._state,
                running=self._running,
                pending=self._pending,
                run_count=self._run_count,
                fail_count=self._fail_count,
                success_count=self._success_count,
                canceled_count=self._canceled_count,
                last_started=self._last_started,
                last_finished=self._last_finished_at,
                last_success=self._last_success,
                last_duration=self._last_duration,
                last_error=self._last_error,
                next_run=self._next_run,
            )

    # -- lifecycle -------------------------------------------------------

    def _on_manager_start(self, ctx: Context, base: Optional[datetime]) -> None:
        with self._lock:
            if self._state is not State.NOT_STARTED:
                return
            self._state = State.IDLE
            self._base_time = base
            start_sched = self._kind is TaskKind.EVERY and not self._scheduler_started
            self._scheduler_started = self._scheduler_started or start_sched
        if start_sched:
            self._manager._spawn(lambda: self._run_scheduler(ctx))

    def _run_scheduler(self, ctx: Context) -> None:
        with self._lock:
            base = self._base_time
        if base is None:
            base = _now()
        if self._every_mode is EveryMode.FIXED_DELAY:
            run_fixed_delay(self, ctx, base, self._interval, self._start_immediately)
        else:
            run_fixed_rate(self, ctx, base, self._interval, self._start_immediately)

    def _drain_pending(self, state: State) -> None:
        with self._lock:
            self._state = state
            self._next_run = None
            self._pending = False
            waiters, self._pending_waiters = self._pending_waiters, []
        for w in waiters:
            w.deliver(ClosedError())

    def _on_manager_stopping(self) -> None:
        self._drain_pending(State.STOPPING)

    def _mark_stopped(self) -> None:
        self._drain_pending(State.STOPPED)

    # -- scheduler host --------------------------------------------------

    def _request_scheduled_run(self, scheduled_at: datetime) -> bool:
        accepted, _ = self._request_run(RunKind.SCHEDULE, scheduled_at, None)
        return accepted

    def _set_next_run(self, next_run: Optional[datetime]) -> None:
        with self._lock:
            self._next_run = next_run

    def _completion_snapshot(self) -> threading.Event:
        return self._completion.snapshot()

    def _last_finished(self) -> Optional[datetime]:
        with self._lock:
            return self._last_finished_at

    def _set_stopping(self) -> None:
        with self._lock:
            self._state = State.STOPPING

    # -- runs ------------------------------------------------------------

    def _request_run(
        self, kind: RunKind, scheduled_at: Optional[datetime], waiter: Optional[_Waiter]
    ) -> tuple[bool, Optional[BaseException]]:
        mgr = self._manager
        with mgr._start_lock:
            st = mgr._state
            if st is _ManagerState.NOT_STARTED:
                return False, NotRunningError()
            if st is not _ManagerState.RUNNING:
                return False, ClosedError()
            ctx = mgr._ctx if mgr._ctx is not None else background()
            return self._try_start_or_pend(ctx, kind, scheduled_at, [waiter] if waiter else [])

    def _begin_locked(self, kind: RunKind, scheduled_at: Optional[datetime]) -> tuple[RunStartInfo, float]:
        self._running += 1
        self._state = State.RUNNING
        self._run_count += 1
        started_at = _now()
        self._last_started = started_at
        info = RunStartInfo(self._name, self._tags, kind, scheduled_at, started_at)
        return info, time.monotonic()

    def _launch(self, ctx: Context, info: RunStartInfo, mono: float, waiters: list[_Waiter]) -> None:
        def _body() -> None:
            self._call_hooks(self._start_hooks, info)
            self._run_once(ctx, info.kind, info.scheduled_at, info.started_at, mono, waiters)

        self._manager._spawn(_body)

    def _try_start_or_pend(
        self, ctx: Context, kind: RunKind, scheduled_at: Optional[datetime], waiters: list[_Waiter]
    ) -> tuple[bool, Optional[BaseException]]:
        with self._lock:
            if self._state in (State.STOPPING, State.STOPPED):
                return False, ClosedError()
            if self._state is State.NOT_STARTED:
                return False, NotRunningError()
            if self._running < self._max_concurrent:
                info, mono = self._begin_locked(kind, scheduled_at)
            elif self._overlap is OverlapPolicy.MERGE:
                self._pending = True
                self._pending_waiters.extend(waiters)
                return True, None
            else:
                return False, SkippedError()
        self._launch(ctx, info, mono, waiters)
        return True, None

    def _run_once(
        self,
        ctx: Context,
        kind: RunKind,
        scheduled_at: Optional[datetime],
        started_at: datetime,
        mono: float,
        waiters: list[_Waiter],
    ) -> None:
        err: Optional[BaseException] = None
        raw: Optional[BaseException] = None
        filtered = False
        panicked = False
        try:
            raw = self._fn(ctx)
            err = raw
            if raw is not None and self._should_report(raw):
                self._report_error(ctx, raw)
            elif raw is not None:
                filtered = is_context_cancel(raw)
                err = None
        except Exception as exc:
            panicked = True
            self._report_panic(ctx, exc)

        finished_at = _now()
        duration = time.monotonic() - mono
        start_pending = False
        merged_waiters: list[_Waiter] = []
        with self._lock:
            self._running = max(0, self._running - 1)
            self._last_finished_at = finished_at
            self._last_duration = duration
            if panicked:
                self._fail_count += 1
                self._last_error = "panic"
            elif raw is not None and not filtered:
                self._fail_count += 1
                self._last_error = str(raw)
            elif raw is None:
                self._success_count += 1
                self._last_success = finished_at
            else:
                self._canceled_count += 1

            mst = self._manager._state
            if self._pending and self._running < self._max_concurrent and mst is _ManagerState.RUNNING:
                start_pending = True
                self._pending = False
                merged_waiters, self._pending_waiters = self._pending_waiters, []

            if mst is _ManagerState.STOPPED:
                self._state = State.STOPPED
            elif mst >= _ManagerState.STOPPING:
                self._state = State.STOPPING
            elif self._running > 0:
                self._state = State.RUNNING
            else:
                self._state = State.IDLE

            finish = RunFinishInfo(
                self._name, self._tags, kind, scheduled_at, started_at, finished_at, duration,
                str(err) if err is not None else "", panicked,
            )
            self._completion.rotate()

        self._call_hooks(self._finish_hooks, finish)
        for w in waiters:
            w.deliver(err, panicked)
        if start_pending:
            self._start_merged_pending(merged_waiters)

    def _start_merged_pending(self, waiters: list[_Waiter]) -> None:
        mgr = self._manager
        with mgr._start_lock:
            if mgr._state is not _ManagerState.RUNNING:
                launch = None
            else:
                ctx = mgr._ctx if mgr._ctx is not None else background()
                with self._lock:
                    if self._state in (State.STOPPING, State.STOPPED, State.NOT_STARTED):
                        launch = None
                    elif self._running < self._max_concurrent:
                        launch = self._begin_locked(RunKind.TRIGGER, None)
                    else:
                        self._pending = True
                        self._pending_waiters.extend(waiters)
                        return
                if launch is not None:
                    self._launch(ctx, launch[0], launch[1], waiters)
                    return
        for w in waiters:
            w.deliver(ClosedError())

    def _remove_pending_waiter(self, waiter: _Waiter) -> bool:
        with self._lock:
            try:
                self._pending_waiters.remove(waiter)
            except ValueError:
                return False
            return True

    # -- reporting -------------------------------------------------------

    def _should_report(self, err: BaseException) -> bool:
        return self._report_context_cancel or not is_context_cancel(err)

    def _report_error(self, ctx: Context, err: BaseException) -> None:
        if self._error_handler is None:
            _report_error_to_stderr(self._name, self._tags, err)
            return
        try:
            self._error_handler(ctx, ErrorInfo(self._name, self._tags, err))
        except Exception as exc:
            _report_panic_to_stderr(
                self._name, self._tags, f"task: error handler panicked: {exc}", _stack_of(exc)
            )

    def _report_panic(self, ctx: Context, value: BaseException) -> None:
        stack = _stack_of(value)
        if self._panic_handler is None:
            _report_panic_to_stderr(self._name, self._tags, value, stack)
            return
        try:
            self._panic_handler(ctx, PanicInfo(self._name, self._tags, value, stack))
        except Exception as exc:
            _report_panic_to_stderr(
                self._name, self._tags, f"task: panic handler panicked: {exc}", _stack_of(exc)
            )

    def _call_hooks(self, hooks: list[Callable[[Any], None]], info: Any) -> None:
        for hook in hooks:
            try:
                hook(info)
            except Exception as exc:
                _report_panic_to_stderr(self._name, self._tags, f"task: hook panicked: {exc}", _stack_of(exc))