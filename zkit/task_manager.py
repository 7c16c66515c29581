"""The task manager: registration, start, graceful shutdown and lookup."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any, Optional

from zkit.safego import Context, ErrorHandler, PanicHandler, background
from zkit.task_runtime import TaskRuntime, _ManagerState
from zkit.task_types import (
    AlreadyStartedError,
    ClosedError,
    DuplicateNameError,
    EveryMode,
    ManagerOptions,
    OverlapPolicy,
    RunFinishInfo,
    RunStartInfo,
    Snapshot,
    Task,
    TaskOptions,
    normalize_name,
)

__all__ = ["Manager"]

_POLL = 0.005


class Manager:
    """Holds tasks, starts their schedulers and coordinates shutdown. Thread-safe."""

    def __init__(
        self,
        *,
        on_run_start: Optional[Callable[[RunStartInfo], None]] = None,
        on_run_finish: Optional[Callable[[RunFinishInfo], None]] = None,
        error_handler: Optional[ErrorHandler] = None,
        panic_handler: Optional[PanicHandler] = None,
        report_context_cancel: bool = False,
    ) -> None:
        self._options = ManagerOptions(
            on_run_start, on_run_finish, error_handler, panic_handler, report_context_cancel
        )
        self._state = _ManagerState.NOT_STARTED
        self._lock = threading.Lock()
        self._tasks: list[TaskRuntime] = []
        self._names: dict[str, TaskRuntime] = {}
        self._start_lock = threading.Lock()
        self._ctx: Optional[Context] = None
        self._start_time: Optional[datetime] = None
        self._wg = threading.Condition()
        self._wg_count = 0

    # -- internal wait group --------------------------------------------

    def _spawn(self, target: Callable[[], None]) -> None:
        with self._wg:
            self._wg_count += 1

        def _body() -> None:
            try:
                target()
            finally:
                with self._wg:
                    self._wg_count -= 1
                    if self._wg_count == 0:
                        self._wg.notify_all()

        threading.Thread(target=_body, daemon=True).start()

    def _wg_wait(self, timeout: Optional[float]) -> bool:
        with self._wg:
            return self._wg.wait_for(lambda: self._wg_count == 0, timeout)

    def _tasks_copy(self) -> list[TaskRuntime]:
        with self._lock:
            return list(self._tasks)

    # -- public API ------------------------------------------------------

    def add(
        self,
        task: Task,
        *,
        name: str = "",
        tags: Iterable[Any] = (),
        max_concurrent: int = 1,
        overlap: Optional[OverlapPolicy] = None,
        start_immediately: bool = False,
        every_mode: EveryMode = EveryMode.FIXED_DELAY,
        error_handler: Optional[ErrorHandler] = None,
        panic_handler: Optional[PanicHandler] = None,
        report_context_cancel: Optional[bool] = None,
        on_run_start: Optional[Callable[[RunStartInfo], None]] = None,
        on_run_finish: Optional[Callable[[RunFinishInfo], None]] = None,
    ) -> TaskRuntime:
        """Register a task and return its handle.

        Raises ClosedError during or after shutdown, InvalidNameError,
        DuplicateNameError, and ValueError for invalid configuration.
        """
        if task is None:
            raise TypeError("task: add called with None task")
        with self._start_lock:
            st = self._state
            if st >= _ManagerState.STOPPING:
                raise ClosedError()
            ctx = self._ctx
            base = datetime.now(timezone.utc) if st is _ManagerState.RUNNING else None

        mo = self._options
        opts = TaskOptions(
            kind=task.kind,
            fn=task.fn,
            interval=task.interval,
            name=name,
            tags=tuple(tags),
            overlap=overlap,
            max_concurrent=max_concurrent,
            every_mode=every_mode,
            start_immediately=start_immediately,
            error_handler=error_handler if error_handler is not None else mo.error_handler,
            panic_handler=panic_handler if panic_handler is not None else mo.panic_handler,
            report_context_cancel=(
                report_context_cancel if report_context_cancel is not None else mo.report_context_cancel
            ),
            on_run_start=on_run_start,
            on_run_finish=on_run_finish,
        )
        runtime = TaskRuntime(self, opts, mo)

        with self._lock:
            if opts.name and opts.name in self._names:
                raise DuplicateNameError(opts.name)
            self._tasks.append(runtime)
            if opts.name:
                self._names[opts.name] = runtime

        if st is _ManagerState.RUNNING and ctx is not None:
            runtime._on_manager_start(ctx, base)
        return runtime

    def must_add(self, task: Task, **kwargs: Any) -> TaskRuntime:
        """Like add; meant for start-up wiring where any error is a programming mistake."""
        return self.add(task, **kwargs)

    def start(self, ctx: Optional[Context] = None) -> None:
        """Start all tasks. Raises AlreadyStartedError when called again."""
        if ctx is None:
            ctx = background()
        with self._start_lock:
            if self._state is not _ManagerState.NOT_STARTED:
                raise AlreadyStartedError()
            self._ctx = ctx.with_cancel()
            self._start_time = datetime.now(timezone.utc)
            self._state = _ManagerState.RUNNING
            start_ctx, start_time = self._ctx, self._start_time
        for runtime in self._tasks_copy():
            runtime._on_manager_start(start_ctx, start_time)

    def shutdown(self, ctx: Optional[Context] = None) -> None:
        """Stop scheduling, cancel runs and wait for them to finish.

        Safe to call repeatedly and without start. If ``ctx`` is cancelled
        first, its error is raised and shutdown may be called again to wait.
        """
        if ctx is None:
            ctx = background()
        with self._start_lock:
            st = self._state
            if st is _ManagerState.NOT_STARTED:
                self._state = _ManagerState.STOPPED
            elif st is _ManagerState.RUNNING:
                self._state = _ManagerState.STOPPING
            run_ctx = self._ctx

        if st is _ManagerState.STOPPED:
            return
        if st is _ManagerState.NOT_STARTED:
            for runtime in self._tasks_copy():
                runtime._mark_stopped()
            return
        if st is _ManagerState.RUNNING:
            for runtime in self._tasks_copy():
                runtime._on_manager_stopping()
            if run_ctx is not None:
                run_ctx.cancel()

        while not self._wg_wait(_POLL):
            if ctx.done():
                err = ctx.err()
                raise err if err is not None else ClosedError()
        self._state = _ManagerState.STOPPED
        for runtime in self._tasks_copy():
            runtime._mark_stopped()

    def wait(self) -> None:
        """Block until all schedulers and runs have exited."""
        self._wg_wait(None)

    def snapshot(self) -> Snapshot:
        """Return the status of every task, in registration order."""
        return Snapshot(tuple(rt.status() for rt in self._tasks_copy()))

    def lookup(self, name: str) -> Optional[TaskRuntime]:
        """Find a task by (normalized) name; empty names are never found."""
        name = normalize_name(name)
        if not name:
            return None
        with self._lock:
            return self._names.get(name)