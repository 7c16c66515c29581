"""Run functions with panic and error reporting.

A function started through :func:`run_err` (or its siblings) never raises an
ordinary error back to its caller. Failures are reported instead:

* an *error* is an exception instance **returned** by the function;
* a *panic* is an exception **raised** by the function.

Errors go to the configured error handler, or to stderr by default. By
default, context cancellation errors (:class:`ContextCanceled` and
:class:`DeadlineExceeded`) are not reported, because they are common during
shutdown.

Panics are handled according to :class:`PanicPolicy`. Finalizers always run,
in LIFO order, whatever the outcome. A finalizer that raises is contained and
reported. Handlers that raise are contained and reported to stderr.

:func:`go` and :func:`go_err` run the function on a new daemon thread.
:func:`run` and :func:`run_err` run it on the calling thread.
"""

from __future__ import annotations

import enum
import json
import sys
import threading
import time
import traceback
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Optional, Union

__all__ = [
    "ContextCanceled",
    "DeadlineExceeded",
    "Context",
    "background",
    "is_context_cancel",
    "Tag",
    "ErrorInfo",
    "PanicInfo",
    "PanicPolicy",
    "ErrorHandler",
    "PanicHandler",
    "go",
    "go_err",
    "run",
    "run_err",
    "format_tags",
]


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class ContextCanceled(Exception):
    """The context was cancelled."""

    def __init__(self, message: str = "context canceled") -> None:
        super().__init__(message)


class DeadlineExceeded(Exception):
    """The context deadline passed."""

    def __init__(self, message: str = "context deadline exceeded") -> None:
        super().__init__(message)


class Context:
    """A cancellation signal shared between a caller and the work it starts.

    Cancelling a context cancels every context derived from it.
    """

    def __init__(self, parent: Optional["Context"] = None, *, cancelable: bool = True) -> None:
        self._parent = parent
        self._cancelable = cancelable
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._err: Optional[BaseException] = None
        self._children: set[Context] = set()
        self._timer: Optional[threading.Timer] = None
        if parent is not None and parent._cancelable:
            parent._attach(self)

    def _attach(self, child: "Context") -> None:
        with self._lock:
            err = self._err
            if err is None:
                self._children.add(child)
                return
        child._cancel_with(err)

    def _detach(self, child: "Context") -> None:
        with self._lock:
            self._children.discard(child)

    def _cancel_with(self, err: BaseException) -> None:
        if not self._cancelable:
            return
        with self._lock:
            if self._err is not None:
                return
            self._err = err
            children = list(self._children)
            self._children.clear()
            timer, self._timer = self._timer, None
        self._event.set()
        if timer is not None:
            timer.cancel()
        for child in children:
            child._cancel_with(err)
        if self._parent is not None:
            self._parent._detach(self)

    def with_cancel(self) -> "Context":
        """Return a child context that can be cancelled on its own."""
        return Context(self)

    def with_timeout(self, timeout: float) -> "Context":
        """Return a child context cancelled with DeadlineExceeded after ``timeout`` seconds."""
        child = Context(self)
        if timeout <= 0:
            child._cancel_with(DeadlineExceeded())
            return child
        timer = threading.Timer(timeout, child._cancel_with, args=(DeadlineExceeded(),))
        timer.daemon = True
        with child._lock:
            if child._err is not None:
                return child
            child._timer = timer
        timer.start()
        return child

    def cancel(self) -> None:
        """Cancel this context and its descendants. A no-op for background()."""
        self._cancel_with(ContextCanceled())

    def done(self) -> bool:
        """Report whether the context has been cancelled."""
        return self._event.is_set()

    def err(self) -> Optional[BaseException]:
        """Return the cancellation cause, or None while the context is live."""
        with self._lock:
            return self._err

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or until ``timeout`` seconds pass; return done()."""
        return self._event.wait(timeout)


_BACKGROUND = Context(cancelable=False)


def background() -> Context:
    """Return the root context, which is never cancelled."""
    return _BACKGROUND


def is_context_cancel(err: Optional[BaseException]) -> bool:
    """Report whether ``err`` is, or was caused by, a context cancellation."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, (ContextCanceled, DeadlineExceeded)):
            return True
        seen.add(id(err))
        err = err.__cause__ if err.__cause__ is not None else err.__context__
    return False


# ---------------------------------------------------------------------------
# Report types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Tag:
    """A key/value pair carried by reports, kept in insertion order."""

    key: str
    value: str


@dataclass(frozen=True)
class ErrorInfo:
    """An error returned from a function."""

    name: str
    tags: tuple[Tag, ...]
    err: BaseException


@dataclass(frozen=True)
class PanicInfo:
    """An exception raised from a function and recovered."""

    name: str
    tags: tuple[Tag, ...]
    value: Any
    stack: str = field(default="", repr=False)


class PanicPolicy(enum.Enum):
    """How raised exceptions are handled."""

    RECOVER_AND_REPORT = 0
    RECOVER_ONLY = 1
    REPANIC_AFTER_REPORT = 2


ErrorHandler = Callable[[Context, ErrorInfo], None]
PanicHandler = Callable[[Context, PanicInfo], None]
TagLike = Union[Tag, tuple]


# ---------------------------------------------------------------------------
# stderr reporting
# ---------------------------------------------------------------------------

_stderr_lock = threading.Lock()


def _quote(s: str) -> str:
    return json.dumps(s, ensure_ascii=False)


def format_tags(tags: Iterable[Tag]) -> str:
    """Render tags as ``{k="v", ...}`` in insertion order."""
    return "{" + ", ".join(f"{t.key}={_quote(t.value)}" for t in tags) + "}"


def _header(kind: str, name: str, tags: tuple[Tag, ...]) -> str:
    out = f"safego: {kind}"
    if name:
        out += f" name={_quote(name)}"
    if tags:
        out += f" tags={format_tags(tags)}"
    return out


def _write_stderr(text: str) -> None:
    with _stderr_lock:
        sys.stderr.write(text)
        sys.stderr.flush()


def _report_panic_to_stderr(info: PanicInfo) -> None:
    text = f"{_header('panic', info.name, info.tags)} value={info.value}\n"
    if info.stack:
        text += info.stack if info.stack.endswith("\n") else info.stack + "\n"
    _write_stderr(text)


def _report_error_to_stderr(info: ErrorInfo) -> None:
    _write_stderr(f"{_header('error', info.name, info.tags)} err={info.err}\n")


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _stack_of(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def _normalize_tags(tags: Iterable[TagLike]) -> tuple[Tag, ...]:
    return tuple(t if isinstance(t, Tag) else Tag(str(t[0]), str(t[1])) for t in tags)


def _call_error_handler(ctx: Context, handler: ErrorHandler, info: ErrorInfo) -> None:
    try:
        handler(ctx, info)
    except Exception as exc:  # contain secondary failures from user handlers
        _report_panic_to_stderr(
            PanicInfo(info.name, info.tags, f"safego: error handler panicked: {exc}", _stack_of(exc))
        )


def _call_panic_handler(ctx: Context, handler: PanicHandler, info: PanicInfo) -> None:
    try:
        handler(ctx, info)
    except Exception as exc:  # contain secondary failures from user handlers
        _report_panic_to_stderr(
            PanicInfo(info.name, info.tags, f"safego: panic handler panicked: {exc}", _stack_of(exc))
        )


def _report_panic(ctx: Context, handler: Optional[PanicHandler], info: PanicInfo) -> None:
    if handler is not None:
        _call_panic_handler(ctx, handler, info)
    else:
        _report_panic_to_stderr(info)


def _run_finalizers(
    ctx: Context,
    finalizers: tuple[Callable[[], None], ...],
    name: str,
    tags: tuple[Tag, ...],
    panic_handler: Optional[PanicHandler],
) -> None:
    for fin in reversed(finalizers):
        try:
            fin()
        except Exception as exc:
            info = PanicInfo(name, tags, f"safego: finalizer panicked: {exc}", _stack_of(exc))
            _report_panic(ctx, panic_handler, info)


def run_err(
    ctx: Optional[Context],
    fn: Callable[[Context], Optional[BaseException]],
    *,
    name: str = "",
    tags: Iterable[TagLike] = (),
    finalizers: Iterable[Callable[[], None]] = (),
    error_handler: Optional[ErrorHandler] = None,
    report_context_cancel: bool = False,
    panic_handler: Optional[PanicHandler] = None,
    panic_policy: PanicPolicy = PanicPolicy.RECOVER_AND_REPORT,
) -> None:
    """Run ``fn`` on this thread, reporting a returned error or a raised exception.

    A ``None`` context is treated as :func:`background`. With
    ``PanicPolicy.REPANIC_AFTER_REPORT`` the raised exception propagates after
    it has been reported and the finalizers have run.
    """
    if ctx is None:
        ctx = background()
    tag_tuple = _normalize_tags(tags)
    fin_tuple = tuple(f for f in finalizers if f is not None)

    try:
        try:
            err = fn(ctx)
        except Exception as exc:
            if panic_policy is PanicPolicy.RECOVER_ONLY:
                return
            info = PanicInfo(name, tag_tuple, exc, _stack_of(exc))
            _report_panic(ctx, panic_handler, info)
            if panic_policy is PanicPolicy.REPANIC_AFTER_REPORT:
                raise
            return

        if err is None:
            return
        if not report_context_cancel and is_context_cancel(err):
            return
        info = ErrorInfo(name, tag_tuple, err)
        if error_handler is not None:
            _call_error_handler(ctx, error_handler, info)
        else:
            _report_error_to_stderr(info)
    finally:
        _run_finalizers(ctx, fin_tuple, name, tag_tuple, panic_handler)


def run(
    ctx: Optional[Context],
    fn: Callable[[Context], Any],
    *,
    name: str = "",
    tags: Iterable[TagLike] = (),
    finalizers: Iterable[Callable[[], None]] = (),
    error_handler: Optional[ErrorHandler] = None,
    report_context_cancel: bool = False,
    panic_handler: Optional[PanicHandler] = None,
    panic_policy: PanicPolicy = PanicPolicy.RECOVER_AND_REPORT,
) -> None:
    """Run ``fn`` on this thread; its return value is ignored."""

    def _wrapped(c: Context) -> None:
        fn(c)
        return None

    run_err(
        ctx,
        _wrapped,
        name=name,
        tags=tags,
        finalizers=finalizers,
        error_handler=error_handler,
        report_context_cancel=report_context_cancel,
        panic_handler=panic_handler,
        panic_policy=panic_policy,
    )


def go_err(
    ctx: Optional[Context],
    fn: Callable[[Context], Optional[BaseException]],
    *,
    name: str = "",
    tags: Iterable[TagLike] = (),
    finalizers: Iterable[Callable[[], None]] = (),
    error_handler: Optional[ErrorHandler] = None,
    report_context_cancel: bool = False,
    panic_handler: Optional[PanicHandler] = None,
    panic_policy: PanicPolicy = PanicPolicy.RECOVER_AND_REPORT,
) -> threading.Thread:
    """Run :func:`run_err` on a new daemon thread and return that thread."""
    thread = threading.Thread(
        target=run_err,
        args=(ctx, fn),
        kwargs=dict(
            name=name,
            tags=tuple(tags),
            finalizers=tuple(finalizers),
            error_handler=error_handler,
            report_context_cancel=report_context_cancel,
            panic_handler=panic_handler,
            panic_policy=panic_policy,
        ),
        name=name or None,
        daemon=True,
    )
    thread.start()
    return thread


def go(
    ctx: Optional[Context],
    fn: Callable[[Context], Any],
    *,
    name: str = "",
    tags: Iterable[TagLike] = (),
    finalizers: Iterable[Callable[[], None]] = (),
    error_handler: Optional[ErrorHandler] = None,
    report_context_cancel: bool = False,
    panic_handler: Optional[PanicHandler] = None,
    panic_policy: PanicPolicy = PanicPolicy.RECOVER_AND_REPORT,
) -> threading.Thread:
    """Run :func:`run` on a new daemon thread and return that thread."""
    thread = threading.Thread(
        target=run,
        args=(ctx, fn),
        kwargs=dict(
            name=name,
            tags=tuple(tags),
            finalizers=tuple(finalizers),
            error_handler=error_handler,
            report_context_cancel=report_context_cancel,
            panic_handler=panic_handler,
            panic_policy=panic_policy,
        ),
        name=name or None,
        daemon=True,
    )
    thread.start()
    return thread


def _now() -> float:
    return time.monotonic()