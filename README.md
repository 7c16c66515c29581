# zkit

Small runtime helpers for Python programs, built on threads and the standard library only.

- `zkit.safego` runs a function so that its failures are always observed: a returned error or
  a raised exception is reported to a handler you supply, or to stderr by default.
- `zkit.task_manager` (with `zkit.task_types`, `zkit.task_runtime` and `zkit.task_scheduler`)
  holds background tasks, runs them on demand or on a schedule, and coordinates graceful
  shutdown.

## Installation

```
pip install zkit
```

## Contexts

`zkit.safego.Context` is a cancellation signal passed to every function the package runs.

- `background()` returns the root context, which is never cancelled.
- `ctx.with_cancel()` returns a child that can be cancelled with `cancel()`;
  `ctx.with_timeout(seconds)` returns a child cancelled with `DeadlineExceeded` after the timeout.
- Cancelling a context cancels all contexts derived from it.
- `done()`, `err()` and `wait(timeout)` observe the state; `err()` is `ContextCanceled` or
  `DeadlineExceeded` once cancelled, `None` before.
- `is_context_cancel(err)` reports whether an exception is, or was caused by, a cancellation.

## Guarded execution

A function run through `zkit.safego` takes a `Context`. It reports an *error* by **returning**
an exception instance, and a *panic* is any exception it **raises**.

```python
from zkit.safego import background, run_err, PanicPolicy, Tag

def work(ctx):
    return ValueError("oops")

run_err(
    background(),
    work,
    name="job",
    tags=[Tag("k", "v")],
    error_handler=lambda ctx, info: print(info.name, info.err),
)
```

Keyword options of `run_err`, `run`, `go_err` and `go`:

- `name`, `tags`: carried into `ErrorInfo` / `PanicInfo` and the stderr output. Tags may be
  `Tag` values or `(key, value)` pairs; order is kept.
- `error_handler(ctx, info)`: receives returned errors. Without it, errors go to stderr.
- `report_context_cancel`: `ContextCanceled` and `DeadlineExceeded` are not reported unless this
  is `True`.
- `panic_handler(ctx, info)`: receives raised exceptions; `info.stack` holds the traceback.
  Without it, they go to stderr.
- `panic_policy`: `PanicPolicy.RECOVER_AND_REPORT` (default), `PanicPolicy.RECOVER_ONLY`
  (swallow silently) or `PanicPolicy.REPANIC_AFTER_REPORT` (report, run the finalizers, then
  re-raise).
- `finalizers`: callables that always run, last registered first. A finalizer that raises is
  reported (panic handler or stderr) and not re-raised.

A handler that raises is contained and reported to stderr. A `None` context is treated as
`background()`.

`run_err` and `run` execute on the calling thread; `run` ignores the function's return value.
`go_err` and `go` do the same on a new daemon thread and return that `threading.Thread`.
The stderr format is diagnostic output, for example
`safego: error name="job" tags={k="v"} err=oops`; `format_tags` renders the tag part.

## Background tasks

```python
from datetime import timedelta
from zkit.safego import background
from zkit.task_manager import Manager
from zkit.task_types import trigger, every, EveryMode

def rebuild_index(ctx):
    return None          # success

def refresh_cache(ctx):
    return None

m = Manager()
h = m.must_add(trigger(rebuild_index), name="rebuild-index")
m.add(every(timedelta(seconds=10), refresh_cache), name="cache-refresh",
      every_mode=EveryMode.FIXED_RATE, start_immediately=True)

m.start(background())
h.trigger_and_wait(background())
print(m.snapshot().get("cache-refresh"))
m.shutdown(background())
```

### Tasks

- `trigger(fn)` makes a task that runs when triggered; `every(interval, fn)` makes a periodic
  task. The interval is seconds or a `timedelta` and must be positive.
- Task functions follow the same convention as above: return `None` on success, return an
  exception to fail, raise to panic.

### Manager

- `Manager(on_run_start=..., on_run_finish=..., error_handler=..., panic_handler=...,
  report_context_cancel=...)`: hooks apply to every task; the handlers and the
  cancel-reporting flag are defaults for tasks that do not set their own.
- `add(task, *, name, tags, max_concurrent, overlap, start_immediately, every_mode,
  error_handler, panic_handler, report_context_cancel, on_run_start, on_run_finish)` registers
  a task and returns its handle (a `TaskRuntime`). It may be called before or after `start`.
  It raises `ClosedError` during or after shutdown, `InvalidNameError`, `DuplicateNameError`,
  and `ValueError` for a non-positive `max_concurrent` or interval. `must_add` takes the same
  arguments.
- `start(ctx)` starts all tasks; a second call raises `AlreadyStartedError`.
- `shutdown(ctx)` stops scheduling, releases pending waiters with `ClosedError`, cancels the
  manager context and waits for schedulers and runs to exit. It may be called repeatedly and
  without `start`. If `ctx` is cancelled first, its error is raised and `shutdown` may be
  called again to keep waiting.
- `wait()` blocks until all schedulers and runs have exited.
- `snapshot()` returns a `Snapshot` of every task's `Status`; `Snapshot.get(name)` returns one
  or `None`. `lookup(name)` finds a handle by name, or returns `None`.

Names are stripped of surrounding whitespace, must match `[A-Za-z0-9._-]`, and are unique
within a manager. Unnamed tasks are allowed but cannot be looked up.

### Handles

- `trigger()` requests a run; `try_trigger()` also says whether the request was accepted.
  Before `start`, or once shutdown has begun, both are no-ops.
- `trigger_and_wait(ctx)` requests a run and waits for it. It raises `NotRunningError`,
  `ClosedError`, `SkippedError`, `PanickedError`, the context's cancellation error, or the
  error the run returned. A filtered cancellation counts as neither success nor failure and
  does not raise.
- `status()` returns the task's `Status`: state, running count, pending flag, run / success /
  fail / canceled counters, last start, finish and success times, last duration in seconds,
  `last_error` (the last *failure*, `"panic"` for a raised exception; not cleared on success)
  and `next_run` for periodic tasks.

### Overlap and scheduling

- With `max_concurrent` runs in flight, `OverlapPolicy.SKIP` drops a new run opportunity and
  `OverlapPolicy.MERGE` folds all of them into one pending run. Trigger tasks default to merge,
  periodic tasks to skip. No unbounded queue is kept.
- `EveryMode.FIXED_DELAY` (default) schedules the next run one interval after the latest
  completion of any run, manual triggers included. `EveryMode.FIXED_RATE` aligns runs to
  `base + k * interval` and never catches up missed ticks; the base is the start time, or the
  add time for tasks added after start. `next_tick_after` computes that next tick.
- Periodic tasks first run one interval after start unless `start_immediately=True`.
- Hooks receive `RunStartInfo` / `RunFinishInfo` and are called synchronously on the run
  thread; a hook that raises is reported to stderr.

## What it does not do

The package is a library only: it has no command-line program, no HTTP endpoints for task
status (expose `Manager.snapshot()` yourself), no cron-style schedules, and keeps no task
state beyond the running process.

## Running the tests

```
pip install -e .[test]
pytest
```