import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from zkit.safego import background
from zkit.task_scheduler import (
    CompletionSignal,
    next_tick_after,
    run_fixed_delay,
    run_fixed_rate,
)

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def now():
    return datetime.now(timezone.utc)


class FakeHost:
    def __init__(self, run_on_request=True, completion=None):
        self.run_on_request = run_on_request
        self.completion = completion if completion is not None else CompletionSignal()
        self.lock = threading.Lock()
        self.requests = []
        self.next_runs = []
        self.stopping = False
        self.finished = None

    def _request_scheduled_run(self, scheduled_at):
        with self.lock:
            self.requests.append((scheduled_at, now()))
        if self.run_on_request:
            with self.lock:
                self.finished = now()
            self.completion.rotate()
        return self.run_on_request

    def _set_next_run(self, next_run):
        with self.lock:
            self.next_runs.append(next_run)

    def _completion_snapshot(self):
        return self.completion.snapshot()

    def _last_finished(self):
        with self.lock:
            return self.finished

    def _set_stopping(self):
        with self.lock:
            self.stopping = True


def start_loop(loop, host, ctx, base, interval, start_immediately):
    th = threading.Thread(
        target=loop, args=(host, ctx, base, interval, start_immediately), daemon=True
    )
    th.start()
    return th


# --- next_tick_after -------------------------------------------------------


def test_next_tick_after_worked_example():
    assert next_tick_after(BASE, 10, BASE + timedelta(seconds=25)) == BASE + timedelta(seconds=30)


def test_next_tick_after_exactly_on_tick_is_strictly_after():
    now_ = BASE + timedelta(seconds=20)
    assert next_tick_after(BASE, 10, now_) == BASE + timedelta(seconds=30)


def test_next_tick_after_non_positive_interval_returns_now():
    now_ = BASE + timedelta(seconds=3)
    assert next_tick_after(BASE, 0, now_) == now_
    assert next_tick_after(BASE, -1, now_) == now_


def test_next_tick_after_now_before_base():
    assert next_tick_after(BASE, timedelta(seconds=5), BASE - timedelta(hours=1)) == BASE + timedelta(
        seconds=5
    )


@pytest.mark.parametrize("offset_ms", [0, 1, 999, 1000, 1001, 123456, 7777777])
@pytest.mark.parametrize("interval_ms", [1, 15, 1000, 60000])
def test_next_tick_after_invariants(offset_ms, interval_ms):
    step = timedelta(milliseconds=interval_ms)
    now_ = BASE + timedelta(milliseconds=offset_ms)
    tick = next_tick_after(BASE, step, now_)
    assert tick > now_
    assert tick - now_ <= step
    assert (tick - BASE) % step == timedelta(0)
    assert tick - BASE >= step


def test_next_tick_after_accepts_float_and_timedelta_equally():
    now_ = BASE + timedelta(seconds=7.5)
    assert next_tick_after(BASE, 2.5, now_) == next_tick_after(BASE, timedelta(seconds=2.5), now_)


# --- CompletionSignal ------------------------------------------------------


def test_completion_signal_snapshot_stable_until_rotate():
    sig = CompletionSignal()
    first = sig.snapshot()
    assert sig.snapshot() is first
    assert not first.is_set()


def test_completion_signal_rotate_releases_old_and_installs_new():
    sig = CompletionSignal()
    first = sig.snapshot()
    sig.rotate()
    assert first.is_set()
    second = sig.snapshot()
    assert second is not first
    assert not second.is_set()


def test_completion_signal_wakes_waiter_thread():
    sig = CompletionSignal()
    ev = sig.snapshot()
    result = []
    th = threading.Thread(target=lambda: result.append(ev.wait(2.0)))
    th.start()
    sig.rotate()
    th.join(2.0)
    assert result == [True]
    assert ev.is_set() is True
    assert sig.snapshot().is_set() is False


# --- fixed rate ------------------------------------------------------------


def test_fixed_rate_start_immediately_and_aligned_ticks():
    host = FakeHost()
    ctx = background().with_cancel()
    base = now()
    step = timedelta(milliseconds=20)
    th = start_loop(run_fixed_rate, host, ctx, base, step, True)
    time.sleep(0.15)
    ctx.cancel()
    th.join(2.0)
    assert not th.is_alive()
    assert host.stopping is True
    scheduled = [s for s, _ in host.requests]
    assert scheduled[0] == base
    assert len(scheduled) >= 3
    for s in scheduled:
        assert (s - base) % step == timedelta(0)
    assert all(a < b for a, b in zip(scheduled, scheduled[1:]))


def test_fixed_rate_without_start_immediately_first_tick_after_interval():
    host = FakeHost()
    ctx = background().with_cancel()
    base = now()
    step = timedelta(milliseconds=30)
    th = start_loop(run_fixed_rate, host, ctx, base, step, False)
    time.sleep(0.1)
    ctx.cancel()
    th.join(2.0)
    scheduled = [s for s, _ in host.requests]
    assert scheduled
    assert scheduled[0] == next_tick_after(base, step, base)
    assert host.next_runs[0] == next_tick_after(base, step, base)
    assert host.next_runs[0] == base + step


def test_fixed_rate_cancelled_context_stops_without_runs():
    host = FakeHost()
    ctx = background().with_cancel()
    ctx.cancel()
    th = start_loop(run_fixed_rate, host, ctx, now(), 0.05, False)
    th.join(1.0)
    assert not th.is_alive()
    assert host.stopping is True
    assert host.requests == []


# --- fixed delay -----------------------------------------------------------


def test_fixed_delay_start_immediately_then_waits_interval_after_completion():
    host = FakeHost()
    ctx = background().with_cancel()
    base = now()
    step = timedelta(milliseconds=30)
    th = start_loop(run_fixed_delay, host, ctx, base, step, True)
    time.sleep(0.2)
    ctx.cancel()
    th.join(2.0)
    assert not th.is_alive()
    assert host.stopping is True
    assert host.requests[0][0] == base
    assert len(host.requests) >= 2
    tolerance = timedelta(milliseconds=5)
    for (_, prev_at), (_, next_at) in zip(host.requests, host.requests[1:]):
        assert next_at - prev_at >= step - tolerance


def test_fixed_delay_default_first_run_after_interval():
    signal = CompletionSignal()
    host = FakeHost(completion=signal)
    ctx = background().with_cancel()
    base = now()
    step = timedelta(milliseconds=40)
    th = start_loop(run_fixed_delay, host, ctx, base, step, False)
    time.sleep(0.01)
    assert host.requests == []
    time.sleep(0.1)
    ctx.cancel()
    th.join(2.0)
    expected_first = next_tick_after(base, step, base)
    assert expected_first == base + step
    assert host.requests[0][0] == expected_first
    assert signal.snapshot().is_set() is False


def test_fixed_delay_external_completion_resets_next_run():
    signal = CompletionSignal()
    host = FakeHost(run_on_request=False, completion=signal)
    ctx = background().with_cancel()
    step = timedelta(milliseconds=500)
    th = start_loop(run_fixed_delay, host, ctx, now(), step, False)
    time.sleep(0.03)
    finished = now()
    with host.lock:
        host.finished = finished
    released = signal.snapshot()
    signal.rotate()
    time.sleep(0.05)
    with host.lock:
        last_next = host.next_runs[-1]
    ctx.cancel()
    th.join(2.0)
    assert released.is_set() is True
    current = signal.snapshot()
    assert current is not released
    assert current.is_set() is False
    assert last_next == finished + step
    assert host.requests == []


def test_fixed_delay_cancel_while_waiting_for_in_flight_completion():
    host = FakeHost(run_on_request=False)
    ctx = background().with_cancel()
    th = start_loop(run_fixed_delay, host, ctx, now(), 0.01, True)
    time.sleep(0.05)
    # The request did not complete, so the loop is waiting for a completion.
    assert len(host.requests) == 1
    ctx.cancel()
    th.join(1.0)
    assert not th.is_alive()
    assert host.stopping is True


def test_fixed_delay_none_base_uses_current_time():
    signal = CompletionSignal()
    host = FakeHost(completion=signal)
    ctx = background().with_cancel()
    before = now()
    first_event = signal.snapshot()
    th = start_loop(run_fixed_delay, host, ctx, None, 0.02, True)
    time.sleep(0.05)
    ctx.cancel()
    th.join(2.0)
    first = host.requests[0][0]
    assert before <= first <= now()
    assert host.next_runs[0] == first
    assert first_event.is_set() is True
    assert signal.snapshot().is_set() is False