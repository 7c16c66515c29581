import threading

import pytest

from zkit.safego import (
    Context,
    ContextCanceled,
    DeadlineExceeded,
    ErrorInfo,
    PanicInfo,
    PanicPolicy,
    Tag,
    background,
    format_tags,
    go,
    go_err,
    is_context_cancel,
    run,
    run_err,
)


def _boom(ctx):
    raise RuntimeError("boom")


def test_finally_runs_on_success():
    called = []
    run_err(background(), lambda ctx: None, finalizers=[lambda: called.append(1)])
    assert called == [1]


def test_finally_runs_on_panic_recover_and_report():
    finally_calls = []
    panic_calls = []
    run_err(
        background(),
        _boom,
        finalizers=[lambda: finally_calls.append(1)],
        panic_policy=PanicPolicy.RECOVER_AND_REPORT,
        panic_handler=lambda ctx, info: panic_calls.append(info),
    )
    assert finally_calls == [1]
    assert len(panic_calls) == 1
    assert str(panic_calls[0].value) == "boom"
    assert "RuntimeError" in panic_calls[0].stack


def test_finally_runs_on_panic_repanic_after_report():
    finally_calls = []
    panic_calls = []
    with pytest.raises(RuntimeError, match="boom"):
        run_err(
            background(),
            _boom,
            finalizers=[lambda: finally_calls.append(1)],
            panic_policy=PanicPolicy.REPANIC_AFTER_REPORT,
            panic_handler=lambda ctx, info: panic_calls.append(1),
        )
    assert finally_calls == [1]
    assert panic_calls == [1]


def test_error_handler_default_ignores_cancel():
    calls = []
    run_err(
        background(),
        lambda ctx: ContextCanceled(),
        error_handler=lambda ctx, info: calls.append(info),
    )
    assert calls == []


def test_error_handler_reports_cancel_when_enabled():
    calls = []
    run_err(
        background(),
        lambda ctx: DeadlineExceeded(),
        report_context_cancel=True,
        error_handler=lambda ctx, info: calls.append(info),
    )
    assert len(calls) == 1
    assert isinstance(calls[0].err, DeadlineExceeded)


def test_error_handler_called_with_name_and_tags():
    want = ValueError("x")
    got = []
    run_err(
        background(),
        lambda ctx: want,
        name="n",
        tags=[Tag("k", "v")],
        report_context_cancel=True,
        error_handler=lambda ctx, info: got.append(info),
    )
    assert got == [ErrorInfo(name="n", tags=(Tag("k", "v"),), err=want)]
    assert got[0].err is want


def test_finalizers_run_lifo():
    order = []
    run_err(
        background(),
        lambda ctx: None,
        finalizers=[lambda: order.append("a"), lambda: order.append("b")],
    )
    assert order == ["b", "a"]


def test_none_context_is_allowed():
    seen = []
    run_err(None, lambda ctx: seen.append(ctx))
    assert seen == [background()]
    assert seen[0].done() is False


def test_error_handler_panic_is_contained(capsys):
    def handler(ctx, info):
        raise RuntimeError("handler boom")

    run_err(background(), lambda ctx: ValueError("x"), report_context_cancel=True, error_handler=handler)
    err = capsys.readouterr().err
    assert "safego: error handler panicked: handler boom" in err


def test_panic_handler_panic_is_contained(capsys):
    def handler(ctx, info):
        raise RuntimeError("handler boom")

    run_err(background(), _boom, panic_policy=PanicPolicy.RECOVER_AND_REPORT, panic_handler=handler)
    err = capsys.readouterr().err
    assert "safego: panic handler panicked: handler boom" in err


def test_finalizer_panic_is_contained_and_reported():
    infos = []

    def fin():
        raise RuntimeError("finalizer boom")

    run_err(
        background(),
        lambda ctx: None,
        panic_handler=lambda ctx, info: infos.append(info),
        finalizers=[fin],
    )
    assert len(infos) == 1
    assert infos[0].value == "safego: finalizer panicked: finalizer boom"


def test_recover_only_reports_nothing(capsys):
    calls = []
    run_err(
        background(),
        _boom,
        panic_policy=PanicPolicy.RECOVER_ONLY,
        panic_handler=lambda ctx, info: calls.append(info),
    )
    assert calls == []
    assert capsys.readouterr().err == ""


def test_default_error_reported_to_stderr(capsys):
    run_err(background(), lambda ctx: ValueError("oops"), name="job", tags=[Tag("k", "v")])
    assert capsys.readouterr().err == 'safego: error name="job" tags={k="v"} err=oops\n'


def test_default_panic_reported_to_stderr(capsys):
    run_err(background(), _boom, name="w")
    err = capsys.readouterr().err
    assert err.startswith('safego: panic name="w" value=boom\n')
    assert err.endswith("\n")


def test_example_go_err_with_finalizer():
    done = threading.Event()
    thread = go_err(
        background(),
        lambda ctx: None,
        name="cache-refresh",
        finalizers=[done.set],
        error_handler=lambda ctx, info: None,
        panic_handler=lambda ctx, info: None,
    )
    thread.join(2)
    assert done.is_set()


def test_go_reports_panic_from_thread():
    infos = []
    thread = go(background(), _boom, name="bg", panic_handler=lambda ctx, info: infos.append(info))
    thread.join(2)
    assert [i.name for i in infos] == ["bg"]


def test_example_report_context_cancel():
    lines = []
    run_err(
        background(),
        lambda ctx: ContextCanceled(),
        name="worker",
        report_context_cancel=True,
        error_handler=lambda ctx, info: lines.append(f"name={info.name} err={info.err}"),
    )
    assert lines == ["name=worker err=context canceled"]


def test_example_repanic_after_report():
    lines = []
    with pytest.raises(RuntimeError) as excinfo:
        run_err(
            background(),
            _boom,
            panic_policy=PanicPolicy.REPANIC_AFTER_REPORT,
            panic_handler=lambda ctx, info: lines.append("reported"),
        )
    lines.append(f"panicked: {excinfo.value}")
    assert lines == ["reported", "panicked: boom"]


def test_example_error_reporting():
    lines = []
    run_err(
        background(),
        lambda ctx: ValueError("oops"),
        name="job",
        tags=[Tag("k", "v")],
        error_handler=lambda ctx, info: lines.append("handled"),
    )
    assert lines == ["handled"]


def test_run_ignores_return_value():
    calls = []
    run(background(), lambda ctx: ValueError("ignored"), error_handler=lambda ctx, info: calls.append(info))
    assert calls == []


def test_format_tags():
    assert format_tags([Tag("a", "1"), Tag("b", 'x"y')]) == '{a="1", b="x\\"y"}'
    assert format_tags([]) == "{}"


def test_context_cancel_propagates_to_children():
    parent = background().with_cancel()
    child = parent.with_cancel()
    assert child.err() is None
    parent.cancel()
    assert child.done() is True
    assert isinstance(child.err(), ContextCanceled)


def test_context_child_of_cancelled_parent_is_cancelled():
    parent = Context()
    parent.cancel()
    child = parent.with_cancel()
    assert child.done() is True
    assert str(child.err()) == "context canceled"
    assert is_context_cancel(child.err()) is True


def test_context_timeout():
    ctx = background().with_timeout(0.02)
    assert ctx.wait(2) is True
    assert isinstance(ctx.err(), DeadlineExceeded)
    assert str(ctx.err()) == "context deadline exceeded"


def test_background_cannot_be_cancelled():
    background().cancel()
    assert background().done() is False
    assert background().err() is None


def test_is_context_cancel():
    assert is_context_cancel(ContextCanceled()) is True
    assert is_context_cancel(DeadlineExceeded()) is True
    assert is_context_cancel(ValueError("x")) is False
    assert is_context_cancel(None) is False
    wrapped = RuntimeError("wrapped")
    wrapped.__cause__ = ContextCanceled()
    assert is_context_cancel(wrapped) is True


def test_tuple_tags_are_accepted():
    got = []
    run_err(
        background(),
        lambda ctx: ValueError("e"),
        tags=[("k", "v")],
        error_handler=lambda ctx, info: got.append(info.tags),
    )
    assert got == [(Tag("k", "v"),)]


def test_panic_info_fields():
    infos = []
    run_err(background(), _boom, name="p", tags=[Tag("a", "b")], panic_handler=lambda c, i: infos.append(i))
    assert isinstance(infos[0], PanicInfo)
    assert (infos[0].name, infos[0].tags) == ("p", (Tag("a", "b"),))