import selectors
import time

import pytest

from application.watcher import StreamWatcher
from domain.errors import (
    AlreadyBoundError,
    LoopClosedError,
    NotBoundError,
    ReactorError,
)
from domain.models import LoopOutcome, Operation, RunMode
from infrastructure.buffered_stream import BufferedStream
from infrastructure.reactor import EventLoop
from infrastructure.settings import Settings


class RecordingWatcher(StreamWatcher):
    def __init__(self, name: str, log: list) -> None:
        super().__init__()
        self.name = name
        self.log = log

    def _activate(self) -> None:
        self.log.append(("activate", self.name))

    def _deactivate(self) -> None:
        self.log.append(("deactivate", self.name))

    def _release(self) -> None:
        self.log.append(("release", self.name))


class RecordingSelector(selectors.SelectSelector):
    def __init__(self, log: list) -> None:
        super().__init__()
        self.log = log

    def close(self) -> None:
        self.log.append(("selector_closed",))
        super().close()


def _reader(pipe, calls: list, name: str) -> BufferedStream:
    stream = BufferedStream(pipe.reader, Operation.READ)
    stream.on_read = lambda s: (calls.append(name), s.read(1024))
    return stream


def test_run_without_watchers_reports_no_events(loop) -> None:
    assert loop.run(RunMode.NONBLOCK) is LoopOutcome.NO_EVENTS
    assert loop.run(RunMode.ONCE) is LoopOutcome.NO_EVENTS
    assert loop.run() is LoopOutcome.NO_EVENTS


def test_nonblock_with_idle_stream_returns_no_events(loop, pipe) -> None:
    loop.register(BufferedStream(pipe.reader, Operation.READ))
    assert loop.run(RunMode.NONBLOCK) is LoopOutcome.NO_EVENTS


def test_register_twice_raises_already_bound(pipe) -> None:
    with EventLoop() as first, EventLoop() as second:
        stream = BufferedStream(pipe.reader, Operation.READ)
        first.register(stream)
        with pytest.raises(AlreadyBoundError):
            second.register(stream)
        with pytest.raises(AlreadyBoundError):
            stream.bind(first)
        assert stream.loop is first
        assert first.watchers == [stream]
        assert second.watchers == []


def test_enable_before_bind_raises() -> None:
    watcher = RecordingWatcher("a", [])
    with pytest.raises(NotBoundError):
        watcher.enable()


def test_close_frees_watchers_before_selector() -> None:
    log: list = []
    event_loop = EventLoop(selector=RecordingSelector(log))
    first = RecordingWatcher("a", log)
    second = RecordingWatcher("b", log)
    event_loop.register(first)
    event_loop.register(second)

    event_loop.close()
    event_loop.close()

    assert first.freed and second.freed
    assert log == [
        ("deactivate", "a"),
        ("release", "a"),
        ("deactivate", "b"),
        ("release", "b"),
        ("selector_closed",),
    ]
    assert event_loop.watchers == []


def test_free_releases_registration_from_loop(loop) -> None:
    log: list = []
    watcher = RecordingWatcher("a", log)
    loop.register(watcher)
    watcher.free()
    watcher.free()
    assert loop.watchers == []
    assert log.count(("release", "a")) == 1


def test_run_on_closed_loop_raises() -> None:
    event_loop = EventLoop()
    event_loop.close()
    with pytest.raises(LoopClosedError):
        event_loop.run()


def test_priority_bands_order_dispatch(make_pipe) -> None:
    calls: list[str] = []
    low_pipe, high_pipe = make_pipe(), make_pipe()
    low_pipe.send(b"low")
    high_pipe.send(b"high")
    with EventLoop(priority_bands=3) as event_loop:
        low = _reader(low_pipe, calls, "low")
        low.set_priority(2)
        high = _reader(high_pipe, calls, "high")
        high.set_priority(0)
        event_loop.register(low)
        event_loop.register(high)

        assert event_loop.run(RunMode.ONCE) is LoopOutcome.SUCCESS

    assert calls == ["high", "low"]


def test_priority_outside_bands_is_rejected(pipe) -> None:
    with EventLoop(priority_bands=2) as event_loop:
        assert event_loop.default_priority == 1
        stream = BufferedStream(pipe.reader, Operation.READ)
        stream.set_priority(5)
        with pytest.raises(ValueError):
            event_loop.register(stream)
        event_loop.register(RecordingWatcher("ok", []))
        with pytest.raises(ValueError):
            event_loop.watchers[0].set_priority(-1)


def test_stop_immediately_discards_rest_of_batch(loop, make_pipe) -> None:
    calls: list[str] = []
    pipes = [make_pipe(), make_pipe()]
    for index, p in enumerate(pipes):
        p.send(b"data")
        stream = BufferedStream(p.reader, Operation.READ)

        def on_read(s, name=str(index)):
            calls.append(name)
            s.read(1024)
            loop.stop_immediately()

        stream.on_read = on_read
        loop.register(stream)

    assert loop.run() is LoopOutcome.SUCCESS
    assert len(calls) == 1

    loop.run(RunMode.ONCE)
    assert sorted(calls) == ["0", "1"]


def test_stop_immediately_outside_run_has_no_effect(loop) -> None:
    assert loop.stop_immediately() is False


def test_stop_when_drained_finishes_current_batch(loop, make_pipe) -> None:
    calls: list[str] = []
    for name in ("a", "b"):
        p = make_pipe()
        p.send(b"data")
        stream = _reader(p, calls, name)
        stream.on_read = lambda s, n=name: (calls.append(n), s.read(1024), loop.stop_when_drained())
        loop.register(stream)

    assert loop.run() is LoopOutcome.SUCCESS
    assert sorted(calls) == ["a", "b"]


def test_stop_when_drained_after_delay(loop, pipe) -> None:
    loop.register(BufferedStream(pipe.reader, Operation.READ))
    loop.stop_when_drained(after_microseconds=20_000)
    started = time.monotonic()
    assert loop.run() is LoopOutcome.SUCCESS
    assert time.monotonic() - started >= 0.015


def test_stop_when_drained_without_work_does_not_leak_into_next_run(loop, pipe) -> None:
    loop.stop_when_drained()
    assert loop.run() is LoopOutcome.NO_EVENTS

    received: list[bytes] = []
    stream = BufferedStream(pipe.reader, Operation.READ)
    stream.on_read = lambda s: received.append(s.read(1024))
    loop.register(stream)
    pipe.send(b"a")
    loop.call_later(0.01, lambda: (pipe.send(b"b"), pipe.close_writer()))

    assert loop.run() is LoopOutcome.SUCCESS
    assert stream.at_eof
    assert b"".join(received) == b"ab"


def test_timers_fire_unless_cancelled(loop) -> None:
    fired: list[str] = []
    loop.call_later(0.0, lambda: fired.append("kept"))
    loop.call_later(0.0, lambda: fired.append("dropped")).cancel()
    assert loop.run() is LoopOutcome.SUCCESS
    assert fired == ["kept"]


def test_nested_run_is_rejected(loop) -> None:
    errors: list[Exception] = []

    def nested() -> None:
        try:
            loop.run()
        except ReactorError as exc:
            errors.append(exc)

    loop.call_later(0.0, nested)
    loop.run()
    assert len(errors) == 1


def test_from_settings_uses_configured_bands() -> None:
    with EventLoop.from_settings(Settings(selector="select", priority_bands=4)) as event_loop:
        assert event_loop.priority_bands == 4
        assert event_loop.default_priority == 2
