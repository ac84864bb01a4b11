from __future__ import annotations

import heapq
import itertools
import logging
import selectors
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from domain.errors import LoopClosedError, ReactorError
from domain.models import LoopOutcome, Operation, RunMode

if TYPE_CHECKING:
    from application.watcher import StreamWatcher
    from infrastructure.settings import Settings

logger = logging.getLogger(__name__)

SELECTORS: dict[str, str] = {
    "default": "DefaultSelector",
    "select": "SelectSelector",
    "poll": "PollSelector",
    "epoll": "EpollSelector",
    "kqueue": "KqueueSelector",
}

_SELECTOR_EVENTS = {
    Operation.READ: selectors.EVENT_READ,
    Operation.WRITE: selectors.EVENT_WRITE,
}


@dataclass
class _IoRegistration:
    events: Operation
    callback: Callable[[Operation], None]
    priority: int
    active: bool = True


@dataclass(order=True)
class TimerHandle:
    deadline: float
    seq: int
    callback: Callable[[], None] = field(compare=False)
    priority: int = field(compare=False, default=0)
    cancelled: bool = field(compare=False, default=False)

    def cancel(self) -> None:
        self.cancelled = True


class EventLoop:
    """Single-threaded reactor over a :mod:`selectors` selector.

    Priority bands are numbered ``0 .. priority_bands - 1``; within a
    readiness batch lower numbers are dispatched first and ties keep the
    order in which the selector reported them. Watchers without an explicit
    priority sit in the middle band.
    """

    def __init__(
        self,
        priority_bands: int | None = None,
        selector: selectors.BaseSelector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if priority_bands is not None and priority_bands < 1:
            raise ValueError("priority_bands must be at least 1")
        self.priority_bands = priority_bands or 1
        self._selector = selector if selector is not None else selectors.DefaultSelector()
        self._clock = clock
        self._timers: list[TimerHandle] = []
        self._seq = itertools.count()
        self._watchers: list[StreamWatcher] = []
        self._running = False
        self._closed = False
        self._break_requested = False
        self._drain_requested = False

    @classmethod
    def from_settings(cls, settings: Settings) -> EventLoop:
        selector_cls = getattr(selectors, SELECTORS[settings.selector], None)
        if selector_cls is None:
            raise ValueError(f"Selector not available on this platform: {settings.selector}")
        return cls(priority_bands=settings.priority_bands, selector=selector_cls())

    @property
    def default_priority(self) -> int:
        return self.priority_bands // 2

    @property
    def running(self) -> bool:
        return self._running

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def watchers(self) -> list[StreamWatcher]:
        return list(self._watchers)

    def check_priority(self, priority: int) -> None:
        if not 0 <= priority < self.priority_bands:
            raise ValueError(
                f"Priority {priority} outside of 0..{self.priority_bands - 1}"
            )

    def register(self, watcher: StreamWatcher) -> None:
        watcher.bind(self)

    def adopt(self, watcher: StreamWatcher) -> None:
        if self._closed:
            raise LoopClosedError("Cannot bind a watcher to a closed loop")
        self._watchers.append(watcher)

    def release(self, watcher: StreamWatcher) -> None:
        if watcher in self._watchers:
            self._watchers.remove(watcher)

    def watch(
        self,
        fileobj: Any,
        events: Operation,
        callback: Callable[[Operation], None],
        priority: int = 0,
    ) -> None:
        """Set the I/O interest for ``fileobj``, replacing any earlier one."""
        if self._closed:
            raise LoopClosedError("Loop is closed")
        if not events:
            self.unwatch(fileobj)
            return
        mask = _to_selector_mask(events)
        try:
            key = self._selector.get_key(fileobj)
        except KeyError:
            registration = _IoRegistration(events, callback, priority)
            self._selector.register(fileobj, mask, registration)
            return
        registration = key.data
        registration.events = events
        registration.callback = callback
        registration.priority = priority
        if key.events != mask:
            self._selector.modify(fileobj, mask, registration)

    def unwatch(self, fileobj: Any) -> None:
        if self._closed:
            return
        try:
            key = self._selector.unregister(fileobj)
        except (KeyError, ValueError):
            return
        key.data.active = False

    def call_later(
        self, delay: float, callback: Callable[[], None], priority: int = 0
    ) -> TimerHandle:
        if self._closed:
            raise LoopClosedError("Loop is closed")
        handle = TimerHandle(
            self._clock() + max(delay, 0.0), next(self._seq), callback, priority
        )
        heapq.heappush(self._timers, handle)
        return handle

    def run(self, mode: RunMode = RunMode.DEFAULT) -> LoopOutcome:
        if self._closed:
            raise LoopClosedError("Cannot run a closed loop")
        if self._running:
            raise ReactorError("Loop is already running")
        self._running = True
        self._break_requested = False
        dispatched = False
        try:
            while True:
                if not self._has_work():
                    return LoopOutcome.SUCCESS if dispatched else LoopOutcome.NO_EVENTS
                timeout = 0.0 if mode is RunMode.NONBLOCK else self._next_timeout()
                try:
                    ready = self._selector.select(timeout)
                except OSError:
                    logger.exception("select_failed")
                    return LoopOutcome.ERROR
                batch = self._collect(ready)
                if batch:
                    dispatched = True
                    self._dispatch(batch)
                if self._break_requested:
                    return LoopOutcome.SUCCESS
                if self._drain_requested and batch:
                    return LoopOutcome.SUCCESS
                if mode is RunMode.NONBLOCK:
                    return LoopOutcome.SUCCESS if batch else LoopOutcome.NO_EVENTS
                if mode is RunMode.ONCE and batch:
                    return LoopOutcome.SUCCESS
        finally:
            self._running = False
            self._break_requested = False
            self._drain_requested = False

    def stop_immediately(self) -> bool:
        """Abort dispatch once the in-flight callback returns.

        Returns ``False`` when the loop is not running.
        """
        if not self._running:
            return False
        self._break_requested = True
        return True

    def stop_when_drained(self, after_microseconds: int | None = None) -> None:
        if after_microseconds is None or after_microseconds <= 0:
            self._drain_requested = True
            return
        self.call_later(after_microseconds / 1_000_000, self._request_drain)

    def close(self) -> None:
        if self._closed:
            return
        for watcher in list(self._watchers):
            watcher.free()
        self._watchers.clear()
        self._timers.clear()
        self._selector.close()
        self._closed = True
        logger.debug("loop_closed")

    def __enter__(self) -> EventLoop:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _request_drain(self) -> None:
        self._drain_requested = True

    def _has_work(self) -> bool:
        self._drop_cancelled()
        return bool(self._timers) or bool(self._selector.get_map())

    def _drop_cancelled(self) -> None:
        while self._timers and self._timers[0].cancelled:
            heapq.heappop(self._timers)

    def _next_timeout(self) -> float | None:
        self._drop_cancelled()
        if not self._timers:
            return None
        return max(self._timers[0].deadline - self._clock(), 0.0)

    def _collect(
        self, ready: list[tuple[selectors.SelectorKey, int]]
    ) -> list[tuple[int, int, Callable[[], None]]]:
        batch: list[tuple[int, int, Callable[[], None]]] = []
        for key, mask in ready:
            registration = key.data
            events = _from_selector_mask(mask) & registration.events
            if events:
                batch.append(
                    (registration.priority, len(batch), _io_entry(registration, events))
                )
        now = self._clock()
        while self._timers and self._timers[0].deadline <= now:
            handle = heapq.heappop(self._timers)
            if not handle.cancelled:
                batch.append((handle.priority, len(batch), _timer_entry(handle)))
        batch.sort(key=lambda entry: (entry[0], entry[1]))
        return batch

    def _dispatch(self, batch: list[tuple[int, int, Callable[[], None]]]) -> None:
        for _, _, entry in batch:
            if self._break_requested:
                logger.debug("dispatch_aborted")
                return
            entry()


def _io_entry(registration: _IoRegistration, events: Operation) -> Callable[[], None]:
    def run() -> None:
        current = events & registration.events
        if registration.active and current:
            registration.callback(current)

    return run


def _timer_entry(handle: TimerHandle) -> Callable[[], None]:
    def run() -> None:
        if not handle.cancelled:
            handle.callback()

    return run


def _to_selector_mask(events: Operation) -> int:
    mask = 0
    for operation, flag in _SELECTOR_EVENTS.items():
        if events & operation:
            mask |= flag
    return mask


def _from_selector_mask(mask: int) -> Operation:
    events = Operation(0)
    for operation, flag in _SELECTOR_EVENTS.items():
        if mask & flag:
            events |= operation
    return events
