from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from domain.errors import AlreadyBoundError, NotBoundError, WatcherFreedError

if TYPE_CHECKING:
    from infrastructure.reactor import EventLoop

logger = logging.getLogger(__name__)


class StreamWatcher(ABC):
    """A registration unit that belongs to exactly one event loop.

    Watchers start detached. ``bind`` attaches them to a loop once,
    ``enable``/``disable`` add them to or remove them from the poll set,
    and ``free`` releases the registration. ``free`` may be called any
    number of times.
    """

    def __init__(self) -> None:
        self._loop: EventLoop | None = None
        self._priority: int | None = None
        self._freed = False

    @property
    def loop(self) -> EventLoop | None:
        return self._loop

    @property
    def freed(self) -> bool:
        return self._freed

    @property
    def priority(self) -> int:
        if self._priority is not None:
            return self._priority
        if self._loop is not None:
            return self._loop.default_priority
        return 0

    def bind(self, loop: EventLoop) -> None:
        if self._freed:
            raise WatcherFreedError(f"{type(self).__name__} was already freed")
        if self._loop is not None:
            raise AlreadyBoundError(f"{type(self).__name__} is already bound to a loop")
        if self._priority is not None:
            loop.check_priority(self._priority)
        loop.adopt(self)
        self._loop = loop
        try:
            self._on_bound()
        except Exception:
            loop.release(self)
            self._loop = None
            raise
        logger.debug("watcher_bound", extra={"watcher": type(self).__name__})

    def set_priority(self, priority: int) -> None:
        """Takes effect the next time the watcher is enabled."""
        if self._loop is not None:
            self._loop.check_priority(priority)
        self._priority = priority

    def enable(self) -> None:
        if self._freed:
            raise WatcherFreedError(f"{type(self).__name__} was already freed")
        if self._loop is None:
            raise NotBoundError(f"{type(self).__name__} must be bound before it is enabled")
        self._activate()

    def disable(self) -> None:
        if self._freed or self._loop is None:
            return
        self._deactivate()

    def free(self) -> None:
        if self._freed:
            return
        self._freed = True
        if self._loop is not None:
            self._deactivate()
            self._loop.release(self)
        self._release()
        logger.debug("watcher_freed", extra={"watcher": type(self).__name__})

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.free()

    def _on_bound(self) -> None:
        pass

    def _release(self) -> None:
        pass

    @abstractmethod
    def _activate(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def _deactivate(self) -> None:
        raise NotImplementedError
