from __future__ import annotations

import os

from domain.models import Operation


class ReactorError(Exception):
    """Base class for misuse of the loop or its watchers."""


class AlreadyBoundError(ReactorError):
    pass


class NotBoundError(ReactorError):
    pass


class WatcherFreedError(ReactorError):
    pass


class LoopClosedError(ReactorError):
    pass


class StreamError(Exception):
    """I/O failure on a buffered stream, handed to ``on_error``."""

    def __init__(self, code: int, which: Operation, message: str | None = None) -> None:
        self.code = code
        self.which = which
        if message is None:
            message = os.strerror(code) if code else "stream failure"
        super().__init__(f"{which.name.lower()} failed: {message} (code={code})")
