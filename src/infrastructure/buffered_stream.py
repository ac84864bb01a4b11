from __future__ import annotations

import errno
import logging
import os
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from application.watcher import StreamWatcher
from domain.errors import StreamError
from domain.models import Condition, Operation
from infrastructure import metrics
from infrastructure.reactor import TimerHandle

if TYPE_CHECKING:
    from infrastructure.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_FILL_SIZE = 4096
_OPPOSITE = {Operation.READ: Operation.WRITE, Operation.WRITE: Operation.READ}


class BufferedStream(StreamWatcher):
    """Watches one stream and moves bytes between it and two buffers.

    The loop fills the input buffer when the stream is readable and drains
    the output buffer when it is writable; ``read`` and ``write`` only ever
    touch those buffers. The stream itself is referenced, never closed.

    Handlers are plain attributes and all optional:

    * ``on_read(stream)`` once the input buffer reaches the low watermark
    * ``on_write(stream)`` once the output buffer has been fully drained
    * ``on_eof(stream)`` when the stream is exhausted
    * ``on_timeout(stream, which)`` when a direction saw no activity in time
    * ``on_error(stream, error)`` for any other failure

    Every condition disarms the direction it happened on. After a timeout,
    calling ``enable()`` arms it again; after EOF, reading stays off.
    """

    def __init__(
        self,
        stream: Any,
        operations: Operation,
        fill_size: int = DEFAULT_FILL_SIZE,
        write_limit: int | None = None,
    ) -> None:
        super().__init__()
        if not operations & (Operation.READ | Operation.WRITE):
            raise ValueError("operations must include READ and/or WRITE")
        self.stream = stream
        self.operations = operations
        self.fill_size = fill_size
        self.write_limit = write_limit
        self.read_timeout: float | None = None
        self.write_timeout: float | None = None
        self.read_low_watermark = 0

        self.on_read: Callable[[BufferedStream], None] | None = None
        self.on_write: Callable[[BufferedStream], None] | None = None
        self.on_error: Callable[[BufferedStream, StreamError], None] | None = None
        self.on_eof: Callable[[BufferedStream], None] | None = None
        self.on_timeout: Callable[[BufferedStream, Operation], None] | None = None

        self._input = bytearray()
        self._output = bytearray()
        self._armed = Operation(0)
        self._enabled = False
        self._read_timer: TimerHandle | None = None
        self._write_timer: TimerHandle | None = None
        self._eof = False
        self._error: StreamError | None = None

    @classmethod
    def from_settings(
        cls, stream: Any, operations: Operation, settings: Settings
    ) -> BufferedStream:
        buffered = cls(
            stream,
            operations,
            fill_size=settings.fill_size,
            write_limit=settings.write_limit,
        )
        buffered.set_read_low_watermark(settings.read_low_watermark)
        return buffered

    @property
    def at_eof(self) -> bool:
        return self._eof

    @property
    def error(self) -> StreamError | None:
        return self._error

    @property
    def input_size(self) -> int:
        return len(self._input)

    @property
    def output_size(self) -> int:
        return len(self._output)

    @property
    def armed(self) -> Operation:
        return self._armed

    def read(self, max_bytes: int) -> bytes:
        if max_bytes <= 0 or not self._input:
            return b""
        data = bytes(self._input[:max_bytes])
        del self._input[:max_bytes]
        return data

    def write(self, data: bytes) -> bool:
        if self.freed or not self.operations & Operation.WRITE:
            return False
        if self.write_limit is not None and len(self._output) + len(data) > self.write_limit:
            logger.warning(
                "write_rejected",
                extra={"pending": len(self._output), "size": len(data), "limit": self.write_limit},
            )
            return False
        self._output.extend(data)
        if self._enabled and not self._armed & Operation.WRITE:
            self._arm(self._armed | Operation.WRITE)
        return True

    def set_timeout(self, read_timeout: float | None, write_timeout: float | None = None) -> None:
        """Write timeout defaults to the read timeout. ``None`` disables one."""
        self.read_timeout = read_timeout
        self.write_timeout = read_timeout if write_timeout is None else write_timeout
        if self._armed & Operation.READ:
            self._reset_timer(Operation.READ)
        if self._armed & Operation.WRITE:
            self._reset_timer(Operation.WRITE)

    def set_read_low_watermark(self, size: int) -> None:
        if size < 0:
            raise ValueError("Watermark must not be negative")
        self.read_low_watermark = size

    def _on_bound(self) -> None:
        self.enable()

    def _activate(self) -> None:
        wanted = Operation(0)
        if self.operations & Operation.READ and not self._eof:
            wanted |= Operation.READ
        if self.operations & Operation.WRITE and self._output:
            wanted |= Operation.WRITE
        self._arm(wanted)
        self._enabled = True

    def _deactivate(self) -> None:
        self._enabled = False
        self._arm(Operation(0))

    def _release(self) -> None:
        self._input.clear()
        self._output.clear()
        self.on_read = self.on_write = self.on_error = self.on_eof = self.on_timeout = None

    def _arm(self, wanted: Operation) -> None:
        loop = self._loop
        if loop is None:
            return
        if self.freed:
            wanted = Operation(0)
        previous = self._armed
        if wanted:
            loop.watch(self.stream, wanted, self._handle_ready, self.priority)
        else:
            loop.unwatch(self.stream)
        self._armed = wanted
        for direction in (Operation.READ, Operation.WRITE):
            if wanted & direction:
                if not previous & direction:
                    self._reset_timer(direction)
            else:
                self._cancel_timer(direction)

    def _disarm(self, direction: Operation) -> None:
        self._arm(self._armed & _OPPOSITE[direction])

    def _reset_timer(self, direction: Operation) -> None:
        self._cancel_timer(direction)
        timeout = self.read_timeout if direction is Operation.READ else self.write_timeout
        if timeout is None or self._loop is None:
            return
        handle = self._loop.call_later(
            timeout, lambda: self._handle_timeout(direction), self.priority
        )
        if direction is Operation.READ:
            self._read_timer = handle
        else:
            self._write_timer = handle

    def _cancel_timer(self, direction: Operation) -> None:
        if direction is Operation.READ:
            handle, self._read_timer = self._read_timer, None
        else:
            handle, self._write_timer = self._write_timer, None
        if handle is not None:
            handle.cancel()

    def _handle_ready(self, events: Operation) -> None:
        if events & Operation.READ:
            self._fill()
        if events & Operation.WRITE and not self.freed and self._armed & Operation.WRITE:
            self._drain()

    def _fill(self) -> None:
        if self._eof or not self._armed & Operation.READ:
            return
        try:
            data = os.read(_fileno(self.stream), self.fill_size)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            self._raise_condition(Condition.READ | Condition.ERROR, exc.errno or 0)
            return
        if not data:
            self._raise_condition(Condition.READ | Condition.EOF)
            return
        self._input.extend(data)
        metrics.BYTES_READ.labels(metrics.ENV_LABEL).inc(len(data))
        self._reset_timer(Operation.READ)
        if len(self._input) < self.read_low_watermark:
            return
        if self.on_read is not None:
            self.on_read(self)

    def _drain(self) -> None:
        if not self._output:
            self._disarm(Operation.WRITE)
            return
        try:
            written = os.write(_fileno(self.stream), self._output)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            self._raise_condition(Condition.WRITE | Condition.ERROR, exc.errno or 0)
            return
        if written == 0:
            self._raise_condition(Condition.WRITE | Condition.EOF)
            return
        del self._output[:written]
        self._reset_timer(Operation.WRITE)
        if self._output:
            return
        self._disarm(Operation.WRITE)
        if self.on_write is not None:
            self.on_write(self)

    def _handle_timeout(self, direction: Operation) -> None:
        if direction is Operation.READ:
            self._read_timer = None
        else:
            self._write_timer = None
        if self.freed or not self._armed & direction:
            return
        self._raise_condition(Condition(direction) | Condition.TIMEOUT)

    def _raise_condition(self, what: Condition, code: int = 0) -> None:
        direction = what.direction
        self._disarm(direction)
        if what & Condition.EOF:
            if direction is Operation.READ:
                self._eof = True
            metrics.STREAM_CONDITIONS.labels(metrics.ENV_LABEL, "eof").inc()
            if self.on_eof is not None:
                self.on_eof(self)
            else:
                logger.info("stream_eof_unhandled", extra={"pending": len(self._input)})
            return
        if what & Condition.TIMEOUT:
            metrics.STREAM_CONDITIONS.labels(metrics.ENV_LABEL, "timeout").inc()
            if self.on_timeout is not None:
                self.on_timeout(self, direction)
            return
        metrics.STREAM_CONDITIONS.labels(metrics.ENV_LABEL, "error").inc()
        self._error = StreamError(code or errno.EIO, direction)
        if self.on_error is not None:
            self.on_error(self, self._error)
        else:
            logger.error("stream_error_unhandled", extra={"error": str(self._error)})


def _fileno(stream: Any) -> int:
    if isinstance(stream, int):
        return stream
    return stream.fileno()
