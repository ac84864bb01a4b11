from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from domain.errors import StreamError
from domain.lines import count_lines, split_complete_lines
from domain.models import INFINITE, Operation, ParserStats
from infrastructure import metrics
from infrastructure.buffered_stream import BufferedStream

if TYPE_CHECKING:
    from infrastructure.reactor import EventLoop
    from infrastructure.settings import Settings

logger = logging.getLogger(__name__)

READ_SIZE = 4096

FlushHandler = Callable[["LineBatchParser", bytes], None]


class LineBatchParser:
    """Reads a log stream and hands complete lines out in batches.

    Batches are flushed when the accumulated data reaches ``flush_size``,
    when no data arrived for ``inactivity_timeout`` seconds (``None`` never
    times out) and once more at end of stream. Only newline-terminated lines
    are ever delivered; an unterminated tail is kept until its newline shows
    up and is dropped if the stream ends first.
    """

    def __init__(
        self,
        stream: Any,
        flush_size: int = 65536,
        inactivity_timeout: float | None = INFINITE,
        *,
        on_flush: FlushHandler | None = None,
        on_eof: Callable[[LineBatchParser], None] | None = None,
        on_error: Callable[[LineBatchParser, StreamError], None] | None = None,
        read_size: int = READ_SIZE,
        fill_size: int | None = None,
    ) -> None:
        if flush_size < 1:
            raise ValueError("flush_size must be positive")
        if inactivity_timeout is not None and inactivity_timeout <= 0:
            raise ValueError("inactivity_timeout must be positive or None")
        self.flush_size = flush_size
        self.inactivity_timeout = inactivity_timeout
        self.read_size = read_size
        self.on_flush = on_flush
        self.on_eof = on_eof
        self.on_error = on_error
        self.stats = ParserStats()
        self._pending = bytearray()

        self.buffer = BufferedStream(stream, Operation.READ, fill_size=fill_size or read_size)
        self.buffer.on_read = self._read_lines
        self.buffer.on_eof = self._handle_eof
        self.buffer.on_error = self._handle_error
        if inactivity_timeout is not INFINITE:
            self.buffer.set_timeout(inactivity_timeout)
            self.buffer.on_timeout = self._handle_timeout

    @classmethod
    def from_settings(cls, stream: Any, settings: Settings, **handlers: Any) -> LineBatchParser:
        parser = cls(
            stream,
            flush_size=settings.flush_size,
            inactivity_timeout=settings.inactivity_timeout,
            read_size=settings.read_size,
            fill_size=settings.fill_size,
            **handlers,
        )
        parser.buffer.set_read_low_watermark(settings.read_low_watermark)
        return parser

    @property
    def pending(self) -> bytes:
        return bytes(self._pending)

    @property
    def finished(self) -> bool:
        return self.stats.finished

    def bind(self, loop: EventLoop) -> None:
        self.buffer.bind(loop)

    def free(self) -> None:
        self.buffer.free()

    def __enter__(self) -> LineBatchParser:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.free()

    def flush(self) -> None:
        parts = split_complete_lines(self._pending)
        if parts is None:
            return
        batch, tail = parts
        self.stats.batches += 1
        self.stats.lines += count_lines(batch)
        self.stats.bytes_flushed += len(batch)
        metrics.BATCHES_FLUSHED.labels(metrics.ENV_LABEL).inc()
        metrics.BYTES_FLUSHED.labels(metrics.ENV_LABEL).inc(len(batch))
        logger.debug("batch_flushed", extra={"size": len(batch), "tail": len(tail)})
        if self.on_flush is not None:
            self.on_flush(self, batch)
        self._pending = bytearray(tail)
        metrics.PENDING_BYTES.labels(metrics.ENV_LABEL).set(len(tail))

    def _read_lines(self, buffer: BufferedStream) -> None:
        chunk = buffer.read(self.read_size)
        self._pending.extend(chunk)
        self.stats.bytes_read += len(chunk)
        if len(self._pending) >= self.flush_size:
            self.flush()

    def _handle_eof(self, buffer: BufferedStream) -> None:
        self._take_buffered(buffer)
        self.flush()
        self.stats.finished = True
        logger.info(
            "end_of_stream",
            extra={"batches": self.stats.batches, "dropped": len(self._pending)},
        )
        if self.on_eof is not None:
            self.on_eof(self)

    def _handle_timeout(self, buffer: BufferedStream, which: Operation) -> None:
        self.stats.timeouts += 1
        logger.debug("inactivity_timeout", extra={"which": which.name})
        self._take_buffered(buffer)
        self.flush()
        # The timeout only forces a flush, keep watching the stream.
        if not buffer.freed:
            buffer.enable()

    def _handle_error(self, buffer: BufferedStream, error: StreamError) -> None:
        self.stats.errors += 1
        self.stats.last_error = str(error)
        logger.error("stream_error", extra={"code": error.code, "error": str(error)})
        if self.on_error is not None:
            self.on_error(self, error)

    def _take_buffered(self, buffer: BufferedStream) -> None:
        # Bytes the stream already buffered but no read callback consumed yet.
        while buffer.input_size:
            chunk = buffer.read(self.read_size)
            self._pending.extend(chunk)
            self.stats.bytes_read += len(chunk)
