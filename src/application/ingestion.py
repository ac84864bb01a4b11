from __future__ import annotations

import logging
import selectors
from collections.abc import Callable
from pathlib import Path
from typing import Any

from application.line_batch import LineBatchParser
from domain.models import ParserStats
from infrastructure.logging import configure_logging
from infrastructure.reactor import EventLoop
from infrastructure.settings import Settings

logger = logging.getLogger(__name__)

BatchHandler = Callable[[bytes], None]


class LogIngestor:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        configure_logging(settings.log_level)
        logger.info(
            "ingestor_configured",
            extra={"app": settings.app_name, "selector": settings.selector},
        )

    def ingest_stream(self, stream: Any, on_batch: BatchHandler) -> ParserStats:
        loop = EventLoop.from_settings(self.settings)
        return self._run(loop, stream, on_batch)

    def ingest_file(self, path: Path, on_batch: BatchHandler) -> ParserStats:
        # Regular files cannot be registered with epoll/kqueue; select() reports
        # them as always readable, which is exactly what a one-shot read needs.
        loop = EventLoop(
            priority_bands=self.settings.priority_bands,
            selector=selectors.SelectSelector(),
        )
        with open(path, "rb") as handle:
            return self._run(loop, handle, on_batch)

    def _run(self, loop: EventLoop, stream: Any, on_batch: BatchHandler) -> ParserStats:
        with loop:
            parser = LineBatchParser.from_settings(
                stream,
                self.settings,
                on_flush=lambda _parser, batch: on_batch(batch),
            )
            parser.bind(loop)
            loop.run()
        logger.info("ingested_stream", extra=parser.stats.model_dump())
        return parser.stats
