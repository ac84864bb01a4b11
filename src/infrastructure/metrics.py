from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

from infrastructure.settings import settings

REGISTRY = CollectorRegistry()
ENV_LABEL = settings.environment

STREAM_CONDITIONS = Counter(
    "reactor_stream_conditions_total",
    "EOF, error and timeout conditions raised by buffered streams",
    ["environment", "condition"],
    registry=REGISTRY,
)
BYTES_READ = Counter(
    "reactor_bytes_read_total",
    "Bytes pulled from watched streams into input buffers",
    ["environment"],
    registry=REGISTRY,
)
BATCHES_FLUSHED = Counter(
    "line_batches_flushed_total",
    "Line batches delivered to flush handlers",
    ["environment"],
    registry=REGISTRY,
)
BYTES_FLUSHED = Counter(
    "line_batch_bytes_flushed_total",
    "Bytes of complete lines delivered to flush handlers",
    ["environment"],
    registry=REGISTRY,
)
PENDING_BYTES = Gauge(
    "line_batch_pending_bytes",
    "Bytes held back as an unterminated line after the last flush",
    ["environment"],
    registry=REGISTRY,
)


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
