from __future__ import annotations

from enum import Enum, IntFlag

from pydantic import BaseModel

# Inactivity timeout value meaning "never time out".
INFINITE = None


class Operation(IntFlag):
    READ = 0x01
    WRITE = 0x02


class Condition(IntFlag):
    """Bit set describing why a buffered stream stopped.

    One direction bit (READ or WRITE) is combined with the kind of
    condition that occurred on that direction.
    """

    READ = 0x01
    WRITE = 0x02
    EOF = 0x10
    ERROR = 0x20
    TIMEOUT = 0x40

    @property
    def direction(self) -> Operation:
        return Operation(self & (Condition.READ | Condition.WRITE))


class RunMode(Enum):
    DEFAULT = "default"
    ONCE = "once"
    NONBLOCK = "nonblock"


class LoopOutcome(Enum):
    SUCCESS = 0
    NO_EVENTS = 1
    ERROR = -1


class ParserStats(BaseModel):
    bytes_read: int = 0
    batches: int = 0
    lines: int = 0
    bytes_flushed: int = 0
    timeouts: int = 0
    errors: int = 0
    last_error: str | None = None
    finished: bool = False
