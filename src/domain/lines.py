from __future__ import annotations

NEWLINE = b"\n"


def split_complete_lines(data: bytes | bytearray) -> tuple[bytes, bytes] | None:
    """Split ``data`` right after its last newline.

    Returns ``(complete, tail)`` where ``complete + tail == data`` and
    ``complete`` ends with the last newline, or ``None`` when there is no
    newline at all.
    """
    last = data.rfind(NEWLINE)
    if last == -1:
        return None
    cut = last + 1
    return bytes(data[:cut]), bytes(data[cut:])


def count_lines(batch: bytes) -> int:
    return batch.count(NEWLINE)
