import os

import pytest

from infrastructure.reactor import EventLoop


class Pipe:
    def __init__(self) -> None:
        self.reader, self.writer = os.pipe()
        self._open = {self.reader, self.writer}

    def send(self, data: bytes) -> None:
        os.write(self.writer, data)

    def close_writer(self) -> None:
        self._close(self.writer)

    def close(self) -> None:
        for fd in list(self._open):
            self._close(fd)

    def _close(self, fd: int) -> None:
        if fd in self._open:
            self._open.discard(fd)
            os.close(fd)


@pytest.fixture
def pipe():
    p = Pipe()
    yield p
    p.close()


@pytest.fixture
def make_pipe():
    pipes: list[Pipe] = []

    def factory() -> Pipe:
        p = Pipe()
        pipes.append(p)
        return p

    yield factory
    for p in pipes:
        p.close()


@pytest.fixture
def loop():
    with EventLoop() as event_loop:
        yield event_loop
