"""Shared test fixtures."""

import pytest

from comfortzone.frames import Function, encode_frame

# Address the tests use for the client
LOCAL_ID = 99


class FakeStream:
    """In-memory stream. chunks are returned by read() one at a time; when
    they run out read() returns b'' (end of stream). on_write, if given,
    is called with each write and may append more chunks. discard_input()
    drops the pending chunks and counts their bytes in discarded.
    """

    def __init__(self, chunks=(), on_write=None):
        self.chunks = list(chunks)
        self.written = []
        self.on_write = on_write
        self.reads = 0
        self.discarded = 0

    def read(self, numbytes):
        self.reads += 1
        if not self.chunks:
            return b''
        chunk = self.chunks.pop(0)
        if len(chunk) > numbytes:
            self.chunks.insert(0, chunk[numbytes:])
            chunk = chunk[:numbytes]
        return chunk

    def discard_input(self):
        self.discarded += sum(len(c) for c in self.chunks)
        self.chunks = []

    def write(self, data):
        self.written.append(data)
        if self.on_write:
            self.on_write(self, data)

    def close(self):
        pass


def reply(source, data, destination=LOCAL_ID):
    return encode_frame(destination, source, Function.REPLY, data)


def status_rows():
    """Reply data for every status row of a three zone system."""
    mode = [0, 1, 12, 0, 1, 0, 2, 0, 0, 0b001, 0b010, 0, 0b100, 0, 0, 0, 0, 0]
    setpoints = [0, 1, 16] + [74, 76, 78, 0, 0, 0, 0, 0] + [68, 66, 64, 0, 0, 0, 0, 0]
    return {
        (9, 3): bytes([0, 9, 3, 0, 0x04, 0x68, 95]),    # 0x0468 / 16 = 70.5
        (9, 4): bytes([0, 9, 4, 15, 7, 0, 0, 0, 0, 0, 0]),
        (9, 5): bytes([0, 9, 5, 0x21]),
        (1, 9): bytes([0, 1, 9, 0, 45]),
        (1, 12): bytes(mode),
        (1, 16): bytes(setpoints),
        (1, 17): bytes([0, 1, 17, 0x04]),
        (1, 18): bytes([0, 1, 18, 2, 15, 7, 30]),
        (1, 24): bytes([0, 1, 24, 71, 72, 73, 0, 0, 0, 0, 0]),
    }


@pytest.fixture
def rows():
    return status_rows()
