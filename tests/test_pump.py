import asyncio
import errno
import socket

import pytest

from snirouter.pump import (
    HalfCloseStatus,
    Stream,
    SumStats,
    copy_between,
    half_close,
    maybe_half_closable,
    pump,
)
from snirouter.sniff import ReplayReader


async def stream_pair() -> tuple[Stream, Stream]:
    left, right = socket.socketpair()
    return (
        Stream(*await asyncio.open_connection(sock=left)),
        Stream(*await asyncio.open_connection(sock=right)),
    )


def test_pump_copies_both_ways_and_drains_after_half_close():
    async def scenario():
        client_app, client_proxy = await stream_pair()
        backend_proxy, backend_app = await stream_pair()
        loop = asyncio.get_running_loop()
        session = loop.create_task(pump(client_proxy, backend_proxy, name="test"))

        client_app.writer.write(b"hello backend")
        await client_app.writer.drain()
        assert await backend_app.reader.readexactly(13) == b"hello backend"

        backend_app.writer.write(b"hello client")
        await backend_app.writer.drain()
        assert await client_app.reader.readexactly(12) == b"hello client"

        # the client finishes sending; the backend still has data for it
        client_app.writer.write(b" and goodbye")
        client_app.writer.write_eof()
        assert await backend_app.reader.read(-1) == b" and goodbye"

        backend_app.writer.write(b"remaining response")
        await backend_app.writer.drain()
        backend_app.writer.write_eof()
        assert await client_app.reader.read(-1) == b"remaining response"

        stats = await asyncio.wait_for(session, 5)
        for stream in (client_app, client_proxy, backend_proxy, backend_app):
            stream.writer.close()
        return stats

    stats = asyncio.run(scenario())
    assert isinstance(stats, SumStats)
    assert stats.uploaded.sent_bytes_count == 25
    assert stats.downloaded.sent_bytes_count == 30
    assert stats.total_sent_bytes_count == 55


def test_pump_replays_sniffed_prefix():
    async def scenario():
        client_app, client_proxy = await stream_pair()
        backend_proxy, backend_app = await stream_pair()
        client = Stream(ReplayReader(client_proxy.reader, b"prefix:"), client_proxy.writer)
        session = asyncio.get_running_loop().create_task(pump(client, backend_proxy))

        client_app.writer.write(b"body")
        client_app.writer.write_eof()
        received = await backend_app.reader.read(-1)
        backend_app.writer.write_eof()
        await asyncio.wait_for(session, 5)
        for stream in (client_app, client_proxy, backend_proxy, backend_app):
            stream.writer.close()
        return received

    assert asyncio.run(scenario()) == b"prefix:body"


class BrokenReader:
    async def read(self, n=-1):
        raise ConnectionResetError("reset by peer")


class RecordingWriter:
    def __init__(self, half_closable=True):
        self.half_closable = half_closable
        self.eof_written = False
        self.data = bytearray()

    def write(self, b):
        self.data.extend(b)

    async def drain(self):
        pass

    def can_write_eof(self):
        return self.half_closable

    def write_eof(self):
        self.eof_written = True


def test_copy_error_ends_direction_and_half_closes():
    writer = RecordingWriter()
    stats = asyncio.run(copy_between(BrokenReader(), writer, name="broken"))
    assert stats.read_bytes_count == 0
    assert writer.eof_written


def test_half_close_capability():
    writer = RecordingWriter(half_closable=False)
    assert not maybe_half_closable(writer)
    assert half_close(writer) is HalfCloseStatus.UNSUPPORTED
    assert not writer.eof_written

    assert not maybe_half_closable(object())
    assert half_close(object()) is HalfCloseStatus.UNSUPPORTED

    writer = RecordingWriter()
    assert half_close(writer) is HalfCloseStatus.SHUT
    assert writer.eof_written


class FailingWriter(RecordingWriter):
    def write_eof(self):
        raise OSError(errno.ENOTCONN, "Transport endpoint is not connected")


def test_half_close_failure_is_not_reported_as_shut():
    writer = FailingWriter()
    assert maybe_half_closable(writer)
    assert half_close(writer) is HalfCloseStatus.FAILED


class ExplodingReader:
    async def read(self, n=-1):
        raise ValueError("unexpected state")


class StalledReader:
    async def read(self, n=-1):
        await asyncio.Event().wait()


def test_pump_cancels_other_direction_on_unexpected_error():
    async def scenario():
        client = Stream(ExplodingReader(), RecordingWriter())
        backend_writer = RecordingWriter()
        backend = Stream(StalledReader(), backend_writer)
        with pytest.raises(ValueError):
            await pump(client, backend, name="exploding")
        leftover = [t for t in asyncio.all_tasks() if t.get_name().startswith("Copy[")]
        return leftover, client.writer.eof_written, backend_writer.eof_written

    leftover, client_shut, backend_shut = asyncio.run(scenario())
    assert leftover == []
    assert client_shut
    assert backend_shut
