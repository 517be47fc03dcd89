import asyncio
import logging
from enum import Enum
from typing import Any, NamedTuple, NewType, Protocol, Self, TypeGuard

from .sniff import ReplayReader

logger = logging.getLogger(__name__)

Elapsed = NewType("Elapsed", float)

READ_SIZE = 65_536
COPY_ERRORS = (OSError, asyncio.IncompleteReadError)


class Stream(NamedTuple):
    reader: asyncio.StreamReader | ReplayReader
    writer: asyncio.StreamWriter


class CanHalfClose(Protocol):
    def can_write_eof(self) -> bool: ...

    def write_eof(self) -> None: ...


class HalfCloseStatus(Enum):
    SHUT = "write side shut down"
    UNSUPPORTED = "half-close not supported"
    FAILED = "write side shutdown failed"


def maybe_half_closable(d: Any) -> TypeGuard[CanHalfClose]:
    if callable(getattr(d, "write_eof", None)) and callable(
        (thunk := getattr(d, "can_write_eof", None))
    ):
        return bool(thunk())
    return False


def half_close(destination, /) -> HalfCloseStatus:
    if not maybe_half_closable(destination):
        return HalfCloseStatus.UNSUPPORTED
    try:
        destination.write_eof()
    except (OSError, RuntimeError) as e:
        logger.debug(f"unable to shut down write side of {destination} - {e!r}")
        return HalfCloseStatus.FAILED
    return HalfCloseStatus.SHUT


async def _iter_read(source: asyncio.StreamReader | ReplayReader, size: int, /):
    while b := await source.read(size):
        yield b


async def _write(destination: asyncio.StreamWriter, b: bytes, /) -> int:
    destination.write(b)
    await destination.drain()
    return len(b)


class _CopyStats(NamedTuple):
    elapsed: Elapsed
    read_bytes_count: int
    sent_bytes_count: int


class CopyStats(_CopyStats):
    __slots__ = ()

    @classmethod
    def new(cls, elapsed: float, read_bytes_count: int, sent_bytes_count: int):
        return cls(Elapsed(elapsed), read_bytes_count, sent_bytes_count)


class _SumStats(NamedTuple):
    uploaded: CopyStats
    downloaded: CopyStats


class SumStats(_SumStats):
    __slots__ = ()

    @classmethod
    def new(cls: type[Self], uploaded: CopyStats, downloaded: CopyStats) -> Self:
        return cls(uploaded, downloaded)

    @property
    def total_sent_bytes_count(self) -> int:
        return self.uploaded.sent_bytes_count + self.downloaded.sent_bytes_count


async def copy_between(
    source: asyncio.StreamReader | ReplayReader,
    destination: asyncio.StreamWriter,
    *,
    name: str = "",
) -> CopyStats:
    """
    Copy ``source`` into ``destination`` until end of stream or an I/O error,
    then half-close ``destination`` when it supports that.
    """
    loop = asyncio.get_running_loop()
    read_count = 0
    sent_count = 0
    t_main = loop.time()
    try:
        async for blob in _iter_read(source, READ_SIZE):
            read_count += len(blob)
            t_s = loop.time()
            sent_count += await _write(destination, blob)
            if loop.time() - t_s > 1:
                logger.warning(f"[{name}] Slow writing {len(blob):,} bytes to {destination}")
    except COPY_ERRORS as e:
        logger.debug(f"[{name}] copy stopped after {read_count:,} bytes - {e!r}")
    finally:
        status = half_close(destination)
        logger.debug(f"[{name}] {status.value} after {sent_count:,} bytes")
    return CopyStats.new(loop.time() - t_main, read_count, sent_count)


async def pump(client: Stream, backend: Stream, *, name: str = "") -> SumStats:
    """
    Copy both directions concurrently; returns once both have finished.
    Closing the streams is left to the caller. If either direction raises,
    the other is cancelled before the error propagates.
    """
    loop = asyncio.get_running_loop()
    upload = loop.create_task(copy_between(client.reader, backend.writer, name=f"{name} up"))
    upload.set_name(f"Copy[{name} up]")
    download = loop.create_task(copy_between(backend.reader, client.writer, name=f"{name} down"))
    download.set_name(f"Copy[{name} down]")
    try:
        uploaded, downloaded = await asyncio.gather(upload, download)
    finally:
        if pending := [t for t in (upload, download) if not t.done()]:
            for t in pending:
                t.cancel()
            await asyncio.wait(pending)
    return SumStats.new(uploaded, downloaded)
