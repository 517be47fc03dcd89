"""
Passive TLS ClientHello inspection.

``sniff()`` reads one TLS handshake record from a stream, pulls the
server_name extension out of the ClientHello and hands back a reader that
replays every consumed byte before continuing with the live stream.
"""

import asyncio
import logging
import struct
from typing import NamedTuple

logger = logging.getLogger(__name__)

RECORD_HEADER = struct.Struct("!BBBH")

CONTENT_TYPE_HANDSHAKE = 0x16
HANDSHAKE_CLIENT_HELLO = 0x01
EXTENSION_SERVER_NAME = 0x0000
NAME_TYPE_HOST_NAME = 0x00

# TLSCiphertext.length may not exceed 2^14 + 2048
MAX_RECORD_LENGTH = 16_384 + 2_048


class SniffError(Exception):
    pass


class NotTLSError(SniffError):
    pass


class ClientHelloError(SniffError):
    pass


class ReplayReader:
    """
    Stands in for an ``asyncio.StreamReader`` whose first bytes were already
    consumed: reads drain ``prefix`` first, then fall through to ``reader``.
    """

    __slots__ = ("_reader", "_prefix")

    def __init__(self, reader: asyncio.StreamReader, prefix: bytes = b""):
        self._reader = reader
        self._prefix = bytearray(prefix)

    def __repr__(self):
        return f"{type(self).__name__}({self._reader!r}, buffered={len(self._prefix)})"

    def at_eof(self) -> bool:
        return not self._prefix and self._reader.at_eof()

    def _take(self, n: int) -> bytes:
        if n < 0:
            n = len(self._prefix)
        chunk = bytes(self._prefix[:n])
        del self._prefix[:n]
        return chunk

    async def read(self, n: int = -1) -> bytes:
        if not self._prefix:
            return await self._reader.read(n)
        if n < 0:
            chunk = self._take(-1)
            return chunk + await self._reader.read(-1)
        return self._take(n)

    async def readexactly(self, n: int) -> bytes:
        chunk = self._take(n)
        if len(chunk) == n:
            return chunk
        try:
            return chunk + await self._reader.readexactly(n - len(chunk))
        except asyncio.IncompleteReadError as e:
            raise asyncio.IncompleteReadError(chunk + e.partial, n) from None


class _Cursor:
    __slots__ = ("view", "offset", "what")

    def __init__(self, view: memoryview, what: str):
        self.view = view
        self.offset = 0
        self.what = what

    @property
    def remaining(self) -> int:
        return len(self.view) - self.offset

    def take(self, n: int) -> memoryview:
        if n > self.remaining:
            raise ClientHelloError(
                f"{self.what}: need {n} bytes at offset {self.offset}, {self.remaining} left"
            )
        chunk = self.view[self.offset : self.offset + n]
        self.offset += n
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return int.from_bytes(self.take(2))

    def vector(self, length_size: int, what: str) -> "_Cursor":
        length = int.from_bytes(self.take(length_size))
        return _Cursor(self.take(length), what)


class ClientHello(NamedTuple):
    version: int
    server_name: str | None


class SniffResult(NamedTuple):
    reader: ReplayReader
    hostname: str | None


def parse_server_name(extension: _Cursor) -> str | None:
    names = extension.vector(2, "server_name_list")
    while names.remaining:
        name_type = names.u8()
        name = names.vector(2, "server_name")
        if name_type != NAME_TYPE_HOST_NAME:
            continue
        try:
            hostname = bytes(name.view).decode("ascii")
        except UnicodeDecodeError:
            raise ClientHelloError("host_name is not ASCII") from None
        return hostname or None
    return None


def parse_client_hello(fragment: bytes | bytearray | memoryview) -> ClientHello:
    """
    Parse the handshake bytes of a single TLS record holding a ClientHello.

    A ClientHello without an extensions block, or without a server_name
    extension, yields ``server_name=None``.
    """
    with memoryview(fragment) as view:
        if len(view) < 4:
            raise ClientHelloError("truncated handshake header")
        msg_type = view[0]
        length = int.from_bytes(view[1:4])
        if msg_type != HANDSHAKE_CLIENT_HELLO:
            raise ClientHelloError(f"handshake type {msg_type} is not ClientHello")
        if length > len(view) - 4:
            raise ClientHelloError(
                f"ClientHello of {length:,} bytes does not fit in a {len(view):,} byte record"
            )
        hello = _Cursor(view[4 : 4 + length], "ClientHello")
        version = hello.u16()
        hello.take(32)  # random
        hello.vector(1, "session_id")
        hello.vector(2, "cipher_suites")
        hello.vector(1, "compression_methods")
        if not hello.remaining:
            return ClientHello(version, None)
        extensions = hello.vector(2, "extensions")
        while extensions.remaining:
            extension_type = extensions.u16()
            extension = extensions.vector(2, f"extension {extension_type}")
            if extension_type == EXTENSION_SERVER_NAME:
                return ClientHello(version, parse_server_name(extension))
        return ClientHello(version, None)


async def read_client_hello_record(reader: asyncio.StreamReader) -> tuple[bytes, bytes]:
    """
    Read exactly one TLS record header and body, waiting across as many TCP
    segments as the declared length needs.
    """
    try:
        first = await reader.readexactly(1)
    except asyncio.IncompleteReadError:
        raise ClientHelloError("connection closed before any data") from None
    if first[0] != CONTENT_TYPE_HANDSHAKE:
        raise NotTLSError(f"first byte {first!r} is not a TLS handshake record")
    try:
        header = first + await reader.readexactly(RECORD_HEADER.size - 1)
    except asyncio.IncompleteReadError as e:
        raise ClientHelloError(f"truncated record header ({1 + len(e.partial)} bytes)") from None
    _, major, minor, length = RECORD_HEADER.unpack(header)
    if major != 3:
        raise NotTLSError(f"record version {major}.{minor} is not TLS")
    if not 0 < length <= MAX_RECORD_LENGTH:
        raise ClientHelloError(f"record length {length:,} out of bounds")
    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise ClientHelloError(
            f"connection closed after {len(e.partial):,} of {length:,} record bytes"
        ) from None
    return header, body


async def sniff(reader: asyncio.StreamReader) -> SniffResult:
    header, body = await read_client_hello_record(reader)
    hello = parse_client_hello(body)
    logger.debug(
        f"ClientHello version {hello.version:#06x}, server_name={hello.server_name!r} "
        f"({len(header) + len(body):,} bytes buffered)"
    )
    return SniffResult(ReplayReader(reader, header + body), hello.server_name)
