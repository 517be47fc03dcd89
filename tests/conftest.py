import asyncio
import json
import os
import struct
import threading

import pytest

from snirouter.routes import InboundRecord


def _u16(n: int) -> bytes:
    return struct.pack("!H", n)


def server_name_extension(*names: tuple[int, bytes]) -> bytes:
    entries = b"".join(bytes([name_type]) + _u16(len(name)) + name for name_type, name in names)
    return _u16(len(entries)) + entries


def build_client_hello(
    server_name: str | None = None,
    *,
    extensions: tuple[tuple[int, bytes], ...] = (),
    with_extensions: bool = True,
    record_type: int = 0x16,
    handshake_type: int = 0x01,
    handshake_length: int | None = None,
) -> bytes:
    body = b"\x03\x03" + os.urandom(32)
    session_id = os.urandom(32)
    body += bytes([len(session_id)]) + session_id
    cipher_suites = b"\x13\x01\x13\x02\x13\x03\xc0\x2b\xc0\x2f"
    body += _u16(len(cipher_suites)) + cipher_suites
    body += b"\x01\x00"
    if with_extensions:
        blocks = list(extensions)
        if server_name is not None:
            blocks.insert(0, (0x0000, server_name_extension((0, server_name.encode()))))
        encoded = b"".join(_u16(kind) + _u16(len(data)) + data for kind, data in blocks)
        body += _u16(len(encoded)) + encoded
    if handshake_length is None:
        handshake_length = len(body)
    handshake = bytes([handshake_type]) + handshake_length.to_bytes(3) + body
    return bytes([record_type]) + b"\x03\x01" + _u16(len(handshake)) + handshake


@pytest.fixture
def client_hello():
    return build_client_hello


def reader_for(data: bytes, *, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


class FakeInbounds:
    """In-memory stand-in for the x-ui database; results are served in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0
        self._lock = threading.Lock()

    def fetch_inbounds(self):
        with self._lock:
            self.calls += 1
            if len(self.results) > 1:
                result = self.results.pop(0)
            else:
                result = self.results[0]
        if isinstance(result, BaseException):
            raise result
        return [InboundRecord(*row) for row in result]


def reality(target: str) -> str:
    return json.dumps(
        {"network": "tcp", "security": "reality", "realitySettings": {"target": target}}
    )
