"""
Route table construction.

A route table maps the SNI hostname of a connection to the loopback port of
the backend that should receive it. Tables are assembled from the x-ui
``inbounds`` table (``realitySettings.target`` of each inbound) and then an
optional override file, whose lines win on collision.
"""

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any, NamedTuple, Protocol, Self

logger = logging.getLogger(__name__)

INBOUNDS_QUERY = "SELECT port, stream_settings FROM inbounds"
DEFAULT_DB_PATH = Path("/etc/x-ui/x-ui.db")
DEFAULT_OVERRIDE_PATH = Path("config")

MIN_PORT = 1
MAX_PORT = 65_535


class InboundRecord(NamedTuple):
    port: int
    stream_settings: str | None


class RouteEntry(NamedTuple):
    host: str
    port: int


class RouteTable(Mapping[str, int]):
    """
    Immutable hostname -> port mapping. Later entries win while building.
    """

    __slots__ = ("_routes",)

    def __init__(self, entries: Iterable[RouteEntry] = ()):
        routes: dict[str, int] = {}
        for host, port in entries:
            routes[host] = port
        self._routes = MappingProxyType(routes)

    def __getitem__(self, host: str) -> int:
        return self._routes[host]

    def __iter__(self) -> Iterator[str]:
        return iter(self._routes)

    def __len__(self) -> int:
        return len(self._routes)

    def __repr__(self):
        return f"{type(self).__name__}({dict(self._routes)!r})"

    def entries(self) -> tuple[RouteEntry, ...]:
        return tuple(RouteEntry(host, self._routes[host]) for host in sorted(self._routes))


class HasInbounds(Protocol):
    def fetch_inbounds(self) -> Iterable[InboundRecord]: ...


class InboundSource:
    """
    Read-only view of the x-ui database. Only ever runs ``INBOUNDS_QUERY``.
    """

    def __init__(self, connection: sqlite3.Connection, path: Path | None = None):
        self._connection = connection
        self.path = path

    def __repr__(self):
        return f"{type(self).__name__}({self.path!s})"

    @classmethod
    def open(cls, path: str | Path) -> Self:
        path = Path(path)
        connection = sqlite3.connect(
            f"{path.resolve().as_uri()}?mode=ro", uri=True, check_same_thread=False
        )
        return cls(connection, path)

    def fetch_inbounds(self) -> list[InboundRecord]:
        rows = self._connection.execute(INBOUNDS_QUERY).fetchall()
        return [InboundRecord(port, stream_settings) for port, stream_settings in rows]

    def close(self):
        self._connection.close()


def _member(document: Any, key: str, kind: type, where: str):
    match value := document.get(key):
        case None:
            return None
        case _ if isinstance(value, kind):
            return value
        case _:
            raise ValueError(f"{where}.{key} is {type(value).__name__}, not {kind.__name__}")


def reality_target(stream_settings: str | None) -> str:
    """
    Return ``realitySettings.target`` from a stream settings document, or
    ``""`` when any level of it is missing. Raises ``ValueError`` when the
    document cannot be decoded or has the wrong shape.
    """
    if stream_settings is None:
        raise ValueError("stream_settings is NULL")
    match settings := json.loads(stream_settings):
        case None:
            return ""
        case dict():
            pass
        case _:
            raise ValueError(f"stream_settings is {type(settings).__name__}, not an object")
    if (reality := _member(settings, "realitySettings", dict, "streamSettings")) is None:
        return ""
    return _member(reality, "target", str, "realitySettings") or ""


def split_host_port(hostport: str) -> tuple[str, str]:
    index = hostport.rfind(":")
    if index < 0:
        raise ValueError(f"missing port in address {hostport!r}")
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address {hostport!r}")
        if end + 1 == len(hostport):
            raise ValueError(f"missing port in address {hostport!r}")
        if end + 1 != index:
            if hostport[end + 1] == ":":
                raise ValueError(f"too many colons in address {hostport!r}")
            raise ValueError(f"missing port in address {hostport!r}")
        host = hostport[1:end]
        if "[" in hostport[1:end] or "]" in hostport[end + 1 :]:
            raise ValueError(f"unexpected bracket in address {hostport!r}")
    else:
        host = hostport[:index]
        if ":" in host:
            raise ValueError(f"too many colons in address {hostport!r}")
        if "[" in host or "]" in host:
            raise ValueError(f"unexpected bracket in address {hostport!r}")
    return host, hostport[index + 1 :]


def target_host(target: str) -> str:
    try:
        host, _ = split_host_port(target)
    except ValueError as e:
        logger.debug(f"{e}; using {target!r} as the host")
        return target
    return host


def is_valid_port(port: Any) -> bool:
    return isinstance(port, int) and not isinstance(port, bool) and MIN_PORT <= port <= MAX_PORT


def iter_inbound_routes(records: Iterable[InboundRecord]) -> Iterator[RouteEntry]:
    for port, stream_settings in records:
        try:
            target = reality_target(stream_settings)
        except ValueError as e:
            logger.warning(f"skipping inbound on port {port} with bad stream settings: {e}")
            continue
        if not (host := target_host(target)):
            continue
        if not is_valid_port(port):
            logger.warning(f"skipping inbound for {host} with invalid port {port!r}")
            continue
        yield RouteEntry(host, port)


def parse_overrides(lines: Iterable[str], *, source: str = "<config>") -> Iterator[RouteEntry]:
    for lineno, line in enumerate(lines, start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        match line.split():
            case [host, port_text]:
                pass
            case _:
                logger.warning(f"{source}:{lineno}: invalid line in config: {line}")
                continue
        if not (port_text.isascii() and port_text.isdigit()):
            logger.warning(
                f"{source}:{lineno}: invalid port in config for host {host}: {port_text!r}"
            )
            continue
        if not is_valid_port(port := int(port_text)):
            logger.warning(f"{source}:{lineno}: port {port} out of range for host {host}")
            continue
        yield RouteEntry(host, port)


def read_overrides(path: str | Path) -> list[RouteEntry]:
    """
    Parse the override file at ``path``. A missing file contributes nothing;
    any other ``OSError`` (or undecodable content) is raised.
    """
    try:
        fh = open(path, encoding="utf-8")
    except FileNotFoundError:
        logger.info(f"custom config file {path!s} not found, using database routes only")
        return []
    with fh:
        return list(parse_overrides(fh, source=f"{path!s}"))


def build_route_table(
    source: HasInbounds, override_path: str | Path | None = DEFAULT_OVERRIDE_PATH
) -> RouteTable:
    entries = list(iter_inbound_routes(source.fetch_inbounds()))
    if override_path is not None:
        entries.extend(read_overrides(override_path))
    return RouteTable(entries)
