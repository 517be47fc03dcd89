import asyncio
import errno
import functools
import logging
import socket
from contextlib import suppress
from enum import Enum
from ipaddress import IPv4Address, IPv6Address, ip_address
from typing import NamedTuple, TypeAlias

from .cache import RouteCache
from .pump import Stream, SumStats, pump
from .sniff import SniffError, sniff

logger = logging.getLogger(__name__)
access_log = logging.getLogger(f"{__package__}.access_log")

ALL_INTERFACES = ""
LISTEN_PORT = 443
BACKEND_HOST = "127.0.0.1"
HANDSHAKE_TIMEOUT = 5.0
CONNECT_TIMEOUT = 3.0
ACCEPT_BACKOFF = 0.01

TRANSIENT_ACCEPT_ERRORS = frozenset(
    {
        errno.EAGAIN,
        errno.ECONNABORTED,
        errno.ECONNRESET,
        errno.EINTR,
        errno.EMFILE,
        errno.ENFILE,
        errno.ENOBUFS,
        errno.ENOMEM,
        errno.EPERM,
        errno.EPROTO,
        errno.ETIMEDOUT,
    }
)

IPAddress: TypeAlias = IPv4Address | IPv6Address


class _RemoteIp(NamedTuple):
    ip: IPAddress
    port: int


class RemoteIp(_RemoteIp):
    __slots__ = ()

    def __str__(self) -> str:
        if isinstance(self.ip, IPv6Address):
            return f"[{self.ip!s}]:{self.port}"
        return f"{self.ip}:{self.port}"

    @classmethod
    def new(cls, peername) -> "RemoteIp | str":
        match peername:
            case (str(host), int(port), *_):
                with suppress(ValueError):
                    return cls(ip_address(host), port)
                return f"{host}:{port}"
            case _:
                return f"{peername}"


class ConnectionState(Enum):
    ACCEPTED = "accepted"
    SNIFFING = "sniffing"
    ROUTED = "routed"
    BACKEND_CONNECTING = "backend-connecting"
    PROXYING = "proxying"
    CLOSED = "closed"


class Session:
    """
    One client connection and, once routed, its backend. ``closed_in``
    records the state the session was in when it ended.
    """

    __slots__ = (
        "remote_addr",
        "state",
        "closed_in",
        "hostname",
        "backend_port",
        "stats",
        "started_at",
    )

    def __init__(self, remote_addr, started_at: float):
        self.remote_addr = remote_addr
        self.state = ConnectionState.ACCEPTED
        self.closed_in: ConnectionState | None = None
        self.hostname: str | None = None
        self.backend_port: int | None = None
        self.stats: SumStats | None = None
        self.started_at = started_at

    def __repr__(self):
        return f"<{type(self).__name__} {self.remote_addr!s} {self.state.value}>"

    def advance(self, state: ConnectionState):
        logger.debug(f"{self.remote_addr!s}: {self.state.value} -> {state.value}")
        self.state = state

    def close(self):
        if self.state is ConnectionState.CLOSED:
            return
        self.closed_in = self.state
        self.advance(ConnectionState.CLOSED)


def report_uncaught_error(func):
    @functools.wraps(func)
    async def wrapped(*args, **kwargs):
        this = asyncio.current_task()
        name = this.get_name() if this is not None else None
        if not name:
            name = f"<anonymous asyncio task-{this!r}>"
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if isinstance(e, (asyncio.CancelledError, asyncio.TimeoutError)):
                raise
            logger.exception(f"uncaught exception in {name} ({func.__name__})")
            raise

    return wrapped


def is_errored(f: asyncio.Future, name: str):
    with suppress(asyncio.CancelledError):
        if e := f.exception():
            logger.exception(f"[{name}] Future {f} had uncaught exception", exc_info=e)


def bind_listener(addr: tuple[str, int], backlog: int = 128) -> socket.socket:
    host, _ = addr
    dualstack_ipv6 = host == ALL_INTERFACES and socket.has_dualstack_ipv6()
    s = socket.create_server(
        addr,
        family=socket.AF_INET6 if dualstack_ipv6 else socket.AF_INET,
        dualstack_ipv6=dualstack_ipv6,
        backlog=backlog,
    )
    s.setblocking(False)
    return s


async def close_writer(writer: asyncio.StreamWriter):
    writer.close()
    with suppress(OSError):
        await writer.wait_closed()


class Dispatcher:
    def __init__(
        self,
        cache: RouteCache,
        *,
        backend_host: str = BACKEND_HOST,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
        connect_timeout: float = CONNECT_TIMEOUT,
    ):
        self.cache = cache
        self.backend_host = backend_host
        self.handshake_timeout = handshake_timeout
        self.connect_timeout = connect_timeout
        self.tasks: set[asyncio.Task] = set()
        self._socket: socket.socket | None = None

    def __repr__(self):
        return f"<{type(self).__name__} sessions={len(self.tasks)} {self.cache!r}>"

    async def serve(self, sock: socket.socket):
        """
        Accept connections on ``sock`` forever, one task per connection.
        Transient accept failures back off briefly; any other ``OSError``
        from the listener is raised.
        """
        loop = asyncio.get_running_loop()
        self._socket = sock
        logger.info(f"Server started on {RemoteIp.new(sock.getsockname())!s} (SNI Proxy)")
        while True:
            try:
                client, _ = await loop.sock_accept(sock)
            except OSError as e:
                if e.errno in TRANSIENT_ACCEPT_ERRORS:
                    logger.warning(f"accept error: {e!r}")
                    await asyncio.sleep(ACCEPT_BACKOFF)
                    continue
                logger.error(f"listener failed: {e!r}")
                raise
            self.dispatch(client)

    def dispatch(self, client: socket.socket) -> asyncio.Task:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self.handle_socket(client))
        with suppress(OSError):
            task.set_name(f"Session[{RemoteIp.new(client.getpeername())!s}]")
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        task.add_done_callback(functools.partial(is_errored, name=self.handle_socket.__qualname__))
        task.add_done_callback(self.write_access_log)
        return task

    @report_uncaught_error
    async def handle_socket(self, client: socket.socket) -> Session:
        try:
            reader, writer = await asyncio.open_connection(sock=client)
        except BaseException:
            client.close()
            raise
        return await self.handle_client(reader, writer)

    async def handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> Session:
        loop = asyncio.get_running_loop()
        session = Session(RemoteIp.new(writer.get_extra_info("peername")), loop.time())
        try:
            await self._route(session, reader, writer)
        finally:
            session.close()
            await close_writer(writer)
        return session

    async def open_backend(self, port: int) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await asyncio.open_connection(self.backend_host, port)

    async def _route(
        self,
        session: Session,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ):
        remote = session.remote_addr
        session.advance(ConnectionState.SNIFFING)
        try:
            async with asyncio.timeout(self.handshake_timeout):
                result = await sniff(reader)
        except TimeoutError:
            logger.debug(f"{remote!s}: no ClientHello within {self.handshake_timeout}s")
            return
        except SniffError as e:
            logger.debug(f"not a TLS connection from {remote!s}: {e}")
            return
        except OSError as e:
            logger.debug(f"{remote!s}: read failed during handshake - {e!r}")
            return

        session.hostname = hostname = result.hostname
        session.advance(ConnectionState.ROUTED)
        if not hostname:
            logger.warning(f"{remote!s}: no SNI found")
            return
        if (port := self.cache.get(hostname)) is None:
            logger.warning(f"{remote!s}: no route for SNI {hostname}")
            return
        session.backend_port = port

        backend_addr = f"{self.backend_host}:{port}"
        session.advance(ConnectionState.BACKEND_CONNECTING)
        try:
            async with asyncio.timeout(self.connect_timeout):
                backend_reader, backend_writer = await self.open_backend(port)
        except TimeoutError:
            logger.error(f"failed to connect to backend {backend_addr}: timed out")
            return
        except OSError as e:
            logger.error(f"failed to connect to backend {backend_addr}: {e!r}")
            return

        logger.info(f"{remote!s} -> SNI:{hostname} -> {backend_addr}")
        session.advance(ConnectionState.PROXYING)
        try:
            session.stats = await pump(
                Stream(result.reader, writer),
                Stream(backend_reader, backend_writer),
                name=f"{remote!s} {hostname}",
            )
        finally:
            await close_writer(backend_writer)

    def write_access_log(self, fut: asyncio.Task):
        if fut.cancelled():
            return
        if fut.exception() is not None:
            access_log.info(f"[{fut.get_name()}] error")
            return
        session: Session = fut.result()
        loop = asyncio.get_running_loop()
        match session.stats:
            case SumStats(uploaded, downloaded):
                transfer = (
                    f"up={uploaded.sent_bytes_count:,}B down={downloaded.sent_bytes_count:,}B"
                )
            case _:
                transfer = "-"
        access_log.info(
            f"[{loop.time() - session.started_at:.2f}s] {session.closed_in.value} "
            f"[remote-ip: {session.remote_addr!s}] [sni: {session.hostname or '-'}] "
            f"[backend: {session.backend_port or '-'}] {transfer}"
        )

    def close(self):
        for task in tuple(self.tasks):
            task.cancel()
        if (sock := self._socket) is not None:
            sock.close()
        self._socket = None
