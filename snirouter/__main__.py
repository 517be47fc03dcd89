import argparse
import asyncio
import functools
import logging
import os
import sqlite3
import sys
from collections.abc import Mapping, Sequence
from contextlib import suppress
from pathlib import Path

import uvloop

from .cache import RELOAD_INTERVAL, RouteCache
from .dispatch import (
    ALL_INTERFACES,
    LISTEN_PORT,
    Dispatcher,
    access_log,
    bind_listener,
    is_errored,
)
from .routes import DEFAULT_DB_PATH, DEFAULT_OVERRIDE_PATH, InboundSource

logger = logging.getLogger(__package__)

TRUTHY = ("yes", "1", "on", "aye", "t", "true")


def use_uvloop(environ: Mapping[str, str] = os.environ) -> bool:
    return environ.get("SNIROUTER_NO_UVLOOP", "").lower() not in TRUTHY


async def main(cache: RouteCache, sock, *, reload_interval: float = RELOAD_INTERVAL):
    loop = asyncio.get_running_loop()
    dispatcher = Dispatcher(cache)
    refresher = loop.create_task(cache.run_forever(reload_interval))
    refresher.set_name(f"{type(cache).__name__}.run_forever[loop]")
    refresher.add_done_callback(functools.partial(is_errored, name=refresher.get_name()))
    try:
        await dispatcher.serve(sock)
    finally:
        refresher.cancel()
        with suppress(asyncio.CancelledError):
            await refresher
        dispatcher.close()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="snirouter",
        description="Route TLS connections to local x-ui inbounds by SNI hostname.",
    )
    parser.add_argument("-d", "--debug", action="store_true", default=False)
    parser.add_argument(
        "--db-path",
        "--db_path",
        type=Path,
        default=DEFAULT_DB_PATH,
        dest="db_path",
        help="path to x-ui database",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_OVERRIDE_PATH,
        dest="override_path",
        help="override file of '<host> <port>' lines, applied after the database",
    )
    parser.add_argument("--listen-host", default=ALL_INTERFACES)
    parser.add_argument("--listen-port", type=int, default=LISTEN_PORT)
    parser.add_argument("--reload-interval", type=float, default=RELOAD_INTERVAL)
    return parser


def run(argv: Sequence[str] | None = None) -> None:
    args = build_arg_parser().parse_args(argv)

    logging.basicConfig()
    logger.setLevel(logging.INFO)
    access_log.setLevel(logging.INFO)
    if args.debug:
        logger.setLevel(logging.DEBUG)

    try:
        source = InboundSource.open(args.db_path)
    except sqlite3.Error as e:
        logger.critical(f"Initial DB load failed: unable to open {args.db_path!s}: {e}")
        sys.exit(1)
    try:
        cache = RouteCache.create(source, args.override_path)
    except Exception as e:
        logger.critical(f"Initial DB load failed: {e}")
        source.close()
        sys.exit(1)

    try:
        sock = bind_listener((args.listen_host, args.listen_port))
    except OSError as e:
        logger.critical(f"unable to listen on {args.listen_host}:{args.listen_port}: {e}")
        cache.close()
        source.close()
        sys.exit(1)

    loop_factory = uvloop.new_event_loop if use_uvloop() else None
    try:
        with asyncio.Runner(loop_factory=loop_factory) as runner:
            runner.run(main(cache, sock, reload_interval=args.reload_interval))
    except KeyboardInterrupt:
        pass
    finally:
        sock.close()
        cache.close()
        source.close()


if __name__ == "__main__":
    run()
