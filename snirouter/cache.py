import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Self

from .routes import DEFAULT_OVERRIDE_PATH, HasInbounds, RouteTable, build_route_table

logger = logging.getLogger(__name__)

RELOAD_INTERVAL = 30.0


class RouteCache:
    """
    Holds the current ``RouteTable``.

    Readers go through ``get``/``lookup`` and always see one complete table.
    ``refresh`` builds a replacement on a single reload thread, so reloads
    never overlap, and publishes it with one attribute assignment. A failed
    reload keeps the previous table.
    """

    def __init__(
        self,
        source: HasInbounds,
        table: RouteTable,
        *,
        override_path: str | Path | None = DEFAULT_OVERRIDE_PATH,
    ):
        self._source = source
        self._override_path = override_path
        self._table = table
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="route-reload")

    def __repr__(self):
        return f"{type(self).__name__}({self._source!r}, entries={len(self._table)})"

    @classmethod
    def create(
        cls,
        source: HasInbounds,
        override_path: str | Path | None = DEFAULT_OVERRIDE_PATH,
    ) -> Self:
        table = build_route_table(source, override_path)
        logger.info(f"route table loaded: {len(table)} entries")
        return cls(source, table, override_path=override_path)

    @property
    def table(self) -> RouteTable:
        return self._table

    def get(self, hostname: str) -> int | None:
        return self._table.get(hostname)

    def lookup(self, hostname: str) -> tuple[int, bool]:
        if (port := self._table.get(hostname)) is None:
            return 0, False
        return port, True

    def build(self) -> RouteTable:
        return build_route_table(self._source, self._override_path)

    async def refresh(self) -> bool:
        loop = asyncio.get_running_loop()
        try:
            table = await loop.run_in_executor(self._executor, self.build)
        except Exception:
            logger.exception("reload failed, keeping previous route table")
            return False
        self._table = table
        logger.info(f"route table updated: {len(table)} entries")
        return True

    async def run_forever(self, interval: float = RELOAD_INTERVAL):
        while True:
            await asyncio.sleep(interval)
            await self.refresh()

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
