import asyncio
import contextlib
import logging
from typing import Optional

from adfree_proxy.blocklist.store import BlocklistStore
from adfree_proxy.utils.exception_logging import log_exception_with_details


class BlocklistRefresher:
    """
    Keep a BlocklistStore fresh from a background task.

    One refresh runs immediately; the fixed interval starts once it has
    completed. ``start`` waits for that first refresh at most
    ``startup_timeout`` seconds, after which requests are served against
    whatever snapshot is current.
    """

    def __init__(
        self,
        store: BlocklistStore,
        interval_seconds: float,
        logger: logging.Logger,
        startup_timeout: float = 10.0,
    ):
        self._store = store
        self._interval = interval_seconds
        self._logger = logger
        self._startup_timeout = startup_timeout
        self._task: Optional[asyncio.Task] = None
        self._first_refresh_done = asyncio.Event()
        self.refresh_count = 0

    def is_running(self) -> bool:
        return bool(self._task and not self._task.done())

    async def start(self) -> None:
        if self.is_running():
            return
        self._first_refresh_done = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="blocklist-refresh")
        if self._startup_timeout <= 0:
            return
        try:
            await asyncio.wait_for(
                self._first_refresh_done.wait(), timeout=self._startup_timeout
            )
        except asyncio.TimeoutError:
            self._logger.warning(
                "[Blocklist] Initial refresh still running after %ss, serving with an empty list",
                self._startup_timeout,
            )

    async def stop(self) -> None:
        if not self._task:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        try:
            await self._refresh_once()
        finally:
            self._first_refresh_done.set()
        self._logger.info(
            "[Blocklist] Ad server list will be refreshed every %s seconds",
            self._interval,
        )
        while True:
            await asyncio.sleep(self._interval)
            await self._refresh_once()

    async def _refresh_once(self) -> None:
        try:
            await self._store.refresh()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_exception_with_details(self._logger, "[Blocklist]", exc)
        finally:
            self.refresh_count += 1
