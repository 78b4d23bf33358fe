# src/relay_library/background_refresher.py

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .token_manager import TokenManager

lib_logger = logging.getLogger("relay_library")


class BackgroundRefresher:
    """
    A background task that periodically checks the Qwen OAuth token and
    refreshes it before it enters the safety margin.

    An interval of zero or less disables the loop entirely.
    """

    def __init__(self, token_manager: "TokenManager", interval_seconds: float):
        self._token_manager = token_manager
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self._interval > 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Starts the background refresh task."""
        if not self.enabled:
            lib_logger.info("Background token check disabled.")
            return
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            lib_logger.info(
                f"Background token refresher started. Check interval: {self._interval:g} seconds."
            )

    async def stop(self):
        """Stops the background refresh task."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            lib_logger.info("Background token refresher stopped.")

    async def _run(self):
        """The main loop for the background task."""
        while True:
            try:
                await self._token_manager.proactively_refresh()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                lib_logger.error(f"Unexpected error in background refresher loop: {e}")
                await asyncio.sleep(self._interval)
