import asyncio
import logging
from typing import Awaitable, Callable, Optional

from vnqueue.core.config import settings
from vnqueue.exceptions import APIError
from vnqueue.schemas.queue_entry import QueueEntry

logger = logging.getLogger(__name__)

FetchSnapshot = Callable[[str], Awaitable[Optional[QueueEntry]]]
SnapshotCallback = Callable[[QueueEntry], None]


class PollingFallback:
    """
    Re-fetches the tracked visit number on a fixed interval while the push
    channel is down. Runs only when a visit is tracked AND the channel is not
    connected; a connect report stops it before its next tick.
    """

    def __init__(
        self,
        fetch: FetchSnapshot,
        on_snapshot: SnapshotCallback,
        poll_interval: Optional[float] = None,
    ):
        self._fetch = fetch
        self._on_snapshot = on_snapshot
        self.poll_interval = poll_interval if poll_interval is not None else settings.POLL_INTERVAL_SECONDS

        self._visit_number: Optional[str] = None
        self._channel_connected = False
        self._task: Optional[asyncio.Task] = None
        # Bumped on every stop so a fetch that outlives its loop is discarded
        self._generation = 0
        self.poll_count = 0
        self.error_count = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def visit_number(self) -> Optional[str]:
        return self._visit_number

    def set_tracked(self, visit_number: Optional[str]):
        """Track a new visit number (or None to clear) and re-evaluate whether to poll."""
        if visit_number != self._visit_number:
            self._cancel()
        self._visit_number = visit_number
        self._reconcile()

    def set_channel_connected(self, connected: bool):
        self._channel_connected = connected
        self._reconcile()

    def _reconcile(self):
        should_poll = self._visit_number is not None and not self._channel_connected
        if should_poll and not self.active:
            self._generation += 1
            self._task = asyncio.create_task(
                self._polling_loop(self._visit_number, self._generation),
                name=f"polling-fallback-{self._visit_number}",
            )
            logger.info(f"Polling {self._visit_number} every {self.poll_interval}s while push channel is down")
        elif not should_poll and self.active:
            self._cancel()

    def _cancel(self):
        self._generation += 1
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
                logger.info(f"Stopped polling {self._visit_number}")
            self._task = None

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    async def _polling_loop(self, visit_number: str, generation: int):
        while self._is_current(generation):
            try:
                await asyncio.sleep(self.poll_interval)
                if not self._is_current(generation):
                    break
                snapshot = await self._fetch(visit_number)
                self.poll_count += 1
                if not self._is_current(generation):
                    logger.debug(f"Discarded poll result for {visit_number} that arrived after polling stopped")
                    break
                if snapshot is None:
                    logger.info(f"Poll for {visit_number} found no ticket")
                    continue
                self._on_snapshot(snapshot)
            except asyncio.CancelledError:
                break
            except APIError as e:
                self.error_count += 1
                logger.warning(f"Poll for {visit_number} failed: {e.message}")
            except Exception as e:
                self.error_count += 1
                logger.error(f"Unexpected error polling {visit_number}: {e}")

    async def stop(self):
        """
        Stop polling and wait for the loop to exit. Connectivity is forgotten
        with the tracked visit: the next channel starts out disconnected.
        """
        task = self._task
        self._visit_number = None
        self._channel_connected = False
        self._cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
