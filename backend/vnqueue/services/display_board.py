"""
Lobby display for one department: who is being served and who is next.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union

from vnqueue.clients.queue_service import QueueServiceClient
from vnqueue.core.config import settings
from vnqueue.exceptions import APIError
from vnqueue.schemas.queue_entry import QueueEntry
from vnqueue.services.state_machine import QueueStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoardState:
    now_serving: List[QueueEntry] = field(default_factory=list)
    up_next: List[QueueEntry] = field(default_factory=list)
    waiting_count: int = 0
    refreshed_at: Optional[datetime] = None


class DepartmentDisplayBoard:
    def __init__(
        self,
        client: QueueServiceClient,
        department_id: Union[int, str],
        refresh_interval: Optional[float] = None,
        up_next_size: int = 5,
        on_change: Optional[Callable[[BoardState], None]] = None,
    ):
        self.client = client
        self.department_id = department_id
        self.refresh_interval = refresh_interval if refresh_interval is not None else settings.DISPLAY_REFRESH_INTERVAL_SECONDS
        self.up_next_size = up_next_size
        self._on_change = on_change
        self._state_machine = QueueStateMachine()
        self._board = BoardState()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def board(self) -> BoardState:
        return self._board

    def build_board(self, entries: List[QueueEntry]) -> BoardState:
        partitions = self._state_machine.partition(entries)
        return BoardState(
            # Every active ticket is shown, even if the service briefly reports more than one
            now_serving=self._state_machine.active_tickets(entries),
            up_next=partitions.waiting[: self.up_next_size],
            waiting_count=len(partitions.waiting),
            refreshed_at=datetime.now(timezone.utc),
        )

    async def refresh(self) -> BoardState:
        entries = await self.client.get_department_queues(self.department_id)
        self._board = self.build_board(entries)
        if self._on_change is not None:
            self._on_change(self._board)
        return self._board

    async def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._refresh_loop())
        logger.info(f"Display board started for department {self.department_id}")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"Display board stopped for department {self.department_id}")

    async def _refresh_loop(self):
        while self._running:
            try:
                await self.refresh()
            except asyncio.CancelledError:
                break
            except APIError as e:
                # Keep showing the last good board
                logger.warning(f"Display board refresh failed: {e.message}")
            await asyncio.sleep(self.refresh_interval)
