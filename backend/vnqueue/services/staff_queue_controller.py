import asyncio
import logging
from typing import Callable, List, Optional

from vnqueue.clients.queue_service import QueueServiceClient
from vnqueue.core.config import settings
from vnqueue.exceptions import APIError, CommandInProgressError
from vnqueue.schemas.queue_entry import QueueEntry
from vnqueue.schemas.staff import ApiResponse, StaffIdentity
from vnqueue.services.state_machine import (
    QueueAction,
    QueuePartitions,
    QueueStateMachine,
    same_ticket,
)
from vnqueue.utils.vn import normalize_vn

logger = logging.getLogger(__name__)


class StaffQueueController:
    """
    Runs staff commands against one department's queue and re-derives the
    waiting / skipped / active / completed partitions after every refresh.

    The Queue Service is the arbiter between concurrent staff sessions; the
    controller only pre-checks commands against its local copy and keeps an
    optimistic active slot until the next refresh confirms or overwrites it.
    """

    def __init__(
        self,
        client: QueueServiceClient,
        staff: StaffIdentity,
        state_machine: Optional[QueueStateMachine] = None,
        refresh_interval: Optional[float] = None,
        call_next_delay: Optional[float] = None,
        on_change: Optional[Callable[[QueuePartitions], None]] = None,
    ):
        self.client = client
        self.staff = staff
        self.state_machine = state_machine or QueueStateMachine()
        self.refresh_interval = refresh_interval if refresh_interval is not None else settings.STAFF_REFRESH_INTERVAL_SECONDS
        self.call_next_delay = call_next_delay if call_next_delay is not None else settings.CALL_NEXT_DELAY_SECONDS
        self._on_change = on_change

        self._entries: List[QueueEntry] = []
        self._partitions = QueuePartitions()
        self._active: Optional[QueueEntry] = None
        self._in_flight: set = set()
        self._error_message: Optional[str] = None

        self._running = False
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def entries(self) -> List[QueueEntry]:
        return list(self._entries)

    @property
    def partitions(self) -> QueuePartitions:
        return self._partitions

    @property
    def active(self) -> Optional[QueueEntry]:
        return self._active

    @property
    def department_id(self):
        return self.staff.department_id

    def is_busy(self, entry: QueueEntry) -> bool:
        return self._key(entry) in self._in_flight

    def pop_error_message(self) -> Optional[str]:
        """Return the last command error once, then forget it."""
        message, self._error_message = self._error_message, None
        return message

    @staticmethod
    def _key(entry: QueueEntry) -> str:
        return str(entry.id) if entry.id is not None else entry.visit_number

    def find(self, ref) -> Optional[QueueEntry]:
        """Find an entry by queue id, display number or visit number."""
        ref = str(ref).strip()
        for entry in self._entries:
            if ref in (str(entry.id), entry.display_number, entry.visit_number):
                return entry
        return None

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def refresh(self) -> QueuePartitions:
        entries = await self.client.get_department_queues(self.department_id)
        self._apply_entries(entries)
        return self._partitions

    def _apply_entries(self, entries: List[QueueEntry]):
        self._entries = list(entries)
        self._partitions = self.state_machine.partition(self._entries)

        server_active = self._partitions.active
        if server_active is not None:
            if self._active is not None and not same_ticket(self._active, server_active):
                logger.info(
                    f"Active ticket is {server_active.display_number} on the service, "
                    f"replacing local {self._active.display_number}"
                )
            self._active = server_active
        elif self._active is not None:
            # Keep an optimistic call only while the service still lists it as waiting
            current = next((e for e in self._entries if same_ticket(e, self._active)), None)
            if current is None or not current.is_waiting:
                self._active = None

        if self._on_change is not None:
            self._on_change(self._partitions)

    async def start(self):
        """Start periodic refresh of the department queue."""
        if self._running:
            logger.warning("Staff queue refresh is already running")
            return
        self._running = True
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        logger.info(f"Staff queue refresh started for department {self.department_id}")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        logger.info(f"Staff queue refresh stopped for department {self.department_id}")

    async def _refresh_loop(self):
        while self._running:
            try:
                await self.refresh()
                await asyncio.sleep(self.refresh_interval)
            except asyncio.CancelledError:
                break
            except APIError as e:
                logger.warning(f"Department {self.department_id} refresh failed: {e.message}")
                await asyncio.sleep(self.refresh_interval)
            except Exception as e:
                logger.error(f"Error in staff queue refresh loop: {e}")
                await asyncio.sleep(self.refresh_interval)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def _department_view(self) -> List[QueueEntry]:
        """Local department list with the optimistic active ticket folded in."""
        if self._active is None:
            return self._entries
        view = [self._active if same_ticket(e, self._active) else e for e in self._entries]
        if not any(same_ticket(e, self._active) for e in view):
            view.append(self._active)
        return view

    async def _run_command(self, entry: QueueEntry, action: QueueAction) -> Optional[ApiResponse]:
        key = self._key(entry)
        try:
            if key in self._in_flight:
                raise CommandInProgressError()

            if self.state_machine.check(entry, action, self._department_view()):
                logger.info(f"{action.value} on {entry.display_number} already applied; nothing sent")
                return None

            self._in_flight.add(key)
            try:
                result = await self.client.send_command(entry.id, action, self.staff.staff_name)
            finally:
                self._in_flight.discard(key)
        except APIError as e:
            self._error_message = e.message
            logger.warning(f"{action.value} on {entry.display_number} failed: {e.message}")
            raise

        self._after_command(entry, action)
        try:
            await self.refresh()
        except APIError as e:
            logger.warning(f"Refresh after {action.value} failed: {e.message}")
        return result

    def _after_command(self, entry: QueueEntry, action: QueueAction):
        if action == QueueAction.CALL:
            self._active = self.state_machine.apply(entry, action, [])
        elif action == QueueAction.MARK_ARRIVED and same_ticket(entry, self._active):
            self._active = self.state_machine.apply(self._active, action)
        elif action in (QueueAction.SKIP, QueueAction.COMPLETE) and same_ticket(entry, self._active):
            self._active = None

    async def call(self, entry: QueueEntry) -> Optional[ApiResponse]:
        """
        Call a waiting ticket. Rejected locally while another ticket is active.

        Raises:
            ActiveTicketConflictError: the active slot is occupied
        """
        return await self._run_command(entry, QueueAction.CALL)

    async def mark_arrived(self, entry: QueueEntry) -> Optional[ApiResponse]:
        return await self._run_command(entry, QueueAction.MARK_ARRIVED)

    async def skip(self, entry: QueueEntry) -> Optional[ApiResponse]:
        """Skip a ticket. The response may carry patient contact details for follow-up."""
        return await self._run_command(entry, QueueAction.SKIP)

    async def complete(self, entry: QueueEntry) -> Optional[ApiResponse]:
        return await self._run_command(entry, QueueAction.COMPLETE)

    async def recall(self, entry: QueueEntry) -> Optional[ApiResponse]:
        return await self._run_command(entry, QueueAction.RECALL)

    async def complete_and_call_next(self, entry: Optional[QueueEntry] = None) -> Optional[QueueEntry]:
        """
        Complete the active (or given) ticket, then call the head of the waiting line.

        The call is issued only after the completion is acknowledged and the
        list refreshed, followed by a short settle delay for the service.

        Returns:
            The ticket that was called, or None if nobody is waiting
        """
        entry = entry or self._active
        if entry is not None:
            await self.complete(entry)

        if self.call_next_delay:
            await asyncio.sleep(self.call_next_delay)
            try:
                await self.refresh()
            except APIError as e:
                logger.warning(f"Refresh before calling next failed: {e.message}")

        next_up = self._partitions.next_up
        if next_up is None:
            logger.info(f"No waiting tickets in department {self.department_id}")
            return None

        await self.call(next_up)
        return next_up

    async def create(self, vn: str) -> ApiResponse:
        """Issue a new ticket for a visit number."""
        try:
            result = await self.client.create_queue(normalize_vn(vn), self.staff.staff_id)
        except APIError as e:
            self._error_message = e.message
            raise
        try:
            await self.refresh()
        except APIError as e:
            logger.warning(f"Refresh after create failed: {e.message}")
        return result
