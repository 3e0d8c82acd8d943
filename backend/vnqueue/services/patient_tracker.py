import logging
from typing import Callable, Optional

from vnqueue.clients.queue_service import QueueServiceClient
from vnqueue.exceptions import APIError
from vnqueue.schemas.queue_entry import QueueEntry
from vnqueue.services.notification_policy import NotificationPolicy
from vnqueue.services.polling_fallback import PollingFallback
from vnqueue.services.state_machine import QueueStateMachine
from vnqueue.services.update_channel import ConnectionState, Subscription, UpdateChannel
from vnqueue.utils.vn import normalize_vn

logger = logging.getLogger(__name__)


class PatientQueueTracker:
    """
    Keeps one patient's view of their ticket current.

    Push (UpdateChannel) and poll (PollingFallback) both deliver into
    apply_snapshot(); the channel's connectivity picks exactly one of them.
    """

    def __init__(
        self,
        client: QueueServiceClient,
        channel: UpdateChannel,
        policy: NotificationPolicy,
        poll_interval: Optional[float] = None,
        on_update: Optional[Callable[[QueueEntry], None]] = None,
        on_connection_change: Optional[Callable[[ConnectionState], None]] = None,
    ):
        self.client = client
        self.channel = channel
        self.policy = policy
        self._on_update = on_update
        self._on_connection_change = on_connection_change
        self.poller = PollingFallback(
            fetch=self.client.get_queue_by_vn,
            on_snapshot=lambda snapshot: self.apply_snapshot(snapshot, source="poll"),
            poll_interval=poll_interval,
        )

        self._snapshot: Optional[QueueEntry] = None
        self._subscription: Optional[Subscription] = None
        self._closed = False
        self.discarded_count = 0

    @property
    def snapshot(self) -> Optional[QueueEntry]:
        return self._snapshot

    @property
    def visit_number(self) -> Optional[str]:
        return self._snapshot.visit_number if self._snapshot else None

    @property
    def connection_state(self) -> ConnectionState:
        if self._subscription is None:
            return ConnectionState.DISCONNECTED
        return self._subscription.state

    async def lookup(self, vn: Optional[str] = None, phone: Optional[str] = None) -> Optional[QueueEntry]:
        """
        Find a ticket by visit number, falling back to the phone number.

        Returns:
            The ticket snapshot, or None when nothing matches

        Raises:
            InvalidVisitNumberError: vn is given but not in an accepted form
        """
        entry = None
        if vn:
            entry = await self.client.get_queue_by_vn(normalize_vn(vn))

        if entry is None and phone and phone.strip():
            try:
                entry = await self.client.get_queue_by_phone(phone.strip())
            except APIError as e:
                logger.warning(f"Phone lookup failed: {e.message}")

        return entry

    async def track(self, entry: QueueEntry):
        """Start live tracking of a looked-up ticket; the ticket becomes the alert baseline."""
        if self._snapshot is not None and self._snapshot.visit_number != entry.visit_number:
            await self._teardown_delivery()

        self._closed = False
        self._snapshot = entry
        self.policy.begin(entry.visit_number, baseline=entry)
        if self._on_update is not None:
            self._on_update(entry)

        if self._subscription is None or self._subscription.closed:
            self.poller.set_tracked(entry.visit_number)
            self._subscription = await self.channel.open(
                entry.visit_number,
                on_snapshot=lambda snapshot: self.apply_snapshot(snapshot, source="push"),
                on_state_change=self._handle_connection_change,
            )

    def _handle_connection_change(self, state: ConnectionState):
        if self._closed:
            return
        self.poller.set_channel_connected(state == ConnectionState.CONNECTED)
        if self._on_connection_change is not None:
            self._on_connection_change(state)

    def apply_snapshot(self, snapshot: QueueEntry, source: str = "push") -> bool:
        """
        Single entry point for every delivered snapshot.

        Returns:
            True if the snapshot replaced the held one, False if it was discarded
        """
        if self._closed or self._snapshot is None:
            logger.debug(f"Discarded {source} snapshot for {snapshot.visit_number}: tracker not active")
            self.discarded_count += 1
            return False

        held = self._snapshot
        if snapshot.visit_number != held.visit_number:
            logger.debug(f"Discarded {source} snapshot for {snapshot.visit_number}: tracking {held.visit_number}")
            self.discarded_count += 1
            return False

        if held.updated_at is not None and snapshot.updated_at is not None and snapshot.updated_at < held.updated_at:
            logger.debug(f"Discarded stale {source} snapshot for {snapshot.visit_number}")
            self.discarded_count += 1
            return False

        if QueueStateMachine.is_regression(held, snapshot):
            logger.warning(f"Discarded {source} snapshot for {snapshot.visit_number}: ticket already completed")
            self.discarded_count += 1
            return False

        self._snapshot = snapshot
        self.policy.handle_snapshot(snapshot)
        if self._on_update is not None:
            self._on_update(snapshot)
        return True

    async def _teardown_delivery(self):
        await self.poller.stop()
        if self._subscription is not None:
            await self.channel.close(self._subscription)
            self._subscription = None

    async def stop(self):
        """Stop tracking: no callback or alert fires after this returns."""
        self._closed = True
        await self._teardown_delivery()
        self.policy.close()
        self.policy.end()
        self._snapshot = None
