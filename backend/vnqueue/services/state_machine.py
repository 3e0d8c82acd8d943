"""
Queue entry lifecycle.

States:
- WAITING -> CALLED -> IN_PROGRESS -> COMPLETED (terminal)
- is_skipped is a side flag: set by SKIP from waiting/called/in_progress
  (which also resets status to WAITING), cleared by RECALL.

A department may hold at most one ticket in CALLED or IN_PROGRESS.
Applying an action to a ticket that already satisfies its effect is a no-op,
since client and server state can race.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, List, Optional

from vnqueue.exceptions import ActiveTicketConflictError, InvalidTransitionError
from vnqueue.schemas.queue_entry import QueueEntry, QueueStatus

logger = logging.getLogger(__name__)


class QueueAction(str, Enum):
    """Staff commands; values are the service's URL segments."""
    CALL = "call"
    MARK_ARRIVED = "arrived"
    SKIP = "skip"
    COMPLETE = "complete"
    RECALL = "recall"


@dataclass(frozen=True)
class QueuePartitions:
    waiting: List[QueueEntry] = field(default_factory=list)
    skipped: List[QueueEntry] = field(default_factory=list)
    active: Optional[QueueEntry] = None
    completed_today: List[QueueEntry] = field(default_factory=list)

    @property
    def next_up(self) -> Optional[QueueEntry]:
        return self.waiting[0] if self.waiting else None


def same_ticket(a: Optional[QueueEntry], b: Optional[QueueEntry]) -> bool:
    if a is None or b is None:
        return False
    if a.id is not None and b.id is not None:
        return str(a.id) == str(b.id)
    return a.visit_number == b.visit_number


def waiting_order_key(entry: QueueEntry):
    """Higher priority first, then earlier issue time."""
    return (-entry.priority_score, entry.sort_time())


class QueueStateMachine:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # -------------------------------------------------------------------------
    # Department-level rules
    # -------------------------------------------------------------------------

    @staticmethod
    def active_tickets(entries: Iterable[QueueEntry]) -> List[QueueEntry]:
        return [e for e in entries if e.is_active]

    def find_active(self, entries: Iterable[QueueEntry], exclude: Optional[QueueEntry] = None) -> Optional[QueueEntry]:
        for entry in self.active_tickets(entries):
            if exclude is not None and same_ticket(entry, exclude):
                continue
            return entry
        return None

    def partition(self, entries: Iterable[QueueEntry]) -> QueuePartitions:
        entries = list(entries)
        waiting = sorted((e for e in entries if e.is_waiting), key=waiting_order_key)
        waiting = [e.model_copy(update={"position": idx}) for idx, e in enumerate(waiting, start=1)]
        skipped = sorted((e for e in entries if e.is_skipped and e.status != QueueStatus.COMPLETED), key=lambda e: e.skipped_time or e.sort_time())

        active_list = self.active_tickets(entries)
        if len(active_list) > 1:
            # The service is the arbiter; keep the first one and log the breach
            logger.error(
                f"Department list has {len(active_list)} active tickets: "
                f"{[e.display_number or e.visit_number for e in active_list]}"
            )
        active = active_list[0] if active_list else None

        completed = [e for e in entries if e.status == QueueStatus.COMPLETED]
        return QueuePartitions(waiting=waiting, skipped=skipped, active=active, completed_today=completed)

    # -------------------------------------------------------------------------
    # Transition rules
    # -------------------------------------------------------------------------

    def check(self, entry: QueueEntry, action: QueueAction, department: Iterable[QueueEntry] = ()) -> bool:
        """
        Validate an action against the entry and its department.

        Returns:
            True if the entry already satisfies the action's effect (no-op), False if it should be applied

        Raises:
            ActiveTicketConflictError: calling while another ticket is active
            InvalidTransitionError: any other failed precondition
        """
        label = entry.display_number or entry.visit_number

        if action == QueueAction.CALL:
            if entry.status == QueueStatus.CALLED and not entry.is_skipped:
                return True
            if entry.status != QueueStatus.WAITING:
                raise InvalidTransitionError(f"Cannot call {label}: ticket is {entry.status.value}.")
            if entry.is_skipped:
                raise InvalidTransitionError(f"Cannot call {label}: ticket was skipped, recall it first.")
            other = self.find_active(department, exclude=entry)
            if other is not None:
                raise ActiveTicketConflictError(
                    f"Cannot call {label}: {other.display_number or other.visit_number} is still {other.status.value}."
                )
            return False

        if action == QueueAction.MARK_ARRIVED:
            if entry.status == QueueStatus.IN_PROGRESS:
                return True
            if entry.status != QueueStatus.CALLED:
                raise InvalidTransitionError(f"Cannot mark {label} as arrived: ticket is {entry.status.value}.")
            return False

        if action == QueueAction.SKIP:
            if entry.is_skipped and entry.status == QueueStatus.WAITING:
                return True
            if entry.status == QueueStatus.COMPLETED:
                raise InvalidTransitionError(f"Cannot skip {label}: ticket is already completed.")
            return False

        if action == QueueAction.COMPLETE:
            if entry.status == QueueStatus.COMPLETED:
                return True
            if not entry.is_active:
                raise InvalidTransitionError(f"Cannot complete {label}: ticket is {entry.status.value}.")
            return False

        if action == QueueAction.RECALL:
            if entry.is_skipped:
                return False
            if entry.status == QueueStatus.WAITING:
                return True
            raise InvalidTransitionError(f"Cannot recall {label}: ticket was not skipped.")

        raise InvalidTransitionError(f"Unknown action: {action}")

    def apply(self, entry: QueueEntry, action: QueueAction, department: Iterable[QueueEntry] = ()) -> QueueEntry:
        """Return the entry as it looks after the action; the same object when the action is a no-op."""
        department = list(department)
        if self.check(entry, action, department):
            logger.debug(f"{action.value} on {entry.visit_number} is a no-op")
            return entry

        if action == QueueAction.CALL:
            return entry.model_copy(update={"status": QueueStatus.CALLED, "position": 0})

        if action == QueueAction.MARK_ARRIVED:
            return entry.model_copy(update={"status": QueueStatus.IN_PROGRESS})

        if action == QueueAction.SKIP:
            return entry.model_copy(update={
                "status": QueueStatus.WAITING,
                "is_skipped": True,
                "skipped_time": self._clock(),
                "position": None,
            })

        if action == QueueAction.COMPLETE:
            return entry.model_copy(update={"status": QueueStatus.COMPLETED, "position": None})

        # RECALL: back into the waiting line as the next ticket to be called
        others = [e.priority_score for e in department if e.is_waiting and not same_ticket(e, entry)]
        priority = entry.priority_score
        if others and max(others) >= priority:
            priority = max(others) + 1
        return entry.model_copy(update={"is_skipped": False, "priority_score": priority})

    def apply_to_department(self, entries: Iterable[QueueEntry], target: QueueEntry, action: QueueAction) -> List[QueueEntry]:
        """Apply an action to one ticket of a department list and return the updated list."""
        entries = list(entries)
        updated = self.apply(target, action, entries)
        return [updated if same_ticket(e, target) else e for e in entries]

    @staticmethod
    def is_regression(previous: Optional[QueueEntry], current: QueueEntry) -> bool:
        """
        True when `current` cannot follow `previous` for the same visit.
        Only leaving COMPLETED is impossible; every other backward move is reachable via skip/recall.
        """
        if previous is None:
            return False
        return previous.status == QueueStatus.COMPLETED and current.status != QueueStatus.COMPLETED
