"""
Patient-facing alerts derived from a stream of snapshots for one visit.

Rules, evaluated against the previously held snapshot:
- status enters CALLED          -> "your turn" alert, latched once per visit
- is_skipped flips False -> True -> "you were skipped" alert, once per distinct skipped_time
  (once per visit when the server sends no skipped_time)
- waiting position drops to <= threshold from > threshold -> "near your turn", latched once per visit

Latches live on the TrackingSession and reset only when the tracked visit
number changes. Muting gates the sound side effect, never the banner or latches.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Protocol

from vnqueue.core.config import settings
from vnqueue.schemas.queue_entry import QueueEntry, QueueStatus
from vnqueue.services.state_machine import QueueStateMachine

logger = logging.getLogger(__name__)


class AlertKind(str, Enum):
    CALLED = "called"
    SKIPPED = "skipped"
    NEAR_TURN = "near_turn"


@dataclass(frozen=True)
class Alert:
    kind: AlertKind
    visit_number: str
    title: str
    message: str
    announcement: str
    urgent: bool = True
    raised_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AlertSound(Protocol):
    def play(self, alert: Alert) -> None:
        ...


@dataclass
class TrackingSession:
    """Per-visit alert state, replaced whenever the tracked visit number changes."""
    visit_number: str
    last_snapshot: Optional[QueueEntry] = None
    called_alerted: bool = False
    near_turn_alerted: bool = False
    skip_alerted: bool = False
    skip_alerted_at: Optional[datetime] = None
    alerts_fired: int = 0


def build_called_alert(snapshot: QueueEntry) -> Alert:
    number = snapshot.display_number or snapshot.visit_number
    location = snapshot.department_location or "the examination room"
    return Alert(
        kind=AlertKind.CALLED,
        visit_number=snapshot.visit_number,
        title="It's your turn",
        message="Please go to the service point now.",
        announcement=f"Queue number {number}, please proceed to {location}.",
    )


def build_skipped_alert(snapshot: QueueEntry) -> Alert:
    number = snapshot.display_number or snapshot.visit_number
    return Alert(
        kind=AlertKind.SKIPPED,
        visit_number=snapshot.visit_number,
        title="Your queue was skipped",
        message="Your ticket was skipped. Please contact the staff.",
        announcement=f"Queue number {number} was skipped. Please contact the staff.",
    )


def build_near_turn_alert(snapshot: QueueEntry) -> Alert:
    return Alert(
        kind=AlertKind.NEAR_TURN,
        visit_number=snapshot.visit_number,
        title="Almost your turn",
        message=f"About {snapshot.position} ahead of you. Please get ready.",
        announcement=f"About {snapshot.position} queues left. Please get ready.",
        urgent=False,
    )


class NotificationPolicy:
    def __init__(
        self,
        sound: Optional[AlertSound] = None,
        on_alert: Optional[Callable[[Alert], None]] = None,
        on_clear: Optional[Callable[[], None]] = None,
        duration: Optional[float] = None,
        near_turn_threshold: Optional[int] = None,
        sound_enabled: bool = True,
    ):
        self._sound = sound
        self._on_alert = on_alert
        self._on_clear = on_clear
        self.duration = duration if duration is not None else settings.NOTIFICATION_DURATION_SECONDS
        self.near_turn_threshold = near_turn_threshold if near_turn_threshold is not None else settings.NEAR_TURN_THRESHOLD
        self.sound_enabled = sound_enabled

        self._session: Optional[TrackingSession] = None
        self._current: Optional[Alert] = None
        self._expiry: Optional[asyncio.TimerHandle] = None

    @property
    def session(self) -> Optional[TrackingSession]:
        return self._session

    @property
    def current_alert(self) -> Optional[Alert]:
        return self._current

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    def begin(self, visit_number: str, baseline: Optional[QueueEntry] = None) -> TrackingSession:
        """
        Start tracking a visit. Re-beginning the same visit keeps its latches;
        a different visit number gets a fresh session.
        """
        if self._session is not None and self._session.visit_number == visit_number:
            if baseline is not None:
                self._session.last_snapshot = baseline
            return self._session

        self.dismiss()
        self._session = TrackingSession(visit_number=visit_number, last_snapshot=baseline)
        return self._session

    def end(self):
        self.dismiss()
        self._session = None

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    def _entered_near_turn(self, previous: QueueEntry, current: QueueEntry) -> bool:
        if not current.is_waiting or current.position is None or previous.position is None:
            return False
        return 0 < current.position <= self.near_turn_threshold < previous.position

    def _is_new_skip(self, session: TrackingSession, snapshot: QueueEntry) -> bool:
        # A stale unskipped snapshot between two copies of the same skip must not re-alert
        if not session.skip_alerted:
            return True
        return snapshot.skipped_time is not None and snapshot.skipped_time != session.skip_alerted_at

    def evaluate(self, snapshot: QueueEntry) -> List[Alert]:
        """
        Decide which alerts a new snapshot triggers and record it as the held snapshot.
        The first snapshot of a session is its baseline and never alerts.
        """
        if self._session is None or self._session.visit_number != snapshot.visit_number:
            self.begin(snapshot.visit_number)
        session = self._session

        previous = session.last_snapshot
        session.last_snapshot = snapshot
        if previous is None:
            return []

        if QueueStateMachine.is_regression(previous, snapshot):
            logger.warning(f"Snapshot for {snapshot.visit_number} moves out of completed; no alert inferred")
            return []

        alerts = []

        if not session.near_turn_alerted and self._entered_near_turn(previous, snapshot):
            session.near_turn_alerted = True
            alerts.append(build_near_turn_alert(snapshot))

        if snapshot.is_skipped and not previous.is_skipped and self._is_new_skip(session, snapshot):
            session.skip_alerted = True
            session.skip_alerted_at = snapshot.skipped_time
            alerts.append(build_skipped_alert(snapshot))

        if (
            snapshot.status == QueueStatus.CALLED
            and previous.status != QueueStatus.CALLED
            and not session.called_alerted
        ):
            session.called_alerted = True
            alerts.append(build_called_alert(snapshot))

        session.alerts_fired += len(alerts)
        return alerts

    def handle_snapshot(self, snapshot: QueueEntry) -> List[Alert]:
        """Evaluate a snapshot and raise its alerts; the most urgent one ends up visible."""
        alerts = self.evaluate(snapshot)
        for alert in alerts:
            self.show(alert)
        return alerts

    # -------------------------------------------------------------------------
    # Banner
    # -------------------------------------------------------------------------

    def show(self, alert: Alert):
        """Display an alert, replacing any visible one, and schedule its expiry."""
        self._cancel_expiry()
        self._current = alert
        logger.info(f"Alert for {alert.visit_number}: {alert.kind.value}")

        if self.sound_enabled and self._sound is not None:
            try:
                self._sound.play(alert)
            except Exception as e:
                logger.warning(f"Alert sound failed: {e}")

        if self._on_alert is not None:
            self._on_alert(alert)

        loop = asyncio.get_running_loop()
        self._expiry = loop.call_later(self.duration, self._expire, alert)

    def _expire(self, alert: Alert):
        if self._current is alert:
            self._expiry = None
            self._clear()

    def dismiss(self):
        self._cancel_expiry()
        if self._current is not None:
            self._clear()

    def _clear(self):
        self._current = None
        if self._on_clear is not None:
            self._on_clear()

    def _cancel_expiry(self):
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None

    def close(self):
        """Cancel the pending expiry timer without notifying listeners."""
        self._cancel_expiry()
        self._current = None
