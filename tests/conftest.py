import itertools
from datetime import datetime, timedelta, timezone

import pytest

from vnqueue.schemas.queue_entry import QueueEntry, QueueStatus
from vnqueue.schemas.staff import StaffIdentity

BASE_TIME = datetime(2026, 1, 12, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_entry():
    """
    Factory for queue entries. Sequence numbers drive id, VN, display number
    and issue time so entries created later sort later.
    """
    counter = itertools.count(1)

    def _make(seq=None, status=QueueStatus.WAITING, **overrides):
        seq = seq if seq is not None else next(counter)
        data = {
            "id": seq,
            "visit_number": f"VN260112-{seq:04d}",
            "display_number": f"A{seq:03d}",
            "patient_name": f"Patient {seq}",
            "department_id": 1,
            "department_name": "General Medicine",
            "department_location": "Room 3",
            "status": status,
            "issued_time": BASE_TIME + timedelta(minutes=seq),
        }
        data.update(overrides)
        return QueueEntry(**data)

    return _make


@pytest.fixture
def staff_identity():
    return StaffIdentity(
        staff_id=7,
        staff_name="Nurse Joy",
        role="nurse",
        department_id=1,
        department_name="General Medicine",
    )


def wire_entry(seq, status="waiting", **overrides):
    """Queue entry as the service sends it on the wire."""
    data = {
        "queueId": seq,
        "queueNumber": f"A{seq:03d}",
        "vn": f"VN260112-{seq:04d}",
        "patientName": f"Patient {seq}",
        "department": "General Medicine",
        "departmentLocation": "Room 3",
        "status": status,
        "isSkipped": False,
        "issuedTime": (BASE_TIME + timedelta(minutes=seq)).isoformat(),
        "priorityScore": 0,
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_wire_entry():
    return wire_entry
