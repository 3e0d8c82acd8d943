import json

import httpx
import pytest

from vnqueue.clients.base_client import RetryConfig, RetryStrategy
from vnqueue.clients.queue_service import QueueServiceClient
from vnqueue.exceptions import (
    PreconditionError,
    QueueCreationError,
    QueueServiceConnectionError,
    QueueServiceError,
    StaffAuthenticationError,
)
from vnqueue.schemas.queue_entry import QueueStatus
from vnqueue.services.state_machine import QueueAction

FAST_RETRY = RetryConfig(max_retries=2, initial_delay=0, strategy=RetryStrategy.LINEAR)


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def make_client(handler, retry_config=FAST_RETRY):
    return QueueServiceClient(
        base_url="http://queue.test",
        retry_config=retry_config,
        transport=httpx.MockTransport(handler),
    )


class TestPatientLookup:
    async def test_get_queue_by_vn(self, make_wire_entry):
        handler = Recorder(httpx.Response(200, json=make_wire_entry(1, status="called", yourPosition=0)))
        async with make_client(handler) as client:
            entry = await client.get_queue_by_vn("VN260112-0001")

        assert entry.visit_number == "VN260112-0001"
        assert entry.status == QueueStatus.CALLED
        assert entry.display_number == "A001"
        assert handler.requests[0].url.path == "/api/queue/VN260112-0001"

    async def test_unknown_vn_returns_none(self):
        handler = Recorder(httpx.Response(404, json={"error": "Queue not found"}))
        async with make_client(handler) as client:
            assert await client.get_queue_by_vn("VN260112-0099") is None

    async def test_lookup_by_phone(self, make_wire_entry):
        handler = Recorder(httpx.Response(200, json=make_wire_entry(4)))
        async with make_client(handler) as client:
            entry = await client.get_queue_by_phone("0812345678")
        assert entry.id == 4
        assert handler.requests[0].url.path == "/api/queue/phone/0812345678"

    async def test_lookup_retries_on_gateway_error(self, make_wire_entry):
        handler = Recorder(httpx.Response(503), httpx.Response(200, json=make_wire_entry(1)))
        async with make_client(handler) as client:
            entry = await client.get_queue_by_vn("VN260112-0001")
        assert entry is not None
        assert len(handler.requests) == 2

    async def test_connection_failure_is_mapped(self):
        handler = Recorder(httpx.ConnectError("connection refused"))
        async with make_client(handler) as client:
            with pytest.raises(QueueServiceConnectionError):
                await client.get_queue_by_vn("VN260112-0001")
        assert len(handler.requests) == FAST_RETRY.max_retries + 1

    async def test_malformed_body_is_mapped(self):
        handler = Recorder(httpx.Response(200, json={"status": "waiting"}))
        async with make_client(handler) as client:
            with pytest.raises(QueueServiceError) as exc_info:
                await client.get_queue_by_vn("VN260112-0001")
        assert exc_info.value.status_code == 502


class TestStaff:
    async def test_login(self):
        handler = Recorder(httpx.Response(200, json={
            "success": True,
            "staffId": 7,
            "staffName": "Nurse Joy",
            "role": "nurse",
            "departmentId": 1,
            "departmentName": "General Medicine",
        }))
        async with make_client(handler) as client:
            staff = await client.staff_login("joy", "secret")

        assert staff.staff_name == "Nurse Joy"
        assert staff.department_id == 1
        assert json.loads(handler.requests[0].content) == {"username": "joy", "password": "secret"}

    async def test_login_rejected(self):
        handler = Recorder(httpx.Response(401, json={"error": "Invalid credentials"}))
        async with make_client(handler) as client:
            with pytest.raises(StaffAuthenticationError) as exc_info:
                await client.staff_login("joy", "wrong")
        assert exc_info.value.message == "Invalid credentials"

    async def test_department_queues_fill_department(self, make_wire_entry):
        handler = Recorder(httpx.Response(200, json=[make_wire_entry(1), make_wire_entry(2, status="called")]))
        async with make_client(handler) as client:
            entries = await client.get_department_queues(3)

        assert [e.id for e in entries] == [1, 2]
        assert all(e.department_id == 3 for e in entries)
        assert handler.requests[0].url.path == "/api/staff/queues/3"


class TestCommands:
    async def test_command_sends_staff_name_and_idempotency_key(self):
        handler = Recorder(httpx.Response(200, json={"success": True, "message": "Called"}))
        async with make_client(handler) as client:
            result = await client.call_queue(12, "Nurse Joy")

        request = handler.requests[0]
        assert result.success is True
        assert request.method == "POST"
        assert request.url.path == "/api/staff/queue/12/call"
        assert json.loads(request.content) == {"staffName": "Nurse Joy"}
        assert request.headers["Idempotency-Key"]

    async def test_each_command_gets_a_fresh_key(self):
        handler = Recorder(httpx.Response(200, json={"success": True}))
        async with make_client(handler) as client:
            await client.complete_queue(1, "Nurse Joy")
            await client.complete_queue(1, "Nurse Joy")
        keys = {r.headers["Idempotency-Key"] for r in handler.requests}
        assert len(keys) == 2

    @pytest.mark.parametrize("action,segment", [
        (QueueAction.MARK_ARRIVED, "arrived"),
        (QueueAction.SKIP, "skip"),
        (QueueAction.RECALL, "recall"),
    ])
    async def test_command_paths(self, action, segment):
        handler = Recorder(httpx.Response(200, json={"success": True}))
        async with make_client(handler) as client:
            await client.send_command(5, action, "Nurse Joy")
        assert handler.requests[0].url.path == f"/api/staff/queue/5/{segment}"

    async def test_rejected_command_is_precondition_error(self):
        handler = Recorder(httpx.Response(409, json={"error": "Another queue is already called"}))
        async with make_client(handler) as client:
            with pytest.raises(PreconditionError) as exc_info:
                await client.call_queue(2, "Nurse Joy")
        assert exc_info.value.message == "Another queue is already called"
        assert exc_info.value.status_code == 409

    async def test_unsuccessful_ack_is_precondition_error(self):
        handler = Recorder(httpx.Response(200, json={"success": False, "message": "Queue is not waiting"}))
        async with make_client(handler) as client:
            with pytest.raises(PreconditionError, match="Queue is not waiting"):
                await client.call_queue(2, "Nurse Joy")

    async def test_commands_are_never_retried(self):
        handler = Recorder(httpx.Response(503))
        async with make_client(handler) as client:
            with pytest.raises(QueueServiceError):
                await client.skip_queue(2, "Nurse Joy")
        assert len(handler.requests) == 1

    async def test_skip_returns_patient_contact(self):
        handler = Recorder(httpx.Response(200, json={
            "success": True,
            "patientName": "Patient 2",
            "patientPhone": "0812345678",
        }))
        async with make_client(handler) as client:
            result = await client.skip_queue(2, "Nurse Joy")
        assert result.patient_phone == "0812345678"

    async def test_create_queue(self):
        handler = Recorder(httpx.Response(200, json={"success": True, "queueNumber": "A010", "queueId": 10}))
        async with make_client(handler) as client:
            result = await client.create_queue("VN260112-0010", 7)
        assert result.queue_number == "A010"
        assert json.loads(handler.requests[0].content) == {"vn": "VN260112-0010", "staffId": 7}

    async def test_create_queue_error(self):
        handler = Recorder(httpx.Response(400, json={"error": "VN already has an active queue"}))
        async with make_client(handler) as client:
            with pytest.raises(QueueCreationError, match="already has an active queue"):
                await client.create_queue("VN260112-0010", 7)
