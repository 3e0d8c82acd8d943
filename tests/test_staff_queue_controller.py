import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from vnqueue.exceptions import (
    ActiveTicketConflictError,
    CommandInProgressError,
    PreconditionError,
    QueueCreationError,
)
from vnqueue.schemas.queue_entry import QueueStatus
from vnqueue.schemas.staff import ApiResponse
from vnqueue.services.state_machine import QueueAction, QueueStateMachine
from vnqueue.services.staff_queue_controller import StaffQueueController


class FakeQueueService:
    """
    In-memory department list that applies accepted commands the way the
    service does, so a refresh after a command sees its effect.
    """

    def __init__(self, entries):
        self.entries = list(entries)
        self.machine = QueueStateMachine()
        self.commands = []
        self.reject_with = None
        # When off, the service accepts a second call and only the client guard prevents it
        self.enforce_single_active = True

    async def get_department_queues(self, department_id):
        return list(self.entries)

    async def send_command(self, queue_id, action, staff_name):
        self.commands.append((queue_id, action))
        if self.reject_with is not None:
            raise self.reject_with
        target = next(e for e in self.entries if e.id == queue_id)
        if self.enforce_single_active:
            self.entries = self.machine.apply_to_department(self.entries, target, action)
        else:
            updated = self.machine.apply(target, action)
            self.entries = [updated if e.id == queue_id else e for e in self.entries]
        return ApiResponse(success=True)


@pytest.fixture
def build_controller(staff_identity):
    def _build(entries, **kwargs):
        service = FakeQueueService(entries)
        kwargs.setdefault("call_next_delay", 0)
        controller = StaffQueueController(service, staff_identity, **kwargs)
        return controller, service
    return _build


async def test_refresh_partitions_department(build_controller, make_entry):
    controller, _ = build_controller([
        make_entry(1, status=QueueStatus.IN_PROGRESS),
        make_entry(2),
        make_entry(3, is_skipped=True),
        make_entry(4, status=QueueStatus.COMPLETED),
    ])
    partitions = await controller.refresh()

    assert partitions.active.id == 1
    assert controller.active.id == 1
    assert [e.id for e in partitions.waiting] == [2]
    assert [e.id for e in partitions.skipped] == [3]
    assert len(partitions.completed_today) == 1


async def test_call_then_second_call_is_rejected(build_controller, make_entry):
    a, b = make_entry(1), make_entry(2)
    controller, service = build_controller([a, b])
    await controller.refresh()

    await controller.call(a)
    assert controller.active.id == 1

    with pytest.raises(ActiveTicketConflictError):
        await controller.call(controller.find("2"))
    assert service.commands == [(1, QueueAction.CALL)]
    assert "A001" in controller.pop_error_message()


async def test_optimistic_active_survives_lagging_refresh(build_controller, make_entry):
    a, b = make_entry(1), make_entry(2)
    controller, service = build_controller([a, b])
    await controller.refresh()

    # The service accepts the call but its list has not caught up yet
    service.send_command = AsyncMock(return_value=ApiResponse(success=True))
    await controller.call(a)

    assert controller.active.id == 1
    assert controller.active.status == QueueStatus.CALLED
    with pytest.raises(ActiveTicketConflictError):
        await controller.call(b)


async def test_skip_clears_active_slot(build_controller, make_entry):
    controller, service = build_controller([make_entry(1, status=QueueStatus.CALLED), make_entry(2)])
    await controller.refresh()

    await controller.skip(controller.active)

    assert controller.active is None
    assert [e.id for e in controller.partitions.skipped] == [1]
    await controller.call(controller.find("2"))
    assert controller.active.id == 2


async def test_arrived_then_complete(build_controller, make_entry):
    controller, _ = build_controller([make_entry(1, status=QueueStatus.CALLED)])
    await controller.refresh()

    await controller.mark_arrived(controller.active)
    assert controller.active.status == QueueStatus.IN_PROGRESS

    await controller.complete(controller.active)
    assert controller.active is None
    assert [e.id for e in controller.partitions.completed_today] == [1]


async def test_recall_puts_ticket_first_in_line(build_controller, make_entry):
    controller, _ = build_controller([make_entry(1), make_entry(2), make_entry(3, is_skipped=True)])
    await controller.refresh()

    await controller.recall(controller.find("A003"))

    assert controller.partitions.next_up.id == 3
    assert controller.partitions.skipped == []


async def test_noop_command_is_not_sent(build_controller, make_entry):
    controller, service = build_controller([make_entry(1, status=QueueStatus.COMPLETED)])
    await controller.refresh()
    assert await controller.complete(controller.find("1")) is None
    assert service.commands == []


async def test_complete_and_call_next(build_controller, make_entry):
    controller, service = build_controller([
        make_entry(1, status=QueueStatus.IN_PROGRESS),
        make_entry(2),
        make_entry(3),
    ])
    await controller.refresh()

    called = await controller.complete_and_call_next()

    assert called.id == 2
    assert service.commands == [(1, QueueAction.COMPLETE), (2, QueueAction.CALL)]
    assert controller.active.id == 2
    assert controller.active.status == QueueStatus.CALLED


async def test_complete_and_call_next_with_empty_line(build_controller, make_entry):
    controller, service = build_controller([make_entry(1, status=QueueStatus.CALLED)])
    await controller.refresh()

    assert await controller.complete_and_call_next() is None
    assert service.commands == [(1, QueueAction.COMPLETE)]
    assert controller.active is None


async def test_complete_and_call_next_waits_for_settle_delay(build_controller, make_entry):
    controller, _ = build_controller([make_entry(1, status=QueueStatus.CALLED), make_entry(2)], call_next_delay=0.05)
    await controller.refresh()

    loop = asyncio.get_running_loop()
    started = loop.time()
    await controller.complete_and_call_next()
    assert loop.time() - started >= 0.05


async def test_failed_call_does_not_call_next(build_controller, make_entry):
    controller, service = build_controller([make_entry(1, status=QueueStatus.CALLED), make_entry(2)])
    await controller.refresh()
    service.reject_with = PreconditionError("Queue already completed")

    with pytest.raises(PreconditionError):
        await controller.complete_and_call_next()
    assert len(service.commands) == 1


async def test_error_message_is_one_shot(build_controller, make_entry):
    controller, service = build_controller([make_entry(1)])
    await controller.refresh()
    service.reject_with = PreconditionError("Queue is not waiting")

    with pytest.raises(PreconditionError):
        await controller.call(controller.find("1"))

    assert controller.pop_error_message() == "Queue is not waiting"
    assert controller.pop_error_message() is None


async def test_command_in_flight_blocks_duplicate(build_controller, make_entry):
    controller, service = build_controller([make_entry(1)])
    await controller.refresh()
    release = asyncio.Event()

    async def slow_send(queue_id, action, staff_name):
        await release.wait()
        return ApiResponse(success=True)

    service.send_command = slow_send
    entry = controller.find("1")
    first = asyncio.create_task(controller.call(entry))
    await asyncio.sleep(0)
    assert controller.is_busy(entry)

    with pytest.raises(CommandInProgressError):
        await controller.call(entry)

    release.set()
    await first
    assert not controller.is_busy(entry)


async def test_create_normalizes_vn(build_controller, make_entry):
    controller, service = build_controller([])
    service.create_queue = AsyncMock(return_value=ApiResponse(success=True, queue_number="A010"))

    result = await controller.create("vn260112-0010")

    assert result.queue_number == "A010"
    service.create_queue.assert_awaited_once_with("VN260112-0010", 7)


async def test_create_error_is_recorded(build_controller):
    controller, service = build_controller([])
    service.create_queue = AsyncMock(side_effect=QueueCreationError("VN already has an active queue"))

    with pytest.raises(QueueCreationError):
        await controller.create("VN260112-0010")
    assert controller.pop_error_message() == "VN already has an active queue"


async def test_periodic_refresh(build_controller, make_entry):
    controller, service = build_controller([make_entry(1)], refresh_interval=0.01)
    on_change = MagicMock()
    controller._on_change = on_change

    await controller.start()
    await asyncio.sleep(0.05)
    await controller.stop()

    assert on_change.call_count >= 2


@pytest.mark.parametrize("steps", [
    [("call", 1), ("call", 2), ("call", 3)],
    [("call", 1), ("arrived", 1), ("call", 2), ("complete", 1), ("call", 2)],
    [("call", 1), ("skip", 1), ("call", 2), ("recall", 1), ("call", 1), ("call", 3)],
    [("call", 1), ("next", None), ("next", None), ("call", 1), ("next", None)],
    [("skip", 2), ("call", 1), ("recall", 2), ("arrived", 1), ("call", 2), ("skip", 1), ("call", 2)],
    [("call", 3), ("complete", 3), ("call", 3), ("recall", 3), ("call", 2), ("arrived", 2), ("next", None)],
])
async def test_any_command_sequence_keeps_one_active_ticket(build_controller, make_entry, steps):
    controller, service = build_controller([make_entry(1), make_entry(2), make_entry(3)])
    service.enforce_single_active = False
    await controller.refresh()
    commands = {
        "call": controller.call,
        "arrived": controller.mark_arrived,
        "skip": controller.skip,
        "complete": controller.complete,
        "recall": controller.recall,
    }

    for name, ticket in steps:
        try:
            if name == "next":
                await controller.complete_and_call_next()
            else:
                await commands[name](controller.find(ticket))
        except PreconditionError:
            pass

        active = [e for e in service.entries if e.is_active]
        assert len(active) <= 1, f"after {name} {ticket}: {[e.display_number for e in active]}"
