"""
CLI entry point for the hospital queue client.

Usage:
    vnqueue watch VN260112-0001
    vnqueue watch --phone 0812345678
    vnqueue staff -u nurse1 -p secret queues
    vnqueue staff -u nurse1 -p secret next
    vnqueue display 3
"""

import asyncio
import sys
from typing import Awaitable, Callable, Optional

import click
from dotenv import find_dotenv, load_dotenv

from vnqueue import __version__
from vnqueue.clients.queue_service import QueueServiceClient
from vnqueue.core.config import settings
from vnqueue.core.logging_config import setup_logging
from vnqueue.exceptions import APIError
from vnqueue.presenters.console_presenter import ConsolePresenter, TerminalBell
from vnqueue.schemas.queue_entry import QueueEntry, QueueStatus
from vnqueue.services.display_board import DepartmentDisplayBoard
from vnqueue.services.notification_policy import NotificationPolicy
from vnqueue.services.patient_tracker import PatientQueueTracker
from vnqueue.services.staff_queue_controller import StaffQueueController
from vnqueue.services.update_channel import UpdateChannel


def _fail(presenter: ConsolePresenter, message: str):
    presenter.show_error(message)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", type=str, default=None, help="Override LOG_LEVEL")
def cli(log_level: Optional[str]):
    """Hospital visit-queue client."""
    # Settings were read at import; apply .env from the working directory and re-read
    load_dotenv(find_dotenv(usecwd=True))
    settings.refresh_from_env()
    setup_logging(settings.LOG_FILE_PATH, log_level or settings.LOG_LEVEL)


# -----------------------------------------------------------------------------
# Patient
# -----------------------------------------------------------------------------

async def _watch(vn: Optional[str], phone: Optional[str], mute: bool, presenter: ConsolePresenter):
    finished = asyncio.Event()

    def on_update(entry: QueueEntry):
        presenter.show_snapshot(entry)
        if entry.status == QueueStatus.COMPLETED:
            finished.set()

    client = QueueServiceClient()
    channel = UpdateChannel()
    policy = NotificationPolicy(
        sound=TerminalBell(presenter.console),
        on_alert=presenter.show_alert,
        on_clear=presenter.clear_alert,
        sound_enabled=not mute,
    )
    tracker = PatientQueueTracker(
        client,
        channel,
        policy,
        on_update=on_update,
        on_connection_change=presenter.show_connection,
    )
    try:
        entry = await tracker.lookup(vn=vn, phone=phone)
        if entry is None:
            raise APIError("Queue not found. Please check your visit number.", status_code=404)
        await tracker.track(entry)
        await finished.wait()
        presenter.show_success("Your visit is complete.")
    finally:
        await tracker.stop()
        await channel.shutdown()
        await client.close()


@cli.command()
@click.argument("vn", required=False)
@click.option("--phone", type=str, default=None, help="Look up by phone number if the VN is not found")
@click.option("--mute", is_flag=True, help="Silence alert sounds (alerts are still shown)")
def watch(vn: Optional[str], phone: Optional[str], mute: bool):
    """Track a ticket live by visit number or phone."""
    if not vn and not phone:
        raise click.UsageError("Give a visit number or --phone.")
    presenter = ConsolePresenter()
    try:
        asyncio.run(_watch(vn, phone, mute, presenter))
    except APIError as e:
        _fail(presenter, e.message)
    except KeyboardInterrupt:
        presenter.show_info("Stopped tracking.")


# -----------------------------------------------------------------------------
# Staff
# -----------------------------------------------------------------------------

StaffAction = Callable[[StaffQueueController, ConsolePresenter], Awaitable[None]]


async def _with_controller(username: str, password: str, presenter: ConsolePresenter, action: StaffAction):
    async with QueueServiceClient() as client:
        identity = await client.staff_login(username, password)
        controller = StaffQueueController(client, identity)
        await controller.refresh()
        await action(controller, presenter)


def _run_staff(ctx: click.Context, action: StaffAction):
    presenter = ConsolePresenter()
    try:
        asyncio.run(_with_controller(ctx.obj["username"], ctx.obj["password"], presenter, action))
    except APIError as e:
        _fail(presenter, e.message)


def _require(controller: StaffQueueController, ref: str) -> QueueEntry:
    entry = controller.find(ref)
    if entry is None:
        raise APIError(f"No ticket {ref} in department {controller.department_id}.", status_code=404)
    return entry


@cli.group()
@click.option("--username", "-u", envvar="VNQUEUE_STAFF_USERNAME", required=True, help="Staff username")
@click.option("--password", "-p", envvar="VNQUEUE_STAFF_PASSWORD", required=True, help="Staff password")
@click.pass_context
def staff(ctx: click.Context, username: str, password: str):
    """Manage a department queue."""
    ctx.obj = {"username": username, "password": password}


@staff.command("queues")
@click.pass_context
def staff_queues(ctx: click.Context):
    """Show the department's queue."""
    async def action(controller, presenter):
        presenter.show_partitions(controller.partitions, controller.active)
    _run_staff(ctx, action)


def _single_ticket_command(name: str, method: str, done: str, help_text: str):
    @staff.command(name, help=help_text)
    @click.argument("ref")
    @click.pass_context
    def command(ctx: click.Context, ref: str):
        async def action(controller, presenter):
            entry = _require(controller, ref)
            result = await getattr(controller, method)(entry)
            presenter.show_success(f"{done} {entry.display_number}")
            if result is not None and result.patient_phone:
                presenter.show_info(f"Contact {result.patient_name or 'patient'}: {result.patient_phone}")
            presenter.show_partitions(controller.partitions, controller.active)
        _run_staff(ctx, action)
    return command


_single_ticket_command("call", "call", "Called", "Call a waiting ticket (by id, queue number or VN).")
_single_ticket_command("arrived", "mark_arrived", "Patient arrived:", "Mark a called patient as arrived.")
_single_ticket_command("skip", "skip", "Skipped", "Skip a waiting or called ticket.")
_single_ticket_command("recall", "recall", "Recalled", "Put a skipped ticket back at the front of the line.")


@staff.command("complete")
@click.argument("ref", required=False)
@click.pass_context
def staff_complete(ctx: click.Context, ref: Optional[str]):
    """Complete a ticket (defaults to the one being served)."""
    async def action(controller, presenter):
        entry = _require(controller, ref) if ref else controller.active
        if entry is None:
            raise APIError("No ticket is being served.", status_code=409)
        await controller.complete(entry)
        presenter.show_success(f"Completed {entry.display_number}")
        presenter.show_partitions(controller.partitions, controller.active)
    _run_staff(ctx, action)


@staff.command("next")
@click.pass_context
def staff_next(ctx: click.Context):
    """Complete the current ticket and call the next one."""
    async def action(controller, presenter):
        called = await controller.complete_and_call_next()
        if called is None:
            presenter.show_info("Nobody is waiting.")
        else:
            presenter.show_success(f"Called {called.display_number}")
        presenter.show_partitions(controller.partitions, controller.active)
    _run_staff(ctx, action)


@staff.command("create")
@click.argument("vn")
@click.pass_context
def staff_create(ctx: click.Context, vn: str):
    """Issue a queue ticket for a visit number."""
    async def action(controller, presenter):
        result = await controller.create(vn)
        presenter.show_success(f"Created queue {result.queue_number}")
    _run_staff(ctx, action)


# -----------------------------------------------------------------------------
# Display
# -----------------------------------------------------------------------------

async def _display(department_id: str, once: bool, presenter: ConsolePresenter):
    async with QueueServiceClient() as client:
        def render(board):
            if not once:
                presenter.console.clear()
            presenter.show_board(board, department=f"Department {department_id}")

        board = DepartmentDisplayBoard(client, department_id, on_change=render)
        if once:
            await board.refresh()
            return
        await board.start()
        try:
            await asyncio.Event().wait()
        finally:
            await board.stop()


@cli.command()
@click.argument("department_id")
@click.option("--once", is_flag=True, help="Print the board once and exit")
def display(department_id: str, once: bool):
    """Lobby board for a department."""
    presenter = ConsolePresenter()
    try:
        asyncio.run(_display(department_id, once, presenter))
    except APIError as e:
        _fail(presenter, e.message)
    except KeyboardInterrupt:
        pass


def main():
    cli()


if __name__ == "__main__":
    main()
