"""
Console Presenter for the terminal front end.

Uses Rich for formatted ticket cards, alert banners and queue tables.
"""

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from vnqueue.schemas.queue_entry import QueueEntry, QueueStatus
from vnqueue.services.display_board import BoardState
from vnqueue.services.notification_policy import Alert, AlertKind
from vnqueue.services.state_machine import QueuePartitions
from vnqueue.services.update_channel import ConnectionState
from vnqueue.utils.vn import format_vn_display

STATUS_STYLES = {
    QueueStatus.WAITING: ("Waiting", "cyan"),
    QueueStatus.CALLED: ("Called - please come in", "bold green"),
    QueueStatus.IN_PROGRESS: ("In service", "green"),
    QueueStatus.COMPLETED: ("Completed", "dim"),
}

ALERT_STYLES = {
    AlertKind.CALLED: "green",
    AlertKind.SKIPPED: "red",
    AlertKind.NEAR_TURN: "yellow",
}


class TerminalBell:
    """Alert sound for terminals: rings the bell, twice for urgent alerts."""

    def __init__(self, console: Console):
        self.console = console

    def play(self, alert: Alert) -> None:
        self.console.bell()
        if alert.urgent:
            self.console.bell()


class ConsolePresenter:
    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def _status_label(self, entry: QueueEntry):
        if entry.is_skipped:
            return "Skipped - please contact staff", "bold red"
        return STATUS_STYLES.get(entry.status, (entry.status.value, "white"))

    # -------------------------------------------------------------------------
    # Patient
    # -------------------------------------------------------------------------

    def show_snapshot(self, entry: QueueEntry):
        label, style = self._status_label(entry)
        lines = [
            f"[bold]Queue[/] {entry.display_number or '-'}    [bold]VN[/] {format_vn_display(entry.visit_number)}",
            f"[bold]Department[/] {entry.department_name or '-'}  {entry.department_location or ''}",
            f"[bold]Status[/] [{style}]{label}[/]",
        ]
        if entry.is_waiting and entry.position is not None:
            lines.append(f"[bold]Ahead of you[/] {entry.position}")
        if entry.current_queue:
            lines.append(f"[bold]Now serving[/] {entry.current_queue}")
        if entry.estimated_time:
            lines.append(f"[bold]Estimated wait[/] {entry.estimated_time}")
        self.console.print(Panel("\n".join(lines), title=entry.patient_name or "Your ticket", border_style=style))

    def show_alert(self, alert: Alert):
        style = ALERT_STYLES.get(alert.kind, "white")
        self.console.print(Panel(
            f"[bold]{alert.message}[/]\n{alert.announcement}",
            title=f"[bold {style}]{alert.title}[/]",
            border_style=style,
            padding=(1, 2),
        ))

    def clear_alert(self):
        self.console.print("[dim]Alert dismissed[/]")

    def show_connection(self, state: ConnectionState):
        if state == ConnectionState.CONNECTED:
            self.console.print("[green]● live updates connected[/]")
        elif state == ConnectionState.DISCONNECTED:
            self.console.print("[yellow]○ live updates disconnected, checking periodically[/]")

    # -------------------------------------------------------------------------
    # Staff
    # -------------------------------------------------------------------------

    def _entries_table(self, title: str, entries, show_position: bool = False) -> Table:
        table = Table(title=title, show_lines=False)
        if show_position:
            table.add_column("#", justify="right")
        table.add_column("ID")
        table.add_column("Queue", style="bold")
        table.add_column("VN")
        table.add_column("Patient")
        table.add_column("Issued")
        for entry in entries:
            row = [
                str(entry.id),
                entry.display_number or "-",
                entry.visit_number,
                entry.patient_name or "-",
                entry.issued_time.strftime("%H:%M") if entry.issued_time else "-",
            ]
            if show_position:
                row.insert(0, str(entry.position or ""))
            table.add_row(*row)
        return table

    def show_partitions(self, partitions: QueuePartitions, active: Optional[QueueEntry] = None):
        active = active or partitions.active
        if active is not None:
            label, style = self._status_label(active)
            self.console.print(Panel(
                f"[bold]{active.display_number}[/]  {active.patient_name or ''}  [{style}]{label}[/]",
                title="Now serving",
                border_style=style,
            ))
        else:
            self.console.print(Panel("[dim]No ticket being served[/]", title="Now serving"))

        self.console.print(self._entries_table(f"Waiting ({len(partitions.waiting)})", partitions.waiting, show_position=True))
        if partitions.skipped:
            self.console.print(self._entries_table(f"Skipped ({len(partitions.skipped)})", partitions.skipped))
        self.console.print(f"[dim]Completed today: {len(partitions.completed_today)}[/]")

    def show_board(self, board: BoardState, department: str = ""):
        table = Table(title=f"{department} now serving".strip(), show_header=False)
        table.add_column("Queue", style="bold green")
        table.add_column("Location")
        for entry in board.now_serving:
            table.add_row(entry.display_number or entry.visit_number, entry.department_location or "")
        if not board.now_serving:
            table.add_row("-", "")
        self.console.print(table)
        up_next = ", ".join(e.display_number or e.visit_number for e in board.up_next) or "-"
        self.console.print(f"[bold]Up next:[/] {up_next}   [dim]({board.waiting_count} waiting)[/]")

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def show_success(self, message: str):
        self.console.print(f"[bold green]✓[/] {message}")

    def show_info(self, message: str):
        self.console.print(f"[cyan]{message}[/]")

    def show_error(self, message: str):
        self.console.print(Panel(f"[red]{message}[/]", title="[bold red]Error[/]", border_style="red"))
