"""Rich output formatting for the tidefill CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from backfill_engine.checks.backfill_check import CheckReport
    from backfill_engine.models.plan import BackfillPlan
    from backfill_engine.models.run import BackfillRun
    from backfill_engine.reporting import DoctorReport, StatusSummary


# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "completed": "green",
    "succeeded": "green",
    "completed_with_failures": "red",
    "failed_exhausted": "red",
    "failed_retrying": "yellow",
    "running": "yellow",
    "paused": "yellow",
    "pending": "dim",
    "planned": "dim",
    "not_started": "dim",
    "cancelled": "dim red",
    "error": "red",
    "warn": "yellow",
    "info": "cyan",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def _ts(value: object) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


def display_plan_summary(console: Console, plan: BackfillPlan, *, existed: bool, plan_path: str) -> None:
    """Render a plan overview with its chunk boundaries."""
    header = (
        f"[bold]Plan:[/bold] {plan.plan_id}\n"
        f"[bold]Target:[/bold] {plan.target}\n"
        f"[bold]Window:[/bold] {_ts(plan.window.start)} -> {_ts(plan.window.end)} UTC\n"
        f"[bold]Strategy:[/bold] {plan.strategy.value}   "
        f"[bold]Time column:[/bold] {plan.time_column}   "
        f"[bold]Chunks:[/bold] {len(plan.chunks)} x {plan.chunk_hours:g}h"
    )
    console.print(Panel(header, title="Backfill Plan", expand=False))

    table = Table(show_lines=False, pad_edge=True, expand=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("From")
    table.add_column("To")
    for chunk in plan.chunks:
        table.add_row(str(chunk.index), _ts(chunk.start), _ts(chunk.end))
    console.print(table)

    if existed:
        console.print(f"[dim]Plan already stored at {plan_path} (no changes).[/dim]")
    else:
        console.print(f"Plan written to [bold]{plan_path}[/bold]")


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def display_status(console: Console, summary: StatusSummary, run: BackfillRun | None = None) -> None:
    """Render run progress and, when *run* is given, a per-chunk table."""
    totals = ", ".join(f"{name}={count}" for name, count in summary.totals.items() if count)
    header = (
        f"[bold]Plan:[/bold] {summary.plan_id}   [bold]Target:[/bold] {summary.target}\n"
        f"[bold]Status:[/bold] {_coloured_status(summary.status)}   "
        f"[bold]Chunks:[/bold] {summary.total_chunks} ({totals or 'none'})\n"
        f"[bold]Attempts:[/bold] {summary.attempts}   [bold]Rows written:[/bold] {summary.rows_written}"
    )
    if summary.last_error:
        header += f"\n[bold]Last error:[/bold] [red]{summary.last_error}[/red]"
    console.print(Panel(header, title="Backfill Status", expand=False))

    if run is not None and run.chunk_states:
        table = Table(show_lines=False, pad_edge=True, expand=False)
        table.add_column("#", justify="right", style="dim")
        table.add_column("Window")
        table.add_column("Status")
        table.add_column("Attempts", justify="center")
        table.add_column("Rows", justify="right")
        table.add_column("Error", overflow="fold", max_width=60)
        for state in run.chunk_states:
            table.add_row(
                str(state.index),
                f"{_ts(state.start)} -> {_ts(state.end)}",
                _coloured_status(state.status.value),
                str(state.attempts),
                "-" if state.rows_written is None else str(state.rows_written),
                state.last_error or "",
            )
        console.print(table)

    for name, path in summary.paths.items():
        console.print(f"[dim]{name}: {path}[/dim]")


# ---------------------------------------------------------------------------
# Doctor & check
# ---------------------------------------------------------------------------


def display_doctor_report(console: Console, report: DoctorReport) -> None:
    if report.healthy:
        console.print(f"[green]Backfill doctor {report.plan_id}: ok[/green]")
    else:
        console.print(f"[yellow]Backfill doctor {report.plan_id}: {', '.join(report.issue_codes)}[/yellow]")
    if report.failed_chunks:
        console.print(f"Failed chunks: {', '.join(str(i) for i in report.failed_chunks)}")
    for recommendation in report.recommendations:
        console.print(f"  - {recommendation}")


def display_check_report(console: Console, report: CheckReport) -> None:
    if not report.findings:
        console.print("[green]Backfill check passed: no pending backfills.[/green]")
        return

    table = Table(title="Backfill Check", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Severity")
    table.add_column("Code", style="bold")
    table.add_column("Message")
    for finding in report.findings:
        table.add_row(_coloured_status(finding.severity.value), finding.code, finding.message)
    console.print(table)

    verdict = "[green]ok[/green]" if report.ok else "[red]failed[/red]"
    console.print(
        f"Check {verdict}: {report.required_count} pending, "
        f"{report.active_runs} active, {report.failed_runs} with exhausted chunks"
    )
