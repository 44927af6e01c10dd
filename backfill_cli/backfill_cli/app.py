"""tidefill CLI application -- Typer-based interface to the backfill engine.

Provides commands to plan, run, resume, inspect, cancel, and diagnose
chunked backfills, plus a CI check.  Human-readable output goes to *stderr*
via Rich; ``--json`` writes one machine-readable payload per command to
*stdout* so that pipelines can compose cleanly.

Exit codes: 0 success, 1 runtime failure (including a run that did not reach
``completed`` and a failed check), 2 configuration, validation, or policy
error.
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import typer
from rich.console import Console

from backfill_cli.display import display_check_report, display_doctor_report, display_plan_summary, display_status
from backfill_engine.config import load_settings
from backfill_engine.errors import BackfillError, ConfigurationError, PolicyViolationError
from backfill_engine.executor.base import StoreClient
from backfill_engine.logging_config import configure_logging
from backfill_engine.models.run import RunStatus
from backfill_engine.service import BackfillService, RunResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="tidefill",
    help="tidefill - chunked, resumable backfills for ClickHouse",
    no_args_is_help=True,
)
console = Console(stderr=True)

EXIT_RUNTIME = 1
EXIT_CONFIG = 2

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_metrics_file: Path | None = None
_config_file: Path | None = None
_verbose: bool = False
_overrides: dict[str, Any] = {}

# Replaced in tests to run against an in-memory store.
_client_factory: Callable[[], StoreClient] | None = None


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    config: Path | None = typer.Option(
        None,
        "--config",
        help="TOML config file (defaults to ./tidefill.toml when present).",
        envvar="TIDEFILL_CONFIG",
    ),
    state_dir: Path | None = typer.Option(
        None,
        "--state-dir",
        help="Directory holding plans, run checkpoints, and event logs.",
    ),
    schema_file: Path | None = typer.Option(
        None,
        "--schema-file",
        help="YAML schema metadata file; live introspection is used when omitted.",
    ),
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    metrics_file: Path | None = typer.Option(
        None,
        "--metrics-file",
        help="Write metrics events to this file (JSONL).",
        envvar="TIDEFILL_METRICS_FILE",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Global options applied to every command."""
    global _json_output, _metrics_file, _config_file, _verbose, _overrides  # noqa: PLW0603
    _json_output = json_mode
    _metrics_file = metrics_file
    _config_file = config
    _verbose = verbose
    _overrides = {}
    if state_dir is not None:
        _overrides["state_dir"] = str(state_dir)
    if schema_file is not None:
        _overrides["schema_file"] = str(schema_file)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_metrics(event: str, data: dict[str, Any]) -> None:
    """Append a timestamped metrics event to the metrics file, if configured.

    Failures are logged but never propagate.
    """
    if _metrics_file is None:
        return
    record = {
        "event": event,
        "timestamp": datetime.now(UTC).isoformat(),
        "data": data,
    }
    try:
        with _metrics_file.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(record, sort_keys=True, default=str) + "\n")
    except OSError as exc:
        logger.debug("Cannot write metrics to %s: %s", _metrics_file, exc)


def _print_json(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")


def _service(interrupt: threading.Event | None = None) -> BackfillService:
    settings = load_settings(_config_file, _overrides)
    configure_logging(verbose=_verbose, structured=settings.structured_logging)
    return BackfillService(settings, client_factory=_client_factory, interrupt=interrupt)


@contextmanager
def _command(name: str) -> Iterator[None]:
    """Map backfill errors to exit codes and error output."""
    try:
        yield
    except typer.Exit:
        raise
    except BackfillError as exc:
        code = EXIT_CONFIG if isinstance(exc, (ConfigurationError, PolicyViolationError)) else EXIT_RUNTIME
        _emit_metrics(f"{name}.failed", {"error_type": type(exc).__name__, "error": str(exc)})
        if _json_output:
            _print_json({"ok": False, "command": name, "error": str(exc), "error_type": type(exc).__name__})
        else:
            console.print(f"[red]Backfill {name} failed: {exc}[/red]")
        raise typer.Exit(code=code) from exc


@contextmanager
def _interrupt_on_signals() -> Iterator[threading.Event]:
    """Turn the first SIGINT/SIGTERM into a graceful stop at the next chunk boundary."""
    event = threading.Event()

    def _handler(signum: int, frame: object) -> None:
        if event.is_set():
            raise KeyboardInterrupt
        event.set()
        console.print("[yellow]Stopping after the current chunk (interrupt again to abort)...[/yellow]")

    previous: dict[int, Any] = {}
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, _handler)
    except ValueError:
        # Not the main thread; signals stay with their current handlers.
        logger.debug("Signal handlers not installed outside the main thread")
    try:
        yield event
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _finish_run(command: str, result: RunResult) -> None:
    summary = result.summary
    completed = result.run.status is RunStatus.COMPLETED
    _emit_metrics(
        f"{command}.finished",
        {
            "plan_id": summary.plan_id,
            "status": summary.status,
            "noop": result.noop,
            "attempts": summary.attempts,
            "rows_written": summary.rows_written,
            "failed_chunks": summary.failed_chunks,
        },
    )

    if _json_output:
        _print_json(
            {
                "ok": completed,
                "command": command,
                "noop": result.noop,
                "status": summary.model_dump(mode="json"),
            }
        )
    else:
        if result.noop:
            console.print(f"[green]Run for plan {summary.plan_id} already completed; nothing to do.[/green]")
        display_status(console, summary, result.run)
        if not completed:
            console.print(
                f"[yellow]Run ended with status {summary.status}. "
                f"Inspect with: tidefill doctor --plan-id {summary.plan_id}[/yellow]"
            )

    if not completed:
        raise typer.Exit(code=EXIT_RUNTIME)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def plan(
    target: str = typer.Option(..., "--target", help="Table to backfill, as database.table."),
    start: str | None = typer.Option(None, "--from", help="Window start (ISO-8601, inclusive)."),
    end: str | None = typer.Option(None, "--to", help="Window end (ISO-8601, exclusive)."),
    chunk_hours: float | None = typer.Option(None, "--chunk-hours", help="Hours per chunk."),
    time_column: str | None = typer.Option(None, "--time-column", help="Override the time column."),
    force_large_window: bool = typer.Option(
        False,
        "--force-large-window",
        help="Accept a window larger than limits.max_window_hours.",
    ),
    force: bool = typer.Option(False, "--force", help="Replace a different plan stored under the same id."),
) -> None:
    """Build and store a deterministic backfill plan (dry run)."""
    with _command("plan"):
        service = _service()
        result = service.plan(
            target,
            start,
            end,
            chunk_hours=chunk_hours,
            time_column=time_column,
            force_large_window=force_large_window,
            force=force,
        )
        plan_ = result.plan
        _emit_metrics(
            "plan.created",
            {
                "plan_id": plan_.plan_id,
                "target": plan_.target.qualified,
                "chunks": len(plan_.chunks),
                "existed": result.existed,
            },
        )
        if _json_output:
            _print_json(
                {
                    "ok": True,
                    "command": "plan",
                    "plan_id": plan_.plan_id,
                    "existed": result.existed,
                    "plan_path": result.plan_path,
                    "plan": plan_.model_dump(mode="json"),
                }
            )
        else:
            display_plan_summary(console, plan_, existed=result.existed, plan_path=result.plan_path)
            console.print(f"Next: tidefill run --plan-id {plan_.plan_id}")


@app.command()
def run(
    plan_id: str | None = typer.Option(None, "--plan-id", help="Stored plan to execute."),
    target: str | None = typer.Option(None, "--target", help="Plan inline (only without dry-run policy)."),
    start: str | None = typer.Option(None, "--from", help="Inline window start."),
    end: str | None = typer.Option(None, "--to", help="Inline window end."),
    chunk_hours: float | None = typer.Option(None, "--chunk-hours", help="Inline chunk size in hours."),
    time_column: str | None = typer.Option(None, "--time-column", help="Inline time column override."),
    force_large_window: bool = typer.Option(False, "--force-large-window"),
    replay_done: bool = typer.Option(False, "--replay-done", help="Re-execute chunks that already succeeded."),
    replay_failed: bool = typer.Option(False, "--replay-failed", help="Re-execute chunks that exhausted retries."),
    force_overlap: bool = typer.Option(False, "--force-overlap", help="Ignore other active runs on the target."),
    force_compatibility: bool = typer.Option(
        False,
        "--force-compatibility",
        help="Continue a run whose options changed since its last checkpoint.",
    ),
    simulate_fail_chunk: int | None = typer.Option(
        None,
        "--simulate-fail-chunk",
        help="Make this chunk index fail without touching the store.",
        min=0,
    ),
    simulate_fail_count: int | None = typer.Option(
        None,
        "--simulate-fail-count",
        help="How many attempts of the simulated chunk fail (default 1).",
        min=0,
    ),
) -> None:
    """Execute a backfill plan chunk by chunk."""
    with _command("run"), _interrupt_on_signals() as interrupt:
        service = _service(interrupt)
        result = service.run(
            plan_id,
            target=target,
            start=start,
            end=end,
            chunk_hours=chunk_hours,
            time_column=time_column,
            force_large_window=force_large_window,
            replay_done=replay_done,
            replay_failed=replay_failed,
            force_overlap=force_overlap,
            force_compatibility=force_compatibility,
            simulate_fail_chunk=simulate_fail_chunk,
            simulate_fail_count=simulate_fail_count,
        )
        _finish_run("run", result)


@app.command()
def resume(
    plan_id: str = typer.Option(..., "--plan-id", help="Plan whose run to continue."),
    replay_done: bool = typer.Option(False, "--replay-done", help="Also re-execute succeeded chunks."),
    force_overlap: bool = typer.Option(False, "--force-overlap"),
    force_compatibility: bool = typer.Option(False, "--force-compatibility"),
) -> None:
    """Continue a paused or partially failed run; cancelled runs are refused."""
    with _command("resume"), _interrupt_on_signals() as interrupt:
        service = _service(interrupt)
        result = service.resume(
            plan_id,
            replay_done=replay_done,
            force_overlap=force_overlap,
            force_compatibility=force_compatibility,
        )
        _finish_run("resume", result)


@app.command()
def status(
    plan_id: str = typer.Option(..., "--plan-id", help="Plan to inspect."),
) -> None:
    """Show run progress for a plan."""
    with _command("status"):
        service = _service()
        summary = service.status(plan_id)
        if _json_output:
            _print_json({"ok": True, "command": "status", **summary.model_dump(mode="json")})
        else:
            display_status(console, summary, service.store.load_run(plan_id))


@app.command()
def cancel(
    plan_id: str = typer.Option(..., "--plan-id", help="Plan whose run to cancel."),
) -> None:
    """Cancel a run; an executing process stops at its next chunk boundary."""
    with _command("cancel"):
        service = _service()
        summary = service.cancel(plan_id)
        _emit_metrics("cancel.finished", {"plan_id": plan_id, "status": summary.status})
        if _json_output:
            _print_json({"ok": True, "command": "cancel", **summary.model_dump(mode="json")})
        else:
            console.print(f"[yellow]Backfill {plan_id} cancelled.[/yellow]")
            display_status(console, summary)


@app.command()
def doctor(
    plan_id: str = typer.Option(..., "--plan-id", help="Plan to diagnose."),
) -> None:
    """Explain what is wrong with a run and how to fix it."""
    with _command("doctor"):
        report = _service().doctor(plan_id)
        if _json_output:
            _print_json({"ok": report.healthy, "command": "doctor", **report.model_dump(mode="json")})
        else:
            display_doctor_report(console, report)


@app.command()
def check() -> None:
    """CI gate: fail while required backfills are pending or failed."""
    with _command("check"):
        report = _service().check()
        _emit_metrics(
            "check.finished",
            {"ok": report.ok, "findings": [f.code for f in report.findings]},
        )
        if _json_output:
            _print_json({"command": "check", **report.model_dump(mode="json")})
        else:
            display_check_report(console, report)
        if not report.ok:
            raise typer.Exit(code=EXIT_RUNTIME)
