"""Shared fixtures for CLI tests.

Every test runs in its own working directory with a YAML schema file, a
``tidefill.toml`` that disables backoff sleeps, and an in-memory store client
patched into ``backfill_cli.app``.
"""

from __future__ import annotations

import json
import os
import textwrap
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from click.testing import Result
from typer.testing import CliRunner

from backfill_cli.app import app

SCHEMA = textwrap.dedent(
    """\
    tables:
      - database: analytics
        name: events
        order_by: [event_time, user_id]
        columns:
          event_time: "DateTime64(3, 'UTC')"
          user_id: UInt64
    """
)


class RecordingClient:
    """Store client that records statements and always succeeds."""

    def __init__(self) -> None:
        self.statements: list[str] = []

    def execute(self, sql: str, settings: dict[str, Any] | None = None) -> int | None:
        self.statements.append(sql)
        return 5

    def query(self, sql: str, settings: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        return []

    def close(self) -> None:
        pass


@pytest.fixture()
def workspace(tmp_path, monkeypatch) -> Path:
    """Isolated working directory with schema and config files."""
    for key in list(os.environ):
        if key.startswith(("BACKFILL_", "TIDEFILL_")):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    (tmp_path / "schema.yaml").write_text(SCHEMA, encoding="utf-8")
    (tmp_path / "tidefill.toml").write_text(
        "[backfill.defaults]\nretry_delay_ms = 0\nmax_retry_delay_ms = 0\n",
        encoding="utf-8",
    )
    return tmp_path


@pytest.fixture()
def client(monkeypatch) -> RecordingClient:
    recording = RecordingClient()
    monkeypatch.setattr("backfill_cli.app._client_factory", lambda: recording)
    return recording


@pytest.fixture()
def invoke(workspace, client) -> Callable[..., Result]:
    """Run ``tidefill`` with the workspace's state dir and schema file."""
    runner = CliRunner()

    def _invoke(*args: str, json_mode: bool = True) -> Result:
        global_args = [
            "--state-dir",
            str(workspace / "state"),
            "--schema-file",
            str(workspace / "schema.yaml"),
            "--json" if json_mode else "--no-json",
        ]
        return runner.invoke(app, [*global_args, *args])

    return _invoke


@pytest.fixture()
def payload() -> Callable[[Result], dict[str, Any]]:
    """Decode the JSON document a ``--json`` command wrote to stdout."""

    def _payload(result: Result) -> dict[str, Any]:
        text = result.stdout
        start = text.index("{\n")
        document, _ = json.JSONDecoder().raw_decode(text[start:])
        return document

    return _payload
