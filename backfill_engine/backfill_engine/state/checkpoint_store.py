"""Durable, file-based storage for plans, run checkpoints, and event logs.

Layout under the state root::

    plans/<plan_id>.json      immutable plan, deterministic JSON
    runs/<plan_id>.json       latest run checkpoint (last write wins)
    events/<plan_id>.ndjson   append-only event log, one JSON object per line

Plan and run files are replaced atomically: the new content goes to a
temporary file in the same directory, is fsynced, and is then renamed over
the old file.  A crash at any point leaves either the old or the new content,
never a torn file.  Every I/O failure surfaces as :class:`CheckpointError`.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from backfill_engine.errors import CheckpointError, PlanAlreadyExistsError
from backfill_engine.models.plan import BackfillPlan
from backfill_engine.models.run import BackfillRun, Event
from backfill_engine.planner.plan_serializer import deserialize_plan, serialize_plan

logger = logging.getLogger(__name__)


def validate_run_against_plan(run: BackfillRun, plan: BackfillPlan) -> None:
    """A run must carry exactly one chunk state per plan chunk, same indexing."""
    if run.plan_id != plan.plan_id:
        raise CheckpointError(f"Run checkpoint belongs to plan {run.plan_id}, expected {plan.plan_id}.")
    if len(run.chunk_states) != len(plan.chunks):
        raise CheckpointError(
            f"Run checkpoint for {plan.plan_id} has {len(run.chunk_states)} chunk states, "
            f"plan has {len(plan.chunks)} chunks."
        )
    for state, chunk in zip(run.chunk_states, plan.chunks):
        if state.index != chunk.index or state.start != chunk.start or state.end != chunk.end:
            raise CheckpointError(
                f"Run checkpoint for {plan.plan_id} does not match plan chunk {chunk.index}."
            )


class FileCheckpointStore:
    """Checkpoint store rooted at a state directory.

    Parameters
    ----------
    state_root:
        Directory holding the ``plans/``, ``runs/`` and ``events/``
        subdirectories.  Created lazily on first write.
    """

    def __init__(self, state_root: Path | str) -> None:
        self._root = Path(state_root)

    @property
    def root(self) -> Path:
        return self._root

    # -- paths -------------------------------------------------------------

    def plan_path(self, plan_id: str) -> Path:
        return self._root / "plans" / f"{plan_id}.json"

    def run_path(self, plan_id: str) -> Path:
        return self._root / "runs" / f"{plan_id}.json"

    def events_path(self, plan_id: str) -> Path:
        return self._root / "events" / f"{plan_id}.ndjson"

    def paths(self, plan_id: str) -> dict[str, str]:
        return {
            "plan": str(self.plan_path(plan_id)),
            "run": str(self.run_path(plan_id)),
            "events": str(self.events_path(plan_id)),
        }

    # -- low level ---------------------------------------------------------

    def _write_atomic(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}_", suffix=".tmp")
        except OSError as exc:
            raise CheckpointError(f"Cannot prepare checkpoint write to {path}: {exc}") from exc

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(temp_path, path)
        except OSError as exc:
            try:
                os.unlink(temp_path)
            except OSError:
                logger.debug("Temporary checkpoint file %s already gone", temp_path)
            raise CheckpointError(f"Cannot write checkpoint {path}: {exc}") from exc
        logger.debug("Wrote checkpoint %s", path)

    @staticmethod
    def _read_text(path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CheckpointError(f"Cannot read checkpoint {path}: {exc}") from exc

    # -- plans -------------------------------------------------------------

    def save_plan(self, plan: BackfillPlan, *, force: bool = False) -> bool:
        """Persist *plan*; return True when an identical plan was already stored.

        Raises
        ------
        PlanAlreadyExistsError
            A different plan is stored under the same id and *force* is off.
        """
        path = self.plan_path(plan.plan_id)
        content = serialize_plan(plan)
        existing = self._read_text(path)

        if existing is not None:
            if existing == content:
                return True
            if not force:
                raise PlanAlreadyExistsError(
                    f"A different plan is already stored as {plan.plan_id}. Re-run with --force to replace it."
                )
            logger.warning("Overwriting stored plan %s", plan.plan_id, extra={"plan_id": plan.plan_id})

        self._write_atomic(path, content)
        return False

    def load_plan(self, plan_id: str) -> BackfillPlan | None:
        path = self.plan_path(plan_id)
        text = self._read_text(path)
        if text is None:
            return None
        try:
            return deserialize_plan(text)
        except (ValidationError, ValueError) as exc:
            raise CheckpointError(f"Stored plan {path} is corrupt: {exc}") from exc

    def plan_exists(self, plan_id: str) -> bool:
        return self.plan_path(plan_id).is_file()

    def list_plan_ids(self) -> list[str]:
        directory = self._root / "plans"
        if not directory.is_dir():
            return []
        try:
            return sorted(p.stem for p in directory.glob("*.json"))
        except OSError as exc:
            raise CheckpointError(f"Cannot list plans in {directory}: {exc}") from exc

    def delete_plan(self, plan_id: str) -> None:
        """Remove a plan with its run checkpoint and events (forced regeneration)."""
        for path in (self.plan_path(plan_id), self.run_path(plan_id), self.events_path(plan_id)):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise CheckpointError(f"Cannot delete {path}: {exc}") from exc

    # -- runs --------------------------------------------------------------

    def load_run(self, plan_id: str, plan: BackfillPlan | None = None) -> BackfillRun | None:
        """Load the run checkpoint, validating it against *plan* when given."""
        path = self.run_path(plan_id)
        text = self._read_text(path)
        if text is None:
            return None
        try:
            run = BackfillRun.model_validate_json(text)
        except (ValidationError, ValueError) as exc:
            raise CheckpointError(f"Run checkpoint {path} is corrupt: {exc}") from exc
        if plan is not None:
            validate_run_against_plan(run, plan)
        return run

    def save_run(self, run: BackfillRun) -> None:
        self._write_atomic(self.run_path(run.plan_id), run.model_dump_json(indent=2))

    def list_runs(self) -> list[BackfillRun]:
        directory = self._root / "runs"
        if not directory.is_dir():
            return []
        runs: list[BackfillRun] = []
        for path in sorted(directory.glob("*.json")):
            run = self.load_run(path.stem)
            if run is not None:
                runs.append(run)
        return runs

    # -- events ------------------------------------------------------------

    def append_event(self, plan_id: str, event: Event) -> None:
        path = self.events_path(plan_id)
        line = event.model_dump_json() + "\n"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as fh:
                fh.write(line)
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            raise CheckpointError(f"Cannot append event to {path}: {exc}") from exc

    def read_events(self, plan_id: str) -> list[Event]:
        path = self.events_path(plan_id)
        text = self._read_text(path)
        if text is None:
            return []
        events: list[Event] = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                events.append(Event.model_validate(json.loads(line)))
            except (ValidationError, ValueError) as exc:
                raise CheckpointError(f"Corrupt event at {path}:{lineno}: {exc}") from exc
        return events
