"""
Run Registry — The Process-Wide Table of Runs.

Holds one RunRecord per run started in this process, keeps each record's
child results current as progress arrives, and exposes cancellation by run
id. Mutations are also written to ``<root>/<run_id>/run.json`` so a status
view in another process can list runs with ``load_persisted()``. Child
transcripts are left out of that file, and in-flight progress is written at
most once per ``persist_interval``.

Status transitions are one-way:

    running ──> done | failed | cancelled

Once a record is terminal, further updates are ignored.
"""

from __future__ import annotations

import asyncio
import tempfile
import time
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Optional

import structlog

from agentfactory.errors import FactoryErrorDetails
from agentfactory.models import ExecutionResult, RunRecord, RunStatus

if TYPE_CHECKING:
    from agentfactory.runtime import Factory

logger = structlog.get_logger(__name__)

_RUN_FILE = "run.json"
# Child transcripts stay in memory and in the session files; run.json only
# carries what a status view needs.
_PERSIST_EXCLUDE = {"results": {"__all__": {"messages"}}}


def sort_runs(runs: list[RunRecord]) -> list[RunRecord]:
    """Running runs first, then most recently started first."""
    return sorted(runs, key=lambda r: (r.status != "running", -r.started_at))


class RunRegistry:
    """Tracks runs, their child results, and the factories that own them."""

    def __init__(self, store_root: Optional[Path] = None, persist_interval: float = 1.0) -> None:
        self._store_root = Path(store_root) if store_root is not None else None
        self._persist_interval = persist_interval
        self._last_persisted: dict[str, float] = {}
        self._runs: dict[str, RunRecord] = {}
        self._factories: dict[str, Factory] = {}
        self._cancel_tasks: dict[str, asyncio.Task[None]] = {}
        # Runs whose cancellation arrived while at least one task was active.
        self._cancelled_active: set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        run_id: str,
        task: str = "",
        kind: Literal["program", "delegate"] = "program",
        factory: Optional[Factory] = None,
    ) -> RunRecord:
        if run_id in self._runs:
            raise ValueError(f"Run {run_id!r} is already registered")
        record = RunRecord(run_id=run_id, task=task, kind=kind)
        self._runs[run_id] = record
        if factory is not None:
            self._factories[run_id] = factory
        self._persist(record)
        logger.info("registry.start", run_id=run_id, kind=kind)
        return record

    def attach_factory(self, run_id: str, factory: Factory) -> None:
        self._factories[run_id] = factory

    def update_result(self, run_id: str, result: ExecutionResult) -> None:
        """Insert or replace a child result, keyed by task id.

        Progress of a still-running child is written to disk at most once per
        ``persist_interval`` seconds; a finished result is written at once.
        """
        record = self._runs.get(run_id)
        if record is None or record.is_terminal:
            return
        for i, existing in enumerate(record.results):
            if existing.task_id == result.task_id:
                record.results[i] = result
                break
        else:
            record.results.append(result)
        last = self._last_persisted.get(run_id, 0.0)
        if result.finished or time.monotonic() - last >= self._persist_interval:
            self._persist(record)

    def complete(
        self,
        run_id: str,
        status: RunStatus,
        error: Optional[FactoryErrorDetails] = None,
    ) -> Optional[RunRecord]:
        """Move a run to a terminal status. Only the first call has effect."""
        record = self._runs.get(run_id)
        if record is None:
            return None
        if status == "running":
            raise ValueError("complete() requires a terminal status")
        if record.is_terminal:
            logger.warning(
                "registry.already_terminal",
                run_id=run_id,
                status=record.status,
                requested=status,
            )
            return record
        record.status = status
        record.error = error
        record.completed_at = time.time()
        self._factories.pop(run_id, None)
        self._cancelled_active.discard(run_id)
        self._persist(record)
        self._last_persisted.pop(run_id, None)
        logger.info(
            "registry.complete",
            run_id=run_id,
            status=status,
            results=len(record.results),
            elapsed=round(record.elapsed_seconds, 2),
        )
        return record

    def cancel(self, run_id: str) -> bool:
        """Request cancellation of a running run.

        Triggers the run's factory shutdown with cancellation in the
        background. Returns False for unknown or already-terminal runs.
        """
        record = self._runs.get(run_id)
        if record is None or record.is_terminal:
            return False
        record.cancel_requested = True
        self._persist(record)

        factory = self._factories.get(run_id)
        if factory is not None:
            if factory.active_count > 0:
                self._cancelled_active.add(run_id)
            task = asyncio.get_running_loop().create_task(
                factory.shutdown(cancel_running=True), name=f"agentfactory-cancel-{run_id}"
            )
            self._cancel_tasks[run_id] = task
            task.add_done_callback(lambda _t: self._cancel_tasks.pop(run_id, None))
        logger.info("registry.cancel", run_id=run_id, has_factory=factory is not None)
        return True

    def terminal_status(self, run_id: str, failed: bool) -> RunStatus:
        """Pick the terminal status for a run whose tasks have all settled.

        Cancellation that interrupted live tasks wins over a failure, since
        the failure is then usually a consequence of the cancellation. That
        covers both ``cancel()`` here and an abort fired by the host.
        """
        factory = self._factories.get(run_id)
        if run_id in self._cancelled_active or (factory is not None and factory.interrupted):
            return "cancelled"
        return "failed" if failed else "done"

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, run_id: str) -> Optional[RunRecord]:
        return self._runs.get(run_id)

    def get_all(self) -> list[RunRecord]:
        return sort_runs(list(self._runs.values()))

    def get_active(self) -> list[RunRecord]:
        return [r for r in self.get_all() if r.status == "running"]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, record: RunRecord) -> None:
        if self._store_root is None:
            return
        run_dir = self._store_root / record.run_id
        try:
            run_dir.mkdir(parents=True, exist_ok=True)
            # Atomic write: temp file in the same dir, then rename.
            with tempfile.NamedTemporaryFile(
                "w", dir=run_dir, suffix=".tmp", delete=False, encoding="utf-8"
            ) as fh:
                fh.write(record.model_dump_json(indent=2, exclude=_PERSIST_EXCLUDE))
                tmp_path = Path(fh.name)
            tmp_path.replace(run_dir / _RUN_FILE)
            self._last_persisted[record.run_id] = time.monotonic()
        except OSError as exc:
            logger.warning("registry.persist_failed", run_id=record.run_id, error=str(exc))


def load_persisted(root: Path) -> list[RunRecord]:
    """Read every ``run.json`` under *root*; unreadable files are skipped."""
    records: list[RunRecord] = []
    root = Path(root)
    if not root.exists():
        return records
    for path in root.glob(f"*/{_RUN_FILE}"):
        try:
            records.append(RunRecord.model_validate_json(path.read_text(encoding="utf-8")))
        except (OSError, ValueError) as exc:
            logger.debug("registry.load_skipped", path=str(path), error=str(exc))
    return sort_runs(records)
