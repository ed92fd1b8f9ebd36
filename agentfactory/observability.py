"""
Observability Store — The Run's Black Box Recorder.

Every run gets a directory under the store root:

    <root>/<run_id>/events.jsonl     append-only event log
    <root>/<run_id>/artifacts/...    named outputs written by programs

Events are kept in memory for the lifetime of the process and mirrored to
disk so that a status view in another process can read them. Nothing is ever
edited or removed once written.

Program stdout routing: while an orchestration program runs, anything it
prints is captured line by line as ``console: ...`` events. The capture is
scoped through a ContextVar so two programs running concurrently on the same
event loop each see their own output land in their own run. ``sys.stdout`` is
replaced by a router only while at least one capture is open.
"""

from __future__ import annotations

import contextlib
import contextvars
import io
import sys
from pathlib import Path
from typing import Any, Iterator, Optional, TextIO

import structlog

from agentfactory.models import EventLevel, ObservabilityEvent

logger = structlog.get_logger(__name__)

_EVENTS_FILE = "events.jsonl"
_ARTIFACTS_DIR = "artifacts"


class ObservabilityStore:
    """Append-only event log and artifact directory, one per run."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._events: dict[str, list[ObservabilityEvent]] = {}

    def run_dir(self, run_id: str) -> Path:
        path = self.root / run_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def push(
        self,
        run_id: str,
        level: EventLevel,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> ObservabilityEvent:
        """Append one event to the run's log."""
        event = ObservabilityEvent(run_id=run_id, level=level, message=message, data=data)
        self._events.setdefault(run_id, []).append(event)

        try:
            with (self.run_dir(run_id) / _EVENTS_FILE).open("a", encoding="utf-8") as fh:
                fh.write(event.model_dump_json() + "\n")
        except (OSError, TypeError, ValueError) as exc:
            # The in-memory copy is authoritative for this process.
            logger.warning("observability.write_failed", run_id=run_id, error=str(exc))

        log_method = {"info": logger.info, "warning": logger.warning, "error": logger.error}[level]
        log_method("observability.event", run_id=run_id, message=message, data=data)
        return event

    def write_artifact(self, run_id: str, relative_path: str, content: str) -> Optional[Path]:
        """Write *content* under the run's artifact directory.

        Returns the resolved path, or None when *relative_path* is empty,
        absolute, or would escape the artifact directory.
        """
        if not relative_path or not relative_path.strip():
            return None
        candidate = Path(relative_path)
        if candidate.is_absolute():
            logger.warning("observability.artifact_rejected", run_id=run_id, path=relative_path)
            return None

        base = (self.run_dir(run_id) / _ARTIFACTS_DIR).resolve()
        target = (base / candidate).resolve()
        try:
            target.relative_to(base)
        except ValueError:
            logger.warning("observability.artifact_rejected", run_id=run_id, path=relative_path)
            return None
        if target == base:
            return None

        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        self.push(run_id, "info", "artifact", {"path": str(target), "bytes": len(content)})
        return target

    def events(self, run_id: str) -> list[ObservabilityEvent]:
        """Return the run's events, falling back to a scan of its log file."""
        if run_id in self._events:
            return list(self._events[run_id])
        return self.read_events(self.root / run_id / _EVENTS_FILE)

    @staticmethod
    def read_events(path: Path) -> list[ObservabilityEvent]:
        """Best-effort scan of an events file; malformed lines are skipped."""
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError:
            return []
        events: list[ObservabilityEvent] = []
        for line in raw.splitlines():
            if not line.strip():
                continue
            try:
                events.append(ObservabilityEvent.model_validate_json(line))
            except ValueError:
                continue
        return events

    @contextlib.contextmanager
    def capture_stdout(self, run_id: str) -> Iterator[None]:
        """Route prints from the current context into ``console:`` events."""
        _acquire_stdout_router()
        writer = _ConsoleWriter(self, run_id)
        token = _console_target.set(writer)
        try:
            yield
        finally:
            _console_target.reset(token)
            writer.flush_partial()
            _release_stdout_router()


# ---------------------------------------------------------------------------
# Program stdout routing
# ---------------------------------------------------------------------------

_console_target: contextvars.ContextVar[Optional["_ConsoleWriter"]] = contextvars.ContextVar(
    "agentfactory_console_target", default=None
)


class _ConsoleWriter:
    """Line-buffers text and pushes each complete line as an event."""

    def __init__(self, store: ObservabilityStore, run_id: str) -> None:
        self._store = store
        self._run_id = run_id
        self._buffer = ""
        # True while an event is being pushed; log output written to stdout
        # during the push must not be captured again.
        self.busy = False

    def write(self, text: str) -> int:
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            self._emit(line)
        return len(text)

    def flush_partial(self) -> None:
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self._emit(line)

    def _emit(self, line: str) -> None:
        self.busy = True
        try:
            self._store.push(self._run_id, "info", f"console: {line}")
        finally:
            self.busy = False


class _StdoutRouter(io.TextIOBase):
    """sys.stdout stand-in that sends writes to the context's writer, if any."""

    def __init__(self, fallback: TextIO) -> None:
        self._fallback = fallback

    @property
    def fallback(self) -> TextIO:
        return self._fallback

    def write(self, text: str) -> int:
        target = _console_target.get()
        if target is not None and not target.busy:
            return target.write(text)
        return self._fallback.write(text)

    def flush(self) -> None:
        if _console_target.get() is None:
            self._fallback.flush()

    def writable(self) -> bool:
        return True

    def fileno(self) -> int:
        return self._fallback.fileno()

    @property
    def encoding(self) -> str:  # type: ignore[override]
        return getattr(self._fallback, "encoding", "utf-8")


_router_users = 0


def _acquire_stdout_router() -> None:
    """Install the router on first use; it passes through outside captured contexts."""
    global _router_users  # noqa: PLW0603
    if not isinstance(sys.stdout, _StdoutRouter):
        sys.stdout = _StdoutRouter(sys.stdout)
    _router_users += 1


def _release_stdout_router() -> None:
    """Restore the original stdout once the last capture has closed."""
    global _router_users  # noqa: PLW0603
    _router_users = max(0, _router_users - 1)
    # Leave sys.stdout alone if someone replaced it after us.
    if _router_users == 0 and isinstance(sys.stdout, _StdoutRouter):
        sys.stdout = sys.stdout.fallback
