"""
Process Launcher — One Detached Child Agent per Task.

The launcher starts a child agent process in its own OS session, pointed at
a file rather than a pipe:

    <session_dir>/<task_id>.stdout.jsonl   child stdout + stderr
    <session_dir>/<task_id>.pid            child pid, removed on exit
    <session_dir>/<task_id>.jsonl          transcript (when sessions persist)

The coordinator never holds a long-lived descriptor on the output file. It
re-opens the file on every poll tick, reads only the bytes written since the
previous tick, and parses complete lines as JSON events. A child therefore
keeps running (and keeps writing) even if the coordinator dies, and anything
that can read the files can pick up where the coordinator left off.

Two event shapes are understood:

    {"type": "message_end", "message": {...}}       assistant or user message
    {"type": "tool_result_end", "message": {...}}   tool result

Anything else, including non-JSON noise the child writes to stderr, is
skipped for transcript purposes.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import shutil
import signal
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import structlog

from agentfactory.config import DEPTH_ENV_VAR, FactoryConfig, current_depth
from agentfactory.models import ExecutionResult
from agentfactory.observability import ObservabilityStore
from agentfactory.signals import AbortSignal

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[ExecutionResult], None]

_SAFE_NAME_RE = re.compile(r"[^\w.-]+")

PARENT_SESSION_HINT = (
    "\n\nParent conversation session: {path}\n"
    "Use search_thread to explore parent context if you need background on "
    "what led to this task."
)


@dataclass
class LaunchRequest:
    """Everything needed to start and supervise one child agent."""

    run_id: str
    task_id: str
    agent: str
    prompt: str
    task: str
    cwd: str
    model_id: str
    obs: ObservabilityStore
    config: FactoryConfig
    tools: list[str] = field(default_factory=list)
    step: Optional[int] = None
    signal: Optional[AbortSignal] = None
    on_progress: Optional[ProgressCallback] = None
    parent_session_path: Optional[str] = None
    session_dir: Optional[Path] = None
    child_depth: Optional[int] = None


# ---------------------------------------------------------------------------
# Argument building
# ---------------------------------------------------------------------------


def model_args(model_id: str) -> list[str]:
    """Split ``provider/model`` into separate flags; the CLI needs both."""
    if "/" in model_id:
        provider, _, model = model_id.partition("/")
        return ["--provider", provider, "--model", model]
    return ["--model", model_id]


def build_child_args(
    request: LaunchRequest,
    session_path: Optional[Path],
    prompt_path: Optional[Path],
) -> list[str]:
    """Build the full argv for the child agent process."""
    args = [*request.config.agent_command, "--mode", "json", "-p", *model_args(request.model_id)]
    if session_path is not None:
        args.extend(["--session", str(session_path)])
    else:
        args.append("--no-session")
    if request.tools:
        args.extend(["--tools", ",".join(request.tools)])
    if prompt_path is not None:
        args.extend(["--append-system-prompt", str(prompt_path)])
    args.append(request.task)
    return args


def _write_prompt_file(name: str, prompt: str) -> tuple[Path, Path]:
    """Write the system prompt to a private temp file. Returns (dir, file)."""
    tmp_dir = Path(tempfile.mkdtemp(prefix="agentfactory-prompt-"))
    safe_name = _SAFE_NAME_RE.sub("_", name) or "agent"
    prompt_path = tmp_dir / f"{safe_name}.md"
    fd = os.open(prompt_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(prompt)
    return tmp_dir, prompt_path


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------


def extract_text(messages: list[dict[str, Any]]) -> str:
    """Concatenate every non-blank assistant text block, in emission order."""
    parts: list[str] = []
    for msg in messages:
        if msg.get("role") != "assistant":
            continue
        content = msg.get("content")
        if isinstance(content, str):
            if content.strip():
                parts.append(content)
            continue
        if not isinstance(content, list):
            continue
        for block in content:
            if (
                isinstance(block, dict)
                and block.get("type") == "text"
                and isinstance(block.get("text"), str)
                and block["text"].strip()
            ):
                parts.append(block["text"])
    return "\n".join(parts).strip()


class OutputParser:
    """Folds child output lines into an in-progress ExecutionResult."""

    def __init__(
        self,
        result: ExecutionResult,
        on_progress: Optional[ProgressCallback] = None,
        stderr_tail_chars: int = 4000,
    ) -> None:
        self.result = result
        self._on_progress = on_progress
        self._stderr_tail_chars = stderr_tail_chars

    def process_line(self, line: str) -> None:
        if not line.strip():
            return
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            self._append_stderr(line)
            return
        if not isinstance(parsed, dict):
            return

        event_type = parsed.get("type")
        message = parsed.get("message")
        if not isinstance(message, dict):
            return

        if event_type == "message_end":
            self.result.messages.append(message)
            if message.get("role") == "assistant":
                self._apply_assistant(message)
            self._notify()
        elif event_type == "tool_result_end":
            self.result.messages.append(message)
            self._notify()

    def _apply_assistant(self, message: dict[str, Any]) -> None:
        self.result.usage.turns += 1
        usage = message.get("usage")
        if isinstance(usage, dict):
            self.result.usage.add_message_usage(usage)
        if message.get("stopReason"):
            self.result.stop_reason = str(message["stopReason"])
        if message.get("errorMessage"):
            self.result.error_message = str(message["errorMessage"])
        self.result.text = extract_text(self.result.messages)

    def _append_stderr(self, line: str) -> None:
        if self._stderr_tail_chars <= 0:
            return
        combined = self.result.stderr + line.rstrip("\r") + "\n"
        self.result.stderr = combined[-self._stderr_tail_chars:]

    def _notify(self) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(self.result.snapshot())
        except Exception:
            logger.warning(
                "launcher.progress_callback_failed",
                task_id=self.result.task_id,
                exc_info=True,
            )


class OutputTail:
    """Incremental reader over a file that another process is appending to.

    Only a byte offset and the trailing partial line are kept between reads;
    the file is re-opened on every call so a briefly missing or replaced file
    is tolerated.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.offset = 0
        self._partial = b""

    def read_lines(self) -> list[str]:
        """Return complete lines written since the previous call."""
        try:
            with self.path.open("rb") as fh:
                size = os.fstat(fh.fileno()).st_size
                if size < self.offset:
                    # Truncated or replaced underneath us; start over.
                    self.offset = 0
                    self._partial = b""
                if size == self.offset:
                    return []
                fh.seek(self.offset)
                chunk = fh.read(size - self.offset)
        except OSError:
            return []
        self.offset += len(chunk)
        data = self._partial + chunk
        *lines, self._partial = data.split(b"\n")
        return [line.decode("utf-8", errors="replace") for line in lines]

    def drain(self) -> list[str]:
        """Read everything left, including an unterminated final line."""
        lines = self.read_lines()
        if self._partial:
            lines.append(self._partial.decode("utf-8", errors="replace"))
            self._partial = b""
        return lines


# ---------------------------------------------------------------------------
# Process control
# ---------------------------------------------------------------------------


def _signal_process_group(pid: int, sig: int) -> bool:
    """Signal the child's whole process group (it leads its own session)."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(pid, sig)
        else:
            os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.warning("launcher.signal_denied", pid=pid, signal=sig)
        return False


def normalize_exit_code(returncode: Optional[int]) -> int:
    """Map a signal death (negative returncode) to the shell's 128+N form."""
    if returncode is None:
        return 1
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


def cancel_task_by_pid_file(pid_path: Path, sig: int = signal.SIGTERM) -> bool:
    """Signal a task's process using its pid sidecar file.

    Used by tooling outside the coordinator. Returns False (never raises) when
    the pid file does not exist yet, is unreadable, or the process is gone.
    """
    try:
        raw = Path(pid_path).read_text(encoding="utf-8").strip()
        pid = int(raw)
    except (OSError, ValueError):
        return False
    if pid <= 0:
        return False
    sent = _signal_process_group(pid, sig)
    logger.info("launcher.cancel_by_pid", pid=pid, pid_file=str(pid_path), sent=sent)
    return sent


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.debug("launcher.unlink_failed", path=str(path), error=str(exc))


# ---------------------------------------------------------------------------
# Launch
# ---------------------------------------------------------------------------


async def spawn_subagent(request: LaunchRequest) -> ExecutionResult:
    """Run one child agent to completion and return its ExecutionResult.

    Per-child failures (non-zero exit, spawn failure, cancellation) are
    reported in the result rather than raised.
    """
    cfg = request.config
    request.obs.push(
        request.run_id,
        "info",
        f"spawn:{request.task_id}",
        {"agent": request.agent, "model": request.model_id, "tools": request.tools},
    )

    output_dir = Path(request.session_dir) if request.session_dir else request.obs.run_dir(request.run_id)
    output_dir.mkdir(parents=True, exist_ok=True)
    stdout_path = output_dir / f"{request.task_id}.stdout.jsonl"
    pid_path = output_dir / f"{request.task_id}.pid"
    session_path = output_dir / f"{request.task_id}.jsonl" if cfg.persist_sessions else None

    result = ExecutionResult(
        task_id=request.task_id,
        agent=request.agent,
        task=request.task,
        model=request.model_id,
        step=request.step,
    )
    parser = OutputParser(result, request.on_progress, cfg.stderr_tail_chars)

    prompt = request.prompt.strip()
    if request.parent_session_path and Path(request.parent_session_path).exists():
        prompt += PARENT_SESSION_HINT.format(path=request.parent_session_path)

    tmp_dir: Optional[Path] = None
    prompt_path: Optional[Path] = None
    try:
        if prompt:
            tmp_dir, prompt_path = _write_prompt_file(request.agent, prompt)
        argv = build_child_args(request, session_path, prompt_path)
        child_depth = request.child_depth if request.child_depth is not None else current_depth() + 1
        env = {**os.environ, DEPTH_ENV_VAR: str(child_depth)}

        stdout_fd = os.open(stdout_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=request.cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout_fd,
                stderr=stdout_fd,
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            logger.error(
                "launcher.spawn_failed",
                task_id=request.task_id,
                command=argv[0],
                error=str(exc),
            )
            result.exit_code = 1
            result.stop_reason = "error"
            result.error_message = f"Failed to start {argv[0]!r}: {exc}"
            request.obs.push(
                request.run_id, "error", f"spawn_failed:{request.task_id}", {"error": str(exc)}
            )
            return result
        finally:
            # The child holds its own copy; the parent never reads through it.
            os.close(stdout_fd)

        pid_path.write_text(str(proc.pid), encoding="utf-8")
        logger.info(
            "launcher.started",
            task_id=request.task_id,
            pid=proc.pid,
            depth=child_depth,
            output=str(stdout_path),
        )

        returncode, aborted = await _supervise(proc, request, parser, OutputTail(stdout_path))
    finally:
        _unlink_quietly(pid_path)
        if tmp_dir is not None:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    result.exit_code = normalize_exit_code(returncode)
    result.text = extract_text(result.messages)
    if session_path is not None and session_path.exists():
        result.session_path = str(session_path)
    if aborted:
        result.cancelled = True
        result.stop_reason = "cancelled"
        result.error_message = result.error_message or "Subagent aborted."

    request.obs.push(
        request.run_id,
        "info" if result.succeeded else "warning",
        f"exit:{request.task_id}",
        {"exitCode": result.exit_code, "cancelled": result.cancelled, "turns": result.usage.turns},
    )
    logger.info(
        "launcher.exited",
        task_id=request.task_id,
        exit_code=result.exit_code,
        cancelled=result.cancelled,
        turns=result.usage.turns,
    )
    return result


async def _supervise(
    proc: asyncio.subprocess.Process,
    request: LaunchRequest,
    parser: OutputParser,
    tail: OutputTail,
) -> tuple[Optional[int], bool]:
    """Poll output until the child exits, honouring the abort signal."""
    loop = asyncio.get_running_loop()
    aborted = False
    kill_timer: Optional[asyncio.TimerHandle] = None

    def force_kill() -> None:
        if proc.returncode is None:
            logger.warning("launcher.force_kill", task_id=request.task_id, pid=proc.pid)
            _signal_process_group(proc.pid, signal.SIGKILL)

    def terminate() -> None:
        nonlocal aborted, kill_timer
        if aborted:
            return
        aborted = True
        logger.info("launcher.terminate", task_id=request.task_id, pid=proc.pid)
        if proc.returncode is None:
            _signal_process_group(proc.pid, signal.SIGTERM)
            kill_timer = loop.call_later(request.config.kill_grace_seconds, force_kill)

    async def poll() -> None:
        while True:
            await asyncio.sleep(request.config.poll_interval)
            for line in tail.read_lines():
                parser.process_line(line)

    if request.signal is not None:
        if request.signal.aborted:
            terminate()
        else:
            request.signal.add_listener(terminate)

    poller = asyncio.create_task(poll(), name=f"agentfactory-poll-{request.task_id}")
    try:
        returncode = await proc.wait()
    finally:
        poller.cancel()
        try:
            await poller
        except asyncio.CancelledError:
            pass
        if kill_timer is not None:
            kill_timer.cancel()
        if request.signal is not None:
            request.signal.remove_listener(terminate)

    for line in tail.drain():
        parser.process_line(line)
    return returncode, aborted
