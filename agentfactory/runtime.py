"""
Factory Runtime — The Per-Run Spawning Surface.

A Factory is bound to exactly one run id. Everything a coordinator or an
orchestration program does to its children goes through it:

    handle = factory.spawn(agent=..., prompt=..., task=..., model=...)
    result = await handle
    await factory.shutdown(cancel_running=True)

Key responsibilities:
  - Validate spawn input before any process is started
  - Assign run-scoped sequential task ids (task-1, task-2, ...)
  - Enforce the spawn depth limit carried between processes
  - Combine the caller's, the run's and the host's abort signals per task
  - Track in-flight tasks so shutdown never abandons one mid-flight
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Callable, Generator, Literal, Optional

import structlog

from agentfactory.config import FactoryConfig, current_depth
from agentfactory.errors import FactoryError
from agentfactory.launcher import LaunchRequest, spawn_subagent
from agentfactory.models import ExecutionResult
from agentfactory.observability import ObservabilityStore
from agentfactory.signals import AbortController, AbortSignal

logger = structlog.get_logger(__name__)

TaskUpdateCallback = Callable[[ExecutionResult], None]
Launcher = Callable[[LaunchRequest], Any]


class TaskHandle:
    """Awaitable reference to one in-flight child result.

    The underlying asyncio.Task caches its outcome, so awaiting the same
    handle any number of times (even concurrently) yields the same result.
    """

    __slots__ = ("task_id", "agent", "_task")

    def __init__(self, task_id: str, agent: str, task: asyncio.Task[ExecutionResult]) -> None:
        self.task_id = task_id
        self.agent = agent
        self._task = task

    @property
    def task(self) -> asyncio.Task[ExecutionResult]:
        return self._task

    def done(self) -> bool:
        return self._task.done()

    def result(self) -> ExecutionResult:
        """Return the result of a finished task (raises if still running)."""
        return self._task.result()

    def __await__(self) -> Generator[Any, None, ExecutionResult]:
        return self._task.__await__()

    def __repr__(self) -> str:
        state = "done" if self._task.done() else "running"
        return f"<TaskHandle {self.task_id} agent={self.agent!r} {state}>"


class _Observe:
    """Run-scoped view of the observability store handed to programs."""

    def __init__(self, obs: ObservabilityStore, run_id: str) -> None:
        self._obs = obs
        self._run_id = run_id

    def log(
        self,
        level: Literal["info", "warning", "error"],
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        if level not in ("info", "warning", "error"):
            raise FactoryError("INVALID_INPUT", f"Unknown log level {level!r}.")
        self._obs.push(self._run_id, level, message, data)

    def artifact(self, relative_path: str, content: str) -> Optional[str]:
        path = self._obs.write_artifact(self._run_id, relative_path, content)
        return str(path) if path is not None else None


def _require_text(value: Optional[str], what: str, agent: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise FactoryError("INVALID_INPUT", f"Spawn for '{agent}' requires non-empty {what}.")
    return value


class Factory:
    """Spawns and supervises the child agents of one run."""

    def __init__(
        self,
        run_id: str,
        obs: ObservabilityStore,
        config: FactoryConfig,
        *,
        on_task_update: Optional[TaskUpdateCallback] = None,
        default_signal: Optional[AbortSignal] = None,
        parent_session_path: Optional[str] = None,
        session_dir: Optional[Path] = None,
        depth: Optional[int] = None,
        launcher: Launcher = spawn_subagent,
    ) -> None:
        self.run_id = run_id
        self.observe = _Observe(obs, run_id)
        self._obs = obs
        self._config = config
        self._on_task_update = on_task_update
        self._default_signal = default_signal
        self._parent_session_path = parent_session_path
        self._session_dir = session_dir
        self._depth = current_depth() if depth is None else depth
        self._launcher = launcher

        self._spawn_counter = 0
        self._runtime_abort = AbortController()
        # task_id -> (per-task controller, asyncio task)
        self._active: dict[str, tuple[AbortController, asyncio.Task[ExecutionResult]]] = {}
        self._interrupted = False
        if default_signal is not None:
            default_signal.add_listener(self._on_host_abort)

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def cancel_requested(self) -> bool:
        return self._runtime_abort.signal.aborted

    @property
    def interrupted(self) -> bool:
        """True once an abort from the host or from shutdown() caught children still running."""
        return self._interrupted

    def spawn(
        self,
        agent: str,
        prompt: str,
        task: str,
        model: str,
        cwd: Optional[str] = None,
        tools: Optional[list[str]] = None,
        step: Optional[int] = None,
        signal: Optional[AbortSignal] = None,
    ) -> TaskHandle:
        """Start one child agent and return a handle to its result.

        Raises FactoryError(INVALID_INPUT) for a blank prompt, task or model,
        and FactoryError(DEPTH_EXCEEDED) when the child would be deeper than
        the configured maximum. No process is started in either case.
        """
        _require_text(prompt, "prompt", agent)
        _require_text(task, "task", agent)
        model_id = _require_text(model, "'model'", agent).strip()

        child_depth = self._depth + 1
        if child_depth > self._config.max_depth:
            raise FactoryError(
                "DEPTH_EXCEEDED",
                f"Maximum spawn depth ({self._config.max_depth}) exceeded: "
                f"a child of depth {self._depth} would run at depth {child_depth}.",
            )

        self._spawn_counter += 1
        task_id = f"task-{self._spawn_counter}"
        task_abort = AbortSignal.any([signal, self._default_signal, self._runtime_abort.signal])

        request = LaunchRequest(
            run_id=self.run_id,
            task_id=task_id,
            agent=agent,
            prompt=prompt,
            task=task,
            cwd=cwd or os.getcwd(),
            model_id=model_id,
            obs=self._obs,
            config=self._config,
            tools=list(tools or []),
            step=step,
            signal=task_abort.signal,
            on_progress=self._emit_update,
            parent_session_path=self._parent_session_path,
            session_dir=self._session_dir,
            child_depth=child_depth,
        )

        async def run() -> ExecutionResult:
            try:
                final = await self._launcher(request)
                self._emit_update(final)
                return final
            finally:
                task_abort.dispose()
                self._active.pop(task_id, None)

        aio_task = asyncio.get_running_loop().create_task(run(), name=f"agentfactory-{task_id}")
        self._active[task_id] = (task_abort, aio_task)
        if self._default_signal is not None and self._default_signal.aborted:
            self._interrupted = True

        logger.info(
            "runtime.spawn",
            run_id=self.run_id,
            task_id=task_id,
            agent=agent,
            model=model_id,
            depth=child_depth,
        )
        return TaskHandle(task_id, agent, aio_task)

    async def shutdown(self, cancel_running: bool = True) -> None:
        """Wait for every tracked task to settle, cancelling them first if asked."""
        if cancel_running:
            if self._active:
                self._interrupted = True
            self._runtime_abort.abort("shutdown")
            for controller, _ in list(self._active.values()):
                controller.abort("shutdown")

        pending = [t for _, t in self._active.values()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._default_signal is not None:
            self._default_signal.remove_listener(self._on_host_abort)

        self._obs.push(
            self.run_id,
            "info",
            "runtime:shutdown",
            {"cancelRunning": cancel_running, "pending": len(pending)},
        )
        logger.info(
            "runtime.shutdown",
            run_id=self.run_id,
            cancel_running=cancel_running,
            pending=len(pending),
        )

    def _on_host_abort(self) -> None:
        if self._active:
            self._interrupted = True

    def _emit_update(self, result: ExecutionResult) -> None:
        if self._on_task_update is None:
            return
        try:
            self._on_task_update(result)
        except Exception:
            logger.warning("runtime.task_update_failed", task_id=result.task_id, exc_info=True)
