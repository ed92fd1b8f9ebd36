"""
Factory Service — The Host-Facing Entry Point.

One FactoryService per host process. It owns the configuration, the
observability store, the run registry and the process-wide abort signal,
and exposes the four things a host (CLI, tool registry, embedding app)
actually does with the factory:

    delegate()     one child agent for one task, foreground or background
    run_program()  a confirmed orchestration program
    status()       runs known to this process, plus those persisted on disk
    cancel()       stop a run, in this process or through its pid files
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel

from agentfactory.agents import AgentDefinition, discover_agents
from agentfactory.config import FactoryConfig
from agentfactory.errors import FactoryError, FactoryErrorDetails
from agentfactory.launcher import cancel_task_by_pid_file, spawn_subagent
from agentfactory.models import ExecutionResult, RunRecord, RunStatus
from agentfactory.observability import ObservabilityStore
from agentfactory.program import ConfirmCallback, ProgramExecutor, ProgramOutcome, new_run_id
from agentfactory.registry import RunRegistry, load_persisted, sort_runs
from agentfactory.runtime import Factory, Launcher
from agentfactory.signals import AbortController

logger = structlog.get_logger(__name__)


class DelegateOutcome(BaseModel):
    """Result of a delegate call. ``result`` is None for background runs."""

    run_id: str
    status: RunStatus
    result: Optional[ExecutionResult] = None
    error: Optional[FactoryErrorDetails] = None


def _delegate_error(result: ExecutionResult) -> Optional[FactoryErrorDetails]:
    if result.cancelled or result.exit_code == 0:
        return None
    if result.stop_reason == "error" and not result.messages:
        code = "SPAWN_FAILED"
    else:
        code = "RUNTIME_ERROR"
    message = result.error_message or f"Child agent exited with code {result.exit_code}."
    return FactoryErrorDetails(code=code, message=message, recoverable=True)


class FactoryService:
    """Owns the factory state for one host process."""

    def __init__(
        self,
        config: Optional[FactoryConfig] = None,
        *,
        agents: Optional[dict[str, AgentDefinition]] = None,
        launcher: Launcher = spawn_subagent,
    ) -> None:
        self.config = config or FactoryConfig()
        self.obs = ObservabilityStore(self.config.runs_dir)
        self.registry = RunRegistry(self.config.runs_dir)
        self.agents = agents if agents is not None else discover_agents(self.config.agents_dir)
        self._launcher = launcher
        self._abort = AbortController()
        self._background: dict[str, asyncio.Task[ExecutionResult]] = {}
        self.executor = ProgramExecutor(
            self.config, self.obs, self.registry, abort_signal=self._abort.signal
        )

    # ------------------------------------------------------------------
    # Delegation
    # ------------------------------------------------------------------

    def resolve_agent(self, name: str) -> Optional[AgentDefinition]:
        return self.agents.get(name)

    async def delegate(
        self,
        agent: str,
        task: str,
        *,
        prompt: Optional[str] = None,
        model: Optional[str] = None,
        tools: Optional[list[str]] = None,
        cwd: Optional[str] = None,
        background: bool = False,
        parent_session_path: Optional[str] = None,
    ) -> DelegateOutcome:
        """Run one child agent for one task as its own run.

        Explicit ``prompt``, ``model`` and ``tools`` override the agent
        definition. An unknown agent name is only accepted together with an
        explicit prompt. With ``background=True`` the call returns as soon as
        the child is started; poll ``status()`` for the outcome.
        """
        definition = self.resolve_agent(agent)
        if prompt and prompt.strip():
            system_prompt = prompt
        elif definition is not None:
            system_prompt = definition.prompt
        else:
            raise FactoryError("NOT_FOUND", f"Unknown agent '{agent}'.")

        model_id = model or (definition.model if definition else None) or self.config.default_model
        child_tools = tools if tools is not None else (list(definition.tools) if definition else [])

        run_id = new_run_id()
        factory = Factory(
            run_id,
            self.obs,
            self.config,
            on_task_update=lambda r: self.registry.update_result(run_id, r),
            default_signal=self._abort.signal,
            parent_session_path=parent_session_path,
            session_dir=self.obs.run_dir(run_id),
            launcher=self._launcher,
        )
        # Validation and depth errors raise here, before the run exists.
        handle = factory.spawn(
            agent=agent,
            prompt=system_prompt,
            task=task,
            model=model_id,
            cwd=cwd,
            tools=child_tools,
        )
        self.registry.start(run_id, task.strip(), "delegate", factory)
        self.obs.push(run_id, "info", "delegate:start", {"agent": agent, "task": task.strip()})

        async def finish() -> ExecutionResult:
            try:
                result = await handle
            finally:
                await factory.shutdown(cancel_running=False)
            error = _delegate_error(result)
            if result.cancelled:
                status: RunStatus = "cancelled"
            else:
                status = self.registry.terminal_status(run_id, failed=error is not None)
            self.obs.push(
                run_id,
                "info" if status == "done" else "warning",
                f"delegate:{status}",
                {"exitCode": result.exit_code},
            )
            self.registry.complete(run_id, status, error)
            return result

        if background:
            bg = asyncio.get_running_loop().create_task(finish(), name=f"agentfactory-{run_id}")
            self._background[run_id] = bg
            bg.add_done_callback(lambda _t: self._background.pop(run_id, None))
            logger.info("service.delegate_background", run_id=run_id, agent=agent)
            return DelegateOutcome(run_id=run_id, status="running")

        result = await finish()
        record = self.registry.get(run_id)
        return DelegateOutcome(
            run_id=run_id,
            status=record.status if record is not None else "done",
            result=result,
            error=record.error if record is not None else None,
        )

    # ------------------------------------------------------------------
    # Programs
    # ------------------------------------------------------------------

    async def run_program(
        self,
        task: str,
        code: str,
        confirm: Optional[ConfirmCallback],
        *,
        preflight: Optional[bool] = None,
        parent_session_path: Optional[str] = None,
    ) -> ProgramOutcome:
        return await self.executor.run(
            task,
            code,
            confirm,
            preflight=preflight,
            parent_session_path=parent_session_path,
        )

    # ------------------------------------------------------------------
    # Status and cancellation
    # ------------------------------------------------------------------

    def status(self, run_id: Optional[str] = None) -> list[RunRecord]:
        """Runs known in memory, merged with runs persisted by other processes.

        With *run_id*, returns exactly that run or raises NOT_FOUND.
        """
        merged: dict[str, RunRecord] = {r.run_id: r for r in load_persisted(self.config.runs_dir)}
        for record in self.registry.get_all():
            merged[record.run_id] = record
        if run_id is not None:
            record = merged.get(run_id)
            if record is None:
                raise FactoryError("NOT_FOUND", f"Unknown run '{run_id}'.")
            return [record]
        return sort_runs(list(merged.values()))

    def cancel(self, run_id: str) -> bool:
        """Cancel a running run.

        Runs owned by this process shut down through their factory. For a
        run owned by another process, every live child is signalled through
        its pid file. Returns False when nothing was running.
        """
        if self.registry.cancel(run_id):
            return True
        if self.registry.get(run_id) is not None:
            return False
        return self._cancel_on_disk(run_id)

    def _cancel_on_disk(self, run_id: str) -> bool:
        run_dir: Path = self.config.runs_dir / run_id
        if not run_dir.is_dir():
            return False
        sent = [cancel_task_by_pid_file(pid_file) for pid_file in sorted(run_dir.glob("*.pid"))]
        logger.info("service.cancel_on_disk", run_id=run_id, signalled=sum(sent))
        return any(sent)

    def abort(self, reason: str = "host shutdown") -> None:
        """Signal every child started through this service to stop."""
        self._abort.abort(reason)

    async def abort_all(self, reason: str = "host shutdown") -> None:
        """Cancel every child started through this service and wait for them."""
        self.abort(reason)
        pending = list(self._background.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("service.aborted", reason=reason, background=len(pending))
