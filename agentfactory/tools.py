"""
Factory Tools — The Factory as Seen by a Tool-Calling Agent.

A host agent drives the factory through four tools:

    delegate          one child agent, one task
    factory_program   run an orchestration program (needs confirmation)
    factory_status    list runs, or show one
    factory_cancel    cancel a run

Each tool is a ToolDefinition: a JSON Schema for its parameters plus an async
handler returning text. The schema is exactly what goes into the host model's
``tools`` array, so descriptions are written for the model, not for humans.

Handlers never raise FactoryError to the host; they report it as text so the
model can correct its call.
"""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from agentfactory.config import current_depth
from agentfactory.errors import FactoryError
from agentfactory.models import ExecutionResult, RunRecord
from agentfactory.program import ConfirmCallback
from agentfactory.service import FactoryService

logger = structlog.get_logger(__name__)

_VALID_RISK_LEVELS = frozenset({"low", "medium", "high", "critical"})


@dataclass
class ToolDefinition:
    """A registered tool with its schema, description, and handler."""

    name: str
    description: str
    input_schema: dict[str, Any]          # JSON Schema for tool parameters
    handler: Optional[Callable] = None    # Async callable taking the tool input as kwargs
    risk_level: str = "low"               # "low", "medium", "high", "critical"
    requires_approval: bool = False
    category: str = "factory"
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.risk_level not in _VALID_RISK_LEVELS:
            logger.warning(
                "tool_definition.invalid_risk_level",
                name=self.name,
                risk_level=self.risk_level,
                coerced_to="critical",
            )
            self.risk_level = "critical"

    def to_api_format(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Name-keyed catalog of tools with dispatch."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition, *, allow_override: bool = False) -> None:
        """Register a tool, blocking accidental name collisions by default."""
        if tool.name in self._tools and not allow_override:
            logger.warning("tool_registry.name_collision", name=tool.name)
            raise ValueError(
                f"Tool '{tool.name}' is already registered. "
                "Use allow_override=True for an explicit replacement."
            )
        self._tools[tool.name] = tool
        logger.debug("tool_registry.registered", name=tool.name, risk_level=tool.risk_level)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def get_api_tools(self) -> list[dict[str, Any]]:
        return [t.to_api_format() for t in self._tools.values() if t.enabled]

    async def dispatch(self, name: str, tool_input: dict[str, Any]) -> str:
        """Invoke a tool handler with the model-supplied input."""
        tool = self._tools.get(name)
        if tool is None or not tool.enabled or tool.handler is None:
            return f"Unknown tool '{name}'."
        try:
            inspect.signature(tool.handler).bind(**tool_input)
        except TypeError as exc:
            # Bad argument names from the model.
            return f"Invalid input for '{name}': {exc}"
        return await tool.handler(**tool_input)

    @property
    def count(self) -> int:
        return len(self._tools)


# ---------------------------------------------------------------------------
# Result formatting
# ---------------------------------------------------------------------------


def _format_error(exc: FactoryError) -> str:
    return f"Error [{exc.code}]: {exc.details.message}"


def format_result(result: ExecutionResult) -> str:
    """Render one child result the way a host model reads it."""
    if result.cancelled:
        header = f"{result.agent} ({result.task_id}) was cancelled."
    elif result.exit_code != 0:
        header = f"{result.agent} ({result.task_id}) failed with exit code {result.exit_code}."
    else:
        header = f"{result.agent} ({result.task_id}) finished."
    lines = [header]
    if result.error_message:
        lines.append(f"Error: {result.error_message}")
    lines.append(result.text or "(no output)")
    if result.exit_code != 0 and result.stderr.strip():
        lines.append(f"stderr:\n{result.stderr.strip()}")
    return "\n\n".join(lines)


def format_run(record: RunRecord) -> dict[str, Any]:
    return {
        "runId": record.run_id,
        "kind": record.kind,
        "task": record.task,
        "status": record.status,
        "elapsedSeconds": round(record.elapsed_seconds, 1),
        "results": [
            {
                "taskId": r.task_id,
                "agent": r.agent,
                "exitCode": r.exit_code,
                "cancelled": r.cancelled,
                "turns": r.usage.turns,
            }
            for r in record.results
        ],
        "error": record.error.model_dump() if record.error else None,
    }


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_factory_tools(
    registry: ToolRegistry,
    service: FactoryService,
    confirm: Optional[ConfirmCallback] = None,
) -> bool:
    """Register the factory tools on *registry*.

    Refused (returns False) in a process that is already at the maximum spawn
    depth, since none of the tools could start a child there. ``confirm`` is
    asked before every program run; without it, programs are rejected.
    """
    depth = current_depth()
    if depth >= service.config.max_depth:
        logger.info(
            "factory_tools.skipped",
            depth=depth,
            max_depth=service.config.max_depth,
        )
        return False

    agent_names = sorted(service.agents)

    async def handle_delegate(
        agent: str,
        task: str,
        prompt: Optional[str] = None,
        model: Optional[str] = None,
        tools: Optional[list[str]] = None,
        cwd: Optional[str] = None,
        background: bool = False,
    ) -> str:
        try:
            outcome = await service.delegate(
                agent,
                task,
                prompt=prompt,
                model=model,
                tools=tools,
                cwd=cwd,
                background=background,
            )
        except FactoryError as exc:
            return _format_error(exc)
        if outcome.result is None:
            return (
                f"Started {agent} in the background as run {outcome.run_id}. "
                "Use factory_status to check on it."
            )
        return format_result(outcome.result)

    async def handle_program(task: str, code: str, preflight: Optional[bool] = None) -> str:
        try:
            outcome = await service.run_program(task, code, confirm, preflight=preflight)
        except FactoryError as exc:
            return _format_error(exc)
        payload: dict[str, Any] = {
            "runId": outcome.run_id,
            "status": outcome.status,
            "value": outcome.value,
            "results": [
                {"taskId": r.task_id, "agent": r.agent, "exitCode": r.exit_code, "text": r.text}
                for r in outcome.results
            ],
        }
        if outcome.error is not None:
            payload["error"] = outcome.error.model_dump()
        if outcome.preflight:
            payload["preflight"] = outcome.preflight
        return json.dumps(payload, indent=2)

    async def handle_status(run_id: Optional[str] = None) -> str:
        try:
            records = service.status(run_id)
        except FactoryError as exc:
            return _format_error(exc)
        if not records:
            return "No factory runs."
        return json.dumps([format_run(r) for r in records], indent=2)

    async def handle_cancel(run_id: str) -> str:
        if service.cancel(run_id):
            return f"Cancellation requested for {run_id}."
        return f"Run {run_id} is not running."

    registry.register(
        ToolDefinition(
            name="delegate",
            description=(
                "Hand one focused task to a child agent and get its final answer back. "
                "The child runs as a separate process with its own context window, so "
                "give it everything it needs in 'task'. "
                + (f"Available agents: {', '.join(agent_names)}. " if agent_names else "")
                + "Set background=true to start it and check on it later with factory_status."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "agent": {"type": "string", "description": "Agent name."},
                    "task": {
                        "type": "string",
                        "description": "Complete, self-contained task for the child.",
                    },
                    "prompt": {
                        "type": "string",
                        "description": "System prompt; overrides the agent definition.",
                    },
                    "model": {
                        "type": "string",
                        "description": "Model id, optionally as provider/model.",
                    },
                    "tools": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Tool names the child may use.",
                    },
                    "cwd": {"type": "string", "description": "Working directory for the child."},
                    "background": {"type": "boolean", "default": False},
                },
                "required": ["agent", "task"],
            },
            handler=handle_delegate,
            risk_level="medium",
        )
    )

    registry.register(
        ToolDefinition(
            name="factory_program",
            description=(
                "Run a Python orchestration program that fans work out to many child "
                "agents. The program may use top-level await and sees 'factory', "
                "'asyncio', 'gather', 'gather_settled' and 'log'. Start children with "
                "factory.spawn(agent=..., prompt=..., task=..., model=...), await the "
                "returned handles (or asyncio.gather them) and assign the final value "
                "to 'result'. The user must confirm every program before it runs."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "task": {"type": "string", "description": "What the program is for."},
                    "code": {"type": "string", "description": "Program source."},
                    "preflight": {
                        "type": "boolean",
                        "description": "Type-check the program first (advisory).",
                    },
                },
                "required": ["task", "code"],
            },
            handler=handle_program,
            risk_level="high",
            requires_approval=True,
        )
    )

    registry.register(
        ToolDefinition(
            name="factory_status",
            description="List factory runs with their child results, or show one run by id.",
            input_schema={
                "type": "object",
                "properties": {"run_id": {"type": "string"}},
            },
            handler=handle_status,
        )
    )

    registry.register(
        ToolDefinition(
            name="factory_cancel",
            description="Cancel a running factory run and terminate its child agents.",
            input_schema={
                "type": "object",
                "properties": {"run_id": {"type": "string"}},
                "required": ["run_id"],
            },
            handler=handle_cancel,
            risk_level="medium",
        )
    )

    logger.info("factory_tools.registered", depth=depth, agents=len(agent_names))
    return True
