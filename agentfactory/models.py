"""
Orchestration Data Models — The Records That Move Between Processes.

These Pydantic models define what the coordinator knows about its children.
A child process never sees them; they are built up in the coordinator from
the child's line-delimited JSON output.

ExecutionResult describes *what one child did*. RunRecord groups the results
of one top-level run. ObservabilityEvent is one line in a run's event log.
"""

from __future__ import annotations

import time
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from agentfactory.errors import FactoryErrorDetails

RunStatus = Literal["running", "done", "failed", "cancelled"]
EventLevel = Literal["info", "warning", "error"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"done", "failed", "cancelled"})

# Sentinel exit code for a child that has not exited yet.
PENDING_EXIT_CODE = -1


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError, OverflowError):
        return 0


def _as_float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


class UsageStats(BaseModel):
    """Token and cost accumulator for one child agent."""

    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    cost: float = 0.0
    context_tokens: int = 0
    turns: int = 0

    def add_message_usage(self, usage: dict[str, Any]) -> None:
        """Fold the usage block of one assistant message into the totals.

        Fields that are not numbers count as zero.
        """
        self.input += _as_int(usage.get("input"))
        self.output += _as_int(usage.get("output"))
        self.cache_read += _as_int(usage.get("cacheRead"))
        self.cache_write += _as_int(usage.get("cacheWrite"))
        cost = usage.get("cost")
        if isinstance(cost, dict):
            self.cost += _as_float(cost.get("total"))
        # Context occupancy is a gauge, not a counter.
        self.context_tokens = _as_int(usage.get("totalTokens"))


class ExecutionResult(BaseModel):
    """Outcome of one child agent run, built incrementally from its output."""

    task_id: str
    agent: str
    task: str
    exit_code: int = PENDING_EXIT_CODE
    text: str = ""
    messages: list[dict[str, Any]] = Field(default_factory=list)
    stderr: str = ""
    usage: UsageStats = Field(default_factory=UsageStats)
    model: Optional[str] = None
    step: Optional[int] = None
    stop_reason: Optional[str] = None
    error_message: Optional[str] = None
    session_path: Optional[str] = None
    cancelled: bool = False

    @property
    def finished(self) -> bool:
        return self.exit_code != PENDING_EXIT_CODE

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.cancelled

    def snapshot(self) -> ExecutionResult:
        """Copy handed to progress callbacks so they never see later mutation."""
        return self.model_copy(
            update={"messages": list(self.messages), "usage": self.usage.model_copy()}
        )


class RunRecord(BaseModel):
    """One top-level orchestration run and the results of its children."""

    run_id: str
    task: str = ""
    kind: Literal["program", "delegate"] = "program"
    status: RunStatus = "running"
    started_at: float = Field(default_factory=time.time)
    completed_at: Optional[float] = None
    results: list[ExecutionResult] = Field(default_factory=list)
    error: Optional[FactoryErrorDetails] = None
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def elapsed_seconds(self) -> float:
        end = self.completed_at if self.completed_at is not None else time.time()
        return max(0.0, end - self.started_at)


class ObservabilityEvent(BaseModel):
    """A single append-only entry in a run's event log."""

    run_id: str
    timestamp: float = Field(default_factory=time.time)
    level: EventLevel = "info"
    message: str
    data: Optional[dict[str, Any]] = None
