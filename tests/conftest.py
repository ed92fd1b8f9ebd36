"""
Shared fixtures for the agentfactory test suite.

Child processes are real: ``fake_agent.py`` is launched with the current
interpreter and speaks the same line-delimited JSON protocol as the agent
CLI, so launcher, runtime and program tests exercise actual process
supervision rather than mocks.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from agentfactory.config import DEPTH_ENV_VAR, FactoryConfig
from agentfactory.launcher import LaunchRequest
from agentfactory.main import configure_logging
from agentfactory.models import ExecutionResult
from agentfactory.observability import ObservabilityStore
from agentfactory.registry import RunRegistry

# Keep structlog away from stdout; program stdout capture would see it.
configure_logging()

FAKE_AGENT = Path(__file__).resolve().parent / "fixtures" / "fake_agent.py"
MODEL = "test-provider/test-model"


@pytest.fixture(autouse=True)
def _top_level_depth(monkeypatch):
    """Every test starts as a top-level coordinator."""
    monkeypatch.delenv(DEPTH_ENV_VAR, raising=False)


@pytest.fixture()
def config(tmp_path) -> FactoryConfig:
    return FactoryConfig(
        agent_command=[sys.executable, str(FAKE_AGENT)],
        max_depth=1,
        poll_interval=0.02,
        kill_grace_seconds=0.5,
        runs_dir=tmp_path / "runs",
        agents_dir=tmp_path / "agents",
        persist_sessions=False,
        preflight_enabled=False,
        _env_file=None,
    )


@pytest.fixture()
def obs(config) -> ObservabilityStore:
    return ObservabilityStore(config.runs_dir)


@pytest.fixture()
def registry(config) -> RunRegistry:
    return RunRegistry(config.runs_dir)


def event_messages(store: ObservabilityStore, run_id: str) -> list[str]:
    return [e.message for e in store.events(run_id)]


class MockLauncher:
    """Launcher stand-in: finishes after *delay* unless the task is aborted first."""

    def __init__(self, delay: float = 0.0, exit_code: int = 0) -> None:
        self.delay = delay
        self.exit_code = exit_code
        self.requests: list[LaunchRequest] = []

    async def __call__(self, request: LaunchRequest) -> ExecutionResult:
        self.requests.append(request)
        result = ExecutionResult(
            task_id=request.task_id,
            agent=request.agent,
            task=request.task,
            model=request.model_id,
        )
        if request.signal is not None:
            sleeper = asyncio.ensure_future(asyncio.sleep(self.delay))
            waiter = asyncio.ensure_future(request.signal.wait())
            done, pending = await asyncio.wait(
                {sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
            for fut in pending:
                fut.cancel()
            if waiter in done:
                result.exit_code = 143
                result.cancelled = True
                result.stop_reason = "cancelled"
                return result
        result.exit_code = self.exit_code
        result.text = f"done: {request.task}"
        return result
