"""Tests for agentfactory.registry — run lifecycle, cancellation and persistence."""

from __future__ import annotations

import asyncio
import json

import pytest

from agentfactory.errors import FactoryErrorDetails
from agentfactory.models import ExecutionResult
from agentfactory.registry import RunRegistry, load_persisted
from agentfactory.runtime import Factory
from agentfactory.signals import AbortController

from conftest import MODEL, MockLauncher


def _result(task_id: str, exit_code: int = -1, text: str = "") -> ExecutionResult:
    return ExecutionResult(task_id=task_id, agent="a", task="t", exit_code=exit_code, text=text)


class TestLifecycle:
    def test_start_and_get(self, registry) -> None:
        record = registry.start("run-1", "review", "program")
        assert record.status == "running"
        assert registry.get("run-1") is record
        assert registry.get("run-x") is None

    def test_duplicate_start_rejected(self, registry) -> None:
        registry.start("run-1")
        with pytest.raises(ValueError):
            registry.start("run-1")

    def test_update_result_upserts_by_task_id(self, registry) -> None:
        registry.start("run-1")
        registry.update_result("run-1", _result("task-1", text="partial"))
        registry.update_result("run-1", _result("task-2"))
        registry.update_result("run-1", _result("task-1", exit_code=0, text="final"))
        record = registry.get("run-1")
        assert [r.task_id for r in record.results] == ["task-1", "task-2"]
        assert record.results[0].text == "final"

    def test_update_unknown_run_ignored(self, registry) -> None:
        registry.update_result("run-missing", _result("task-1"))
        assert registry.get_all() == []

    def test_complete_is_one_way(self, registry) -> None:
        registry.start("run-1")
        error = FactoryErrorDetails(code="RUNTIME_ERROR", message="boom")
        record = registry.complete("run-1", "failed", error)
        assert record.status == "failed"
        assert record.completed_at is not None
        assert record.error.code == "RUNTIME_ERROR"

        again = registry.complete("run-1", "done")
        assert again.status == "failed"

        registry.update_result("run-1", _result("task-9"))
        assert registry.get("run-1").results == []

    def test_complete_requires_terminal_status(self, registry) -> None:
        registry.start("run-1")
        with pytest.raises(ValueError):
            registry.complete("run-1", "running")

    def test_complete_unknown(self, registry) -> None:
        assert registry.complete("run-missing", "done") is None

    def test_get_all_orders_running_first_then_newest(self, registry) -> None:
        old = registry.start("run-old")
        old.started_at -= 100
        registry.start("run-new")
        registry.start("run-done")
        registry.complete("run-done", "done")
        assert [r.run_id for r in registry.get_all()] == ["run-new", "run-old", "run-done"]
        assert [r.run_id for r in registry.get_active()] == ["run-new", "run-old"]


class TestCancel:
    def test_unknown_or_terminal(self, registry) -> None:
        assert registry.cancel("run-missing") is False
        registry.start("run-1")
        registry.complete("run-1", "done")
        assert registry.cancel("run-1") is False

    @pytest.mark.asyncio
    async def test_cancel_shuts_down_factory(self, registry, obs, config) -> None:
        factory = Factory("run-1", obs, config, launcher=MockLauncher(delay=30))
        registry.start("run-1", "t", "program", factory)
        handle = factory.spawn(agent="a", prompt="p", task="t", model=MODEL)
        await asyncio.sleep(0)

        assert registry.cancel("run-1") is True
        result = await asyncio.wait_for(handle, timeout=5)
        assert result.cancelled
        assert registry.get("run-1").cancel_requested
        assert registry.terminal_status("run-1", failed=True) == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_with_no_active_tasks_keeps_outcome(self, registry, obs, config) -> None:
        factory = Factory("run-1", obs, config, launcher=MockLauncher())
        registry.start("run-1", "t", "program", factory)
        assert registry.cancel("run-1") is True
        await asyncio.sleep(0)
        assert registry.terminal_status("run-1", failed=False) == "done"
        assert registry.terminal_status("run-1", failed=True) == "failed"

    @pytest.mark.asyncio
    async def test_host_abort_of_live_factory_is_cancelled(self, registry, obs, config) -> None:
        host = AbortController()
        factory = Factory(
            "run-1", obs, config, launcher=MockLauncher(delay=30), default_signal=host.signal
        )
        registry.start("run-1", "t", "program", factory)
        handle = factory.spawn(agent="a", prompt="p", task="t", model=MODEL)
        await asyncio.sleep(0)

        host.abort("signal SIGTERM")
        await asyncio.wait_for(handle, timeout=5)
        assert registry.terminal_status("run-1", failed=False) == "cancelled"


class TestPersistence:
    def test_run_json_written_atomically(self, registry, config) -> None:
        registry.start("run-1", "review things")
        registry.update_result("run-1", _result("task-1", exit_code=0, text="ok"))
        run_file = config.runs_dir / "run-1" / "run.json"
        data = json.loads(run_file.read_text())
        assert data["task"] == "review things"
        assert data["results"][0]["text"] == "ok"
        assert list((config.runs_dir / "run-1").glob("*.tmp")) == []

    def test_transcripts_are_not_persisted(self, registry, config) -> None:
        registry.start("run-1")
        result = _result("task-1", exit_code=0, text="ok")
        result.messages.append({"role": "assistant", "content": "ok"})
        registry.update_result("run-1", result)

        data = json.loads((config.runs_dir / "run-1" / "run.json").read_text())
        assert "messages" not in data["results"][0]
        assert data["results"][0]["text"] == "ok"
        assert registry.get("run-1").results[0].messages == [{"role": "assistant", "content": "ok"}]

    def test_in_flight_progress_is_throttled(self, config) -> None:
        registry = RunRegistry(config.runs_dir, persist_interval=60)
        registry.start("run-1")
        run_file = config.runs_dir / "run-1" / "run.json"

        registry.update_result("run-1", _result("task-1", text="partial"))
        assert json.loads(run_file.read_text())["results"] == []
        assert registry.get("run-1").results[0].text == "partial"

        registry.update_result("run-1", _result("task-1", exit_code=0, text="final"))
        assert json.loads(run_file.read_text())["results"][0]["text"] == "final"

    def test_load_persisted(self, registry, config) -> None:
        registry.start("run-1")
        registry.start("run-2")
        registry.complete("run-2", "cancelled")
        (config.runs_dir / "run-bad").mkdir()
        (config.runs_dir / "run-bad" / "run.json").write_text("{broken")

        records = load_persisted(config.runs_dir)
        assert [(r.run_id, r.status) for r in records] == [("run-1", "running"), ("run-2", "cancelled")]

    def test_load_missing_root(self, tmp_path) -> None:
        assert load_persisted(tmp_path / "nothing") == []

    def test_memory_only_registry(self, tmp_path) -> None:
        registry = RunRegistry()
        registry.start("run-1")
        assert list(tmp_path.iterdir()) == []
