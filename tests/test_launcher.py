"""Tests for agentfactory.launcher — detached child processes and output polling."""

from __future__ import annotations

import asyncio
import json
import signal
import sys

import pytest

from agentfactory.launcher import (
    LaunchRequest,
    OutputParser,
    OutputTail,
    build_child_args,
    cancel_task_by_pid_file,
    extract_text,
    model_args,
    normalize_exit_code,
    spawn_subagent,
)
from agentfactory.models import ExecutionResult
from agentfactory.signals import AbortController

from conftest import MODEL, event_messages


def make_request(config, obs, tmp_path, task, **overrides) -> LaunchRequest:
    fields = dict(
        run_id="run-test",
        task_id="task-1",
        agent="worker",
        prompt="You are a test worker.",
        task=task,
        cwd=str(tmp_path),
        model_id=MODEL,
        obs=obs,
        config=config,
    )
    fields.update(overrides)
    return LaunchRequest(**fields)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestModelArgs:
    def test_provider_and_model(self) -> None:
        assert model_args("anthropic/claude-x") == ["--provider", "anthropic", "--model", "claude-x"]

    def test_bare_model(self) -> None:
        assert model_args("gpt-x") == ["--model", "gpt-x"]

    def test_only_first_slash_splits(self) -> None:
        assert model_args("openrouter/meta/llama") == [
            "--provider", "openrouter", "--model", "meta/llama",
        ]


class TestBuildChildArgs:
    def test_no_session_and_tools(self, config, obs, tmp_path) -> None:
        request = make_request(config, obs, tmp_path, "do it", tools=["read", "bash"])
        args = build_child_args(request, None, None)
        assert args[: len(config.agent_command)] == config.agent_command
        assert "--no-session" in args
        assert args[args.index("--tools") + 1] == "read,bash"
        assert "--append-system-prompt" not in args
        assert args[-1] == "do it"

    def test_session_and_prompt_paths(self, config, obs, tmp_path) -> None:
        request = make_request(config, obs, tmp_path, "do it")
        args = build_child_args(request, tmp_path / "s.jsonl", tmp_path / "p.md")
        assert args[args.index("--session") + 1] == str(tmp_path / "s.jsonl")
        assert args[args.index("--append-system-prompt") + 1] == str(tmp_path / "p.md")
        assert "--no-session" not in args
        assert "--tools" not in args


class TestExtractText:
    def test_joins_assistant_text_in_order(self) -> None:
        messages = [
            {"role": "assistant", "content": [{"type": "text", "text": "first"}]},
            {"role": "user", "content": [{"type": "text", "text": "ignored"}]},
            {"role": "assistant", "content": [
                {"type": "thinking", "thinking": "hmm"},
                {"type": "text", "text": "second"},
            ]},
        ]
        assert extract_text(messages) == "first\nsecond"

    def test_skips_blank_blocks(self) -> None:
        messages = [
            {"role": "assistant", "content": [{"type": "text", "text": "   "}]},
            {"role": "assistant", "content": "plain"},
        ]
        assert extract_text(messages) == "plain"

    def test_empty(self) -> None:
        assert extract_text([]) == ""


class TestNormalizeExitCode:
    def test_plain(self) -> None:
        assert normalize_exit_code(0) == 0
        assert normalize_exit_code(3) == 3

    def test_signal_death(self) -> None:
        assert normalize_exit_code(-signal.SIGTERM) == 128 + signal.SIGTERM
        assert normalize_exit_code(-signal.SIGKILL) == 137

    def test_unknown(self) -> None:
        assert normalize_exit_code(None) == 1


class TestOutputParser:
    def _result(self) -> ExecutionResult:
        return ExecutionResult(task_id="task-1", agent="a", task="t")

    def test_non_json_goes_to_stderr_tail(self) -> None:
        result = self._result()
        parser = OutputParser(result, stderr_tail_chars=10)
        parser.process_line("this is not json at all")
        assert result.stderr == "this is not json at all\n"[-10:]
        assert result.messages == []

    def test_ignores_unknown_events(self) -> None:
        result = self._result()
        parser = OutputParser(result)
        parser.process_line(json.dumps({"type": "turn_start"}))
        parser.process_line(json.dumps([1, 2, 3]))
        parser.process_line("")
        assert result.messages == []
        assert result.stderr == ""

    def test_assistant_message_updates_usage_and_text(self) -> None:
        seen: list[ExecutionResult] = []
        result = self._result()
        parser = OutputParser(result, on_progress=seen.append)
        parser.process_line(json.dumps({
            "type": "message_end",
            "message": {
                "role": "assistant",
                "content": [{"type": "text", "text": "hi"}],
                "usage": {"input": 3, "output": 4, "totalTokens": 7, "cost": {"total": 0.5}},
                "stopReason": "stop",
            },
        }))
        assert result.text == "hi"
        assert result.usage.turns == 1
        assert result.usage.input == 3
        assert result.usage.cost == pytest.approx(0.5)
        assert result.usage.context_tokens == 7
        assert result.stop_reason == "stop"
        assert len(seen) == 1
        assert seen[0] is not result

    def test_tool_result_is_recorded_without_turn(self) -> None:
        result = self._result()
        parser = OutputParser(result)
        parser.process_line(json.dumps({
            "type": "tool_result_end",
            "message": {"role": "toolResult", "content": []},
        }))
        assert len(result.messages) == 1
        assert result.usage.turns == 0

    def test_non_numeric_usage_fields_count_as_zero(self) -> None:
        result = self._result()
        parser = OutputParser(result)
        parser.process_line(json.dumps({
            "type": "message_end",
            "message": {
                "role": "assistant",
                "content": [{"type": "text", "text": "odd usage"}],
                "usage": {
                    "input": "lots",
                    "output": 4,
                    "totalTokens": None,
                    "cost": {"total": "x"},
                },
            },
        }))
        assert result.text == "odd usage"
        assert result.usage.turns == 1
        assert result.usage.input == 0
        assert result.usage.output == 4
        assert result.usage.context_tokens == 0
        assert result.usage.cost == 0.0

    def test_failing_progress_callback_is_contained(self) -> None:
        def boom(_r):
            raise RuntimeError("callback failed")

        result = self._result()
        parser = OutputParser(result, on_progress=boom)
        parser.process_line(json.dumps({
            "type": "message_end",
            "message": {"role": "assistant", "content": "ok"},
        }))
        assert result.text == "ok"


class TestOutputTail:
    def test_missing_file(self, tmp_path) -> None:
        assert OutputTail(tmp_path / "absent").read_lines() == []

    def test_incremental_reads_keep_partial_line(self, tmp_path) -> None:
        path = tmp_path / "out.jsonl"
        tail = OutputTail(path)
        path.write_bytes(b"one\ntw")
        assert tail.read_lines() == ["one"]
        with path.open("ab") as fh:
            fh.write(b"o\nthree")
        assert tail.read_lines() == ["two"]
        assert tail.read_lines() == []
        assert tail.drain() == ["three"]

    def test_truncation_restarts(self, tmp_path) -> None:
        path = tmp_path / "out.jsonl"
        tail = OutputTail(path)
        path.write_bytes(b"a long first line\n")
        assert tail.read_lines() == ["a long first line"]
        path.write_bytes(b"new\n")
        assert tail.read_lines() == ["new"]


# ---------------------------------------------------------------------------
# Real child processes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_successful_spawn_collects_text_and_usage(config, obs, tmp_path):
    result = await spawn_subagent(make_request(config, obs, tmp_path, "say:hello;tool:x;say:world"))

    assert result.exit_code == 0
    assert result.succeeded
    assert result.text == "hello\nworld"
    assert result.usage.turns == 2
    assert result.usage.input == 20
    assert result.usage.output == 10
    assert result.usage.cache_read == 4
    assert result.usage.cost == pytest.approx(0.002)
    assert result.usage.context_tokens == 18
    assert len(result.messages) == 3
    assert result.model == MODEL
    assert not result.cancelled

    run_dir = obs.run_dir("run-test")
    assert not (run_dir / "task-1.pid").exists()
    assert (run_dir / "task-1.stdout.jsonl").exists()
    messages = event_messages(obs, "run-test")
    assert messages[0] == "spawn:task-1"
    assert messages[-1] == "exit:task-1"


@pytest.mark.asyncio
async def test_single_assistant_line(config, obs, tmp_path):
    result = await spawn_subagent(make_request(config, obs, tmp_path, "say:only answer"))
    assert result.exit_code == 0
    assert result.text == "only answer"
    assert result.usage.turns == 1


@pytest.mark.asyncio
async def test_nonzero_exit_is_reported_not_raised(config, obs, tmp_path):
    result = await spawn_subagent(
        make_request(config, obs, tmp_path, "say:partial;stderr:boom;exit:3")
    )
    assert result.exit_code == 3
    assert not result.succeeded
    assert not result.cancelled
    assert result.text == "partial"
    assert "boom" in result.stderr


@pytest.mark.asyncio
async def test_malformed_usage_does_not_break_polling(config, obs, tmp_path):
    odd = json.dumps({
        "type": "message_end",
        "message": {
            "role": "assistant",
            "content": [{"type": "text", "text": "first"}],
            "usage": {"input": "lots", "cost": {"total": "x"}},
        },
    })
    result = await spawn_subagent(make_request(config, obs, tmp_path, f"raw:{odd};say:second"))

    assert result.exit_code == 0
    assert result.text == "first\nsecond"
    assert result.usage.turns == 2
    assert result.usage.input == 10
    assert not (obs.run_dir("run-test") / "task-1.pid").exists()


@pytest.mark.asyncio
async def test_child_arguments_and_depth(config, obs, tmp_path):
    workdir = tmp_path / "work"
    workdir.mkdir()
    result = await spawn_subagent(
        make_request(config, obs, tmp_path, "argv", cwd=str(workdir), tools=["read"], child_depth=1)
    )
    info = json.loads(result.text)
    argv = info["argv"]
    assert argv[:4] == ["--mode", "json", "-p", "--provider"]
    assert argv[argv.index("--model") + 1] == "test-model"
    assert "--no-session" in argv
    assert argv[argv.index("--tools") + 1] == "read"
    prompt_path = argv[argv.index("--append-system-prompt") + 1]
    assert prompt_path.endswith("worker.md")
    assert info["cwd"] == str(workdir)
    assert info["depth"] == "1"


@pytest.mark.asyncio
async def test_prompt_file_removed_after_exit(config, obs, tmp_path):
    from pathlib import Path

    result = await spawn_subagent(make_request(config, obs, tmp_path, "argv"))
    argv = json.loads(result.text)["argv"]
    prompt_path = Path(argv[argv.index("--append-system-prompt") + 1])
    assert not prompt_path.exists()
    assert not prompt_path.parent.exists()


@pytest.mark.asyncio
async def test_persisted_session_path_is_passed(config, obs, tmp_path):
    config.persist_sessions = True
    result = await spawn_subagent(make_request(config, obs, tmp_path, "argv"))
    argv = json.loads(result.text)["argv"]
    session = argv[argv.index("--session") + 1]
    assert session.endswith("task-1.jsonl")
    # The fake agent never writes the transcript.
    assert result.session_path is None


@pytest.mark.asyncio
async def test_pre_aborted_signal_terminates_promptly(config, obs, tmp_path):
    controller = AbortController()
    controller.abort("test")
    loop = asyncio.get_running_loop()
    started = loop.time()

    result = await spawn_subagent(
        make_request(config, obs, tmp_path, "sleep:30", signal=controller.signal)
    )

    assert loop.time() - started < 10
    assert result.cancelled
    assert result.stop_reason == "cancelled"
    assert result.error_message == "Subagent aborted."
    assert result.exit_code != 0


@pytest.mark.asyncio
async def test_child_ignoring_sigterm_is_killed_after_grace(config, obs, tmp_path):
    ready = asyncio.Event()
    controller = AbortController()

    def on_progress(snapshot: ExecutionResult) -> None:
        if snapshot.text == "ready":
            ready.set()

    task = asyncio.create_task(spawn_subagent(make_request(
        config,
        obs,
        tmp_path,
        "ignore-term;say:ready;sleep:30",
        signal=controller.signal,
        on_progress=on_progress,
    )))
    await asyncio.wait_for(ready.wait(), timeout=10)
    controller.abort("test")
    result = await asyncio.wait_for(task, timeout=10)

    assert result.cancelled
    assert result.exit_code == 128 + signal.SIGKILL
    assert result.text == "ready"


@pytest.mark.asyncio
async def test_spawn_failure_returns_error_result(config, obs, tmp_path):
    config.agent_command = [str(tmp_path / "no-such-agent")]
    result = await spawn_subagent(make_request(config, obs, tmp_path, "say:x"))
    assert result.exit_code == 1
    assert result.stop_reason == "error"
    assert "Failed to start" in (result.error_message or "")
    assert "spawn_failed:task-1" in event_messages(obs, "run-test")


class TestCancelByPidFile:
    def test_missing_pid_file(self, tmp_path) -> None:
        assert cancel_task_by_pid_file(tmp_path / "task-1.pid") is False

    def test_garbage_pid_file(self, tmp_path) -> None:
        pid_file = tmp_path / "task-1.pid"
        pid_file.write_text("not-a-pid")
        assert cancel_task_by_pid_file(pid_file) is False

    @pytest.mark.asyncio
    async def test_signals_live_process(self, tmp_path) -> None:
        proc = await asyncio.create_subprocess_exec(
            sys.executable, "-c", "import time; time.sleep(30)",
            start_new_session=True,
        )
        pid_file = tmp_path / "task-1.pid"
        pid_file.write_text(str(proc.pid))
        try:
            assert cancel_task_by_pid_file(pid_file) is True
            returncode = await asyncio.wait_for(proc.wait(), timeout=10)
            assert returncode == -signal.SIGTERM
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
