"""
Program Executor — Running User Orchestration Code.

An orchestration program is plain Python with top-level ``await`` allowed.
It runs in a fresh namespace whose only orchestration entry point is the
run's Factory:

    reviews = [factory.spawn(agent="reviewer", prompt=p, task=t, model=m) for t in files]
    outcomes = await asyncio.gather(*reviews, return_exceptions=True)
    result = {"failed": [o.task_id for o in outcomes if o.exit_code != 0]}

The value bound to ``result`` (or returned by an ``async def main()``) is the
program's output, normalised to JSON-compatible data.

Safety gate, in order:
  1. Parameter validation (non-blank task and code, code must compile)
  2. Explicit confirmation (a program may spawn any number of children)
  3. Optional preflight type check against program_env.pyi (advisory only)
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import inspect
import json
import shutil
import tempfile
import uuid
from pathlib import Path
from types import CodeType
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from pydantic import BaseModel, Field

from agentfactory.config import FactoryConfig
from agentfactory.errors import FactoryError, FactoryErrorDetails
from agentfactory.groups import GroupInstrumentation, asyncio_proxy
from agentfactory.models import ExecutionResult, RunStatus
from agentfactory.observability import ObservabilityStore
from agentfactory.registry import RunRegistry
from agentfactory.runtime import Factory
from agentfactory.signals import AbortSignal

logger = structlog.get_logger(__name__)

PROGRAM_ENV_PATH = Path(__file__).resolve().parent / "program_env.pyi"
PROGRAM_FILENAME = "<factory-program>"
PREFLIGHT_TIMEOUT_SECONDS = 60.0

ConfirmCallback = Callable[[str, str], Union[bool, Awaitable[bool]]]


class ProgramParams(BaseModel):
    task: str
    code: str


class ProgramOutcome(BaseModel):
    """What a finished program run reports back to its caller."""

    run_id: str
    status: RunStatus
    value: Any = None
    error: Optional[FactoryErrorDetails] = None
    results: list[ExecutionResult] = Field(default_factory=list)
    preflight: Optional[str] = None


def new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


def validate_params(task: Any, code: Any) -> ProgramParams:
    """Reject blank task descriptions and blank program code."""
    if not isinstance(task, str) or not task.strip():
        raise FactoryError("INVALID_INPUT", "Program run requires a non-empty 'task'.")
    if not isinstance(code, str) or not code.strip():
        raise FactoryError("INVALID_INPUT", "Program run requires non-empty 'code'.")
    return ProgramParams(task=task.strip(), code=code)


def prepare_program(code: str) -> CodeType:
    """Compile program source, allowing top-level await."""
    if not code.strip():
        raise FactoryError("INVALID_INPUT", "Program code is empty.")
    try:
        return compile(
            code,
            PROGRAM_FILENAME,
            "exec",
            flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
            dont_inherit=True,
        )
    except SyntaxError as exc:
        raise FactoryError(
            "INVALID_INPUT",
            f"Program does not compile: {exc.msg} (line {exc.lineno})",
        ) from exc


# ---------------------------------------------------------------------------
# Preflight type check
# ---------------------------------------------------------------------------


async def preflight_typecheck(code: str, config: FactoryConfig) -> Optional[str]:
    """Type-check *code* against program_env.pyi.

    The configured command is run with the program path appended, from the
    directory holding the program and its stub. Returns None when the program
    is clean, when the checker is not installed, or when the check itself
    cannot run. Otherwise returns the diagnostics, prefixed with the path
    where the checked source was kept.
    """
    tmp_dir = Path(tempfile.mkdtemp(prefix="agentfactory-typecheck-"))
    program_path = tmp_dir / "program.py"
    keep = False
    try:
        program_path.write_text(f"from program_env import *\n{code}", encoding="utf-8")
        shutil.copyfile(PROGRAM_ENV_PATH, tmp_dir / "program_env.pyi")

        proc = await asyncio.create_subprocess_exec(
            *config.typecheck_command,
            str(program_path),
            cwd=str(tmp_dir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=PREFLIGHT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            logger.warning("program.preflight_timeout", timeout=PREFLIGHT_TIMEOUT_SECONDS)
            return None

        if proc.returncode == 0:
            return None

        output = stdout.decode("utf-8", errors="replace")
        errors = "\n".join(line for line in output.splitlines() if ": error:" in line).strip()
        details = errors or output.strip()
        if not details:
            return None
        keep = True
        return f"Program source preserved at: {program_path}\n{details}"
    except (OSError, ValueError) as exc:
        # A missing or broken checker never blocks a program.
        logger.debug("program.preflight_unavailable", error=str(exc))
        return None
    finally:
        if not keep:
            shutil.rmtree(tmp_dir, ignore_errors=True)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _program_import(name, globals=None, locals=None, fromlist=(), level=0):
    if name == "asyncio" and level == 0:
        return asyncio_proxy
    return builtins.__import__(name, globals, locals, fromlist, level)


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    return str(value)


def to_json_value(value: Any) -> Any:
    """Normalise a program's output to plain JSON data."""
    return json.loads(json.dumps(value, default=_json_default))


def build_namespace(factory: Factory, groups: GroupInstrumentation) -> dict[str, Any]:
    program_builtins = dict(vars(builtins))
    program_builtins["__import__"] = _program_import
    return {
        "__name__": "__factory_program__",
        "__builtins__": program_builtins,
        "factory": factory,
        "asyncio": asyncio_proxy,
        "gather": groups.gather,
        "gather_settled": groups.gather_settled,
        "log": factory.observe.log,
    }


async def execute_program(
    program: Union[str, CodeType],
    factory: Factory,
    groups: GroupInstrumentation,
    obs: ObservabilityStore,
) -> Any:
    """Run a program against *factory* and return its JSON-compatible output.

    Exceptions raised by the program propagate unchanged.
    """
    code_obj = prepare_program(program) if isinstance(program, str) else program
    namespace = build_namespace(factory, groups)

    with groups.installed(), obs.capture_stdout(factory.run_id):
        pending = eval(code_obj, namespace)  # noqa: S307 - confirmed user program
        if inspect.isawaitable(pending):
            await pending
        if "result" in namespace:
            value = namespace["result"]
        elif callable(namespace.get("main")):
            value = namespace["main"]()
        else:
            value = None
        if inspect.isawaitable(value):
            value = await value

    return to_json_value(value)


async def _confirm(confirm: Optional[ConfirmCallback], params: ProgramParams) -> bool:
    if confirm is None:
        return False
    answer = confirm(params.task, params.code)
    if inspect.isawaitable(answer):
        answer = await answer
    return bool(answer)


class ProgramExecutor:
    """Runs confirmed orchestration programs as registry-tracked runs."""

    def __init__(
        self,
        config: FactoryConfig,
        obs: ObservabilityStore,
        registry: RunRegistry,
        abort_signal: Optional[AbortSignal] = None,
    ) -> None:
        self._config = config
        self._obs = obs
        self._registry = registry
        self._abort_signal = abort_signal

    async def run(
        self,
        task: str,
        code: str,
        confirm: Optional[ConfirmCallback],
        *,
        preflight: Optional[bool] = None,
        parent_session_path: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> ProgramOutcome:
        """Validate, confirm, preflight and execute one program.

        Raises FactoryError for invalid parameters and for a declined
        confirmation; no run is registered in either case. Everything after
        that is reported through the returned ProgramOutcome.
        """
        params = validate_params(task, code)
        code_obj = prepare_program(params.code)

        if not await _confirm(confirm, params):
            logger.info("program.confirmation_rejected", task=params.task)
            raise FactoryError("CONFIRMATION_REJECTED", "Program execution was not confirmed.")

        diagnostic: Optional[str] = None
        run_preflight = self._config.preflight_enabled if preflight is None else preflight
        if run_preflight:
            diagnostic = await preflight_typecheck(params.code, self._config)

        run_id = run_id or new_run_id()
        factory = Factory(
            run_id,
            self._obs,
            self._config,
            on_task_update=lambda r: self._registry.update_result(run_id, r),
            default_signal=self._abort_signal,
            parent_session_path=parent_session_path,
            session_dir=self._obs.run_dir(run_id),
        )
        self._registry.start(run_id, params.task, "program", factory)
        self._obs.push(run_id, "info", "program:start", {"task": params.task})
        if diagnostic:
            self._obs.push(run_id, "warning", "preflight:typecheck", {"diagnostic": diagnostic})

        groups = GroupInstrumentation(self._obs, run_id)
        value: Any = None
        error: Optional[FactoryErrorDetails] = None
        try:
            value = await execute_program(code_obj, factory, groups, self._obs)
        except FactoryError as exc:
            error = exc.details
        except Exception as exc:
            logger.error("program.failed", run_id=run_id, error=str(exc), exc_info=True)
            error = FactoryErrorDetails(
                code="RUNTIME_ERROR",
                message=f"{type(exc).__name__}: {exc}",
                recoverable=False,
            )
        finally:
            # Spawns the program never awaited still settle before the run ends.
            await factory.shutdown(cancel_running=False)

        status = self._registry.terminal_status(run_id, failed=error is not None)
        if error is not None:
            self._obs.push(run_id, "error", "program:failed", error.model_dump())
        else:
            self._obs.push(run_id, "info", "program:done")
        record = self._registry.complete(run_id, status, error)

        return ProgramOutcome(
            run_id=run_id,
            status=status,
            value=value if error is None else None,
            error=error,
            results=list(record.results) if record is not None else [],
            preflight=diagnostic,
        )
