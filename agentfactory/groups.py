"""
Concurrency-Group Instrumentation — Making Fan-Out Visible.

Orchestration programs fan work out with the ordinary ``asyncio.gather``.
While a program runs, its ``asyncio`` is a thin module proxy whose
``gather`` goes through the run's GroupInstrumentation. When a gather call
contains TaskHandles, the group is reported to the observability store:

    group:start   {groupId, count, tasks, settled?}
    group:done    {groupId, count}
    group:failed  {groupId, count}

Calls without any TaskHandle are passed to the real ``asyncio.gather``
unchanged, so their results and ordering are identical.

Nothing global is patched. The active instrumentation lives in a ContextVar
set for the duration of one program execution, which keeps concurrent
executions on the same event loop apart.
"""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import itertools
import types
from typing import Any, Iterator, Optional

import structlog

from agentfactory.observability import ObservabilityStore
from agentfactory.runtime import TaskHandle

logger = structlog.get_logger(__name__)

_real_gather = asyncio.gather

_active_groups: contextvars.ContextVar[Optional["GroupInstrumentation"]] = contextvars.ContextVar(
    "agentfactory_active_groups", default=None
)


def active_instrumentation() -> Optional["GroupInstrumentation"]:
    """Return the instrumentation installed for the current context, if any."""
    return _active_groups.get()


class GroupInstrumentation:
    """Reports gather() groups of TaskHandles for one run."""

    def __init__(self, obs: ObservabilityStore, run_id: str) -> None:
        self._obs = obs
        self._run_id = run_id
        self._counter = itertools.count(1)
        self.installs = 0
        self.restores = 0

    def gather(self, *aws: Any, return_exceptions: bool = False) -> "asyncio.Future[list[Any]]":
        """``asyncio.gather`` that reports groups containing TaskHandles."""
        members = [aw for aw in aws if isinstance(aw, TaskHandle)]
        if not members:
            return _real_gather(*aws, return_exceptions=return_exceptions)

        unwrapped = [aw.task if isinstance(aw, TaskHandle) else aw for aw in aws]
        prefix = "group-settled" if return_exceptions else "group"
        group_id = f"{prefix}-{next(self._counter)}"
        start_data: dict[str, Any] = {
            "groupId": group_id,
            "count": len(members),
            "tasks": [m.task_id for m in members],
        }
        if return_exceptions:
            start_data["settled"] = True
        self._obs.push(self._run_id, "info", "group:start", start_data)

        outer = _real_gather(*unwrapped, return_exceptions=return_exceptions)
        outer.add_done_callback(lambda fut: self._on_group_done(group_id, len(members), fut))
        return outer

    def gather_settled(self, *aws: Any) -> "asyncio.Future[list[Any]]":
        """Wait for everything and collect outcomes (results or exceptions)."""
        return self.gather(*aws, return_exceptions=True)

    def _on_group_done(self, group_id: str, count: int, fut: "asyncio.Future[Any]") -> None:
        failed = fut.cancelled() or fut.exception() is not None
        self._obs.push(
            self._run_id,
            "info",
            "group:failed" if failed else "group:done",
            {"groupId": group_id, "count": count},
        )

    @contextlib.contextmanager
    def installed(self) -> Iterator["GroupInstrumentation"]:
        """Make this instrumentation active for the enclosed context."""
        token = _active_groups.set(self)
        self.installs += 1
        try:
            yield self
        finally:
            _active_groups.reset(token)
            self.restores += 1
            logger.debug("groups.restored", run_id=self._run_id)


def instrumented_gather(*aws: Any, return_exceptions: bool = False) -> "asyncio.Future[list[Any]]":
    """Route to the active instrumentation, or straight to asyncio.gather."""
    groups = _active_groups.get()
    if groups is None:
        return _real_gather(*aws, return_exceptions=return_exceptions)
    return groups.gather(*aws, return_exceptions=return_exceptions)


class _AsyncioProxy(types.ModuleType):
    """``asyncio`` as seen by orchestration programs."""

    def __init__(self) -> None:
        super().__init__("asyncio", asyncio.__doc__)
        self.gather = instrumented_gather

    def __getattr__(self, name: str) -> Any:
        return getattr(asyncio, name)

    def __dir__(self) -> list[str]:
        return sorted(set(dir(asyncio)) | {"gather"})


asyncio_proxy = _AsyncioProxy()
