"""Run commands — execute an orchestration program or delegate one task."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Optional

import click
from rich.json import JSON
from rich.syntax import Syntax

from agentfactory.cli.app import async_cmd, build_service
from agentfactory.cli.formatters import get_console, run_detail, status_indicator
from agentfactory.errors import FactoryError


def _abort_on_signals(service) -> None:
    """Ctrl-C / SIGTERM stop the children instead of killing the coordinator."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.abort, f"signal {sig.name}")
        except (NotImplementedError, RuntimeError):
            pass


@click.command("run")
@click.argument("program_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--task", "-t", required=True, help="What the program is for")
@click.option("--yes", "-y", is_flag=True, help="Run without asking for confirmation")
@click.option("--no-preflight", is_flag=True, help="Skip the type check")
@click.pass_context
@async_cmd
async def run_cmd(
    ctx: click.Context,
    program_file: Path,
    task: str,
    yes: bool,
    no_preflight: bool,
) -> None:
    """Run an orchestration program that spawns child agents."""
    service = build_service(ctx)
    console = get_console(no_color=ctx.obj.get("no_color", False))
    code = program_file.read_text(encoding="utf-8")

    def confirm(task_text: str, program: str) -> bool:
        if yes:
            return True
        console.print(f"[bold]Task:[/bold] {task_text}")
        console.print(Syntax(program, "python", line_numbers=True))
        return click.confirm("Run this program?", default=False)

    _abort_on_signals(service)
    try:
        outcome = await service.run_program(
            task, code, confirm, preflight=False if no_preflight else None
        )
    except FactoryError as exc:
        raise click.ClickException(f"{exc.code}: {exc.details.message}") from exc

    if ctx.obj.get("json"):
        click.echo(outcome.model_dump_json(indent=2))
    else:
        if outcome.preflight:
            console.print("[yellow]Type check reported problems:[/yellow]")
            console.print(outcome.preflight, markup=False)
        record = service.registry.get(outcome.run_id)
        if record is not None:
            console.print(run_detail(record, verbose=ctx.obj.get("verbose", False)))
        else:
            console.print(status_indicator(outcome.status) + outcome.run_id)
        if outcome.value is not None:
            console.print(JSON.from_data(outcome.value))

    if outcome.status != "done":
        ctx.exit(1)


@click.command("delegate")
@click.argument("agent")
@click.argument("task")
@click.option("--model", "-m", default=None, help="Model id (provider/model)")
@click.option("--tools", default=None, help="Comma-separated tool names")
@click.option("--prompt", default=None, help="System prompt; overrides the agent definition")
@click.option("--cwd", type=click.Path(file_okay=False), default=None, help="Child working directory")
@click.pass_context
@async_cmd
async def delegate_cmd(
    ctx: click.Context,
    agent: str,
    task: str,
    model: Optional[str],
    tools: Optional[str],
    prompt: Optional[str],
    cwd: Optional[str],
) -> None:
    """Hand TASK to one child AGENT and print its answer."""
    service = build_service(ctx)
    tool_list = [t.strip() for t in tools.split(",") if t.strip()] if tools is not None else None

    _abort_on_signals(service)
    try:
        outcome = await service.delegate(
            agent, task, prompt=prompt, model=model, tools=tool_list, cwd=cwd
        )
    except FactoryError as exc:
        raise click.ClickException(f"{exc.code}: {exc.details.message}") from exc

    result = outcome.result
    if ctx.obj.get("json"):
        click.echo(outcome.model_dump_json(indent=2))
    elif result is not None:
        if result.text:
            click.echo(result.text)
        if outcome.error is not None:
            click.echo(f"{outcome.error.code}: {outcome.error.message}", err=True)
            if result.stderr.strip():
                click.echo(result.stderr.strip(), err=True)

    if outcome.status != "done":
        ctx.exit(1)
