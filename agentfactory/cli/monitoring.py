"""Monitoring commands — status and cancel."""

from __future__ import annotations

import asyncio
import json as json_mod
from typing import Optional

import click
from rich.live import Live

from agentfactory.cli.app import async_cmd, build_service
from agentfactory.cli.formatters import get_console, run_detail, runs_table
from agentfactory.errors import FactoryError

_WATCH_INTERVAL = 1.0


@click.command("status")
@click.argument("run_id", required=False)
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.option("--watch", "-w", is_flag=True, help="Refresh until no run is active")
@click.pass_context
@async_cmd
async def status_cmd(
    ctx: click.Context,
    run_id: Optional[str],
    json_output: bool,
    watch: bool,
) -> None:
    """List factory runs, or show RUN_ID in detail."""
    service = build_service(ctx)
    verbose = ctx.obj.get("verbose", False)

    def render():
        records = service.status(run_id)
        if run_id is not None:
            return run_detail(records[0], verbose=verbose), records
        return runs_table(records), records

    try:
        renderable, records = render()
    except FactoryError as exc:
        raise click.ClickException(f"{exc.code}: {exc.details.message}") from exc

    if json_output or ctx.obj.get("json"):
        click.echo(json_mod.dumps([r.model_dump(mode="json") for r in records], indent=2))
        return

    console = get_console(no_color=ctx.obj.get("no_color", False))
    if not records:
        console.print("No factory runs.")
        return
    if not watch:
        console.print(renderable)
        return

    with Live(renderable, console=console, refresh_per_second=4) as live:
        while any(r.status == "running" for r in records):
            await asyncio.sleep(_WATCH_INTERVAL)
            renderable, records = render()
            live.update(renderable)


@click.command("cancel")
@click.argument("run_id")
@click.pass_context
def cancel_cmd(ctx: click.Context, run_id: str) -> None:
    """Cancel RUN_ID by signalling its child agents."""
    service = build_service(ctx)
    if service.cancel(run_id):
        click.echo(f"Cancellation requested for {run_id}.")
    else:
        click.echo(f"Run {run_id} has no running child agents.")
        ctx.exit(1)
