"""Agent commands — list the agent definitions available to delegate."""

from __future__ import annotations

import json as json_mod

import click

from agentfactory.cli.app import build_service
from agentfactory.cli.formatters import build_table, get_console


@click.command("agents")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
def agents_cmd(ctx: click.Context, json_output: bool) -> None:
    """List agent definitions."""
    service = build_service(ctx)
    agents = sorted(service.agents.values(), key=lambda a: a.name)

    if json_output or ctx.obj.get("json"):
        click.echo(json_mod.dumps([
            {
                "name": a.name,
                "description": a.description,
                "model": a.model,
                "tools": a.tools,
                "file": str(a.source_file) if a.source_file else None,
            }
            for a in agents
        ], indent=2))
        return

    if not agents:
        click.echo(f"No agent definitions in {service.config.agents_dir}.")
        return

    rows = [[a.name, a.model or "-", ", ".join(a.tools) or "-", a.description] for a in agents]
    console = get_console(no_color=ctx.obj.get("no_color", False))
    console.print(build_table("Agents", ["Name", "Model", "Tools", "Description"], rows))
