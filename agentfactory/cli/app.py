"""CLI application — Click-based command hierarchy for agentfactory.

The main CLI group and global flags. Subcommand modules register
themselves by importing and adding to the group.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any

import click


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


def build_service(ctx: click.Context):
    """Return the FactoryService for this invocation, creating it on first use."""
    from agentfactory.service import FactoryService

    service = ctx.obj.get("service")
    if service is None:
        service = FactoryService()
        ctx.obj["service"] = service
    return service


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.option("--verbose", "-v", is_flag=True, help="Extended details and info logging")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.pass_context
def cli(ctx: click.Context, json_output: bool, verbose: bool, no_color: bool) -> None:
    """agentfactory - run and supervise child coding agents."""
    ctx.ensure_object(dict)
    ctx.obj["json"] = json_output
    ctx.obj["verbose"] = verbose
    ctx.obj["no_color"] = no_color

    if verbose:
        from agentfactory.main import set_log_level

        set_log_level(logging.INFO)


# ---------------------------------------------------------------------------
# Register subcommand modules
# ---------------------------------------------------------------------------

def _register_subcommands() -> None:
    """Import and register all subcommands."""
    from agentfactory.cli.agents import agents_cmd
    from agentfactory.cli.monitoring import cancel_cmd, status_cmd
    from agentfactory.cli.runs import delegate_cmd, run_cmd

    cli.add_command(run_cmd)
    cli.add_command(delegate_cmd)
    cli.add_command(status_cmd)
    cli.add_command(cancel_cmd)
    cli.add_command(agents_cmd)


_register_subcommands()
