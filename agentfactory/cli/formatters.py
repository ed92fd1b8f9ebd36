"""CLI formatters — status indicators, durations, run tables and run detail."""

from __future__ import annotations

from typing import Any

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from agentfactory.models import ExecutionResult, RunRecord


def get_console(no_color: bool = False) -> Console:
    """Get a Rich Console, optionally with color disabled."""
    return Console(no_color=no_color)


def status_indicator(status: str) -> Text:
    """Map a run status to a colored indicator."""
    mapping = {
        "running": Text("● ", style="yellow"),
        "done": Text("✓ ", style="green"),
        "cancelled": Text("◼ ", style="dim"),
        "failed": Text("✗ ", style="red"),
    }
    return mapping.get(status, Text("? ", style="dim"))


def result_indicator(result: ExecutionResult) -> Text:
    if result.cancelled:
        return Text("◼ ", style="dim")
    if result.exit_code == 0:
        return Text("✓ ", style="green")
    if result.exit_code > 0:
        return Text("✗ ", style="red")
    return Text("? ", style="yellow")


def format_duration(seconds: float) -> str:
    """Format a duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        m = int(seconds // 60)
        s = int(seconds % 60)
        return f"{m}m{s:02d}s"
    h = int(seconds // 3600)
    m = int((seconds % 3600) // 60)
    return f"{h}h {m:02d}m"


def short_model(model: str | None) -> str:
    """``provider/model`` -> ``model``."""
    if not model:
        return ""
    return model.rsplit("/", 1)[-1]


def agent_label(record: RunRecord) -> str:
    agents = sorted({r.agent for r in record.results})
    if not agents:
        return record.kind
    if len(agents) == 1:
        return agents[0]
    return f"{agents[0]} +{len(agents) - 1}"


def exit_codes(record: RunRecord) -> Text:
    codes = [r.exit_code for r in record.results if r.finished]
    if not codes:
        return Text("")
    style = "green" if all(c == 0 for c in codes) else "red"
    return Text(",".join(str(c) for c in codes), style=style)


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    """Build a Rich table with standard styling."""
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(v if isinstance(v, Text) else str(v) for v in row))
    return table


def runs_table(records: list[RunRecord]) -> Table:
    rows = [
        [
            status_indicator(r.status) + Text(r.status),
            r.run_id,
            agent_label(r),
            format_duration(r.elapsed_seconds),
            short_model(r.results[0].model if r.results else None),
            exit_codes(r),
        ]
        for r in records
    ]
    noun = "run" if len(records) == 1 else "runs"
    return build_table(
        f"factory ({len(records)} {noun})",
        ["Status", "Run", "Agent", "Elapsed", "Model", "Exit"],
        rows,
    )


def run_detail(record: RunRecord, verbose: bool = False) -> Panel:
    """Full view of one run: metadata, usage, error and each child's output."""
    lines: list[Any] = [
        Text.assemble(("Task: ", "dim"), record.task or "(no task)"),
        Text.assemble(
            ("Status: ", "dim"),
            status_indicator(record.status),
            record.status,
            ("  " + format_duration(record.elapsed_seconds), "dim"),
        ),
    ]
    if record.error is not None:
        lines.append(Text(f"Error: {record.error.code} — {record.error.message}", style="red"))

    for result in record.results:
        lines.append(Text(""))
        header = result_indicator(result) + Text(result.agent, style="cyan")
        if result.model:
            header.append(f" [{short_model(result.model)}]", style="dim")
        header.append(f"  {result.task_id}", style="dim")
        lines.append(header)
        lines.append(Text(f"  Task: {result.task}", style="dim"))
        usage = result.usage
        parts = []
        if usage.input or usage.output:
            parts.append(f"{usage.input} in / {usage.output} out")
        if usage.turns:
            parts.append(f"{usage.turns} turns")
        if usage.cost:
            parts.append(f"${usage.cost:.4f}")
        if parts:
            lines.append(Text("  Usage: " + "  ".join(parts), style="dim"))
        if result.session_path:
            lines.append(Text(f"  Session: {result.session_path}", style="dim"))
        if result.text:
            lines.append(Text("  " + result.text.replace("\n", "\n  ")))
        elif result.finished:
            lines.append(Text("  (no output)", style="dim"))
        if result.error_message:
            lines.append(Text(f"  {result.error_message}", style="red"))
        if verbose and result.stderr.strip():
            lines.append(Text("  " + result.stderr.strip().replace("\n", "\n  "), style="yellow"))

    return Panel(Group(*lines), title=record.run_id, expand=False)
