"""
Agent Loader — Discovers and parses agent definition files.

Agent files are Markdown documents with a JSON frontmatter block:

    ---
    { "name": "reviewer", "description": "...", "model": "...", "tools": [...] }
    ---

    System prompt for the agent...

The body becomes the child's appended system prompt; ``model`` and ``tools``
are defaults that an explicit delegate call may override.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)

# Match --- JSON block --- at the very start of the file
_FRONTMATTER_RE = re.compile(r"^\s*---\s*\n(\{.*?\})\s*\n---\s*\n?(.*)", re.DOTALL)


@dataclass
class AgentDefinition:
    """A named child-agent role: prompt plus default model and tools."""

    name: str
    description: str
    prompt: str
    model: Optional[str] = None
    tools: list[str] = field(default_factory=list)
    source_file: Optional[Path] = None


def parse_agent_file(path: Path) -> AgentDefinition | None:
    """
    Parse an agent .md file into an AgentDefinition.

    Returns None (with a warning logged) if the file cannot be parsed.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("agent_loader.read_error", path=str(path), error=str(e))
        return None

    match = _FRONTMATTER_RE.match(raw)
    if not match:
        logger.warning(
            "agent_loader.no_frontmatter",
            path=str(path),
            hint="File must start with --- { JSON } --- frontmatter",
        )
        return None

    try:
        meta: dict[str, Any] = json.loads(match.group(1).strip())
    except json.JSONDecodeError as e:
        logger.warning("agent_loader.invalid_json", path=str(path), error=str(e))
        return None

    name = meta.get("name")
    description = meta.get("description")
    if not name or not description:
        logger.warning(
            "agent_loader.missing_fields",
            path=str(path),
            missing=[f for f in ("name", "description") if not meta.get(f)],
        )
        return None

    body = match.group(2).strip()
    if not body:
        logger.warning("agent_loader.empty_body", path=str(path))
        return None

    tools = meta.get("tools", [])
    if isinstance(tools, str):
        tools = [t.strip() for t in tools.split(",") if t.strip()]

    model = meta.get("model")
    return AgentDefinition(
        name=str(name),
        description=str(description),
        prompt=body,
        model=str(model) if model else None,
        tools=[str(t) for t in tools],
        source_file=path,
    )


def discover_agents(directory: Path) -> dict[str, AgentDefinition]:
    """
    Discover and parse all agent files in a directory, keyed by name.

    A missing directory yields no agents. Hidden files are skipped; when two
    files declare the same name, the first in sorted order wins.
    """
    agents: dict[str, AgentDefinition] = {}
    if not directory.is_dir():
        return agents

    for md_file in sorted(directory.glob("*.md")):
        if md_file.name.startswith("."):
            continue
        agent = parse_agent_file(md_file)
        if agent is None:
            logger.warning("agent_loader.skipped", file=md_file.name)
            continue
        if agent.name in agents:
            logger.warning("agent_loader.duplicate", name=agent.name, file=md_file.name)
            continue
        agents[agent.name] = agent
        logger.debug("agent_loader.loaded", name=agent.name, file=md_file.name)

    return agents
