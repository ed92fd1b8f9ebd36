"""
agentfactory — Entry point.

Configures logging once, then hands over to the click command group. Log
output always goes to stderr so that stdout stays clean for ``--json``
output and for piping program results.
"""

from __future__ import annotations

import logging
import sys

import structlog

_logging_configured = False


def configure_logging(level: int = logging.WARNING) -> None:
    """Configure structlog and standard-library logging for agentfactory entry points.

    Safe to call more than once; subsequent calls are no-ops.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=level, stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def set_log_level(level: int) -> None:
    logging.getLogger().setLevel(level)


def main() -> None:
    """Entry point for the agentfactory command."""
    configure_logging()

    from agentfactory.cli.app import cli

    cli(obj={})


if __name__ == "__main__":
    main()
