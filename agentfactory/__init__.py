"""
agentfactory — Subagent Orchestration Runtime.

Lets one coordinating agent process spawn, track, and collect results from
many independent child agent processes. Children are detached OS processes
whose output is tailed from files on disk, so a child keeps running even if
the coordinator goes away.

Architecture layers (bottom to top):
    1. Models and errors (what a run and a child result look like)
    2. Process launcher (one detached child per task, polled output)
    3. Factory runtime (spawn / shutdown / observe, depth + cancellation)
    4. Observability store and run registry
    5. Program executor (user orchestration scripts, instrumented gather)
    6. Service, tools and CLI (the host-facing surface)
"""

__version__ = "0.1.0"
