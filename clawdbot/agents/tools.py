"""
The ``sessions_spawn`` agent tool.

Exposes the spawn engine to the model as an OpenAI function-calling
schema plus an async executor that coerces the raw arguments.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

from clawdbot.agents.models import SpawnSubagentContext, SpawnSubagentParams

if TYPE_CHECKING:
    from clawdbot.agents.spawn import SubagentSpawner

logger = logging.getLogger(__name__)

SESSIONS_SPAWN_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "sessions_spawn",
        "description": (
            "Spawn a background sub-agent run in an isolated session and announce "
            "the result back to the requester chat."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "task": {"type": "string", "description": "What the sub-agent should do"},
                "label": {"type": "string", "description": "Short name shown in /subagents"},
                "agentId": {"type": "string", "description": "Target agent (default: yours)"},
                "model": {"type": "string", "description": "provider/model override"},
                "thinking": {"type": "string", "description": "Thinking level override"},
                "runTimeoutSeconds": {
                    "type": "number",
                    "minimum": 0,
                    "description": "Run timeout in seconds (0 = none)",
                },
                # Older callers send timeoutSeconds
                "timeoutSeconds": {"type": "number", "minimum": 0},
                "cleanup": {"type": "string", "enum": ["delete", "keep"]},
            },
            "required": ["task"],
        },
    },
}


def _read_str(args: dict[str, Any], key: str) -> str | None:
    value = args.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _read_timeout(args: dict[str, Any]) -> int | None:
    for key in ("runTimeoutSeconds", "timeoutSeconds"):
        value = args.get(key)
        if isinstance(value, bool) or not isinstance(value, int | float):
            continue
        if not math.isfinite(value):
            return None
        return max(0, math.floor(value))
    return None


async def handle_sessions_spawn(
    spawner: SubagentSpawner, args: dict[str, Any], ctx: SpawnSubagentContext
) -> dict[str, Any]:
    """Execute ``sessions_spawn``; returns a JSON-ready result dict."""
    task = _read_str(args, "task")
    if not task:
        return {"status": "error", "error": "task is required"}
    cleanup = args.get("cleanup")
    params = SpawnSubagentParams(
        task=task,
        label=_read_str(args, "label"),
        agent_id=_read_str(args, "agentId"),
        model=_read_str(args, "model"),
        thinking=_read_str(args, "thinking"),
        run_timeout_seconds=_read_timeout(args),
        cleanup=cleanup if cleanup in ("keep", "delete") else "keep",
    )
    result = await spawner.spawn_subagent_direct(params, ctx)
    if result.status != "accepted":
        logger.info("sessions_spawn %s: %s", result.status, result.error)
    return result.to_dict()
