"""
Control endpoint — lightweight FastAPI app in front of the subagent core.

GET  /health                 liveness + active run count
GET  /subagents?requester=   runs spawned by one requester session
POST /commands               run a /subagents, /kill, /steer or /tell command
GET  /tools                  agent tool schemas (sessions_spawn)
POST /tools/{name}           run an agent tool call for a session

A command's sender is authorized when the bearer token matches
CLAWDBOT_CONTROL_TOKEN (or when no token is configured). Unauthorized
commands get the same silent result the chat surface gives; unauthorized
tool calls get a 401.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from fastapi import Request

from clawdbot import __version__
from clawdbot.agents.models import SpawnSubagentContext
from clawdbot.reply.commands import CommandParams

if TYPE_CHECKING:
    from clawdbot.config import Config
    from clawdbot.runtime import SubagentRuntime

logger = logging.getLogger(__name__)


def _is_authorized(config: Config, authorization: str | None) -> bool:
    if not config.control_token:
        return True
    return authorization == f"Bearer {config.control_token}"


def create_control_app(config: Config, runtime: SubagentRuntime):
    """Create the control FastAPI app bound to ``runtime``."""
    from fastapi import FastAPI
    from fastapi.responses import JSONResponse

    app = FastAPI(title="Clawdbot Subagents", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health():
        runs = runtime.registry.list_all_runs()
        return {
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "version": __version__,
            "activeRuns": sum(1 for r in runs if r.is_active),
            "trackedRuns": len(runs),
        }

    @app.get("/subagents")
    async def list_subagents(requester: str = "") -> JSONResponse:
        if not requester.strip():
            return JSONResponse({"error": "requester required"}, status_code=400)
        key = runtime.commands.resolve_requester_session_key(
            CommandParams(command_body="", session_key=requester)
        )
        runs = runtime.registry.list_subagent_runs_for_requester(key or requester)
        return JSONResponse({"requester": key, "runs": [r.to_dict() for r in runs]})

    @app.post("/commands")
    async def run_command(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "invalid JSON body"}, status_code=400)
        command = body.get("command")
        if not isinstance(command, str) or not command.strip():
            return JSONResponse({"error": "command required"}, status_code=400)

        params = CommandParams(
            command_body=command,
            session_key=body.get("sessionKey") or None,
            sender_id=body.get("senderId") or None,
            channel=body.get("channel") or None,
            to=body.get("to") or None,
            account_id=body.get("accountId") or None,
            thread_id=body.get("threadId") or None,
            is_authorized_sender=_is_authorized(config, request.headers.get("authorization")),
        )
        result = await runtime.commands.handle_subagents_command(params, True)
        if result is None:
            return JSONResponse({"handled": False, "shouldContinue": True, "reply": None})
        return JSONResponse({"handled": True, **result.to_dict()})

    @app.get("/tools")
    async def list_tools() -> JSONResponse:
        return JSONResponse({"tools": runtime.tool_definitions()})

    @app.post("/tools/{name}")
    async def call_tool(name: str, request: Request) -> JSONResponse:
        if not _is_authorized(config, request.headers.get("authorization")):
            return JSONResponse({"error": "unauthorized"}, status_code=401)
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "invalid JSON body"}, status_code=400)
        args = body.get("args")
        if not isinstance(args, dict):
            return JSONResponse({"error": "args must be an object"}, status_code=400)

        ctx = SpawnSubagentContext(
            agent_session_key=body.get("sessionKey") or None,
            agent_channel=body.get("channel") or None,
            agent_to=body.get("to") or None,
            agent_account_id=body.get("accountId") or None,
            agent_thread_id=body.get("threadId") or None,
        )
        result = await runtime.handle_tool_call(name, args, ctx)
        return JSONResponse(result)

    return app


async def serve_control(config: Config, runtime: SubagentRuntime) -> None:
    """Start the runtime and serve the control app until shutdown."""
    import uvicorn

    app = create_control_app(config, runtime)
    runtime.start()
    uvi_config = uvicorn.Config(
        app,
        host=config.control_host,
        port=config.control_port,
        log_level="warning",
    )
    server = uvicorn.Server(uvi_config)
    try:
        await server.serve()
    finally:
        await runtime.close()
