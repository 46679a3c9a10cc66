"""
Runtime wiring — one explicit set of subagent-core instances.

Nothing here is a module-level singleton: the server (or a test) builds a
SubagentRuntime, starts it, and closes it. Two runtimes never share a
registry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from clawdbot.agents.announce import SubagentAnnouncer
from clawdbot.agents.config import ClawdConfig, load_clawd_config
from clawdbot.agents.models import SpawnSubagentContext
from clawdbot.agents.registry import SubagentRegistry
from clawdbot.agents.runs import EmbeddedRunRegistry
from clawdbot.agents.spawn import SubagentSpawner
from clawdbot.agents.steer import SubagentController
from clawdbot.agents.tools import SESSIONS_SPAWN_TOOL, handle_sessions_spawn
from clawdbot.config import Config
from clawdbot.gateway.client import GatewayCaller, GatewayClient
from clawdbot.reply.commands import SubagentCommandHandler
from clawdbot.reply.queue import SessionQueues
from clawdbot.sessions.store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class SubagentRuntime:
    cfg: ClawdConfig
    gateway: GatewayCaller
    registry: SubagentRegistry
    store: SessionStore
    runs: EmbeddedRunRegistry
    queues: SessionQueues
    spawner: SubagentSpawner
    controller: SubagentController
    announcer: SubagentAnnouncer
    commands: SubagentCommandHandler
    _sweeper: asyncio.Task | None = field(default=None, repr=False)
    _owns_gateway: bool = field(default=False, repr=False)

    @classmethod
    def build(
        cls,
        config: Config,
        *,
        cfg: ClawdConfig | None = None,
        gateway: GatewayCaller | None = None,
    ) -> SubagentRuntime:
        cfg = cfg if cfg is not None else load_clawd_config(config.config_path)
        owns_gateway = gateway is None
        if gateway is None:
            gateway = GatewayClient(base_url=config.gateway_url, token=config.gateway_token)
        registry = SubagentRegistry(archive_after_minutes=cfg.archive_after_minutes)
        store = SessionStore(config.state_dir, cfg.session.store)
        # Hooks for an in-process execution engine. Under `clawdbot serve` the
        # gateway runs the agents, so kill and steer only abort and drain work
        # registered here locally.
        runs = EmbeddedRunRegistry()
        queues = SessionQueues()
        spawner = SubagentSpawner(cfg=cfg, gateway=gateway, registry=registry, store=store)
        controller = SubagentController(
            gateway=gateway, registry=registry, store=store, runs=runs, queues=queues
        )
        announcer = SubagentAnnouncer(gateway, registry)
        announcer.attach()
        commands = SubagentCommandHandler(
            cfg=cfg,
            registry=registry,
            store=store,
            gateway=gateway,
            spawner=spawner,
            controller=controller,
        )
        return cls(
            cfg=cfg,
            gateway=gateway,
            registry=registry,
            store=store,
            runs=runs,
            queues=queues,
            spawner=spawner,
            controller=controller,
            announcer=announcer,
            commands=commands,
            _owns_gateway=owns_gateway,
        )

    # ── Agent tools ──

    def tool_definitions(self) -> list[dict[str, Any]]:
        return [SESSIONS_SPAWN_TOOL]

    async def handle_tool_call(
        self, name: str, args: dict[str, Any], ctx: SpawnSubagentContext
    ) -> dict[str, Any]:
        """Run one agent tool call on behalf of the session in ``ctx``."""
        if name == SESSIONS_SPAWN_TOOL["function"]["name"]:
            return await handle_sessions_spawn(self.spawner, args, ctx)
        return {"status": "error", "error": f"unknown tool: {name}"}

    def start(self) -> None:
        """Start background work (archive sweeper). Needs a running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(
                self.registry.run_sweeper(), name="subagent-sweeper"
            )
            logger.info("Subagent runtime started")

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self.announcer.close()
        if self._owns_gateway and isinstance(self.gateway, GatewayClient):
            await self.gateway.close()
        logger.info("Subagent runtime stopped")
