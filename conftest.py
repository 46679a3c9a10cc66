"""
Root-level shared test fixtures.

Inherited by every test suite under clawdbot/ and tests/:
- FakeGateway: records RPC calls, answers from per-method handlers
- a fixed clock so registry timestamps are deterministic
- the subagent core wired against a temp state dir
"""

from __future__ import annotations

import inspect
from pathlib import Path
from typing import Any

import pytest

from clawdbot.agents.config import ClawdConfig, config_from_dict
from clawdbot.agents.registry import SubagentRegistry
from clawdbot.agents.runs import EmbeddedRunRegistry
from clawdbot.agents.spawn import SubagentSpawner
from clawdbot.agents.steer import SubagentController
from clawdbot.gateway.client import DEFAULT_TIMEOUT_MS
from clawdbot.reply.commands import SubagentCommandHandler
from clawdbot.reply.queue import SessionQueues
from clawdbot.sessions.store import SessionStore

START_MS = 1_700_000_000_000


class FakeGateway:
    """In-memory GatewayCaller.

    A handler is a dict (returned as-is), an exception (raised), or a
    callable taking the params (sync or async) that returns either.
    ``agent`` calls without a handler get sequential run ids.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any], int]] = []
        self.handlers: dict[str, Any] = {}
        self._run_seq = 0

    def on(self, method: str, handler: Any) -> None:
        self.handlers[method] = handler

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> dict[str, Any]:
        params = dict(params or {})
        self.calls.append((method, params, timeout_ms))
        handler = self.handlers.get(method)
        if handler is None:
            if method == "agent":
                self._run_seq += 1
                return {"runId": f"run-{self._run_seq:04d}"}
            return {}
        result = handler
        if callable(handler) and not isinstance(handler, BaseException):
            result = handler(params)
            if inspect.isawaitable(result):
                result = await result
        if isinstance(result, BaseException):
            raise result
        return dict(result or {})

    def methods(self) -> list[str]:
        return [method for method, _, _ in self.calls]

    def params_for(self, method: str) -> list[dict[str, Any]]:
        return [params for m, params, _ in self.calls if m == method]


class FakeClock:
    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


def make_cfg(
    *,
    max_spawn_depth: int | None = None,
    max_children: int | None = None,
    allow_agents: list[str] | None = None,
    extra_agents: list[dict[str, Any]] | None = None,
) -> ClawdConfig:
    """Config with a default ``main`` agent and optional subagent policy."""
    subagents: dict[str, Any] = {}
    if max_spawn_depth is not None:
        subagents["maxSpawnDepth"] = max_spawn_depth
    if max_children is not None:
        subagents["maxChildrenPerAgent"] = max_children
    main: dict[str, Any] = {"id": "main", "default": True}
    if allow_agents is not None:
        main["subagents"] = {"allowAgents": allow_agents}
    return config_from_dict(
        {
            "agents": {
                "defaults": {"subagents": subagents},
                "list": [main, *(extra_agents or [])],
            }
        }
    )


@pytest.fixture
def clean_env(monkeypatch):
    """Remove CLAWDBOT_* env vars that leak between tests."""
    for key in [
        "CLAWDBOT_STATE_DIR",
        "CLAWDBOT_CONFIG_PATH",
        "CLAWDBOT_GATEWAY_URL",
        "CLAWDBOT_GATEWAY_TOKEN",
        "CLAWDBOT_CONTROL_HOST",
        "CLAWDBOT_CONTROL_PORT",
        "CLAWDBOT_CONTROL_TOKEN",
    ]:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cfg() -> ClawdConfig:
    return make_cfg(allow_agents=["*"])


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "state")


@pytest.fixture
def registry(clock: FakeClock) -> SubagentRegistry:
    return SubagentRegistry(archive_after_minutes=60, clock=clock)


@pytest.fixture
def runs() -> EmbeddedRunRegistry:
    return EmbeddedRunRegistry()


@pytest.fixture
def queues() -> SessionQueues:
    return SessionQueues()


@pytest.fixture
def spawner(cfg, gateway, registry, store) -> SubagentSpawner:
    return SubagentSpawner(cfg=cfg, gateway=gateway, registry=registry, store=store)


@pytest.fixture
def controller(gateway, registry, store, runs, queues) -> SubagentController:
    return SubagentController(
        gateway=gateway, registry=registry, store=store, runs=runs, queues=queues
    )


@pytest.fixture
def handler(cfg, registry, store, gateway, spawner, controller) -> SubagentCommandHandler:
    return SubagentCommandHandler(
        cfg=cfg,
        registry=registry,
        store=store,
        gateway=gateway,
        spawner=spawner,
        controller=controller,
    )


@pytest.fixture
def cfg_factory():
    """``make_cfg`` for tests that need their own subagent policy."""
    return make_cfg
