"""
Spawn depth — number of spawn hops between a session and its root.

Resolved in order of trust:
1. ``spawnDepth`` recorded on the session entry at spawn time
2. the ``spawnedBy`` chain in the session store
3. the registry's child → requester links (runs spawned by this process)
4. the number of ``subagent:`` segments in the key itself

The walk is bounded; a cycle or an over-long chain resolves to depth 0.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from clawdbot.routing.session_key import (
    resolve_internal_session_key,
    resolve_main_session_alias,
)
from clawdbot.sessions.store import SessionEntry, SessionStore

if TYPE_CHECKING:
    from clawdbot.agents.config import ClawdConfig
    from clawdbot.agents.registry import SubagentRegistry

logger = logging.getLogger(__name__)

MAX_DEPTH_WALK = 32


def _segment_depth(session_key: str) -> int:
    return session_key.lower().count(":subagent:")


def get_subagent_depth_from_session_store(
    session_key: str | None,
    *,
    cfg: ClawdConfig,
    store: SessionStore,
    registry: SubagentRegistry | None = None,
) -> int:
    """Spawn depth of ``session_key``; the root session is depth 0."""
    key = (session_key or "").strip()
    if not key:
        return 0

    alias = resolve_main_session_alias(cfg)
    loaded: dict[Path, dict[str, SessionEntry]] = {}

    def _entry(k: str) -> SessionEntry | None:
        path = store.path_for_session(k)
        if path not in loaded:
            loaded[path] = store.load(path)
        return loaded[path].get(k)

    current = resolve_internal_session_key(key, alias=alias.alias, main_key=alias.main_key)
    visited: set[str] = set()
    hops = 0

    while True:
        if current in visited:
            logger.warning("Cycle in spawnedBy chain at %s (from %s), depth 0", current, key)
            return 0
        if hops > MAX_DEPTH_WALK:
            logger.warning("spawnedBy chain from %s exceeds %d hops, depth 0", key, MAX_DEPTH_WALK)
            return 0
        visited.add(current)

        entry = _entry(current)
        recorded = entry.spawn_depth if entry else None
        if isinstance(recorded, int) and not isinstance(recorded, bool) and recorded >= 0:
            return hops + recorded

        spawned_by = entry.spawned_by if entry else None
        parent = spawned_by.strip() if isinstance(spawned_by, str) else ""
        if not parent and registry is not None:
            run = registry.find_run_by_child_session_key(current)
            parent = run.requester_session_key if run else ""
        if not parent:
            return hops + _segment_depth(current)

        current = resolve_internal_session_key(parent, alias=alias.alias, main_key=alias.main_key)
        hops += 1
