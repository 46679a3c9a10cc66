"""
Session store — JSON file of ``sessionKey → SessionEntry`` per agent.

The gateway owns the full entry structure; the subagent core only reads a
handful of fields (sessionId, spawnedBy, spawnDepth, model, usage) and
patches abortedLastRun/updatedAt. Unknown fields survive a round trip.

Writes are read-modify-write under a per-path lock and land atomically
via a temp file + rename. Reads tolerate a missing or corrupt file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, TypeVar

from clawdbot.routing.session_key import normalize_agent_id, resolve_agent_id_from_session_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

# snake_case attribute → camelCase JSON key
_FIELD_KEYS: dict[str, str] = {
    "session_id": "sessionId",
    "updated_at": "updatedAt",
    "aborted_last_run": "abortedLastRun",
    "spawned_by": "spawnedBy",
    "spawn_depth": "spawnDepth",
    "label": "label",
    "model": "model",
    "model_provider": "modelProvider",
    "model_override": "modelOverride",
    "provider_override": "providerOverride",
    "thinking_level": "thinkingLevel",
    "session_file": "sessionFile",
    "input_tokens": "inputTokens",
    "output_tokens": "outputTokens",
    "total_tokens": "totalTokens",
}

_INT_FIELDS = frozenset(
    {"updated_at", "spawn_depth", "input_tokens", "output_tokens", "total_tokens"}
)
_BOOL_FIELDS = frozenset({"aborted_last_run"})


def _field_value_ok(attr: str, value: Any) -> bool:
    if attr in _BOOL_FIELDS:
        return isinstance(value, bool)
    if attr in _INT_FIELDS:
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, str)


@dataclass
class SessionEntry:
    """The fields of a gateway session entry the subagent core touches."""

    session_id: str = ""
    updated_at: int = 0  # epoch ms
    aborted_last_run: bool = False

    # Spawn lineage
    spawned_by: str | None = None
    spawn_depth: int | None = None
    label: str | None = None

    # Model as last run / as overridden at spawn time
    model: str | None = None
    model_provider: str | None = None
    model_override: str | None = None
    provider_override: str | None = None
    thinking_level: str | None = None

    session_file: str | None = None

    # Usage
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None

    # Everything else the gateway stores, preserved verbatim
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionEntry:
        known = set(_FIELD_KEYS.values())
        kwargs: dict[str, Any] = {}
        for attr, key in _FIELD_KEYS.items():
            value = data.get(key)
            if value is None:
                continue
            if not _field_value_ok(attr, value):
                logger.debug("Ignoring session field %s with unexpected value %r", key, value)
                continue
            kwargs[attr] = value
        entry = cls(**kwargs)
        entry.extra = {k: v for k, v in data.items() if k not in known}
        return entry

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = dict(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            out[_FIELD_KEYS[f.name]] = value
        return out


def resolve_store_path(store: str | None, *, agent_id: str | None, state_dir: Path) -> Path:
    """Path of the session store for ``agent_id``.

    ``store`` may contain an ``{agentId}`` placeholder; without a configured
    store the default is ``<state>/agents/<agentId>/sessions/sessions.json``.
    """
    agent = normalize_agent_id(agent_id)
    if store:
        expanded = store.replace("{agentId}", agent)
        return Path(expanded).expanduser()
    return state_dir / "agents" / agent / "sessions" / "sessions.json"


def load_session_store(path: Path) -> dict[str, SessionEntry]:
    """Load the store at ``path``. Missing or corrupt files yield an empty mapping."""
    try:
        raw = path.read_text()
    except FileNotFoundError:
        return {}
    except OSError as e:
        logger.warning("Failed to read session store %s: %s", path, e)
        return {}
    try:
        data = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError as e:
        logger.warning("Corrupt session store %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Session store %s is not an object, ignoring", path)
        return {}
    return {
        key: SessionEntry.from_dict(value)
        for key, value in data.items()
        if isinstance(value, dict)
    }


def _write_store(path: Path, store: dict[str, SessionEntry]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps({k: v.to_dict() for k, v in store.items()}, indent=2)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".sessions-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(payload)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


_path_locks: dict[str, threading.Lock] = {}
_path_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _path_locks_guard:
        lock = _path_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _path_locks[key] = lock
        return lock


def update_session_store_sync(
    path: Path, mutator: Callable[[dict[str, SessionEntry]], T]
) -> T:
    """Atomic read-modify-write of the store at ``path``."""
    with _lock_for(path):
        store = load_session_store(path)
        result = mutator(store)
        _write_store(path, store)
        return result


async def update_session_store(
    path: Path, mutator: Callable[[dict[str, SessionEntry]], T]
) -> T:
    """Async wrapper — runs the read-modify-write off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, update_session_store_sync, path, mutator)


class SessionStore:
    """Session-store accessor handed to the registry, spawner and commands."""

    def __init__(self, state_dir: Path, store_config: str | None = None) -> None:
        self.state_dir = state_dir
        self.store_config = store_config

    def resolve_path(self, agent_id: str | None) -> Path:
        return resolve_store_path(self.store_config, agent_id=agent_id, state_dir=self.state_dir)

    def load(self, path: Path) -> dict[str, SessionEntry]:
        return load_session_store(path)

    async def update(self, path: Path, mutator: Callable[[dict[str, SessionEntry]], T]) -> T:
        return await update_session_store(path, mutator)

    def path_for_session(self, session_key: str) -> Path:
        return self.resolve_path(resolve_agent_id_from_session_key(session_key))

    def get_entry(self, session_key: str) -> SessionEntry | None:
        """Load the entry for ``session_key`` from its agent's store."""
        return self.load(self.path_for_session(session_key)).get(session_key)
