"""
Session keys — ``agent:<agentId>:<scope...>``.

Pure functions: parse, normalize, and map the ``main`` alias to the
configured main session and back. Keys are never mutated, only re-derived.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from clawdbot.agents.config import ClawdConfig

DEFAULT_AGENT_ID = "main"
DEFAULT_MAIN_KEY = "main"

_VALID_AGENT_ID = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$", re.IGNORECASE)
_INVALID_AGENT_CHARS = re.compile(r"[^a-z0-9_-]+")
_MAX_AGENT_ID_LEN = 64


@dataclass(frozen=True)
class ParsedSessionKey:
    agent_id: str
    rest: str


@dataclass(frozen=True)
class MainSessionAlias:
    main_key: str
    alias: str


def normalize_agent_id(value: str | None) -> str:
    """Case-normalize an agent id; anything unusable collapses to ``main``."""
    trimmed = (value or "").strip()
    if not trimmed:
        return DEFAULT_AGENT_ID
    if _VALID_AGENT_ID.match(trimmed):
        return trimmed.lower()
    normalized = _INVALID_AGENT_CHARS.sub("-", trimmed.lower()).strip("-")
    return normalized[:_MAX_AGENT_ID_LEN] or DEFAULT_AGENT_ID


def parse_agent_session_key(key: str | None) -> ParsedSessionKey | None:
    """Parse ``agent:<id>:<rest>``. Returns None for keys of any other shape."""
    raw = (key or "").strip()
    if not raw:
        return None
    parts = [p for p in raw.split(":") if p]
    if len(parts) < 3 or parts[0].lower() != "agent":
        return None
    agent_id = parts[1].strip()
    rest = ":".join(parts[2:])
    if not agent_id or not rest:
        return None
    return ParsedSessionKey(agent_id=normalize_agent_id(agent_id), rest=rest)


def resolve_agent_id_from_session_key(key: str | None) -> str:
    parsed = parse_agent_session_key(key)
    return parsed.agent_id if parsed else DEFAULT_AGENT_ID


def is_subagent_session_key(key: str | None) -> bool:
    parsed = parse_agent_session_key(key)
    if parsed is None:
        return False
    return parsed.rest.lower().startswith("subagent:")


def build_agent_main_session_key(agent_id: str | None, main_key: str = DEFAULT_MAIN_KEY) -> str:
    return f"agent:{normalize_agent_id(agent_id)}:{main_key or DEFAULT_MAIN_KEY}"


def resolve_main_session_alias(cfg: ClawdConfig) -> MainSessionAlias:
    """The configured main key and the internal key it aliases."""
    from clawdbot.agents.config import resolve_default_agent_id

    main_key = cfg.session.main_key.strip() or DEFAULT_MAIN_KEY
    if cfg.session.scope == "global":
        return MainSessionAlias(main_key=main_key, alias="global")
    alias = build_agent_main_session_key(resolve_default_agent_id(cfg), main_key)
    return MainSessionAlias(main_key=main_key, alias=alias)


def resolve_internal_session_key(key: str, *, alias: str, main_key: str) -> str:
    """Map the user-facing ``main`` alias to the internal session key."""
    trimmed = key.strip()
    if trimmed in (DEFAULT_MAIN_KEY, main_key):
        return alias
    return trimmed


def resolve_display_session_key(key: str, *, alias: str, main_key: str) -> str:
    """Inverse of resolve_internal_session_key for display purposes."""
    trimmed = key.strip()
    if trimmed in (alias, main_key):
        return DEFAULT_MAIN_KEY
    return trimmed
