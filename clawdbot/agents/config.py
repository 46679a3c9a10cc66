"""
Agents configuration — loads the gateway config file (``cfg``) from YAML.

YAML is a superset of JSON, so an existing ``clawdbot.json`` loads as-is.
Keys follow the gateway's camelCase schema:

    session:
      mainKey: main
      scope: per-sender
    agents:
      defaults:
        model: {primary: anthropic/claude-sonnet-4-5}
        subagents: {maxSpawnDepth: 1, maxChildrenPerAgent: 5}
      list:
        - id: main
          default: true
          subagents: {allowAgents: ["*"]}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from clawdbot.routing.session_key import DEFAULT_AGENT_ID, normalize_agent_id

logger = logging.getLogger(__name__)

DEFAULT_MAX_SPAWN_DEPTH = 1
DEFAULT_MAX_CHILDREN_PER_AGENT = 5
DEFAULT_ARCHIVE_AFTER_MINUTES = 60

DEFAULT_PROVIDER = "anthropic"
DEFAULT_MODEL = "claude-sonnet-4-5"


@dataclass(frozen=True)
class ModelRef:
    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}/{self.model}"


@dataclass(frozen=True)
class SubagentSettings:
    """Subagent policy — global defaults or per-agent overrides."""

    max_spawn_depth: int | None = None
    max_children_per_agent: int | None = None
    model: str | None = None
    thinking: str | None = None
    allow_agents: tuple[str, ...] = ()
    archive_after_minutes: int | None = None


@dataclass(frozen=True)
class AgentEntry:
    """One entry of ``agents.list``."""

    id: str
    default: bool = False
    name: str = ""
    model: str | None = None
    subagents: SubagentSettings = field(default_factory=SubagentSettings)


@dataclass(frozen=True)
class AgentDefaults:
    model_primary: str | None = None
    subagents: SubagentSettings = field(default_factory=SubagentSettings)


@dataclass(frozen=True)
class SessionConfig:
    main_key: str = "main"
    scope: str = "per-sender"
    store: str | None = None


@dataclass(frozen=True)
class ClawdConfig:
    """The subset of the gateway config file the subagent core reads."""

    session: SessionConfig = field(default_factory=SessionConfig)
    defaults: AgentDefaults = field(default_factory=AgentDefaults)
    agents: tuple[AgentEntry, ...] = ()

    @property
    def archive_after_minutes(self) -> int:
        value = self.defaults.subagents.archive_after_minutes
        return DEFAULT_ARCHIVE_AFTER_MINUTES if value is None else max(0, value)

    def max_spawn_depth(self, agent_id: str | None = None) -> int:
        """Max spawn depth for sessions of ``agent_id`` (per-agent override wins)."""
        entry = resolve_agent_config(self, agent_id) if agent_id else None
        if entry and entry.subagents.max_spawn_depth is not None:
            return entry.subagents.max_spawn_depth
        value = self.defaults.subagents.max_spawn_depth
        return DEFAULT_MAX_SPAWN_DEPTH if value is None else value

    def max_children_per_agent(self, agent_id: str | None = None) -> int:
        entry = resolve_agent_config(self, agent_id) if agent_id else None
        if entry and entry.subagents.max_children_per_agent is not None:
            return entry.subagents.max_children_per_agent
        value = self.defaults.subagents.max_children_per_agent
        return DEFAULT_MAX_CHILDREN_PER_AGENT if value is None else value


def _read_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _read_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return max(0, int(value))


def _read_model(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        return _read_str(value, "primary")
    return None


def _parse_subagents(raw: Any) -> SubagentSettings:
    if not isinstance(raw, dict):
        return SubagentSettings()
    allow = raw.get("allowAgents") or []
    if not isinstance(allow, list):
        allow = []
    return SubagentSettings(
        max_spawn_depth=_read_int(raw, "maxSpawnDepth"),
        max_children_per_agent=_read_int(raw, "maxChildrenPerAgent"),
        model=_read_model(raw.get("model")),
        thinking=_read_str(raw, "thinking"),
        allow_agents=tuple(str(v) for v in allow if isinstance(v, str)),
        archive_after_minutes=_read_int(raw, "archiveAfterMinutes"),
    )


def config_from_dict(data: dict[str, Any] | None) -> ClawdConfig:
    """Convert a raw config mapping to a ClawdConfig. Unknown keys are ignored."""
    data = data or {}
    session_raw = data.get("session") or {}
    agents_raw = data.get("agents") or {}
    defaults_raw = agents_raw.get("defaults") or {}

    session = SessionConfig(
        main_key=_read_str(session_raw, "mainKey") or "main",
        scope=_read_str(session_raw, "scope") or "per-sender",
        store=_read_str(session_raw, "store"),
    )
    defaults = AgentDefaults(
        model_primary=_read_model(defaults_raw.get("model")),
        subagents=_parse_subagents(defaults_raw.get("subagents")),
    )

    entries: list[AgentEntry] = []
    for item in agents_raw.get("list") or []:
        if not isinstance(item, dict) or not _read_str(item, "id"):
            logger.warning("Ignoring agents.list entry without id: %s", item)
            continue
        entries.append(
            AgentEntry(
                id=normalize_agent_id(item["id"]),
                default=bool(item.get("default", False)),
                name=_read_str(item, "name") or "",
                model=_read_model(item.get("model")),
                subagents=_parse_subagents(item.get("subagents")),
            )
        )

    return ClawdConfig(session=session, defaults=defaults, agents=tuple(entries))


def load_clawd_config(path: Path) -> ClawdConfig:
    """Load the config file. A missing or unreadable file yields the defaults."""
    if not path.exists():
        logger.info("Config file not found at %s, using defaults", path)
        return ClawdConfig()
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error("Failed to load config %s: %s", path, e)
        return ClawdConfig()
    if not isinstance(data, dict):
        logger.warning("Config %s is not a mapping, using defaults", path)
        return ClawdConfig()
    return config_from_dict(data)


def resolve_agent_config(cfg: ClawdConfig, agent_id: str | None) -> AgentEntry | None:
    """Find the agents.list entry for ``agent_id``."""
    if not agent_id:
        return None
    wanted = normalize_agent_id(agent_id)
    for entry in cfg.agents:
        if entry.id == wanted:
            return entry
    return None


def resolve_default_agent_id(cfg: ClawdConfig) -> str:
    for entry in cfg.agents:
        if entry.default:
            return entry.id
    if cfg.agents:
        return cfg.agents[0].id
    return DEFAULT_AGENT_ID


def split_model_ref(ref: str | None) -> tuple[str | None, str | None]:
    """Split ``provider/model`` into its parts. A bare model has no provider."""
    trimmed = (ref or "").strip()
    if not trimmed:
        return None, None
    provider, sep, model = trimmed.partition("/")
    if sep and model:
        return provider, model
    return None, trimmed


def normalize_model_selection(value: Any) -> str | None:
    """Accept a model string or a ``{primary: ...}`` mapping."""
    return _read_model(value)


def resolve_default_model_for_agent(cfg: ClawdConfig, agent_id: str | None) -> ModelRef:
    """Runtime default model: agent model → defaults primary → built-in."""
    entry = resolve_agent_config(cfg, agent_id)
    raw = (entry.model if entry else None) or cfg.defaults.model_primary
    provider, model = split_model_ref(raw)
    if model:
        return ModelRef(provider=provider or DEFAULT_PROVIDER, model=model)
    return ModelRef(provider=DEFAULT_PROVIDER, model=DEFAULT_MODEL)
