"""Thinking levels — the ``/think`` vocabulary and its aliases."""

from __future__ import annotations

from enum import StrEnum


class ThinkLevel(StrEnum):
    OFF = "off"
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    XHIGH = "xhigh"


_ALIASES: dict[str, ThinkLevel] = {
    "off": ThinkLevel.OFF,
    "on": ThinkLevel.LOW,
    "enable": ThinkLevel.LOW,
    "enabled": ThinkLevel.LOW,
    "min": ThinkLevel.MINIMAL,
    "minimal": ThinkLevel.MINIMAL,
    "think": ThinkLevel.MINIMAL,
    "low": ThinkLevel.LOW,
    "thinkhard": ThinkLevel.LOW,
    "think-hard": ThinkLevel.LOW,
    "think_hard": ThinkLevel.LOW,
    "mid": ThinkLevel.MEDIUM,
    "med": ThinkLevel.MEDIUM,
    "medium": ThinkLevel.MEDIUM,
    "harder": ThinkLevel.MEDIUM,
    "thinkharder": ThinkLevel.MEDIUM,
    "think-harder": ThinkLevel.MEDIUM,
    "high": ThinkLevel.HIGH,
    "max": ThinkLevel.HIGH,
    "highest": ThinkLevel.HIGH,
    "ultra": ThinkLevel.HIGH,
    "ultrathink": ThinkLevel.HIGH,
    "xhigh": ThinkLevel.XHIGH,
    "x-high": ThinkLevel.XHIGH,
    "x_high": ThinkLevel.XHIGH,
    "extra-high": ThinkLevel.XHIGH,
    "extrahigh": ThinkLevel.XHIGH,
}

# Providers whose GPT-5 family accepts the extra-high level
_XHIGH_PROVIDERS = frozenset({"openai", "openai-codex"})


def normalize_think_level(raw: str | None) -> ThinkLevel | None:
    """Map a user token to a ThinkLevel. None when the token is unknown."""
    if not raw:
        return None
    key = raw.strip().lower()
    if not key:
        return None
    return _ALIASES.get(key)


def supports_xhigh(provider: str | None, model: str | None) -> bool:
    if not provider or not model:
        return False
    return provider.lower() in _XHIGH_PROVIDERS and model.lower().startswith("gpt-5")


def list_thinking_levels(provider: str | None = None, model: str | None = None) -> list[str]:
    levels = [level.value for level in ThinkLevel if level is not ThinkLevel.XHIGH]
    if supports_xhigh(provider, model):
        levels.append(ThinkLevel.XHIGH.value)
    return levels


def format_thinking_levels(provider: str | None = None, model: str | None = None) -> str:
    return ", ".join(list_thinking_levels(provider, model))
