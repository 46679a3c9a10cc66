"""
Formatting helpers for subagent replies — labels, statuses, durations,
token usage, and text extraction from gateway chat messages.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from clawdbot.agents.models import RunOutcomeStatus, SubagentRunRecord
from clawdbot.sessions.store import SessionEntry

DEFAULT_LABEL_MAX = 72

_WHITESPACE = re.compile(r"\s+")
_THINKING_BLOCK = re.compile(
    r"<\s*(think|thinking)\b[^>]*>.*?<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL
)
_FINAL_TAG = re.compile(r"<\s*/?\s*final\s*>", re.IGNORECASE)
_REPLY_TAG = re.compile(r"\[\[\s*reply_to[^\]]*\]\]", re.IGNORECASE)

_TOOL_ROLES = frozenset({"tool", "toolResult", "tool_result", "toolCall"})


# ─── Runs ──────────────────────────────────────────────────────────────


def truncate_line(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return f"{value[:max_length].rstrip()}..."


def compact_line(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def format_run_label(entry: SubagentRunRecord, max_length: int = DEFAULT_LABEL_MAX) -> str:
    """Label, else task, else ``subagent``."""
    raw = (entry.label or "").strip() or (entry.task or "").strip()
    if not raw:
        return "subagent"
    return truncate_line(compact_line(raw), max_length)


def format_run_status(entry: SubagentRunRecord) -> str:
    if entry.ended_at is None:
        return "running"
    status = entry.outcome.status if entry.outcome else None
    if status is None or status is RunOutcomeStatus.OK:
        return "done"
    return status.value


def sort_subagent_runs(runs: Iterable[SubagentRunRecord]) -> list[SubagentRunRecord]:
    """Newest first by start (or creation) time."""
    return sorted(runs, key=lambda r: r.started_at or r.created_at or 0, reverse=True)


# ─── Durations & timestamps ────────────────────────────────────────────


def format_duration_compact(value_ms: int | float | None) -> str:
    """Rounded to minutes: ``5m``, ``2h10m``, ``3d4h``."""
    if not value_ms or value_ms <= 0:
        return "n/a"
    minutes = max(1, round(value_ms / 60_000))
    if minutes < 60:
        return f"{minutes}m"
    hours, minutes_rem = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h{minutes_rem}m" if minutes_rem else f"{hours}h"
    days, hours_rem = divmod(hours, 24)
    return f"{days}d{hours_rem}h" if hours_rem else f"{days}d"


def format_time_ago(delta_ms: int | float | None, fallback: str = "n/a") -> str:
    if delta_ms is None or delta_ms < 0:
        return fallback
    seconds = int(delta_ms // 1000)
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 48:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def format_timestamp(value_ms: int | None) -> str:
    """ISO-8601 UTC with milliseconds, or ``n/a``."""
    if not value_ms or value_ms <= 0:
        return "n/a"
    dt = datetime.fromtimestamp(value_ms / 1000, tz=UTC)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(value_ms) % 1000:03d}Z"


def format_timestamp_with_age(value_ms: int | None, now_ms: int) -> str:
    if not value_ms or value_ms <= 0:
        return "n/a"
    return f"{format_timestamp(value_ms)} ({format_time_ago(now_ms - value_ms)})"


# ─── Usage & model ─────────────────────────────────────────────────────


def format_token_short(value: int | float) -> str:
    if value < 1_000:
        return str(round(value))
    if value < 10_000:
        return f"{value / 1_000:.1f}".removesuffix(".0") + "k"
    if value < 1_000_000:
        return f"{round(value / 1_000)}k"
    return f"{value / 1_000_000:.1f}".removesuffix(".0") + "m"


def format_token_usage_display(entry: SessionEntry | None) -> str:
    """``tokens 1.2k (in 800 / out 400)``, or empty when nothing is recorded."""
    if entry is None:
        return ""
    input_tokens = entry.input_tokens or 0
    output_tokens = entry.output_tokens or 0
    total = entry.total_tokens or (input_tokens + output_tokens)
    if total <= 0:
        return ""
    text = f"tokens {format_token_short(total)}"
    if input_tokens or output_tokens:
        text += (
            f" (in {format_token_short(input_tokens)}"
            f" / out {format_token_short(output_tokens)})"
        )
    return text


def _join_model(model: str | None, provider: str | None) -> str:
    model = (model or "").strip()
    provider = (provider or "").strip()
    if "/" in model:
        return model
    if model and provider:
        return f"{provider}/{model}"
    return model


def resolve_model_display(entry: SessionEntry | None, fallback_model: str | None = None) -> str:
    """Short model name for list lines. The provider prefix is dropped."""
    combined = ""
    if entry is not None:
        combined = _join_model(entry.model, entry.model_provider)
        if not combined:
            # Overrides are written at spawn time, before the first run reports its model
            combined = _join_model(entry.model_override, entry.provider_override)
    if not combined:
        combined = (fallback_model or "").strip()
    if not combined:
        return "model n/a"
    slash = combined.rfind("/")
    if 0 <= slash < len(combined) - 1:
        return combined[slash + 1 :]
    return combined


# ─── Chat content ──────────────────────────────────────────────────────


def sanitize_text_content(text: str) -> str:
    """Strip reasoning blocks and delivery tags from assistant text."""
    cleaned = _THINKING_BLOCK.sub("", text)
    cleaned = _FINAL_TAG.sub("", cleaned)
    cleaned = _REPLY_TAG.sub("", cleaned)
    return cleaned.strip()


def extract_text_from_chat_content(content: Any, *, sanitize: bool = False) -> str | None:
    """Text of a message's content: a string or a list of ``{type: text}`` blocks."""
    parts: list[str] = []
    if isinstance(content, str):
        parts.append(content)
    elif isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
    text = " ".join(sanitize_text_content(p) if sanitize else p for p in parts)
    text = compact_line(text)
    return text or None


def extract_message_text(message: Any) -> tuple[str, str] | None:
    """``(role, text)`` for a chat message, None when it carries no text."""
    if not isinstance(message, dict):
        return None
    role = message.get("role") if isinstance(message.get("role"), str) else ""
    text = extract_text_from_chat_content(message.get("content"), sanitize=role == "assistant")
    return (role, text) if text else None


def strip_tool_messages(messages: Iterable[Any]) -> list[Any]:
    return [
        m for m in messages if not (isinstance(m, dict) and m.get("role") in _TOOL_ROLES)
    ]


def extract_assistant_text(message: Any) -> str | None:
    if not isinstance(message, dict) or message.get("role") != "assistant":
        return None
    return extract_text_from_chat_content(message.get("content"), sanitize=True)


def format_log_lines(messages: Iterable[Any]) -> list[str]:
    lines: list[str] = []
    for message in messages:
        extracted = extract_message_text(message)
        if extracted is None:
            continue
        role, text = extracted
        speaker = "Assistant" if role == "assistant" else "User"
        lines.append(f"{speaker}: {text}")
    return lines
