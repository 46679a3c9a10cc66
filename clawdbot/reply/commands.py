"""
Subagent chat commands — ``/subagents``, ``/kill``, ``/steer``, ``/tell``.

    /subagents list
    /subagents kill <id|#|all>
    /subagents log <id|#> [limit] [tools]
    /subagents info <id|#>
    /subagents send <id|#> <message>
    /subagents steer <id|#> <message>
    /subagents spawn <agentId> <task> [--model <model>] [--thinking <level>]
    /kill <id|#|all>
    /steer <id|#> <message>
    /tell <id|#> <message>

Targets are resolved by resolve_subagent_target: list index, ``last``,
full child session key, label, label prefix, or run id prefix.

Unauthorized senders get no reply at all. Every other failure is a
one-line reply; nothing propagates to the dispatcher.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from clawdbot.agents.models import (
    SpawnStatus,
    SpawnSubagentContext,
    SpawnSubagentParams,
    SubagentRunRecord,
)
from clawdbot.gateway.client import GatewayError, GatewayTimeoutError
from clawdbot.reply.format import (
    compact_line,
    extract_assistant_text,
    format_duration_compact,
    format_log_lines,
    format_run_label,
    format_run_status,
    format_timestamp_with_age,
    format_token_usage_display,
    resolve_model_display,
    sort_subagent_runs,
    strip_tool_messages,
    truncate_line,
)
from clawdbot.routing.session_key import resolve_internal_session_key, resolve_main_session_alias

if TYPE_CHECKING:
    from clawdbot.agents.config import ClawdConfig
    from clawdbot.agents.registry import SubagentRegistry
    from clawdbot.agents.spawn import SubagentSpawner
    from clawdbot.agents.steer import SubagentController
    from clawdbot.gateway.client import GatewayCaller
    from clawdbot.sessions.store import SessionEntry, SessionStore

logger = logging.getLogger(__name__)

COMMAND = "/subagents"
COMMAND_KILL = "/kill"
COMMAND_STEER = "/steer"
COMMAND_TELL = "/tell"
ACTIONS = frozenset({"list", "kill", "log", "send", "steer", "info", "spawn", "help"})

RECENT_WINDOW_MINUTES = 30
SUBAGENT_TASK_PREVIEW_MAX = 110
LIST_LABEL_MAX = 48
LOG_DEFAULT_LIMIT = 20
LOG_MAX_LIMIT = 200
SEND_WAIT_MS = 30_000
SEND_HISTORY_LIMIT = 50

_DIGITS = re.compile(r"^\d+$")


# ─── Types ─────────────────────────────────────────────────────────────


@dataclass
class CommandParams:
    """One inbound command, as seen by the chat-command dispatcher."""

    command_body: str
    session_key: str | None = None
    is_authorized_sender: bool = False
    sender_id: str | None = None
    channel: str | None = None
    to: str | None = None
    account_id: str | None = None
    thread_id: str | int | None = None
    # Session the command targets when it arrives outside that session
    target_session_key: str | None = None


@dataclass
class ReplyPayload:
    text: str


@dataclass
class CommandResult:
    should_continue: bool = False
    reply: ReplyPayload | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "shouldContinue": self.should_continue,
            "reply": {"text": self.reply.text} if self.reply else None,
        }


def _reply(text: str) -> CommandResult:
    return CommandResult(should_continue=False, reply=ReplyPayload(text=text))


# ─── Target resolution ─────────────────────────────────────────────────


@dataclass(frozen=True)
class SubagentTargetResolution:
    entry: SubagentRunRecord | None = None
    error: str | None = None


def numbered_runs(runs: Sequence[SubagentRunRecord], now_ms: int) -> list[SubagentRunRecord]:
    """Runs in ``list`` order: active newest-first, then recently ended newest-first."""
    ordered = sort_subagent_runs(runs)
    cutoff = now_ms - RECENT_WINDOW_MINUTES * 60_000
    active = [r for r in ordered if r.ended_at is None]
    recent = [r for r in ordered if r.ended_at is not None and r.ended_at >= cutoff]
    return active + recent


def resolve_subagent_target(
    runs: Sequence[SubagentRunRecord], token: str | None, *, now_ms: int
) -> SubagentTargetResolution:
    """Resolve a user-supplied target token against ``runs``."""
    trimmed = (token or "").strip()
    if not trimmed:
        return SubagentTargetResolution(error="Missing subagent id.")
    if trimmed == "last":
        ordered = sort_subagent_runs(runs)
        if not ordered:
            return SubagentTargetResolution(error="No subagents.")
        return SubagentTargetResolution(entry=ordered[0])
    if _DIGITS.match(trimmed):
        numbered = numbered_runs(runs, now_ms)
        idx = int(trimmed)
        if idx <= 0 or idx > len(numbered):
            return SubagentTargetResolution(error=f"Invalid subagent index: {trimmed}")
        return SubagentTargetResolution(entry=numbered[idx - 1])
    if ":" in trimmed:
        for run in runs:
            if run.child_session_key == trimmed:
                return SubagentTargetResolution(entry=run)
        return SubagentTargetResolution(error=f"Unknown subagent session: {trimmed}")

    lowered = trimmed.lower()
    by_label = [r for r in runs if format_run_label(r).lower() == lowered]
    if len(by_label) == 1:
        return SubagentTargetResolution(entry=by_label[0])
    if by_label:
        return SubagentTargetResolution(error=f"Ambiguous subagent label: {trimmed}")

    by_label_prefix = [r for r in runs if format_run_label(r).lower().startswith(lowered)]
    if len(by_label_prefix) == 1:
        return SubagentTargetResolution(entry=by_label_prefix[0])
    if by_label_prefix:
        return SubagentTargetResolution(error=f"Ambiguous subagent label prefix: {trimmed}")

    by_run_id = [r for r in runs if r.run_id.startswith(trimmed)]
    if len(by_run_id) == 1:
        return SubagentTargetResolution(entry=by_run_id[0])
    if by_run_id:
        return SubagentTargetResolution(error=f"Ambiguous run id prefix: {trimmed}")
    return SubagentTargetResolution(error=f"Unknown subagent id: {trimmed}")


def build_subagents_help() -> str:
    return "\n".join(
        [
            "Subagents",
            "Usage:",
            "- /subagents list",
            "- /subagents kill <id|#|all>",
            "- /subagents log <id|#> [limit] [tools]",
            "- /subagents info <id|#>",
            "- /subagents send <id|#> <message>",
            "- /subagents steer <id|#> <message>",
            "- /subagents spawn <agentId> <task> [--model <model>] [--thinking <level>]",
            "- /kill <id|#|all>",
            "- /steer <id|#> <message>",
            "- /tell <id|#> <message>",
            "",
            "Ids: use the list index (#), runId/session prefix, label, or full session key.",
        ]
    )


def match_command_prefix(body: str) -> str | None:
    """Which of the handled prefixes ``body`` starts with, on a word boundary."""
    lowered = body.lower()
    for prefix in (COMMAND, COMMAND_KILL, COMMAND_STEER, COMMAND_TELL):
        if not lowered.startswith(prefix):
            continue
        rest = body[len(prefix) :]
        if not rest or rest[0].isspace():
            return prefix
    return None


def resolve_display_status(entry: SubagentRunRecord) -> str:
    status = format_run_status(entry)
    return "failed" if status == "error" else status


def format_task_preview(task: str) -> str:
    return truncate_line(compact_line(task), SUBAGENT_TASK_PREVIEW_MAX)


# ─── Handler ───────────────────────────────────────────────────────────


class SubagentCommandHandler:
    """Interprets subagent commands against one registry / spawner pair."""

    def __init__(
        self,
        *,
        cfg: ClawdConfig,
        registry: SubagentRegistry,
        store: SessionStore,
        gateway: GatewayCaller,
        spawner: SubagentSpawner,
        controller: SubagentController,
    ) -> None:
        self.cfg = cfg
        self.registry = registry
        self.store = store
        self.gateway = gateway
        self.spawner = spawner
        self.controller = controller

    def resolve_requester_session_key(self, params: CommandParams) -> str | None:
        raw = (params.session_key or "").strip() or (params.target_session_key or "").strip()
        if not raw:
            return None
        alias = resolve_main_session_alias(self.cfg)
        return resolve_internal_session_key(raw, alias=alias.alias, main_key=alias.main_key)

    def _session_entry(
        self, child_session_key: str, cache: dict[Path, dict[str, SessionEntry]] | None = None
    ) -> SessionEntry | None:
        path = self.store.path_for_session(child_session_key)
        if cache is None:
            return self.store.load(path).get(child_session_key)
        if path not in cache:
            cache[path] = self.store.load(path)
        return cache[path].get(child_session_key)

    async def handle_subagents_command(
        self, params: CommandParams, allow_text_commands: bool
    ) -> CommandResult | None:
        """Handle one command. None means "not ours" and the dispatcher moves on."""
        if not allow_text_commands:
            return None
        body = params.command_body.strip()
        prefix = match_command_prefix(body)
        if prefix is None:
            return None
        if not params.is_authorized_sender:
            logger.debug(
                "Ignoring %s from unauthorized sender: %s", prefix, params.sender_id or "<unknown>"
            )
            return CommandResult(should_continue=False)

        tokens = body[len(prefix) :].split()
        if prefix == COMMAND:
            action = tokens[0].lower() if tokens else "list"
            if action not in ACTIONS:
                return _reply(build_subagents_help())
            tokens = tokens[1:]
        elif prefix == COMMAND_KILL:
            action = "kill"
        else:
            action = "steer"

        requester_key = self.resolve_requester_session_key(params)
        if not requester_key:
            return _reply("⚠️ Missing session key.")
        if action == "help":
            return _reply(build_subagents_help())

        runs = self.registry.list_subagent_runs_for_requester(requester_key)
        try:
            if action == "list":
                return self._list(runs)
            if action == "kill":
                return await self._kill(prefix, requester_key, runs, tokens)
            if action == "info":
                return self._info(runs, tokens)
            if action == "log":
                return await self._log(runs, tokens)
            if action in ("send", "steer"):
                return await self._send(prefix, action == "steer", runs, tokens)
            return await self._spawn(params, requester_key, tokens)
        except GatewayError as e:
            logger.warning("subagents %s failed: %s", action, e)
            return _reply(f"⚠️ {action} failed: {e}")
        except Exception as e:
            logger.error("subagents %s failed: %s", action, e, exc_info=True)
            return _reply(f"⚠️ {action} failed: {e}")

    def _resolve(
        self, runs: Sequence[SubagentRunRecord], token: str
    ) -> SubagentTargetResolution:
        return resolve_subagent_target(runs, token, now_ms=self.registry.now_ms())

    # ── list ──

    def _format_list_line(
        self,
        index: int,
        entry: SubagentRunRecord,
        runtime_ms: int,
        cache: dict[Path, dict[str, SessionEntry]],
    ) -> str:
        session_entry = self._session_entry(entry.child_session_key, cache)
        usage = format_token_usage_display(session_entry)
        label = truncate_line(format_run_label(entry, LIST_LABEL_MAX), LIST_LABEL_MAX)
        task = format_task_preview(entry.task)
        details = f"{resolve_model_display(session_entry, entry.model)}, "
        details += format_duration_compact(runtime_ms)
        if usage:
            details += f", {usage}"
        line = f"{index}. {label} ({details}) {resolve_display_status(entry)}"
        if task.lower() != label.lower():
            line += f" - {task}"
        return line

    def _list(self, runs: Sequence[SubagentRunRecord]) -> CommandResult:
        now = self.registry.now_ms()
        cache: dict[Path, dict[str, SessionEntry]] = {}
        active_lines: list[str] = []
        recent_lines: list[str] = []
        for index, entry in enumerate(numbered_runs(runs, now), start=1):
            started = entry.started_at or entry.created_at
            if entry.ended_at is None:
                active_lines.append(self._format_list_line(index, entry, now - started, cache))
            else:
                recent_lines.append(
                    self._format_list_line(index, entry, entry.ended_at - started, cache)
                )

        lines = ["active subagents:", "-----"]
        lines.extend(active_lines or ["(none)"])
        lines += ["", f"recent subagents (last {RECENT_WINDOW_MINUTES}m):", "-----"]
        lines.extend(recent_lines or ["(none)"])
        return _reply("\n".join(lines))

    # ── kill ──

    async def _kill(
        self,
        prefix: str,
        requester_key: str,
        runs: Sequence[SubagentRunRecord],
        tokens: list[str],
    ) -> CommandResult:
        target = tokens[0] if tokens else ""
        if not target:
            if prefix == COMMAND:
                return _reply("Usage: /subagents kill <id|#|all>")
            return _reply("Usage: /kill <id|#|all>")
        if target in ("all", "*"):
            stopped = await self.controller.stop_subagents_for_requester(requester_key)
            return _reply(f"Stopped {stopped} subagent(s).")

        resolved = self._resolve(runs, target)
        if resolved.entry is None:
            return _reply(f"⚠️ {resolved.error or 'Unknown subagent.'}")
        entry = resolved.entry
        if entry.ended_at is not None:
            return _reply(f"{format_run_label(entry)} is already finished.")
        await self.controller.kill_run(entry)
        return _reply(f"Killed {format_run_label(entry)}.")

    # ── info ──

    def _info(self, runs: Sequence[SubagentRunRecord], tokens: list[str]) -> CommandResult:
        if not tokens:
            return _reply("ℹ️ Usage: /subagents info <id|#>")
        resolved = self._resolve(runs, tokens[0])
        if resolved.entry is None:
            return _reply(f"⚠️ {resolved.error or 'Unknown subagent.'}")
        run = resolved.entry

        now = self.registry.now_ms()
        session_entry = self._session_entry(run.child_session_key)
        runtime = (
            format_duration_compact((run.ended_at or now) - run.started_at)
            if run.started_at
            else "n/a"
        )
        outcome = "n/a"
        if run.outcome:
            outcome = run.outcome.status.value
            if run.outcome.error:
                outcome += f" ({run.outcome.error})"

        lines = [
            "ℹ️ Subagent info",
            f"Status: {resolve_display_status(run)}",
            f"Label: {format_run_label(run)}",
            f"Task: {run.task}",
            f"Run: {run.run_id}",
            f"Session: {run.child_session_key}",
            f"SessionId: {(session_entry.session_id if session_entry else '') or 'n/a'}",
            f"Transcript: {(session_entry.session_file if session_entry else None) or 'n/a'}",
            f"Runtime: {runtime}",
            f"Created: {format_timestamp_with_age(run.created_at, now)}",
            f"Started: {format_timestamp_with_age(run.started_at, now)}",
            f"Ended: {format_timestamp_with_age(run.ended_at, now)}",
            f"Cleanup: {run.cleanup.value}",
        ]
        if run.archive_at_ms:
            lines.append(f"Archive: {format_timestamp_with_age(run.archive_at_ms, now)}")
        if run.cleanup_handled:
            lines.append("Cleanup handled: yes")
        lines.append(f"Outcome: {outcome}")
        return _reply("\n".join(lines))

    # ── log ──

    async def _log(self, runs: Sequence[SubagentRunRecord], tokens: list[str]) -> CommandResult:
        if not tokens:
            return _reply("📜 Usage: /subagents log <id|#> [limit]")
        options = tokens[1:]
        include_tools = any(token.lower() == "tools" for token in options)
        limit_token = next((token for token in options if _DIGITS.match(token)), None)
        limit = (
            min(LOG_MAX_LIMIT, max(1, int(limit_token))) if limit_token else LOG_DEFAULT_LIMIT
        )
        resolved = self._resolve(runs, tokens[0])
        if resolved.entry is None:
            return _reply(f"⚠️ {resolved.error or 'Unknown subagent.'}")
        entry = resolved.entry

        history = await self.gateway.call(
            "chat.history", {"sessionKey": entry.child_session_key, "limit": limit}
        )
        messages = history.get("messages")
        raw = messages if isinstance(messages, list) else []
        lines = format_log_lines(raw if include_tools else strip_tool_messages(raw))
        header = f"📜 Subagent log: {format_run_label(entry)}"
        if not lines:
            return _reply(f"{header}\n(no messages)")
        return _reply("\n".join([header, *lines]))

    # ── send / steer ──

    async def _send(
        self,
        prefix: str,
        steer: bool,
        runs: Sequence[SubagentRunRecord],
        tokens: list[str],
    ) -> CommandResult:
        target = tokens[0] if tokens else ""
        message = " ".join(tokens[1:]).strip()
        if not target or not message:
            if not steer:
                return _reply("Usage: /subagents send <id|#> <message>")
            if prefix == COMMAND:
                return _reply("Usage: /subagents steer <id|#> <message>")
            return _reply(f"Usage: {prefix} <id|#> <message>")

        resolved = self._resolve(runs, target)
        if resolved.entry is None:
            return _reply(f"⚠️ {resolved.error or 'Unknown subagent.'}")
        entry = resolved.entry
        label = format_run_label(entry)

        if steer:
            if entry.ended_at is not None:
                return _reply(f"{label} is already finished.")
            try:
                replacement = await self.controller.steer(entry, message)
            except (GatewayError, ValueError) as e:
                return _reply(f"send failed: {e}")
            return _reply(f"steered {label} (run {replacement.run_id[:8]}).")

        child = self.controller.load_child_session(entry.child_session_key)
        try:
            run_id = await self.controller.launch_run(
                entry.child_session_key, message, child.session_id
            )
        except GatewayError as e:
            return _reply(f"send failed: {e}")

        try:
            wait = await self.gateway.call(
                "agent.wait",
                {"runId": run_id, "timeoutMs": SEND_WAIT_MS},
                timeout_ms=SEND_WAIT_MS + 2_000,
            )
        except GatewayTimeoutError:
            wait = {"status": "timeout"}
        status = wait.get("status")
        if status == "timeout":
            return _reply(f"⏳ Subagent still running (run {run_id[:8]}).")
        if status == "error":
            wait_error = wait.get("error")
            wait_error = wait_error if isinstance(wait_error, str) else "unknown error"
            return _reply(f"⚠️ Subagent error: {wait_error} (run {run_id[:8]}).")

        history = await self.gateway.call(
            "chat.history", {"sessionKey": entry.child_session_key, "limit": SEND_HISTORY_LIMIT}
        )
        messages = history.get("messages")
        filtered = strip_tool_messages(messages if isinstance(messages, list) else [])
        reply_text = extract_assistant_text(filtered[-1]) if filtered else None
        return _reply(reply_text or f"✅ Sent to {label} (run {run_id[:8]}).")

    # ── spawn ──

    async def _spawn(
        self, params: CommandParams, requester_key: str, tokens: list[str]
    ) -> CommandResult:
        agent_id = tokens[0] if tokens else ""
        task_parts: list[str] = []
        model: str | None = None
        thinking: str | None = None
        i = 1
        while i < len(tokens):
            token = tokens[i]
            if token == "--model" and i + 1 < len(tokens):
                model = tokens[i + 1]
                i += 2
                continue
            if token == "--thinking" and i + 1 < len(tokens):
                thinking = tokens[i + 1]
                i += 2
                continue
            task_parts.append(token)
            i += 1
        task = " ".join(task_parts).strip()
        if not agent_id or not task:
            return _reply(
                "Usage: /subagents spawn <agentId> <task> [--model <model>] [--thinking <level>]"
            )

        result = await self.spawner.spawn_subagent_direct(
            SpawnSubagentParams(
                task=task, agent_id=agent_id, model=model, thinking=thinking, cleanup="keep"
            ),
            SpawnSubagentContext(
                agent_session_key=requester_key,
                agent_channel=params.channel,
                agent_account_id=params.account_id,
                agent_to=params.to,
                agent_thread_id=params.thread_id,
            ),
        )
        if result.status == SpawnStatus.ACCEPTED:
            text = (
                f"Spawned subagent {agent_id} "
                f"(session {result.child_session_key}, run {(result.run_id or '')[:8]})."
            )
            if result.warning:
                text += f" Warning: {result.warning}"
            return _reply(text)
        return _reply(f"Spawn failed: {result.error or result.status}")
