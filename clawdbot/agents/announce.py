"""
Subagent announcements — the child's system prompt, and reporting each
finished run back to the chat that spawned it.

SubagentAnnouncer hooks into the registry:
- on register: watch the run with ``agent.wait`` until it settles, then
  record the outcome (the registry decides whether to announce)
- on announce: read the child's last reply via ``chat.history`` and post it
  into the requester session with ``deliver: true``

Runs marked for steer-restart or killed never reach the announce hook.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Coroutine
from typing import Any

from clawdbot.agents.models import (
    CleanupMode,
    DeliveryContext,
    RunOutcomeStatus,
    SubagentRunRecord,
)
from clawdbot.agents.registry import SubagentRegistry
from clawdbot.gateway.client import GatewayCaller, GatewayError, compact_params
from clawdbot.reply.format import (
    extract_assistant_text,
    format_run_label,
    strip_tool_messages,
)

logger = logging.getLogger(__name__)

# agent.wait slice when the run has no timeout of its own
WAIT_CHUNK_MS = 60_000
WAIT_RPC_GRACE_MS = 2_000
ANNOUNCE_HISTORY_LIMIT = 50


def build_subagent_system_prompt(
    *,
    requester_session_key: str | None,
    requester_origin: DeliveryContext | None,
    child_session_key: str,
    task: str,
    label: str | None = None,
    child_depth: int = 1,
    max_spawn_depth: int = 1,
) -> str:
    """System-prompt addendum telling a child what it is and where it sits."""
    lines = [
        "# Subagent Context",
        "",
        "You are a subagent spawned by another agent session to complete one task.",
        "Your final reply is reported back to the requester automatically; do not",
        "message the user directly.",
        "",
        f"- Requester session: {requester_session_key or 'unknown'}",
    ]
    if requester_origin and requester_origin.channel:
        lines.append(f"- Requester channel: {requester_origin.channel}")
    lines.append(f"- Your session: {child_session_key}")
    if label:
        lines.append(f"- Label: {label}")
    lines.append(f"- Spawn depth: {child_depth} (max {max_spawn_depth})")
    if child_depth >= max_spawn_depth:
        lines.append("- You cannot spawn further subagents.")
    else:
        lines.append("- You may spawn subagents of your own with sessions_spawn.")
    lines += ["", "## Task", task.strip()]
    return "\n".join(lines)


def format_announcement(record: SubagentRunRecord, reply: str | None) -> str:
    status = record.outcome.status if record.outcome else RunOutcomeStatus.UNKNOWN
    label = format_run_label(record)
    if status is RunOutcomeStatus.OK:
        header = f"Subagent {label} finished."
    elif status is RunOutcomeStatus.TIMEOUT:
        header = f"Subagent {label} timed out."
    else:
        error = record.outcome.error if record.outcome else None
        header = f"Subagent {label} failed: {error or status.value}."
    return f"{header}\n\n{reply or '(no output)'}"


class SubagentAnnouncer:
    """Watches registered runs and announces their completion."""

    def __init__(
        self,
        gateway: GatewayCaller,
        registry: SubagentRegistry,
        *,
        wait_chunk_ms: int = WAIT_CHUNK_MS,
    ) -> None:
        self.gateway = gateway
        self.registry = registry
        self.wait_chunk_ms = wait_chunk_ms
        self._tasks: set[asyncio.Task] = set()

    def attach(self) -> None:
        self.registry.add_registered_listener(self._on_registered)
        self.registry.add_announce_listener(self._on_announce)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Listener glue ──

    def _schedule(
        self,
        fn: Callable[[SubagentRunRecord], Coroutine[Any, Any, None]],
        record: SubagentRunRecord,
    ) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, not scheduling %s for %s", fn.__name__, record.run_id)
            return
        task = loop.create_task(fn(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_registered(self, record: SubagentRunRecord) -> None:
        self._schedule(self.watch_run, record)

    def _on_announce(self, record: SubagentRunRecord) -> None:
        self._schedule(self.announce, record)

    # ── Watch ──

    async def watch_run(self, record: SubagentRunRecord) -> None:
        """Wait for ``record`` to settle and record its outcome."""
        run_id = record.run_id
        while True:
            current = self.registry.get_subagent_run(run_id)
            if current is None or current.ended_at is not None:
                return
            bounded = current.run_timeout_seconds > 0
            wait_ms = current.run_timeout_seconds * 1000 if bounded else self.wait_chunk_ms
            try:
                payload = await self.gateway.call(
                    "agent.wait",
                    {"runId": run_id, "timeoutMs": wait_ms},
                    timeout_ms=wait_ms + WAIT_RPC_GRACE_MS,
                )
            except GatewayError as e:
                logger.warning("agent.wait failed for run %s: %s", run_id, e)
                return

            status = payload.get("status")
            if status == "timeout":
                if not bounded:
                    continue
                self.registry.complete_subagent_run(run_id, status=RunOutcomeStatus.TIMEOUT)
                return
            if status == "error":
                error = payload.get("error")
                self.registry.complete_subagent_run(
                    run_id,
                    status=RunOutcomeStatus.ERROR,
                    error=error if isinstance(error, str) else None,
                )
                return
            ended_at = payload.get("endedAt")
            self.registry.complete_subagent_run(
                run_id,
                status=RunOutcomeStatus.OK,
                ended_at=ended_at if isinstance(ended_at, int) else None,
            )
            return

    # ── Announce ──

    async def read_latest_reply(self, child_session_key: str) -> str | None:
        history = await self.gateway.call(
            "chat.history", {"sessionKey": child_session_key, "limit": ANNOUNCE_HISTORY_LIMIT}
        )
        messages = history.get("messages")
        filtered = strip_tool_messages(messages if isinstance(messages, list) else [])
        for message in reversed(filtered):
            text = extract_assistant_text(message)
            if text:
                return text
        return None

    async def announce(self, record: SubagentRunRecord) -> None:
        """Post the outcome of ``record`` into its requester session."""
        try:
            reply = await self.read_latest_reply(record.child_session_key)
        except GatewayError as e:
            logger.warning("Failed to read history for %s: %s", record.child_session_key, e)
            reply = None

        origin = record.requester_origin
        params = compact_params(
            {
                "message": format_announcement(record, reply),
                "sessionKey": record.requester_session_key,
                "channel": origin.channel if origin else None,
                "to": origin.to if origin else None,
                "accountId": origin.account_id if origin else None,
                "threadId": origin.thread_id if origin else None,
                "deliver": True,
                "idempotencyKey": str(uuid.uuid4()),
            }
        )
        try:
            await self.gateway.call("agent", params)
        except GatewayError as e:
            logger.warning(
                "Failed to announce run %s to %s: %s",
                record.run_id,
                record.requester_session_key,
                e,
            )
            return
        logger.info("Announced run %s to %s", record.run_id, record.requester_session_key)

        if record.cleanup is CleanupMode.DELETE:
            try:
                await self.gateway.call(
                    "sessions.delete",
                    {"key": record.child_session_key, "deleteTranscript": True},
                )
            except GatewayError as e:
                logger.warning("Failed to delete session %s: %s", record.child_session_key, e)
                return
        self.registry.mark_subagent_run_cleanup_handled(record.run_id)
