"""
Interruption & steering — kill, cascade-stop, and redirect subagent runs.

Steering a live run R:
1. flag R for steer-restart so its settlement is not announced
2. abort the embedded run for the child's session id
3. drain queued follow-ups and lane work for the child
4. best-effort wait (5s) for R to settle; failures are ignored
5. launch the steer message as a new run on the same child session
6. swap R for the new run in the registry

A run killed during step 4 is not relaunched. If step 5 fails, step 1 is
undone so R's real completion still gets announced, and the gateway
error propagates to the caller.

Killing is advisory: the abort is sent and the registry marks the run
``killed`` immediately, whether or not the engine has stopped yet.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from clawdbot.agents.models import (
    AGENT_LANE_SUBAGENT,
    INTERNAL_MESSAGE_CHANNEL,
    RunOutcomeStatus,
    SubagentRunRecord,
    SuppressReason,
)
from clawdbot.gateway.client import DEFAULT_TIMEOUT_MS, GatewayError, compact_params
from clawdbot.reply.queue import ClearSessionQueuesResult

if TYPE_CHECKING:
    from clawdbot.agents.registry import SubagentRegistry
    from clawdbot.agents.runs import EmbeddedRunRegistry
    from clawdbot.gateway.client import GatewayCaller
    from clawdbot.reply.queue import SessionQueues
    from clawdbot.sessions.store import SessionEntry, SessionStore

logger = logging.getLogger(__name__)

STEER_ABORT_SETTLE_TIMEOUT_MS = 5_000
SETTLE_RPC_GRACE_MS = 2_000


@dataclass
class ChildSession:
    """Store location and entry of a child session."""

    path: Path
    entry: SessionEntry | None

    @property
    def session_id(self) -> str | None:
        session_id = self.entry.session_id if self.entry else None
        if not isinstance(session_id, str):
            return None
        return session_id.strip() or None


class SubagentController:
    """Kill, stop and steer operations over the registry and the gateway."""

    def __init__(
        self,
        *,
        gateway: GatewayCaller,
        registry: SubagentRegistry,
        store: SessionStore,
        runs: EmbeddedRunRegistry,
        queues: SessionQueues,
    ) -> None:
        self.gateway = gateway
        self.registry = registry
        self.store = store
        self.runs = runs
        self.queues = queues

    def load_child_session(self, child_session_key: str) -> ChildSession:
        path = self.store.path_for_session(child_session_key)
        return ChildSession(path=path, entry=self.store.load(path).get(child_session_key))

    def interrupt(
        self, child_session_key: str, session_id: str | None, *, reason: str
    ) -> ClearSessionQueuesResult:
        """Abort the embedded run and drain the child's queues."""
        if session_id:
            self.runs.abort_embedded_run(session_id)
        cleared = self.queues.clear_session_queues([child_session_key, session_id])
        if cleared.followup_cleared or cleared.lane_cleared:
            logger.debug(
                "subagents %s: cleared followups=%d lane=%d keys=%s",
                reason,
                cleared.followup_cleared,
                cleared.lane_cleared,
                ",".join(cleared.keys),
            )
        return cleared

    # ── Kill ──

    async def _stop_run(self, record: SubagentRunRecord) -> None:
        child_key = record.child_session_key
        child = self.load_child_session(child_key)
        self.interrupt(child_key, child.session_id, reason="kill")
        if child.entry is not None:
            now = self.registry.now_ms()

            def _mark_aborted(entries: dict[str, SessionEntry]) -> None:
                entry = entries.get(child_key)
                if entry is not None:
                    entry.aborted_last_run = True
                    entry.updated_at = now

            await self.store.update(child.path, _mark_aborted)
        self.registry.mark_subagent_run_terminated(
            run_id=record.run_id,
            child_session_key=child_key,
            reason=RunOutcomeStatus.KILLED,
        )

    async def kill_run(self, record: SubagentRunRecord) -> int:
        """Kill one run and everything it spawned. Returns runs stopped."""
        if record.ended_at is not None:
            return 0
        await self._stop_run(record)
        cascaded = await self.stop_subagents_for_requester(record.child_session_key)
        return 1 + cascaded

    async def stop_subagents_for_requester(self, requester_session_key: str) -> int:
        """Stop every active run below ``requester_session_key``.

        Breadth-first over requester → child links; each session is visited
        once, so a malformed cyclic chain still terminates.
        """
        pending: deque[str] = deque([requester_session_key])
        visited = {requester_session_key}
        stopped = 0
        while pending:
            key = pending.popleft()
            for record in self.registry.list_subagent_runs_for_requester(key):
                if record.ended_at is None:
                    await self._stop_run(record)
                    stopped += 1
                child_key = record.child_session_key
                if child_key not in visited:
                    visited.add(child_key)
                    pending.append(child_key)
        if stopped:
            logger.info("Stopped %d subagent run(s) under %s", stopped, requester_session_key)
        return stopped

    # ── Launch ──

    async def launch_run(
        self, child_session_key: str, message: str, session_id: str | None = None
    ) -> str:
        """Start a non-delivering run on the child session; returns its run id."""
        idempotency_key = str(uuid.uuid4())
        response = await self.gateway.call(
            "agent",
            compact_params(
                {
                    "message": message,
                    "sessionKey": child_session_key,
                    "sessionId": session_id,
                    "idempotencyKey": idempotency_key,
                    "deliver": False,
                    "channel": INTERNAL_MESSAGE_CHANNEL,
                    "lane": AGENT_LANE_SUBAGENT,
                    "timeout": 0,
                }
            ),
            timeout_ms=DEFAULT_TIMEOUT_MS,
        )
        run_id = response.get("runId")
        return run_id if isinstance(run_id, str) and run_id else idempotency_key

    # ── Steer ──

    async def steer(self, record: SubagentRunRecord, message: str) -> SubagentRunRecord:
        """Redirect a live run with ``message``. Returns the replacement record.

        Raises ValueError for a run that already ended or was killed while
        settling, and GatewayError when the relaunch fails.
        """
        if record.ended_at is not None:
            raise ValueError(f"run {record.run_id} already ended")

        child_key = record.child_session_key
        child = self.load_child_session(child_key)

        self.registry.mark_subagent_run_for_steer_restart(record.run_id)
        self.interrupt(child_key, child.session_id, reason="steer")

        try:
            await self.gateway.call(
                "agent.wait",
                {"runId": record.run_id, "timeoutMs": STEER_ABORT_SETTLE_TIMEOUT_MS},
                timeout_ms=STEER_ABORT_SETTLE_TIMEOUT_MS + SETTLE_RPC_GRACE_MS,
            )
        except GatewayError as e:
            logger.debug("Settle wait for run %s failed, steering anyway: %s", record.run_id, e)

        current = self.registry.get_subagent_run(record.run_id)
        if current is not None and current.suppress_announce_reason is SuppressReason.KILLED:
            logger.info("Run %s was killed while settling; not relaunching", record.run_id)
            raise ValueError(f"run {record.run_id} was killed during steer")

        try:
            next_run_id = await self.launch_run(child_key, message, child.session_id)
        except GatewayError:
            self.registry.clear_subagent_run_steer_restart(record.run_id)
            raise

        replacement = self.registry.replace_subagent_run_after_steer(
            previous_run_id=record.run_id,
            next_run_id=next_run_id,
            fallback=record,
            run_timeout_seconds=record.run_timeout_seconds,
        )
        if replacement is None:
            raise RuntimeError(f"run {record.run_id} vanished during steer")
        return replacement
