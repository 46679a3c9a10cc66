"""
Subagent registry — in-memory table of subagent runs.

Single source of truth for which subagent runs exist and what state they
are in. Indexed by run id; requester lookups scan the table. Nothing is
persisted: a process restart forgets every run, and the gateway (which
owns the live runs) keeps going without us.

Every operation is synchronous and never suspends, so coroutines cannot
interleave inside one. The RLock extends the same atomicity to threads.

Listeners are plain callables invoked after the lock is released:
- registered: a run was inserted (spawn or steer replacement)
- announce: a run settled and its completion should be reported
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
import time
import uuid
from collections.abc import Callable

from clawdbot.agents.config import DEFAULT_ARCHIVE_AFTER_MINUTES
from clawdbot.agents.models import (
    CleanupMode,
    DeliveryContext,
    RunOutcome,
    RunOutcomeStatus,
    SubagentRunRecord,
    SuppressReason,
)

logger = logging.getLogger(__name__)

RunListener = Callable[[SubagentRunRecord], None]

SWEEP_INTERVAL_SECONDS = 60.0


def _now_ms() -> int:
    return int(time.time() * 1000)


class SubagentRegistry:
    """Process-wide table of subagent runs, owned by whoever wires the runtime."""

    def __init__(
        self,
        *,
        archive_after_minutes: int = DEFAULT_ARCHIVE_AFTER_MINUTES,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._runs: dict[str, SubagentRunRecord] = {}
        self._lock = threading.RLock()
        self._clock = clock or _now_ms
        self.archive_after_ms = max(0, archive_after_minutes) * 60_000
        self._registered_listeners: list[RunListener] = []
        self._announce_listeners: list[RunListener] = []
        # reservation id → requester session key, for spawns still launching
        self._pending: dict[str, str] = {}

    def now_ms(self) -> int:
        return self._clock()

    # ── Listeners ──

    def add_registered_listener(self, listener: RunListener) -> None:
        self._registered_listeners.append(listener)

    def add_announce_listener(self, listener: RunListener) -> None:
        self._announce_listeners.append(listener)

    def _emit(self, listeners: list[RunListener], record: SubagentRunRecord) -> None:
        for listener in list(listeners):
            try:
                listener(record)
            except Exception as e:
                logger.error("Listener failed for run %s: %s", record.run_id, e, exc_info=True)

    # ── Insert ──

    def register_subagent_run(
        self,
        *,
        run_id: str,
        child_session_key: str,
        requester_session_key: str,
        requester_display_key: str,
        task: str,
        cleanup: CleanupMode = CleanupMode.KEEP,
        requester_origin: DeliveryContext | None = None,
        label: str | None = None,
        model: str | None = None,
        run_timeout_seconds: int = 0,
        reservation: str | None = None,
    ) -> SubagentRunRecord:
        """Insert a freshly launched run. Run ids are unique.

        ``reservation`` is the child slot taken at admission; it is consumed
        by the insert.
        """
        now = self._clock()
        record = SubagentRunRecord(
            run_id=run_id,
            child_session_key=child_session_key,
            requester_session_key=requester_session_key,
            requester_display_key=requester_display_key,
            task=task,
            cleanup=cleanup,
            requester_origin=requester_origin,
            label=label,
            model=model,
            run_timeout_seconds=max(0, run_timeout_seconds),
            created_at=now,
            started_at=now,
        )
        with self._lock:
            self._sweep_locked(now)
            if run_id in self._runs:
                raise ValueError(f"subagent run already registered: {run_id}")
            self._runs[run_id] = record
            if reservation is not None:
                self._pending.pop(reservation, None)
        logger.info(
            "Registered subagent run %s (child=%s, requester=%s)",
            run_id,
            child_session_key,
            requester_session_key,
        )
        self._emit(self._registered_listeners, record)
        return record

    # ── Queries ──

    def get_subagent_run(self, run_id: str) -> SubagentRunRecord | None:
        with self._lock:
            return self._runs.get(run_id)

    def _count_active_locked(self, session_key: str) -> int:
        running = sum(
            1
            for r in self._runs.values()
            if r.requester_session_key == session_key and r.ended_at is None
        )
        reserved = sum(1 for key in self._pending.values() if key == session_key)
        return running + reserved

    def count_active_runs_for_session(self, session_key: str) -> int:
        """Non-ended runs plus reserved child slots whose requester is ``session_key``."""
        with self._lock:
            return self._count_active_locked(session_key)

    # ── Child slots ──

    def reserve_child_slot(self, session_key: str, max_children: int) -> str | None:
        """Take a child slot for a spawn that is about to launch.

        Returns a reservation id, or None when ``session_key`` already has
        ``max_children`` active or reserved children. Pass the id to
        register_subagent_run on success and to release_child_slot always.
        """
        with self._lock:
            if self._count_active_locked(session_key) >= max_children:
                return None
            reservation = uuid.uuid4().hex
            self._pending[reservation] = session_key
            return reservation

    def release_child_slot(self, reservation: str) -> bool:
        """Drop an unused reservation. False when it was already consumed."""
        with self._lock:
            return self._pending.pop(reservation, None) is not None

    def list_subagent_runs_for_requester(self, session_key: str) -> list[SubagentRunRecord]:
        """Active and not-yet-archived ended runs spawned by ``session_key``."""
        with self._lock:
            self._sweep_locked(self._clock())
            return [r for r in self._runs.values() if r.requester_session_key == session_key]

    def list_all_runs(self) -> list[SubagentRunRecord]:
        with self._lock:
            return list(self._runs.values())

    def find_run_by_child_session_key(self, child_session_key: str) -> SubagentRunRecord | None:
        """Most recently started run on ``child_session_key``."""
        with self._lock:
            matches = [r for r in self._runs.values() if r.child_session_key == child_session_key]
        if not matches:
            return None
        return max(matches, key=lambda r: r.started_at or r.created_at)

    # ── Termination ──

    def mark_subagent_run_terminated(
        self,
        *,
        run_id: str | None = None,
        child_session_key: str | None = None,
        reason: RunOutcomeStatus = RunOutcomeStatus.KILLED,
        error: str | None = None,
    ) -> int:
        """End matching runs with ``reason``. Already-ended runs are left alone.

        Matches the run id and/or every run on the child session. Returns the
        number of runs that transitioned, so a repeat call returns 0.
        """
        if not run_id and not child_session_key:
            return 0
        now = self._clock()
        updated = 0
        with self._lock:
            for record in self._runs.values():
                matched = (run_id and record.run_id == run_id) or (
                    child_session_key and record.child_session_key == child_session_key
                )
                if not matched or record.ended_at is not None:
                    continue
                record.ended_at = now
                record.outcome = RunOutcome(status=reason, error=error)
                record.archive_at_ms = now + self.archive_after_ms
                record.cleanup_handled = True
                if reason is RunOutcomeStatus.KILLED:
                    record.suppress_announce_reason = SuppressReason.KILLED
                record.announce_deferred = False
                updated += 1
        if updated:
            logger.info(
                "Terminated %d subagent run(s) (run=%s, child=%s, reason=%s)",
                updated,
                run_id,
                child_session_key,
                reason,
            )
        return updated

    def complete_subagent_run(
        self,
        run_id: str,
        *,
        status: RunOutcomeStatus,
        error: str | None = None,
        ended_at: int | None = None,
    ) -> SubagentRunRecord | None:
        """Record the observed end of a run and announce it unless suppressed.

        Returns the record when this call ended it, None when the run is
        unknown (e.g. replaced by a steer) or had already ended.
        """
        now = self._clock()
        with self._lock:
            record = self._runs.get(run_id)
            if record is None or record.ended_at is not None:
                return None
            record.ended_at = ended_at or now
            record.outcome = RunOutcome(status=status, error=error)
            record.archive_at_ms = record.ended_at + self.archive_after_ms
            if record.suppress_announce_reason is SuppressReason.STEER_RESTART:
                record.announce_deferred = True
                announce = False
            else:
                announce = record.suppress_announce_reason is None
        if announce:
            self._emit(self._announce_listeners, record)
        else:
            logger.debug(
                "Suppressed announce for run %s (%s)", run_id, record.suppress_announce_reason
            )
        return record

    # ── Steer bookkeeping ──

    def mark_subagent_run_for_steer_restart(self, run_id: str) -> bool:
        """Flag a run as about to be replaced. No-op for unknown runs."""
        with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                return False
            record.suppress_announce_reason = SuppressReason.STEER_RESTART
            return True

    def clear_subagent_run_steer_restart(self, run_id: str) -> bool:
        """Undo mark_subagent_run_for_steer_restart.

        If the run settled while flagged, its deferred announcement fires now.
        """
        with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                return False
            if record.suppress_announce_reason is not SuppressReason.STEER_RESTART:
                return False
            record.suppress_announce_reason = None
            release = record.announce_deferred
            record.announce_deferred = False
        if release:
            logger.debug("Releasing deferred announce for run %s", run_id)
            self._emit(self._announce_listeners, record)
        return True

    def replace_subagent_run_after_steer(
        self,
        *,
        previous_run_id: str,
        next_run_id: str,
        fallback: SubagentRunRecord | None = None,
        run_timeout_seconds: int | None = None,
    ) -> SubagentRunRecord | None:
        """Retire ``previous_run_id`` and track ``next_run_id`` in its place.

        The new record inherits requester, child, task and label from the
        previous record (or ``fallback`` when it is already gone) and starts
        now. Both steps happen under one lock hold.
        """
        now = self._clock()
        with self._lock:
            source = self._runs.get(previous_run_id) or fallback
            if source is None:
                return None
            self._runs.pop(previous_run_id, None)
            replacement = dataclasses.replace(
                source,
                run_id=next_run_id,
                started_at=now,
                ended_at=None,
                outcome=None,
                archive_at_ms=None,
                cleanup_handled=False,
                suppress_announce_reason=None,
                announce_deferred=False,
                run_timeout_seconds=(
                    source.run_timeout_seconds
                    if run_timeout_seconds is None
                    else max(0, run_timeout_seconds)
                ),
            )
            self._runs[next_run_id] = replacement
        logger.info("Replaced subagent run %s with %s after steer", previous_run_id, next_run_id)
        self._emit(self._registered_listeners, replacement)
        return replacement

    # ── Archival ──

    def mark_subagent_run_cleanup_handled(self, run_id: str) -> bool:
        with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                return False
            record.cleanup_handled = True
            return True

    def release_subagent_run(self, run_id: str) -> bool:
        with self._lock:
            return self._runs.pop(run_id, None) is not None

    def _sweep_locked(self, now: int) -> int:
        expired = [
            run_id
            for run_id, r in self._runs.items()
            if r.ended_at is not None and r.archive_at_ms is not None and r.archive_at_ms <= now
        ]
        for run_id in expired:
            del self._runs[run_id]
        return len(expired)

    def sweep_archived(self, now: int | None = None) -> int:
        """Drop ended runs past their archive time. Returns the number removed."""
        with self._lock:
            removed = self._sweep_locked(self._clock() if now is None else now)
        if removed:
            logger.debug("Archived %d subagent run(s)", removed)
        return removed

    async def run_sweeper(self, interval_seconds: float = SWEEP_INTERVAL_SECONDS) -> None:
        """Periodic archival loop. Cancel the task to stop it."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep_archived()

    def reset_subagent_registry_for_tests(self) -> None:
        """Full clear. Only for testing."""
        with self._lock:
            self._runs.clear()
            self._pending.clear()
        self._registered_listeners.clear()
        self._announce_listeners.clear()
