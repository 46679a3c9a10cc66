"""
Data models for subagent orchestration.

All models are plain dataclasses — no ORM, no Pydantic. Timestamps are
epoch milliseconds, matching what the gateway stores.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

# Execution lane for subagent runs in the gateway's command queue
AGENT_LANE_SUBAGENT = "subagent"

# Channel used when the core itself talks to a child session
INTERNAL_MESSAGE_CHANNEL = "webchat"


class SpawnStatus(StrEnum):
    ACCEPTED = "accepted"
    FORBIDDEN = "forbidden"
    ERROR = "error"


class CleanupMode(StrEnum):
    KEEP = "keep"
    DELETE = "delete"


class RunOutcomeStatus(StrEnum):
    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"
    KILLED = "killed"
    UNKNOWN = "unknown"


class SuppressReason(StrEnum):
    STEER_RESTART = "steer-restart"
    KILLED = "killed"


@dataclass(frozen=True)
class DeliveryContext:
    """Where a completion announcement for the requester should be routed."""

    channel: str | None = None
    account_id: str | None = None
    to: str | None = None
    thread_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "accountId": self.account_id,
            "to": self.to,
            "threadId": self.thread_id,
        }


def normalize_delivery_context(
    channel: str | None = None,
    account_id: str | None = None,
    to: str | None = None,
    thread_id: str | int | None = None,
) -> DeliveryContext | None:
    """Trim the routing fields; None when nothing is left."""

    def _clean(value: str | int | None) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    ctx = DeliveryContext(
        channel=_clean(channel),
        account_id=_clean(account_id),
        to=_clean(to),
        thread_id=_clean(thread_id),
    )
    if not any((ctx.channel, ctx.account_id, ctx.to, ctx.thread_id)):
        return None
    return ctx


@dataclass
class RunOutcome:
    status: RunOutcomeStatus
    error: str | None = None


@dataclass
class SubagentRunRecord:
    """One spawn (or steer relaunch) of a child agent session."""

    run_id: str
    child_session_key: str
    requester_session_key: str
    requester_display_key: str
    task: str
    cleanup: CleanupMode = CleanupMode.KEEP
    requester_origin: DeliveryContext | None = None
    label: str | None = None
    model: str | None = None
    run_timeout_seconds: int = 0  # 0 = no timeout

    created_at: int = 0
    started_at: int | None = None
    ended_at: int | None = None
    outcome: RunOutcome | None = None

    # Soft-deletion bookkeeping
    archive_at_ms: int | None = None
    cleanup_handled: bool = False

    # Announce gating: set while a steer replaces this run, or once killed
    suppress_announce_reason: SuppressReason | None = None
    announce_deferred: bool = False

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "childSessionKey": self.child_session_key,
            "requesterSessionKey": self.requester_session_key,
            "requesterDisplayKey": self.requester_display_key,
            "requesterOrigin": self.requester_origin.to_dict() if self.requester_origin else None,
            "task": self.task,
            "label": self.label,
            "model": self.model,
            "cleanup": self.cleanup.value,
            "runTimeoutSeconds": self.run_timeout_seconds,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "outcome": (
                {"status": self.outcome.status.value, "error": self.outcome.error}
                if self.outcome
                else None
            ),
            "archiveAtMs": self.archive_at_ms,
            "cleanupHandled": self.cleanup_handled,
        }


@dataclass
class SpawnSubagentParams:
    """A spawn request — from the sessions_spawn tool or /subagents spawn."""

    task: str
    label: str | None = None
    agent_id: str | None = None
    model: str | None = None
    thinking: str | None = None
    run_timeout_seconds: int | float | None = None
    cleanup: str | None = None


@dataclass
class SpawnSubagentContext:
    """Requester-side routing for a spawn."""

    agent_session_key: str | None = None
    agent_channel: str | None = None
    agent_account_id: str | None = None
    agent_to: str | None = None
    agent_thread_id: str | int | None = None
    agent_group_id: str | None = None
    agent_group_channel: str | None = None
    agent_group_space: str | None = None
    # Explicit agent for cron/hook sessions whose key does not parse
    requester_agent_id_override: str | None = None


@dataclass
class SpawnSubagentResult:
    status: SpawnStatus
    child_session_key: str | None = None
    run_id: str | None = None
    model_applied: bool | None = None
    warning: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"status": self.status.value}
        if self.child_session_key is not None:
            out["childSessionKey"] = self.child_session_key
        if self.run_id is not None:
            out["runId"] = self.run_id
        if self.model_applied is not None:
            out["modelApplied"] = self.model_applied
        if self.warning is not None:
            out["warning"] = self.warning
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class AgentWaitResult:
    """Result of ``agent.wait``."""

    status: str  # ok | timeout | error
    error: str | None = None
    started_at: int | None = None
    ended_at: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> AgentWaitResult:
        status = payload.get("status")
        error = payload.get("error")
        started = payload.get("startedAt")
        ended = payload.get("endedAt")
        return cls(
            status=status if isinstance(status, str) else "ok",
            error=error if isinstance(error, str) else None,
            started_at=started if isinstance(started, int) else None,
            ended_at=ended if isinstance(ended, int) else None,
            extra={k: v for k, v in payload.items() if k not in ("status", "error")},
        )
