"""
Subagent spawn engine — turn a spawn request into a running child session.

Admission runs first and has no side effects:
1. requester depth < maxSpawnDepth
2. requester active children < maxChildrenPerAgent
3. a cross-agent target must be on the requester agent's allowAgents list

Then the thinking level is validated, still before any RPC. Only then is
the child created through the gateway (spawnDepth, model, thinking patches,
then the first ``agent`` run) and registered. A child slot is reserved in
the registry from admission until the run is registered or the spawn
fails, so concurrent spawns cannot overshoot maxChildrenPerAgent.

RPC failures return status ``error`` with the child key (and run id, when
the launch itself failed) so an operator can find the orphaned session.
Nothing already applied is rolled back.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from clawdbot.agents.announce import build_subagent_system_prompt
from clawdbot.agents.config import (
    ClawdConfig,
    normalize_model_selection,
    resolve_agent_config,
    resolve_default_model_for_agent,
    split_model_ref,
)
from clawdbot.agents.depth import get_subagent_depth_from_session_store
from clawdbot.agents.models import (
    AGENT_LANE_SUBAGENT,
    CleanupMode,
    DeliveryContext,
    SpawnStatus,
    SpawnSubagentContext,
    SpawnSubagentParams,
    SpawnSubagentResult,
    normalize_delivery_context,
)
from clawdbot.agents.thinking import ThinkLevel, format_thinking_levels, normalize_think_level
from clawdbot.gateway.client import DEFAULT_TIMEOUT_MS, GatewayError, compact_params
from clawdbot.routing.session_key import (
    normalize_agent_id,
    parse_agent_session_key,
    resolve_display_session_key,
    resolve_internal_session_key,
    resolve_main_session_alias,
)

if TYPE_CHECKING:
    from clawdbot.agents.registry import SubagentRegistry
    from clawdbot.gateway.client import GatewayCaller
    from clawdbot.sessions.store import SessionStore

logger = logging.getLogger(__name__)

_RECOVERABLE_MODEL_ERRORS = ("invalid model", "model not allowed")


def _error_text(err: Exception) -> str:
    return str(err) or "error"


def _coerce_timeout_seconds(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0
    if not math.isfinite(value):
        return 0
    return max(0, math.floor(value))


def _fan_out_forbidden(active_children: int, max_children: int) -> SpawnSubagentResult:
    return SpawnSubagentResult(
        status=SpawnStatus.FORBIDDEN,
        error=(
            "sessions_spawn has reached max active children for this session "
            f"({active_children}/{max_children})"
        ),
    )


@dataclass
class _ChildPlan:
    """Everything resolved during admission that the launch needs."""

    child_session_key: str
    child_depth: int
    max_spawn_depth: int
    task: str
    label: str | None
    cleanup: CleanupMode
    run_timeout_seconds: int
    requester_session_key: str | None
    requester_internal_key: str
    requester_display_key: str
    requester_origin: DeliveryContext | None
    resolved_model: str | None
    thinking_override: ThinkLevel | None


class SubagentSpawner:
    """Admission-controlled spawning of child agent sessions."""

    def __init__(
        self,
        *,
        cfg: ClawdConfig,
        gateway: GatewayCaller,
        registry: SubagentRegistry,
        store: SessionStore,
    ) -> None:
        self.cfg = cfg
        self.gateway = gateway
        self.registry = registry
        self.store = store

    def _check_allowlist(self, requester_agent_id: str, target_agent_id: str) -> str | None:
        """Error text when ``target_agent_id`` may not be spawned, else None."""
        if target_agent_id == requester_agent_id:
            return None
        entry = resolve_agent_config(self.cfg, requester_agent_id)
        allow_agents = entry.subagents.allow_agents if entry else ()
        allow_any = any(value.strip() == "*" for value in allow_agents)
        allowed = {
            normalize_agent_id(value).lower()
            for value in allow_agents
            if value.strip() and value.strip() != "*"
        }
        if allow_any or target_agent_id.lower() in allowed:
            return None
        allowed_text = ", ".join(sorted(allowed)) if allowed else "none"
        return f"agentId is not allowed for sessions_spawn (allowed: {allowed_text})"

    def _resolve_model(self, override: str | None, target_agent_id: str) -> str | None:
        target = resolve_agent_config(self.cfg, target_agent_id)
        runtime_default = resolve_default_model_for_agent(self.cfg, target_agent_id)
        candidates = (
            override,
            target.subagents.model if target else None,
            self.cfg.defaults.subagents.model,
            self.cfg.defaults.model_primary,
            str(runtime_default),
        )
        for candidate in candidates:
            selected = normalize_model_selection(candidate)
            if selected:
                return selected
        return None

    def _resolve_thinking_raw(self, override: str | None, target_agent_id: str) -> str | None:
        target = resolve_agent_config(self.cfg, target_agent_id)
        for candidate in (
            override,
            target.subagents.thinking if target else None,
            self.cfg.defaults.subagents.thinking,
        ):
            if candidate and candidate.strip():
                return candidate.strip()
        return None

    async def spawn_subagent_direct(
        self, params: SpawnSubagentParams, ctx: SpawnSubagentContext
    ) -> SpawnSubagentResult:
        task = (params.task or "").strip()
        if not task:
            return SpawnSubagentResult(status=SpawnStatus.ERROR, error="task is required")
        label = (params.label or "").strip()
        cleanup = CleanupMode.DELETE if params.cleanup == CleanupMode.DELETE else CleanupMode.KEEP
        run_timeout_seconds = _coerce_timeout_seconds(params.run_timeout_seconds)
        requester_origin = normalize_delivery_context(
            channel=ctx.agent_channel,
            account_id=ctx.agent_account_id,
            to=ctx.agent_to,
            thread_id=ctx.agent_thread_id,
        )

        alias = resolve_main_session_alias(self.cfg)
        requester_session_key = (ctx.agent_session_key or "").strip() or None
        requester_internal_key = (
            resolve_internal_session_key(
                requester_session_key, alias=alias.alias, main_key=alias.main_key
            )
            if requester_session_key
            else alias.alias
        )
        requester_display_key = resolve_display_session_key(
            requester_internal_key, alias=alias.alias, main_key=alias.main_key
        )
        parsed = parse_agent_session_key(requester_internal_key)
        requester_agent_id = normalize_agent_id(
            ctx.requester_agent_id_override or (parsed.agent_id if parsed else None)
        )

        # ── Admission ──

        caller_depth = get_subagent_depth_from_session_store(
            requester_internal_key, cfg=self.cfg, store=self.store, registry=self.registry
        )
        max_spawn_depth = self.cfg.max_spawn_depth(requester_agent_id)
        if caller_depth >= max_spawn_depth:
            return SpawnSubagentResult(
                status=SpawnStatus.FORBIDDEN,
                error=(
                    "sessions_spawn is not allowed at this depth "
                    f"(current depth: {caller_depth}, max: {max_spawn_depth})"
                ),
            )

        max_children = self.cfg.max_children_per_agent(requester_agent_id)
        active_children = self.registry.count_active_runs_for_session(requester_internal_key)
        if active_children >= max_children:
            return _fan_out_forbidden(active_children, max_children)

        target_agent_id = (
            normalize_agent_id(params.agent_id) if params.agent_id else requester_agent_id
        )
        not_allowed = self._check_allowlist(requester_agent_id, target_agent_id)
        if not_allowed:
            return SpawnSubagentResult(status=SpawnStatus.FORBIDDEN, error=not_allowed)

        # ── Resolution ──

        resolved_model = self._resolve_model(params.model, target_agent_id)

        thinking_override: ThinkLevel | None = None
        thinking_raw = self._resolve_thinking_raw(params.thinking, target_agent_id)
        if thinking_raw:
            thinking_override = normalize_think_level(thinking_raw)
            if thinking_override is None:
                provider, model = split_model_ref(resolved_model)
                hint = format_thinking_levels(provider, model)
                return SpawnSubagentResult(
                    status=SpawnStatus.ERROR,
                    error=f'Invalid thinking level "{thinking_raw}". Use one of: {hint}.',
                )

        plan = _ChildPlan(
            child_session_key=f"agent:{target_agent_id}:subagent:{uuid.uuid4()}",
            child_depth=caller_depth + 1,
            max_spawn_depth=max_spawn_depth,
            task=task,
            label=label or None,
            cleanup=cleanup,
            run_timeout_seconds=run_timeout_seconds,
            requester_session_key=requester_session_key,
            requester_internal_key=requester_internal_key,
            requester_display_key=requester_display_key,
            requester_origin=requester_origin,
            resolved_model=resolved_model,
            thinking_override=thinking_override,
        )

        # The slot is held across the RPCs below so concurrent spawns from the
        # same requester see it in count_active_runs_for_session.
        reservation = self.registry.reserve_child_slot(requester_internal_key, max_children)
        if reservation is None:
            return _fan_out_forbidden(
                self.registry.count_active_runs_for_session(requester_internal_key), max_children
            )
        try:
            return await self._launch_child(plan, ctx, reservation)
        finally:
            self.registry.release_child_slot(reservation)

    # ── Side effects ──

    async def _launch_child(
        self, plan: _ChildPlan, ctx: SpawnSubagentContext, reservation: str
    ) -> SpawnSubagentResult:
        child_session_key = plan.child_session_key
        try:
            await self.gateway.call(
                "sessions.patch",
                {"key": child_session_key, "spawnDepth": plan.child_depth},
                timeout_ms=DEFAULT_TIMEOUT_MS,
            )
        except GatewayError as e:
            return SpawnSubagentResult(
                status=SpawnStatus.ERROR, error=_error_text(e), child_session_key=child_session_key
            )

        model_applied = False
        model_warning: str | None = None
        if plan.resolved_model:
            try:
                await self.gateway.call(
                    "sessions.patch",
                    {"key": child_session_key, "model": plan.resolved_model},
                    timeout_ms=DEFAULT_TIMEOUT_MS,
                )
                model_applied = True
            except GatewayError as e:
                message = _error_text(e)
                if not any(marker in message for marker in _RECOVERABLE_MODEL_ERRORS):
                    return SpawnSubagentResult(
                        status=SpawnStatus.ERROR,
                        error=message,
                        child_session_key=child_session_key,
                    )
                logger.warning(
                    "Model %s rejected for %s, continuing: %s",
                    plan.resolved_model,
                    child_session_key,
                    message,
                )
                model_warning = message

        thinking_override = plan.thinking_override
        if thinking_override is not None:
            try:
                await self.gateway.call(
                    "sessions.patch",
                    {
                        "key": child_session_key,
                        "thinkingLevel": (
                            None if thinking_override is ThinkLevel.OFF else thinking_override.value
                        ),
                    },
                    timeout_ms=DEFAULT_TIMEOUT_MS,
                )
            except GatewayError as e:
                return SpawnSubagentResult(
                    status=SpawnStatus.ERROR,
                    error=_error_text(e),
                    child_session_key=child_session_key,
                )

        system_prompt = build_subagent_system_prompt(
            requester_session_key=plan.requester_session_key,
            requester_origin=plan.requester_origin,
            child_session_key=child_session_key,
            label=plan.label,
            task=plan.task,
            child_depth=plan.child_depth,
            max_spawn_depth=plan.max_spawn_depth,
        )

        origin = plan.requester_origin
        idempotency_key = str(uuid.uuid4())
        run_id = idempotency_key
        try:
            response = await self.gateway.call(
                "agent",
                compact_params(
                    {
                        "message": plan.task,
                        "sessionKey": child_session_key,
                        "channel": origin.channel if origin else None,
                        "to": origin.to if origin else None,
                        "accountId": origin.account_id if origin else None,
                        "threadId": origin.thread_id if origin else None,
                        "idempotencyKey": idempotency_key,
                        "deliver": False,
                        "lane": AGENT_LANE_SUBAGENT,
                        "extraSystemPrompt": system_prompt,
                        "thinking": thinking_override.value if thinking_override else None,
                        "timeout": plan.run_timeout_seconds,
                        "label": plan.label,
                        "spawnedBy": plan.requester_internal_key,
                        "groupId": ctx.agent_group_id,
                        "groupChannel": ctx.agent_group_channel,
                        "groupSpace": ctx.agent_group_space,
                    }
                ),
                timeout_ms=DEFAULT_TIMEOUT_MS,
            )
            response_run_id = response.get("runId")
            if isinstance(response_run_id, str) and response_run_id:
                run_id = response_run_id
        except GatewayError as e:
            return SpawnSubagentResult(
                status=SpawnStatus.ERROR,
                error=_error_text(e),
                child_session_key=child_session_key,
                run_id=run_id,
            )

        self.registry.register_subagent_run(
            run_id=run_id,
            child_session_key=child_session_key,
            requester_session_key=plan.requester_internal_key,
            requester_display_key=plan.requester_display_key,
            requester_origin=origin,
            task=plan.task,
            cleanup=plan.cleanup,
            label=plan.label,
            model=plan.resolved_model,
            run_timeout_seconds=plan.run_timeout_seconds,
            reservation=reservation,
        )
        logger.info(
            "Spawned subagent %s for %s (run %s, depth %d)",
            child_session_key,
            plan.requester_internal_key,
            run_id,
            plan.child_depth,
        )
        return SpawnSubagentResult(
            status=SpawnStatus.ACCEPTED,
            child_session_key=child_session_key,
            run_id=run_id,
            model_applied=model_applied if plan.resolved_model else None,
            warning=model_warning,
        )
