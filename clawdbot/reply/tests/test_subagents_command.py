"""Tests for /subagents, /kill, /steer and /tell.

Covers:
- dispatch (not ours, unauthorized, help, missing session)
- list rendering and index numbering shared with kill/steer
- kill / kill all, info, log, send, steer
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from clawdbot.agents.models import RunOutcomeStatus
from clawdbot.gateway.client import GatewayError, GatewayTimeoutError
from clawdbot.reply.commands import CommandParams, CommandResult
from clawdbot.sessions.store import SessionEntry, update_session_store_sync

ROOT = "agent:main:main"

HISTORY = {
    "messages": [
        {"role": "user", "content": "find flights"},
        {"role": "toolCall", "content": "search(...)"},
        {"role": "toolResult", "content": "3 results"},
        {"role": "assistant", "content": "Found 3 flights."},
    ]
}


def _params(body: str, *, authorized: bool = True, session_key: str | None = "main"):
    return CommandParams(
        command_body=body,
        session_key=session_key,
        is_authorized_sender=authorized,
        sender_id="user-1",
        channel="telegram",
        to="12345",
    )


async def _run(handler, body: str, **kwargs) -> CommandResult | None:
    return await handler.handle_subagents_command(_params(body, **kwargs), True)


async def _text(handler, body: str, **kwargs) -> str:
    result = await _run(handler, body, **kwargs)
    assert result is not None
    assert result.should_continue is False
    assert result.reply is not None
    return result.reply.text


def _register(registry, run_id, label, task="find cheap flights", model=None, requester=ROOT):
    return registry.register_subagent_run(
        run_id=run_id,
        child_session_key=f"agent:main:subagent:{run_id}",
        requester_session_key=requester,
        requester_display_key="main",
        task=task,
        label=label,
        model=model,
    )


# ─── Dispatch ──────────────────────────────────────────────────────────


class TestDispatch:
    @pytest.mark.asyncio
    async def test_text_commands_disabled(self, handler):
        assert await handler.handle_subagents_command(_params("/subagents"), False) is None

    @pytest.mark.asyncio
    async def test_not_a_subagent_command(self, handler):
        assert await _run(handler, "hello there") is None
        assert await _run(handler, "/killall") is None

    @pytest.mark.asyncio
    async def test_unauthorized_sender_is_silent(self, handler, registry, gateway):
        _register(registry, "run-a", "flights")
        result = await _run(handler, "/kill all", authorized=False)
        assert result == CommandResult(should_continue=False, reply=None)
        assert registry.get_subagent_run("run-a").is_active
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_missing_session_key(self, handler):
        text = await _text(handler, "/subagents list", session_key=None)
        assert text == "⚠️ Missing session key."

    @pytest.mark.asyncio
    async def test_help_and_unknown_action(self, handler):
        help_text = await _text(handler, "/subagents help")
        assert help_text.startswith("Subagents\nUsage:")
        assert await _text(handler, "/subagents frobnicate") == help_text

    def test_result_to_dict(self):
        assert CommandResult().to_dict() == {"shouldContinue": False, "reply": None}


# ─── list ──────────────────────────────────────────────────────────────


class TestList:
    @pytest.mark.asyncio
    async def test_empty(self, handler):
        text = await _text(handler, "/subagents")
        assert text == (
            "active subagents:\n-----\n(none)\n\n"
            "recent subagents (last 30m):\n-----\n(none)"
        )

    @pytest.mark.asyncio
    async def test_active_and_recent(self, handler, registry, clock):
        _register(registry, "run-a", "flights", model="anthropic/claude-sonnet-4-5")
        clock.advance(60_000)
        _register(registry, "run-b", "hotels", task="hotels")
        clock.advance(60_000)
        _register(registry, "run-c", "cars")
        registry.complete_subagent_run("run-c", status=RunOutcomeStatus.ERROR, error="x")
        clock.advance(4 * 60_000)

        lines = (await _text(handler, "/subagents list")).splitlines()

        assert lines[0] == "active subagents:"
        assert lines[2] == "1. hotels (model n/a, 5m) running"
        assert lines[3] == "2. flights (claude-sonnet-4-5, 6m) running - find cheap flights"
        assert lines[5] == "recent subagents (last 30m):"
        assert lines[7].startswith("3. cars (model n/a, n/a) failed")

    @pytest.mark.asyncio
    async def test_list_shows_usage_from_session_store(self, handler, registry, store):
        record = _register(registry, "run-a", "flights")
        path = store.path_for_session(record.child_session_key)

        def put(entries):
            entries[record.child_session_key] = SessionEntry(
                session_id="s1", model="gpt-4o", model_provider="openai", total_tokens=1500
            )

        update_session_store_sync(path, put)
        text = await _text(handler, "/subagents list")
        assert "1. flights (gpt-4o, n/a, tokens 1.5k) running" in text

    @pytest.mark.asyncio
    async def test_only_requesters_runs_listed(self, handler, registry):
        _register(registry, "run-a", "mine")
        _register(registry, "run-b", "theirs", requester="agent:main:telegram:dm:9")
        text = await _text(handler, "/subagents list")
        assert "mine" in text
        assert "theirs" not in text


# ─── kill ──────────────────────────────────────────────────────────────


class TestKill:
    @pytest.mark.asyncio
    async def test_kill_by_index_matches_list(self, handler, registry, clock):
        _register(registry, "run-a", "flights")
        clock.advance(1_000)
        _register(registry, "run-b", "hotels")
        listing = await _text(handler, "/subagents list")
        assert "1. hotels" in listing

        assert await _text(handler, "/kill 1") == "Killed hotels."
        assert registry.get_subagent_run("run-b").outcome.status is RunOutcomeStatus.KILLED
        assert registry.get_subagent_run("run-a").is_active

    @pytest.mark.asyncio
    async def test_kill_finished(self, handler, registry):
        _register(registry, "run-a", "flights")
        await _text(handler, "/subagents kill flights")
        assert await _text(handler, "/subagents kill flights") == "flights is already finished."

    @pytest.mark.asyncio
    async def test_kill_all(self, handler, registry):
        _register(registry, "run-a", "flights")
        _register(registry, "run-b", "hotels")
        assert await _text(handler, "/kill all") == "Stopped 2 subagent(s)."
        assert await _text(handler, "/subagents kill *") == "Stopped 0 subagent(s)."

    @pytest.mark.asyncio
    async def test_kill_usage_and_unknown(self, handler):
        assert await _text(handler, "/kill") == "Usage: /kill <id|#|all>"
        assert await _text(handler, "/subagents kill") == "Usage: /subagents kill <id|#|all>"
        assert await _text(handler, "/kill zzz") == "⚠️ Unknown subagent id: zzz"
        assert await _text(handler, "/kill last") == "⚠️ No subagents."


# ─── info ──────────────────────────────────────────────────────────────


class TestInfo:
    @pytest.mark.asyncio
    async def test_info_running(self, handler, registry):
        _register(registry, "run-a", "flights")
        lines = (await _text(handler, "/subagents info 1")).splitlines()
        assert lines[0] == "ℹ️ Subagent info"
        assert "Status: running" in lines
        assert "Label: flights" in lines
        assert "Task: find cheap flights" in lines
        assert "Run: run-a" in lines
        assert "Session: agent:main:subagent:run-a" in lines
        assert "SessionId: n/a" in lines
        assert "Ended: n/a" in lines
        assert "Cleanup: keep" in lines
        assert lines[-1] == "Outcome: n/a"

    @pytest.mark.asyncio
    async def test_info_killed(self, handler, registry):
        _register(registry, "run-a", "flights")
        await _text(handler, "/kill 1")
        text = await _text(handler, "/subagents info flights")
        assert "Status: killed" in text
        assert "Cleanup handled: yes" in text
        assert "Outcome: killed" in text

    @pytest.mark.asyncio
    async def test_info_usage(self, handler):
        assert await _text(handler, "/subagents info") == "ℹ️ Usage: /subagents info <id|#>"


# ─── log ───────────────────────────────────────────────────────────────


class TestLog:
    @pytest.mark.asyncio
    async def test_log_hides_tools(self, handler, registry, gateway):
        gateway.on("chat.history", HISTORY)
        _register(registry, "run-a", "flights")
        text = await _text(handler, "/subagents log 1")
        assert text == (
            "📜 Subagent log: flights\nUser: find flights\nAssistant: Found 3 flights."
        )
        assert gateway.params_for("chat.history") == [
            {"sessionKey": "agent:main:subagent:run-a", "limit": 20}
        ]

    @pytest.mark.asyncio
    async def test_log_limit_and_tools(self, handler, registry, gateway):
        gateway.on("chat.history", HISTORY)
        _register(registry, "run-a", "flights")
        text = await _text(handler, "/subagents log flights 5 tools")
        assert "3 results" in text
        assert gateway.params_for("chat.history")[0]["limit"] == 5

    @pytest.mark.asyncio
    async def test_numeric_target_is_not_the_limit(self, handler, registry, gateway, clock):
        _register(registry, "run-a", "flights")
        clock.advance(1_000)
        _register(registry, "run-b", "hotels")
        await _text(handler, "/subagents log 2")
        assert gateway.params_for("chat.history") == [
            {"sessionKey": "agent:main:subagent:run-a", "limit": 20}
        ]

    @pytest.mark.asyncio
    async def test_limit_clamped(self, handler, registry, gateway):
        _register(registry, "run-a", "flights")
        await _text(handler, "/subagents log 1 5000")
        assert gateway.params_for("chat.history")[0]["limit"] == 200

    @pytest.mark.asyncio
    async def test_log_empty(self, handler, registry):
        _register(registry, "run-a", "flights")
        assert await _text(handler, "/subagents log 1") == (
            "📜 Subagent log: flights\n(no messages)"
        )

    @pytest.mark.asyncio
    async def test_log_gateway_failure(self, handler, registry, gateway):
        gateway.on("chat.history", GatewayError("transcript missing"))
        _register(registry, "run-a", "flights")
        assert await _text(handler, "/subagents log 1") == "⚠️ log failed: transcript missing"


# ─── send ──────────────────────────────────────────────────────────────


class TestSend:
    @pytest.mark.asyncio
    async def test_send_returns_reply(self, handler, registry, gateway):
        gateway.on("agent.wait", {"status": "ok"})
        gateway.on("chat.history", HISTORY)
        _register(registry, "run-a", "flights")

        assert await _text(handler, "/subagents send 1 any news?") == "Found 3 flights."

        agent_params = gateway.params_for("agent")[0]
        assert agent_params["message"] == "any news?"
        assert agent_params["sessionKey"] == "agent:main:subagent:run-a"
        assert agent_params["deliver"] is False
        wait_params = gateway.params_for("agent.wait")[0]
        assert wait_params == {"runId": "run-0001", "timeoutMs": 30_000}
        assert [r.run_id for r in registry.list_all_runs()] == ["run-a"]

    @pytest.mark.asyncio
    async def test_send_still_running(self, handler, registry, gateway):
        gateway.on("agent.wait", {"status": "timeout"})
        _register(registry, "run-a", "flights")
        assert await _text(handler, "/subagents send 1 hi") == (
            "⏳ Subagent still running (run run-0001)."
        )

    @pytest.mark.asyncio
    async def test_send_wait_rpc_timeout(self, handler, registry, gateway):
        gateway.on("agent.wait", GatewayTimeoutError("slow", method="agent.wait"))
        _register(registry, "run-a", "flights")
        assert (await _text(handler, "/subagents send 1 hi")).startswith("⏳")

    @pytest.mark.asyncio
    async def test_send_error(self, handler, registry, gateway):
        gateway.on("agent.wait", {"status": "error", "error": "model crashed"})
        _register(registry, "run-a", "flights")
        assert await _text(handler, "/subagents send 1 hi") == (
            "⚠️ Subagent error: model crashed (run run-0001)."
        )

    @pytest.mark.asyncio
    async def test_send_without_reply_text(self, handler, registry, gateway):
        gateway.on("agent.wait", {"status": "ok"})
        _register(registry, "run-a", "flights")
        assert await _text(handler, "/subagents send 1 hi") == (
            "✅ Sent to flights (run run-0001)."
        )

    @pytest.mark.asyncio
    async def test_send_launch_failure(self, handler, registry, gateway):
        gateway.on("agent", GatewayError("session locked"))
        _register(registry, "run-a", "flights")
        assert await _text(handler, "/subagents send 1 hi") == "send failed: session locked"

    @pytest.mark.asyncio
    async def test_send_usage(self, handler):
        assert await _text(handler, "/subagents send 1") == (
            "Usage: /subagents send <id|#> <message>"
        )


# ─── steer ─────────────────────────────────────────────────────────────


class TestSteer:
    @pytest.mark.asyncio
    async def test_steer_replaces_run(self, handler, registry):
        _register(registry, "run-a", "flights")
        text = await _text(handler, "/steer 1 only morning flights")
        assert text == "steered flights (run run-0001)."
        runs = registry.list_subagent_runs_for_requester(ROOT)
        assert [r.run_id for r in runs] == ["run-0001"]

    @pytest.mark.asyncio
    async def test_tell_is_steer(self, handler, registry, gateway):
        _register(registry, "run-a", "flights")
        assert await _text(handler, "/tell flights stop early") == (
            "steered flights (run run-0001)."
        )
        assert gateway.params_for("agent")[0]["message"] == "stop early"

    @pytest.mark.asyncio
    async def test_steer_finished_run(self, handler, registry):
        _register(registry, "run-a", "flights")
        registry.complete_subagent_run("run-a", status=RunOutcomeStatus.OK)
        assert await _text(handler, "/subagents steer 1 go") == "flights is already finished."

    @pytest.mark.asyncio
    async def test_steer_failure_rolls_back(self, handler, registry, gateway):
        announced = []
        registry.add_announce_listener(announced.append)
        gateway.on("agent", GatewayError("lane full"))
        _register(registry, "run-a", "flights")

        assert await _text(handler, "/steer 1 go") == "send failed: lane full"
        registry.complete_subagent_run("run-a", status=RunOutcomeStatus.OK)
        assert [r.run_id for r in announced] == ["run-a"]

    @pytest.mark.asyncio
    async def test_steer_killed_while_settling(self, handler, registry, gateway):
        _register(registry, "run-a", "flights")

        def killed(params):
            registry.mark_subagent_run_terminated(run_id=params["runId"])
            return {}

        gateway.on("agent.wait", killed)
        assert await _text(handler, "/steer 1 go") == (
            "send failed: run run-a was killed during steer"
        )
        assert gateway.params_for("agent") == []

    @pytest.mark.asyncio
    async def test_steer_usage(self, handler):
        assert await _text(handler, "/steer 1") == "Usage: /steer <id|#> <message>"
        assert await _text(handler, "/tell") == "Usage: /tell <id|#> <message>"
        assert await _text(handler, "/subagents steer") == (
            "Usage: /subagents steer <id|#> <message>"
        )


# ─── unexpected errors ─────────────────────────────────────────────────


class TestUnexpectedErrors:
    @pytest.mark.asyncio
    async def test_kill_with_malformed_session_entry(self, handler, registry, store):
        _register(registry, "run-a", "flights")
        child_key = "agent:main:subagent:run-a"
        path = store.path_for_session(child_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({child_key: {"sessionId": 42}}))

        assert await _text(handler, "/kill 1") == "Killed flights."
        assert store.get_entry(child_key).aborted_last_run is True

    @pytest.mark.asyncio
    async def test_kill_store_write_failure(self, handler, registry, store, monkeypatch):
        _register(registry, "run-a", "flights")
        path = store.path_for_session("agent:main:subagent:run-a")

        def _put(entries):
            entries["agent:main:subagent:run-a"] = SessionEntry(session_id="sess-1")

        update_session_store_sync(path, _put)
        monkeypatch.setattr(store, "update", AsyncMock(side_effect=OSError("disk full")))

        assert await _text(handler, "/kill 1") == "⚠️ kill failed: disk full"

    @pytest.mark.asyncio
    async def test_spawn_duplicate_run_id(self, handler, registry, gateway):
        _register(registry, "dup", "old", requester="agent:main:other")
        gateway.on("agent", {"runId": "dup"})

        text = await _text(handler, "/subagents spawn beta do the thing")
        assert text.startswith("⚠️ spawn failed: subagent run already registered: dup")
        assert registry.count_active_runs_for_session(ROOT) == 0
