"""Tests for spawn-depth resolution."""

from __future__ import annotations

import json

from clawdbot.agents.depth import MAX_DEPTH_WALK, get_subagent_depth_from_session_store
from clawdbot.sessions.store import SessionEntry, update_session_store_sync


def _seed(store, entries: dict[str, SessionEntry]) -> None:
    for key, entry in entries.items():
        path = store.path_for_session(key)

        def _put(current, key=key, entry=entry):
            current[key] = entry

        update_session_store_sync(path, _put)


class TestDepth:
    def test_root_session_is_depth_zero(self, cfg, store):
        assert get_subagent_depth_from_session_store("agent:main:main", cfg=cfg, store=store) == 0
        assert get_subagent_depth_from_session_store("", cfg=cfg, store=store) == 0
        assert get_subagent_depth_from_session_store(None, cfg=cfg, store=store) == 0

    def test_recorded_spawn_depth_wins(self, cfg, store):
        key = "agent:main:subagent:a"
        _seed(store, {key: SessionEntry(session_id="s1", spawn_depth=3, spawned_by="main")})
        assert get_subagent_depth_from_session_store(key, cfg=cfg, store=store) == 3

    def test_spawned_by_chain(self, cfg, store):
        _seed(
            store,
            {
                "agent:main:subagent:a": SessionEntry(spawned_by="agent:main:main"),
                "agent:main:subagent:b": SessionEntry(spawned_by="agent:main:subagent:a"),
            },
        )
        assert get_subagent_depth_from_session_store(
            "agent:main:subagent:b", cfg=cfg, store=store
        ) == 2

    def test_chain_stops_at_recorded_depth(self, cfg, store):
        _seed(
            store,
            {
                "agent:main:subagent:a": SessionEntry(spawn_depth=1),
                "agent:main:subagent:b": SessionEntry(spawned_by="agent:main:subagent:a"),
            },
        )
        assert get_subagent_depth_from_session_store(
            "agent:main:subagent:b", cfg=cfg, store=store
        ) == 2

    def test_main_alias_resolves_to_root(self, cfg, store):
        _seed(store, {"agent:main:subagent:a": SessionEntry(spawned_by="main")})
        assert get_subagent_depth_from_session_store(
            "agent:main:subagent:a", cfg=cfg, store=store
        ) == 1

    def test_cross_agent_chain_uses_each_agents_store(self, cfg, store):
        _seed(
            store,
            {
                "agent:alpha:subagent:x": SessionEntry(spawned_by="agent:main:subagent:a"),
                "agent:main:subagent:a": SessionEntry(spawn_depth=1),
            },
        )
        assert store.path_for_session("agent:alpha:subagent:x") != store.path_for_session(
            "agent:main:subagent:a"
        )
        assert get_subagent_depth_from_session_store(
            "agent:alpha:subagent:x", cfg=cfg, store=store
        ) == 2

    def test_registry_links_fill_missing_store_entries(self, cfg, store, registry):
        registry.register_subagent_run(
            run_id="run-1",
            child_session_key="agent:main:subagent:a",
            requester_session_key="agent:main:main",
            requester_display_key="main",
            task="t",
        )
        registry.register_subagent_run(
            run_id="run-2",
            child_session_key="agent:main:subagent:b",
            requester_session_key="agent:main:subagent:a",
            requester_display_key="agent:main:subagent:a",
            task="t",
        )
        depth = get_subagent_depth_from_session_store(
            "agent:main:subagent:b", cfg=cfg, store=store, registry=registry
        )
        assert depth == 2

    def test_falls_back_to_key_segments(self, cfg, store):
        key = "agent:main:subagent:a:subagent:b"
        assert get_subagent_depth_from_session_store(key, cfg=cfg, store=store) == 2

    def test_cycle_terminates_at_zero(self, cfg, store):
        _seed(
            store,
            {
                "agent:main:subagent:a": SessionEntry(spawned_by="agent:main:subagent:b"),
                "agent:main:subagent:b": SessionEntry(spawned_by="agent:main:subagent:a"),
            },
        )
        assert get_subagent_depth_from_session_store(
            "agent:main:subagent:a", cfg=cfg, store=store
        ) == 0

    def test_self_reference_terminates(self, cfg, store):
        _seed(store, {"agent:main:subagent:a": SessionEntry(spawned_by="agent:main:subagent:a")})
        assert get_subagent_depth_from_session_store(
            "agent:main:subagent:a", cfg=cfg, store=store
        ) == 0

    def test_overlong_chain_terminates_at_zero(self, cfg, store):
        count = MAX_DEPTH_WALK + 5
        entries = {
            f"agent:main:subagent:n{i}": SessionEntry(spawned_by=f"agent:main:subagent:n{i + 1}")
            for i in range(count)
        }
        _seed(store, entries)
        assert get_subagent_depth_from_session_store(
            "agent:main:subagent:n0", cfg=cfg, store=store
        ) == 0


class TestMalformedStore:
    def _write_raw(self, store, key, raw):
        path = store.path_for_session(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({key: raw}))

    def test_non_string_spawned_by_is_ignored(self, cfg, store):
        self._write_raw(store, "agent:main:weird", {"sessionId": "s", "spawnedBy": 123})
        assert get_subagent_depth_from_session_store(
            "agent:main:weird", cfg=cfg, store=store
        ) == 0

    def test_non_int_spawn_depth_falls_through(self, cfg, store):
        self._write_raw(
            store,
            "agent:main:subagent:a",
            {"spawnDepth": "7", "spawnedBy": {"key": "agent:main:main"}},
        )
        assert get_subagent_depth_from_session_store(
            "agent:main:subagent:a", cfg=cfg, store=store
        ) == 1
