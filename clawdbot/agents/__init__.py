"""Subagent orchestration: registry, spawn, steer, announce."""
