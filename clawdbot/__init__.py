"""Clawdbot — subagent orchestration core for the multi-channel chat gateway."""

__version__ = "0.1.0"
