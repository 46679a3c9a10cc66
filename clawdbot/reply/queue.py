"""
Reply queues — follow-up messages and lane work waiting on a session.

Follow-ups are keyed by session key (or session id); lane work sits in a
``session:<key>`` lane of the command queue. Both are drained when a run
is killed or steered so the next message is not stuck behind stale work.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


def session_lane(key: str) -> str:
    """Command-queue lane that serializes work for one session."""
    return key if key.startswith("session:") else f"session:{key}"


@dataclass
class ClearSessionQueuesResult:
    followup_cleared: int = 0
    lane_cleared: int = 0
    keys: list[str] = field(default_factory=list)


class SessionQueues:
    """In-process follow-up and lane queues."""

    def __init__(self) -> None:
        self._followups: dict[str, deque[Any]] = {}
        self._lanes: dict[str, deque[Any]] = {}
        self._lock = threading.Lock()

    def enqueue_followup(self, key: str, item: Any) -> int:
        """Queue a follow-up for ``key``; returns the new queue depth."""
        with self._lock:
            queue = self._followups.setdefault(key, deque())
            queue.append(item)
            return len(queue)

    def enqueue_lane(self, lane: str, item: Any) -> int:
        with self._lock:
            queue = self._lanes.setdefault(lane, deque())
            queue.append(item)
            return len(queue)

    def pop_followup(self, key: str) -> Any | None:
        with self._lock:
            queue = self._followups.get(key)
            if not queue:
                return None
            item = queue.popleft()
            if not queue:
                del self._followups[key]
            return item

    def followup_depth(self, key: str) -> int:
        with self._lock:
            return len(self._followups.get(key, ()))

    def lane_depth(self, lane: str) -> int:
        with self._lock:
            return len(self._lanes.get(lane, ()))

    def clear_session_queues(self, keys: Iterable[str | None]) -> ClearSessionQueuesResult:
        """Drop queued follow-ups and lane work for every non-empty key."""
        result = ClearSessionQueuesResult()
        seen: set[str] = set()
        with self._lock:
            for raw in keys:
                key = (raw or "").strip()
                if not key or key in seen:
                    continue
                seen.add(key)
                result.keys.append(key)
                followups = self._followups.pop(key, None)
                if followups:
                    result.followup_cleared += len(followups)
                lane = self._lanes.pop(session_lane(key), None)
                if lane:
                    result.lane_cleared += len(lane)
        return result
