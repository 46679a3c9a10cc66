"""
Embedded runs — live model executions keyed by session id.

The execution engine registers a CancellationToken for each run it starts
and unregisters it when the run settles. Aborting is fire-and-forget: the
token is cancelled (and its task, if any, is cancelled) but nobody waits
for the run to actually stop. Waiting is a separate, bounded step.
"""

from __future__ import annotations

import asyncio
import logging
import threading

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cancellation signal handed to one embedded run."""

    def __init__(self, task: asyncio.Task | None = None) -> None:
        self.task = task
        self.reason: str | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "aborted") -> bool:
        """Signal cancellation. Returns False if already cancelled."""
        if self._cancelled:
            return False
        self._cancelled = True
        self.reason = reason
        if self.task is not None and not self.task.done():
            self.task.cancel()
        return True


class EmbeddedRunRegistry:
    """Session id → token of the run currently executing in that session."""

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    def register(
        self, session_id: str, token: CancellationToken | None = None
    ) -> CancellationToken:
        token = token or CancellationToken()
        with self._lock:
            previous = self._tokens.get(session_id)
            self._tokens[session_id] = token
        if previous is not None and previous is not token:
            previous.cancel("superseded")
        return token

    def unregister(self, session_id: str, token: CancellationToken | None = None) -> None:
        """Forget the run for ``session_id`` (only if it is still ``token``)."""
        with self._lock:
            current = self._tokens.get(session_id)
            if current is None:
                return
            if token is None or current is token:
                del self._tokens[session_id]

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            token = self._tokens.get(session_id)
        return token is not None and not token.cancelled

    def abort_embedded_run(self, session_id: str | None) -> bool:
        """Cancel the live run for ``session_id``. True if one was live."""
        if not session_id:
            return False
        with self._lock:
            token = self._tokens.pop(session_id, None)
        if token is None:
            return False
        aborted = token.cancel("aborted")
        if aborted:
            logger.info("Aborted embedded run for session %s", session_id)
        return aborted
