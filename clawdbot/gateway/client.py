"""
Gateway RPC client — ``call(method, params) → payload`` over HTTP.

Wraps httpx.AsyncClient. Every call carries an explicit timeout; the
gateway answers with a response frame:

    {"id": "...", "ok": true,  "payload": {...}}
    {"id": "...", "ok": false, "error": {"code": "...", "message": "..."}}

Transport failures, non-2xx replies and ``ok: false`` frames all raise
GatewayError; timeouts raise GatewayTimeoutError so callers can tell
"no answer" apart from "the gateway said no".
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10_000


class GatewayError(Exception):
    """An RPC call was rejected or could not be completed."""

    def __init__(self, message: str, *, method: str = "", code: str | None = None) -> None:
        super().__init__(message)
        self.method = method
        self.code = code


class GatewayTimeoutError(GatewayError):
    """The gateway did not answer within the call's timeout."""


class GatewayCaller(Protocol):
    """Anything that can dispatch a gateway RPC."""

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> dict[str, Any]: ...


class GatewayClient:
    """Async RPC client for the gateway process."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:18789",
        token: str = "",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(base_url=self.base_url, headers=headers)

    async def close(self) -> None:
        await self._client.aclose()

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> dict[str, Any]:
        """POST /rpc — dispatch one method and return its payload."""
        frame = {
            "id": str(uuid.uuid4()),
            "method": method,
            "params": params or {},
        }
        try:
            resp = await self._client.post("/rpc", json=frame, timeout=timeout_ms / 1000)
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError(
                f"gateway timeout after {timeout_ms}ms: {method}", method=method
            ) from e
        except httpx.HTTPError as e:
            raise GatewayError(f"gateway unreachable: {e}", method=method) from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            raise GatewayError(
                f"gateway returned HTTP {resp.status_code} for {method}", method=method
            )

        if resp.status_code >= 400 or not body.get("ok", False):
            error = body.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            logger.debug("Gateway %s failed: %s", method, message)
            raise GatewayError(
                message or f"gateway returned HTTP {resp.status_code} for {method}",
                method=method,
                code=code,
            )

        payload = body.get("payload")
        return dict(payload) if isinstance(payload, dict) else {}

    async def check_health(self) -> dict[str, Any] | None:
        """GET /health — returns health dict or None if unreachable."""
        try:
            resp = await self._client.get("/health", timeout=5)
            resp.raise_for_status()
            return dict(resp.json())
        except (httpx.HTTPError, ValueError):
            return None


def compact_params(params: dict[str, Any]) -> dict[str, Any]:
    """Omit unset params, mirroring how the gateway treats undefined fields."""
    return {k: v for k, v in params.items() if v is not None}
