from __future__ import annotations

import logging
from typing import Any

import httpx


LOGGER = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "http://127.0.0.1:8000"


class RelayClientError(RuntimeError):
    """Transport failure or unexpected server response; the caller backs off and retries."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class RelayAuthError(RelayClientError):
    """The relay rejected the token. Not retryable: the user must issue a new token."""


def _error_fields(resp: httpx.Response) -> tuple[str | None, str]:
    try:
        body = resp.json()
    except ValueError:
        return None, resp.text[:200]
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        return err.get("code"), str(err.get("message") or "")
    return None, str(body)[:200]


class RelayClient:
    """Synchronous client for the executor-facing relay routes.

    Executor calls answer with a `{"success": ..., "error": ...}` body even when they are rejected,
    so only transport errors and non-2xx responses raise.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = DEFAULT_RELAY_URL,
        timeout_s: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/") + "/api/v1/executor",
            timeout=timeout_s,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "RelayClient":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RelayClientError(f"{method} {path} failed: {e}") from e

        if resp.status_code == 401:
            code, message = _error_fields(resp)
            raise RelayAuthError(message or "Unauthorized", status_code=401, code=code)
        if resp.status_code >= 400:
            code, message = _error_fields(resp)
            raise RelayClientError(
                f"{method} {path} returned {resp.status_code}: {message}",
                status_code=resp.status_code,
                code=code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise RelayClientError(f"{method} {path} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise RelayClientError(f"{method} {path} returned an unexpected body")
        return data

    def connect(
        self,
        *,
        name: str,
        mode: str,
        metadata: dict[str, str] | None = None,
        client_version: str | None = None,
    ) -> str:
        """Register this executor; returns the new connection id."""
        payload: dict[str, Any] = {"name": name, "mode": mode, "metadata": dict(metadata or {})}
        if client_version:
            payload["client_version"] = client_version
        data = self._request("POST", "/connect", json=payload)
        connection_id = str(data.get("connection_id") or "")
        if not data.get("success") or not connection_id:
            raise RelayClientError("Connect did not return a connection id.")
        return connection_id

    def heartbeat(self, connection_id: str) -> dict[str, Any]:
        return self._request("POST", f"/connections/{connection_id}/heartbeat")

    def disconnect(self, connection_id: str) -> dict[str, Any]:
        return self._request("POST", f"/connections/{connection_id}/disconnect")

    def poll(self, connection_id: str, *, limit: int | None = None) -> list[dict[str, Any]]:
        params = {"limit": int(limit)} if limit is not None else None
        data = self._request("GET", f"/connections/{connection_id}/commands", params=params)
        commands = data.get("commands") or []
        return [c for c in commands if isinstance(c, dict)]

    def mark_executing(self, command_id: str) -> dict[str, Any]:
        return self._request("POST", f"/commands/{command_id}/executing")

    def submit_result(
        self,
        command_id: str,
        *,
        stdout: str,
        stderr: str,
        exit_code: int,
        duration_ms: int,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/commands/{command_id}/result",
            json={
                "stdout": stdout,
                "stderr": stderr,
                "exit_code": int(exit_code),
                "duration_ms": max(0, int(duration_ms)),
            },
        )
