from __future__ import annotations

from typing import Any

import httpx


class ControlClient:
    """Async client for the ``/jobs`` control endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def start(self) -> dict[str, Any]:
        return await self._control({"action": "start"})

    async def stop(self) -> dict[str, Any]:
        return await self._control({"action": "stop"})

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        *,
        priority: int = 0,
        session_id: str | None = None,
        model_version: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "action": "enqueue",
            "type": job_type,
            "payload": payload or {},
            "priority": priority,
        }
        if session_id is not None:
            body["sessionId"] = session_id
        if model_version is not None:
            body["modelVersion"] = model_version
        response = await self._control(body)
        return response["job"]

    async def status(self) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.get(f"{self.base_url}/jobs")
            response.raise_for_status()
            return response.json()

    async def reap_expired(self, limit: int = 100) -> dict[str, int]:
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/jobs/reap-expired", params={"limit": limit})
            response.raise_for_status()
            payload = response.json()
            return {
                "requeued": int(payload.get("requeued", 0)),
                "failed": int(payload.get("failed", 0)),
            }

    async def _control(self, body: dict[str, Any]) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/jobs", json=body)
            response.raise_for_status()
            return response.json()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)
