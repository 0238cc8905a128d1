"""Async HTTP client for a Toolbox management agent.

The agent listens on ``http://{host}:{port}`` and authenticates the platform
with a shared bearer key. The status call uses a short timeout; tool commands
get a longer one since the agent pulls images synchronously.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from toolbox_control.errors import (
    AgentProtocolError,
    AgentUnreachableError,
    ConfigurationError,
)

logger = logging.getLogger(__name__)

_BODY_EXCERPT = 300


class ManagementAgentClient:
    def __init__(
        self,
        *,
        api_key: str,
        port: int = 30000,
        http_client: httpx.AsyncClient | None = None,
        status_timeout_seconds: float = 5.0,
        command_timeout_seconds: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._port = int(port)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()
        self._status_timeout = float(status_timeout_seconds)
        self._command_timeout = float(command_timeout_seconds)

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def base_url(self, host: str) -> str:
        return f"http://{host}:{self._port}"

    async def _request(
        self,
        method: str,
        host: str,
        path: str,
        *,
        json: Any | None = None,
        timeout: float,
    ) -> Any:
        if not self._api_key:
            raise ConfigurationError("agent_api_key is required to call the management agent")
        if not host:
            raise AgentUnreachableError("no public IP address is known for this toolbox")

        url = f"{self.base_url(host)}{path}"
        try:
            resp = await self._client.request(
                method,
                url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json=json,
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise AgentUnreachableError(f"{method} {path} timed out after {timeout}s") from exc
        except httpx.TransportError as exc:
            raise AgentUnreachableError(f"{method} {path} failed: {exc}") from exc

        if not resp.is_success:
            body = resp.text[:_BODY_EXCERPT]
            raise AgentProtocolError(
                f"{method} {path} returned HTTP {resp.status_code}: {body}",
                status_code=resp.status_code,
                body=body,
            )

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise AgentProtocolError(
                f"{method} {path} returned undecodable JSON: {exc}",
                status_code=resp.status_code,
                body=resp.text[:_BODY_EXCERPT],
            ) from exc

    async def get_status(self, host: str) -> dict[str, Any]:
        """GET /status. The payload is returned as an opaque mapping."""
        payload = await self._request("GET", host, "/status", timeout=self._status_timeout)
        if not isinstance(payload, dict):
            raise AgentProtocolError(
                f"GET /status returned {type(payload).__name__}, expected an object"
            )
        return payload

    async def deploy_tool(
        self,
        host: str,
        *,
        image: str,
        instance_name: str,
        instance_id: str,
        config_override: dict[str, Any] | None = None,
    ) -> Any:
        body = {
            "dockerImageUrl": image,
            "instanceNameOnToolbox": instance_name,
            "accountToolInstanceId": instance_id,
            "baseConfigOverrideJson": config_override or {},
        }
        logger.info(
            "Deploying tool %s to agent",
            instance_name,
            extra={"instance_id": instance_id, "agent_host": host},
        )
        return await self._request(
            "POST", host, "/tools", json=body, timeout=self._command_timeout
        )

    async def start_tool(self, host: str, instance_name: str) -> Any:
        return await self._request(
            "POST", host, f"/tools/{quote(instance_name, safe='')}/start",
            timeout=self._command_timeout,
        )

    async def stop_tool(self, host: str, instance_name: str) -> Any:
        return await self._request(
            "POST", host, f"/tools/{quote(instance_name, safe='')}/stop",
            timeout=self._command_timeout,
        )

    async def remove_tool(self, host: str, instance_name: str) -> Any:
        return await self._request(
            "DELETE", host, f"/tools/{quote(instance_name, safe='')}",
            timeout=self._command_timeout,
        )
