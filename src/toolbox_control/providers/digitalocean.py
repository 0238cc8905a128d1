"""Async HTTP client for the DigitalOcean droplet API.

Implements the ProviderClient protocol: create, get, delete and list-by-tag
against ``/v2/droplets``. Auth uses a static bearer token (server-side only).
Responses are mapped onto the provider error taxonomy; retries are not done
here but by ``providers.retry.RetryingProviderClient`` composed around it.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from toolbox_control.errors import (
    ProviderAuthError,
    ProviderNotFoundError,
    ProviderRateLimitedError,
    ProviderUnexpectedError,
)
from toolbox_control.models import CreateInstanceRequest, ProviderInstance

logger = logging.getLogger(__name__)

SHARED_TOOLBOX_TAG = "toolbox"
_TAG_INVALID_RE = re.compile(r"[^A-Za-z0-9_:\-]+")
_SLUG_RE = re.compile(r"[^a-z0-9]+")
_MAX_NAME_LENGTH = 63
_PAGE_SIZE = 200


def _slugify(value: str) -> str:
    """Lowercase, hyphen-separated slug safe for hostnames."""
    return _SLUG_RE.sub("-", value.lower()).strip("-")


def build_instance_name(owner_id: str, environment_id: str) -> str:
    """Deterministic droplet name: toolbox-{owner[:8]}-{environment[:8]}.

    Both ids are slugified and truncated so the name fits provider hostname
    limits regardless of id length.
    """
    owner = _slugify(owner_id)[:8].strip("-") or "owner"
    env = _slugify(environment_id)[:8].strip("-") or "env"
    return f"toolbox-{owner}-{env}"[:_MAX_NAME_LENGTH]


def _tag(value: str) -> str:
    return _TAG_INVALID_RE.sub("-", value)


def environment_tag(environment_id: str) -> str:
    return _tag(f"toolbox-{environment_id}")


def build_instance_tags(owner_id: str, environment_id: str) -> tuple[str, ...]:
    """Tags identifying the droplet's environment and owner."""
    return (
        SHARED_TOOLBOX_TAG,
        _tag(f"user-{owner_id}"),
        environment_tag(environment_id),
    )


def environment_id_from_tags(tags: tuple[str, ...] | list[str]) -> str | None:
    prefix = "toolbox-"
    for tag in tags:
        if tag.startswith(prefix) and len(tag) > len(prefix):
            return tag[len(prefix):]
    return None


def _parse_retry_after(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _droplet_to_instance(droplet: dict[str, Any]) -> ProviderInstance:
    public_ipv4 = None
    for network in (droplet.get("networks") or {}).get("v4") or []:
        if network.get("type") == "public" and network.get("ip_address"):
            public_ipv4 = network["ip_address"]
            break
    region = droplet.get("region")
    return ProviderInstance(
        provider_id=str(droplet.get("id", "")),
        name=droplet.get("name", ""),
        status=droplet.get("status", ""),
        public_ipv4=public_ipv4,
        tags=tuple(droplet.get("tags") or ()),
        region=region.get("slug") if isinstance(region, dict) else region,
    )


class DigitalOceanClient:
    """ProviderClient backed by the DigitalOcean v2 API.

    The ``http_client`` is owned by whoever composes the services; when not
    supplied one is created here and released by ``aclose``.
    """

    def __init__(
        self,
        *,
        token: str,
        base_url: str = "https://api.digitalocean.com",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not token:
            raise ValueError("token is required")

        self._token = token
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()
        self._timeout = float(timeout_seconds)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        body = resp.text
        message = body[:200] if body else f"HTTP {resp.status_code}"
        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get("message") or payload.get("id") or message
        except ValueError:
            pass

        if resp.status_code in (401, 403):
            raise ProviderAuthError(resp.status_code, message, response_body=body)
        if resp.status_code == 404:
            raise ProviderNotFoundError(message, response_body=body)
        if resp.status_code == 429:
            raise ProviderRateLimitedError(
                message,
                retry_after=_parse_retry_after(resp),
                response_body=body,
            )
        raise ProviderUnexpectedError(resp.status_code, message, response_body=body)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(
                method,
                f"{self._base_url}{path}",
                headers=self._auth_headers(),
                json=json,
                params=params,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderUnexpectedError(0, f"request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise ProviderUnexpectedError(0, f"network error: {exc}") from exc
        self._raise_for_status(resp)
        return resp

    @staticmethod
    def _droplet_from(resp: httpx.Response) -> dict[str, Any]:
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ProviderUnexpectedError(
                resp.status_code, "response body is not JSON"
            ) from exc
        droplet = payload.get("droplet") if isinstance(payload, dict) else None
        if not isinstance(droplet, dict):
            raise ProviderUnexpectedError(
                resp.status_code, "response has no droplet object"
            )
        return droplet

    # ── ProviderClient ───────────────────────────────────────────

    async def create_instance(self, request: CreateInstanceRequest) -> ProviderInstance:
        payload: dict[str, Any] = {
            "name": request.name,
            "region": request.region,
            "size": request.size,
            "image": request.image,
            "tags": list(request.tags),
            "user_data": request.user_data,
            "monitoring": True,
        }
        if request.ssh_keys:
            payload["ssh_keys"] = list(request.ssh_keys)

        resp = await self._request("POST", "/v2/droplets", json=payload)
        instance = _droplet_to_instance(self._droplet_from(resp))
        logger.info(
            "Droplet created: name=%s id=%s",
            instance.name,
            instance.provider_id,
            extra={"provider_instance_id": instance.provider_id},
        )
        return instance

    async def get_instance(self, provider_id: str) -> ProviderInstance:
        resp = await self._request("GET", f"/v2/droplets/{provider_id}")
        return _droplet_to_instance(self._droplet_from(resp))

    async def delete_instance(self, provider_id: str) -> None:
        await self._request("DELETE", f"/v2/droplets/{provider_id}")
        logger.info(
            "Droplet deleted: id=%s",
            provider_id,
            extra={"provider_instance_id": provider_id},
        )

    async def list_instances_by_tag(self, tag: str) -> list[ProviderInstance]:
        instances: list[ProviderInstance] = []
        page = 1
        while True:
            resp = await self._request(
                "GET",
                "/v2/droplets",
                params={"tag_name": tag, "page": page, "per_page": _PAGE_SIZE},
            )
            try:
                payload = resp.json()
            except ValueError as exc:
                raise ProviderUnexpectedError(
                    resp.status_code, "response body is not JSON"
                ) from exc
            droplets = payload.get("droplets") if isinstance(payload, dict) else None
            if not isinstance(droplets, list):
                raise ProviderUnexpectedError(
                    resp.status_code, "expected droplets list from /v2/droplets"
                )
            instances.extend(_droplet_to_instance(d) for d in droplets)
            next_page = ((payload.get("links") or {}).get("pages") or {}).get("next")
            if not next_page or not droplets:
                return instances
            page += 1
