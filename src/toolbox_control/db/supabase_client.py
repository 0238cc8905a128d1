"""Async PostgREST client for the Supabase project database.

The only place the control plane talks HTTP to Supabase: table reads and
writes for the record stores, plus the Vault and role RPC functions. Every
request authenticates with the service-role key, which bypasses RLS, so this
client must never be handed to request-scoped code paths.
"""

from __future__ import annotations

from typing import Any, Mapping

import httpx

from .errors import (
    SupabaseAuthError,
    SupabaseConflictError,
    SupabaseError,
    SupabaseNotFoundError,
)

# Column -> value (equality) or column -> (operator, value).
Filters = Mapping[str, Any]

_ERROR_CLASSES: dict[int, type[SupabaseError]] = {
    401: SupabaseAuthError,
    403: SupabaseAuthError,
    404: SupabaseNotFoundError,
    409: SupabaseConflictError,
}

_WRITE_METHODS = frozenset({"POST", "PATCH", "DELETE"})


def _filter_param(op: str, value: Any) -> str:
    if value is None:
        if op not in ("eq", "is"):
            raise ValueError(f"operator {op!r} cannot compare with None")
        return "is.null"
    if isinstance(value, bool):
        value = "true" if value else "false"
    return f"{op}.{value}"


def build_filter_params(filters: Filters | None) -> dict[str, str]:
    """Render filters as PostgREST query parameters (``id=eq.env-1``)."""
    params: dict[str, str] = {}
    for column, condition in (filters or {}).items():
        op, value = condition if isinstance(condition, tuple) else ("eq", condition)
        params[column] = _filter_param(op, value)
    return params


def _error_from_response(resp: httpx.Response) -> SupabaseError:
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        payload = {}
    err_cls = _ERROR_CLASSES.get(resp.status_code, SupabaseError)
    return err_cls(
        status_code=resp.status_code,
        message=payload.get("message") or resp.text or resp.reason_phrase,
        code=payload.get("code"),
        details=payload.get("details"),
        hint=payload.get("hint"),
    )


class SupabaseClient:
    def __init__(
        self,
        *,
        supabase_url: str,
        service_role_key: str,
        schema: str = "public",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not supabase_url:
            raise ValueError("supabase_url is required")
        if not service_role_key:
            raise ValueError("service_role_key is required")

        self._rest_url = f"{supabase_url.rstrip('/')}/rest/v1"
        self._service_role_key = service_role_key
        self._schema = schema
        self._timeout = float(timeout_seconds)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()

    @property
    def base_rest_url(self) -> str:
        return self._rest_url

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, method: str, prefer: str | None = None) -> dict[str, str]:
        # Carries the service-role key; never log.
        headers = {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
            "Accept-Profile": self._schema,
        }
        if method in _WRITE_METHODS:
            headers["Content-Profile"] = self._schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        body: Any = None,
        prefer: str | None = None,
    ) -> Any:
        try:
            resp = await self._client.request(
                method,
                f"{self._rest_url}/{path}",
                params=params,
                json=body,
                headers=self._headers(method, prefer),
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise SupabaseError(
                status_code=0, message=f"{method} {path} failed: {type(exc).__name__}: {exc}",
            ) from exc
        if resp.status_code >= 400:
            raise _error_from_response(resp)
        return resp.json() if resp.content else None

    async def _rows(self, method: str, table: str, **kwargs: Any) -> list[dict[str, Any]]:
        payload = await self._request(method, table, **kwargs)
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise SupabaseError(
                status_code=500, message=f"{method} {table} did not return a row list",
            )
        return payload

    # ── Tables ───────────────────────────────────────────────────

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        columns: str = "*",
        limit: int | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        params = build_filter_params(filters)
        params["select"] = columns
        if limit is not None:
            params["limit"] = str(int(limit))
        if order:
            params["order"] = order
        return await self._rows("GET", table, params=params)

    async def insert(self, table: str, row: Mapping[str, Any]) -> list[dict[str, Any]]:
        return await self._rows(
            "POST", table, body=dict(row), prefer="return=representation",
        )

    async def update(
        self, table: str, filters: Filters, changes: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        if not filters:
            raise ValueError("refusing to update without a filter")
        return await self._rows(
            "PATCH", table,
            params=build_filter_params(filters),
            body=dict(changes),
            prefer="return=representation",
        )

    async def delete(self, table: str, filters: Filters) -> list[dict[str, Any]]:
        if not filters:
            raise ValueError("refusing to delete without a filter")
        return await self._rows(
            "DELETE", table,
            params=build_filter_params(filters),
            prefer="return=representation",
        )

    # ── RPC ──────────────────────────────────────────────────────

    async def rpc(self, function_name: str, params: Mapping[str, Any] | None = None) -> Any:
        """Call a Postgres function through ``/rest/v1/rpc/{function_name}``."""
        return await self._request("POST", f"rpc/{function_name}", body=dict(params or {}))
