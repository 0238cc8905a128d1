"""Supabase-backed EnvironmentRecordStore.

Environments live in ``account_tool_environments`` and their Instances in
``account_tool_instances`` (FK with ON DELETE CASCADE, unique
``(account_tool_environment_id, instance_name_on_toolbox)``).
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Mapping

from toolbox_control.errors import (
    EnvironmentNotFoundError,
    InstanceNotFoundError,
    RecordStoreError,
    StatePreconditionError,
)
from toolbox_control.models import (
    Environment,
    EnvironmentStatus,
    Instance,
    InstanceStatus,
    utcnow,
)

from .errors import SupabaseError
from .supabase_client import SupabaseClient

ENVIRONMENTS_TABLE = "account_tool_environments"
INSTANCES_TABLE = "account_tool_instances"

# Record field -> column.
_ENVIRONMENT_COLUMNS = {
    "id": "id",
    "owner_id": "user_id",
    "name": "name",
    "description": "description",
    "region": "region_slug",
    "size": "size_slug",
    "image": "image_slug",
    "status": "status",
    "provider_instance_id": "provider_instance_id",
    "public_ip_address": "public_ip_address",
    "agent_token_secret_ref": "agent_token_secret_id",
    "agent_version": "agent_version",
    "last_heartbeat_at": "last_heartbeat_at",
    "health_details": "health_details",
    "error_message": "error_message",
    "created_at": "created_at",
    "updated_at": "updated_at",
}

_INSTANCE_COLUMNS = {
    "id": "id",
    "environment_id": "account_tool_environment_id",
    "catalog_entry_id": "tool_catalog_id",
    "instance_name": "instance_name_on_toolbox",
    "status": "status_on_toolbox",
    "config_override": "config_override",
    "runtime_details": "runtime_details",
    "last_heartbeat_at": "last_heartbeat_at",
    "error_message": "error_message",
    "created_at": "created_at",
    "updated_at": "updated_at",
}

_DATETIME_FIELDS = frozenset({"last_heartbeat_at", "created_at", "updated_at"})


def _to_column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _changes_to_row(changes: Mapping[str, Any], columns: Mapping[str, str]) -> dict[str, Any]:
    row: dict[str, Any] = {}
    for key, value in changes.items():
        if key not in columns:
            raise ValueError(f"unknown field: {key}")
        row[columns[key]] = _to_column_value(value)
    return row


def _row_to_fields(row: Mapping[str, Any], columns: Mapping[str, str]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for field_name, column in columns.items():
        if column not in row:
            continue
        value = row[column]
        if field_name in _DATETIME_FIELDS:
            value = _parse_datetime(value)
            if value is None and field_name != "last_heartbeat_at":
                continue
        if field_name == "provider_instance_id" and value is not None:
            value = str(value)
        fields[field_name] = value
    return fields


def environment_to_row(env: Environment) -> dict[str, Any]:
    return _changes_to_row(
        {name: getattr(env, name) for name in _ENVIRONMENT_COLUMNS}, _ENVIRONMENT_COLUMNS,
    )


def row_to_environment(row: Mapping[str, Any]) -> Environment:
    fields = _row_to_fields(row, _ENVIRONMENT_COLUMNS)
    fields["status"] = EnvironmentStatus(fields["status"])
    return Environment(**fields)


def instance_to_row(instance: Instance) -> dict[str, Any]:
    return _changes_to_row(
        {name: getattr(instance, name) for name in _INSTANCE_COLUMNS}, _INSTANCE_COLUMNS,
    )


def row_to_instance(row: Mapping[str, Any]) -> Instance:
    fields = _row_to_fields(row, _INSTANCE_COLUMNS)
    fields["status"] = InstanceStatus(fields["status"])
    return Instance(**fields)


@asynccontextmanager
async def _store_errors(action: str) -> AsyncIterator[None]:
    try:
        yield
    except SupabaseError as exc:
        raise RecordStoreError(f"{action} failed: {exc.message}") from exc


class SupabaseEnvironmentRecordStore:
    """Satisfies the ``EnvironmentRecordStore`` protocol from ``protocols.py``."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    # ── Environments ─────────────────────────────────────────────

    async def create_environment(self, environment: Environment) -> Environment:
        async with _store_errors("create environment"):
            rows = await self._client.insert(ENVIRONMENTS_TABLE, environment_to_row(environment))
        return row_to_environment(rows[0]) if rows else environment

    async def get_environment(self, environment_id: str) -> Environment | None:
        async with _store_errors("get environment"):
            rows = await self._client.select(
                ENVIRONMENTS_TABLE, {"id": ("eq", environment_id)}, limit=1,
            )
        return row_to_environment(rows[0]) if rows else None

    async def list_environments(self, owner_id: str) -> list[Environment]:
        async with _store_errors("list environments"):
            rows = await self._client.select(
                ENVIRONMENTS_TABLE, {"user_id": ("eq", owner_id)}, order="created_at.desc",
            )
        return [row_to_environment(r) for r in rows]

    async def update_environment(
        self, environment_id: str, changes: Mapping[str, Any],
    ) -> Environment:
        row = _changes_to_row({**changes, "updated_at": utcnow()}, _ENVIRONMENT_COLUMNS)
        async with _store_errors("update environment"):
            rows = await self._client.update(
                ENVIRONMENTS_TABLE, {"id": ("eq", environment_id)}, row,
            )
        if not rows:
            raise EnvironmentNotFoundError(f"environment {environment_id!r} not found")
        return row_to_environment(rows[0])

    async def delete_environment(self, environment_id: str) -> bool:
        async with _store_errors("delete environment"):
            rows = await self._client.delete(
                ENVIRONMENTS_TABLE, {"id": ("eq", environment_id)},
            )
        return bool(rows)

    # ── Instances ────────────────────────────────────────────────

    async def create_instance(self, instance: Instance) -> Instance:
        try:
            rows = await self._client.insert(INSTANCES_TABLE, instance_to_row(instance))
        except SupabaseError as exc:
            if exc.is_unique_violation:
                raise StatePreconditionError(
                    f"instance name {instance.instance_name!r} is already used on this toolbox"
                ) from exc
            raise RecordStoreError(f"create instance failed: {exc.message}") from exc
        return row_to_instance(rows[0]) if rows else instance

    async def get_instance(self, instance_id: str) -> Instance | None:
        async with _store_errors("get instance"):
            rows = await self._client.select(
                INSTANCES_TABLE, {"id": ("eq", instance_id)}, limit=1,
            )
        return row_to_instance(rows[0]) if rows else None

    async def list_instances(self, environment_id: str) -> list[Instance]:
        async with _store_errors("list instances"):
            rows = await self._client.select(
                INSTANCES_TABLE,
                {"account_tool_environment_id": ("eq", environment_id)},
                order="created_at.asc",
            )
        return [row_to_instance(r) for r in rows]

    async def update_instance(
        self, instance_id: str, changes: Mapping[str, Any],
    ) -> Instance:
        row = _changes_to_row({**changes, "updated_at": utcnow()}, _INSTANCE_COLUMNS)
        async with _store_errors("update instance"):
            rows = await self._client.update(
                INSTANCES_TABLE, {"id": ("eq", instance_id)}, row,
            )
        if not rows:
            raise InstanceNotFoundError(f"instance {instance_id!r} not found")
        return row_to_instance(rows[0])
