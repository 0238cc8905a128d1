"""In-memory implementations of every store and provider protocol.

These are used when ENVIRONMENT=local and throughout the tests. They satisfy
the protocol interfaces but keep everything in dicts (no persistence across
restarts).
"""

from __future__ import annotations

import itertools
import uuid
from dataclasses import replace
from typing import Any, Mapping

from .errors import (
    EnvironmentNotFoundError,
    InstanceNotFoundError,
    ProviderError,
    ProviderNotFoundError,
    RecordStoreError,
    StatePreconditionError,
)
from .models import (
    CatalogEntry,
    CreateInstanceRequest,
    Environment,
    Instance,
    ProviderInstance,
    utcnow,
)


class InMemoryEnvironmentRecordStore:
    def __init__(self) -> None:
        self._environments: dict[str, Environment] = {}
        self._instances: dict[str, Instance] = {}

    # ── Environments ─────────────────────────────────────────────

    async def create_environment(self, environment: Environment) -> Environment:
        if environment.id in self._environments:
            raise RecordStoreError(f"environment {environment.id!r} already exists")
        self._environments[environment.id] = environment
        return environment

    async def get_environment(self, environment_id: str) -> Environment | None:
        return self._environments.get(environment_id)

    async def list_environments(self, owner_id: str) -> list[Environment]:
        owned = [e for e in self._environments.values() if e.owner_id == owner_id]
        return sorted(owned, key=lambda e: e.created_at, reverse=True)

    async def update_environment(
        self, environment_id: str, changes: Mapping[str, Any],
    ) -> Environment:
        current = self._environments.get(environment_id)
        if current is None:
            raise EnvironmentNotFoundError(f"environment {environment_id!r} not found")
        updated = replace(current, **dict(changes), updated_at=utcnow())
        self._environments[environment_id] = updated
        return updated

    async def delete_environment(self, environment_id: str) -> bool:
        if self._environments.pop(environment_id, None) is None:
            return False
        for instance_id in [
            i.id for i in self._instances.values() if i.environment_id == environment_id
        ]:
            del self._instances[instance_id]
        return True

    # ── Instances ────────────────────────────────────────────────

    async def create_instance(self, instance: Instance) -> Instance:
        if instance.environment_id not in self._environments:
            raise EnvironmentNotFoundError(
                f"environment {instance.environment_id!r} not found"
            )
        for existing in self._instances.values():
            if (
                existing.environment_id == instance.environment_id
                and existing.instance_name == instance.instance_name
            ):
                raise StatePreconditionError(
                    f"instance name {instance.instance_name!r} is already used on this toolbox"
                )
        self._instances[instance.id] = instance
        return instance

    async def get_instance(self, instance_id: str) -> Instance | None:
        return self._instances.get(instance_id)

    async def list_instances(self, environment_id: str) -> list[Instance]:
        return [i for i in self._instances.values() if i.environment_id == environment_id]

    async def update_instance(
        self, instance_id: str, changes: Mapping[str, Any],
    ) -> Instance:
        current = self._instances.get(instance_id)
        if current is None:
            raise InstanceNotFoundError(f"instance {instance_id!r} not found")
        updated = replace(current, **dict(changes), updated_at=utcnow())
        self._instances[instance_id] = updated
        return updated


class InMemoryToolCatalog:
    def __init__(self, entries: list[CatalogEntry] | None = None) -> None:
        self._entries = {e.id: e for e in entries or []}

    def add(self, entry: CatalogEntry) -> None:
        self._entries[entry.id] = entry

    async def get_entry(self, entry_id: str) -> CatalogEntry | None:
        return self._entries.get(entry_id)


class InMemorySecretStore:
    def __init__(self) -> None:
        self.secrets: dict[str, str] = {}
        self.names: dict[str, str] = {}
        self.fail_deletes = False

    async def create_secret(self, value: str, *, name: str, description: str = "") -> str:
        ref = str(uuid.uuid4())
        self.secrets[ref] = value
        self.names[ref] = name
        return ref

    async def get_secret(self, ref: str) -> str | None:
        return self.secrets.get(ref)

    async def delete_secret(self, ref: str) -> bool:
        if self.fail_deletes:
            raise RecordStoreError("vault unavailable")
        self.names.pop(ref, None)
        return self.secrets.pop(ref, None) is not None


class InMemoryRoleResolver:
    def __init__(self, roles: Mapping[str, set[str]] | None = None) -> None:
        self._roles = {user: set(r) for user, r in (roles or {}).items()}

    def grant(self, user_id: str, role: str) -> None:
        self._roles.setdefault(user_id, set()).add(role)

    async def has_role(self, user_id: str, role: str) -> bool:
        return role in self._roles.get(user_id, set())


class InMemoryProviderClient:
    """Scripted provider that tracks calls.

    ``ready_after_polls`` is the number of ``get_instance`` calls after which an
    instance reports ``active`` with ``public_ipv4``; None means never.
    ``terminal_status`` makes every poll report that status instead.
    """

    def __init__(
        self,
        *,
        ready_after_polls: int | None = 1,
        public_ipv4: str = "203.0.113.10",
        terminal_status: str | None = None,
        create_error: ProviderError | None = None,
        get_error: ProviderError | None = None,
        delete_error: ProviderError | None = None,
    ) -> None:
        self.ready_after_polls = ready_after_polls
        self.public_ipv4 = public_ipv4
        self.terminal_status = terminal_status
        self.create_error = create_error
        self.get_error = get_error
        self.delete_error = delete_error
        self.instances: dict[str, ProviderInstance] = {}
        self.polls: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []
        self.last_create_request: CreateInstanceRequest | None = None
        self._ids = itertools.count(1000)

    async def create_instance(self, request: CreateInstanceRequest) -> ProviderInstance:
        self.calls.append(("create_instance", request.name))
        self.last_create_request = request
        if self.create_error is not None:
            raise self.create_error
        instance = ProviderInstance(
            provider_id=str(next(self._ids)),
            name=request.name,
            status="new",
            tags=tuple(request.tags),
            region=request.region,
        )
        self.instances[instance.provider_id] = instance
        return instance

    async def get_instance(self, provider_id: str) -> ProviderInstance:
        self.calls.append(("get_instance", provider_id))
        if self.get_error is not None:
            raise self.get_error
        instance = self.instances.get(provider_id)
        if instance is None:
            raise ProviderNotFoundError(f"instance {provider_id} not found")
        polls = self.polls.get(provider_id, 0) + 1
        self.polls[provider_id] = polls
        if self.terminal_status is not None:
            instance = replace(instance, status=self.terminal_status)
        elif self.ready_after_polls is not None and polls >= self.ready_after_polls:
            instance = replace(instance, status="active", public_ipv4=self.public_ipv4)
        self.instances[provider_id] = instance
        return instance

    async def delete_instance(self, provider_id: str) -> None:
        self.calls.append(("delete_instance", provider_id))
        if self.delete_error is not None:
            raise self.delete_error
        if self.instances.pop(provider_id, None) is None:
            raise ProviderNotFoundError(f"instance {provider_id} not found")

    async def list_instances_by_tag(self, tag: str) -> list[ProviderInstance]:
        self.calls.append(("list_instances_by_tag", tag))
        return [i for i in self.instances.values() if tag in i.tags]

    def get_call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)
