"""Store and provider protocol interfaces for dependency injection.

These protocols define the contracts that concrete implementations (InMemory
for local dev and tests, Supabase/DigitalOcean for non-local) must satisfy.
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol, runtime_checkable

from .models import (
    CatalogEntry,
    CreateInstanceRequest,
    Environment,
    Instance,
    ProviderInstance,
)


@runtime_checkable
class EnvironmentRecordStore(Protocol):
    """Typed CRUD over Environments and the Instances they own.

    ``update_*`` raise the matching NotFoundError subclass when the row is
    gone. ``delete_environment`` cascades to the Environment's Instances.
    """

    async def create_environment(self, environment: Environment) -> Environment: ...
    async def get_environment(self, environment_id: str) -> Environment | None: ...
    async def list_environments(self, owner_id: str) -> list[Environment]: ...
    async def update_environment(
        self, environment_id: str, changes: Mapping[str, Any],
    ) -> Environment: ...
    async def delete_environment(self, environment_id: str) -> bool: ...

    async def create_instance(self, instance: Instance) -> Instance: ...
    async def get_instance(self, instance_id: str) -> Instance | None: ...
    async def list_instances(self, environment_id: str) -> list[Instance]: ...
    async def update_instance(
        self, instance_id: str, changes: Mapping[str, Any],
    ) -> Instance: ...


@runtime_checkable
class ToolCatalog(Protocol):
    """Read-only registry of deployable tools."""

    async def get_entry(self, entry_id: str) -> CatalogEntry | None: ...


@runtime_checkable
class SecretStore(Protocol):
    """Opaque, reference-based secret storage."""

    async def create_secret(
        self, value: str, *, name: str, description: str = "",
    ) -> str: ...
    async def get_secret(self, ref: str) -> str | None: ...
    async def delete_secret(self, ref: str) -> bool: ...


@runtime_checkable
class RoleResolver(Protocol):
    """Answers whether a user holds a platform role."""

    async def has_role(self, user_id: str, role: str) -> bool: ...


@runtime_checkable
class ProviderClient(Protocol):
    """Cloud compute provider operations.

    ``delete_instance`` raises ProviderNotFoundError when the instance is
    already gone.
    """

    async def create_instance(self, request: CreateInstanceRequest) -> ProviderInstance: ...
    async def get_instance(self, provider_id: str) -> ProviderInstance: ...
    async def delete_instance(self, provider_id: str) -> None: ...
    async def list_instances_by_tag(self, tag: str) -> list[ProviderInstance]: ...
