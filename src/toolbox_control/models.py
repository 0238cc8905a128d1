"""Environment and Instance records plus the canonical status mappings.

External status strings (from the cloud provider or the management agent)
are translated to internal enums in exactly one place each:
``map_provider_status`` and ``map_agent_instance_status``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping


class EnvironmentStatus(str, enum.Enum):
    PENDING_PROVISION = "pending_provision"
    PROVISIONING = "provisioning"
    AWAITING_HEARTBEAT = "awaiting_heartbeat"
    ACTIVE = "active"
    UNRESPONSIVE = "unresponsive"
    ERROR_PROVISIONING = "error_provisioning"
    DEPROVISIONING = "deprovisioning"
    ERROR_DEPROVISIONING = "error_deprovisioning"


class InstanceStatus(str, enum.Enum):
    PENDING_DEPLOY = "pending_deploy"
    DEPLOYING = "deploying"
    RUNNING = "running"
    STOPPING_ON_TOOLBOX = "stopping_on_toolbox"
    STOPPED = "stopped"
    STARTING_ON_TOOLBOX = "starting_on_toolbox"
    PENDING_DELETE = "pending_delete"
    DELETING = "deleting"
    ERROR_DEPLOYING = "error_deploying"
    ERROR_STARTING = "error_starting"
    ERROR_STOPPING = "error_stopping"
    ERROR_DELETING = "error_deleting"
    # Agent reported an error (or a state we do not recognize).
    ERROR = "error"


class ProviderInstanceState(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    OFF = "off"
    ARCHIVED = "archived"
    ERRORED = "errored"
    UNKNOWN = "unknown"


TERMINAL_PROVIDER_STATES = frozenset(
    {ProviderInstanceState.ARCHIVED, ProviderInstanceState.ERRORED}
)

_PROVIDER_STATUS_MAP: Mapping[str, ProviderInstanceState] = MappingProxyType(
    {
        "new": ProviderInstanceState.PENDING,
        "active": ProviderInstanceState.ACTIVE,
        "off": ProviderInstanceState.OFF,
        "archive": ProviderInstanceState.ARCHIVED,
        "archived": ProviderInstanceState.ARCHIVED,
        "errored": ProviderInstanceState.ERRORED,
        "error": ProviderInstanceState.ERRORED,
    }
)

_AGENT_STATUS_MAP: Mapping[str, InstanceStatus] = MappingProxyType(
    {
        "PENDING": InstanceStatus.DEPLOYING,
        "STARTING": InstanceStatus.DEPLOYING,
        "RUNNING": InstanceStatus.RUNNING,
        # Transitional; deliberately coarse.
        "STOPPING": InstanceStatus.DEPLOYING,
        "STOPPED": InstanceStatus.STOPPED,
        "ERROR": InstanceStatus.ERROR,
    }
)


def map_provider_status(raw: str | None) -> ProviderInstanceState:
    """Map a provider-reported instance status to ``ProviderInstanceState``."""
    if not raw:
        return ProviderInstanceState.UNKNOWN
    return _PROVIDER_STATUS_MAP.get(raw.strip().lower(), ProviderInstanceState.UNKNOWN)


def map_agent_instance_status(raw: str | None) -> InstanceStatus:
    """Map an agent-reported container status to ``InstanceStatus``.

    Unknown or missing values map to ``InstanceStatus.ERROR``; an
    unrecognized agent state is never treated as healthy.
    """
    if not raw:
        return InstanceStatus.ERROR
    return _AGENT_STATUS_MAP.get(raw.strip().upper(), InstanceStatus.ERROR)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def truncate_error(message: str, max_length: int = 500) -> str:
    """Bound an error message before it is persisted on a record."""
    message = message.strip()
    if len(message) <= max_length:
        return message
    return message[: max_length - 3].rstrip() + "..."


# ── Records ──────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Environment:
    """A Toolbox: one remote compute instance dedicated to a user account.

    ``agent_token_secret_ref`` is a SecretStore reference; the bearer token
    itself is never held on the record.
    """

    id: str
    owner_id: str
    name: str
    region: str
    size: str
    image: str
    status: EnvironmentStatus = EnvironmentStatus.PENDING_PROVISION
    description: str | None = None
    provider_instance_id: str | None = None
    public_ip_address: str | None = None
    agent_token_secret_ref: str | None = None
    agent_version: str | None = None
    last_heartbeat_at: datetime | None = None
    health_details: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_public_dict(self) -> dict[str, Any]:
        """Serialize for API responses. Never includes the token reference."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "region": self.region,
            "size": self.size,
            "image": self.image,
            "status": self.status.value,
            "provider_instance_id": self.provider_instance_id,
            "public_ip_address": self.public_ip_address,
            "agent_version": self.agent_version,
            "last_heartbeat_at": _iso(self.last_heartbeat_at),
            "health_details": self.health_details,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True, slots=True)
class Instance:
    """A containerized tool deployed on a Toolbox by its management agent."""

    id: str
    environment_id: str
    catalog_entry_id: str
    instance_name: str
    status: InstanceStatus = InstanceStatus.PENDING_DEPLOY
    config_override: dict[str, Any] | None = None
    runtime_details: dict[str, Any] | None = None
    last_heartbeat_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "environment_id": self.environment_id,
            "catalog_entry_id": self.catalog_entry_id,
            "instance_name": self.instance_name,
            "status": self.status.value,
            "config_override": self.config_override,
            "runtime_details": self.runtime_details,
            "last_heartbeat_at": _iso(self.last_heartbeat_at),
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    """A deployable tool: container image reference plus metadata."""

    id: str
    name: str
    image: str
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ProviderInstance:
    """Provider-side view of a compute instance."""

    provider_id: str
    name: str
    status: str
    public_ipv4: str | None = None
    tags: tuple[str, ...] = ()
    region: str | None = None

    @property
    def state(self) -> ProviderInstanceState:
        return map_provider_status(self.status)


@dataclass(frozen=True, slots=True)
class CreateInstanceRequest:
    name: str
    region: str
    size: str
    image: str
    ssh_keys: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    user_data: str = field(default="", repr=False)
    """Bootstrap script; contains secrets and is excluded from repr."""


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
