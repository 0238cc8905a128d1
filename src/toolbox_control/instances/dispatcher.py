"""Tool instance commands against a Toolbox management agent.

Every command authorizes the caller against the parent Environment (owner,
or a user holding the admin role), checks state preconditions, then moves
the Instance through its command status around the agent call:

  deploy: pending_deploy      -> deploying | error_deploying
  start:  starting_on_toolbox -> running   | error_starting
  stop:   stopping_on_toolbox -> stopped   | error_stopping
  remove: pending_delete      -> deleting  | error_deleting

Agent failures are recorded on the Instance and re-raised.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable

from toolbox_control.agent.client import ManagementAgentClient
from toolbox_control.errors import (
    AuthorizationError,
    CatalogEntryNotFoundError,
    ConfigurationError,
    EnvironmentNotFoundError,
    InstanceNotFoundError,
    StatePreconditionError,
)
from toolbox_control.locks import KeyedLock
from toolbox_control.models import (
    Environment,
    EnvironmentStatus,
    Instance,
    InstanceStatus,
    map_agent_instance_status,
    truncate_error,
)
from toolbox_control.observability.metrics import INSTANCE_COMMANDS_TOTAL
from toolbox_control.protocols import EnvironmentRecordStore, RoleResolver, ToolCatalog
from toolbox_control.settings import ToolboxControlSettings

logger = logging.getLogger(__name__)

_INSTANCE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]{0,62}$")


class InstanceCommandDispatcher:
    def __init__(
        self,
        *,
        store: EnvironmentRecordStore,
        catalog: ToolCatalog,
        agent: ManagementAgentClient,
        roles: RoleResolver,
        settings: ToolboxControlSettings,
        locks: KeyedLock | None = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._agent = agent
        self._roles = roles
        self._settings = settings
        self._locks = locks or KeyedLock()

    # ── Queries ──────────────────────────────────────────────────

    async def get_instance(self, owner_id: str, instance_id: str) -> Instance:
        instance = await self._load_instance(instance_id)
        env = await self._load_environment(instance.environment_id)
        await self._authorize(owner_id, env)
        return instance

    async def list_instances(self, owner_id: str, environment_id: str) -> list[Instance]:
        env = await self._load_environment(environment_id)
        await self._authorize(owner_id, env)
        return await self._store.list_instances(environment_id)

    # ── Commands ─────────────────────────────────────────────────

    async def deploy(
        self,
        owner_id: str,
        environment_id: str,
        catalog_entry_id: str,
        instance_name: str,
        config_override: dict[str, Any] | None = None,
    ) -> Instance:
        """Create an Instance and ask the agent to deploy it."""
        env = await self._load_environment(environment_id)
        await self._authorize(owner_id, env)
        self._require_active(env)
        entry = await self._catalog.get_entry(catalog_entry_id)
        if entry is None:
            raise CatalogEntryNotFoundError(f"catalog entry {catalog_entry_id!r} not found")
        if not _INSTANCE_NAME_RE.match(instance_name or ""):
            raise ValueError(f"invalid instance name: {instance_name!r}")
        self._require_agent_configured()
        for existing in await self._store.list_instances(environment_id):
            if existing.instance_name == instance_name:
                raise StatePreconditionError(
                    f"instance name {instance_name!r} is already used on this toolbox"
                )

        instance = await self._store.create_instance(
            Instance(
                id=str(uuid.uuid4()),
                environment_id=environment_id,
                catalog_entry_id=catalog_entry_id,
                instance_name=instance_name,
                status=InstanceStatus.PENDING_DEPLOY,
                config_override=dict(config_override or {}),
            )
        )
        async with self._locks.acquire(instance.id):
            return await self._issue(
                "deploy",
                instance,
                lambda: self._agent.deploy_tool(
                    env.public_ip_address or "",
                    image=entry.image,
                    instance_name=instance.instance_name,
                    instance_id=instance.id,
                    config_override=instance.config_override,
                ),
                success=InstanceStatus.DEPLOYING,
                failure=InstanceStatus.ERROR_DEPLOYING,
            )

    async def start(self, owner_id: str, instance_id: str) -> Instance:
        return await self._toggle(
            owner_id,
            instance_id,
            command="start",
            required=InstanceStatus.STOPPED,
            pending=InstanceStatus.STARTING_ON_TOOLBOX,
            success=InstanceStatus.RUNNING,
            failure=InstanceStatus.ERROR_STARTING,
        )

    async def stop(self, owner_id: str, instance_id: str) -> Instance:
        return await self._toggle(
            owner_id,
            instance_id,
            command="stop",
            required=InstanceStatus.RUNNING,
            pending=InstanceStatus.STOPPING_ON_TOOLBOX,
            success=InstanceStatus.STOPPED,
            failure=InstanceStatus.ERROR_STOPPING,
        )

    async def remove(self, owner_id: str, instance_id: str) -> Instance:
        """Ask the agent to remove a tool. The Environment need not be active."""
        async with self._locks.acquire(instance_id):
            instance = await self._load_instance(instance_id)
            env = await self._load_environment(instance.environment_id)
            await self._authorize(owner_id, env)
            self._require_agent_configured()

            instance = await self._store.update_instance(
                instance.id, {"status": InstanceStatus.PENDING_DELETE},
            )
            return await self._issue(
                "remove",
                instance,
                lambda: self._agent.remove_tool(
                    env.public_ip_address or "", instance.instance_name,
                ),
                success=InstanceStatus.DELETING,
                failure=InstanceStatus.ERROR_DELETING,
            )

    async def update_from_agent_report(
        self,
        instance_id: str,
        reported_status: str | None,
        reported_details: dict[str, Any] | None = None,
        heartbeat_at: datetime | None = None,
        *,
        environment_id: str | None = None,
    ) -> Instance | None:
        """Apply an agent's self-reported state to an Instance.

        Returns None for unknown ids (or ids belonging to another
        Environment); reports never create records. Skips the write when
        nothing changed.
        """
        async with self._locks.acquire(instance_id):
            instance = await self._store.get_instance(instance_id)
            if instance is None:
                logger.warning(
                    "Agent reported unknown tool instance %s",
                    instance_id,
                    extra={"instance_id": instance_id, "environment_id": environment_id},
                )
                return None
            if environment_id is not None and instance.environment_id != environment_id:
                logger.warning(
                    "Agent of toolbox %s reported instance %s owned by toolbox %s",
                    environment_id,
                    instance_id,
                    instance.environment_id,
                    extra={"instance_id": instance_id, "environment_id": environment_id},
                )
                return None

            changes: dict[str, Any] = {}
            status = map_agent_instance_status(reported_status)
            if status is not instance.status:
                changes["status"] = status
            if reported_details is not None and reported_details != instance.runtime_details:
                changes["runtime_details"] = dict(reported_details)
            if heartbeat_at is not None and heartbeat_at != instance.last_heartbeat_at:
                changes["last_heartbeat_at"] = heartbeat_at
            if not changes:
                return instance
            return await self._store.update_instance(instance.id, changes)

    # ── Internals ────────────────────────────────────────────────

    async def _toggle(
        self,
        owner_id: str,
        instance_id: str,
        *,
        command: str,
        required: InstanceStatus,
        pending: InstanceStatus,
        success: InstanceStatus,
        failure: InstanceStatus,
    ) -> Instance:
        async with self._locks.acquire(instance_id):
            instance = await self._load_instance(instance_id)
            env = await self._load_environment(instance.environment_id)
            await self._authorize(owner_id, env)
            self._require_active(env)
            if instance.status is not required:
                raise StatePreconditionError(
                    f"cannot {command} instance in status {instance.status.value!r}; "
                    f"expected {required.value!r}"
                )
            self._require_agent_configured()

            instance = await self._store.update_instance(instance.id, {"status": pending})
            call = self._agent.start_tool if command == "start" else self._agent.stop_tool
            return await self._issue(
                command,
                instance,
                lambda: call(env.public_ip_address or "", instance.instance_name),
                success=success,
                failure=failure,
            )

    async def _issue(
        self,
        command: str,
        instance: Instance,
        call: Callable[[], Awaitable[Any]],
        *,
        success: InstanceStatus,
        failure: InstanceStatus,
    ) -> Instance:
        try:
            await call()
        except Exception as exc:
            INSTANCE_COMMANDS_TOTAL.labels(command=command, outcome="error").inc()
            message = truncate_error(
                str(exc) or type(exc).__name__, self._settings.error_message_max_length,
            )
            logger.error(
                "Agent %s failed for tool instance %s: %s",
                command,
                instance.id,
                message,
                extra={"instance_id": instance.id, "environment_id": instance.environment_id},
            )
            await self._store.update_instance(
                instance.id, {"status": failure, "error_message": message},
            )
            raise

        INSTANCE_COMMANDS_TOTAL.labels(command=command, outcome="success").inc()
        logger.info(
            "Agent %s accepted for tool instance %s",
            command,
            instance.id,
            extra={"instance_id": instance.id, "environment_id": instance.environment_id},
        )
        return await self._store.update_instance(
            instance.id, {"status": success, "error_message": None},
        )

    async def _load_instance(self, instance_id: str) -> Instance:
        instance = await self._store.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"instance {instance_id!r} not found")
        return instance

    async def _load_environment(self, environment_id: str) -> Environment:
        env = await self._store.get_environment(environment_id)
        if env is None:
            raise EnvironmentNotFoundError(f"environment {environment_id!r} not found")
        return env

    async def _authorize(self, user_id: str, env: Environment) -> None:
        if env.owner_id == user_id:
            return
        if await self._roles.has_role(user_id, self._settings.admin_role):
            logger.info(
                "Admin %s acting on toolbox %s owned by %s",
                user_id,
                env.id,
                env.owner_id,
                extra={"environment_id": env.id},
            )
            return
        raise AuthorizationError(f"user may not manage toolbox {env.id!r}")

    @staticmethod
    def _require_active(env: Environment) -> None:
        if env.status is not EnvironmentStatus.ACTIVE:
            raise StatePreconditionError(
                f"toolbox {env.id!r} is {env.status.value!r}; it must be 'active'"
            )

    def _require_agent_configured(self) -> None:
        if not self._agent.is_configured:
            raise ConfigurationError("agent_api_key is required to command the management agent")
