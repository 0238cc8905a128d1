"""Environment lifecycle manager: provision, refresh status, deprovision.

Provisioning flow:
  1. Generate the agent bearer token and store it in the SecretStore.
  2. Insert the Environment in ``pending_provision``.
  3. Build the bootstrap script (fails fast on missing configuration).
  4. Move to ``provisioning`` and create the provider instance.
  5. Persist the provider instance id immediately.
  6. Poll the provider until active with a public IPv4 address, within
     ``poll_max_attempts`` polls and the ``poll_deadline_seconds`` wall-time cap.
  7. Persist the IP and move to ``awaiting_heartbeat``.

Any failure in steps 3-7 moves the Environment to ``error_provisioning``
with a truncated message and re-raises. The record is kept for inspection.

Mutating operations on one Environment are serialized through a KeyedLock.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from toolbox_control.agent.client import ManagementAgentClient
from toolbox_control.agent.reports import ToolInstanceReport, parse_status_payload
from toolbox_control.bootstrap import build_bootstrap_script
from toolbox_control.errors import (
    AgentProtocolError,
    AgentUnreachableError,
    AuthorizationError,
    ConfigurationError,
    EnvironmentNotFoundError,
    ProviderError,
    ProviderNotFoundError,
    ProvisioningError,
)
from toolbox_control.lifecycle.state_machine import (
    DEPROVISION_IDEMPOTENT_STATES,
    REFRESH_SKIPPED_STATES,
    STATUS_PRESERVING_STATES,
    require_transition,
)
from toolbox_control.locks import KeyedLock
from toolbox_control.models import (
    TERMINAL_PROVIDER_STATES,
    CreateInstanceRequest,
    Environment,
    EnvironmentStatus,
    ProviderInstance,
    ProviderInstanceState,
    truncate_error,
    utcnow,
)
from toolbox_control.observability.metrics import (
    DEPROVISION_TOTAL,
    ORPHANED_RESOURCES_TOTAL,
    PROVIDER_POLL_ATTEMPTS,
    PROVISION_TOTAL,
    REFRESH_TOTAL,
)
from toolbox_control.protocols import EnvironmentRecordStore, ProviderClient, SecretStore
from toolbox_control.providers.digitalocean import (
    SHARED_TOOLBOX_TAG,
    build_instance_name,
    build_instance_tags,
    environment_id_from_tags,
)
from toolbox_control.settings import ToolboxControlSettings

if TYPE_CHECKING:
    from toolbox_control.instances.dispatcher import InstanceCommandDispatcher

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def generate_agent_token() -> str:
    """32 random bytes, hex-encoded."""
    return secrets.token_hex(32)


@dataclass(frozen=True, slots=True)
class DeprovisionResult:
    environment_id: str
    success: bool
    message: str
    status: EnvironmentStatus | None = None
    """Status left on the record; None once the record is deleted."""


class EnvironmentLifecycleManager:
    def __init__(
        self,
        *,
        store: EnvironmentRecordStore,
        secret_store: SecretStore,
        provider: ProviderClient,
        agent: ManagementAgentClient,
        settings: ToolboxControlSettings,
        instance_dispatcher: InstanceCommandDispatcher | None = None,
        locks: KeyedLock | None = None,
        sleep: Sleep = asyncio.sleep,
        token_factory: Callable[[], str] = generate_agent_token,
    ) -> None:
        self._store = store
        self._secrets = secret_store
        self._provider = provider
        self._agent = agent
        self._settings = settings
        self._dispatcher = instance_dispatcher
        self._locks = locks or KeyedLock()
        self._sleep = sleep
        self._token_factory = token_factory
        self._background_tasks: set[asyncio.Task] = set()

    @property
    def background_tasks(self) -> frozenset[asyncio.Task]:
        return frozenset(self._background_tasks)

    def _truncate(self, message: str) -> str:
        return truncate_error(message, self._settings.error_message_max_length)

    # ── Queries ──────────────────────────────────────────────────

    async def get_environment(
        self, environment_id: str, requesting_owner_id: str | None = None,
    ) -> Environment:
        """Load an Environment, hiding records the requester does not own."""
        env = await self._store.get_environment(environment_id)
        if env is None or (
            requesting_owner_id is not None and env.owner_id != requesting_owner_id
        ):
            raise EnvironmentNotFoundError(f"environment {environment_id!r} not found")
        return env

    async def list_environments(self, owner_id: str) -> list[Environment]:
        return await self._store.list_environments(owner_id)

    # ── Provision ────────────────────────────────────────────────

    async def provision(
        self,
        owner_id: str,
        name: str,
        region: str | None = None,
        size: str | None = None,
        description: str | None = None,
        *,
        image: str | None = None,
        deadline_seconds: float | None = None,
    ) -> Environment:
        """Provision a Toolbox and block until it reaches ``awaiting_heartbeat``.

        ``deadline_seconds`` bounds the whole call; on expiry the work is
        cancelled, the record keeps its last persisted status and
        ``TimeoutError`` is raised.
        """
        env, token = await self._create_pending(
            owner_id, name, region, size, description, image,
        )
        run = self._run_provisioning(env, token)
        if deadline_seconds is None:
            return await run
        return await asyncio.wait_for(run, timeout=deadline_seconds)

    async def provision_in_background(
        self,
        owner_id: str,
        name: str,
        region: str | None = None,
        size: str | None = None,
        description: str | None = None,
        *,
        image: str | None = None,
    ) -> Environment:
        """Create the pending record and finish provisioning in a tracked task."""
        env, token = await self._create_pending(
            owner_id, name, region, size, description, image,
        )
        task = asyncio.create_task(
            self._run_provisioning(env, token), name=f"provision-{env.id}",
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)
        return env

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Background provisioning ended with %s: %s",
                type(exc).__name__,
                exc,
                extra={"task": task.get_name()},
            )

    async def aclose(self) -> None:
        """Cancel outstanding background provisioning tasks."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _create_pending(
        self,
        owner_id: str,
        name: str,
        region: str | None,
        size: str | None,
        description: str | None,
        image: str | None,
    ) -> tuple[Environment, str]:
        if not owner_id:
            raise ValueError("owner_id is required")
        name = (name or "").strip()
        if not name:
            raise ValueError("name is required")

        environment_id = str(uuid.uuid4())
        token = self._token_factory()
        secret_ref = await self._secrets.create_secret(
            token,
            name=f"toolbox_agent_token_{environment_id}",
            description=f"Management agent bearer token for toolbox {environment_id}",
        )

        env = Environment(
            id=environment_id,
            owner_id=owner_id,
            name=name,
            description=description,
            region=region or self._settings.default_region,
            size=size or self._settings.default_size,
            image=image or self._settings.default_image,
            status=EnvironmentStatus.PENDING_PROVISION,
            agent_token_secret_ref=secret_ref,
        )
        try:
            env = await self._store.create_environment(env)
        except Exception:
            await self._discard_secret(secret_ref, environment_id)
            raise

        logger.info(
            "Toolbox record created: %s",
            environment_id,
            extra={"environment_id": environment_id, "owner_id": owner_id},
        )
        return env, token

    async def _run_provisioning(self, env: Environment, token: str) -> Environment:
        async with self._locks.acquire(env.id):
            current = await self._store.get_environment(env.id)
            if current is None:
                raise EnvironmentNotFoundError(
                    f"environment {env.id!r} was removed before provisioning started"
                )
            try:
                result = await self._provision_steps(current, token)
            except Exception as exc:
                PROVISION_TOTAL.labels(outcome="error").inc()
                await self._mark_provisioning_failed(env.id, exc)
                raise
            PROVISION_TOTAL.labels(outcome="success").inc()
            return result

    async def _provision_steps(self, env: Environment, token: str) -> Environment:
        missing = self._settings.provisioning_config_errors()
        if missing:
            raise ConfigurationError(
                "provisioning is not configured: " + "; ".join(missing)
            )
        user_data = build_bootstrap_script(
            agent_bearer_token=token,
            callback_base_url=self._settings.callback_base_url,
            agent_api_key=self._settings.agent_api_key,
            agent_image=self._settings.agent_image,
            agent_port=self._settings.agent_port,
        )

        env = await self._transition(env, EnvironmentStatus.PROVISIONING)
        request = CreateInstanceRequest(
            name=build_instance_name(env.owner_id, env.id),
            region=env.region,
            size=env.size,
            image=env.image,
            ssh_keys=self._settings.ssh_key_ids,
            tags=build_instance_tags(env.owner_id, env.id),
            user_data=user_data,
        )
        created = await self._provider.create_instance(request)

        try:
            env = await self._store.update_environment(
                env.id, {"provider_instance_id": created.provider_id},
            )
        except Exception:
            await self._discard_provider_instance(created.provider_id, env.id)
            raise
        logger.info(
            "Provider instance %s created for toolbox %s",
            created.provider_id,
            env.id,
            extra={"environment_id": env.id, "provider_instance_id": created.provider_id},
        )

        ready = await self._wait_until_active(env.id, created.provider_id)
        env = await self._transition(
            env,
            EnvironmentStatus.AWAITING_HEARTBEAT,
            public_ip_address=ready.public_ipv4,
            error_message=None,
        )
        logger.info(
            "Toolbox %s provisioned at %s",
            env.id,
            ready.public_ipv4,
            extra={"environment_id": env.id, "provider_instance_id": created.provider_id},
        )
        return env

    async def _wait_until_active(
        self, environment_id: str, provider_id: str,
    ) -> ProviderInstance:
        deadline = self._settings.poll_deadline_seconds
        try:
            async with asyncio.timeout(deadline) as budget:
                return await self._poll_provider(environment_id, provider_id)
        except TimeoutError:
            if not budget.expired():
                raise
            raise ProvisioningError(
                f"instance {provider_id} did not become active with a public IPv4 "
                f"address within {deadline:g}s"
            ) from None

    async def _poll_provider(
        self, environment_id: str, provider_id: str,
    ) -> ProviderInstance:
        max_attempts = self._settings.poll_max_attempts
        for attempt in range(1, max_attempts + 1):
            await self._sleep(self._settings.poll_interval_seconds)
            instance = await self._provider.get_instance(provider_id)
            state = instance.state
            if state in TERMINAL_PROVIDER_STATES:
                raise ProvisioningError(
                    f"provider reported status {instance.status!r} for instance {provider_id}"
                )
            if state is ProviderInstanceState.ACTIVE and instance.public_ipv4:
                PROVIDER_POLL_ATTEMPTS.observe(attempt)
                return instance
            logger.debug(
                "Instance %s not ready (poll %d/%d, status=%s)",
                provider_id,
                attempt,
                max_attempts,
                instance.status,
                extra={"environment_id": environment_id},
            )
        raise ProvisioningError(
            f"instance {provider_id} did not become active with a public IPv4 "
            f"address after {max_attempts} polls"
        )

    async def _mark_provisioning_failed(self, environment_id: str, exc: Exception) -> None:
        message = self._truncate(str(exc) or type(exc).__name__)
        logger.error(
            "Provisioning failed for toolbox %s: %s",
            environment_id,
            message,
            extra={"environment_id": environment_id, "error_type": type(exc).__name__},
        )
        try:
            current = await self._store.get_environment(environment_id)
            if current is None:
                return
            await self._transition(
                current, EnvironmentStatus.ERROR_PROVISIONING, error_message=message,
            )
        except Exception:
            logger.exception(
                "Could not record provisioning failure for toolbox %s",
                environment_id,
                extra={"environment_id": environment_id},
            )

    # ── Deprovision ──────────────────────────────────────────────

    async def deprovision(
        self, environment_id: str, requesting_owner_id: str | None = None,
    ) -> DeprovisionResult:
        """Tear down the provider instance, then delete the record and token.

        Returns a failed result (record kept in ``error_deprovisioning``)
        when the provider or the record store fails. Raises
        AuthorizationError when the requester does not own the record.
        """
        async with self._locks.acquire(environment_id):
            env = await self._store.get_environment(environment_id)
            if env is None:
                DEPROVISION_TOTAL.labels(outcome="already_gone").inc()
                return DeprovisionResult(
                    environment_id, True, "environment already deprovisioned",
                )
            if requesting_owner_id is not None and env.owner_id != requesting_owner_id:
                raise AuthorizationError(
                    f"user may not deprovision environment {environment_id!r}"
                )
            if env.status in DEPROVISION_IDEMPOTENT_STATES:
                return DeprovisionResult(
                    environment_id, True, "deprovisioning already in progress", env.status,
                )

            env = await self._transition(
                env, EnvironmentStatus.DEPROVISIONING, public_ip_address=None,
            )
            provider_gone = False
            try:
                if env.provider_instance_id:
                    try:
                        await self._provider.delete_instance(env.provider_instance_id)
                    except ProviderNotFoundError:
                        logger.info(
                            "Provider instance %s already gone",
                            env.provider_instance_id,
                            extra={"environment_id": env.id},
                        )
                provider_gone = True
                if not await self._store.delete_environment(env.id):
                    logger.warning(
                        "Toolbox record %s vanished during deprovision",
                        env.id,
                        extra={"environment_id": env.id},
                    )
            except Exception as exc:
                message = self._truncate(str(exc) or type(exc).__name__)
                await self._mark_deprovision_failed(env, message, provider_gone)
                DEPROVISION_TOTAL.labels(outcome="error").inc()
                return DeprovisionResult(
                    env.id, False, message, EnvironmentStatus.ERROR_DEPROVISIONING,
                )

            if env.agent_token_secret_ref:
                await self._discard_secret(env.agent_token_secret_ref, env.id)
            DEPROVISION_TOTAL.labels(outcome="success").inc()
            logger.info(
                "Toolbox %s deprovisioned",
                env.id,
                extra={"environment_id": env.id, "provider_instance_id": env.provider_instance_id},
            )
            return DeprovisionResult(env.id, True, "environment deprovisioned")

    async def _mark_deprovision_failed(
        self, env: Environment, message: str, provider_gone: bool,
    ) -> None:
        changes: dict[str, Any] = {"error_message": message}
        if provider_gone and env.provider_instance_id:
            changes["provider_instance_id"] = None
            ORPHANED_RESOURCES_TOTAL.labels(kind="environment_record").inc()
            logger.error(
                "Provider instance %s removed but toolbox record %s remains",
                env.provider_instance_id,
                env.id,
                extra={"environment_id": env.id, "orphaned_resource": "environment_record"},
            )
        logger.error(
            "Deprovisioning failed for toolbox %s: %s",
            env.id,
            message,
            extra={"environment_id": env.id},
        )
        try:
            await self._transition(env, EnvironmentStatus.ERROR_DEPROVISIONING, **changes)
        except Exception:
            logger.exception(
                "Could not record deprovisioning failure for toolbox %s",
                env.id,
                extra={"environment_id": env.id},
            )

    # ── Refresh status ───────────────────────────────────────────

    async def refresh_status(
        self, environment_id: str, requesting_owner_id: str | None = None,
    ) -> Environment:
        """Query the management agent and reconcile the Environment with it.

        Raises AgentUnreachableError / AgentProtocolError after recording the
        Environment as ``unresponsive``.
        """
        async with self._locks.acquire(environment_id):
            env = await self.get_environment(environment_id, requesting_owner_id)
            if env.status in REFRESH_SKIPPED_STATES:
                REFRESH_TOTAL.labels(outcome="skipped").inc()
                return env
            if not self._agent.is_configured:
                raise ConfigurationError("agent_api_key is required to refresh status")

            env, host = await self._resolve_agent_host(env)
            if not host:
                REFRESH_TOTAL.labels(outcome="no_address").inc()
                raise AgentUnreachableError(
                    f"no public IP address is known for toolbox {env.id}"
                )

            try:
                payload = await self._agent.get_status(host)
            except (AgentUnreachableError, AgentProtocolError) as exc:
                await self._mark_unresponsive(env, exc)
                REFRESH_TOTAL.labels(outcome="unresponsive").inc()
                raise

            parsed = parse_status_payload(payload)
            heartbeat = utcnow()
            changes: dict[str, Any] = {
                "health_details": dict(payload),
                "last_heartbeat_at": heartbeat,
            }
            if parsed.report.version is not None:
                changes["agent_version"] = parsed.report.version
            if env.status not in STATUS_PRESERVING_STATES:
                require_transition(env.status, EnvironmentStatus.ACTIVE)
                changes["status"] = EnvironmentStatus.ACTIVE
                changes["error_message"] = None
            env = await self._store.update_environment(env.id, changes)

            await self._reconcile_instances(env, parsed.instances, heartbeat)
            REFRESH_TOTAL.labels(outcome="healthy").inc()
            return env

    async def _resolve_agent_host(self, env: Environment) -> tuple[Environment, str | None]:
        fresh_ip: str | None = None
        if env.provider_instance_id:
            try:
                instance = await self._provider.get_instance(env.provider_instance_id)
                fresh_ip = instance.public_ipv4
            except ProviderError as exc:
                logger.warning(
                    "Could not re-fetch address of toolbox %s, using stored IP: %s",
                    env.id,
                    exc,
                    extra={"environment_id": env.id},
                )
        if fresh_ip and fresh_ip != env.public_ip_address:
            env = await self._store.update_environment(
                env.id, {"public_ip_address": fresh_ip},
            )
        return env, fresh_ip or env.public_ip_address

    async def _mark_unresponsive(
        self, env: Environment, exc: AgentUnreachableError | AgentProtocolError,
    ) -> None:
        message = self._truncate(exc.message)
        detail: dict[str, Any] = {"error": message, "error_type": exc.code}
        if isinstance(exc, AgentProtocolError) and exc.status_code is not None:
            detail["status_code"] = exc.status_code
        changes: dict[str, Any] = {"health_details": detail, "error_message": message}
        if env.status not in STATUS_PRESERVING_STATES:
            require_transition(env.status, EnvironmentStatus.UNRESPONSIVE)
            changes["status"] = EnvironmentStatus.UNRESPONSIVE
        logger.warning(
            "Management agent of toolbox %s is unresponsive: %s",
            env.id,
            message,
            extra={"environment_id": env.id},
        )
        await self._store.update_environment(env.id, changes)

    async def _reconcile_instances(
        self,
        env: Environment,
        reports: list[ToolInstanceReport],
        heartbeat_at: Any,
    ) -> None:
        if self._dispatcher is None or not reports:
            return
        targets = [r for r in reports if r.account_tool_instance_id]
        if len(targets) < len(reports):
            logger.warning(
                "Skipping %d tool instance reports without an instance id",
                len(reports) - len(targets),
                extra={"environment_id": env.id},
            )
        results = await asyncio.gather(
            *(
                self._dispatcher.update_from_agent_report(
                    report.account_tool_instance_id,
                    report.status,
                    report.details(),
                    heartbeat_at,
                    environment_id=env.id,
                )
                for report in targets
            ),
            return_exceptions=True,
        )
        for report, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.error(
                    "Failed to reconcile tool instance %s: %s",
                    report.account_tool_instance_id,
                    result,
                    extra={
                        "environment_id": env.id,
                        "instance_id": report.account_tool_instance_id,
                    },
                )

    # ── Orphans ──────────────────────────────────────────────────

    async def find_orphaned_instances(self) -> list[ProviderInstance]:
        """Provider instances tagged as toolboxes with no Environment record.

        Reports only; nothing is deleted.
        """
        orphans: list[ProviderInstance] = []
        for instance in await self._provider.list_instances_by_tag(SHARED_TOOLBOX_TAG):
            environment_id = environment_id_from_tags(instance.tags)
            if environment_id is None or await self._store.get_environment(environment_id) is None:
                orphans.append(instance)
                logger.warning(
                    "Orphaned provider instance %s (%s)",
                    instance.provider_id,
                    instance.name,
                    extra={"provider_instance_id": instance.provider_id, "orphaned_resource": "provider_instance"},
                )
        return orphans

    # ── Helpers ──────────────────────────────────────────────────

    async def _transition(
        self, env: Environment, target: EnvironmentStatus, **changes: Any,
    ) -> Environment:
        require_transition(env.status, target)
        return await self._store.update_environment(env.id, {"status": target, **changes})

    async def _discard_secret(self, secret_ref: str, environment_id: str) -> None:
        try:
            await self._secrets.delete_secret(secret_ref)
        except Exception as exc:
            ORPHANED_RESOURCES_TOTAL.labels(kind="secret").inc()
            logger.error(
                "Agent token secret for toolbox %s was not deleted and needs manual cleanup: %s",
                environment_id,
                exc,
                extra={
                    "environment_id": environment_id,
                    "secret_ref": secret_ref,
                    "orphaned_resource": "secret",
                },
            )

    async def _discard_provider_instance(self, provider_id: str, environment_id: str) -> None:
        try:
            await self._provider.delete_instance(provider_id)
        except ProviderNotFoundError:
            return
        except ProviderError as exc:
            ORPHANED_RESOURCES_TOTAL.labels(kind="provider_instance").inc()
            logger.error(
                "Provider instance %s for toolbox %s is untracked and needs manual cleanup: %s",
                provider_id,
                environment_id,
                exc,
                extra={
                    "environment_id": environment_id,
                    "provider_instance_id": provider_id,
                    "orphaned_resource": "provider_instance",
                },
            )
