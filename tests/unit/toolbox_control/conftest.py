"""Shared fixtures for toolbox_control unit tests."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from toolbox_control.agent.client import ManagementAgentClient
from toolbox_control.inmemory import (
    InMemoryEnvironmentRecordStore,
    InMemoryProviderClient,
    InMemoryRoleResolver,
    InMemorySecretStore,
    InMemoryToolCatalog,
)
from toolbox_control.instances.dispatcher import InstanceCommandDispatcher
from toolbox_control.lifecycle.manager import EnvironmentLifecycleManager
from toolbox_control.locks import KeyedLock
from toolbox_control.models import (
    CatalogEntry,
    Environment,
    EnvironmentStatus,
    Instance,
    InstanceStatus,
)
from toolbox_control.settings import ToolboxControlSettings

OWNER_ID = 'user-aaaaaaaa-1111'
OTHER_USER_ID = 'user-bbbbbbbb-2222'
ADMIN_ID = 'user-admin-9999'
AGENT_IMAGE = 'ghcr.io/example/toolbox-agent:1.4.0'
TOOL_IMAGE = 'ghcr.io/example/tools/search:2.0'


@pytest.fixture
def settings() -> ToolboxControlSettings:
    return ToolboxControlSettings(
        callback_base_url='https://api.example.test',
        agent_api_key='backend-to-agent-key',
        agent_image=AGENT_IMAGE,
    )


@pytest.fixture
def store() -> InMemoryEnvironmentRecordStore:
    return InMemoryEnvironmentRecordStore()


@pytest.fixture
def secret_store() -> InMemorySecretStore:
    return InMemorySecretStore()


@pytest.fixture
def provider() -> InMemoryProviderClient:
    return InMemoryProviderClient(ready_after_polls=3, public_ipv4='203.0.113.5')


@pytest.fixture
def catalog() -> InMemoryToolCatalog:
    return InMemoryToolCatalog([
        CatalogEntry(id='cat-search', name='search', image=TOOL_IMAGE),
    ])


@pytest.fixture
def roles() -> InMemoryRoleResolver:
    return InMemoryRoleResolver({ADMIN_ID: {'admin'}})


@pytest.fixture
def agent():
    mock = AsyncMock(spec=ManagementAgentClient)
    mock.is_configured = True
    mock.get_status.return_value = {'version': '1.4.0', 'tool_instances': []}
    return mock


@pytest.fixture
def fake_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def locks() -> KeyedLock:
    return KeyedLock()


@pytest.fixture
def dispatcher(store, catalog, agent, roles, settings, locks) -> InstanceCommandDispatcher:
    return InstanceCommandDispatcher(
        store=store,
        catalog=catalog,
        agent=agent,
        roles=roles,
        settings=settings,
        locks=locks,
    )


@pytest.fixture
def manager(
    store, secret_store, provider, agent, settings, dispatcher, locks, fake_sleep,
) -> EnvironmentLifecycleManager:
    return EnvironmentLifecycleManager(
        store=store,
        secret_store=secret_store,
        provider=provider,
        agent=agent,
        settings=settings,
        instance_dispatcher=dispatcher,
        locks=locks,
        sleep=fake_sleep,
        token_factory=lambda: 'a' * 64,
    )


@pytest.fixture
def seed_environment(store):
    """Factory inserting an Environment record directly into the store."""

    async def _seed(
        env_id: str = 'env-1',
        *,
        owner_id: str = OWNER_ID,
        status: EnvironmentStatus = EnvironmentStatus.ACTIVE,
        public_ip_address: str | None = '203.0.113.5',
        provider_instance_id: str | None = None,
        agent_token_secret_ref: str | None = None,
    ) -> Environment:
        return await store.create_environment(
            Environment(
                id=env_id,
                owner_id=owner_id,
                name='dev box',
                region='nyc3',
                size='s-1vcpu-1gb',
                image='ubuntu-22-04-x64',
                status=status,
                public_ip_address=public_ip_address,
                provider_instance_id=provider_instance_id,
                agent_token_secret_ref=agent_token_secret_ref,
            )
        )

    return _seed


@pytest.fixture
def seed_instance(store):
    """Factory inserting an Instance record directly into the store."""

    async def _seed(
        instance_id: str = 'inst-1',
        *,
        environment_id: str = 'env-1',
        instance_name: str = 'search-1',
        status: InstanceStatus = InstanceStatus.RUNNING,
    ) -> Instance:
        return await store.create_instance(
            Instance(
                id=instance_id,
                environment_id=environment_id,
                catalog_entry_id='cat-search',
                instance_name=instance_name,
                status=status,
            )
        )

    return _seed
