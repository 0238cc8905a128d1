"""Tests for InstanceCommandDispatcher.

Validates:
  - deploy/start/stop/remove drive the Instance through its command statuses
  - authorization happens before any mutation (owner or admin role)
  - state preconditions (toolbox active, instance running/stopped)
  - update_from_agent_report maps statuses and skips no-op writes
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from toolbox_control.errors import (
    AgentProtocolError,
    AgentUnreachableError,
    AuthorizationError,
    CatalogEntryNotFoundError,
    ConfigurationError,
    EnvironmentNotFoundError,
    InstanceNotFoundError,
    StatePreconditionError,
)
from toolbox_control.models import EnvironmentStatus, InstanceStatus

OWNER_ID = 'user-aaaaaaaa-1111'
OTHER_USER_ID = 'user-bbbbbbbb-2222'
ADMIN_ID = 'user-admin-9999'
TOOL_IMAGE = 'ghcr.io/example/tools/search:2.0'


# ── Test: deploy ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_deploy_creates_instance_and_calls_agent(
    dispatcher, store, agent, seed_environment,
):
    await seed_environment()

    instance = await dispatcher.deploy(
        OWNER_ID, 'env-1', 'cat-search', 'search-1', {'LOG_LEVEL': 'debug'},
    )

    assert instance.status is InstanceStatus.DEPLOYING
    assert instance.environment_id == 'env-1'
    assert instance.config_override == {'LOG_LEVEL': 'debug'}
    assert await store.get_instance(instance.id) == instance
    agent.deploy_tool.assert_awaited_once_with(
        '203.0.113.5',
        image=TOOL_IMAGE,
        instance_name='search-1',
        instance_id=instance.id,
        config_override={'LOG_LEVEL': 'debug'},
    )


@pytest.mark.asyncio
async def test_deploy_agent_failure_records_error_deploying(
    dispatcher, store, agent, seed_environment,
):
    await seed_environment()
    agent.deploy_tool.side_effect = AgentProtocolError(
        'POST /tools returned HTTP 500: pull failed', status_code=500,
    )

    with pytest.raises(AgentProtocolError):
        await dispatcher.deploy(OWNER_ID, 'env-1', 'cat-search', 'search-1')

    [instance] = await store.list_instances('env-1')
    assert instance.status is InstanceStatus.ERROR_DEPLOYING
    assert 'pull failed' in instance.error_message


@pytest.mark.asyncio
async def test_deploy_requires_active_toolbox(dispatcher, store, agent, seed_environment):
    await seed_environment(status=EnvironmentStatus.AWAITING_HEARTBEAT)

    with pytest.raises(StatePreconditionError):
        await dispatcher.deploy(OWNER_ID, 'env-1', 'cat-search', 'search-1')

    assert await store.list_instances('env-1') == []
    agent.deploy_tool.assert_not_awaited()


@pytest.mark.asyncio
async def test_deploy_unknown_catalog_entry(dispatcher, store, seed_environment):
    await seed_environment()

    with pytest.raises(CatalogEntryNotFoundError):
        await dispatcher.deploy(OWNER_ID, 'env-1', 'cat-missing', 'search-1')

    assert await store.list_instances('env-1') == []


@pytest.mark.asyncio
async def test_deploy_unknown_environment(dispatcher):
    with pytest.raises(EnvironmentNotFoundError):
        await dispatcher.deploy(OWNER_ID, 'env-missing', 'cat-search', 'search-1')


@pytest.mark.parametrize('name', ['', '-leading-dash', 'has space', 'x' * 64, 'semi;colon'])
@pytest.mark.asyncio
async def test_deploy_rejects_invalid_instance_names(dispatcher, seed_environment, name):
    await seed_environment()

    with pytest.raises(ValueError):
        await dispatcher.deploy(OWNER_ID, 'env-1', 'cat-search', name)


@pytest.mark.asyncio
async def test_deploy_rejects_duplicate_instance_name(
    dispatcher, agent, seed_environment, seed_instance,
):
    await seed_environment()
    await seed_instance(instance_name='search-1')

    with pytest.raises(StatePreconditionError):
        await dispatcher.deploy(OWNER_ID, 'env-1', 'cat-search', 'search-1')

    agent.deploy_tool.assert_not_awaited()


@pytest.mark.asyncio
async def test_store_rejects_duplicate_name_as_state_conflict(
    store, seed_environment, seed_instance,
):
    await seed_environment()
    existing = await seed_instance(instance_name='search-1')

    with pytest.raises(StatePreconditionError, match='already used on this toolbox'):
        await store.create_instance(replace(existing, id='inst-2'))

    assert await store.get_instance('inst-2') is None


@pytest.mark.asyncio
async def test_deploy_requires_configured_agent(dispatcher, store, agent, seed_environment):
    await seed_environment()
    agent.is_configured = False

    with pytest.raises(ConfigurationError):
        await dispatcher.deploy(OWNER_ID, 'env-1', 'cat-search', 'search-1')

    assert await store.list_instances('env-1') == []


# ── Test: authorization ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_non_owner_cannot_deploy(dispatcher, store, agent, seed_environment):
    await seed_environment()

    with pytest.raises(AuthorizationError):
        await dispatcher.deploy(OTHER_USER_ID, 'env-1', 'cat-search', 'search-1')

    assert await store.list_instances('env-1') == []
    agent.deploy_tool.assert_not_awaited()


@pytest.mark.asyncio
async def test_non_owner_stop_leaves_instance_untouched(
    dispatcher, store, agent, seed_environment, seed_instance,
):
    await seed_environment()
    seeded = await seed_instance(status=InstanceStatus.RUNNING)

    with pytest.raises(AuthorizationError):
        await dispatcher.stop(OTHER_USER_ID, 'inst-1')

    assert await store.get_instance('inst-1') == seeded
    agent.stop_tool.assert_not_awaited()


@pytest.mark.asyncio
async def test_admin_may_act_on_any_toolbox(dispatcher, agent, seed_environment, seed_instance):
    await seed_environment()
    await seed_instance(status=InstanceStatus.RUNNING)

    instance = await dispatcher.stop(ADMIN_ID, 'inst-1')

    assert instance.status is InstanceStatus.STOPPED
    agent.stop_tool.assert_awaited_once_with('203.0.113.5', 'search-1')


@pytest.mark.asyncio
async def test_non_owner_cannot_read_instances(dispatcher, seed_environment, seed_instance):
    await seed_environment()
    await seed_instance()

    with pytest.raises(AuthorizationError):
        await dispatcher.get_instance(OTHER_USER_ID, 'inst-1')
    with pytest.raises(AuthorizationError):
        await dispatcher.list_instances(OTHER_USER_ID, 'env-1')


@pytest.mark.asyncio
async def test_owner_lists_instances(dispatcher, seed_environment, seed_instance):
    await seed_environment()
    await seed_instance('inst-1', instance_name='search-1')
    await seed_instance('inst-2', instance_name='search-2')

    instances = await dispatcher.list_instances(OWNER_ID, 'env-1')

    assert sorted(i.id for i in instances) == ['inst-1', 'inst-2']


# ── Test: start / stop ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_start_stopped_instance(dispatcher, agent, seed_environment, seed_instance):
    await seed_environment()
    await seed_instance(status=InstanceStatus.STOPPED)

    instance = await dispatcher.start(OWNER_ID, 'inst-1')

    assert instance.status is InstanceStatus.RUNNING
    agent.start_tool.assert_awaited_once_with('203.0.113.5', 'search-1')


@pytest.mark.asyncio
async def test_start_requires_stopped_instance(
    dispatcher, agent, seed_environment, seed_instance,
):
    await seed_environment()
    await seed_instance(status=InstanceStatus.RUNNING)

    with pytest.raises(StatePreconditionError):
        await dispatcher.start(OWNER_ID, 'inst-1')

    agent.start_tool.assert_not_awaited()


@pytest.mark.asyncio
async def test_stop_requires_active_toolbox(
    dispatcher, store, agent, seed_environment, seed_instance,
):
    await seed_environment(status=EnvironmentStatus.UNRESPONSIVE)
    seeded = await seed_instance(status=InstanceStatus.RUNNING)

    with pytest.raises(StatePreconditionError):
        await dispatcher.stop(OWNER_ID, 'inst-1')

    assert await store.get_instance('inst-1') == seeded


@pytest.mark.asyncio
async def test_stop_agent_failure_records_error_stopping(
    dispatcher, store, agent, seed_environment, seed_instance,
):
    await seed_environment()
    await seed_instance(status=InstanceStatus.RUNNING)
    agent.stop_tool.side_effect = AgentUnreachableError('POST /tools/search-1/stop timed out')

    with pytest.raises(AgentUnreachableError):
        await dispatcher.stop(OWNER_ID, 'inst-1')

    instance = await store.get_instance('inst-1')
    assert instance.status is InstanceStatus.ERROR_STOPPING
    assert 'timed out' in instance.error_message


@pytest.mark.asyncio
async def test_start_unknown_instance(dispatcher):
    with pytest.raises(InstanceNotFoundError):
        await dispatcher.start(OWNER_ID, 'inst-missing')


# ── Test: remove ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_remove_works_on_unresponsive_toolbox(
    dispatcher, agent, seed_environment, seed_instance,
):
    await seed_environment(status=EnvironmentStatus.UNRESPONSIVE)
    await seed_instance(status=InstanceStatus.ERROR)

    instance = await dispatcher.remove(OWNER_ID, 'inst-1')

    assert instance.status is InstanceStatus.DELETING
    agent.remove_tool.assert_awaited_once_with('203.0.113.5', 'search-1')


@pytest.mark.asyncio
async def test_remove_agent_failure_records_error_deleting(
    dispatcher, store, agent, seed_environment, seed_instance,
):
    await seed_environment()
    await seed_instance()
    agent.remove_tool.side_effect = AgentProtocolError('DELETE returned HTTP 404', status_code=404)

    with pytest.raises(AgentProtocolError):
        await dispatcher.remove(OWNER_ID, 'inst-1')

    instance = await store.get_instance('inst-1')
    assert instance.status is InstanceStatus.ERROR_DELETING


# ── Test: update_from_agent_report ────────────────────────────────────


@pytest.mark.parametrize('reported,expected', [
    ('PENDING', InstanceStatus.DEPLOYING),
    ('starting', InstanceStatus.DEPLOYING),
    ('RUNNING', InstanceStatus.RUNNING),
    ('STOPPING', InstanceStatus.DEPLOYING),
    ('stopped', InstanceStatus.STOPPED),
    ('ERROR', InstanceStatus.ERROR),
    ('EXPLODED', InstanceStatus.ERROR),
    (None, InstanceStatus.ERROR),
])
@pytest.mark.asyncio
async def test_update_from_agent_report_maps_status(
    dispatcher, seed_environment, seed_instance, reported, expected,
):
    await seed_environment()
    await seed_instance(status=InstanceStatus.PENDING_DEPLOY)

    instance = await dispatcher.update_from_agent_report('inst-1', reported)

    assert instance.status is expected


@pytest.mark.asyncio
async def test_update_from_agent_report_unknown_id_returns_none(dispatcher, store):
    assert await dispatcher.update_from_agent_report('ghost', 'RUNNING') is None
    assert await store.get_instance('ghost') is None


@pytest.mark.asyncio
async def test_update_from_agent_report_ignores_other_environment(
    dispatcher, store, seed_environment, seed_instance,
):
    await seed_environment('env-1')
    await seed_environment('env-2')
    seeded = await seed_instance(environment_id='env-1', status=InstanceStatus.STOPPED)

    result = await dispatcher.update_from_agent_report(
        'inst-1', 'RUNNING', environment_id='env-2',
    )

    assert result is None
    assert await store.get_instance('inst-1') == seeded


@pytest.mark.asyncio
async def test_update_from_agent_report_skips_write_when_unchanged(
    dispatcher, store, seed_environment, seed_instance,
):
    await seed_environment()
    heartbeat = datetime(2026, 3, 1, tzinfo=timezone.utc)
    await seed_instance(status=InstanceStatus.RUNNING)
    await store.update_instance(
        'inst-1', {'runtime_details': {'container_id': 'c-1'}, 'last_heartbeat_at': heartbeat},
    )
    spy = AsyncMock(wraps=store.update_instance)
    store.update_instance = spy

    instance = await dispatcher.update_from_agent_report(
        'inst-1', 'RUNNING', {'container_id': 'c-1'}, heartbeat,
    )

    assert instance.status is InstanceStatus.RUNNING
    spy.assert_not_awaited()


@pytest.mark.asyncio
async def test_update_from_agent_report_writes_details_and_heartbeat(
    dispatcher, seed_environment, seed_instance,
):
    await seed_environment()
    await seed_instance(status=InstanceStatus.RUNNING)
    heartbeat = datetime(2026, 3, 1, tzinfo=timezone.utc)

    instance = await dispatcher.update_from_agent_report(
        'inst-1', 'RUNNING', {'container_id': 'c-9'}, heartbeat,
    )

    assert instance.runtime_details == {'container_id': 'c-9'}
    assert instance.last_heartbeat_at == heartbeat
