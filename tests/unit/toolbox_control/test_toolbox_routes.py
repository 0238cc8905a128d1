"""HTTP tests for the toolbox control-plane app (routes, auth guard, error mapping)."""

from __future__ import annotations

import asyncio
import time

import jwt
import pytest
from fastapi.testclient import TestClient

from toolbox_control.errors import ProviderUnexpectedError
from toolbox_control.inmemory import InMemoryProviderClient
from toolbox_control.main import create_app
from toolbox_control.models import Environment, EnvironmentStatus, Instance, InstanceStatus
from toolbox_control.security.token_verify import StaticKeyProvider, TokenVerifier
from toolbox_control.settings import ToolboxControlSettings

OWNER_ID = 'user-aaaaaaaa-1111'
OTHER_USER_ID = 'user-bbbbbbbb-2222'
ADMIN_ID = 'user-admin-9999'
JWT_SECRET = 'test-jwt-secret-with-enough-length-for-hs256'

OWNER_HEADERS = {'X-User-ID': OWNER_ID}
OTHER_HEADERS = {'X-User-ID': OTHER_USER_ID}
ADMIN_HEADERS = {'X-User-ID': ADMIN_ID}


def _seed_environment(store, env_id='env-1', *, owner_id=OWNER_ID, **fields):
    fields.setdefault('status', EnvironmentStatus.ACTIVE)
    fields.setdefault('public_ip_address', '203.0.113.5')
    return asyncio.run(store.create_environment(Environment(
        id=env_id,
        owner_id=owner_id,
        name='dev box',
        region='nyc3',
        size='s-1vcpu-1gb',
        image='ubuntu-22-04-x64',
        **fields,
    )))


def _seed_instance(store, instance_id='inst-1', *, status=InstanceStatus.RUNNING):
    return asyncio.run(store.create_instance(Instance(
        id=instance_id,
        environment_id='env-1',
        catalog_entry_id='cat-search',
        instance_name='search-1',
        status=status,
    )))


def _token(sub=OWNER_ID, **claims):
    payload = {
        'sub': sub,
        'aud': 'authenticated',
        'exp': int(time.time()) + 3600,
        'email': 'Owner@Example.test',
        **claims,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm='HS256')


@pytest.fixture
def app(settings, store, catalog, secret_store, roles, provider, agent):
    return create_app(
        settings,
        store=store,
        catalog=catalog,
        secret_store=secret_store,
        role_resolver=roles,
        provider=provider,
        agent=agent,
        token_verifier=TokenVerifier(StaticKeyProvider(JWT_SECRET), algorithms=['HS256']),
    )


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


# ── Test: app factory ─────────────────────────────────────────────────


def test_non_local_settings_must_validate():
    with pytest.raises(ValueError, match='validation failed'):
        create_app(ToolboxControlSettings(environment='production'))


def test_local_app_builds_with_defaults():
    app = create_app()

    assert app.title == 'Toolbox Control Plane'
    assert app.state.settings.is_local
    assert app.state.deps.manager is not None


def test_health_is_public(client):
    resp = client.get('/health')

    assert resp.status_code == 200
    assert resp.json() == {'status': 'ok', 'environment': 'local'}


def test_metrics_are_exposed(client):
    client.get('/health')
    resp = client.get('/metrics')

    assert resp.status_code == 200
    assert 'http_server_requests_total' in resp.text


def test_request_id_is_echoed(client):
    resp = client.get('/health', headers={'X-Request-ID': 'req-12345678'})
    assert resp.headers['x-request-id'] == 'req-12345678'


# ── Test: authentication ──────────────────────────────────────────────


def test_requests_without_credentials_are_rejected(client):
    resp = client.get('/api/v1/toolboxes')

    assert resp.status_code == 401
    assert resp.json()['code'] == 'no_credentials'
    assert resp.headers['www-authenticate'] == 'Bearer'


def test_bearer_token_identifies_caller(client, store):
    _seed_environment(store)

    resp = client.get(
        '/api/v1/toolboxes', headers={'Authorization': f'Bearer {_token()}'},
    )

    assert resp.status_code == 200
    assert [t['id'] for t in resp.json()['toolboxes']] == ['env-1']


def test_expired_token_is_rejected(client):
    token = _token(exp=int(time.time()) - 60)

    resp = client.get('/api/v1/toolboxes', headers={'Authorization': f'Bearer {token}'})

    assert resp.status_code == 401
    assert resp.json()['code'] == 'token_expired'


def test_dev_header_is_ignored_outside_local():
    # A verifier is configured but the caller only sends the dev header.
    staging = ToolboxControlSettings(
        environment='staging',
        supabase_url='https://project.supabase.test',
        supabase_service_role_key='service-key',
        supabase_jwt_secret=JWT_SECRET,
        digitalocean_token='do-token',
    )
    app = create_app(staging)

    with TestClient(app) as client:
        resp = client.get('/api/v1/toolboxes', headers=OWNER_HEADERS)

    assert resp.status_code == 401


# ── Test: toolboxes ───────────────────────────────────────────────────


def test_create_toolbox_returns_pending_record(client, secret_store):
    resp = client.post(
        '/api/v1/toolboxes',
        json={'name': 'research box', 'region': 'sfo3'},
        headers=OWNER_HEADERS,
    )

    assert resp.status_code == 202
    toolbox = resp.json()['toolbox']
    assert toolbox['status'] == 'pending_provision'
    assert toolbox['owner_id'] == OWNER_ID
    assert toolbox['region'] == 'sfo3'
    assert toolbox['size'] == 's-1vcpu-1gb'
    assert 'agent_token_secret_ref' not in toolbox
    assert len(secret_store.secrets) == 1


def test_create_toolbox_validates_body(client):
    resp = client.post('/api/v1/toolboxes', json={'name': ''}, headers=OWNER_HEADERS)
    assert resp.status_code == 422


def test_list_only_returns_own_toolboxes(client, store):
    _seed_environment(store, 'env-1')
    _seed_environment(store, 'env-2', owner_id=OTHER_USER_ID)

    resp = client.get('/api/v1/toolboxes', headers=OWNER_HEADERS)

    assert resp.status_code == 200
    assert [t['id'] for t in resp.json()['toolboxes']] == ['env-1']


def test_get_toolbox(client, store):
    _seed_environment(store)

    resp = client.get('/api/v1/toolboxes/env-1', headers=OWNER_HEADERS)

    assert resp.status_code == 200
    assert resp.json()['toolbox']['public_ip_address'] == '203.0.113.5'


def test_other_users_toolbox_is_not_found(client, store):
    _seed_environment(store)

    resp = client.get('/api/v1/toolboxes/env-1', headers=OTHER_HEADERS)

    assert resp.status_code == 404
    assert resp.json()['error'] == 'environment_not_found'


def test_delete_toolbox(client, store, provider, secret_store):
    ref = asyncio.run(secret_store.create_secret('a' * 64, name='toolbox_agent_token_env-1'))
    _seed_environment(store, agent_token_secret_ref=ref)

    resp = client.delete('/api/v1/toolboxes/env-1', headers=OWNER_HEADERS)

    assert resp.status_code == 200
    body = resp.json()
    assert body['success'] is True
    assert body['status'] is None
    assert asyncio.run(store.get_environment('env-1')) is None
    assert secret_store.secrets == {}


def test_delete_toolbox_of_other_user_is_forbidden(client, store):
    _seed_environment(store)

    resp = client.delete('/api/v1/toolboxes/env-1', headers=OTHER_HEADERS)

    assert resp.status_code == 403
    assert asyncio.run(store.get_environment('env-1')) is not None


def test_delete_failure_returns_bad_gateway(
    settings, store, catalog, secret_store, roles, agent,
):
    provider = InMemoryProviderClient(
        delete_error=ProviderUnexpectedError(500, 'droplet delete failed'),
    )
    _seed_environment(store, provider_instance_id='4242')
    app = create_app(
        settings, store=store, catalog=catalog, secret_store=secret_store,
        role_resolver=roles, provider=provider, agent=agent,
    )

    with TestClient(app) as client:
        resp = client.delete('/api/v1/toolboxes/env-1', headers=OWNER_HEADERS)

    assert resp.status_code == 502
    body = resp.json()
    assert body['success'] is False
    assert body['status'] == 'error_deprovisioning'
    env = asyncio.run(store.get_environment('env-1'))
    assert env.status is EnvironmentStatus.ERROR_DEPROVISIONING


def test_refresh_toolbox_marks_active(client, store, agent):
    _seed_environment(store, status=EnvironmentStatus.UNRESPONSIVE)

    resp = client.post('/api/v1/toolboxes/env-1/refresh', headers=OWNER_HEADERS)

    assert resp.status_code == 200
    toolbox = resp.json()['toolbox']
    assert toolbox['status'] == 'active'
    assert toolbox['agent_version'] == '1.4.0'
    agent.get_status.assert_awaited_once_with('203.0.113.5')


# ── Test: tools on a toolbox ──────────────────────────────────────────


def test_deploy_tool(client, store, agent):
    _seed_environment(store)

    resp = client.post(
        '/api/v1/toolboxes/env-1/tools',
        json={'catalog_entry_id': 'cat-search', 'instance_name': 'search-1'},
        headers=OWNER_HEADERS,
    )

    assert resp.status_code == 201
    tool = resp.json()['tool']
    assert tool['status'] == 'deploying'
    assert tool['instance_name'] == 'search-1'
    agent.deploy_tool.assert_awaited_once()


def test_deploy_rejects_invalid_instance_name(client, store):
    _seed_environment(store)

    resp = client.post(
        '/api/v1/toolboxes/env-1/tools',
        json={'catalog_entry_id': 'cat-search', 'instance_name': '-bad name'},
        headers=OWNER_HEADERS,
    )

    assert resp.status_code == 422
    assert resp.json()['error'] == 'invalid_request'


def test_deploy_on_inactive_toolbox_conflicts(client, store):
    _seed_environment(store, status=EnvironmentStatus.PROVISIONING)

    resp = client.post(
        '/api/v1/toolboxes/env-1/tools',
        json={'catalog_entry_id': 'cat-search', 'instance_name': 'search-1'},
        headers=OWNER_HEADERS,
    )

    assert resp.status_code == 409


def test_list_tools(client, store):
    _seed_environment(store)
    _seed_instance(store)

    resp = client.get('/api/v1/toolboxes/env-1/tools', headers=OWNER_HEADERS)

    assert resp.status_code == 200
    assert [t['id'] for t in resp.json()['tools']] == ['inst-1']


# ── Test: tool instances ──────────────────────────────────────────────


def test_stop_running_tool(client, store, agent):
    _seed_environment(store)
    _seed_instance(store)

    resp = client.post('/api/v1/tool-instances/inst-1/stop', headers=OWNER_HEADERS)

    assert resp.status_code == 200
    assert resp.json()['tool']['status'] == 'stopped'
    agent.stop_tool.assert_awaited_once_with('203.0.113.5', 'search-1')


def test_start_running_tool_conflicts(client, store):
    _seed_environment(store)
    _seed_instance(store)

    resp = client.post('/api/v1/tool-instances/inst-1/start', headers=OWNER_HEADERS)

    assert resp.status_code == 409
    assert resp.json()['error'] == 'state_precondition_failed'


def test_non_owner_cannot_command_tool(client, store, agent):
    _seed_environment(store)
    _seed_instance(store)

    resp = client.post('/api/v1/tool-instances/inst-1/stop', headers=OTHER_HEADERS)

    assert resp.status_code == 403
    agent.stop_tool.assert_not_awaited()


def test_admin_can_command_any_tool(client, store):
    _seed_environment(store)
    _seed_instance(store, status=InstanceStatus.STOPPED)

    resp = client.post('/api/v1/tool-instances/inst-1/start', headers=ADMIN_HEADERS)

    assert resp.status_code == 200
    assert resp.json()['tool']['status'] == 'running'


def test_unknown_tool_instance_is_not_found(client):
    resp = client.get('/api/v1/tool-instances/inst-404', headers=OWNER_HEADERS)

    assert resp.status_code == 404
    assert resp.json()['error'] == 'instance_not_found'


def test_agent_failure_is_bad_gateway(client, store, agent):
    from toolbox_control.errors import AgentUnreachableError

    agent.stop_tool.side_effect = AgentUnreachableError('connect timeout')
    _seed_environment(store)
    _seed_instance(store)

    resp = client.post('/api/v1/tool-instances/inst-1/stop', headers=OWNER_HEADERS)

    assert resp.status_code == 502
    assert resp.json()['error'] == 'agent_unreachable'
    instance = asyncio.run(store.get_instance('inst-1'))
    assert instance.status is InstanceStatus.ERROR_STOPPING
