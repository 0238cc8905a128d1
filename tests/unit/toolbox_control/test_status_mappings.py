"""Tests for status mappings, the environment transition table and record helpers."""

from __future__ import annotations

import pytest

from toolbox_control.errors import StatePreconditionError
from toolbox_control.lifecycle.state_machine import (
    ALLOWED_TRANSITIONS,
    InvalidStateTransition,
    can_transition,
    require_transition,
)
from toolbox_control.models import (
    Environment,
    EnvironmentStatus as S,
    InstanceStatus,
    ProviderInstanceState,
    map_agent_instance_status,
    map_provider_status,
    truncate_error,
)


# ── Test: provider status mapping ─────────────────────────────────────


@pytest.mark.parametrize('raw,expected', [
    ('new', ProviderInstanceState.PENDING),
    ('active', ProviderInstanceState.ACTIVE),
    ('ACTIVE', ProviderInstanceState.ACTIVE),
    ('off', ProviderInstanceState.OFF),
    ('archive', ProviderInstanceState.ARCHIVED),
    ('errored', ProviderInstanceState.ERRORED),
    ('rebooting', ProviderInstanceState.UNKNOWN),
    ('', ProviderInstanceState.UNKNOWN),
    (None, ProviderInstanceState.UNKNOWN),
])
def test_map_provider_status(raw, expected):
    assert map_provider_status(raw) is expected


# ── Test: agent status mapping ────────────────────────────────────────


@pytest.mark.parametrize('raw,expected', [
    ('PENDING', InstanceStatus.DEPLOYING),
    ('STARTING', InstanceStatus.DEPLOYING),
    ('RUNNING', InstanceStatus.RUNNING),
    ('STOPPING', InstanceStatus.DEPLOYING),
    ('STOPPED', InstanceStatus.STOPPED),
    ('ERROR', InstanceStatus.ERROR),
    ('running', InstanceStatus.RUNNING),
    (' Stopped ', InstanceStatus.STOPPED),
    ('RESTARTING', InstanceStatus.ERROR),
    (None, InstanceStatus.ERROR),
])
def test_map_agent_instance_status(raw, expected):
    assert map_agent_instance_status(raw) is expected


# ── Test: transition table ────────────────────────────────────────────


def test_every_status_has_a_transition_row():
    assert set(ALLOWED_TRANSITIONS) == set(S)


@pytest.mark.parametrize('src,dst', [
    (S.PENDING_PROVISION, S.PROVISIONING),
    (S.PROVISIONING, S.AWAITING_HEARTBEAT),
    (S.PROVISIONING, S.ERROR_PROVISIONING),
    (S.AWAITING_HEARTBEAT, S.ACTIVE),
    (S.ACTIVE, S.UNRESPONSIVE),
    (S.UNRESPONSIVE, S.ACTIVE),
    (S.ERROR_PROVISIONING, S.DEPROVISIONING),
    (S.DEPROVISIONING, S.ERROR_DEPROVISIONING),
    (S.ERROR_DEPROVISIONING, S.DEPROVISIONING),
])
def test_allowed_transitions(src, dst):
    assert can_transition(src, dst)
    require_transition(src, dst)


@pytest.mark.parametrize('src,dst', [
    (S.PENDING_PROVISION, S.ACTIVE),
    (S.PROVISIONING, S.ACTIVE),
    (S.ACTIVE, S.PROVISIONING),
    (S.DEPROVISIONING, S.ACTIVE),
    (S.ERROR_DEPROVISIONING, S.ACTIVE),
])
def test_disallowed_transitions(src, dst):
    assert not can_transition(src, dst)
    with pytest.raises(InvalidStateTransition) as exc_info:
        require_transition(src, dst)
    assert isinstance(exc_info.value, StatePreconditionError)
    assert exc_info.value.from_state is src


# ── Test: records ─────────────────────────────────────────────────────


def test_truncate_error_keeps_short_messages():
    assert truncate_error('  boom  ') == 'boom'


def test_truncate_error_caps_length():
    message = truncate_error('y' * 600, max_length=100)
    assert len(message) == 100
    assert message.endswith('...')


def test_environment_public_dict_excludes_secret_reference():
    env = Environment(
        id='env-1',
        owner_id='user-1',
        name='dev box',
        region='nyc3',
        size='s-1vcpu-1gb',
        image='ubuntu-22-04-x64',
        agent_token_secret_ref='vault-ref-1',
    )

    public = env.to_public_dict()

    assert 'agent_token_secret_ref' not in public
    assert 'vault-ref-1' not in public.values()
    assert public['status'] == 'pending_provision'
