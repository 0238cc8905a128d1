"""Tests for the toolbox cloud-init bootstrap script."""

from __future__ import annotations

import pytest

from toolbox_control.bootstrap import (
    AGENT_CONTAINER_NAME,
    AGENT_ENV_FILE,
    build_bootstrap_script,
)
from toolbox_control.errors import ConfigurationError

_TOKEN = 'f' * 64


def _script(**overrides) -> str:
    kwargs = {
        'agent_bearer_token': _TOKEN,
        'callback_base_url': 'https://api.example.test/',
        'agent_api_key': 'backend-to-agent-key',
        'agent_image': 'ghcr.io/example/toolbox-agent:1.4.0',
    }
    kwargs.update(overrides)
    return build_bootstrap_script(**kwargs)


def test_script_is_strict_bash():
    lines = _script().splitlines()
    assert lines[0] == '#!/bin/bash'
    assert 'set -euo pipefail' in lines


def test_script_installs_docker_when_missing():
    script = _script()
    assert 'command -v docker' in script
    assert 'https://get.docker.com' in script
    assert 'systemctl enable --now docker' in script


def test_script_writes_agent_environment_file():
    script = _script()

    assert f'DTMA_BEARER_TOKEN={_TOKEN}' in script
    assert 'AGENTOPIA_API_BASE_URL=https://api.example.test\n' in script
    assert 'BACKEND_TO_DTMA_API_KEY=backend-to-agent-key' in script
    assert 'PORT=30000' in script
    assert f"cat > {AGENT_ENV_FILE} <<'TOOLBOX_AGENT_ENV'" in script


def test_script_runs_agent_container_with_restart_policy():
    script = _script(agent_port=31000)

    assert f'docker rm {AGENT_CONTAINER_NAME}' in script
    assert 'docker pull ghcr.io/example/toolbox-agent:1.4.0' in script
    assert '--restart always' in script
    assert '-p 31000:31000' in script
    assert '-v /var/run/docker.sock:/var/run/docker.sock' in script
    assert f'--env-file {AGENT_ENV_FILE}' in script


def test_script_quotes_image_reference():
    script = _script(agent_image='registry.test/agent:1.0 ; rm -rf /')
    assert "docker pull 'registry.test/agent:1.0 ; rm -rf /'" in script


@pytest.mark.parametrize('missing', [
    'agent_bearer_token', 'callback_base_url', 'agent_api_key', 'agent_image',
])
def test_missing_input_is_a_configuration_error(missing):
    with pytest.raises(ConfigurationError, match=missing):
        _script(**{missing: ''})


def test_line_breaks_in_values_are_rejected():
    with pytest.raises(ConfigurationError):
        _script(agent_api_key='key\nINJECTED=1')


@pytest.mark.parametrize('port', [0, 65536, -1])
def test_port_must_be_in_range(port):
    with pytest.raises(ConfigurationError):
        _script(agent_port=port)
