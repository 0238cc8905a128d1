"""Cloud-init bootstrap script for a Toolbox instance.

The script installs Docker when missing, writes the agent environment file
and launches the management agent as an auto-restarting container bound to
the agent port. Building it is pure: no I/O and no logging, since the
result embeds the agent bearer token and the platform API key.
"""

from __future__ import annotations

import shlex

from .errors import ConfigurationError

AGENT_CONTAINER_NAME = "toolbox_agent"
AGENT_ENV_DIR = "/etc/toolbox-agent"
AGENT_ENV_FILE = f"{AGENT_ENV_DIR}/agent.env"
BOOTSTRAP_LOG = "/var/log/toolbox-agent-bootstrap.log"

# Variable names read by the agent image.
ENV_BEARER_TOKEN = "DTMA_BEARER_TOKEN"
ENV_CALLBACK_URL = "AGENTOPIA_API_BASE_URL"
ENV_AGENT_API_KEY = "BACKEND_TO_DTMA_API_KEY"
ENV_AGENT_PORT = "PORT"


def _env_line(key: str, value: str) -> str:
    # docker --env-file takes values literally, one per line.
    if "\n" in value or "\r" in value:
        raise ConfigurationError(f"{key} must not contain line breaks")
    return f"{key}={value}"


def build_bootstrap_script(
    *,
    agent_bearer_token: str,
    callback_base_url: str,
    agent_api_key: str,
    agent_image: str,
    agent_port: int = 30000,
) -> str:
    """Assemble the user-data shell script for a new Toolbox.

    Raises:
        ConfigurationError: if any input is empty or malformed.
    """
    missing = [
        name
        for name, value in (
            ("agent_bearer_token", agent_bearer_token),
            ("callback_base_url", callback_base_url),
            ("agent_api_key", agent_api_key),
            ("agent_image", agent_image),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(
            "bootstrap script requires: " + ", ".join(missing)
        )
    if not 0 < agent_port < 65536:
        raise ConfigurationError(f"agent_port out of range: {agent_port}")

    env_lines = [
        _env_line(ENV_BEARER_TOKEN, agent_bearer_token),
        _env_line(ENV_CALLBACK_URL, callback_base_url.rstrip("/")),
        _env_line(ENV_AGENT_API_KEY, agent_api_key),
        _env_line(ENV_AGENT_PORT, str(agent_port)),
    ]
    image = shlex.quote(agent_image)
    port = f"{agent_port}:{agent_port}"

    lines = [
        "#!/bin/bash",
        "set -euo pipefail",
        f"exec > >(tee -a {BOOTSTRAP_LOG}) 2>&1",
        'echo "toolbox bootstrap started at $(date -u +%FT%TZ)"',
        "",
        "if ! command -v docker >/dev/null 2>&1; then",
        "  export DEBIAN_FRONTEND=noninteractive",
        "  apt-get update -y",
        "  apt-get install -y ca-certificates curl",
        "  curl -fsSL https://get.docker.com | sh",
        "fi",
        "systemctl enable --now docker",
        "",
        f"install -d -m 700 {AGENT_ENV_DIR}",
        "umask 077",
        f"cat > {AGENT_ENV_FILE} <<'TOOLBOX_AGENT_ENV'",
        *env_lines,
        "TOOLBOX_AGENT_ENV",
        "",
        f"docker stop {AGENT_CONTAINER_NAME} >/dev/null 2>&1 || true",
        f"docker rm {AGENT_CONTAINER_NAME} >/dev/null 2>&1 || true",
        f"docker pull {image}",
        "docker run -d \\",
        f"  --name {AGENT_CONTAINER_NAME} \\",
        "  --restart always \\",
        f"  -p {port} \\",
        "  -v /var/run/docker.sock:/var/run/docker.sock \\",
        f"  --env-file {AGENT_ENV_FILE} \\",
        "  --log-driver json-file \\",
        "  --log-opt max-size=10m \\",
        "  --log-opt max-file=3 \\",
        f"  {image}",
        "",
        'echo "toolbox bootstrap finished at $(date -u +%FT%TZ)"',
        "",
    ]
    return "\n".join(lines)
