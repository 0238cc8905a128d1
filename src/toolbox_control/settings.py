"""Toolbox control plane configuration settings.

ToolboxControlSettings is the single configuration object accepted by create_app()
and by the lifecycle services. It is a plain dataclass (not env-coupled) so tests
can inject config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_AGENT_PORT = 30000
# Exclusive upper bound for the agent status call timeout.
MAX_AGENT_STATUS_TIMEOUT_SECONDS = 10.0
DEFAULT_CORS_ORIGINS = (
    "http://localhost:5173",
    "http://localhost:3000",
)


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _float(env: dict[str, str], key: str, default: float) -> float:
    raw = env.get(key, "")
    return float(raw) if raw.strip() else default


def _int(env: dict[str, str], key: str, default: int) -> int:
    raw = env.get(key, "")
    return int(raw) if raw.strip() else default


@dataclass(frozen=True, slots=True)
class ToolboxControlSettings:
    """Configuration for the Toolbox control plane.

    All fields have defaults suitable for local development. Provisioning
    additionally requires callback_base_url, agent_api_key and agent_image
    (see ``provisioning_config_errors``). Non-local environments must supply
    Supabase, DigitalOcean and JWT credentials (see ``validate``).
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Supabase ───────────────────────────────────────────────────
    supabase_url: str = ""
    supabase_service_role_key: str = field(default="", repr=False)
    """Service-role key for PostgREST calls. Never log this."""

    supabase_jwt_secret: str = field(default="", repr=False)
    """HS256 secret for access-token verification when JWKS is unavailable."""

    # ── DigitalOcean ───────────────────────────────────────────────
    digitalocean_token: str = field(default="", repr=False)
    digitalocean_base_url: str = "https://api.digitalocean.com"
    provider_timeout_seconds: float = 30.0
    provider_max_attempts: int = 3
    provider_base_delay_seconds: float = 0.5
    provider_max_delay_seconds: float = 5.0

    # ── Toolbox defaults ───────────────────────────────────────────
    default_region: str = "nyc3"
    default_size: str = "s-1vcpu-1gb"
    default_image: str = "ubuntu-22-04-x64"
    ssh_key_ids: tuple[str, ...] = ()

    poll_interval_seconds: float = 10.0
    poll_max_attempts: int = 30

    # ── Management agent ───────────────────────────────────────────
    callback_base_url: str = ""
    """Base URL the agent uses to call back into the platform."""

    agent_api_key: str = field(default="", repr=False)
    """Shared secret the platform presents to the agent. Never log this."""

    agent_image: str = ""
    agent_port: int = DEFAULT_AGENT_PORT
    agent_timeout_seconds: float = 5.0
    agent_command_timeout_seconds: float = 30.0

    # ── Misc ───────────────────────────────────────────────────────
    admin_role: str = "admin"
    error_message_max_length: int = 500
    cors_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    @property
    def poll_deadline_seconds(self) -> float:
        """Wall-time cap for waiting on a new provider instance.

        ``poll_max_attempts`` intervals plus one more for the final
        provider call, however slow individual provider calls are.
        """
        return self.poll_interval_seconds * (self.poll_max_attempts + 1)

    def provisioning_config_errors(self) -> list[str]:
        """Return the settings missing for provisioning. Empty means ready."""
        errors: list[str] = []
        if not self.callback_base_url:
            errors.append("callback_base_url is required")
        if not self.agent_api_key:
            errors.append("agent_api_key is required")
        if not self.agent_image:
            errors.append("agent_image is required")
        return errors

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if not 0 < self.agent_port < 65536:
            errors.append(f"agent_port out of range: {self.agent_port}")
        if self.poll_max_attempts < 1:
            errors.append("poll_max_attempts must be >= 1")
        if self.provider_max_attempts < 1:
            errors.append("provider_max_attempts must be >= 1")
        if self.error_message_max_length < 16:
            errors.append("error_message_max_length must be >= 16")
        if not 0 < self.agent_timeout_seconds < MAX_AGENT_STATUS_TIMEOUT_SECONDS:
            errors.append(
                "agent_timeout_seconds must be between 0 and "
                f"{MAX_AGENT_STATUS_TIMEOUT_SECONDS:g} (got {self.agent_timeout_seconds:g})"
            )
        if self.poll_interval_seconds <= 0:
            errors.append("poll_interval_seconds must be > 0")
        if not self.is_local:
            if not self.supabase_url:
                errors.append(f"{self.environment}: supabase_url is required")
            if not self.supabase_service_role_key:
                errors.append(
                    f"{self.environment}: supabase_service_role_key is required"
                )
            if not self.digitalocean_token:
                errors.append(f"{self.environment}: digitalocean_token is required")
            if not self.supabase_url and not self.supabase_jwt_secret:
                errors.append(
                    f"{self.environment}: supabase_url or supabase_jwt_secret "
                    "is required for token verification"
                )
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> ToolboxControlSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct ToolboxControlSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        cors_raw = env.get("CORS_ORIGINS", "")
        cors = _split_csv(cors_raw) if cors_raw else DEFAULT_CORS_ORIGINS

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            supabase_url=env.get("SUPABASE_URL", ""),
            supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            supabase_jwt_secret=env.get("SUPABASE_JWT_SECRET", ""),
            digitalocean_token=env.get("DIGITALOCEAN_TOKEN", ""),
            digitalocean_base_url=env.get(
                "DIGITALOCEAN_API_URL", "https://api.digitalocean.com"
            ),
            provider_timeout_seconds=_float(env, "PROVIDER_TIMEOUT_SECONDS", 30.0),
            provider_max_attempts=_int(env, "PROVIDER_MAX_ATTEMPTS", 3),
            provider_base_delay_seconds=_float(env, "PROVIDER_BASE_DELAY_SECONDS", 0.5),
            provider_max_delay_seconds=_float(env, "PROVIDER_MAX_DELAY_SECONDS", 5.0),
            default_region=env.get("TOOLBOX_DEFAULT_REGION", "") or "nyc3",
            default_size=env.get("TOOLBOX_DEFAULT_SIZE", "") or "s-1vcpu-1gb",
            default_image=env.get("TOOLBOX_DEFAULT_IMAGE", "") or "ubuntu-22-04-x64",
            ssh_key_ids=_split_csv(env.get("TOOLBOX_SSH_KEY_IDS", "")),
            poll_interval_seconds=_float(env, "TOOLBOX_POLL_INTERVAL_SECONDS", 10.0),
            poll_max_attempts=_int(env, "TOOLBOX_POLL_MAX_ATTEMPTS", 30),
            callback_base_url=env.get("TOOLBOX_CALLBACK_BASE_URL", ""),
            agent_api_key=env.get("AGENT_API_KEY", ""),
            agent_image=env.get("AGENT_DOCKER_IMAGE_URL", ""),
            agent_port=_int(env, "AGENT_PORT", DEFAULT_AGENT_PORT),
            agent_timeout_seconds=_float(env, "AGENT_TIMEOUT_SECONDS", 5.0),
            agent_command_timeout_seconds=_float(
                env, "AGENT_COMMAND_TIMEOUT_SECONDS", 30.0
            ),
            admin_role=env.get("TOOLBOX_ADMIN_ROLE", "") or "admin",
            error_message_max_length=_int(env, "TOOLBOX_ERROR_MESSAGE_MAX_LENGTH", 500),
            cors_origins=cors,
        )
