"""Domain error taxonomy for the Toolbox control plane.

Every error carries a stable ``code`` and the HTTP status the API layer
renders it with. Messages never include secrets.
"""

from __future__ import annotations

from typing import Any


class ToolboxControlError(Exception):
    """Base class for all control-plane domain errors."""

    code = "toolbox_error"
    http_status = 500

    def __init__(self, message: str = "") -> None:
        self.message = message or self.code
        super().__init__(self.message)


class ConfigurationError(ToolboxControlError):
    """A required secret, URL or image reference is missing."""

    code = "configuration_error"


# ── Provider ─────────────────────────────────────────────────────


class ProviderError(ToolboxControlError):
    """Base exception for cloud provider API errors."""

    code = "provider_error"
    http_status = 502

    def __init__(
        self,
        status_code: int,
        message: str = "",
        *,
        response_body: str = "",
    ) -> None:
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(f"provider error {status_code}: {message}")


class ProviderNotFoundError(ProviderError):
    """Provider resource does not exist (404)."""

    code = "provider_not_found"

    def __init__(self, message: str = "resource not found", **kwargs: Any) -> None:
        super().__init__(404, message, **kwargs)


class ProviderRateLimitedError(ProviderError):
    """Provider rejected the call with 429."""

    code = "provider_rate_limited"
    http_status = 503

    def __init__(
        self,
        message: str = "rate limited",
        *,
        retry_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(429, message, **kwargs)


class ProviderAuthError(ProviderError):
    """Provider rejected our credentials (401/403)."""

    code = "provider_auth_failed"


class ProviderUnexpectedError(ProviderError):
    """Any other provider failure. ``status_code == 0`` means network or timeout."""

    code = "provider_unexpected"

    @property
    def is_transient(self) -> bool:
        return self.status_code == 0 or self.status_code >= 500


class ProvisioningError(ToolboxControlError):
    """The provider instance never became usable (terminal state or poll timeout)."""

    code = "provisioning_failed"
    http_status = 502


# ── Management agent ─────────────────────────────────────────────


class AgentUnreachableError(ToolboxControlError):
    """Network failure or timeout talking to the management agent."""

    code = "agent_unreachable"
    http_status = 502


class AgentProtocolError(ToolboxControlError):
    """The agent answered with a non-2xx status or an undecodable body."""

    code = "agent_protocol_error"
    http_status = 502

    def __init__(self, message: str, *, status_code: int | None = None, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message)


# ── State and access ─────────────────────────────────────────────


class StatePreconditionError(ToolboxControlError):
    """Operation attempted against a record in the wrong state."""

    code = "state_precondition_failed"
    http_status = 409


class AuthorizationError(ToolboxControlError):
    """Caller does not own the resource and lacks the privileged role."""

    code = "forbidden"
    http_status = 403


class NotFoundError(ToolboxControlError):
    code = "not_found"
    http_status = 404


class EnvironmentNotFoundError(NotFoundError):
    code = "environment_not_found"


class InstanceNotFoundError(NotFoundError):
    code = "instance_not_found"


class CatalogEntryNotFoundError(NotFoundError):
    code = "catalog_entry_not_found"


class RecordStoreError(ToolboxControlError):
    """Persistence failure in a record store."""

    code = "record_store_error"
