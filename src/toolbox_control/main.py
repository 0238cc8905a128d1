"""Toolbox control plane FastAPI application factory.

The create_app() factory is the single entry point for building the ASGI
application. It wires middleware (request-ID, metrics, request logging,
CORS, auth guard), the toolbox and tool-instance routers, and injects the
record store, catalog, secret store, role resolver, provider and agent
client implementations.

Usage:
    # Local development (in-memory stores, scripted provider)
    from toolbox_control import create_app, ToolboxControlSettings
    app = create_app(ToolboxControlSettings())

    # Non-local (Supabase + DigitalOcean wired from settings)
    app = create_app(ToolboxControlSettings.from_env())

    # Testing (full DI control)
    app = create_app(settings, store=store, provider=provider, ...)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .agent.client import ManagementAgentClient
from .errors import ToolboxControlError
from .instances.dispatcher import InstanceCommandDispatcher
from .lifecycle.manager import EnvironmentLifecycleManager
from .locks import KeyedLock
from .observability.logging import configure_logging
from .observability.metrics import metrics_text
from .observability.middleware import (
    RequestIdMiddleware,
    RequestTelemetryMiddleware,
)
from .protocols import (
    EnvironmentRecordStore,
    ProviderClient,
    RoleResolver,
    SecretStore,
    ToolCatalog,
)
from .routes.tool_instances import create_tool_instance_router
from .routes.toolboxes import create_toolbox_router
from .security.auth_guard import AuthGuardMiddleware
from .security.token_verify import TokenVerifier, create_token_verifier
from .settings import ToolboxControlSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppDependencies:
    """Container for the injected stores, clients and services.

    Stored on ``app.state.deps``. ``closeables`` are released on shutdown.
    """

    store: EnvironmentRecordStore
    catalog: ToolCatalog
    secret_store: SecretStore
    role_resolver: RoleResolver
    provider: ProviderClient
    agent: ManagementAgentClient
    manager: EnvironmentLifecycleManager
    dispatcher: InstanceCommandDispatcher
    closeables: tuple[Any, ...] = ()


def _build_inmemory_backends() -> dict[str, Any]:
    """All-InMemory backends for local development."""
    from .inmemory import (
        InMemoryEnvironmentRecordStore,
        InMemoryProviderClient,
        InMemoryRoleResolver,
        InMemorySecretStore,
        InMemoryToolCatalog,
    )

    return {
        'store': InMemoryEnvironmentRecordStore(),
        'catalog': InMemoryToolCatalog(),
        'secret_store': InMemorySecretStore(),
        'role_resolver': InMemoryRoleResolver(),
        'provider': InMemoryProviderClient(),
        'closeables': (),
    }


def _build_remote_backends(settings: ToolboxControlSettings) -> dict[str, Any]:
    """Supabase stores and the retrying DigitalOcean client."""
    from .db.catalog_repo import SupabaseToolCatalog
    from .db.environment_repo import SupabaseEnvironmentRecordStore
    from .db.roles import SupabaseRoleResolver
    from .db.supabase_client import SupabaseClient
    from .db.vault import SupabaseVaultSecretStore
    from .providers.digitalocean import DigitalOceanClient
    from .providers.retry import BackoffPolicy, RetryingProviderClient

    supabase = SupabaseClient(
        supabase_url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
    )
    digitalocean = DigitalOceanClient(
        token=settings.digitalocean_token,
        base_url=settings.digitalocean_base_url,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    policy = BackoffPolicy(
        max_attempts=settings.provider_max_attempts,
        base_delay=settings.provider_base_delay_seconds,
        max_delay=settings.provider_max_delay_seconds,
    )
    return {
        'store': SupabaseEnvironmentRecordStore(supabase),
        'catalog': SupabaseToolCatalog(supabase),
        'secret_store': SupabaseVaultSecretStore(supabase),
        'role_resolver': SupabaseRoleResolver(supabase),
        'provider': RetryingProviderClient(digitalocean, policy),
        'closeables': (supabase, digitalocean),
    }


def build_dependencies(
    settings: ToolboxControlSettings,
    **overrides: Any,
) -> AppDependencies:
    """Compose backends and services; non-None ``overrides`` win."""
    overrides = {k: v for k, v in overrides.items() if v is not None}
    backend_keys = ('store', 'catalog', 'secret_store', 'role_resolver', 'provider')

    if settings.is_local or all(k in overrides for k in backend_keys):
        backends = _build_inmemory_backends()
    else:
        backends = _build_remote_backends(settings)
    closeables = list(backends.pop('closeables'))
    for key in backend_keys:
        if key in overrides:
            backends[key] = overrides[key]

    agent = overrides.get('agent')
    if agent is None:
        agent = ManagementAgentClient(
            api_key=settings.agent_api_key,
            port=settings.agent_port,
            status_timeout_seconds=settings.agent_timeout_seconds,
            command_timeout_seconds=settings.agent_command_timeout_seconds,
        )
        closeables.append(agent)

    locks = KeyedLock()
    dispatcher = InstanceCommandDispatcher(
        store=backends['store'],
        catalog=backends['catalog'],
        agent=agent,
        roles=backends['role_resolver'],
        settings=settings,
        locks=locks,
    )
    manager = EnvironmentLifecycleManager(
        store=backends['store'],
        secret_store=backends['secret_store'],
        provider=backends['provider'],
        agent=agent,
        settings=settings,
        instance_dispatcher=dispatcher,
        locks=locks,
    )
    return AppDependencies(
        agent=agent,
        manager=manager,
        dispatcher=dispatcher,
        closeables=tuple(closeables),
        **backends,
    )


def _build_token_verifier(settings: ToolboxControlSettings) -> TokenVerifier | None:
    if not settings.supabase_jwt_secret and not settings.supabase_url:
        return None
    return create_token_verifier(
        supabase_url=settings.supabase_url or None,
        jwt_secret=settings.supabase_jwt_secret or None,
    )


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ToolboxControlError)
    async def toolbox_error_handler(request: Request, exc: ToolboxControlError):
        if exc.http_status >= 500:
            logger.warning(
                "%s %s failed: %s",
                request.method,
                request.url.path,
                exc.message,
                extra={'error_code': exc.code},
            )
        return JSONResponse(
            status_code=exc.http_status,
            content={'error': exc.code, 'detail': exc.message},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=422,
            content={'error': 'invalid_request', 'detail': str(exc)},
        )


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: ToolboxControlSettings | None = None,
    *,
    store: EnvironmentRecordStore | None = None,
    catalog: ToolCatalog | None = None,
    secret_store: SecretStore | None = None,
    role_resolver: RoleResolver | None = None,
    provider: ProviderClient | None = None,
    agent: ManagementAgentClient | None = None,
    token_verifier: TokenVerifier | None = None,
) -> FastAPI:
    """Create a configured toolbox control-plane FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        store..agent: Backend overrides. When None, local mode uses
            InMemory implementations and non-local mode wires Supabase
            and DigitalOcean from settings.
        token_verifier: Bearer-token verifier override.

    Raises:
        ValueError: If settings validation fails.
    """
    if settings is None:
        settings = ToolboxControlSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            'Toolbox control settings validation failed:\n'
            + '\n'.join(f'  - {e}' for e in errors)
        )

    deps = build_dependencies(
        settings,
        store=store,
        catalog=catalog,
        secret_store=secret_store,
        role_resolver=role_resolver,
        provider=provider,
        agent=agent,
    )
    verifier = token_verifier or _build_token_verifier(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info('Toolbox control startup (environment=%s)', settings.environment)
        yield
        await deps.manager.aclose()
        for resource in deps.closeables:
            await resource.aclose()
        logger.info('Toolbox control shutdown')

    app = FastAPI(
        title='Toolbox Control Plane',
        description='Provision remote toolboxes and manage the tools deployed on them',
        version='0.1.0',
        lifespan=lifespan,
    )
    app.state.deps = deps
    app.state.settings = settings

    _register_exception_handlers(app)

    # ── Middleware stack (last added runs first) ─────────────────
    # Order of execution: RequestId -> Telemetry -> CORS -> AuthGuard

    app.add_middleware(
        AuthGuardMiddleware,
        token_verifier=verifier,
        allow_dev_user_header=settings.is_local,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
    )
    app.add_middleware(RequestTelemetryMiddleware)
    app.add_middleware(RequestIdMiddleware)

    # ── Routes ──────────────────────────────────────────────────

    @app.get('/health')
    async def health():
        return {
            'status': 'ok',
            'environment': settings.environment,
        }

    @app.get('/metrics')
    async def metrics():
        body, content_type = metrics_text()
        return Response(content=body, media_type=content_type)

    app.include_router(create_toolbox_router(deps.manager, deps.dispatcher))
    app.include_router(create_tool_instance_router(deps.dispatcher))

    return app


# For uvicorn, use --factory:
#   uvicorn toolbox_control.main:create_app --factory
