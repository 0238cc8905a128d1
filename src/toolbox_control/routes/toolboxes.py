"""Toolbox (Environment) lifecycle API.

  POST   /api/v1/toolboxes                  → start provisioning (202)
  GET    /api/v1/toolboxes                  → list the caller's toolboxes
  GET    /api/v1/toolboxes/{toolbox_id}     → one toolbox
  DELETE /api/v1/toolboxes/{toolbox_id}     → deprovision
  POST   /api/v1/toolboxes/{toolbox_id}/refresh → query the management agent
  GET    /api/v1/toolboxes/{toolbox_id}/tools   → tool instances on the toolbox
  POST   /api/v1/toolboxes/{toolbox_id}/tools   → deploy a tool from the catalog

Domain errors propagate to the app-level handler, which renders
``{"error": code, "detail": message}`` with the error's HTTP status.

All endpoints require authentication via ``get_auth_identity``.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from toolbox_control.instances.dispatcher import InstanceCommandDispatcher
from toolbox_control.lifecycle.manager import EnvironmentLifecycleManager
from toolbox_control.security.auth_guard import get_auth_identity
from toolbox_control.security.token_verify import AuthIdentity


# ── Request schemas ───────────────────────────────────────────────────


class CreateToolboxRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    region: str | None = Field(default=None, max_length=50)
    size: str | None = Field(default=None, max_length=50)
    image: str | None = Field(default=None, max_length=100)
    description: str | None = Field(default=None, max_length=500)


class DeployToolRequest(BaseModel):
    catalog_entry_id: str = Field(min_length=1)
    instance_name: str = Field(min_length=1, max_length=63)
    config_override: dict[str, Any] = Field(default_factory=dict)


# ── Route factory ─────────────────────────────────────────────────────


def create_toolbox_router(
    manager: EnvironmentLifecycleManager,
    dispatcher: InstanceCommandDispatcher,
) -> APIRouter:
    """Create the toolbox lifecycle router.

    Args:
        manager: Lifecycle manager for provision/refresh/deprovision.
        dispatcher: Command dispatcher for tools deployed on a toolbox.
    """
    router = APIRouter(prefix='/api/v1/toolboxes', tags=['toolboxes'])

    @router.post('', status_code=202)
    async def create_toolbox(
        body: CreateToolboxRequest,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Insert the toolbox record and provision it in the background.

        Poll ``GET /api/v1/toolboxes/{id}`` until the status leaves
        ``provisioning``.
        """
        env = await manager.provision_in_background(
            identity.user_id,
            body.name,
            region=body.region,
            size=body.size,
            description=body.description,
            image=body.image,
        )
        return {'toolbox': env.to_public_dict()}

    @router.get('')
    async def list_toolboxes(
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        envs = await manager.list_environments(identity.user_id)
        return {'toolboxes': [e.to_public_dict() for e in envs]}

    @router.get('/{toolbox_id}')
    async def get_toolbox(
        toolbox_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        env = await manager.get_environment(toolbox_id, identity.user_id)
        return {'toolbox': env.to_public_dict()}

    @router.delete('/{toolbox_id}')
    async def delete_toolbox(
        toolbox_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Deprovision a toolbox.

        Returns 502 with the result when teardown failed; the record is then
        kept in ``error_deprovisioning`` and the call may be repeated.
        """
        result = await manager.deprovision(toolbox_id, identity.user_id)
        content = {
            'toolbox_id': result.environment_id,
            'success': result.success,
            'message': result.message,
            'status': result.status.value if result.status else None,
        }
        if not result.success:
            return JSONResponse(status_code=502, content=content)
        return content

    @router.post('/{toolbox_id}/refresh')
    async def refresh_toolbox(
        toolbox_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        env = await manager.refresh_status(toolbox_id, identity.user_id)
        return {'toolbox': env.to_public_dict()}

    @router.get('/{toolbox_id}/tools')
    async def list_tools(
        toolbox_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        instances = await dispatcher.list_instances(identity.user_id, toolbox_id)
        return {'tools': [i.to_public_dict() for i in instances]}

    @router.post('/{toolbox_id}/tools', status_code=201)
    async def deploy_tool(
        toolbox_id: str,
        body: DeployToolRequest,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        instance = await dispatcher.deploy(
            identity.user_id,
            toolbox_id,
            body.catalog_entry_id,
            body.instance_name,
            body.config_override,
        )
        return {'tool': instance.to_public_dict()}

    return router
