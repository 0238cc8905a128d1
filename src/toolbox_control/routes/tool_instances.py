"""Commands on a single deployed tool instance.

  GET    /api/v1/tool-instances/{instance_id}        → current record
  POST   /api/v1/tool-instances/{instance_id}/start  → start (must be stopped)
  POST   /api/v1/tool-instances/{instance_id}/stop   → stop (must be running)
  DELETE /api/v1/tool-instances/{instance_id}        → remove from the toolbox
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from toolbox_control.instances.dispatcher import InstanceCommandDispatcher
from toolbox_control.security.auth_guard import get_auth_identity
from toolbox_control.security.token_verify import AuthIdentity


def create_tool_instance_router(dispatcher: InstanceCommandDispatcher) -> APIRouter:
    router = APIRouter(prefix='/api/v1/tool-instances', tags=['tool-instances'])

    @router.get('/{instance_id}')
    async def get_tool_instance(
        instance_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        instance = await dispatcher.get_instance(identity.user_id, instance_id)
        return {'tool': instance.to_public_dict()}

    @router.post('/{instance_id}/start')
    async def start_tool_instance(
        instance_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        instance = await dispatcher.start(identity.user_id, instance_id)
        return {'tool': instance.to_public_dict()}

    @router.post('/{instance_id}/stop')
    async def stop_tool_instance(
        instance_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        instance = await dispatcher.stop(identity.user_id, instance_id)
        return {'tool': instance.to_public_dict()}

    @router.delete('/{instance_id}')
    async def remove_tool_instance(
        instance_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        instance = await dispatcher.remove(identity.user_id, instance_id)
        return {'tool': instance.to_public_dict()}

    return router
