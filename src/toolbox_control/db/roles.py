"""RoleResolver backed by the ``user_has_role`` RPC."""

from __future__ import annotations

import logging

from .errors import SupabaseError
from .supabase_client import SupabaseClient

logger = logging.getLogger(__name__)


class SupabaseRoleResolver:
    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def has_role(self, user_id: str, role: str) -> bool:
        try:
            result = await self._client.rpc(
                "user_has_role", {"user_id": user_id, "role_name": role},
            )
        except SupabaseError as exc:
            # Fail closed: a lookup failure never grants the role.
            logger.warning(
                "Role lookup failed for user %s: %s",
                user_id,
                exc.message,
                extra={"role": role},
            )
            return False
        return result is True
