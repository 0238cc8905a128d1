"""SecretStore backed by Supabase Vault RPC functions.

RPC contract:
  create_vault_secret(p_secret, p_name, p_description) -> uuid
  get_vault_secret(p_secret_id) -> text
  delete_vault_secret(secret_id) -> boolean
"""

from __future__ import annotations

import logging

from toolbox_control.errors import RecordStoreError

from .errors import SupabaseError
from .supabase_client import SupabaseClient

logger = logging.getLogger(__name__)


class SupabaseVaultSecretStore:
    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def create_secret(self, value: str, *, name: str, description: str = "") -> str:
        try:
            ref = await self._client.rpc(
                "create_vault_secret",
                {"p_secret": value, "p_name": name, "p_description": description},
            )
        except SupabaseError as exc:
            # The exception never carries the secret value.
            raise RecordStoreError(f"vault secret creation failed: {exc.message}") from exc
        if not ref or not isinstance(ref, str):
            raise RecordStoreError("vault secret creation returned no id")
        logger.info("Vault secret created: %s", name, extra={"secret_ref": ref})
        return ref

    async def get_secret(self, ref: str) -> str | None:
        try:
            value = await self._client.rpc("get_vault_secret", {"p_secret_id": ref})
        except SupabaseError as exc:
            raise RecordStoreError(f"vault secret lookup failed: {exc.message}") from exc
        return value if isinstance(value, str) and value else None

    async def delete_secret(self, ref: str) -> bool:
        try:
            deleted = await self._client.rpc("delete_vault_secret", {"secret_id": ref})
        except SupabaseError as exc:
            raise RecordStoreError(f"vault secret deletion failed: {exc.message}") from exc
        return bool(deleted)
