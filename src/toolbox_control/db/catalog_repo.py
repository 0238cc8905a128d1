"""Supabase-backed ToolCatalog over the ``tool_catalog`` table."""

from __future__ import annotations

from toolbox_control.errors import RecordStoreError
from toolbox_control.models import CatalogEntry

from .errors import SupabaseError
from .supabase_client import SupabaseClient

CATALOG_TABLE = "tool_catalog"


class SupabaseToolCatalog:
    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get_entry(self, entry_id: str) -> CatalogEntry | None:
        try:
            rows = await self._client.select(
                CATALOG_TABLE, {"id": ("eq", entry_id)}, limit=1,
            )
        except SupabaseError as exc:
            raise RecordStoreError(f"get catalog entry failed: {exc.message}") from exc
        if not rows:
            return None
        row = rows[0]
        # package_identifier holds the container image reference.
        image = row.get("package_identifier") or ""
        if not image:
            raise RecordStoreError(f"catalog entry {entry_id!r} has no image reference")
        return CatalogEntry(
            id=str(row["id"]),
            name=row.get("tool_name") or "",
            image=image,
            description=row.get("description"),
            metadata=row.get("metadata") or {},
        )
