"""Errors raised by the PostgREST client.

They carry the PostgREST error fields only, never the response object or
request headers, so the service-role key cannot leak through them. Stores
translate them into ``RecordStoreError`` (or a more specific domain error)
at their boundary.
"""

from __future__ import annotations

from dataclasses import dataclass

# Postgres SQLSTATE for unique_violation.
UNIQUE_VIOLATION = "23505"


@dataclass(frozen=True, slots=True)
class SupabaseError(Exception):
    status_code: int
    message: str
    code: str | None = None
    details: str | None = None
    hint: str | None = None

    @property
    def is_unique_violation(self) -> bool:
        return self.code == UNIQUE_VIOLATION

    def __str__(self) -> str:
        text = f"supabase {self.status_code}: {self.message}"
        if self.code:
            text += f" [{self.code}]"
        if self.hint:
            text += f" (hint: {self.hint})"
        return text


class SupabaseAuthError(SupabaseError):
    """Service-role key rejected (401/403)."""


class SupabaseNotFoundError(SupabaseError):
    """Unknown table, view or RPC function (404)."""


class SupabaseConflictError(SupabaseError):
    """Constraint conflict (409)."""
