"""Supabase-backed record stores, vault and role lookups."""
