"""
SDK for token-pet.

Provides programmatic access to the Supabase backend.
"""

from .supabase_client import RemoteHTTPError, SupabaseClient, SyncError

__all__ = ["SupabaseClient", "SyncError", "RemoteHTTPError"]
