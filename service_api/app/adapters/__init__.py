"""
Adapters package for the API service.

Wraps the Supabase SDK (identity provider and relational datastore) behind
an async interface that raises ``shared.errors`` types.
"""

from .supabase_client import SupabaseDataClient

__all__ = ["SupabaseDataClient"]
