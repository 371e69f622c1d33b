"""
Backing-store clients for the CRM bulk importer.
"""

from .base import QueryClient
from .postgres_client import PostgresClient
from .supabase_client import SupabaseClient

__all__ = [
    'QueryClient',
    'PostgresClient',
    'SupabaseClient',
]
