"""
Supabase client for bandit state, events and storyboard versions
"""

from typing import Optional
from supabase import create_client, Client, ClientOptions
from .config import Config


_supabase_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """
    Get or create the shared Supabase client.

    The PostgREST timeout is bounded by STORAGE_TIMEOUT_SECONDS so an
    unreachable database fails a page render fast instead of hanging it.

    Returns:
        Supabase client instance
    """
    global _supabase_client

    if _supabase_client is None:
        Config.validate()
        _supabase_client = create_client(
            Config.SUPABASE_URL,
            Config.SUPABASE_SERVICE_KEY,
            options=ClientOptions(
                postgrest_client_timeout=Config.STORAGE_TIMEOUT_SECONDS,
            ),
        )

    return _supabase_client


def reset_supabase_client():
    """Drop the cached client (tests and credential rotation)"""
    global _supabase_client
    _supabase_client = None
