"""
Hosted snapshot database client.

Only built when the supabase storage backend is selected. Snapshots are
written server-side without a user session, so the service role key is used.
"""
import logging
from functools import lru_cache

from supabase import Client, create_client

from flowcanvas.config import supabase_settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """Process-wide Supabase client, created on first use."""
    supabase_url, supabase_key = supabase_settings()
    if not supabase_url:
        raise ValueError("SUPABASE_URL environment variable is required")
    if not supabase_key:
        raise ValueError("SUPABASE_SERVICE_ROLE_KEY environment variable is required")

    try:
        client = create_client(supabase_url, supabase_key)
    except Exception as e:
        raise ValueError(f"Failed to create Supabase client: {str(e)}") from e
    logger.info("Snapshot store connected to %s", supabase_url)
    return client
