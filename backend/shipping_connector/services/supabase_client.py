from typing import Optional

from supabase import create_client, Client

from shipping_connector.config import settings
from shipping_connector.utils.logger import logger

_supabase_client: Optional[Client] = None


def get_supabase_client() -> Optional[Client]:
    """Return the shared Supabase client, or None when it is not configured.

    The service role key is preferred; edge functions that proxy carrier APIs
    reject anonymous callers.
    """
    global _supabase_client
    if _supabase_client:
        return _supabase_client

    url = settings.SUPABASE_URL
    key = settings.SUPABASE_SERVICE_ROLE_KEY or settings.SUPABASE_KEY

    if not url or not key:
        logger.warning("SUPABASE_URL or SUPABASE_KEY/SUPABASE_SERVICE_ROLE_KEY not set. Edge function calls will fail.")
        return None

    if not settings.SUPABASE_SERVICE_ROLE_KEY:
        logger.warning("SUPABASE_SERVICE_ROLE_KEY not set. Using SUPABASE_KEY (Anon). Edge functions may reject calls.")

    _supabase_client = create_client(url, key)
    return _supabase_client
