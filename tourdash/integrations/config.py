"""
External API Configuration

Factory for the Supabase client from environment settings.

Required environment variables:
- SUPABASE_URL: Project URL
- SUPABASE_SERVICE_KEY or SUPABASE_ANON_KEY: API key

Optional:
- API_TIMEOUT: Request timeout in seconds (default: 30)
"""

import logging
from typing import Optional

from tourdash.integrations.supabase import SupabaseClient
from tourdash.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)


def create_supabase_client(
    settings: Optional[Settings] = None,
    access_token: Optional[str] = None,
) -> Optional[SupabaseClient]:
    """
    Create a Supabase client, or None when it is not configured.

    The service key is preferred for server-side use; pass ``access_token``
    to read under a user's row-level security instead.
    """
    settings = settings or get_settings()
    if not settings.has_supabase:
        logger.warning("Supabase not configured (SUPABASE_URL / key missing)")
        return None

    api_key = settings.SUPABASE_SERVICE_KEY or settings.SUPABASE_ANON_KEY
    return SupabaseClient(
        url=settings.SUPABASE_URL,
        api_key=api_key,
        access_token=access_token,
        timeout=float(settings.API_TIMEOUT),
    )
