from __future__ import annotations

from functools import lru_cache

from supabase import Client, create_client

from adspulse.config import settings


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """Service-role Supabase client shared by the Supabase-backed stores."""
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required when STORE_BACKEND=supabase")
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


def uses_supabase() -> bool:
    return settings.store_backend.strip().lower() == "supabase"
