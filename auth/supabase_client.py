"""
Supabase client initialization and request authentication helpers.
"""

import logging
import os
from typing import Optional

from supabase import create_client, Client
from yarl import URL

logger = logging.getLogger(__name__)


def normalize_supabase_url(url: Optional[str]) -> Optional[str]:
    """Ensure the Supabase URL ends with a trailing slash to satisfy the storage client."""
    if not url:
        return None
    return url if url.endswith("/") else f"{url}/"


def get_supabase_client(access_token: Optional[str] = None, service_role: bool = False) -> Optional[Client]:
    """
    Build a Supabase client from environment variables.

    With `access_token`, the user's JWT is sent as the Bearer token for
    PostgREST and Storage so row-level security applies to that user; the
    anon key stays the apiKey header. With `service_role`, the service key is
    used instead and RLS is bypassed (server-side ops only).

    Requires:
        - SUPABASE_URL
        - SUPABASE_ANON_KEY (or SUPABASE_SERVICE_ROLE_KEY for service_role)

    Returns:
        Supabase client instance, or None if credentials are missing
    """
    supabase_url = normalize_supabase_url(os.environ.get("SUPABASE_URL"))
    key_name = "SUPABASE_SERVICE_ROLE_KEY" if service_role else "SUPABASE_ANON_KEY"
    supabase_key = os.environ.get(key_name)
    if not supabase_url or not supabase_key:
        logger.warning(f"⚠️ Supabase client unavailable: SUPABASE_URL or {key_name} not set")
        return None

    try:
        supabase: Client = create_client(supabase_url, supabase_key)
    except Exception as e:
        logger.error(f"❌ Error initializing Supabase client: {e}")
        return None

    if access_token and not service_role:
        supabase.postgrest.auth(access_token)
        supabase.storage._client.headers["Authorization"] = f"Bearer {access_token}"

    # storage3 warns when the storage URL lacks a trailing slash
    storage_url = str(supabase.storage_url)
    if not storage_url.endswith("/"):
        supabase.storage_url = URL(f"{storage_url}/")

    return supabase


def get_user_id(supabase_client: Client, access_token: Optional[str] = None) -> Optional[str]:
    """
    Resolve the user behind a JWT (or the client's current session).

    Returns:
        User ID (UUID string) if authenticated, None otherwise
    """
    try:
        response = supabase_client.auth.get_user(access_token) if access_token else supabase_client.auth.get_user()
    except Exception as e:
        logger.info(f"Authentication rejected: {e}")
        return None
    if response and response.user:
        return response.user.id
    return None
