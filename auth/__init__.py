"""
Auth package: Supabase client construction and bearer-token resolution.

Route tests patch ``auth.supabase_client.get_supabase_client`` (or the name
imported into ``flask_app``) so no network client is built.
"""

from auth.supabase_client import get_supabase_client, get_user_id

__all__ = ["get_supabase_client", "get_user_id"]
