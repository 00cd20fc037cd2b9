"""
Supabase PostgreSQL access for product records.

Only the fields the ingestion pipeline owns may be written; anything else in
the update payload is dropped before the query is built.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from auth.supabase_client import get_supabase_client
from xr_ingest.settings import PRODUCTS_TABLE

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("constants", "path", "weight", "cover_image", "updated_at")


class SupabaseProductStore:
    """Product record contract: update(product_id, fields) -> (ok, error)."""

    def __init__(self, client, table: str = PRODUCTS_TABLE):
        self.client = client
        self.table = table

    @classmethod
    def from_env(cls, access_token: Optional[str] = None) -> "SupabaseProductStore":
        client = get_supabase_client(access_token=access_token)
        if client is None:
            raise RuntimeError("Supabase is not configured (SUPABASE_URL / SUPABASE_ANON_KEY)")
        return cls(client)

    def update(self, product_id: str, updates: Dict) -> Tuple[bool, Optional[str]]:
        """
        Update a product row.

        Args:
            product_id: products.product_id of the row to update
            updates: constants / path / weight / cover_image values

        Returns:
            (ok, error message or None)
        """
        if not product_id:
            return False, "Product ID is required"
        weight = updates.get("weight")
        if weight is not None and weight < 0:
            return False, "Product weight cannot be negative"

        payload = {key: value for key, value in updates.items() if key in UPDATABLE_FIELDS}
        dropped = sorted(set(updates) - set(payload))
        if dropped:
            logger.warning(f"⚠️ Ignoring non-updatable product fields: {', '.join(dropped)}")
        payload.setdefault("updated_at", datetime.now(timezone.utc).isoformat())

        try:
            result = (
                self.client.table(self.table)
                .update(payload)
                .eq("product_id", product_id)
                .execute()
            )
        except Exception as e:
            logger.error(f"❌ Error updating product {product_id} in Supabase: {e}")
            return False, str(e)

        if not result.data:
            logger.warning(f"⚠️ Update returned no rows for product {product_id}")
            return False, f"Product {product_id} not found or not writable"

        logger.info(f"✅ Updated product {product_id}")
        return True, None
