"""
Supabase Storage adapter for product tiles.

Implements the storage contract the pipeline consumes:
    upload(path, bytes, content_type) -> {"ok", "path" | "error"}
    get_public_url(path)              -> url
    download(path)                    -> bytes
Calls never raise; failures come back as {"ok": False, "error": ...} and the
batch uploader decides whether to retry.
"""

import logging
from pathlib import PurePosixPath
from typing import Dict, List, Optional

from storage3.exceptions import StorageApiError

from auth.supabase_client import get_supabase_client
from xr_ingest.errors import StorageDownloadFailed
from xr_ingest.settings import STORAGE_BUCKET

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".zip": "application/zip",
    ".rar": "application/vnd.rar",
}


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(PurePosixPath(filename).suffix.lower(), "application/octet-stream")


class SupabaseStorage:
    """One bucket of a Supabase project, accessed with a single client."""

    def __init__(self, client, bucket: str = STORAGE_BUCKET):
        self.client = client
        self.bucket = bucket

    @classmethod
    def from_env(cls, access_token: Optional[str] = None, bucket: str = STORAGE_BUCKET) -> "SupabaseStorage":
        client = get_supabase_client(access_token=access_token)
        if client is None:
            raise RuntimeError("Supabase is not configured (SUPABASE_URL / SUPABASE_ANON_KEY)")
        return cls(client, bucket)

    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> Dict:
        """
        Upload one object, overwriting any existing one at `path`.

        Returns:
            dict with ok, path and (on failure) error
        """
        try:
            self._bucket().upload(
                path=path,
                file=data,
                file_options={
                    "content-type": content_type or content_type_for(path),
                    "upsert": "true",
                },
            )
            return {"ok": True, "path": path}
        except Exception as e:
            return {"ok": False, "path": path, "error": str(e) or e.__class__.__name__}

    def get_public_url(self, path: str) -> Optional[str]:
        try:
            return self._bucket().get_public_url(path)
        except Exception as e:
            logger.error(f"❌ Error getting public URL for {path}: {e}")
            return None

    def download(self, path: str) -> bytes:
        """
        Download an object.

        Raises:
            StorageDownloadFailed: missing object or storage error
        """
        try:
            data = self._bucket().download(path)
        except StorageApiError as e:
            if "not_found" in str(getattr(e, "code", "")).lower() or "not_found" in str(e).lower():
                raise StorageDownloadFailed(f"File not found in storage: {path}") from e
            raise StorageDownloadFailed(f"Error downloading file: {e}") from e
        except Exception as e:
            raise StorageDownloadFailed(f"Error downloading file: {e}") from e
        if not data:
            raise StorageDownloadFailed(f"Downloaded file is empty: {path}")
        return data

    def remove(self, paths: List[str]) -> bool:
        try:
            self._bucket().remove(paths)
            return True
        except Exception as e:
            logger.error(f"❌ Error deleting {len(paths)} file(s) from storage: {e}")
            return False
