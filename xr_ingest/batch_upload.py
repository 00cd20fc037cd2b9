"""
Tile upload to object storage in paced, concurrent batches.

Tiles are sorted by natural filename order first: the viewer addresses frames
by `{row}_{col}` and the first tile in that order becomes the product cover.
Each batch is uploaded concurrently, batches run one after another with a
pause in between, and every file gets its own retry budget. A file that
exhausts its retries is recorded as a failure; it never aborts the run.
"""

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple

from xr_ingest.archive_validate import sanitize_filename
from xr_ingest.schema import BatchResult, FailedImage, UploadOutcome, UploadProgress
from xr_ingest.settings import BatchConfig, get_batch_config
from xr_ingest.supabase_storage import content_type_for

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[UploadProgress], None]

_DIGITS = re.compile(r"(\d+)")


def natural_sort_key(name: str):
    """Case-insensitive key where digit runs compare numerically ("2_10" after "2_9")."""
    parts = []
    for token in _DIGITS.split(name):
        if token.isdecimal():
            parts.append((0, int(token), ""))
        else:
            parts.append((1, 0, token.casefold()))
    # original name breaks ties between names that differ only in case
    return parts, name


def sort_tiles(tiles: Dict[str, bytes]) -> List[Tuple[str, bytes]]:
    return sorted(tiles.items(), key=lambda item: natural_sort_key(item[0]))


def assign_destinations(
    ordered: List[Tuple[str, bytes]], prefix: str
) -> Tuple[List[Tuple[str, bytes, str]], List[Tuple[str, str]]]:
    """
    Map each tile to its object path under `prefix`.

    Distinct names can sanitize to the same object name ("0_0 .png" and
    "0_0_.png"). The first tile in sort order keeps the path; later ones are
    returned as (name, first_name) collisions and must not be uploaded.
    """
    assigned: List[Tuple[str, bytes, str]] = []
    collisions: List[Tuple[str, str]] = []
    owners: Dict[str, str] = {}
    for name, data in ordered:
        path = f"{prefix}/{sanitize_filename(name)}"
        if path in owners:
            collisions.append((name, owners[path]))
            continue
        owners[path] = name
        assigned.append((name, data, path))
    return assigned, collisions


def calculate_total_size_mb(tiles: Dict[str, bytes]) -> float:
    return sum(len(data) for data in tiles.values()) / (1024 * 1024)


def storage_base_url(public_url: Optional[str]) -> Optional[str]:
    """Strip the last path segment: ".../bucket/admin/product/0_0.png" -> ".../bucket/admin/product"."""
    if not public_url or "/" not in public_url:
        return None
    return public_url.rsplit("/", 1)[0]


class BatchUploader:
    """
    Uploads a tile set through a storage object exposing
    `upload(path, data, content_type)` and `get_public_url(path)`.

    `sleep` is injectable so pacing and backoff can be skipped in tests.
    """

    def __init__(self, storage, config: Optional[BatchConfig] = None, sleep: Callable[[float], None] = time.sleep):
        self.storage = storage
        self.config = config or get_batch_config()
        self.sleep = sleep

    def upload_one(self, file_name: str, data: bytes, path: str) -> UploadOutcome:
        """Upload a single tile, retrying with linearly growing delays."""
        max_retries = self.config.max_retries
        last_error = "Unknown error"
        for attempt in range(1, max_retries + 1):
            try:
                result = self.storage.upload(path, data, content_type_for(file_name))
            except Exception as e:
                result = {"ok": False, "error": str(e) or e.__class__.__name__}

            if result.get("ok"):
                if attempt > 1:
                    logger.info(f"✅ Uploaded {path} on attempt {attempt}")
                return UploadOutcome(file_name=file_name, path=path, ok=True, attempts=attempt)

            last_error = result.get("error") or "Unknown error"
            logger.warning(f"⚠️ Upload of {path} failed (attempt {attempt}/{max_retries}): {last_error}")
            if attempt < max_retries:
                self.sleep(self.config.retry_delay * attempt)

        logger.error(f"❌ Giving up on {path} after {max_retries} attempts")
        return UploadOutcome(
            file_name=file_name,
            path=path,
            ok=False,
            error=f"Failed after {max_retries} attempts: {last_error}",
            attempts=max_retries,
        )

    def upload_all(
        self,
        tiles: Dict[str, bytes],
        destination_prefix: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        """
        Upload every tile under `destination_prefix`.

        Args:
            tiles: basename -> bytes
            destination_prefix: storage folder, e.g. "<admin_id>/<product_id>"
            on_progress: called every `progress_every` uploads and at the end of each batch

        Returns:
            BatchResult; `uploaded_images` keeps natural sort order
        """
        prefix = destination_prefix.rstrip("/")
        uploaded: List[str] = []
        failed: List[FailedImage] = []

        ordered, collisions = assign_destinations(sort_tiles(tiles), prefix)
        for name, taken_by in collisions:
            logger.warning(f"⚠️ Tile {name!r} maps to the same object as {taken_by!r}; skipping it")
            failed.append(FailedImage(file_name=name, error=f"Destination name collides with {taken_by}"))

        total = len(ordered)
        batch_size = self.config.batch_size
        uploaded_count = 0

        if total:
            with ThreadPoolExecutor(max_workers=min(batch_size, total), thread_name_prefix="tile-upload") as executor:
                for start in range(0, total, batch_size):
                    batch = ordered[start:start + batch_size]
                    futures = [executor.submit(self.upload_one, name, data, path) for name, data, path in batch]
                    for index, future in enumerate(futures):
                        outcome = future.result()
                        if outcome.ok:
                            uploaded.append(outcome.path)
                            uploaded_count += 1
                        else:
                            failed.append(FailedImage(file_name=outcome.file_name, error=outcome.error))

                        should_report = (
                            (outcome.ok and uploaded_count % self.config.progress_every == 0)
                            or uploaded_count == total
                            or index == len(futures) - 1
                        )
                        if on_progress and should_report:
                            on_progress(
                                UploadProgress(
                                    uploaded_count=uploaded_count,
                                    total=total,
                                    current_file_name=outcome.file_name,
                                    percentage=round(uploaded_count / total * 100),
                                    message=f"Uploading images: {uploaded_count}/{total}",
                                )
                            )

                    if start + batch_size < total:
                        self.sleep(self.config.delay_between_batches)

        cover_image_url = None
        if uploaded:
            cover_image_url = self.storage.get_public_url(uploaded[0])

        if failed:
            logger.warning(f"⚠️ {len(failed)} of {len(tiles)} tiles failed to upload")
        logger.info(f"📤 Uploaded {len(uploaded)}/{total} tiles to {prefix}")

        return BatchResult(
            uploaded_images=uploaded,
            failed_images=failed,
            total_size_mb=calculate_total_size_mb(tiles),
            cover_image_url=cover_image_url,
            storage_path_url=storage_base_url(cover_image_url),
        )
