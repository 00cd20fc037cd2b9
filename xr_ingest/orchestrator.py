"""
Ingestion orchestrator: runs one archive through the whole pipeline.

    validating -> extracting -> parsing -> uploading -> updating_record -> complete

with `errored` reachable from every non-terminal state. The client only
sees the pipeline through progress events; every run ends with exactly one
terminal event (complete or error) followed by closing the stream.

Partial tile failures do not stop the run: they are listed in the complete
event. A failed product update is fatal even though tiles were already
uploaded; those objects are left in storage and are overwritten by the next
upload of the same product.
"""

import logging
import time
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Callable, List, Optional

from xr_ingest.archive_extract import extract_archive
from xr_ingest.archive_validate import sanitize_filename, validate_archive
from xr_ingest.batch_upload import BatchUploader
from xr_ingest.descriptor import parse_archive_entries
from xr_ingest.errors import IngestError, NoTilesFound, RecordUpdateFailed
from xr_ingest.progress_stream import ProgressStream
from xr_ingest.schema import (
    BatchResult,
    IngestionOutcome,
    IngestState,
    ParsedArchive,
    RawArchive,
    UploadPhase,
    UploadProgress,
)
from xr_ingest.settings import ArchiveLimits, BatchConfig, get_archive_limits, get_batch_config

logger = logging.getLogger(__name__)

TERMINAL_STATES = (IngestState.COMPLETE, IngestState.ERRORED)


def storage_prefix(owner_id: str, product_id: str) -> str:
    return f"{owner_id}/{product_id}"


class IngestionOrchestrator:
    """
    One instance per request.

    Args:
        storage: object storage (upload / get_public_url / download / remove)
        products: product record store exposing update(product_id, fields) -> (ok, error)
        stream: ProgressStream for this request
        batch_config: upload batching policy
        limits: archive limits for validation
        sleep: injected into the uploader for pacing and backoff
    """

    def __init__(
        self,
        storage,
        products,
        stream: ProgressStream,
        batch_config: Optional[BatchConfig] = None,
        limits: Optional[ArchiveLimits] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.storage = storage
        self.products = products
        self.stream = stream
        self.limits = limits or get_archive_limits()
        self.uploader = BatchUploader(storage, batch_config or get_batch_config(), sleep=sleep)
        self.state = IngestState.IDLE
        self.history: List[IngestState] = [IngestState.IDLE]

    def _transition(self, state: IngestState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Cannot leave terminal state {self.state.value}")
        logger.info(f"🔄 Ingestion state {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def run(self, archive: RawArchive, product_id: str, owner_id: str) -> IngestionOutcome:
        """Process archive bytes received directly from the client."""

        def _steps() -> IngestionOutcome:
            logger.info(f"📦 Received {sanitize_filename(archive.filename)} ({archive.size} bytes) for product {product_id}")
            self.stream.send_progress(UploadPhase.UPLOAD_COMPLETE, "File received", {"size": archive.size})
            return self._process(archive, product_id, owner_id)

        return self._execute(_steps)

    def run_from_storage(
        self,
        archive_path: str,
        product_id: str,
        owner_id: str,
        cleanup_source: bool = False,
    ) -> IngestionOutcome:
        """
        Process an archive the client already placed in object storage.

        Args:
            archive_path: path of the archive inside the bucket
            cleanup_source: delete the archive once the run completed
        """

        def _steps() -> IngestionOutcome:
            self._transition(IngestState.FETCHING)
            self.stream.send_progress(UploadPhase.DOWNLOADING, "Downloading file from storage...")
            data = self.storage.download(archive_path)
            self.stream.send_progress(UploadPhase.DOWNLOAD_COMPLETE, "File downloaded", {"size": len(data)})

            archive = RawArchive(filename=PurePosixPath(archive_path).name, data=data)
            outcome = self._process(archive, product_id, owner_id)

            if cleanup_source and self.storage.remove([archive_path]):
                logger.info(f"🧹 Removed source archive {archive_path}")
            return outcome

        return self._execute(_steps)

    def _execute(self, steps: Callable[[], IngestionOutcome]) -> IngestionOutcome:
        try:
            return steps()
        except IngestError as e:
            logger.error(f"❌ Ingestion failed in state {self.state.value} [{e.kind}]: {e.message}")
            return self._fail(e.message, e)
        except Exception as e:
            logger.error(f"❌ Unexpected error in state {self.state.value}: {e}", exc_info=True)
            return self._fail(str(e) or "Error processing file", e)
        finally:
            self.stream.close()

    def _fail(self, message: str, error: BaseException) -> IngestionOutcome:
        if self.state not in TERMINAL_STATES:
            self._transition(IngestState.ERRORED)
        self.stream.send_error(message, error)
        return IngestionOutcome(
            state=IngestState.ERRORED,
            error_kind=getattr(error, "kind", error.__class__.__name__),
            error=message,
        )

    def _process(self, archive: RawArchive, product_id: str, owner_id: str) -> IngestionOutcome:
        parsed = self._unpack(archive)
        image_count = len(parsed.tiles)

        self._transition(IngestState.UPLOADING)
        prefix = storage_prefix(owner_id, product_id)
        self.stream.send_progress(
            UploadPhase.UPLOADING_IMAGES,
            "Starting image upload...",
            {"total": image_count, "uploaded": 0},
        )
        result = self.uploader.upload_all(parsed.tiles, prefix, on_progress=self._report_upload)
        self.stream.send_progress(
            UploadPhase.IMAGES_UPLOADED,
            "All images uploaded",
            {
                "uploaded": len(result.uploaded_images),
                "failed": len(result.failed_images),
                "total": image_count,
            },
        )

        self._transition(IngestState.UPDATING_RECORD)
        self.stream.send_progress(UploadPhase.UPDATING_PRODUCT, "Updating product information...")
        storage_path = self._update_product(product_id, prefix, parsed, result)

        self._transition(IngestState.COMPLETE)
        self.stream.send_complete(
            "Processing complete",
            {
                "constants": parsed.constants,
                "uploadedImages": result.uploaded_images,
                "imageCount": image_count,
                "storagePath": storage_path,
                "coverImage": result.cover_image_url,
                "totalSizeMB": round(result.total_size_mb, 2),
                "failedImages": [failure.model_dump(by_alias=True) for failure in result.failed_images],
            },
        )
        logger.info(
            f"✅ Product {product_id}: {len(result.uploaded_images)}/{image_count} tiles, "
            f"{result.total_size_mb:.2f} MB"
        )
        return IngestionOutcome(
            state=IngestState.COMPLETE,
            constants=parsed.constants,
            image_count=image_count,
            batch_result=result,
            storage_path=storage_path,
        )

    def _unpack(self, archive: RawArchive) -> ParsedArchive:
        """Validate, extract and parse; CPU-bound, no storage access."""
        self._transition(IngestState.VALIDATING)
        self.stream.send_progress(UploadPhase.VALIDATING, "Validating archive...")
        validation = validate_archive(archive.data, archive.filename, self.limits)
        validation.raise_for_error()

        self._transition(IngestState.EXTRACTING)
        self.stream.send_progress(UploadPhase.EXTRACTING, "Extracting files...")
        entries = extract_archive(archive.data, validation.archive_format)

        self._transition(IngestState.PARSING)
        parsed = parse_archive_entries(entries)
        if not parsed.tiles:
            raise NoTilesFound("The archive does not contain any image tiles")
        self.stream.send_progress(
            UploadPhase.EXTRACTED,
            f"{len(parsed.tiles)} images extracted",
            {"imageCount": len(parsed.tiles)},
        )
        return parsed

    def _update_product(self, product_id: str, prefix: str, parsed: ParsedArchive, result: BatchResult) -> str:
        storage_path = result.storage_path_url or prefix
        updates = {
            "constants": parsed.constants,
            "path": storage_path,
            "weight": result.total_size_mb,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        if result.cover_image_url:
            updates["cover_image"] = result.cover_image_url

        try:
            ok, error = self.products.update(product_id, updates)
        except Exception as e:
            raise RecordUpdateFailed(f"Error updating product: {e}") from e
        if not ok:
            raise RecordUpdateFailed(f"Error updating product: {error}")
        return storage_path

    def _report_upload(self, progress: UploadProgress) -> None:
        self.stream.send_progress(
            UploadPhase.UPLOADING_IMAGES,
            progress.message,
            {
                "fileName": progress.current_file_name,
                "uploaded": progress.uploaded_count,
                "total": progress.total,
                "percentage": progress.percentage,
            },
        )
