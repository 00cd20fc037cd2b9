"""
Data models for KeyShot XR archive ingestion.
Uses Pydantic for validation and type safety.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from xr_ingest.errors import VALIDATION_ERRORS, IngestError


class ArchiveFormat(str, Enum):
    """Container formats the extractor knows how to open."""
    ZIP = "zip"
    RAR = "rar"


class EventType(str, Enum):
    PROGRESS = "progress"
    ERROR = "error"
    COMPLETE = "complete"


class UploadPhase(str, Enum):
    """Phase tags carried by progress events, in pipeline order."""
    DOWNLOADING = "downloading"
    DOWNLOAD_COMPLETE = "download-complete"
    UPLOAD_COMPLETE = "upload-complete"
    VALIDATING = "validating"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    UPLOADING_IMAGES = "uploading-images"
    IMAGES_UPLOADED = "images-uploaded"
    UPDATING_PRODUCT = "updating-product"


class IngestState(str, Enum):
    """Orchestrator states. ERRORED is absorbing."""
    IDLE = "idle"
    FETCHING = "fetching"
    VALIDATING = "validating"
    EXTRACTING = "extracting"
    PARSING = "parsing"
    UPLOADING = "uploading"
    UPDATING_RECORD = "updating_record"
    COMPLETE = "complete"
    ERRORED = "errored"


class RawArchive(BaseModel):
    """Archive bytes plus the filename the client declared. Owned by one request."""
    filename: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


class ValidationResult(BaseModel):
    """Outcome of the pre-extraction checks."""
    is_valid: bool
    kind: Optional[str] = None
    error: Optional[str] = None
    archive_format: Optional[ArchiveFormat] = None

    @classmethod
    def ok(cls, archive_format: ArchiveFormat) -> "ValidationResult":
        return cls(is_valid=True, archive_format=archive_format)

    @classmethod
    def fail(cls, kind: str, error: str) -> "ValidationResult":
        return cls(is_valid=False, kind=kind, error=error)

    def raise_for_error(self) -> None:
        """Raise the matching IngestError subclass when validation failed."""
        if self.is_valid:
            return
        error_cls = VALIDATION_ERRORS.get(self.kind, IngestError)
        raise error_cls(self.error or "Invalid archive")


class ParsedArchive(BaseModel):
    """Descriptor configuration plus the image tiles keyed by original basename."""
    constants: Dict[str, Any]
    tiles: Dict[str, bytes]
    descriptor_name: Optional[str] = None


class UploadProgress(BaseModel):
    uploaded_count: int
    total: int
    current_file_name: str
    percentage: int
    message: str


class UploadOutcome(BaseModel):
    """Result of uploading a single tile, after retries."""
    file_name: str
    path: str
    ok: bool
    error: Optional[str] = None
    attempts: int = 1


class FailedImage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName")
    error: str


class BatchResult(BaseModel):
    """Aggregate of a whole upload run."""
    uploaded_images: List[str] = []
    failed_images: List[FailedImage] = []
    total_size_mb: float = 0.0
    cover_image_url: Optional[str] = None
    storage_path_url: Optional[str] = None


class IngestionOutcome(BaseModel):
    """What the orchestrator reports back to its caller once the stream is closed."""
    state: IngestState
    error_kind: Optional[str] = None
    error: Optional[str] = None
    constants: Optional[Dict[str, Any]] = None
    image_count: int = 0
    batch_result: Optional[BatchResult] = None
    storage_path: Optional[str] = None
