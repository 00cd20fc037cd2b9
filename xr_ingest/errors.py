"""
Exception taxonomy for the ingestion pipeline.

Validator, extractor and parser errors are fatal for the request and end the
stream with one error event. Per-file storage failures are collected by the
batch uploader instead of raised. Stream write failures are swallowed by the
progress stream.
"""


class IngestError(Exception):
    """Base class; `kind` is the stable machine-readable tag."""

    kind = "IngestError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RateLimited(IngestError):
    kind = "RateLimited"

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class InvalidRequest(IngestError):
    kind = "InvalidRequest"


class TooLarge(IngestError):
    kind = "TooLarge"


class UnsupportedExtension(IngestError):
    kind = "UnsupportedExtension"


class CorruptOrSpoofed(IngestError):
    kind = "CorruptOrSpoofed"


class TooManyEntries(IngestError):
    kind = "TooManyEntries"


class EmptyArchive(IngestError):
    kind = "Empty"


class ExtractionFailed(IngestError):
    kind = "ExtractionFailed"


class NoDescriptorFound(IngestError):
    kind = "NoDescriptorFound"


class NoTilesFound(IngestError):
    kind = "NoTilesFound"


class StorageDownloadFailed(IngestError):
    kind = "StorageDownloadFailed"


class StorageUploadFailed(IngestError):
    kind = "StorageUploadFailed"

    def __init__(self, message: str, path: str = None):
        super().__init__(message)
        self.path = path


class RecordUpdateFailed(IngestError):
    kind = "RecordUpdateFailed"


class StreamWriteFailed(IngestError):
    kind = "StreamWriteFailed"


# Validator kinds mapped back to their exception type
VALIDATION_ERRORS = {
    cls.kind: cls
    for cls in (TooLarge, UnsupportedExtension, CorruptOrSpoofed, TooManyEntries, EmptyArchive)
}
