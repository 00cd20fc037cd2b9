"""
Archive validation: decides whether uploaded bytes can be trusted before any
extraction happens.

Checks run in a fixed order so error precedence is stable:
    1. size       (empty / over the ceiling)
    2. extension  (only when a filename was declared)
    3. signature  (magic bytes of the accepted container formats)
    4. structure  (entry count, declared uncompressed size, compression ratio)

Everything here is a pure function of the byte buffer; nothing is written.
"""

import io
import logging
import re
import zipfile
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Tuple

import rarfile

from xr_ingest.schema import ArchiveFormat, ValidationResult
from xr_ingest.settings import ArchiveLimits, get_archive_limits

logger = logging.getLogger(__name__)

FILE_SIGNATURES: Dict[ArchiveFormat, List[bytes]] = {
    ArchiveFormat.ZIP: [
        b"PK\x03\x04",  # local file header
        b"PK\x05\x06",  # empty archive (end of central directory only)
        b"PK\x07\x08",  # spanned archive
    ],
    ArchiveFormat.RAR: [
        b"Rar!\x1a\x07\x00",      # RAR 1.5 - 4.x
        b"Rar!\x1a\x07\x01\x00",  # RAR 5.x
    ],
}

EXTENSION_FORMATS: Dict[str, ArchiveFormat] = {
    ".zip": ArchiveFormat.ZIP,
    ".rar": ArchiveFormat.RAR,
}


def allowed_formats(limits: ArchiveLimits) -> List[ArchiveFormat]:
    """ZIP is always the primary path; RAR only when explicitly enabled."""
    formats = [ArchiveFormat.ZIP]
    if limits.allow_rar:
        formats.append(ArchiveFormat.RAR)
    return formats


def _mb(size: int) -> str:
    return f"{size / (1024 * 1024):.2f}MB"


def check_size(data: bytes, limits: ArchiveLimits) -> Optional[ValidationResult]:
    if len(data) == 0:
        return ValidationResult.fail("Empty", "The uploaded file is empty (0 bytes)")
    if len(data) > limits.max_archive_bytes:
        return ValidationResult.fail(
            "TooLarge",
            f"The file is too large ({_mb(len(data))}). "
            f"Maximum allowed size: {_mb(limits.max_archive_bytes)}",
        )
    return None


def check_extension(filename: str, limits: ArchiveLimits) -> Tuple[Optional[ValidationResult], Optional[ArchiveFormat]]:
    suffix = PurePosixPath(filename.replace("\\", "/")).suffix.lower()
    archive_format = EXTENSION_FORMATS.get(suffix)
    if archive_format is None or archive_format not in allowed_formats(limits):
        accepted = ", ".join(f".{fmt.value}" for fmt in allowed_formats(limits))
        return (
            ValidationResult.fail(
                "UnsupportedExtension",
                f"Only {accepted} archives are accepted. Please convert your file to ZIP.",
            ),
            None,
        )
    return None, archive_format


def detect_format(data: bytes, candidates: List[ArchiveFormat]) -> Optional[ArchiveFormat]:
    """Return the first candidate format whose magic bytes prefix `data`."""
    for archive_format in candidates:
        if any(data.startswith(signature) for signature in FILE_SIGNATURES[archive_format]):
            return archive_format
    return None


def check_signature(data: bytes, candidates: List[ArchiveFormat]) -> Tuple[Optional[ValidationResult], Optional[ArchiveFormat]]:
    archive_format = detect_format(data, candidates)
    if archive_format is None:
        expected = "/".join(fmt.value.upper() for fmt in candidates)
        return (
            ValidationResult.fail(
                "CorruptOrSpoofed",
                f"The file is not a valid {expected} archive (invalid signature)",
            ),
            None,
        )
    return None, archive_format


def _list_entries(data: bytes, archive_format: ArchiveFormat) -> List[Tuple[int, int]]:
    """(uncompressed size, compressed size) for every non-directory entry."""
    if archive_format == ArchiveFormat.RAR:
        with rarfile.RarFile(io.BytesIO(data)) as archive:
            return [(info.file_size, info.compress_size) for info in archive.infolist() if not info.is_dir()]
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        return [(info.file_size, info.compress_size) for info in archive.infolist() if not info.is_dir()]


def check_structure(data: bytes, archive_format: ArchiveFormat, limits: ArchiveLimits) -> Optional[ValidationResult]:
    """Open the archive's directory without extracting any member."""
    try:
        entries = _list_entries(data, archive_format)
    except (zipfile.BadZipFile, rarfile.Error, EOFError, OSError, ValueError) as e:
        return ValidationResult.fail(
            "CorruptOrSpoofed",
            f"Corrupt or invalid {archive_format.value.upper()} archive: {e}",
        )

    if not entries:
        return ValidationResult.fail("Empty", f"The {archive_format.value.upper()} archive is empty")

    if len(entries) > limits.max_entries:
        return ValidationResult.fail(
            "TooManyEntries",
            f"The archive contains too many files ({len(entries):,}). Maximum: {limits.max_entries:,}",
        )

    total_uncompressed = sum(size for size, _ in entries)
    total_compressed = sum(compressed for _, compressed in entries)
    if total_uncompressed > limits.max_total_uncompressed_bytes:
        return ValidationResult.fail(
            "TooLarge",
            f"The archive expands to {_mb(total_uncompressed)}, "
            f"above the {_mb(limits.max_total_uncompressed_bytes)} limit",
        )
    ratio = total_uncompressed / max(1, total_compressed)
    if ratio > limits.max_compression_ratio:
        return ValidationResult.fail(
            "TooLarge",
            f"Suspicious compression ratio ({ratio:.0f}:1); refusing to extract",
        )
    return None


def validate_archive(
    data: bytes,
    filename: Optional[str] = None,
    limits: Optional[ArchiveLimits] = None,
) -> ValidationResult:
    """
    Validate an uploaded archive before extraction.

    Args:
        data: Raw archive bytes
        filename: Declared filename. When omitted the extension check is
            skipped and the format is taken from the signature alone.
            A declared but disallowed extension fails as UnsupportedExtension
            before the signature is read; any other bad signature fails as
            CorruptOrSpoofed.
        limits: Archive limits (defaults to the environment-derived ones)

    Returns:
        ValidationResult; on success `archive_format` tells the extractor
        which strategy to use.
    """
    limits = limits or get_archive_limits()

    failure = check_size(data, limits)
    if failure:
        return failure

    candidates = allowed_formats(limits)
    if filename:
        failure, declared = check_extension(filename, limits)
        if failure:
            return failure
        candidates = [declared]

    failure, archive_format = check_signature(data, candidates)
    if failure:
        return failure

    failure = check_structure(data, archive_format, limits)
    if failure:
        return failure

    return ValidationResult.ok(archive_format)


def sanitize_filename(filename: str) -> str:
    """Replace unsafe characters, collapse dot runs and cap the length."""
    cleaned = re.sub(r"[^a-zA-Z0-9._-]", "_", filename or "")
    cleaned = re.sub(r"\.{2,}", ".", cleaned)
    cleaned = cleaned.lstrip(".")
    return cleaned[:255]


def is_path_traversal(path: str) -> bool:
    """True when a storage path contains `..`, `//` or `~/` sequences."""
    return any(pattern in path for pattern in ("..", "//", "~/")) or path.startswith("/")
