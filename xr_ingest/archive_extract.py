"""
Archive extraction into memory.

Two strategies (ZIP, RAR) dispatched on the format the validator detected;
no content sniffing happens here. Entry bytes are returned untouched and
entry names are reduced to a safe relative POSIX path, so `..`, absolute
paths and drive letters are never honored.
"""

import io
import logging
import zipfile
import zlib
from pathlib import PurePosixPath
from typing import Callable, Dict, Optional

import rarfile

from xr_ingest.errors import ExtractionFailed
from xr_ingest.schema import ArchiveFormat

logger = logging.getLogger(__name__)

# Operating-system clutter that is never part of a KeyShot export
METADATA_DIRS = {"__MACOSX"}
METADATA_FILES = {".ds_store", "thumbs.db", "desktop.ini"}


def normalize_entry_name(name: str) -> Optional[str]:
    """
    Reduce an archive entry name to a safe relative path.

    Returns None for names that end up empty (e.g. "../" or "/").
    """
    parts = []
    for part in name.replace("\\", "/").split("/"):
        if part in ("", ".", ".."):
            continue
        if not parts and len(part) == 2 and part[1] == ":":
            continue  # drive letter
        parts.append(part)
    if not parts:
        return None
    return "/".join(parts)


def is_metadata_entry(path: str) -> bool:
    parts = PurePosixPath(path).parts
    basename = parts[-1]
    return (
        any(part in METADATA_DIRS for part in parts[:-1])
        or basename.startswith("._")
        or basename.lower() in METADATA_FILES
    )


def _store(files: Dict[str, bytes], raw_name: str, content: bytes) -> None:
    safe_name = normalize_entry_name(raw_name)
    if safe_name is None or is_metadata_entry(safe_name):
        return
    if safe_name != raw_name.replace("\\", "/"):
        logger.warning(f"⚠️ Normalized archive entry name {raw_name!r} -> {safe_name!r}")
    if safe_name in files:
        logger.warning(f"⚠️ Duplicate archive entry {safe_name!r}; keeping the first one")
        return
    files[safe_name] = content


def extract_zip(data: bytes) -> Dict[str, bytes]:
    files: Dict[str, bytes] = {}
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                if info.flag_bits & 0x1:
                    raise ExtractionFailed(f"Encrypted entry {info.filename!r} is not supported")
                _store(files, info.filename, archive.read(info))
    except ExtractionFailed:
        raise
    except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, RuntimeError, EOFError, OSError, ValueError) as e:
        raise ExtractionFailed(f"Could not extract ZIP archive: {e}") from e
    return files


def extract_rar(data: bytes) -> Dict[str, bytes]:
    """RAR support depends on an unrar/bsdtar backend being installed."""
    files: Dict[str, bytes] = {}
    try:
        with rarfile.RarFile(io.BytesIO(data)) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                if info.needs_password():
                    raise ExtractionFailed(f"Encrypted entry {info.filename!r} is not supported")
                _store(files, info.filename, archive.read(info))
    except ExtractionFailed:
        raise
    except (rarfile.Error, EOFError, OSError, ValueError) as e:
        logger.error(f"❌ RAR extraction failed: {e}")
        raise ExtractionFailed(
            "Could not process the RAR archive. Please convert it to ZIP and try again; "
            "ZIP archives are more compatible and faster to process."
        ) from e
    return files


EXTRACTORS: Dict[ArchiveFormat, Callable[[bytes], Dict[str, bytes]]] = {
    ArchiveFormat.ZIP: extract_zip,
    ArchiveFormat.RAR: extract_rar,
}


def extract_archive(data: bytes, archive_format: ArchiveFormat) -> Dict[str, bytes]:
    """
    Decompress a validated archive into memory.

    Args:
        data: Archive bytes (already validated)
        archive_format: Strategy to use

    Returns:
        dict mapping normalized entry path -> entry bytes

    Raises:
        ExtractionFailed: on any decompression error; nothing partial is returned
    """
    try:
        archive_format = ArchiveFormat(archive_format)
    except ValueError as e:
        raise ExtractionFailed(f"Unsupported archive format: {archive_format}") from e
    extractor = EXTRACTORS.get(archive_format)
    if extractor is None:
        raise ExtractionFailed(f"Unsupported archive format: {archive_format.value}")
    files = extractor(data)
    logger.info(f"📦 Extracted {len(files)} entries from {archive_format.value.upper()} archive")
    return files
