"""
KeyShot XR descriptor parsing.

A KeyShot XR export is one HTML page that embeds the viewer configuration as
plain `var NAME = VALUE;` statements, next to hundreds of `{row}_{col}.png`
tiles and a handful of UI graphics. The scan is deliberately loose: the HTML
is produced by a third-party exporter, so any statement that does not look
like a simple assignment is skipped rather than rejected.
"""

import logging
import re
from pathlib import PurePosixPath
from typing import Any, Dict, List

from xr_ingest.errors import NoDescriptorFound
from xr_ingest.schema import ParsedArchive

logger = logging.getLogger(__name__)

DESCRIPTOR_EXTENSION = ".html"
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg")

# Secondary HTML pages shipped with every export
DESCRIPTOR_DENYLIST = ("instruction",)

# Viewer chrome bundled with the export; never part of the frame set
NON_CONTENT_PREFIXES = (
    "gofixedsizeicon",
    "gofullscreenicon",
    "80x80",
    "loading",
    "ks_logo",
)
NON_CONTENT_SUBSTRINGS = ("xr_cursor", "xr_hand") + DESCRIPTOR_DENYLIST

ASSIGNMENT_RE = re.compile(r"var\s+([A-Za-z_$][\w$]*)\s*=\s*([^;]+);")
NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")


def _basename(path: str) -> str:
    return PurePosixPath(path).name


def parse_value(raw: str) -> Any:
    """
    Convert one assignment right-hand side into a Python value.

    Quoted strings are unquoted, true/false become booleans, numeric literals
    become int/float, `{}` becomes an empty dict; anything else stays a string.
    """
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    if value in ("true", "false"):
        return value == "true"
    if NUMBER_RE.match(value):
        if re.fullmatch(r"[+-]?\d+", value):
            return int(value)
        return float(value)
    if value == "{}":
        return {}
    return value


def parse_descriptor_text(html_text: str) -> Dict[str, Any]:
    """Collect every `var NAME = VALUE;` on each line; later assignments win."""
    constants: Dict[str, Any] = {}
    for line in html_text.splitlines():
        for match in ASSIGNMENT_RE.finditer(line):
            constants[match.group(1)] = parse_value(match.group(2))
    return constants


def is_descriptor_name(path: str) -> bool:
    name = _basename(path).lower()
    return name.endswith(DESCRIPTOR_EXTENSION) and not any(word in name for word in DESCRIPTOR_DENYLIST)


def is_tile_name(path: str) -> bool:
    name = _basename(path).lower()
    if not name.endswith(IMAGE_EXTENSIONS):
        return False
    if name.startswith(NON_CONTENT_PREFIXES):
        return False
    return not any(word in name for word in NON_CONTENT_SUBSTRINGS)


def find_descriptor(entries: Dict[str, bytes]) -> str:
    """Return the single primary descriptor path, or raise NoDescriptorFound."""
    candidates: List[str] = [path for path in entries if is_descriptor_name(path)]
    if not candidates:
        raise NoDescriptorFound("No main HTML file was found in the archive")
    if len(candidates) > 1:
        names = ", ".join(sorted(_basename(path) for path in candidates))
        raise NoDescriptorFound(f"Found {len(candidates)} candidate HTML files ({names}); expected exactly one")
    return candidates[0]


def parse_archive_entries(entries: Dict[str, bytes]) -> ParsedArchive:
    """
    Split extracted entries into viewer configuration and image tiles.

    Args:
        entries: normalized entry path -> bytes, as produced by the extractor

    Returns:
        ParsedArchive with the descriptor constants and tiles keyed by the
        original (case-preserved) basename

    Raises:
        NoDescriptorFound: zero or several primary HTML files
    """
    descriptor_path = find_descriptor(entries)
    html_text = entries[descriptor_path].decode("utf-8", errors="replace")
    constants = parse_descriptor_text(html_text)
    if not constants:
        logger.warning(f"⚠️ Descriptor {descriptor_path!r} declared no variables")

    tiles: Dict[str, bytes] = {}
    for path, content in entries.items():
        if not is_tile_name(path):
            continue
        name = _basename(path)
        if name in tiles:
            logger.warning(f"⚠️ Tile {name!r} appears more than once; keeping the first copy")
            continue
        tiles[name] = content

    logger.info(f"🔍 Descriptor {descriptor_path!r}: {len(constants)} constants, {len(tiles)} tiles")
    return ParsedArchive(constants=constants, tiles=tiles, descriptor_name=_basename(descriptor_path))
