#!/usr/bin/env python3
"""
Run the XR ingestion pipeline for a local archive.

Each progress event is printed to stdout as one line of JSON. With --dry-run
the archive is only validated, extracted and parsed; nothing is uploaded.

Usage:
    python scripts/ingest_archive.py path/to/product.zip --product-id P1 --admin-id U1
    python scripts/ingest_archive.py path/to/product.zip --dry-run
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from auth.supabase_client import get_supabase_client  # noqa: E402
from xr_ingest.archive_extract import extract_archive  # noqa: E402
from xr_ingest.archive_validate import validate_archive  # noqa: E402
from xr_ingest.batch_upload import calculate_total_size_mb, sort_tiles  # noqa: E402
from xr_ingest.descriptor import parse_archive_entries  # noqa: E402
from xr_ingest.errors import IngestError  # noqa: E402
from xr_ingest.orchestrator import IngestionOrchestrator  # noqa: E402
from xr_ingest.progress_stream import ProgressStream  # noqa: E402
from xr_ingest.schema import IngestState, RawArchive  # noqa: E402
from xr_ingest.settings import DIRECT_UPLOAD_BATCH_SIZE, get_batch_config  # noqa: E402
from xr_ingest.supabase_db import SupabaseProductStore  # noqa: E402
from xr_ingest.supabase_storage import SupabaseStorage  # noqa: E402


class StdoutChannel:
    """Event channel that prints the JSON body of each frame."""

    def __init__(self, out=sys.stdout):
        self.out = out

    def write(self, frame: str) -> None:
        body = frame[len("data: "):] if frame.startswith("data: ") else frame
        self.out.write(body.strip() + "\n")
        self.out.flush()

    def close(self) -> None:
        self.out.flush()


def dry_run(archive: RawArchive) -> int:
    try:
        validation = validate_archive(archive.data, archive.filename)
        validation.raise_for_error()
        parsed = parse_archive_entries(extract_archive(archive.data, validation.archive_format))
    except IngestError as e:
        print(json.dumps({"type": "error", "kind": e.kind, "message": e.message}))
        return 1

    print(json.dumps({
        "descriptor": parsed.descriptor_name,
        "constants": parsed.constants,
        "tiles": [name for name, _ in sort_tiles(parsed.tiles)],
        "totalSizeMB": round(calculate_total_size_mb(parsed.tiles), 2),
    }, indent=2, default=str))
    return 0 if parsed.tiles else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Ingest a KeyShot XR archive into a product")
    parser.add_argument("archive", help="Path to the .zip (or .rar) archive")
    parser.add_argument("--product-id", help="products.product_id to update")
    parser.add_argument("--admin-id", help="Owner id; tiles go to <admin-id>/<product-id>/")
    parser.add_argument("--batch-size", type=int, default=DIRECT_UPLOAD_BATCH_SIZE)
    parser.add_argument("--dry-run", action="store_true", help="Validate and parse only")
    args = parser.parse_args()

    load_dotenv(PROJECT_ROOT / ".env")
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s", stream=sys.stderr)

    path = Path(args.archive)
    if not path.is_file():
        print(f"❌ Archive not found: {path}", file=sys.stderr)
        return 1
    archive = RawArchive(filename=path.name, data=path.read_bytes())

    if args.dry_run:
        return dry_run(archive)

    if not args.product_id or not args.admin_id:
        parser.error("--product-id and --admin-id are required unless --dry-run is given")

    client = get_supabase_client(service_role=True)
    if client is None:
        print("❌ Supabase is not configured (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY)", file=sys.stderr)
        return 1

    orchestrator = IngestionOrchestrator(
        storage=SupabaseStorage(client),
        products=SupabaseProductStore(client),
        stream=ProgressStream(StdoutChannel()),
        batch_config=get_batch_config(args.batch_size),
    )
    outcome = orchestrator.run(archive, args.product_id, args.admin_id)
    return 0 if outcome.state == IngestState.COMPLETE else 1


if __name__ == "__main__":
    sys.exit(main())
