"""Shared pytest fixtures for the XR ingestion gateway: in-memory archives and storage fakes."""

import io
import json
import struct
import zipfile

import pytest

from xr_ingest.errors import StorageDownloadFailed

DESCRIPTOR_HTML = """<html><head><script>
var xRows = 2;
var xCols = 3;
var speed = 0.75;
var loop = true;
var title = "Chair";
var hotspots = {};
</script></head><body></body></html>
"""


def build_zip(files, compression=zipfile.ZIP_STORED) -> bytes:
    """Build a ZIP archive in memory from a name -> bytes/str mapping."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression) as archive:
        for name, content in files.items():
            if isinstance(content, str):
                content = content.encode("utf-8")
            archive.writestr(name, content)
    return buffer.getvalue()


def corrupt_first_member(data: bytes) -> bytes:
    """Break the deflate stream of the first member while leaving every header intact."""
    corrupted = bytearray(data)
    name_length, extra_length = struct.unpack("<HH", corrupted[26:30])
    # BFINAL=1 with the reserved block type 11
    corrupted[30 + name_length + extra_length] = 0xFF
    return bytes(corrupted)


def tile_bytes(name: str, size: int = 256) -> bytes:
    """Incompressible-enough fake PNG payload, unique per tile name."""
    seed = name.encode("utf-8")
    body = bytes((i * 31 + sum(seed)) % 251 for i in range(size))
    return b"\x89PNG\r\n\x1a\n" + seed + body


def xr_export(rows: int = 2, cols: int = 3, descriptor: str = DESCRIPTOR_HTML, extras=None) -> dict:
    """Files of a typical KeyShot XR export: one descriptor, a tile grid and viewer chrome."""
    files = {"Chair/Chair.html": descriptor}
    for row in range(rows):
        for col in range(cols):
            name = f"Chair/files/{row}_{col}.png"
            files[name] = tile_bytes(name)
    files["Chair/files/ks_logo.png"] = tile_bytes("logo")
    files["Chair/files/xr_cursor.png"] = tile_bytes("cursor")
    files["Chair/instructions.html"] = "<html>Drag to rotate</html>"
    if extras:
        files.update(extras)
    return files


class FakeStorage:
    """Object storage double: records uploads, fails paths listed in `fail_paths` a number of times."""

    def __init__(self, fail_paths=None, base_url="https://cdn.example.com/storage/v1/object/public/files"):
        self.objects = {}
        self.upload_calls = []
        self.removed = []
        self.fail_paths = dict(fail_paths or {})
        self.base_url = base_url

    def upload(self, path, data, content_type=None):
        self.upload_calls.append(path)
        remaining = self.fail_paths.get(path, 0)
        if remaining:
            self.fail_paths[path] = remaining - 1
            return {"ok": False, "path": path, "error": "503 Service Unavailable"}
        self.objects[path] = data
        return {"ok": True, "path": path}

    def get_public_url(self, path):
        return f"{self.base_url}/{path}"

    def download(self, path):
        if path not in self.objects:
            raise StorageDownloadFailed(f"File not found in storage: {path}")
        return self.objects[path]

    def remove(self, paths):
        self.removed.extend(paths)
        for path in paths:
            self.objects.pop(path, None)
        return True


class FakeProductStore:
    def __init__(self, ok=True, error=None):
        self.ok = ok
        self.error = error
        self.updates = []

    def update(self, product_id, updates):
        self.updates.append((product_id, updates))
        return self.ok, self.error


class RecordingChannel:
    """Channel double collecting decoded event payloads."""

    def __init__(self):
        self.frames = []
        self.close_count = 0

    def write(self, frame):
        if self.close_count:
            raise RuntimeError("write after close")
        self.frames.append(frame)

    def close(self):
        self.close_count += 1

    @property
    def events(self):
        return [json.loads(frame[len("data: "):]) for frame in self.frames]


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def fake_products():
    return FakeProductStore()


@pytest.fixture
def recording_channel():
    return RecordingChannel()


@pytest.fixture
def no_sleep():
    """Injected in place of time.sleep; records requested delays."""
    delays = []
    return delays.append, delays
