"""
Flask application for the XR ingestion gateway.
Receives KeyShot XR archives for a product and streams ingestion progress back
to the admin UI as Server-Sent Events.
"""

from flask import Flask, request, session, jsonify, Response
from werkzeug.exceptions import RequestEntityTooLarge
import os
import math
import logging
import threading
from datetime import datetime, timezone
from typing import Optional, Tuple, Dict, Any, Callable

from dotenv import load_dotenv

# Load environment variables from .env file (for local development)
load_dotenv()

from auth.supabase_client import get_supabase_client, get_user_id
from xr_ingest.archive_validate import is_path_traversal
from xr_ingest.errors import InvalidRequest, RateLimited
from xr_ingest.orchestrator import IngestionOrchestrator
from xr_ingest.progress_stream import EventChannel, ProgressStream, SSE_HEADERS
from xr_ingest.rate_limit import RateLimiter, RateLimitResult, get_client_ip, get_rate_limit_key
from xr_ingest.schema import RawArchive
from xr_ingest.settings import (
    DIRECT_UPLOAD_BATCH_SIZE,
    PREUPLOADED_BATCH_SIZE,
    RATE_LIMIT_SWEEP_SECONDS,
    UPLOAD_RATE_LIMIT,
    get_archive_limits,
    get_batch_config,
)
from xr_ingest.supabase_db import SupabaseProductStore
from xr_ingest.supabase_storage import SupabaseStorage

app = Flask(__name__)
app.secret_key = os.environ.get("FLASK_SECRET_KEY", os.urandom(32))
app.logger.setLevel(logging.INFO)

# Hard cap on the request body; the validator reports archives over the
# configured limit as TooLarge inside the stream, this only bounds memory.
app.config["MAX_CONTENT_LENGTH"] = get_archive_limits().max_archive_bytes + 10 * 1024 * 1024

upload_rate_limiter = RateLimiter()
upload_rate_limiter.start_sweeper(RATE_LIMIT_SWEEP_SECONDS)


def build_storage(access_token: Optional[str]) -> SupabaseStorage:
    return SupabaseStorage.from_env(access_token=access_token)


def build_product_store(access_token: Optional[str]) -> SupabaseProductStore:
    return SupabaseProductStore.from_env(access_token=access_token)


def get_access_token() -> Optional[str]:
    """Bearer token from the Authorization header, else the Flask session."""
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
        if token:
            return token
    return session.get("supabase_access_token")


def authenticate() -> Tuple[Optional[str], Optional[str]]:
    """
    Resolve the caller through Supabase auth.

    Returns:
        (user_id, access_token); user_id is None when unauthenticated
    """
    access_token = get_access_token()
    if not access_token:
        return None, None
    client = get_supabase_client(access_token=access_token)
    if client is None:
        return None, access_token
    return get_user_id(client, access_token), access_token


def validate_required_params(values: Dict[str, Any], required: Tuple[str, ...]) -> Optional[InvalidRequest]:
    missing = [name for name in required if not values.get(name)]
    if missing:
        return InvalidRequest(f"Missing required parameters: {', '.join(missing)}")
    return None


def check_upload_rate_limit() -> RateLimitResult:
    client_ip = get_client_ip(request.headers, request.remote_addr)
    return upload_rate_limiter.check(get_rate_limit_key(client_ip, prefix="upload"), UPLOAD_RATE_LIMIT)


def _reset_iso(result: RateLimitResult) -> str:
    return datetime.fromtimestamp(result.reset_time, tz=timezone.utc).isoformat()


def apply_rate_limit_headers(response: Response, result: RateLimitResult) -> Response:
    response.headers["X-RateLimit-Limit"] = str(result.limit)
    response.headers["X-RateLimit-Remaining"] = str(result.remaining)
    response.headers["X-RateLimit-Reset"] = _reset_iso(result)
    return response


def rate_limited_response(result: RateLimitResult) -> Response:
    retry_after = max(0, math.ceil(result.retry_after(upload_rate_limiter.now())))
    error = RateLimited("Too many upload requests, please try again later", retry_after)
    response = jsonify({
        "error": error.message,
        "retryAfter": error.retry_after,
        "limit": result.limit,
        "remaining": result.remaining,
        "reset": _reset_iso(result),
    })
    response.status_code = 429
    response.headers["Retry-After"] = str(retry_after)
    return apply_rate_limit_headers(response, result)


def stream_ingestion(
    run: Callable[[IngestionOrchestrator], Any],
    access_token: Optional[str],
    batch_size: int,
    rate_limit: RateLimitResult,
    request_error: Optional[InvalidRequest] = None,
) -> Response:
    """
    Open the event stream and run the pipeline on a worker thread.

    The worker owns the stream: it writes every event and closes it. A client
    disconnect only stops the response iterator; the worker carries on.
    """
    channel = EventChannel()
    stream = ProgressStream(channel)

    if request_error is not None:
        app.logger.warning(f"⚠️ Rejected ingestion request: {request_error.message}")
        stream.send_error(request_error.message, request_error)
        stream.close()
    else:
        def _worker():
            try:
                orchestrator = IngestionOrchestrator(
                    storage=build_storage(access_token),
                    products=build_product_store(access_token),
                    stream=stream,
                    batch_config=get_batch_config(batch_size),
                )
            except Exception as e:
                app.logger.error(f"❌ Could not initialize ingestion: {e}")
                stream.send_error("Storage is not configured on the server", e)
                stream.close()
                return
            outcome = run(orchestrator)
            app.logger.info(f"📦 Ingestion finished: {outcome.state.value}")

        threading.Thread(target=_worker, name="xr-ingest", daemon=True).start()

    response = Response(channel, mimetype="text/event-stream", headers=SSE_HEADERS)
    return apply_rate_limit_headers(response, rate_limit)


@app.errorhandler(RequestEntityTooLarge)
def request_too_large(e):
    return jsonify({"error": "Archive exceeds the maximum upload size"}), 413


@app.route("/health")
def health():
    return jsonify({"status": "ok"})


@app.route("/api/upload", methods=["POST"])
def upload_archive():
    """Direct upload: multipart body with file, product_id and admin_id."""
    limit = check_upload_rate_limit()
    if not limit.allowed:
        app.logger.warning(f"⚠️ Upload rate limit exceeded for {get_client_ip(request.headers, request.remote_addr)}")
        return rate_limited_response(limit)

    user_id, access_token = authenticate()
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401

    product_id = request.form.get("product_id", "")
    admin_id = request.form.get("admin_id", "")
    archive = None
    error = None

    if not (request.content_type or "").startswith("multipart/form-data"):
        error = InvalidRequest("Content-Type must be multipart/form-data")
    elif "file" not in request.files or not request.files["file"].filename:
        error = InvalidRequest("No file uploaded")
    else:
        error = validate_required_params({"product_id": product_id, "admin_id": admin_id}, ("product_id", "admin_id"))
        if error is None and admin_id != user_id:
            error = InvalidRequest("admin_id does not match the authenticated user")
        if error is None:
            file = request.files["file"]
            archive = RawArchive(filename=file.filename, data=file.read())

    return stream_ingestion(
        lambda orchestrator: orchestrator.run(archive, product_id, admin_id),
        access_token,
        DIRECT_UPLOAD_BATCH_SIZE,
        limit,
        error,
    )


@app.route("/api/upload/process", methods=["POST"])
def process_uploaded_archive():
    """Pre-uploaded archive: JSON body with zipPath (inside the bucket), product_id and admin_id."""
    limit = check_upload_rate_limit()
    if not limit.allowed:
        app.logger.warning(f"⚠️ Upload rate limit exceeded for {get_client_ip(request.headers, request.remote_addr)}")
        return rate_limited_response(limit)

    user_id, access_token = authenticate()
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401

    payload = request.get_json(silent=True) or {}
    zip_path = str(payload.get("zipPath") or "")
    product_id = str(payload.get("product_id") or "")
    admin_id = str(payload.get("admin_id") or "")

    error = validate_required_params(
        {"zipPath": zip_path, "product_id": product_id, "admin_id": admin_id},
        ("zipPath", "product_id", "admin_id"),
    )
    if error is None and admin_id != user_id:
        error = InvalidRequest("admin_id does not match the authenticated user")
    if error is None and (is_path_traversal(zip_path) or not zip_path.startswith(f"temp/{admin_id}/")):
        error = InvalidRequest("Invalid archive path")

    return stream_ingestion(
        lambda orchestrator: orchestrator.run_from_storage(zip_path, product_id, admin_id, cleanup_source=True),
        access_token,
        PREUPLOADED_BATCH_SIZE,
        limit,
        error,
    )


if __name__ == "__main__":
    # Render sets PORT environment variable, fallback to FLASK_PORT or 5000
    port = int(os.environ.get("PORT", os.environ.get("FLASK_PORT", 5000)))
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
