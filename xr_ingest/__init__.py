"""
KeyShot XR archive ingestion pipeline.

    validate -> extract -> parse descriptor -> upload tiles -> update product

Stages are importable on their own; the orchestrator wires them together and
reports through a ProgressStream.
"""

from xr_ingest.orchestrator import IngestionOrchestrator
from xr_ingest.progress_stream import EventChannel, ProgressStream
from xr_ingest.rate_limit import RateLimiter

__all__ = ["IngestionOrchestrator", "EventChannel", "ProgressStream", "RateLimiter"]
