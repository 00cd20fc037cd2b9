"""
Server-Sent Events progress channel.

The pipeline runs on a worker thread and writes events into an EventChannel;
the HTTP response iterates the channel and forwards each frame to the client.
Frames are `data: <json>\n\n` with a `type` of progress, error or complete.

If the client goes away the response iterator is closed, the channel is
marked disconnected and later writes fail. ProgressStream swallows those
failures (logging them) so the pipeline keeps running to completion; upload
work is not cancelled by a disconnect.
"""

import json
import logging
import queue
import threading
import traceback
from typing import Any, Dict, Iterator, Optional

from xr_ingest.errors import StreamWriteFailed
from xr_ingest.schema import EventType, UploadPhase
from xr_ingest.settings import is_development

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # disable nginx/proxy buffering
}

KEEPALIVE_FRAME = ": keep-alive\n\n"


def format_event(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


class EventChannel:
    """Thread-safe, queue-backed outbound stream for one request."""

    _CLOSE = object()

    def __init__(self, keepalive_interval: float = 15.0):
        self._queue: "queue.Queue" = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._disconnected = threading.Event()
        self.keepalive_interval = keepalive_interval

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def disconnected(self) -> bool:
        return self._disconnected.is_set()

    def write(self, frame: str) -> None:
        with self._lock:
            if self._closed:
                raise StreamWriteFailed("Stream already closed")
            if self._disconnected.is_set():
                raise StreamWriteFailed("Client disconnected")
            self._queue.put(frame)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                raise StreamWriteFailed("Stream already closed")
            self._closed = True
            self._queue.put(self._CLOSE)

    def __iter__(self) -> Iterator[str]:
        try:
            while True:
                try:
                    frame = self._queue.get(timeout=self.keepalive_interval)
                except queue.Empty:
                    yield KEEPALIVE_FRAME
                    continue
                if frame is self._CLOSE:
                    return
                yield frame
        finally:
            # Reached on normal close and when the server closes the
            # response early because the client went away.
            if not self._closed:
                logger.warning("⚠️ Client disconnected before the stream finished")
            self._disconnected.set()


class ProgressStream:
    """
    Event sink over one outbound channel (anything with write(str) and close()).

    Every method is safe to call after the client disconnected or the stream
    was closed: the write is dropped and logged, never raised.
    """

    def __init__(self, channel, development: Optional[bool] = None):
        self.channel = channel
        self.development = is_development() if development is None else development
        self.closed = False
        self.events_sent = 0

    def send(self, payload: Dict[str, Any]) -> bool:
        """Serialize and write one event. Returns False if the write was dropped."""
        try:
            self.channel.write(format_event(payload))
        except Exception as e:
            logger.warning(f"⚠️ Dropped {payload.get('type')} event: {e}")
            return False
        self.events_sent += 1
        return True

    def send_progress(self, phase: UploadPhase, message: str, extra: Optional[Dict[str, Any]] = None) -> bool:
        payload = {"type": EventType.PROGRESS.value, "phase": UploadPhase(phase).value, "message": message}
        if extra:
            payload.update(extra)
        return self.send(payload)

    def send_error(self, message: str, error: Optional[BaseException] = None) -> bool:
        payload = {"type": EventType.ERROR.value, "message": message}
        if error is not None:
            payload["kind"] = getattr(error, "kind", error.__class__.__name__)
            if self.development:
                payload["stack"] = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return self.send(payload)

    def send_complete(self, message: str, data: Dict[str, Any]) -> bool:
        payload = {"type": EventType.COMPLETE.value, "message": message}
        payload.update(data)
        return self.send(payload)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.channel.close()
        except Exception as e:
            logger.warning(f"⚠️ Error closing event stream: {e}")
