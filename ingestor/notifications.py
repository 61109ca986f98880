"""Fire-and-forget "dataset metadata changed" notifications."""

from __future__ import annotations

import queue
import threading
from typing import Callable

from ingestor.logging_utils import get_logger
from ingestor.models import ReportDatasetMetadata

logger = get_logger(__name__)

Subscriber = Callable[[ReportDatasetMetadata], None]

_STOP = object()


class MetadataNotifier:
    """
    Hand metadata rows to subscribers on a background thread.

    ``publish`` never blocks: when the bounded queue is full the event is
    dropped and counted. Subscriber errors are logged and swallowed.
    """

    def __init__(self, max_queue_size: int = 1000):
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.dropped = 0
        self.delivered = 0

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)
            if self._thread is None:
                self._thread = threading.Thread(target=self._dispatch, name="metadata-notifier", daemon=True)
                self._thread.start()

    def publish(self, row: ReportDatasetMetadata | None) -> None:
        if row is None:
            return
        with self._lock:
            if not self._subscribers:
                return
        try:
            self._queue.put_nowait(row)
        except queue.Full:
            self.dropped += 1
            logger.warning("Notification queue full; dropping metadata update", extra={"dropped": self.dropped})

    def _dispatch(self) -> None:
        while True:
            row = self._queue.get()
            try:
                if row is _STOP:
                    return
                with self._lock:
                    subscribers = list(self._subscribers)
                for callback in subscribers:
                    try:
                        callback(row)
                        self.delivered += 1
                    except Exception as e:
                        logger.error("Metadata subscriber failed", extra={"error": str(e)}, exc_info=True)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until queued notifications are delivered."""
        if self._thread is not None:
            self._queue.join()

    def close(self) -> None:
        if self._thread is None:
            return
        try:
            self._queue.put(_STOP, timeout=5)
        except queue.Full:
            logger.warning("Notification queue still full at shutdown; abandoning pending updates")
            return
        self._thread.join(timeout=5)
        self._thread = None
