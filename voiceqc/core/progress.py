"""
Per-job progress observers.

Each job has at most one callback.  Registering a callback for one job never
touches another job's observer, so concurrently running jobs do not receive
each other's events.  Events are not queued: a job with no observer simply
drops them.
"""

import logging
import threading
from typing import Callable, Optional

from voiceqc.core.models_sqlite import ProgressEvent

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, ProgressEvent], None]


class ProgressReporter:

    def __init__(self):
        self._callbacks: dict[str, ProgressCallback] = {}
        self._lock = threading.Lock()

    def set_callback(self, job_id: str, callback: ProgressCallback):
        with self._lock:
            self._callbacks[job_id] = callback

    def remove_callback(self, job_id: str):
        with self._lock:
            self._callbacks.pop(job_id, None)

    def has_callback(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._callbacks

    def emit(self, job_id: str, event: ProgressEvent):
        with self._lock:
            callback: Optional[ProgressCallback] = self._callbacks.get(job_id)
        logger.debug("[%s] %s: %d%% - %s", job_id, event.stage, event.progress, event.message)
        if callback is None:
            return
        try:
            callback(job_id, event)
        except Exception as e:
            logger.error("Progress observer for job %s raised: %s", job_id, e, exc_info=True)

    def report(self, job_id: str, stage: str, progress: int, message: str = ""):
        self.emit(job_id, ProgressEvent(stage=stage, progress=progress, message=message))
