"""
Translation queue manager.
Admits queued dialogs by priority and runs up to ``max_concurrent`` of them
at once, one worker thread per active job.
"""

import itertools
import logging
import threading
from typing import Callable, Optional

from voiceqc.core.constants import (
    JobStatus, ProgressStage, MAX_CONCURRENT, SOURCE_LANGUAGE,
)
from voiceqc.core.gateways import PersistenceGateway, TranslationGateway
from voiceqc.core.job_runner import JobRunner, RunOutcome
from voiceqc.core.key_pool import ProviderKeyPool
from voiceqc.core.models_sqlite import QueueItem
from voiceqc.core.progress import ProgressCallback, ProgressReporter

logger = logging.getLogger(__name__)


class TranslationQueue:
    """
    Priority queue with a bounded active set.

    The queued list and the active set are guarded by one condition, so a
    dialog can never be both queued and active, and admission never goes
    past ``max_concurrent``.  Every finished runner frees its slot and
    drains again, so the queue never idles while work and a slot exist.

    ``dequeue`` only removes waiting work.  Running jobs are cancelled
    only by ``stop(cancel_active=True)``.
    """

    def __init__(self, store: PersistenceGateway,
                 translator: TranslationGateway,
                 reporter: ProgressReporter,
                 key_pool: ProviderKeyPool | None = None,
                 max_concurrent: int = MAX_CONCURRENT,
                 source_language: str = SOURCE_LANGUAGE,
                 runner_factory: Optional[Callable[[str, threading.Event], JobRunner]] = None):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.store = store
        self.translator = translator
        self.reporter = reporter
        self.key_pool = key_pool
        self.max_concurrent = max_concurrent
        self.source_language = source_language
        self._runner_factory = runner_factory or self._default_runner

        self._cond = threading.Condition()
        self._queued: list[QueueItem] = []
        self._active: dict[str, threading.Thread] = {}
        self._seq = itertools.count()
        self._running = True
        self._cancel_event = threading.Event()

        # Callbacks
        self.on_job_finished: Optional[Callable[[str, str], None]] = None

    def _default_runner(self, job_id: str, cancel_event: threading.Event) -> JobRunner:
        return JobRunner(job_id, self.store, self.translator, self.reporter,
                         key_pool=self.key_pool,
                         source_language=self.source_language,
                         cancel_event=cancel_event)

    # ── Queue management ──────────────────────────────────────────────

    def enqueue(self, job_id: str, priority: int = 0) -> bool:
        """Queue a dialog. Returns False if it is already queued or active."""
        with self._cond:
            if job_id in self._active or self._find(job_id) is not None:
                logger.debug("Dialog %s already queued or active; ignoring", job_id)
                return False
            item = QueueItem(job_id=job_id, priority=priority, seq=next(self._seq))
            self._queued.append(item)
            self._queued.sort(key=lambda i: i.sort_key)
            position = self._queued.index(item) + 1

        logger.info("Queued dialog %s (priority %d, position %d)", job_id, priority, position)
        self.reporter.report(job_id, ProgressStage.QUEUED, 0, f"Queued at position {position}")
        self._drain()
        return True

    def dequeue(self, job_id: str) -> bool:
        """Remove a waiting dialog. An active dialog keeps running."""
        with self._cond:
            item = self._find(job_id)
            if item is None:
                return False
            self._queued.remove(item)
            self._cond.notify_all()
        logger.info("Removed dialog %s from queue", job_id)
        return True

    def clear_queue(self) -> int:
        """Remove all waiting dialogs. Returns how many were removed."""
        with self._cond:
            removed = len(self._queued)
            self._queued.clear()
            self._cond.notify_all()
        if removed:
            logger.info("Cleared %d queued dialog(s)", removed)
        return removed

    def is_queued(self, job_id: str) -> bool:
        with self._cond:
            return self._find(job_id) is not None

    def is_active(self, job_id: str) -> bool:
        with self._cond:
            return job_id in self._active

    def is_in_queue(self, job_id: str) -> bool:
        with self._cond:
            return job_id in self._active or self._find(job_id) is not None

    def queue_position(self, job_id: str) -> int:
        """1-based position among waiting dialogs, 0 if not waiting."""
        with self._cond:
            for index, item in enumerate(self._queued):
                if item.job_id == job_id:
                    return index + 1
        return 0

    def queue_status(self) -> dict:
        with self._cond:
            queued = len(self._queued)
            active = len(self._active)
        return {
            'queue_length': queued,
            'active_count': active,
            'total_active': queued + active,
        }

    def active_jobs(self) -> list[str]:
        with self._cond:
            return list(self._active)

    def _find(self, job_id: str) -> Optional[QueueItem]:
        for item in self._queued:
            if item.job_id == job_id:
                return item
        return None

    # ── Progress subscription ─────────────────────────────────────────

    def subscribe(self, job_id: str, callback: ProgressCallback):
        self.reporter.set_callback(job_id, callback)

    def unsubscribe(self, job_id: str):
        self.reporter.remove_callback(job_id)

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self):
        """Resume admission after ``stop``."""
        with self._cond:
            if self._running:
                return
            self._running = True
            if self._cancel_event.is_set():
                # Runners still draining out keep the old, set event
                self._cancel_event = threading.Event()
        logger.info("Translation queue started")
        self._drain()

    def stop(self, wait: bool = True, cancel_active: bool = False,
             timeout: float | None = None):
        """
        Stop admitting new work.  Queued dialogs stay queued.
        With ``cancel_active`` running jobs abort at their next chunk
        boundary and are marked failed.
        """
        with self._cond:
            self._running = False
            threads = list(self._active.values())
            if cancel_active:
                self._cancel_event.set()
        logger.info("Translation queue stopping (%d active, cancel=%s)",
                    len(threads), cancel_active)
        if wait:
            for thread in threads:
                thread.join(timeout)

    def is_running(self) -> bool:
        with self._cond:
            return self._running

    def wait_idle(self, timeout: float | None = None) -> bool:
        """
        Block until nothing is active and nothing admissible is waiting.
        Returns False on timeout.
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._active and (not self._queued or not self._running),
                timeout,
            )

    # ── Worker threads ────────────────────────────────────────────────

    def _drain(self):
        with self._cond:
            while self._running and self._queued and len(self._active) < self.max_concurrent:
                item = self._queued.pop(0)
                item.state = JobStatus.ACTIVE
                thread = threading.Thread(
                    target=self._run_job,
                    args=(item.job_id, self._cancel_event),
                    name=f"translate-{item.job_id}",
                    daemon=True,
                )
                self._active[item.job_id] = thread
                logger.info("Admitted dialog %s (%d/%d active)",
                            item.job_id, len(self._active), self.max_concurrent)
                thread.start()

    def _run_job(self, job_id: str, cancel_event: threading.Event):
        outcome = RunOutcome.FAILED
        try:
            runner = self._runner_factory(job_id, cancel_event)
            outcome = runner.run()
        except Exception as e:
            logger.error("Worker for dialog %s crashed: %s", job_id, e, exc_info=True)
        finally:
            self._notify_finished(job_id, outcome)
            with self._cond:
                self._active.pop(job_id, None)
                self._cond.notify_all()
            self._drain()

    def _notify_finished(self, job_id: str, outcome: str):
        logger.info("Dialog %s finished: %s", job_id, outcome)
        if self.on_job_finished:
            try:
                self.on_job_finished(job_id, outcome)
            except Exception as e:
                logger.error("on_job_finished raised for dialog %s: %s", job_id, e, exc_info=True)
