"""
Per-job translation state machine.

    FETCHING → TRANSLATING_TEXT → TRANSLATING_SPEAKERS → COMPLETED
    (any state) → FAILED

A runner never raises: every error ends in FAILED with the message
persisted on the job, so the queue can always free the slot and move on.
"""

import logging
from threading import Event
from typing import Optional

from voiceqc.core.constants import (
    JobStatus, ProgressStage, Provider, SOURCE_LANGUAGE, MAX_ERROR_MESSAGE_LEN,
)
from voiceqc.core.error_codes import JobError, NoActiveCredentialError, PersistenceError
from voiceqc.core.gateways import PersistenceGateway, TranslationGateway
from voiceqc.core.key_pool import ProviderKeyPool
from voiceqc.core.models_sqlite import TranslationResult
from voiceqc.core.progress import ProgressReporter

logger = logging.getLogger(__name__)


class RunnerState:
    IDLE = "idle"
    FETCHING = "fetching"
    TRANSLATING_TEXT = "translating_text"
    TRANSLATING_SPEAKERS = "translating_speakers"
    COMPLETED = "completed"
    FAILED = "failed"


class RunOutcome:
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED_MISSING_INPUT = "skipped_missing_input"
    SKIPPED_ALREADY_DONE = "skipped_already_done"


class JobRunner:

    def __init__(self, job_id: str,
                 store: PersistenceGateway,
                 translator: TranslationGateway,
                 reporter: ProgressReporter,
                 key_pool: ProviderKeyPool | None = None,
                 source_language: str = SOURCE_LANGUAGE,
                 cancel_event: Optional[Event] = None,
                 key_provider: str = Provider.LIBRETRANSLATE):
        self.job_id = job_id
        self.store = store
        self.translator = translator
        self.reporter = reporter
        self.key_pool = key_pool
        self.source_language = source_language
        self.cancel_event = cancel_event
        self.key_provider = key_provider
        self.state = RunnerState.IDLE
        self.error: str | None = None
        self._last_progress = 0

    def run(self) -> str:
        """Run the job to a terminal outcome. Never raises."""
        try:
            return self._run()
        except JobError as e:
            logger.warning("Translation failed for dialog %s: %s", self.job_id, e)
            return self._fail(e.message)
        except Exception as e:
            logger.error("Unexpected error translating dialog %s: %s",
                         self.job_id, e, exc_info=True)
            return self._fail(f"Unexpected error: {e}")

    def _transition(self, state: str):
        logger.debug("Dialog %s: %s -> %s", self.job_id, self.state, state)
        self.state = state

    def _report(self, stage: str, progress: int, message: str):
        self._last_progress = progress
        self.reporter.report(self.job_id, stage, progress, message)

    def _run(self) -> str:
        self._transition(RunnerState.FETCHING)
        record = self.store.get_job_record(self.job_id)

        if record is None or not record.transcript or record.speaker_segments is None:
            logger.warning("Dialog %s has no transcript or speaker segments; skipping", self.job_id)
            return RunOutcome.SKIPPED_MISSING_INPUT

        if record.existing_translation is not None:
            logger.info("Dialog %s already translated; skipping", self.job_id)
            return RunOutcome.SKIPPED_ALREADY_DONE

        credential = None
        if self.key_pool is not None:
            try:
                credential = self.key_pool.select_active(self.key_provider)
            except NoActiveCredentialError:
                logger.info("Dialog %s: no %s key, using free backends only",
                            self.job_id, self.key_provider)

        self.store.mark_translation_status(self.job_id, JobStatus.ACTIVE, 0)

        # ── Full text ──
        self._transition(RunnerState.TRANSLATING_TEXT)
        self._report(ProgressStage.TRANSLATING_TEXT, 0, "Starting translation...")
        text = self.translator.translate_text(
            record.transcript, self.source_language,
            on_progress=self._phase_progress(ProgressStage.TRANSLATING_TEXT, 0),
            cancel_event=self.cancel_event,
            credential=credential,
        )

        # ── Speaker utterances ──
        self._transition(RunnerState.TRANSLATING_SPEAKERS)
        segments = self.translator.translate_segments(
            record.speaker_segments, self.source_language,
            on_progress=self._phase_progress(ProgressStage.TRANSLATING_SPEAKERS, 50),
            cancel_event=self.cancel_event,
            credential=credential,
        )

        self.store.save_translation_result(self.job_id, TranslationResult(text=text, segments=segments))
        self._transition(RunnerState.COMPLETED)
        self._report(ProgressStage.COMPLETE, 100, "Translation completed")
        logger.info("Dialog %s translated: %d chars, %d utterances",
                    self.job_id, len(text), len(segments))
        return RunOutcome.COMPLETED

    def _phase_progress(self, stage: str, stored_offset: int):
        """
        Observer for one phase.  Events carry the phase-local 0-100 value;
        the stored job progress maps text to 0-50 and speakers to 50-100.
        """
        def on_progress(progress: int, message: str):
            self._report(stage, progress, message)
            self.store.mark_translation_status(self.job_id, JobStatus.ACTIVE,
                                               stored_offset + progress // 2)
        return on_progress

    def _fail(self, message: str) -> str:
        self._transition(RunnerState.FAILED)
        self.error = message[:MAX_ERROR_MESSAGE_LEN]
        try:
            self.store.mark_failed(self.job_id, self.error)
        except PersistenceError as e:
            logger.error("Could not record failure for dialog %s: %s", self.job_id, e)
        self._report(ProgressStage.ERROR, self._last_progress, self.error)
        return RunOutcome.FAILED
