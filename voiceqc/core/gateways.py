"""
Contracts between the queue core and its collaborators.

The job runner only talks to storage through ``PersistenceGateway`` and to
translation providers through ``TranslationGateway``.  ``Database`` and
``FallbackTranslator`` are the concrete implementations; tests substitute
in-memory fakes.
"""

from abc import ABC, abstractmethod
from threading import Event
from typing import Callable, Optional

from voiceqc.core.models_sqlite import (
    Credential, JobRecord, SpeakerSegment, TranslationResult,
)

# (progress 0-100, message)
PhaseProgress = Callable[[int, str], None]


class PersistenceGateway(ABC):

    @abstractmethod
    def get_job_record(self, job_id: str) -> Optional[JobRecord]:
        """Return transcript, segments and any existing translation, or None."""

    @abstractmethod
    def mark_translation_status(self, job_id: str, status: str, progress: int = 0):
        ...

    @abstractmethod
    def save_translation_result(self, job_id: str, result: TranslationResult):
        """Persist the translation and mark the job completed."""

    @abstractmethod
    def mark_failed(self, job_id: str, error_message: str):
        ...


class TranslationGateway(ABC):
    """
    Translates text and speaker segments.

    ``credential`` is the pool key the caller acquired for the keyed
    backend; ``on_progress`` receives a 0-100 value for the current phase;
    ``cancel_event`` is checked between chunks.
    """

    @abstractmethod
    def translate_text(self, text: str, source_lang: str,
                       on_progress: Optional[PhaseProgress] = None,
                       cancel_event: Optional[Event] = None,
                       credential: Optional[Credential] = None) -> str:
        ...

    @abstractmethod
    def translate_segments(self, segments: list[SpeakerSegment], source_lang: str,
                           on_progress: Optional[PhaseProgress] = None,
                           cancel_event: Optional[Event] = None,
                           credential: Optional[Credential] = None) -> list[SpeakerSegment]:
        ...
