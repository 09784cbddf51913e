"""
Data models (plain dataclasses) for VoiceQC.
"""

import json
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from typing import Optional

from voiceqc.core.constants import JobStatus


@dataclass
class SpeakerSegment:
    speaker: str
    text: str
    confidence: float = 0.0
    start: float = 0.0
    end: float = 0.0

    def with_text(self, text: str) -> "SpeakerSegment":
        return replace(self, text=text)


def segments_to_json(segments: Optional[list[SpeakerSegment]]) -> Optional[str]:
    if segments is None:
        return None
    return json.dumps([asdict(s) for s in segments], ensure_ascii=False)


def segments_from_json(raw: Optional[str]) -> Optional[list[SpeakerSegment]]:
    if raw is None:
        return None
    return [SpeakerSegment(**item) for item in json.loads(raw)]


@dataclass
class Dialog:
    id: str                          # UUID
    file_name: str = ""
    transcript: Optional[str] = None
    speaker_segments: Optional[list[SpeakerSegment]] = None
    detected_language: Optional[str] = None
    translated_transcript: Optional[str] = None
    translated_segments: Optional[list[SpeakerSegment]] = None
    translation_status: Optional[str] = None
    translation_progress: int = 0
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def has_translation(self) -> bool:
        return bool(self.translated_transcript) and self.translated_segments is not None


@dataclass
class JobRecord:
    """What a runner needs to know about a dialog before translating it."""
    id: str
    transcript: Optional[str]
    speaker_segments: Optional[list[SpeakerSegment]]
    existing_translation: Optional["TranslationResult"] = None


@dataclass
class TranslationResult:
    text: str
    segments: list[SpeakerSegment] = field(default_factory=list)


@dataclass
class Credential:
    id: str                          # UUID
    name: str
    secret: str = field(repr=False)
    provider: str
    is_active: bool = True
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    last_used_at: Optional[str] = None
    last_failure_at: Optional[str] = None
    deactivated_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class KeyHealth:
    """Read-only health view of a credential (no secret)."""
    id: str
    name: str
    provider: str
    is_active: bool
    success_count: int
    failure_count: int
    consecutive_failures: int
    masked_key: str
    last_used_at: Optional[str] = None
    deactivated_at: Optional[str] = None

    @property
    def success_rate(self) -> Optional[float]:
        total = self.success_count + self.failure_count
        if total == 0:
            return None
        return self.success_count / total


@dataclass
class KeyUsage:
    id: int
    api_key_id: str
    success: bool
    error_message: Optional[str] = None
    response_time_ms: Optional[int] = None
    created_at: Optional[str] = None


@dataclass
class ProgressEvent:
    stage: str
    progress: int
    message: str = ""

    def __post_init__(self):
        self.progress = max(0, min(100, int(self.progress)))


@dataclass
class QueueItem:
    job_id: str
    priority: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    seq: int = 0
    state: str = JobStatus.QUEUED

    @property
    def sort_key(self) -> tuple:
        # seq is monotonic; created_at is wall-clock and informational only
        return (-self.priority, self.seq)
