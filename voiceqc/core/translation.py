"""
Translation with a fixed fallback chain.

Each piece of text is offered to the backends in order (LibreTranslate →
MyMemory → static dictionary).  A TransientProviderError moves on to the
next backend; a PermanentProviderError stops the chain and propagates.
Outcomes of the keyed backend are reported to the key pool so unhealthy
keys get deactivated.  When a pool is configured the keyed backend is only
called while the job's key is still active; without one (empty pool or a
deactivated key) the chain starts at the free backends.
"""

import logging
import re
import threading
import time
from collections import OrderedDict
from threading import Event
from typing import Callable, Optional

from voiceqc.core.constants import (
    TARGET_LANGUAGE, SPEAKER_CHUNK_SIZE, CHUNK_DELAY_SEC, TEXT_CHUNK_CHARS,
    TRANSLATION_CACHE_SIZE,
)
from voiceqc.core.error_codes import (
    JobCancelledError, TransientProviderError,
)
from voiceqc.core.gateways import PhaseProgress, TranslationGateway
from voiceqc.core.key_pool import ProviderKeyPool
from voiceqc.core.models_sqlite import Credential, SpeakerSegment
from voiceqc.core.security_utils import scrub_secret
from voiceqc.core.translate_backends import (
    LibreTranslateBackend, MyMemoryBackend, StaticFallbackBackend, TranslationBackend,
)

logger = logging.getLogger(__name__)

_SENTENCE_RE = re.compile(r"[^.!?]+(?:[.!?]+|$)")


def chunk_text(text: str, max_chars: int = TEXT_CHUNK_CHARS) -> list[str]:
    """
    Split text into sentence-aligned chunks of at most max_chars.
    A single sentence longer than the limit is split on word boundaries.
    """
    text = text.strip()
    if not text:
        return []
    if len(text) <= max_chars:
        return [text]

    chunks: list[str] = []
    current = ""
    for sentence in _SENTENCE_RE.findall(text):
        sentence = sentence.strip()
        if not sentence:
            continue
        if len(sentence) > max_chars:
            if current:
                chunks.append(current)
                current = ""
            chunks.extend(_split_words(sentence, max_chars))
            continue
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= max_chars:
            current = candidate
        else:
            chunks.append(current)
            current = sentence
    if current:
        chunks.append(current)
    return chunks


def _split_words(sentence: str, max_chars: int) -> list[str]:
    parts: list[str] = []
    current = ""
    for word in sentence.split():
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_chars or not current:
            current = candidate
        else:
            parts.append(current)
            current = word
    if current:
        parts.append(current)
    return parts


def _check_cancelled(cancel_event: Optional[Event]):
    if cancel_event is not None and cancel_event.is_set():
        raise JobCancelledError()


class FallbackTranslator(TranslationGateway):

    def __init__(self,
                 backends: list[TranslationBackend] | None = None,
                 key_pool: ProviderKeyPool | None = None,
                 target_language: str = TARGET_LANGUAGE,
                 speaker_chunk_size: int = SPEAKER_CHUNK_SIZE,
                 chunk_delay_sec: float = CHUNK_DELAY_SEC,
                 text_chunk_chars: int = TEXT_CHUNK_CHARS,
                 cache_size: int = TRANSLATION_CACHE_SIZE,
                 sleep: Callable[[float], None] = time.sleep):
        if backends is None:
            backends = [LibreTranslateBackend(), MyMemoryBackend(), StaticFallbackBackend()]
        self.backends = backends
        self.key_pool = key_pool
        self.target_language = target_language
        self.speaker_chunk_size = speaker_chunk_size
        self.chunk_delay_sec = chunk_delay_sec
        self.text_chunk_chars = text_chunk_chars
        self._sleep = sleep
        self.cache_size = cache_size
        # LRU: most recently used entries at the end
        self._cache: OrderedDict[tuple[str, str, str], str] = OrderedDict()
        self._cache_lock = threading.Lock()

    def clear_cache(self):
        with self._cache_lock:
            self._cache.clear()

    # ── Public API ────────────────────────────────────────────────────

    def translate_text(self, text: str, source_lang: str,
                       on_progress: Optional[PhaseProgress] = None,
                       cancel_event: Optional[Event] = None,
                       credential: Optional[Credential] = None) -> str:
        chunks = chunk_text(text or "", self.text_chunk_chars)
        total = len(chunks)
        translated = []
        for i, chunk in enumerate(chunks):
            _check_cancelled(cancel_event)
            if on_progress:
                on_progress(int(i / total * 100), f"Translating text part {i + 1}/{total}")
            translated.append(self.translate_piece(chunk, source_lang, credential))
        if on_progress:
            on_progress(100, "Text translation completed")
        return " ".join(translated)

    def translate_segments(self, segments: list[SpeakerSegment], source_lang: str,
                           on_progress: Optional[PhaseProgress] = None,
                           cancel_event: Optional[Event] = None,
                           credential: Optional[Credential] = None) -> list[SpeakerSegment]:
        total = len(segments)
        size = self.speaker_chunk_size
        results: list[SpeakerSegment] = []

        if on_progress:
            on_progress(0, "Starting speaker translation...")

        for start in range(0, total, size):
            _check_cancelled(cancel_event)
            group = segments[start:start + size]
            if on_progress:
                on_progress(round(start / total * 100),
                            f"Translating utterances {start + 1}-{start + len(group)}/{total}")

            for segment in group:
                results.append(segment.with_text(
                    self.translate_piece(segment.text, source_lang, credential)))

            # Pause between groups to stay under provider rate limits
            if start + size < total and self.chunk_delay_sec > 0:
                if cancel_event is not None:
                    cancel_event.wait(self.chunk_delay_sec)
                else:
                    self._sleep(self.chunk_delay_sec)

        if on_progress:
            on_progress(100, "Speaker translation completed")
        return results

    # ── Fallback chain ────────────────────────────────────────────────

    def translate_piece(self, text: str, source_lang: str,
                        credential: Optional[Credential] = None) -> str:
        """Translate one piece of text through the fallback chain."""
        if not text or not text.strip():
            return text

        cache_key = (source_lang, self.target_language, text)
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached

        last_error: TransientProviderError | None = None
        for backend in self.backends:
            if backend.keyed and not self._key_usable(credential):
                logger.debug("Skipping %s: no active API key", backend.name)
                continue
            api_key = credential.secret if (backend.keyed and credential) else None
            started = time.monotonic()
            try:
                result = backend.translate(text, source_lang, self.target_language, api_key=api_key)
            except TransientProviderError as e:
                message = scrub_secret(e.message, api_key)
                logger.warning("%s failed: %s", backend.name, message)
                self._record_outcome(backend, credential, started, error=message)
                last_error = e
                continue

            self._record_outcome(backend, credential, started)
            logger.debug("%s translated %d chars (confidence %.2f)",
                         backend.name, len(text), backend.confidence)
            self._cache_put(cache_key, result)
            return result

        raise TransientProviderError(
            f"All translation backends failed: {last_error.message if last_error else 'none available'}"
        )

    def _key_usable(self, credential: Optional[Credential]) -> bool:
        """Whether the keyed backend may be called with this credential."""
        if self.key_pool is None:
            return True
        if credential is None:
            return False
        # Re-read: another chunk or job may have deactivated the key.
        current = self.key_pool.get(credential.id)
        return current is not None and current.is_active

    def _cache_get(self, key: tuple[str, str, str]) -> str | None:
        with self._cache_lock:
            value = self._cache.get(key)
            if value is not None:
                self._cache.move_to_end(key)
            return value

    def _cache_put(self, key: tuple[str, str, str], value: str):
        if self.cache_size <= 0:
            return
        with self._cache_lock:
            self._cache[key] = value
            self._cache.move_to_end(key)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

    def _record_outcome(self, backend: TranslationBackend, credential: Optional[Credential],
                        started: float, error: str | None = None):
        if not (backend.keyed and credential and self.key_pool):
            return
        elapsed_ms = int((time.monotonic() - started) * 1000)
        if error is None:
            self.key_pool.record_success(credential.id, response_time_ms=elapsed_ms)
        else:
            self.key_pool.record_failure(credential.id, error_message=error,
                                         response_time_ms=elapsed_ms)
