"""
Deepgram Speech-to-Text integration.
Pre-recorded mode with diarization, keys drawn from the provider key pool.
A failing key is recorded and the next least-recently-used key is tried.
"""

import logging
import mimetypes
import time
from pathlib import Path
from typing import Optional

import requests

from voiceqc.core.constants import (
    ErrorCode, ProgressStage, Provider,
    DEEPGRAM_API_BASE, DEEPGRAM_MODEL, DEEPGRAM_MAX_KEY_ATTEMPTS,
    TRANSIENT_HTTP_STATUSES, MAX_ERROR_MESSAGE_LEN,
    PROGRESS_UPLOAD_START, PROGRESS_UPLOAD_SENT, PROGRESS_PROCESSING,
    PROGRESS_SAVING, PROGRESS_DONE,
)
from voiceqc.core.db_sqlite import Database
from voiceqc.core.error_codes import (
    JobError, NoActiveCredentialError, PermanentProviderError, TransientProviderError,
)
from voiceqc.core.key_pool import ProviderKeyPool
from voiceqc.core.models_sqlite import Dialog, SpeakerSegment
from voiceqc.core.progress import ProgressReporter
from voiceqc.core.security_utils import mask_secret, scrub_secret

logger = logging.getLogger(__name__)

DEEPGRAM_PRERECORDED_URL = f"{DEEPGRAM_API_BASE}/listen"


def _upload_timeout(audio_path: Path) -> int:
    # ~1 min per 10MB, minimum 120s
    file_size = audio_path.stat().st_size
    return max(120, int(file_size / (10 * 1024 * 1024) * 60) + 60)


def _listen_params(model: str, language: str | None, diarize: bool) -> dict:
    params = {
        "model": model,
        "punctuate": "true",
        "smart_format": "true",
    }
    if language:
        params["language"] = language
    else:
        params["detect_language"] = "true"
    if diarize:
        params["diarize"] = "true"
        params["utterances"] = "true"
    return params


def _post_audio(audio_path: Path, api_key: str, params: dict, timeout: int) -> dict:
    """One Deepgram request. Raises Transient/PermanentProviderError."""
    content_type = mimetypes.guess_type(str(audio_path))[0] or "audio/wav"
    headers = {
        "Authorization": f"Token {api_key}",
        "Content-Type": content_type,
    }
    try:
        with open(audio_path, 'rb') as f:
            resp = requests.post(
                DEEPGRAM_PRERECORDED_URL,
                headers=headers,
                params=params,
                data=f,
                timeout=timeout,
            )
    except requests.exceptions.Timeout:
        raise TransientProviderError("Deepgram request timed out")
    except requests.exceptions.RequestException as e:
        raise TransientProviderError(f"Network error connecting to Deepgram: {e}")

    if resp.status_code != 200:
        error_body = resp.text[:300] if resp.text else "No response body"
        message = f"Deepgram returned {resp.status_code}: {error_body}"
        if resp.status_code == 400 and 'model' in error_body.lower():
            raise PermanentProviderError(
                f"Model {params.get('model')} is not available. "
                f"Please check your Deepgram plan supports this model.",
                status_code=400,
            )
        if resp.status_code in TRANSIENT_HTTP_STATUSES or resp.status_code >= 500:
            raise TransientProviderError(message, status_code=resp.status_code)
        raise PermanentProviderError(message, status_code=resp.status_code)

    try:
        return resp.json()
    except ValueError:
        raise TransientProviderError("Failed to parse Deepgram response JSON")


def transcribe_audio(audio_path: Path, key_pool: ProviderKeyPool,
                     model: str = DEEPGRAM_MODEL,
                     language: str | None = None,
                     diarize: bool = True,
                     max_key_attempts: int = DEEPGRAM_MAX_KEY_ATTEMPTS) -> dict:
    """
    Transcribe an audio file, trying up to ``max_key_attempts`` different
    keys.  Every attempt is recorded against its key.  A permanent error
    stops immediately; NoActiveCredentialError is raised when the pool
    runs dry before any key succeeded.
    Returns the Deepgram response dict.
    """
    if not audio_path.exists():
        raise JobError(ErrorCode.AUDIO_NOT_FOUND, f"Audio file not found: {audio_path}")

    params = _listen_params(model, language, diarize)
    timeout = _upload_timeout(audio_path)
    tried: list[str] = []
    last_error: Optional[TransientProviderError] = None

    for attempt in range(max_key_attempts):
        try:
            cred = key_pool.select_active(Provider.DEEPGRAM, exclude=tried)
        except NoActiveCredentialError:
            if last_error is not None:
                break
            raise
        tried.append(cred.id)
        logger.info("Deepgram attempt %d/%d with key %s (%s)",
                    attempt + 1, max_key_attempts, cred.name, mask_secret(cred.secret))

        started = time.monotonic()
        try:
            result = _post_audio(audio_path, cred.secret, params, timeout)
        except (TransientProviderError, PermanentProviderError) as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            message = scrub_secret(e.message, cred.secret)
            key_pool.record_failure(cred.id, error_message=message, response_time_ms=elapsed_ms)
            if isinstance(e, PermanentProviderError):
                raise PermanentProviderError(message, status_code=e.status_code)
            logger.warning("Deepgram key %s failed: %s", cred.name, message)
            last_error = TransientProviderError(message, status_code=e.status_code)
            continue

        elapsed_ms = int((time.monotonic() - started) * 1000)
        key_pool.record_success(cred.id, response_time_ms=elapsed_ms)
        logger.info("Deepgram transcription finished in %d ms with key %s", elapsed_ms, cred.name)
        return result

    raise last_error or TransientProviderError("All Deepgram API keys failed")


def _first_alternative(deepgram_response: dict) -> dict:
    channels = deepgram_response.get('results', {}).get('channels') or [{}]
    alternatives = channels[0].get('alternatives') or [{}]
    return alternatives[0]


def extract_transcript_text(deepgram_response: dict) -> str:
    """
    Extract plain text transcript from Deepgram response.
    Uses paragraphs if available, falls back to channels/alternatives.
    """
    try:
        alternative = _first_alternative(deepgram_response)

        paragraphs = (alternative.get('paragraphs') or {}).get('paragraphs') or []
        text_parts = []
        for para in paragraphs:
            para_text = ' '.join(s.get('text', '') for s in para.get('sentences', []))
            if para_text.strip():
                text_parts.append(para_text.strip())
        if text_parts:
            return '\n\n'.join(text_parts)

        return (alternative.get('transcript') or '').strip()

    except (AttributeError, IndexError, KeyError, TypeError) as e:
        logger.warning("Error extracting transcript: %s", e)

    return ""


def extract_speaker_segments(deepgram_response: dict) -> list[SpeakerSegment]:
    """Diarized utterances as ``Speaker N`` segments, in response order."""
    utterances = deepgram_response.get('results', {}).get('utterances') or []
    segments = []
    for utterance in utterances:
        speaker = utterance.get('speaker')
        segments.append(SpeakerSegment(
            speaker=f"Speaker {speaker if speaker is not None else 0}",
            text=utterance.get('transcript', ''),
            confidence=float(utterance.get('confidence') or 0.0),
            start=float(utterance.get('start') or 0.0),
            end=float(utterance.get('end') or 0.0),
        ))
    return segments


def extract_detected_language(deepgram_response: dict) -> Optional[str]:
    channels = deepgram_response.get('results', {}).get('channels') or [{}]
    language = channels[0].get('detected_language')
    if language:
        return language
    model_info = deepgram_response.get('metadata', {}).get('model_info') or {}
    return model_info.get('language') or None


def transcribe_dialog(db: Database, key_pool: ProviderKeyPool,
                      dialog_id: str, audio_path: Path,
                      reporter: ProgressReporter,
                      model: str = DEEPGRAM_MODEL,
                      max_key_attempts: int = DEEPGRAM_MAX_KEY_ATTEMPTS) -> Dialog:
    """
    Transcribe ``audio_path`` and store transcript, speaker segments and
    detected language on the dialog.  Progress goes through ``reporter``
    under the dialog id.  Errors are stored on the dialog and re-raised.
    """
    if db.get_dialog(dialog_id) is None:
        raise JobError(ErrorCode.UNEXPECTED, f"Dialog {dialog_id} not found")

    reporter.report(dialog_id, ProgressStage.UPLOADING, PROGRESS_UPLOAD_START, "Reading audio file...")
    try:
        reporter.report(dialog_id, ProgressStage.UPLOADING, PROGRESS_UPLOAD_SENT,
                        "Sending audio to Deepgram...")
        response = transcribe_audio(audio_path, key_pool, model=model,
                                    max_key_attempts=max_key_attempts)

        reporter.report(dialog_id, ProgressStage.PROCESSING, PROGRESS_PROCESSING,
                        "Processing transcription...")
        transcript = extract_transcript_text(response)
        segments = extract_speaker_segments(response)
        language = extract_detected_language(response)

        reporter.report(dialog_id, ProgressStage.PROCESSING, PROGRESS_SAVING, "Saving transcript...")
        db.save_transcription(dialog_id, transcript, segments, detected_language=language)
    except JobError as e:
        logger.error("Transcription failed for dialog %s: %s", dialog_id, e)
        db.update_dialog(dialog_id, error_message=e.message[:MAX_ERROR_MESSAGE_LEN])
        reporter.report(dialog_id, ProgressStage.ERROR, 0, e.message)
        raise

    reporter.report(dialog_id, ProgressStage.COMPLETE, PROGRESS_DONE,
                    f"Transcribed {len(segments)} utterances")
    return db.get_dialog(dialog_id)
