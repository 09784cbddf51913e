"""
Shared constants for VoiceQC.
Imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "VoiceQC"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_SUPPORT_DIR = HOME / ".voiceqc"
LOG_DIR = APP_SUPPORT_DIR / "logs"
DB_PATH = APP_SUPPORT_DIR / "voiceqc.db"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"

# ── Job status values ─────────────────────────────────────────────────
class JobStatus:
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

# ── Progress stages (ordered) ─────────────────────────────────────────
class ProgressStage:
    QUEUED = "queued"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    TRANSLATING_TEXT = "translating_text"
    TRANSLATING_SPEAKERS = "translating_speakers"
    COMPLETE = "complete"
    ERROR = "error"

# ── Credential providers ──────────────────────────────────────────────
class Provider:
    LIBRETRANSLATE = "libretranslate"
    DEEPGRAM = "deepgram"

KNOWN_PROVIDERS = (Provider.LIBRETRANSLATE, Provider.DEEPGRAM)

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    NO_ACTIVE_CREDENTIAL = "ERR_NO_ACTIVE_CREDENTIAL"
    PROVIDER_PERMANENT = "ERR_PROVIDER_PERMANENT"
    PERSISTENCE = "ERR_PERSISTENCE"
    JOB_CANCELLED = "ERR_JOB_CANCELLED"
    AUDIO_NOT_FOUND = "ERR_AUDIO_NOT_FOUND"

    # Retryable
    PROVIDER_TRANSIENT = "ERR_PROVIDER_TRANSIENT"

    # Unexpected exception inside a runner
    UNEXPECTED = "ERR_UNEXPECTED"

RETRYABLE_ERRORS = {
    ErrorCode.PROVIDER_TRANSIENT,
}

# ── Queue / key pool policy ──────────────────────────────────────────
MAX_CONCURRENT = 2
DEACTIVATION_THRESHOLD = 5

# ── Translation defaults ──────────────────────────────────────────────
SOURCE_LANGUAGE = "en"
TARGET_LANGUAGE = "ru"
SPEAKER_CHUNK_SIZE = 3
CHUNK_DELAY_SEC = 0.2
TEXT_CHUNK_CHARS = 500
TRANSLATION_CACHE_SIZE = 2000
REQUEST_TIMEOUT_SEC = 30
MAX_ERROR_MESSAGE_LEN = 2000

LIBRETRANSLATE_URL = "https://libretranslate.com/translate"
MYMEMORY_URL = "https://api.mymemory.translated.net/get"

# HTTP statuses that mean "try something else" rather than "give up"
TRANSIENT_HTTP_STATUSES = {401, 403, 408, 429, 500, 502, 503, 504}

# ── Deepgram ──────────────────────────────────────────────────────────
DEEPGRAM_API_BASE = "https://api.deepgram.com/v1"
DEEPGRAM_MODEL = "nova-2"
DEEPGRAM_MAX_KEY_ATTEMPTS = 3

# ── Progress mapping (transcription pipeline) ─────────────────────────
PROGRESS_UPLOAD_START = 0
PROGRESS_UPLOAD_SENT = 40
PROGRESS_PROCESSING = 60
PROGRESS_SAVING = 90
PROGRESS_DONE = 100
