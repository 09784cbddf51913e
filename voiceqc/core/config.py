"""
Application configuration manager.
Reads settings from a JSON file under the app support directory.
"""

import json
import logging
from pathlib import Path

from voiceqc.core.constants import (
    CONFIG_PATH, DB_PATH, SOURCE_LANGUAGE, TARGET_LANGUAGE,
    MAX_CONCURRENT, SPEAKER_CHUNK_SIZE, CHUNK_DELAY_SEC, TEXT_CHUNK_CHARS,
    REQUEST_TIMEOUT_SEC, LIBRETRANSLATE_URL, MYMEMORY_URL,
    DEEPGRAM_MODEL, DEEPGRAM_MAX_KEY_ATTEMPTS,
)

logger = logging.getLogger(__name__)

# key -> (type, min, max)
_BOUNDS = {
    'max_concurrent': (int, 1, 8),
    'speaker_chunk_size': (int, 1, 20),
    'chunk_delay_sec': (float, 0.0, 5.0),
    'text_chunk_chars': (int, 100, 5000),
    'request_timeout_sec': (int, 5, 300),
    'deepgram_max_key_attempts': (int, 1, 10),
}

_DEFAULTS = {
    'db_path': str(DB_PATH),
    'source_language': SOURCE_LANGUAGE,
    'target_language': TARGET_LANGUAGE,
    'max_concurrent': MAX_CONCURRENT,
    'speaker_chunk_size': SPEAKER_CHUNK_SIZE,
    'chunk_delay_sec': CHUNK_DELAY_SEC,
    'text_chunk_chars': TEXT_CHUNK_CHARS,
    'request_timeout_sec': REQUEST_TIMEOUT_SEC,
    'libretranslate_url': LIBRETRANSLATE_URL,
    'mymemory_url': MYMEMORY_URL,
    'deepgram_model': DEEPGRAM_MODEL,
    'deepgram_max_key_attempts': DEEPGRAM_MAX_KEY_ATTEMPTS,
}


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Failed to load config: %s", e)
                return
            for key, value in saved.items():
                self._data[key] = self._validate(key, value)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _BOUNDS:
            kind, low, high = _BOUNDS[key]
            try:
                value = kind(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return _DEFAULTS[key]
            return max(low, min(high, value))

        if key in ('source_language', 'target_language'):
            value = str(value).strip().lower()
            if not value:
                logger.warning("Empty %s, using default", key)
                return _DEFAULTS[key]

        return value

    @property
    def db_path(self) -> Path:
        return Path(self._data['db_path']).expanduser()

    @property
    def max_concurrent(self) -> int:
        return self._data['max_concurrent']

    @property
    def source_language(self) -> str:
        return self._data['source_language']

    @property
    def target_language(self) -> str:
        return self._data['target_language']
