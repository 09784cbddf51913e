"""
Translation backends.

LibreTranslate (keyed, primary) and MyMemory (free, secondary) are called
over HTTP.  The static backend is a local phrase dictionary that never
fails; it keeps jobs completing when both remote services are down.

Every remote failure is classified as either TransientProviderError
(timeouts, connection errors, auth, 429, 5xx, unusable bodies) or
PermanentProviderError (the service rejected the request itself).
"""

import logging
import re

import requests

from voiceqc.core.constants import (
    LIBRETRANSLATE_URL, MYMEMORY_URL, REQUEST_TIMEOUT_SEC, TRANSIENT_HTTP_STATUSES,
)
from voiceqc.core.error_codes import PermanentProviderError, TransientProviderError

logger = logging.getLogger(__name__)


def _classify_status(resp: requests.Response, backend: str):
    """Raise the matching provider error for a non-200 response."""
    if resp.status_code == 200:
        return
    body = resp.text[:300] if resp.text else "No response body"
    message = f"{backend} returned {resp.status_code}: {body}"
    if resp.status_code in TRANSIENT_HTTP_STATUSES or resp.status_code >= 500:
        raise TransientProviderError(message, status_code=resp.status_code)
    raise PermanentProviderError(message, status_code=resp.status_code)


def _json_body(resp: requests.Response, backend: str) -> dict:
    try:
        return resp.json()
    except ValueError:
        raise TransientProviderError(f"Failed to parse {backend} response JSON")


class TranslationBackend:
    name = "base"
    keyed = False
    confidence = 0.0

    def translate(self, text: str, source_lang: str, target_lang: str,
                  api_key: str | None = None) -> str:
        raise NotImplementedError


class LibreTranslateBackend(TranslationBackend):
    name = "LibreTranslate"
    keyed = True
    confidence = 0.85

    def __init__(self, url: str = LIBRETRANSLATE_URL, timeout: int = REQUEST_TIMEOUT_SEC):
        self.url = url
        self.timeout = timeout

    def translate(self, text: str, source_lang: str, target_lang: str,
                  api_key: str | None = None) -> str:
        payload = {
            "q": text,
            "source": source_lang or "auto",
            "target": target_lang,
            "format": "text",
        }
        if api_key:
            payload["api_key"] = api_key

        try:
            resp = requests.post(self.url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise TransientProviderError("LibreTranslate request timed out")
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(f"Network error connecting to LibreTranslate: {e}")

        _classify_status(resp, self.name)
        translated = _json_body(resp, self.name).get("translatedText") or ""
        if not translated.strip():
            raise TransientProviderError("LibreTranslate returned an empty translation")
        return translated


class MyMemoryBackend(TranslationBackend):
    name = "MyMemory"
    confidence = 0.75

    def __init__(self, url: str = MYMEMORY_URL, timeout: int = REQUEST_TIMEOUT_SEC):
        self.url = url
        self.timeout = timeout

    def translate(self, text: str, source_lang: str, target_lang: str,
                  api_key: str | None = None) -> str:
        params = {"q": text, "langpair": f"{source_lang}|{target_lang}"}
        try:
            resp = requests.get(self.url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise TransientProviderError("MyMemory request timed out")
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(f"Network error connecting to MyMemory: {e}")

        _classify_status(resp, self.name)
        data = _json_body(resp, self.name)

        # MyMemory reports quota and validation problems inside a 200 body
        status = data.get("responseStatus", 200)
        try:
            status = int(status)
        except (TypeError, ValueError):
            status = 200
        if status != 200:
            details = data.get("responseDetails") or "unknown error"
            if status == 429 or status >= 500:
                raise TransientProviderError(f"MyMemory error {status}: {details}", status_code=status)
            raise PermanentProviderError(f"MyMemory error {status}: {details}", status_code=status)

        translated = (data.get("responseData") or {}).get("translatedText") or ""
        if not translated.strip():
            raise TransientProviderError("MyMemory returned an empty translation")
        return translated


# Longer phrases first so they win over the single words they contain.
_STATIC_PHRASES = {
    ("en", "ru"): [
        ("Can you help me", "Можете ли вы мне помочь"),
        ("Good morning", "Доброе утро"),
        ("Good afternoon", "Добрый день"),
        ("Good evening", "Добрый вечер"),
        ("How are you", "Как дела"),
        ("I understand", "Я понимаю"),
        ("Thank you", "Спасибо"),
        ("Goodbye", "До свидания"),
        ("Hello", "Привет"),
        ("Please", "Пожалуйста"),
        ("customer", "клиент"),
        ("service", "сервис"),
        ("problem", "проблема"),
        ("solution", "решение"),
        ("order", "заказ"),
        ("payment", "оплата"),
        ("Yes", "Да"),
        ("No", "Нет"),
    ],
}


class StaticFallbackBackend(TranslationBackend):
    """Word-boundary phrase substitution. Never raises."""
    name = "Static Fallback"
    confidence = 0.6

    def __init__(self, phrases: dict | None = None):
        table = phrases if phrases is not None else _STATIC_PHRASES
        self._patterns = {
            pair: [(re.compile(r"\b" + re.escape(src) + r"\b", re.IGNORECASE), dst)
                   for src, dst in entries]
            for pair, entries in table.items()
        }

    def translate(self, text: str, source_lang: str, target_lang: str,
                  api_key: str | None = None) -> str:
        patterns = self._patterns.get((source_lang, target_lang))
        if not patterns:
            logger.debug("No static phrases for %s->%s; returning text unchanged",
                         source_lang, target_lang)
            return text
        for pattern, replacement in patterns:
            text = pattern.sub(replacement, text)
        return text
