"""
Security utilities for VoiceQC.
- API key masking for logs and health views
- Scrubbing secrets out of provider error text before it is stored
"""

import logging

logger = logging.getLogger(__name__)

_VISIBLE_PREFIX = 8


def mask_secret(secret: str | None) -> str:
    """Render a key as its first few characters followed by an ellipsis."""
    if not secret:
        return ""
    if len(secret) <= _VISIBLE_PREFIX:
        return "*" * len(secret)
    return secret[:_VISIBLE_PREFIX] + "..."


def scrub_secret(text: str, secret: str | None) -> str:
    """Replace every occurrence of a secret in text with its masked form."""
    if not text or not secret:
        return text
    return text.replace(secret, mask_secret(secret))
