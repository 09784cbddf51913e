"""
Provider API-key pool.

Keys are rotated least-recently-used first and deactivated automatically
after DEACTIVATION_THRESHOLD consecutive failures.  Every outcome is also
appended to the usage log.  All read-modify-write cycles run under a single
pool lock so concurrent job completions never lose a counter update.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Iterable

from voiceqc.core.constants import DEACTIVATION_THRESHOLD, KNOWN_PROVIDERS
from voiceqc.core.db_sqlite import Database
from voiceqc.core.error_codes import NoActiveCredentialError
from voiceqc.core.models_sqlite import Credential, KeyHealth
from voiceqc.core.security_utils import mask_secret

logger = logging.getLogger(__name__)


class ProviderKeyPool:

    def __init__(self, db: Database):
        self.db = db
        self._lock = threading.Lock()

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    # ── Admin CRUD ────────────────────────────────────────────────────

    def add(self, name: str, secret: str, provider: str) -> Credential:
        name, secret = name.strip(), secret.strip()
        if not name or not secret:
            raise ValueError("Both key name and API key are required")
        if provider not in KNOWN_PROVIDERS:
            raise ValueError(f"Unknown provider: {provider}")
        with self._lock:
            cred = self.db.insert_credential(name, secret, provider)
        logger.info("Added %s API key %s (%s)", provider, cred.name, mask_secret(secret))
        return cred

    def remove(self, key_id: str) -> bool:
        with self._lock:
            removed = self.db.delete_credential(key_id)
        if removed:
            logger.info("Deleted API key %s", key_id)
        return removed

    def get(self, key_id: str) -> Credential | None:
        return self.db.get_credential(key_id)

    def list_keys(self, provider: str | None = None) -> list[Credential]:
        return self.db.list_credentials(provider)

    def reactivate(self, key_id: str) -> Credential | None:
        """Bring a deactivated key back. Historical counters are kept."""
        with self._lock:
            if self.db.get_credential(key_id) is None:
                return None
            self.db.update_credential(key_id,
                                      is_active=True,
                                      consecutive_failures=0,
                                      deactivated_at=None)
            cred = self.db.get_credential(key_id)
        logger.info("Reactivated API key %s", cred.name)
        return cred

    # ── Rotation ──────────────────────────────────────────────────────

    def select_active(self, provider: str, exclude: Iterable[str] = ()) -> Credential:
        """Least-recently-used active key, skipping ids in ``exclude``."""
        with self._lock:
            cred = self.db.get_next_credential(provider, exclude)
        if cred is None:
            logger.warning("No active %s API keys available", provider)
            raise NoActiveCredentialError(provider)
        logger.debug("Selected %s key %s (%s)", provider, cred.name, mask_secret(cred.secret))
        return cred

    def record_success(self, key_id: str, response_time_ms: int | None = None):
        with self._lock:
            cred = self.db.get_credential(key_id)
            if cred is None:
                logger.warning("Success reported for unknown API key %s", key_id)
                return
            if not cred.is_active:
                # Only reactivate() may reset a deactivated key
                logger.warning("Success reported for deactivated API key %s; ignored", cred.name)
                return
            self.db.update_credential(key_id,
                                      success_count=cred.success_count + 1,
                                      consecutive_failures=0,
                                      last_used_at=self._now())
            self.db.log_key_usage(key_id, True, response_time_ms=response_time_ms)

    def record_failure(self, key_id: str, error_message: str | None = None,
                       response_time_ms: int | None = None):
        with self._lock:
            cred = self.db.get_credential(key_id)
            if cred is None:
                logger.warning("Failure reported for unknown API key %s", key_id)
                return
            now = self._now()
            consecutive = cred.consecutive_failures + 1
            fields = {
                'failure_count': cred.failure_count + 1,
                'consecutive_failures': consecutive,
                'last_failure_at': now,
            }
            deactivate = cred.is_active and consecutive >= DEACTIVATION_THRESHOLD
            if deactivate:
                fields['is_active'] = False
                fields['deactivated_at'] = now
            self.db.update_credential(key_id, **fields)
            self.db.log_key_usage(key_id, False, error_message=error_message,
                                  response_time_ms=response_time_ms)

        if deactivate:
            logger.warning("API key %s deactivated after %d consecutive failures",
                           cred.name, consecutive)
        else:
            logger.info("API key %s failure %d/%d",
                        cred.name, consecutive, DEACTIVATION_THRESHOLD)

    # ── Reporting ─────────────────────────────────────────────────────

    def health_snapshot(self, provider: str | None = None) -> list[KeyHealth]:
        return [
            KeyHealth(
                id=c.id,
                name=c.name,
                provider=c.provider,
                is_active=c.is_active,
                success_count=c.success_count,
                failure_count=c.failure_count,
                consecutive_failures=c.consecutive_failures,
                masked_key=mask_secret(c.secret),
                last_used_at=c.last_used_at,
                deactivated_at=c.deactivated_at,
            )
            for c in self.list_keys(provider)
        ]
