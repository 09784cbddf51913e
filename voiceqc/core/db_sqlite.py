"""
SQLite database layer for VoiceQC.
Thread-safe via check_same_thread=False + explicit locking.
"""

import sqlite3
import threading
import uuid
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from voiceqc.core.constants import DB_PATH, JobStatus, MAX_ERROR_MESSAGE_LEN
from voiceqc.core.error_codes import PersistenceError
from voiceqc.core.gateways import PersistenceGateway
from voiceqc.core.models_sqlite import (
    Credential, Dialog, JobRecord, KeyUsage, SpeakerSegment, TranslationResult,
    segments_from_json, segments_to_json,
)

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS dialogs (
    id TEXT PRIMARY KEY,
    file_name TEXT NOT NULL DEFAULT '',
    transcript TEXT,
    speaker_segments TEXT,
    detected_language TEXT,
    translated_transcript TEXT,
    translated_segments TEXT,
    translation_status TEXT,
    translation_progress INTEGER DEFAULT 0,
    error_message TEXT,
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_dialogs_created_at ON dialogs(created_at DESC);

CREATE TABLE IF NOT EXISTS api_keys (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    secret TEXT NOT NULL,
    provider TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    success_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    last_used_at TEXT,
    last_failure_at TEXT,
    deactivated_at TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_api_keys_active ON api_keys(provider, is_active);
CREATE INDEX IF NOT EXISTS idx_api_keys_last_used ON api_keys(last_used_at);

CREATE TABLE IF NOT EXISTS key_usage_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    api_key_id TEXT NOT NULL,
    success INTEGER NOT NULL,
    error_message TEXT,
    response_time_ms INTEGER,
    created_at TEXT,
    FOREIGN KEY (api_key_id) REFERENCES api_keys(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_key_usage_key_id ON key_usage_log(api_key_id);
"""

_SEGMENT_COLUMNS = ('speaker_segments', 'translated_segments')


class Database(PersistenceGateway):
    """SQLite database wrapper for VoiceQC."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._lock = threading.RLock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        cur = self.conn.cursor()
        cur.executescript(_CREATE_TABLES)
        cur.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @contextmanager
    def _locked(self):
        """Serialize access and surface sqlite failures as PersistenceError."""
        with self._lock:
            try:
                yield self.conn
            except sqlite3.Error as e:
                try:
                    self.conn.rollback()
                except sqlite3.Error as rollback_error:
                    logger.warning("Rollback failed: %s", rollback_error)
                raise PersistenceError(f"Database error: {e}") from e

    @staticmethod
    def _row_to_dialog(row: sqlite3.Row) -> Dialog:
        data = dict(row)
        for col in _SEGMENT_COLUMNS:
            data[col] = segments_from_json(data[col])
        return Dialog(**data)

    @staticmethod
    def _row_to_credential(row: sqlite3.Row) -> Credential:
        data = dict(row)
        data['is_active'] = bool(data['is_active'])
        return Credential(**data)

    # ── Dialog CRUD ───────────────────────────────────────────────────

    def create_dialog(self, file_name: str = "", transcript: str | None = None,
                      speaker_segments: list[SpeakerSegment] | None = None,
                      dialog_id: str | None = None) -> Dialog:
        now = self._now()
        dialog = Dialog(
            id=dialog_id or str(uuid.uuid4()),
            file_name=file_name,
            transcript=transcript,
            speaker_segments=speaker_segments,
            created_at=now,
            updated_at=now,
        )
        with self._locked() as conn:
            conn.execute(
                """INSERT INTO dialogs
                   (id, file_name, transcript, speaker_segments,
                    translation_progress, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (dialog.id, dialog.file_name, dialog.transcript,
                 segments_to_json(dialog.speaker_segments),
                 dialog.translation_progress, dialog.created_at, dialog.updated_at),
            )
            conn.commit()
        return dialog

    def get_dialog(self, dialog_id: str) -> Dialog | None:
        with self._locked() as conn:
            row = conn.execute(
                "SELECT * FROM dialogs WHERE id = ?", (dialog_id,)
            ).fetchone()
        return self._row_to_dialog(row) if row else None

    def get_all_dialogs(self) -> list[Dialog]:
        with self._locked() as conn:
            rows = conn.execute(
                "SELECT * FROM dialogs ORDER BY created_at DESC"
            ).fetchall()
        return [self._row_to_dialog(r) for r in rows]

    def update_dialog(self, dialog_id: str, **kwargs):
        kwargs['updated_at'] = self._now()
        for col in _SEGMENT_COLUMNS:
            if col in kwargs:
                kwargs[col] = segments_to_json(kwargs[col])
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [dialog_id]
        with self._locked() as conn:
            conn.execute(
                f"UPDATE dialogs SET {sets} WHERE id = ?", vals
            )
            conn.commit()

    def save_transcription(self, dialog_id: str, transcript: str,
                           speaker_segments: list[SpeakerSegment],
                           detected_language: str | None = None):
        self.update_dialog(dialog_id,
                           transcript=transcript,
                           speaker_segments=speaker_segments,
                           detected_language=detected_language,
                           error_message=None)

    def delete_dialog(self, dialog_id: str):
        with self._locked() as conn:
            conn.execute("DELETE FROM dialogs WHERE id = ?", (dialog_id,))
            conn.commit()

    # ── Job record gateway ────────────────────────────────────────────

    def get_job_record(self, job_id: str) -> Optional[JobRecord]:
        dialog = self.get_dialog(job_id)
        if dialog is None:
            return None
        existing = None
        if dialog.has_translation:
            existing = TranslationResult(text=dialog.translated_transcript,
                                         segments=dialog.translated_segments)
        return JobRecord(
            id=dialog.id,
            transcript=dialog.transcript,
            speaker_segments=dialog.speaker_segments,
            existing_translation=existing,
        )

    def mark_translation_status(self, job_id: str, status: str, progress: int = 0):
        self.update_dialog(job_id, translation_status=status,
                           translation_progress=progress)

    def save_translation_result(self, job_id: str, result: TranslationResult):
        self.update_dialog(job_id,
                           translated_transcript=result.text,
                           translated_segments=result.segments,
                           translation_status=JobStatus.COMPLETED,
                           translation_progress=100,
                           error_message=None,
                           completed_at=self._now())

    def mark_failed(self, job_id: str, error_message: str):
        self.update_dialog(job_id,
                           translation_status=JobStatus.FAILED,
                           error_message=error_message[:MAX_ERROR_MESSAGE_LEN],
                           completed_at=self._now())

    # ── Credential CRUD ───────────────────────────────────────────────

    def insert_credential(self, name: str, secret: str, provider: str) -> Credential:
        now = self._now()
        cred = Credential(
            id=str(uuid.uuid4()),
            name=name,
            secret=secret,
            provider=provider,
            created_at=now,
            updated_at=now,
        )
        with self._locked() as conn:
            conn.execute(
                """INSERT INTO api_keys
                   (id, name, secret, provider, is_active, success_count,
                    failure_count, consecutive_failures, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (cred.id, cred.name, cred.secret, cred.provider, 1, 0, 0, 0,
                 cred.created_at, cred.updated_at),
            )
            conn.commit()
        return cred

    def get_credential(self, key_id: str) -> Credential | None:
        with self._locked() as conn:
            row = conn.execute(
                "SELECT * FROM api_keys WHERE id = ?", (key_id,)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def list_credentials(self, provider: str | None = None) -> list[Credential]:
        with self._locked() as conn:
            if provider is None:
                rows = conn.execute(
                    "SELECT * FROM api_keys ORDER BY created_at DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM api_keys WHERE provider = ? ORDER BY created_at DESC",
                    (provider,),
                ).fetchall()
        return [self._row_to_credential(r) for r in rows]

    def get_next_credential(self, provider: str,
                            exclude: Iterable[str] = ()) -> Credential | None:
        """Least-recently-used active key; never-used keys come first."""
        exclude = list(exclude)
        skip = ""
        if exclude:
            skip = f" AND id NOT IN ({','.join('?' * len(exclude))})"
        with self._locked() as conn:
            row = conn.execute(
                f"""SELECT * FROM api_keys
                   WHERE provider = ? AND is_active = 1{skip}
                   ORDER BY last_used_at IS NOT NULL,
                            last_used_at ASC,
                            success_count DESC,
                            failure_count ASC
                   LIMIT 1""",
                (provider, *exclude),
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def update_credential(self, key_id: str, **kwargs):
        kwargs['updated_at'] = self._now()
        if 'is_active' in kwargs:
            kwargs['is_active'] = 1 if kwargs['is_active'] else 0
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [key_id]
        with self._locked() as conn:
            conn.execute(
                f"UPDATE api_keys SET {sets} WHERE id = ?", vals
            )
            conn.commit()

    def delete_credential(self, key_id: str) -> bool:
        with self._locked() as conn:
            cur = conn.execute("DELETE FROM api_keys WHERE id = ?", (key_id,))
            conn.commit()
        return cur.rowcount > 0

    def log_key_usage(self, key_id: str, success: bool,
                      error_message: str | None = None,
                      response_time_ms: int | None = None):
        with self._locked() as conn:
            conn.execute(
                """INSERT INTO key_usage_log
                   (api_key_id, success, error_message, response_time_ms, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (key_id, 1 if success else 0,
                 error_message[:MAX_ERROR_MESSAGE_LEN] if error_message else None,
                 response_time_ms, self._now()),
            )
            conn.commit()

    def get_key_usage(self, key_id: str) -> list[KeyUsage]:
        with self._locked() as conn:
            rows = conn.execute(
                "SELECT * FROM key_usage_log WHERE api_key_id = ? ORDER BY id",
                (key_id,),
            ).fetchall()
        usages = []
        for r in rows:
            data = dict(r)
            data['success'] = bool(data['success'])
            usages.append(KeyUsage(**data))
        return usages
