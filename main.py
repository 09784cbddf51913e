#!/usr/bin/env python3
"""
VoiceQC v1.0.0: main entry point.
Command-line launcher for the background transcription/translation core.
"""

import argparse
import json
import logging
import sys
import traceback
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from voiceqc.core.config import AppConfig
from voiceqc.core.constants import (
    APP_NAME, APP_VERSION, LOG_DIR, JobStatus, Provider, KNOWN_PROVIDERS,
)
from voiceqc.core.db_sqlite import Database
from voiceqc.core.error_codes import JobError
from voiceqc.core.job_queue import TranslationQueue
from voiceqc.core.key_pool import ProviderKeyPool
from voiceqc.core.models_sqlite import ProgressEvent, segments_from_json
from voiceqc.core.progress import ProgressReporter
from voiceqc.core.transcribe_deepgram import transcribe_dialog
from voiceqc.core.translate_backends import (
    LibreTranslateBackend, MyMemoryBackend, StaticFallbackBackend,
)
from voiceqc.core.translation import FallbackTranslator

logger = logging.getLogger("voiceqc")


def setup_logging(verbose: bool = False):
    """File log under ~/.voiceqc/logs/ plus stderr."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_DIR / "app.log", encoding="utf-8"),
            logging.StreamHandler(sys.stderr),
        ],
    )


@dataclass
class Services:
    config: AppConfig
    db: Database
    key_pool: ProviderKeyPool
    reporter: ProgressReporter
    translator: FallbackTranslator
    queue: TranslationQueue

    def close(self):
        self.queue.stop(wait=True)
        self.db.close()


def build_services(config: AppConfig) -> Services:
    """Construct and wire every service. The caller owns start/stop."""
    db = Database(config.db_path)
    key_pool = ProviderKeyPool(db)
    reporter = ProgressReporter()
    timeout = config.get('request_timeout_sec')
    translator = FallbackTranslator(
        backends=[
            LibreTranslateBackend(config.get('libretranslate_url'), timeout),
            MyMemoryBackend(config.get('mymemory_url'), timeout),
            StaticFallbackBackend(),
        ],
        key_pool=key_pool,
        target_language=config.target_language,
        speaker_chunk_size=config.get('speaker_chunk_size'),
        chunk_delay_sec=config.get('chunk_delay_sec'),
        text_chunk_chars=config.get('text_chunk_chars'),
    )
    queue = TranslationQueue(db, translator, reporter,
                             key_pool=key_pool,
                             max_concurrent=config.max_concurrent,
                             source_language=config.source_language)
    return Services(config, db, key_pool, reporter, translator, queue)


def _print_event(job_id: str, event: ProgressEvent):
    print(f"[{job_id}] {event.stage:<22} {event.progress:3d}%  {event.message}")


# ── Commands ──────────────────────────────────────────────────────────

def cmd_keys(services: Services, args) -> int:
    pool = services.key_pool
    if args.keys_command == 'add':
        cred = pool.add(args.name, args.secret, args.provider)
        print(f"Added {cred.provider} key {cred.id} ({cred.name})")
    elif args.keys_command == 'list':
        for h in pool.health_snapshot(args.provider):
            rate = f"{h.success_rate:.0%}" if h.success_rate is not None else "-"
            state = "active" if h.is_active else "inactive"
            print(f"{h.id}  {h.provider:<15} {h.name:<20} {h.masked_key:<12} "
                  f"{state:<9} ok={h.success_count} fail={h.failure_count} rate={rate}")
    elif args.keys_command == 'remove':
        if not pool.remove(args.key_id):
            print(f"No such key: {args.key_id}", file=sys.stderr)
            return 1
        print(f"Removed key {args.key_id}")
    elif args.keys_command == 'reactivate':
        cred = pool.reactivate(args.key_id)
        if cred is None:
            print(f"No such key: {args.key_id}", file=sys.stderr)
            return 1
        print(f"Reactivated key {cred.id} ({cred.name})")
    return 0


def cmd_dialogs(services: Services, args) -> int:
    db = services.db
    if args.dialogs_command == 'add':
        segments = None
        if args.segments:
            segments = segments_from_json(Path(args.segments).read_text(encoding="utf-8"))
        dialog = db.create_dialog(file_name=args.file_name,
                                  transcript=args.transcript,
                                  speaker_segments=segments)
        print(dialog.id)
    elif args.dialogs_command == 'list':
        for d in db.get_all_dialogs():
            status = d.translation_status or "-"
            print(f"{d.id}  {d.file_name:<30} {status:<10} {d.translation_progress:3d}%")
    elif args.dialogs_command == 'show':
        dialog = db.get_dialog(args.dialog_id)
        if dialog is None:
            print(f"No such dialog: {args.dialog_id}", file=sys.stderr)
            return 1
        print(json.dumps(asdict(dialog), indent=2, ensure_ascii=False))
    return 0


def cmd_transcribe(services: Services, args) -> int:
    services.reporter.set_callback(args.dialog_id, _print_event)
    try:
        transcribe_dialog(services.db, services.key_pool, args.dialog_id,
                          Path(args.audio), services.reporter,
                          model=services.config.get('deepgram_model'),
                          max_key_attempts=services.config.get('deepgram_max_key_attempts'))
    except JobError as e:
        print(f"Transcription failed: {e.message}", file=sys.stderr)
        return 1
    finally:
        services.reporter.remove_callback(args.dialog_id)
    return 0


def cmd_translate(services: Services, args) -> int:
    queue = services.queue
    outcomes: dict[str, str] = {}
    queue.on_job_finished = lambda job_id, outcome: outcomes.__setitem__(job_id, outcome)

    for dialog_id in args.dialog_ids:
        queue.subscribe(dialog_id, _print_event)
        if not queue.enqueue(dialog_id, priority=args.priority):
            print(f"{dialog_id} is already queued")

    if not queue.wait_idle(args.timeout):
        print("Timed out waiting for translations", file=sys.stderr)
        queue.stop(wait=True, cancel_active=True)

    failed = 0
    for dialog_id in args.dialog_ids:
        dialog = services.db.get_dialog(dialog_id)
        status = dialog.translation_status if dialog else "missing"
        line = f"{dialog_id}: {outcomes.get(dialog_id, '-')} (status {status})"
        if dialog and dialog.error_message and status == JobStatus.FAILED:
            line += f" - {dialog.error_message}"
            failed += 1
        print(line)
    return 1 if failed else 0


def cmd_status(services: Services, args) -> int:
    counts: dict[str, int] = {}
    for d in services.db.get_all_dialogs():
        key = d.translation_status or "untranslated"
        counts[key] = counts.get(key, 0) + 1
    print("Dialogs:", ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "none")
    for provider in KNOWN_PROVIDERS:
        health = services.key_pool.health_snapshot(provider)
        active = sum(1 for h in health if h.is_active)
        print(f"{provider} keys: {active}/{len(health)} active")
    print("Queue:", services.queue.queue_status())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="voiceqc", description=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument("--config", type=Path, help="path to config.json")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    keys = sub.add_parser("keys", help="manage provider API keys")
    keys_sub = keys.add_subparsers(dest="keys_command", required=True)
    add = keys_sub.add_parser("add")
    add.add_argument("name")
    add.add_argument("secret")
    add.add_argument("--provider", choices=KNOWN_PROVIDERS, default=Provider.LIBRETRANSLATE)
    lst = keys_sub.add_parser("list")
    lst.add_argument("--provider", choices=KNOWN_PROVIDERS)
    for name in ("remove", "reactivate"):
        p = keys_sub.add_parser(name)
        p.add_argument("key_id")

    dialogs = sub.add_parser("dialogs", help="manage dialogs")
    dialogs_sub = dialogs.add_subparsers(dest="dialogs_command", required=True)
    dadd = dialogs_sub.add_parser("add")
    dadd.add_argument("file_name")
    dadd.add_argument("--transcript")
    dadd.add_argument("--segments", help="JSON file with speaker segments")
    dialogs_sub.add_parser("list")
    show = dialogs_sub.add_parser("show")
    show.add_argument("dialog_id")

    tr = sub.add_parser("transcribe", help="transcribe audio into a dialog")
    tr.add_argument("dialog_id")
    tr.add_argument("audio")

    tl = sub.add_parser("translate", help="queue dialogs for translation and wait")
    tl.add_argument("dialog_ids", nargs="+")
    tl.add_argument("--priority", type=int, default=0)
    tl.add_argument("--timeout", type=float, default=None)

    sub.add_parser("status", help="show dialog, key and queue status")
    return parser


COMMANDS = {
    "keys": cmd_keys,
    "dialogs": cmd_dialogs,
    "transcribe": cmd_transcribe,
    "translate": cmd_translate,
    "status": cmd_status,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())

    services = None
    try:
        services = build_services(AppConfig(args.config))
        return COMMANDS[args.command](services, args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except Exception as e:
        logger.critical("Fatal error: %s: %s\n%s", type(e).__name__, e, traceback.format_exc())
        return 1
    finally:
        if services is not None:
            services.close()


if __name__ == "__main__":
    sys.exit(main())
