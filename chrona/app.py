from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Sequence

from . import __version__
from .analysis import AnalysisService
from .database import ChronaDatabase
from .events import LoggingEvents
from .gateway import ModelGateway
from .paths import (
    data_directory,
    database_path,
    ensure_directories,
    image_ref_for,
    logs_directory,
    settings_path,
)
from .settings import SettingsStore
from .timefmt import day_key_from_unix_seconds, day_window_for_day_key, format_duration

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png"}


def configure_logging(data_dir: Path, verbose: bool = False) -> Path:
    log_file = logs_directory(data_dir) / "chrona.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root.addHandler(console)
    root.addHandler(file_handler)
    return log_file


def _open_service(data_dir: Path) -> tuple[ChronaDatabase, AnalysisService]:
    db = ChronaDatabase(database_path(data_dir))
    service = AnalysisService(
        db,
        SettingsStore(settings_path(data_dir)),
        data_dir=data_dir,
        events=LoggingEvents(),
        gateway=ModelGateway(db),
    )
    return db, service


def _cmd_run(data_dir: Path, args: argparse.Namespace) -> int:
    db, service = _open_service(data_dir)
    with db:
        service.start()
        try:
            while service.is_running:
                time.sleep(1.0)
        except KeyboardInterrupt:
            print("Shutting down...")
        finally:
            service.stop(timeout_seconds=None)
    return 0


def _cmd_tick(data_dir: Path, args: argparse.Namespace) -> int:
    db, service = _open_service(data_dir)
    with db:
        result = service.run_tick_now()
    print(f"unprocessed={result.unprocessed_count} created_batches={len(result.created_batch_ids)}")
    return 0


def _cmd_drain(data_dir: Path, args: argparse.Namespace) -> int:
    db, service = _open_service(data_dir)
    with db:
        completed = service.drain_pending_batches()
    print(f"completed_batches={completed}")
    return 0


def _cmd_ingest(data_dir: Path, args: argparse.Namespace) -> int:
    source = Path(args.directory).expanduser()
    if not source.is_dir():
        print(f"Not a directory: {source}", file=sys.stderr)
        return 1

    images = sorted(
        (path for path in source.rglob("*") if path.is_file() and path.suffix.lower() in IMAGE_SUFFIXES),
        key=lambda path: (path.stat().st_mtime, path.name),
    )
    with ChronaDatabase(database_path(data_dir)) as db:
        for path in images:
            stat = path.stat()
            db.insert_capture_event(
                captured_at=int(stat.st_mtime),
                image_ref=image_ref_for(data_dir, path),
                file_size=stat.st_size,
            )
    print(f"ingested={len(images)}")
    return 0


def _cmd_batches(data_dir: Path, args: argparse.Namespace) -> int:
    with ChronaDatabase(database_path(data_dir)) as db:
        batches = db.fetch_recent_batches(args.limit)
    for batch in batches:
        print(
            f"{batch.id:>5}  {batch.status:<22} {format_duration(batch.duration_seconds):>9}  "
            f"{batch.reason or ''}"
        )
    return 0


def _cmd_cards(data_dir: Path, args: argparse.Namespace) -> int:
    day_key = args.day or day_key_from_unix_seconds(int(time.time()))
    day_start, day_end = day_window_for_day_key(day_key)
    with ChronaDatabase(database_path(data_dir)) as db:
        cards = db.fetch_cards_for_day(day_key)
    tracked = sum(max(0, min(card.end_ts, day_end) - max(card.start_ts, day_start)) for card in cards)
    print(f"{day_key}: {len(cards)} cards, {format_duration(tracked)} tracked")
    for card in cards:
        print(f"{card.start_display:>8} - {card.end_display:<8}  [{card.category}] {card.title}")
    return 0


def _cmd_search(data_dir: Path, args: argparse.Namespace) -> int:
    with ChronaDatabase(database_path(data_dir)) as db:
        cards = db.search_cards(args.query, limit=args.limit)
    for card in cards:
        print(f"{card.day_key} {card.start_display:>8}  [{card.category}] {card.title}")
    return 0


def _cmd_test_key(data_dir: Path, args: argparse.Namespace) -> int:
    with ChronaDatabase(database_path(data_dir)) as db:
        settings = SettingsStore(settings_path(data_dir)).load()
        ok, message = ModelGateway(db).test_api_key(settings)
    print(message)
    return 0 if ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chrona", description="Screen activity timeline analysis")
    parser.add_argument("--data-dir", help="Override the data directory")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="store_true", help="Print version and exit")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the tick scheduler until interrupted").set_defaults(handler=_cmd_run)
    sub.add_parser("tick", help="Run one tick now").set_defaults(handler=_cmd_tick)
    sub.add_parser("drain", help="Process pending batches").set_defaults(handler=_cmd_drain)

    ingest = sub.add_parser("ingest", help="Register existing screenshots as capture events")
    ingest.add_argument("directory")
    ingest.set_defaults(handler=_cmd_ingest)

    batches = sub.add_parser("batches", help="List recent batches")
    batches.add_argument("--limit", type=int, default=20)
    batches.set_defaults(handler=_cmd_batches)

    cards = sub.add_parser("cards", help="List timeline cards for a day (YYYY-MM-DD)")
    cards.add_argument("day", nargs="?")
    cards.set_defaults(handler=_cmd_cards)

    search = sub.add_parser("search", help="Full-text search over timeline cards")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=50)
    search.set_defaults(handler=_cmd_search)

    sub.add_parser("test-key", help="Verify the Gemini API key").set_defaults(handler=_cmd_test_key)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.version:
        print(__version__)
        return 0
    if not getattr(args, "handler", None):
        parser.print_help()
        return 2

    data_dir = Path(args.data_dir).expanduser() if args.data_dir else data_directory()
    ensure_directories(data_dir)
    configure_logging(data_dir, args.verbose)

    try:
        return args.handler(data_dir, args)
    except Exception as exc:  # noqa: BLE001
        logger.error("app.command_failed command=%s error=%s", args.command, exc, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
