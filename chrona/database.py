from __future__ import annotations

import logging
import re
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence, TypeVar

from .models import (
    SYSTEM_CATEGORY,
    ActivityCard,
    Batch,
    BatchStatus,
    CaptureEvent,
    ModelCallRecord,
    NewCard,
    Observation,
    ReplaceResult,
)
from .paths import normalize_image_ref
from .timefmt import day_key_from_unix_seconds, format_clock_ascii

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_VERSION = 1

_SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS capture_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    captured_at INTEGER NOT NULL,
    file_path TEXT NOT NULL,
    file_size INTEGER,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_capture_events_captured_at ON capture_events(captured_at);

CREATE TABLE IF NOT EXISTS analysis_batches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_start_ts INTEGER NOT NULL,
    batch_end_ts INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    reason TEXT,
    llm_metadata TEXT,
    detailed_transcription TEXT,
    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_analysis_batches_status ON analysis_batches(status);

CREATE TABLE IF NOT EXISTS batch_event_links (
    batch_id INTEGER NOT NULL REFERENCES analysis_batches(id) ON DELETE CASCADE,
    event_id INTEGER NOT NULL REFERENCES capture_events(id) ON DELETE RESTRICT,
    PRIMARY KEY (batch_id, event_id)
);
CREATE INDEX IF NOT EXISTS idx_batch_event_links_event ON batch_event_links(event_id);

CREATE TABLE IF NOT EXISTS observations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_id INTEGER NOT NULL REFERENCES analysis_batches(id) ON DELETE CASCADE,
    start_ts INTEGER NOT NULL,
    end_ts INTEGER NOT NULL,
    observation TEXT NOT NULL,
    metadata TEXT,
    llm_model TEXT,
    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_observations_batch_id ON observations(batch_id);
CREATE INDEX IF NOT EXISTS idx_observations_time_range ON observations(start_ts, end_ts);

CREATE TABLE IF NOT EXISTS timeline_cards (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_id INTEGER REFERENCES analysis_batches(id) ON DELETE CASCADE,
    "start" TEXT NOT NULL,
    "end" TEXT NOT NULL,
    start_ts INTEGER NOT NULL,
    end_ts INTEGER NOT NULL,
    day DATE NOT NULL,
    title TEXT NOT NULL,
    summary TEXT,
    category TEXT NOT NULL,
    subcategory TEXT,
    detailed_summary TEXT,
    metadata TEXT,
    video_summary_url TEXT,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    CHECK (end_ts > start_ts)
);
CREATE INDEX IF NOT EXISTS idx_timeline_cards_day ON timeline_cards(day);
CREATE INDEX IF NOT EXISTS idx_timeline_cards_active_start_ts
    ON timeline_cards(start_ts) WHERE is_deleted = 0;
CREATE INDEX IF NOT EXISTS idx_timeline_cards_active_batch
    ON timeline_cards(batch_id) WHERE is_deleted = 0;

CREATE VIRTUAL TABLE IF NOT EXISTS timeline_cards_fts USING fts5(
    title,
    summary,
    detailed_summary,
    metadata,
    category,
    subcategory,
    tokenize = 'unicode61 remove_diacritics 2'
);

CREATE TABLE IF NOT EXISTS model_calls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    batch_id INTEGER NULL,
    call_group_id TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 1,
    provider TEXT NOT NULL,
    model TEXT NULL,
    operation TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('success','failure')),
    latency_ms INTEGER NULL,
    http_status INTEGER NULL,
    request_method TEXT NULL,
    request_url TEXT NULL,
    request_body TEXT NULL,
    response_body TEXT NULL,
    error_kind TEXT NULL,
    error_message TEXT NULL
);
CREATE INDEX IF NOT EXISTS idx_model_calls_created ON model_calls(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_model_calls_group ON model_calls(call_group_id, attempt);
CREATE INDEX IF NOT EXISTS idx_model_calls_batch ON model_calls(batch_id);
"""

_CARD_COLUMNS = """
    id, batch_id, "start", "end", start_ts, end_ts, day, title, summary,
    category, subcategory, detailed_summary, metadata, video_summary_url, is_deleted
"""


class ChronaDatabase:
    """SQLite store behind a single-threaded FIFO job queue.

    The connection lives on one worker thread and every public method runs as
    one job on it, so multi-statement transactions never interleave with other
    writes. Errors raised inside a job surface in the calling thread.
    """

    def __init__(self, db_file: Path):
        self._db_file = Path(db_file)
        self._db_file.parent.mkdir(parents=True, exist_ok=True)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="chrona-db")
        self._conn: sqlite3.Connection | None = None
        self._closed = False
        try:
            self._run(self._open)
        except Exception:
            self.close()
            raise

    def __enter__(self) -> ChronaDatabase:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def path(self) -> Path:
        return self._db_file

    def close(self) -> None:
        if self._closed:
            return
        self._run(self._close_connection)
        self._closed = True
        self._executor.shutdown(wait=True)

    # -- queue plumbing -------------------------------------------------

    def _run(self, fn: Callable[..., T], *args: Any) -> T:
        if self._closed:
            raise RuntimeError("ChronaDatabase is closed")
        return self._executor.submit(fn, *args).result()

    def _open(self) -> None:
        conn = sqlite3.connect(self._db_file, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        self._conn = conn
        self._migrate(conn)

    def _close_connection(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("ChronaDatabase is not initialized")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._db()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def _migrate(self, conn: sqlite3.Connection) -> None:
        current = int(conn.execute("PRAGMA user_version").fetchone()[0])
        if current > SCHEMA_VERSION:
            raise RuntimeError(
                f"DB schema version {current} is newer than supported ({SCHEMA_VERSION})"
            )
        if current == SCHEMA_VERSION:
            return

        logger.info("database.migrate from=%s to=%s path=%s", current, SCHEMA_VERSION, self._db_file)
        conn.executescript(
            "BEGIN;\n"
            + _SCHEMA_V1
            + """
            DELETE FROM timeline_cards_fts;
            INSERT INTO timeline_cards_fts(
                rowid, title, summary, detailed_summary, metadata, category, subcategory
            )
            SELECT id, title, summary, detailed_summary, metadata, category, subcategory
            FROM timeline_cards
            WHERE is_deleted = 0;
            """
            + f"PRAGMA user_version = {SCHEMA_VERSION};\nCOMMIT;"
        )

    # -- capture events -------------------------------------------------

    def insert_capture_event(
        self,
        captured_at: int,
        image_ref: str,
        file_size: int | None = None,
    ) -> int:
        def job() -> int:
            cursor = self._db().execute(
                "INSERT INTO capture_events (captured_at, file_path, file_size) VALUES (?, ?, ?)",
                (int(captured_at), normalize_image_ref(image_ref), file_size),
            )
            return int(cursor.lastrowid)

        return self._run(job)

    def fetch_unprocessed_events(self, since_ts: int) -> list[CaptureEvent]:
        def job() -> list[CaptureEvent]:
            rows = self._db().execute(
                """
                SELECT id, captured_at, file_path, file_size
                FROM capture_events
                WHERE captured_at >= ?
                  AND is_deleted = 0
                  AND id NOT IN (SELECT event_id FROM batch_event_links)
                ORDER BY captured_at ASC, id ASC
                """,
                (int(since_ts),),
            ).fetchall()
            return [_row_to_event(row) for row in rows]

        return self._run(job)

    # -- batches --------------------------------------------------------

    def create_batch_with_events(
        self,
        start_ts: int,
        end_ts: int,
        event_ids: Sequence[int],
    ) -> int:
        """Insert the batch row and its event links in one transaction."""

        def job() -> int:
            with self._transaction() as conn:
                cursor = conn.execute(
                    "INSERT INTO analysis_batches (batch_start_ts, batch_end_ts, status) VALUES (?, ?, ?)",
                    (int(start_ts), int(end_ts), BatchStatus.PENDING),
                )
                batch_id = int(cursor.lastrowid)
                conn.executemany(
                    "INSERT INTO batch_event_links (batch_id, event_id) VALUES (?, ?)",
                    [(batch_id, int(event_id)) for event_id in event_ids],
                )
                return batch_id

        return self._run(job)

    def set_batch_status(self, batch_id: int, status: str, reason: str | None = None) -> None:
        if status not in BatchStatus.ALL:
            raise ValueError(f"Unknown batch status: {status}")

        def job() -> None:
            self._db().execute(
                "UPDATE analysis_batches SET status = ?, reason = ? WHERE id = ?",
                (status, reason, int(batch_id)),
            )

        self._run(job)

    def set_batch_transcription(
        self,
        batch_id: int,
        detailed_transcription: str | None,
        llm_metadata: str | None,
    ) -> None:
        def job() -> None:
            self._db().execute(
                "UPDATE analysis_batches SET detailed_transcription = ?, llm_metadata = ? WHERE id = ?",
                (detailed_transcription, llm_metadata, int(batch_id)),
            )

        self._run(job)

    def get_batch(self, batch_id: int) -> Batch | None:
        def job() -> Batch | None:
            row = self._db().execute(
                """
                SELECT id, batch_start_ts, batch_end_ts, status, reason, created_at
                FROM analysis_batches
                WHERE id = ?
                """,
                (int(batch_id),),
            ).fetchone()
            return _row_to_batch(row) if row is not None else None

        return self._run(job)

    def fetch_next_batch_by_status(self, status: str) -> Batch | None:
        def job() -> Batch | None:
            row = self._db().execute(
                """
                SELECT id, batch_start_ts, batch_end_ts, status, reason, created_at
                FROM analysis_batches
                WHERE status = ?
                ORDER BY batch_start_ts ASC, id ASC
                LIMIT 1
                """,
                (status,),
            ).fetchone()
            return _row_to_batch(row) if row is not None else None

        return self._run(job)

    def fetch_recent_batches(self, limit: int = 50) -> list[Batch]:
        safe_limit = max(1, min(200, int(limit)))

        def job() -> list[Batch]:
            rows = self._db().execute(
                """
                SELECT id, batch_start_ts, batch_end_ts, status, reason, created_at
                FROM analysis_batches
                ORDER BY id DESC
                LIMIT ?
                """,
                (safe_limit,),
            ).fetchall()
            return [_row_to_batch(row) for row in rows]

        return self._run(job)

    def get_batch_events(self, batch_id: int) -> list[CaptureEvent]:
        def job() -> list[CaptureEvent]:
            rows = self._db().execute(
                """
                SELECT e.id, e.captured_at, e.file_path, e.file_size
                FROM batch_event_links l
                JOIN capture_events e ON e.id = l.event_id
                WHERE l.batch_id = ?
                ORDER BY e.captured_at ASC, e.id ASC
                """,
                (int(batch_id),),
            ).fetchall()
            return [_row_to_event(row) for row in rows]

        return self._run(job)

    # -- observations ---------------------------------------------------

    def insert_observations(self, batch_id: int, observations: Sequence[Observation]) -> None:
        if not observations:
            return

        def job() -> None:
            with self._transaction() as conn:
                conn.executemany(
                    """
                    INSERT INTO observations (batch_id, start_ts, end_ts, observation, metadata, llm_model)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            int(batch_id),
                            row.start_ts,
                            row.end_ts,
                            row.text,
                            row.metadata,
                            row.model_id,
                        )
                        for row in observations
                    ],
                )

        self._run(job)

    def fetch_observations_in_range(self, start_ts: int, end_ts: int) -> list[Observation]:
        def job() -> list[Observation]:
            rows = self._db().execute(
                """
                SELECT batch_id, start_ts, end_ts, observation, metadata, llm_model
                FROM observations
                WHERE start_ts < ? AND end_ts > ?
                ORDER BY start_ts ASC, id ASC
                """,
                (int(end_ts), int(start_ts)),
            ).fetchall()
            return [
                Observation(
                    start_ts=int(row["start_ts"]),
                    end_ts=int(row["end_ts"]),
                    text=str(row["observation"]),
                    metadata=row["metadata"],
                    model_id=row["llm_model"],
                    batch_id=int(row["batch_id"]),
                )
                for row in rows
            ]

        return self._run(job)

    # -- timeline cards -------------------------------------------------

    def fetch_cards_in_range(
        self,
        start_ts: int,
        end_ts: int,
        include_system: bool = True,
    ) -> list[ActivityCard]:
        where_system = "" if include_system else "AND category != ?"
        params: tuple[Any, ...] = (int(end_ts), int(start_ts))
        if not include_system:
            params += (SYSTEM_CATEGORY,)

        def job() -> list[ActivityCard]:
            rows = self._db().execute(
                f"""
                SELECT {_CARD_COLUMNS}
                FROM timeline_cards
                WHERE is_deleted = 0
                  AND start_ts < ?
                  AND end_ts > ?
                  {where_system}
                ORDER BY start_ts ASC, id ASC
                """,
                params,
            ).fetchall()
            return [_row_to_card(row) for row in rows]

        return self._run(job)

    def fetch_cards_for_day(self, day_key: str) -> list[ActivityCard]:
        def job() -> list[ActivityCard]:
            rows = self._db().execute(
                f"""
                SELECT {_CARD_COLUMNS}
                FROM timeline_cards
                WHERE day = ? AND is_deleted = 0
                ORDER BY start_ts ASC, id ASC
                """,
                (day_key,),
            ).fetchall()
            return [_row_to_card(row) for row in rows]

        return self._run(job)

    def get_card(self, card_id: int) -> ActivityCard | None:
        def job() -> ActivityCard | None:
            row = self._db().execute(
                f"SELECT {_CARD_COLUMNS} FROM timeline_cards WHERE id = ?",
                (int(card_id),),
            ).fetchone()
            return _row_to_card(row) if row is not None else None

        return self._run(job)

    def replace_cards_in_range(
        self,
        from_ts: int,
        to_ts: int,
        batch_id: int,
        new_cards: Sequence[NewCard],
    ) -> ReplaceResult:
        """Atomically swap the cards overlapping ``[from_ts, to_ts)`` for ``new_cards``.

        Every overlapping non-System card is soft-deleted. System cards are only
        removed when they belong to ``batch_id``, so error cards left by other
        batches survive a regeneration of their range. Overlapping non-System
        cards in ``new_cards`` are rejected with ``ValueError`` before anything
        is written.
        """
        ordered = sorted(
            (card for card in new_cards if card.category != SYSTEM_CATEGORY),
            key=lambda card: card.start_ts,
        )
        for previous, card in zip(ordered, ordered[1:]):
            if card.start_ts < previous.end_ts:
                raise ValueError(
                    f"New cards overlap: {previous.title!r} [{previous.start_ts}, {previous.end_ts}) "
                    f"and {card.title!r} [{card.start_ts}, {card.end_ts})"
                )

        def job() -> ReplaceResult:
            with self._transaction() as conn:
                overlapping = conn.execute(
                    """
                    SELECT id, category, batch_id, video_summary_url
                    FROM timeline_cards
                    WHERE is_deleted = 0
                      AND start_ts < ?
                      AND end_ts > ?
                    """,
                    (int(to_ts), int(from_ts)),
                ).fetchall()

                ids_to_delete: list[int] = []
                removed_video_refs: list[str] = []
                for row in overlapping:
                    owner = row["batch_id"]
                    if row["category"] == SYSTEM_CATEGORY and (owner is None or int(owner) != batch_id):
                        continue
                    ids_to_delete.append(int(row["id"]))
                    if row["video_summary_url"]:
                        removed_video_refs.append(str(row["video_summary_url"]))

                if ids_to_delete:
                    placeholders = ",".join("?" for _ in ids_to_delete)
                    conn.execute(
                        f"UPDATE timeline_cards SET is_deleted = 1 WHERE id IN ({placeholders})",
                        ids_to_delete,
                    )
                    conn.execute(
                        f"DELETE FROM timeline_cards_fts WHERE rowid IN ({placeholders})",
                        ids_to_delete,
                    )

                inserted_ids: list[int] = []
                for card in new_cards:
                    cursor = conn.execute(
                        """
                        INSERT INTO timeline_cards (
                            batch_id, "start", "end", start_ts, end_ts, day,
                            title, summary, category, subcategory, detailed_summary, metadata
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            int(batch_id),
                            format_clock_ascii(card.start_ts),
                            format_clock_ascii(card.end_ts),
                            card.start_ts,
                            card.end_ts,
                            day_key_from_unix_seconds(card.start_ts),
                            card.title,
                            card.summary,
                            card.category,
                            card.subcategory,
                            card.detailed_summary,
                            card.metadata,
                        ),
                    )
                    card_id = int(cursor.lastrowid)
                    _index_card(conn, card_id)
                    inserted_ids.append(card_id)

            logger.debug(
                "database.replace_cards from=%s to=%s batch=%s removed=%s inserted=%s",
                from_ts,
                to_ts,
                batch_id,
                len(ids_to_delete),
                len(inserted_ids),
            )
            return ReplaceResult(inserted_card_ids=inserted_ids, removed_video_refs=removed_video_refs)

        return self._run(job)

    def update_card_category(
        self,
        card_id: int,
        category: str,
        subcategory: str | None = None,
    ) -> None:
        def job() -> None:
            with self._transaction() as conn:
                conn.execute(
                    "UPDATE timeline_cards SET category = ?, subcategory = ? WHERE id = ?",
                    (category, subcategory, int(card_id)),
                )
                conn.execute("DELETE FROM timeline_cards_fts WHERE rowid = ?", (int(card_id),))
                _index_card(conn, int(card_id))

        self._run(job)

    def set_card_video_ref(self, card_id: int, video_ref: str | None) -> None:
        def job() -> None:
            self._db().execute(
                "UPDATE timeline_cards SET video_summary_url = ? WHERE id = ?",
                (video_ref, int(card_id)),
            )

        self._run(job)

    def search_cards(self, query: str, limit: int = 50) -> list[ActivityCard]:
        match = _fts_query(query)
        if not match:
            return []

        def job() -> list[ActivityCard]:
            rows = self._db().execute(
                f"""
                SELECT {", ".join("c." + name.strip() for name in _CARD_COLUMNS.split(","))}
                FROM timeline_cards_fts f
                JOIN timeline_cards c ON c.id = f.rowid
                WHERE timeline_cards_fts MATCH ?
                  AND c.is_deleted = 0
                ORDER BY c.start_ts DESC
                LIMIT ?
                """,
                (match, max(1, int(limit))),
            ).fetchall()
            return [_row_to_card(row) for row in rows]

        return self._run(job)

    def count_search_index_rows(self) -> int:
        def job() -> int:
            return int(self._db().execute("SELECT COUNT(*) FROM timeline_cards_fts").fetchone()[0])

        return self._run(job)

    # -- model call audit -----------------------------------------------

    def insert_model_call(self, record: ModelCallRecord) -> int:
        def job() -> int:
            cursor = self._db().execute(
                """
                INSERT INTO model_calls (
                    batch_id, call_group_id, attempt, provider, model, operation, status,
                    latency_ms, http_status, request_method, request_url, request_body,
                    response_body, error_kind, error_message
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.batch_id,
                    record.call_group_id,
                    record.attempt,
                    record.provider,
                    record.model,
                    record.operation,
                    record.status,
                    record.latency_ms,
                    record.http_status,
                    record.request_method,
                    record.request_url,
                    record.request_body,
                    record.response_body,
                    record.error_kind,
                    record.error_message,
                ),
            )
            return int(cursor.lastrowid)

        return self._run(job)

    def fetch_model_calls(self, batch_id: int | None = None, limit: int = 100) -> list[ModelCallRecord]:
        def job() -> list[ModelCallRecord]:
            sql = """
                SELECT batch_id, call_group_id, attempt, provider, model, operation, status,
                       latency_ms, http_status, request_method, request_url, request_body,
                       response_body, error_kind, error_message
                FROM model_calls
            """
            params: tuple[Any, ...] = ()
            if batch_id is not None:
                sql += " WHERE batch_id = ?"
                params = (int(batch_id),)
            sql += " ORDER BY id ASC LIMIT ?"
            rows = self._db().execute(sql, params + (max(1, int(limit)),)).fetchall()
            return [ModelCallRecord(**dict(row)) for row in rows]

        return self._run(job)


def _index_card(conn: sqlite3.Connection, card_id: int) -> None:
    conn.execute(
        """
        INSERT INTO timeline_cards_fts(
            rowid, title, summary, detailed_summary, metadata, category, subcategory
        )
        SELECT id, title, summary, detailed_summary, metadata, category, subcategory
        FROM timeline_cards
        WHERE id = ? AND is_deleted = 0
        """,
        (card_id,),
    )


def _fts_query(query: str) -> str:
    tokens = re.findall(r"\w+", query, flags=re.UNICODE)
    return " ".join(f'"{token}"*' for token in tokens)


def _row_to_event(row: sqlite3.Row) -> CaptureEvent:
    file_size = row["file_size"]
    return CaptureEvent(
        id=int(row["id"]),
        captured_at=int(row["captured_at"]),
        image_ref=str(row["file_path"]),
        file_size=int(file_size) if file_size is not None else None,
    )


def _row_to_batch(row: sqlite3.Row) -> Batch:
    return Batch(
        id=int(row["id"]),
        start_ts=int(row["batch_start_ts"]),
        end_ts=int(row["batch_end_ts"]),
        status=str(row["status"]),
        reason=row["reason"],
        created_at=str(row["created_at"]),
    )


def _row_to_card(row: sqlite3.Row) -> ActivityCard:
    batch_id = row["batch_id"]
    return ActivityCard(
        id=int(row["id"]),
        batch_id=int(batch_id) if batch_id is not None else None,
        start_ts=int(row["start_ts"]),
        end_ts=int(row["end_ts"]),
        day_key=str(row["day"]),
        start_display=str(row["start"]),
        end_display=str(row["end"]),
        category=str(row["category"]),
        subcategory=row["subcategory"],
        title=str(row["title"]),
        summary=row["summary"],
        detailed_summary=row["detailed_summary"],
        metadata=row["metadata"],
        video_ref=row["video_summary_url"],
        is_deleted=bool(row["is_deleted"]),
    )
