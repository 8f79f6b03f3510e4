"""SQLite implementations of RecordStore and JobQueue.

This module provides the local, crash-safe persistence used by the worker:
- sqlite-utils for schema management and row access
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic dequeue
- Exponential backoff retry for database lock handling
- A state transition log for every record status change
"""

import logging
import sqlite3
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlite_utils import Database

from ..errors import JobCancelled, QueueError, RecordConflict, RecordUpdateFailed
from .backends import JobQueue, RecordStore
from .models import (
    ALLOWED_TRANSITIONS,
    StateTransition,
    TranscodingJob,
    UploadStatus,
    VideoProcessingRecord,
)

logger = logging.getLogger(__name__)

RECORD_SCHEMA_SQL = """
-- One row per movie
CREATE TABLE IF NOT EXISTS video_records (
    movie_id INTEGER PRIMARY KEY,
    upload_status TEXT NOT NULL,
    raw_file_path TEXT,
    hls_playlist_url TEXT,
    error_message TEXT,
    uploaded_at TEXT NOT NULL,
    processed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_records_status ON video_records(upload_status);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    movie_id INTEGER NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT,
    FOREIGN KEY(movie_id) REFERENCES video_records(movie_id)
);

CREATE INDEX IF NOT EXISTS idx_transitions_movie ON state_transitions(movie_id, timestamp);
"""

QUEUE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS queue_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue_name TEXT NOT NULL,
    payload TEXT NOT NULL,
    enqueued_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_queue_name_id ON queue_messages(queue_name, id);
"""

RECORD_FIELDS = frozenset(VideoProcessingRecord.model_fields.keys()) - {"movie_id"}


def open_database(db_path: str) -> Database:
    """Open a SQLite file shared by the worker thread and the main thread.

    Enables WAL mode; callers serialize access with their own lock.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path), check_same_thread=False, timeout=10.0)
    db = Database(conn)

    db.conn.execute("PRAGMA journal_mode=WAL")
    db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
    db.conn.commit()
    return db


def _to_iso(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class SQLiteRecordStore(RecordStore):
    """SQLite-based record store with ACID guarantees.

    Features:
    - movie_id primary key (at most one record per movie)
    - Invariant validation before every write
    - Status changes checked against ALLOWED_TRANSITIONS
    - Status changes and their audit entries written in one transaction
    """

    def __init__(self, db_path: str):
        """Initialize record database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db = open_database(db_path)
        self._lock = threading.RLock()
        self.db.executescript(RECORD_SCHEMA_SQL)

    def create_record(self, record: VideoProcessingRecord) -> None:
        row = self._record_to_row(record)
        with self._lock:
            try:
                with self.db.conn:
                    self.db.conn.execute(
                        """
                        INSERT INTO video_records (
                            movie_id, upload_status, raw_file_path, hls_playlist_url,
                            error_message, uploaded_at, processed_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            row["movie_id"], row["upload_status"], row["raw_file_path"],
                            row["hls_playlist_url"], row["error_message"],
                            row["uploaded_at"], row["processed_at"],
                        ),
                    )
                    self._log_transition(
                        movie_id=record.movie_id,
                        from_state=None,
                        to_state=row["upload_status"],
                        error=record.error_message,
                    )
            except sqlite3.IntegrityError as e:
                raise RecordConflict(
                    f"processing record already exists for movie_id={record.movie_id}"
                ) from e
            except sqlite3.Error as e:
                raise RecordUpdateFailed(
                    f"failed to create record for movie_id={record.movie_id}: {e}"
                ) from e

    def update_record(
        self,
        movie_id: int,
        fields: Dict[str, Any],
        worker_id: Optional[str] = None,
    ) -> VideoProcessingRecord:
        unknown = set(fields) - RECORD_FIELDS
        if unknown:
            raise RecordUpdateFailed(f"unknown record fields: {', '.join(sorted(unknown))}")

        with self._lock:
            try:
                current = self.find_record_by_movie_id(movie_id)
                if current is None:
                    raise RecordUpdateFailed(f"no processing record for movie_id={movie_id}")

                try:
                    new_status = UploadStatus(fields.get("upload_status", current.upload_status))
                except ValueError as e:
                    raise RecordUpdateFailed(f"unknown status for movie_id={movie_id}: {e}") from e
                if new_status not in ALLOWED_TRANSITIONS[current.upload_status]:
                    raise RecordUpdateFailed(
                        f"illegal transition for movie_id={movie_id}: "
                        f"{current.upload_status.value} → {new_status.value}"
                    )

                merged = current.model_dump()
                merged.update(fields)
                try:
                    updated = VideoProcessingRecord(**merged)
                except ValidationError as e:
                    raise RecordUpdateFailed(
                        f"update for movie_id={movie_id} violates record invariants: {e}"
                    ) from e

                row = self._record_to_row(updated)
                with self.db.conn:
                    self.db.conn.execute(
                        """
                        UPDATE video_records
                        SET upload_status = ?,
                            raw_file_path = ?,
                            hls_playlist_url = ?,
                            error_message = ?,
                            uploaded_at = ?,
                            processed_at = ?
                        WHERE movie_id = ?
                        """,
                        (
                            row["upload_status"], row["raw_file_path"], row["hls_playlist_url"],
                            row["error_message"], row["uploaded_at"], row["processed_at"],
                            movie_id,
                        ),
                    )
                    if updated.upload_status != current.upload_status:
                        self._log_transition(
                            movie_id=movie_id,
                            from_state=current.upload_status.value,
                            to_state=updated.upload_status.value,
                            worker_id=worker_id,
                            error=updated.error_message,
                        )
                return updated

            except (sqlite3.Error, OverflowError) as e:
                raise RecordUpdateFailed(f"failed to update movie_id={movie_id}: {e}") from e

    def find_record_by_movie_id(self, movie_id: int) -> Optional[VideoProcessingRecord]:
        with self._lock:
            rows = list(self.db["video_records"].rows_where("movie_id = ?", [movie_id]))
        if not rows:
            return None
        return self._row_to_record(rows[0])

    def get_all_records(self, status_filter: Optional[str] = None) -> List[VideoProcessingRecord]:
        """Complexity: O(n) scan (acceptable for status commands)."""
        with self._lock:
            if status_filter:
                rows = list(self.db["video_records"].rows_where(
                    "upload_status = ?", [status_filter], order_by="movie_id"
                ))
            else:
                rows = list(self.db["video_records"].rows_where(order_by="movie_id"))
        return [self._row_to_record(row) for row in rows]

    def get_transitions(self, movie_id: int) -> List[StateTransition]:
        with self._lock:
            rows = list(self.db["state_transitions"].rows_where(
                "movie_id = ?", [movie_id], order_by="id"
            ))
        return [
            StateTransition(
                id=row["id"],
                movie_id=row["movie_id"],
                from_state=row["from_state"],
                to_state=row["to_state"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                worker_id=row["worker_id"],
                error_snippet=row["error_snippet"],
            )
            for row in rows
        ]

    def _log_transition(
        self,
        movie_id: int,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Write an audit entry; caller owns the transaction."""
        self.db.conn.execute(
            """
            INSERT INTO state_transitions
                (movie_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                movie_id,
                from_state,
                to_state,
                datetime.now().isoformat(),
                worker_id,
                error[:200] if error else None,
            ),
        )

    @staticmethod
    def _record_to_row(record: VideoProcessingRecord) -> Dict[str, Any]:
        status = record.upload_status
        return {
            "movie_id": record.movie_id,
            "upload_status": status.value if isinstance(status, UploadStatus) else status,
            "raw_file_path": record.raw_file_path,
            "hls_playlist_url": record.hls_playlist_url,
            "error_message": record.error_message,
            "uploaded_at": _to_iso(record.uploaded_at),
            "processed_at": _to_iso(record.processed_at),
        }

    @staticmethod
    def _row_to_record(row: Dict[str, Any]) -> VideoProcessingRecord:
        return VideoProcessingRecord(
            movie_id=row["movie_id"],
            upload_status=UploadStatus(row["upload_status"]),
            raw_file_path=row["raw_file_path"],
            hls_playlist_url=row["hls_playlist_url"],
            error_message=row["error_message"],
            uploaded_at=datetime.fromisoformat(row["uploaded_at"]),
            processed_at=datetime.fromisoformat(row["processed_at"]) if row["processed_at"] else None,
        )


class SQLiteJobQueue(JobQueue):
    """SQLite-backed FIFO for single-host development setups.

    Features:
    - Atomic pop via DELETE...RETURNING inside BEGIN IMMEDIATE
    - Exponential backoff retry for database lock contention
    - Polling consume that wakes early on cancellation

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so two
      workers can never pop the same row
    """

    def __init__(self, db_path: str, name: str = "transcoding:jobs", poll_interval_s: float = 0.25):
        self.db_path = Path(db_path)
        self.name = name
        self.poll_interval_s = poll_interval_s
        self.db = open_database(db_path)
        self._lock = threading.Lock()
        self.db.executescript(QUEUE_SCHEMA_SQL)

    def publish(self, job: TranscodingJob) -> None:
        try:
            with self._lock, self.db.conn:
                self.db.conn.execute(
                    "INSERT INTO queue_messages (queue_name, payload, enqueued_at) VALUES (?, ?, ?)",
                    (self.name, job.to_message(), datetime.now().isoformat()),
                )
        except sqlite3.Error as e:
            raise QueueError(f"failed to push job to queue: {e}") from e
        logger.info("Published transcoding job for movie_id=%d to %s", job.movie_id, self.name)

    def consume(
        self,
        timeout_s: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[TranscodingJob]:
        deadline = time.monotonic() + timeout_s

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelled("consume cancelled")

            payload = self._pop_with_retry()
            if payload is not None:
                try:
                    return TranscodingJob.from_message(payload)
                except (ValidationError, UnicodeDecodeError) as e:
                    raise QueueError(f"failed to decode job payload {payload!r}: {e}") from e

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None

            wait_s = min(self.poll_interval_s, remaining)
            if cancel_event is not None:
                cancel_event.wait(wait_s)
            else:
                time.sleep(wait_s)

    def size(self) -> int:
        with self._lock:
            row = self.db.conn.execute(
                "SELECT COUNT(*) FROM queue_messages WHERE queue_name = ?", (self.name,)
            ).fetchone()
        return row[0]

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()

    def _pop_with_retry(self, max_retries: int = 3) -> Optional[str]:
        """Pop the oldest payload with exponential backoff on SQLITE_BUSY.

        Backoff: 100ms, 200ms, 400ms delays
        """
        for attempt in range(max_retries):
            try:
                with self._lock, self.db.conn:
                    self.db.conn.execute("BEGIN IMMEDIATE")
                    cursor = self.db.conn.execute(
                        """
                        DELETE FROM queue_messages
                        WHERE id = (
                            SELECT id FROM queue_messages
                            WHERE queue_name = ?
                            ORDER BY id ASC
                            LIMIT 1
                        )
                        RETURNING payload
                        """,
                        (self.name,),
                    )
                    rows = cursor.fetchall()
                return rows[0][0] if rows else None

            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise QueueError(f"failed to pop job from queue: {e}") from e

        return None
