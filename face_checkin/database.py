import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterator, List, Optional

import numpy as np

from .exceptions import AppendConflict, DatabaseError, DuplicateIdentity, IdentityNotFound, StoreUnavailable
from .types import AttendanceEvent, EnrolledSet, Identity, Transition


@dataclass
class IdentityProfile:
    identity_key: str
    display_name: str
    enrolled: bool
    enrolled_at: Optional[str]
    quality_score: Optional[float]
    created_at: str
    updated_at: str


def _ts(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def _store_error(message: str, exc: sqlite3.Error) -> DatabaseError:
    if isinstance(exc, sqlite3.OperationalError):
        return StoreUnavailable(f"{message}: {exc}")
    return DatabaseError(f"{message}: {exc}")


class AttendanceDatabase:
    """sqlite-backed enrollment store and attendance event log."""

    def __init__(self, db_path: Path, timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize(self) -> None:
        try:
            with self._transaction() as conn:
                conn.execute("PRAGMA journal_mode = WAL;")
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS identities (
                        identity_key TEXT PRIMARY KEY,
                        display_name TEXT NOT NULL,
                        embedding BLOB,
                        embedding_dim INTEGER,
                        quality_score REAL,
                        enrolled_at TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS attendance_events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        identity_key TEXT NOT NULL,
                        transition TEXT NOT NULL CHECK (transition IN ('entry', 'exit')),
                        timestamp TEXT NOT NULL,
                        similarity REAL NOT NULL,
                        capture_ref TEXT,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (identity_key) REFERENCES identities(identity_key) ON DELETE CASCADE
                    );

                    -- Serves the per-identity "most recent event" read.
                    CREATE INDEX IF NOT EXISTS idx_events_identity_ts
                        ON attendance_events (identity_key, timestamp DESC, id DESC);
                    CREATE INDEX IF NOT EXISTS idx_events_ts ON attendance_events (timestamp);
                    """
                )
        except sqlite3.Error as exc:
            raise _store_error("Failed to initialize database", exc) from exc

    @staticmethod
    def _identity_from_row(row: sqlite3.Row) -> Identity:
        embedding = None
        if row["embedding"] is not None:
            embedding = np.frombuffer(row["embedding"], dtype=np.float32, count=row["embedding_dim"]).copy()
        return Identity(
            identity_key=row["identity_key"],
            display_name=row["display_name"],
            embedding=embedding,
            enrolled_at=_parse_ts(row["enrolled_at"]),
            quality_score=row["quality_score"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _event_from_row(row: sqlite3.Row) -> AttendanceEvent:
        return AttendanceEvent(
            identity_key=row["identity_key"],
            transition=Transition(row["transition"]),
            timestamp=datetime.fromisoformat(row["timestamp"]),
            similarity=float(row["similarity"]),
            capture_ref=row["capture_ref"],
            event_id=int(row["id"]),
        )

    # Enrollment store

    def create_identity(self, identity_key: str, display_name: str) -> Identity:
        now = _ts(datetime.now())
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO identities (identity_key, display_name, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (identity_key, display_name, now, now),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateIdentity(f"Identity {identity_key} already exists.") from exc
        except sqlite3.Error as exc:
            raise _store_error(f"Failed to create identity {identity_key}", exc) from exc

        created = self.get(identity_key)
        if created is None:
            raise DatabaseError(f"Identity {identity_key} vanished after insert.")
        return created

    def get(self, identity_key: str) -> Optional[Identity]:
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT * FROM identities WHERE identity_key = ?",
                    (identity_key,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise _store_error(f"Failed to load identity {identity_key}", exc) from exc
        return self._identity_from_row(row) if row is not None else None

    def upsert(self, identity: Identity, allow_replace: Optional[bool] = None) -> Identity:
        """Insert or replace an identity; the embedding swap is a single statement.

        ``allow_replace=False`` refuses to overwrite an enrolled embedding and
        ``allow_replace=True`` refuses to create a new row. Either check runs in
        the same write transaction as the statement, so it holds across
        processes sharing the database file. ``None`` skips both checks.
        """
        blob = None
        dim = None
        if identity.embedding is not None:
            vector = np.asarray(identity.embedding, dtype=np.float32)
            if vector.ndim != 1:
                raise DatabaseError("Embedding must be a 1D vector.")
            blob = vector.tobytes()
            dim = int(vector.size)

        now = _ts(datetime.now())
        enrolled_at = _ts(identity.enrolled_at) if identity.enrolled_at is not None else None
        created_at = _ts(identity.created_at) if identity.created_at is not None else now

        try:
            with self._transaction(immediate=allow_replace is not None) as conn:
                if allow_replace is not None:
                    self._check_replace(conn, identity.identity_key, allow_replace)
                conn.execute(
                    """
                    INSERT INTO identities (
                        identity_key, display_name, embedding, embedding_dim,
                        quality_score, enrolled_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(identity_key) DO UPDATE SET
                        display_name = excluded.display_name,
                        embedding = excluded.embedding,
                        embedding_dim = excluded.embedding_dim,
                        quality_score = excluded.quality_score,
                        enrolled_at = excluded.enrolled_at,
                        updated_at = excluded.updated_at
                    """,
                    (
                        identity.identity_key,
                        identity.display_name,
                        blob,
                        dim,
                        identity.quality_score,
                        enrolled_at,
                        created_at,
                        now,
                    ),
                )
        except sqlite3.Error as exc:
            raise _store_error(f"Failed to save identity {identity.identity_key}", exc) from exc

        saved = self.get(identity.identity_key)
        if saved is None:
            raise DatabaseError(f"Identity {identity.identity_key} vanished after upsert.")
        return saved

    @staticmethod
    def _check_replace(conn: sqlite3.Connection, identity_key: str, allow_replace: bool) -> None:
        row = conn.execute(
            "SELECT embedding IS NOT NULL AS enrolled FROM identities WHERE identity_key = ?",
            (identity_key,),
        ).fetchone()
        if row is None and allow_replace:
            raise IdentityNotFound(f"Cannot re-enroll unknown identity {identity_key}.")
        if row is not None and row["enrolled"] and not allow_replace:
            raise DuplicateIdentity(f"Identity {identity_key} is already enrolled.")

    def list_enrolled(self) -> EnrolledSet:
        taken_at = datetime.now()
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM identities
                    WHERE embedding IS NOT NULL AND embedding_dim > 0
                    ORDER BY identity_key ASC
                    """
                ).fetchall()
        except sqlite3.Error as exc:
            raise _store_error("Failed to load enrolled identities", exc) from exc

        return EnrolledSet(
            identities=tuple(self._identity_from_row(row) for row in rows),
            taken_at=taken_at,
        )

    def list_identities(self) -> List[IdentityProfile]:
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT identity_key, display_name, embedding IS NOT NULL AS enrolled,
                           enrolled_at, quality_score, created_at, updated_at
                    FROM identities
                    ORDER BY display_name COLLATE NOCASE ASC
                    """
                ).fetchall()
        except sqlite3.Error as exc:
            raise _store_error("Failed to load identities", exc) from exc

        return [
            IdentityProfile(
                identity_key=row["identity_key"],
                display_name=row["display_name"],
                enrolled=bool(row["enrolled"]),
                enrolled_at=row["enrolled_at"],
                quality_score=row["quality_score"],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def delete(self, identity_key: str) -> bool:
        """Remove an identity together with all of its attendance events."""
        try:
            with self._transaction() as conn:
                conn.execute("DELETE FROM attendance_events WHERE identity_key = ?", (identity_key,))
                cursor = conn.execute("DELETE FROM identities WHERE identity_key = ?", (identity_key,))
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise _store_error(f"Failed to delete identity {identity_key}", exc) from exc

    # Event log

    def append(
        self,
        event: AttendanceEvent,
        expected_latest_id: Optional[int] = None,
        guarded: bool = False,
    ) -> AttendanceEvent:
        """Append one event and return it with its id.

        With ``guarded=True`` the append only succeeds if the identity's
        latest event id still equals ``expected_latest_id`` (``None`` meaning
        "no event yet"); otherwise :class:`AppendConflict` is raised.
        """
        try:
            with self._transaction(immediate=True) as conn:
                if guarded:
                    row = conn.execute(
                        """
                        SELECT id FROM attendance_events
                        WHERE identity_key = ?
                        ORDER BY timestamp DESC, id DESC
                        LIMIT 1
                        """,
                        (event.identity_key,),
                    ).fetchone()
                    current = int(row["id"]) if row is not None else None
                    if current != expected_latest_id:
                        raise AppendConflict(
                            f"Latest event for {event.identity_key} changed "
                            f"(expected {expected_latest_id}, found {current})."
                        )
                cursor = conn.execute(
                    """
                    INSERT INTO attendance_events (
                        identity_key, transition, timestamp, similarity, capture_ref, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.identity_key,
                        event.transition.value,
                        _ts(event.timestamp),
                        float(event.similarity),
                        event.capture_ref,
                        _ts(datetime.now()),
                    ),
                )
                event_id = int(cursor.lastrowid)
        except sqlite3.IntegrityError as exc:
            raise DatabaseError(f"Failed to append event for {event.identity_key}: {exc}") from exc
        except sqlite3.Error as exc:
            raise _store_error(f"Failed to append event for {event.identity_key}", exc) from exc

        return AttendanceEvent(
            identity_key=event.identity_key,
            transition=event.transition,
            timestamp=event.timestamp,
            similarity=event.similarity,
            capture_ref=event.capture_ref,
            event_id=event_id,
        )

    def latest_for(self, identity_key: str) -> Optional[AttendanceEvent]:
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM attendance_events
                    WHERE identity_key = ?
                    ORDER BY timestamp DESC, id DESC
                    LIMIT 1
                    """,
                    (identity_key,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise _store_error(f"Failed to load latest event for {identity_key}", exc) from exc
        return self._event_from_row(row) if row is not None else None

    def events_for(self, identity_key: str, limit: int = 100) -> List[AttendanceEvent]:
        safe_limit = max(1, min(10_000, int(limit)))
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM attendance_events
                    WHERE identity_key = ?
                    ORDER BY timestamp ASC, id ASC
                    LIMIT ?
                    """,
                    (identity_key, safe_limit),
                ).fetchall()
        except sqlite3.Error as exc:
            raise _store_error(f"Failed to load events for {identity_key}", exc) from exc
        return [self._event_from_row(row) for row in rows]

    def list_by_date_range(self, start: datetime, end: datetime) -> List[AttendanceEvent]:
        """Events with ``start <= timestamp < end``, oldest first."""
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM attendance_events
                    WHERE timestamp >= ? AND timestamp < ?
                    ORDER BY timestamp ASC, id ASC
                    """,
                    (_ts(start), _ts(end)),
                ).fetchall()
        except sqlite3.Error as exc:
            raise _store_error("Failed to search attendance", exc) from exc
        return [self._event_from_row(row) for row in rows]

    def attendance_stats(self, day: Optional[date] = None) -> dict[str, int]:
        day = day or datetime.now().date()
        start = datetime.combine(day, datetime.min.time())
        end = start + timedelta(days=1)
        try:
            with self._transaction() as conn:
                identities = conn.execute("SELECT COUNT(*) AS c FROM identities").fetchone()["c"]
                enrolled = conn.execute(
                    "SELECT COUNT(*) AS c FROM identities WHERE embedding IS NOT NULL"
                ).fetchone()["c"]
                rows = conn.execute(
                    """
                    SELECT transition, COUNT(*) AS c FROM attendance_events
                    WHERE timestamp >= ? AND timestamp < ?
                    GROUP BY transition
                    """,
                    (_ts(start), _ts(end)),
                ).fetchall()
        except sqlite3.Error as exc:
            raise _store_error("Failed to load attendance stats", exc) from exc

        per_type = {row["transition"]: int(row["c"]) for row in rows}
        entries = per_type.get(Transition.ENTRY.value, 0)
        exits = per_type.get(Transition.EXIT.value, 0)
        return {
            "identities": int(identities),
            "enrolled": int(enrolled),
            "events": entries + exits,
            "entries": entries,
            "exits": exits,
        }
