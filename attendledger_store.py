#!/usr/bin/env python3
"""
AttendLedger Event Store
=========================
SQLite-backed persistence for attendance sessions, the append-only
activity event log, the verification record ledger, the bus/outbox
table and the audit log.

Events are only ever appended. Sessions change through metric updates
and forward-only status transitions. Records are written once, inside
a `BEGIN IMMEDIATE` transaction that also finalizes the session.

Usage:
    from attendledger_store import Store
    store = Store("attendledger.db")

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

from attendledger_ledger import canonical_json
from attendledger_types import (
    ALLOWED_TRANSITIONS,
    ActivityEvent,
    AttendanceSession,
    EventSource,
    EventTopic,
    EventType,
    InvalidTransition,
    RecordAlreadyExists,
    SessionMetadata,
    SessionNotFound,
    SessionStatus,
    StoreError,
    ValidationStatus,
    VerificationRecord,
    config,
    iso,
    parse_ts,
    utcnow,
)

logger = logging.getLogger("al-store")


SCHEMA = """
    CREATE TABLE IF NOT EXISTS meetings (
        meeting_id          TEXT PRIMARY KEY,
        topic               TEXT,
        scheduled_start     TEXT NOT NULL,
        duration_min        REAL NOT NULL,
        created_at          TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS sessions (
        session_id              TEXT PRIMARY KEY,
        participant_id          TEXT NOT NULL,
        meeting_id              TEXT NOT NULL,
        scheduled_start         TEXT NOT NULL,
        scheduled_duration_min  REAL NOT NULL,
        join_time               TEXT,
        leave_time              TEXT,
        status                  TEXT NOT NULL DEFAULT 'IN_PROGRESS',
        total_duration_min      REAL NOT NULL DEFAULT 0,
        active_duration_min     REAL NOT NULL DEFAULT 0,
        idle_duration_min       REAL NOT NULL DEFAULT 0,
        attendance_percent      REAL NOT NULL DEFAULT 0,
        leave_rejoin_count      INTEGER NOT NULL DEFAULT 0,
        is_valid                INTEGER,
        metadata                TEXT NOT NULL DEFAULT '{}',
        processing_token        TEXT,
        processing_claimed_at   TEXT,
        created_at              TEXT NOT NULL,
        updated_at              TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_sessions_pair ON sessions(participant_id, meeting_id);
    CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);

    CREATE TABLE IF NOT EXISTS activity_events (
        seq         INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id    TEXT NOT NULL UNIQUE,
        session_id  TEXT NOT NULL,
        event_type  TEXT NOT NULL,
        timestamp   TEXT NOT NULL,
        source      TEXT NOT NULL,
        payload     TEXT NOT NULL DEFAULT '{}',
        received_at TEXT NOT NULL,
        FOREIGN KEY (session_id) REFERENCES sessions(session_id)
    );
    CREATE INDEX IF NOT EXISTS idx_activity_session ON activity_events(session_id);

    CREATE TABLE IF NOT EXISTS records (
        record_id               TEXT PRIMARY KEY,
        card_number             TEXT NOT NULL UNIQUE,
        subject_session_id      TEXT NOT NULL UNIQUE,
        chain_scope             TEXT NOT NULL,
        sequence                INTEGER NOT NULL,
        canonical               TEXT NOT NULL,
        content_hash            TEXT NOT NULL,
        previous_record_hash    TEXT NOT NULL,
        record_hash             TEXT NOT NULL,
        signature               TEXT NOT NULL,
        validation_status       TEXT NOT NULL,
        created_at              TEXT NOT NULL,
        UNIQUE (chain_scope, sequence),
        FOREIGN KEY (subject_session_id) REFERENCES sessions(session_id)
    );

    CREATE TABLE IF NOT EXISTS rejected_events (
        rejection_id    TEXT PRIMARY KEY,
        reason          TEXT NOT NULL,
        message         TEXT NOT NULL,
        raw             TEXT NOT NULL,
        received_at     TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS events (
        event_id    TEXT PRIMARY KEY,
        topic       TEXT NOT NULL,
        payload     TEXT NOT NULL,
        timestamp   TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS audit_log (
        audit_id    TEXT PRIMARY KEY,
        action      TEXT NOT NULL,
        actor       TEXT NOT NULL DEFAULT 'system',
        detail      TEXT NOT NULL DEFAULT '{}',
        timestamp   TEXT NOT NULL
    );
"""

TERMINAL = (SessionStatus.FINALIZED.value, SessionStatus.REJECTED.value)


class Store:
    """SQLite-backed persistent store. Survives restarts."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DB_PATH
        self.start_time = utcnow()
        self._init_db()

    # ── Connections ──

    def _get_db(self) -> sqlite3.Connection:
        """Open a connection with WAL mode for concurrent readers."""
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back and raise StoreError on sqlite failures."""
        conn = self._get_db()
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            conn.rollback()
            raise StoreError("Database operation failed", error=str(e)) from e
        finally:
            conn.close()

    @contextmanager
    def _write_txn(self) -> Iterator[sqlite3.Connection]:
        """
        Exclusive write transaction. BEGIN IMMEDIATE takes the database
        write lock up front so concurrent writers serialize here.
        """
        conn = self._get_db()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            raise StoreError("Database operation failed", error=str(e)) from e
        finally:
            conn.close()

    def _init_db(self):
        """Create tables if they don't exist. Safe to call multiple times."""
        conn = self._get_db()
        conn.executescript(SCHEMA)
        conn.commit()
        conn.close()
        logger.info(f"Database ready: {self.db_path}")

    # ── Meetings ──

    def upsert_meeting(self, meeting_id: str, scheduled_start: datetime,
                       duration_min: float, topic: Optional[str] = None):
        with self._db() as conn:
            conn.execute(
                """INSERT INTO meetings (meeting_id, topic, scheduled_start, duration_min, created_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(meeting_id) DO UPDATE SET
                     topic = excluded.topic,
                     scheduled_start = excluded.scheduled_start,
                     duration_min = excluded.duration_min""",
                (meeting_id, topic, iso(scheduled_start), duration_min, iso(utcnow())),
            )

    def get_meeting(self, meeting_id: str) -> Optional[Dict[str, Any]]:
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM meetings WHERE meeting_id = ?", (meeting_id,)
            ).fetchone()
        if not row:
            return None
        return {
            "meeting_id": row["meeting_id"],
            "topic": row["topic"],
            "scheduled_start": parse_ts(row["scheduled_start"]),
            "duration_min": row["duration_min"],
        }

    # ── Sessions ──

    def create_session(self, session: AttendanceSession) -> AttendanceSession:
        now = utcnow()
        session.created_at = now
        session.updated_at = now
        with self._db() as conn:
            conn.execute(
                """INSERT INTO sessions
                   (session_id, participant_id, meeting_id, scheduled_start,
                    scheduled_duration_min, join_time, leave_time, status,
                    metadata, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    session.session_id,
                    session.participant_id,
                    session.meeting_id,
                    iso(session.scheduled_start),
                    session.scheduled_duration_min,
                    iso(session.join_time),
                    iso(session.leave_time),
                    session.status.value,
                    json.dumps(session.metadata.to_dict()),
                    iso(now),
                    iso(now),
                ),
            )
        logger.info(
            f"Session opened: {session.session_id} "
            f"({session.participant_id} @ {session.meeting_id})"
        )
        return session

    def get_session(self, session_id: str, with_events: bool = True) -> AttendanceSession:
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
            if not row:
                raise SessionNotFound(f"Session not found: {session_id}", session_id=session_id)
            events = self._load_events(conn, session_id) if with_events else []
        return self._row_to_session(row, events)

    def find_session_for_event(self, participant_id: str, meeting_id: str,
                               at: datetime) -> Optional[AttendanceSession]:
        """
        Locate the session a provider event belongs to: the newest open
        session for the pair, otherwise a terminal one whose window
        (plus grace) still covers the event so late deliveries attach to it.
        """
        with self._db() as conn:
            rows = conn.execute(
                """SELECT session_id, status, scheduled_start, scheduled_duration_min
                   FROM sessions WHERE participant_id = ? AND meeting_id = ?
                   ORDER BY created_at DESC""",
                (participant_id, meeting_id),
            ).fetchall()
        for r in rows:
            if r["status"] not in TERMINAL:
                return self.get_session(r["session_id"])
        grace = timedelta(minutes=config.STALE_GRACE_MIN)
        for r in rows:
            end = parse_ts(r["scheduled_start"]) + timedelta(minutes=r["scheduled_duration_min"])
            if at <= end + grace:
                return self.get_session(r["session_id"])
        return None

    def list_sessions(self, status: Optional[SessionStatus] = None,
                      with_events: bool = True) -> List[AttendanceSession]:
        with self._db() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM sessions WHERE status = ? ORDER BY scheduled_start, created_at",
                    (status.value,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sessions ORDER BY scheduled_start, created_at"
                ).fetchall()
            return [
                self._row_to_session(r, self._load_events(conn, r["session_id"]) if with_events else [])
                for r in rows
            ]

    def save_metrics(self, session: AttendanceSession):
        """Persist computed metrics, join/leave times and metadata. Never touches status."""
        session.updated_at = utcnow()
        with self._db() as conn:
            conn.execute(
                """UPDATE sessions SET
                     join_time = ?, leave_time = ?,
                     total_duration_min = ?, active_duration_min = ?,
                     idle_duration_min = ?, attendance_percent = ?,
                     leave_rejoin_count = ?, metadata = ?, updated_at = ?
                   WHERE session_id = ?""",
                (
                    iso(session.join_time),
                    iso(session.leave_time),
                    session.total_duration_min,
                    session.active_duration_min,
                    session.idle_duration_min,
                    session.attendance_percent,
                    session.leave_rejoin_count,
                    json.dumps(session.metadata.to_dict()),
                    iso(session.updated_at),
                    session.session_id,
                ),
            )

    def transition(self, session: AttendanceSession, to_status: SessionStatus,
                   is_valid: Optional[bool] = None):
        """
        Conditional status change. The UPDATE only matches while the row
        still holds the status this caller observed.
        """
        from_status = session.status
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidTransition(
                f"{session.session_id}: {from_status.value} → {to_status.value} not allowed",
                session_id=session.session_id,
            )
        now = utcnow()
        with self._db() as conn:
            cur = conn.execute(
                """UPDATE sessions SET status = ?, is_valid = COALESCE(?, is_valid),
                     metadata = ?, processing_token = NULL, processing_claimed_at = NULL,
                     updated_at = ?
                   WHERE session_id = ? AND status = ?""",
                (
                    to_status.value,
                    None if is_valid is None else int(is_valid),
                    json.dumps(session.metadata.to_dict()),
                    iso(now),
                    session.session_id,
                    from_status.value,
                ),
            )
            if cur.rowcount != 1:
                raise InvalidTransition(
                    f"{session.session_id}: status changed concurrently",
                    session_id=session.session_id,
                )
        session.status = to_status
        if is_valid is not None:
            session.is_valid = is_valid
        session.updated_at = now
        logger.info(f"Session {session.session_id}: {from_status.value} → {to_status.value}")

    def claim_for_processing(self, session_id: str, token: str,
                             now: Optional[datetime] = None) -> bool:
        """
        Optimistic claim before finalization. Succeeds only for a COMPLETED
        session that nobody holds (or whose claim has expired).
        """
        now = now or utcnow()
        expired = iso(now - timedelta(seconds=config.CLAIM_TTL_SECONDS))
        with self._db() as conn:
            cur = conn.execute(
                """UPDATE sessions SET processing_token = ?, processing_claimed_at = ?
                   WHERE session_id = ? AND status = ?
                     AND (processing_token IS NULL OR processing_claimed_at < ?)""",
                (token, iso(now), session_id, SessionStatus.COMPLETED.value, expired),
            )
            return cur.rowcount == 1

    def release_claim(self, session_id: str, token: str):
        with self._db() as conn:
            conn.execute(
                """UPDATE sessions SET processing_token = NULL, processing_claimed_at = NULL
                   WHERE session_id = ? AND processing_token = ?""",
                (session_id, token),
            )

    # ── Activity events ──

    def append_event(self, session_id: str, event: ActivityEvent) -> ActivityEvent:
        """Append-only. The autoincrement rowid becomes the event's arrival seq."""
        with self._db() as conn:
            cur = conn.execute(
                """INSERT INTO activity_events
                   (event_id, session_id, event_type, timestamp, source, payload, received_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    event.event_id,
                    session_id,
                    event.event_type.value,
                    iso(event.timestamp),
                    event.source.value,
                    json.dumps(event.payload, default=str),
                    iso(utcnow()),
                ),
            )
            event.seq = cur.lastrowid
            conn.execute(
                "UPDATE sessions SET updated_at = ? WHERE session_id = ?",
                (iso(utcnow()), session_id),
            )
        return event

    def _load_events(self, conn: sqlite3.Connection, session_id: str) -> List[ActivityEvent]:
        rows = conn.execute(
            "SELECT * FROM activity_events WHERE session_id = ? ORDER BY seq",
            (session_id,),
        ).fetchall()
        return [
            ActivityEvent(
                event_id=r["event_id"],
                event_type=EventType(r["event_type"]),
                timestamp=parse_ts(r["timestamp"]),
                source=EventSource(r["source"]),
                payload=json.loads(r["payload"]),
                seq=r["seq"],
            )
            for r in rows
        ]

    def record_rejection(self, reason: str, message: str, raw: Any) -> str:
        """Rejected input is kept, never silently dropped."""
        rid = f"rej_{uuid.uuid4().hex[:12]}"
        text = raw if isinstance(raw, str) else json.dumps(raw, default=str)
        with self._db() as conn:
            conn.execute(
                "INSERT INTO rejected_events (rejection_id, reason, message, raw, received_at) VALUES (?, ?, ?, ?, ?)",
                (rid, reason, message, text, iso(utcnow())),
            )
        logger.warning(f"Event rejected ({reason}): {message} -> {rid}")
        return rid

    def list_rejections(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM rejected_events ORDER BY received_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(r) for r in rows]

    # ── Verification records ──

    def append_record(self, session: AttendanceSession,
                      build: Callable[[Optional[VerificationRecord]], VerificationRecord]
                      ) -> VerificationRecord:
        """
        Write one record and finalize its session atomically.

        `build` receives the latest record of the session's chain scope (or
        None) and returns the new record. It runs inside the write lock, so
        the predecessor it sees is the true one.
        """
        try:
            with self._write_txn() as conn:
                existing = conn.execute(
                    "SELECT record_id FROM records WHERE subject_session_id = ?",
                    (session.session_id,),
                ).fetchone()
                if existing:
                    raise RecordAlreadyExists(
                        f"Record already exists for session {session.session_id}",
                        record_id=existing["record_id"],
                    )
                row = conn.execute(
                    "SELECT status FROM sessions WHERE session_id = ?", (session.session_id,)
                ).fetchone()
                if not row or row["status"] != SessionStatus.COMPLETED.value:
                    raise InvalidTransition(
                        f"Session {session.session_id} is not COMPLETED",
                        session_id=session.session_id,
                    )
                last = conn.execute(
                    "SELECT * FROM records WHERE chain_scope = ? ORDER BY sequence DESC LIMIT 1",
                    (session.chain_scope,),
                ).fetchone()
                record = build(self._row_to_record(last) if last else None)
                conn.execute(
                    """INSERT INTO records
                       (record_id, card_number, subject_session_id, chain_scope, sequence,
                        canonical, content_hash, previous_record_hash, record_hash,
                        signature, validation_status, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        record.record_id,
                        record.card_number,
                        record.subject_session_id,
                        record.chain_scope,
                        record.sequence,
                        canonical_json(record.canonical).decode("utf-8"),
                        record.content_hash,
                        record.previous_record_hash,
                        record.record_hash,
                        record.signature,
                        record.validation_status.value,
                        iso(record.created_at),
                    ),
                )
                conn.execute(
                    """UPDATE sessions SET status = ?, is_valid = 1, metadata = ?,
                         processing_token = NULL, processing_claimed_at = NULL, updated_at = ?
                       WHERE session_id = ?""",
                    (
                        SessionStatus.FINALIZED.value,
                        json.dumps(session.metadata.to_dict()),
                        iso(utcnow()),
                        session.session_id,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise RecordAlreadyExists(
                f"Record already exists for session {session.session_id}", error=str(e)
            ) from e
        session.status = SessionStatus.FINALIZED
        session.is_valid = True
        return record

    def record_for_session(self, session_id: str) -> Optional[VerificationRecord]:
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE subject_session_id = ?", (session_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def get_record(self, record_ref: str) -> Optional[VerificationRecord]:
        """Look up by record id or human-readable card number."""
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE record_id = ? OR card_number = ?",
                (record_ref, record_ref),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def get_record_raw(self, record_ref: str) -> Optional[Dict[str, Any]]:
        """The stored row as-is, canonical text included, for integrity checks."""
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE record_id = ? OR card_number = ?",
                (record_ref, record_ref),
            ).fetchone()
        return dict(row) if row else None

    def get_chain_record_raw(self, chain_scope: str, sequence: int) -> Optional[Dict[str, Any]]:
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE chain_scope = ? AND sequence = ?",
                (chain_scope, sequence),
            ).fetchone()
        return dict(row) if row else None

    def list_chain_raw(self, chain_scope: str) -> List[Dict[str, Any]]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM records WHERE chain_scope = ? ORDER BY sequence",
                (chain_scope,),
            ).fetchall()
        return [dict(r) for r in rows]

    # ── Bus / outbox ──

    def publish_event(self, topic: EventTopic, payload: Dict[str, Any]):
        """Persist a bus event. Downstream delivery reads these rows."""
        eid = f"bus_{uuid.uuid4().hex[:12]}"
        with self._db() as conn:
            conn.execute(
                "INSERT INTO events (event_id, topic, payload, timestamp) VALUES (?, ?, ?, ?)",
                (eid, topic.value, json.dumps(payload, default=str), iso(utcnow())),
            )
        logger.info(f"Event published: {topic.value} -> {eid}")

    def list_events(self, topic: Optional[EventTopic] = None, limit: int = 50) -> List[Dict[str, Any]]:
        with self._db() as conn:
            if topic:
                rows = conn.execute(
                    "SELECT * FROM events WHERE topic = ? ORDER BY rowid DESC LIMIT ?",
                    (topic.value, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events ORDER BY rowid DESC LIMIT ?", (limit,)
                ).fetchall()
        return [
            {
                "event_id": r["event_id"],
                "topic": r["topic"],
                "payload": json.loads(r["payload"]),
                "timestamp": r["timestamp"],
            }
            for r in rows
        ]

    # ── Audit Log ──

    def audit(self, action: str, detail: Dict[str, Any] = None, actor: str = "system"):
        """Write an immutable audit log entry."""
        aid = f"aud_{uuid.uuid4().hex[:12]}"
        with self._db() as conn:
            conn.execute(
                "INSERT INTO audit_log (audit_id, action, actor, detail, timestamp) VALUES (?, ?, ?, ?, ?)",
                (aid, action, actor, json.dumps(detail or {}, default=str), iso(utcnow())),
            )
        logger.info(f"Audit: {action} by {actor} -> {aid}")

    def get_audit_log(self, action: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Newest first. `seq` is the monotonic rowid."""
        with self._db() as conn:
            if action:
                rows = conn.execute(
                    "SELECT rowid, * FROM audit_log WHERE action = ? ORDER BY rowid DESC LIMIT ?",
                    (action, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT rowid, * FROM audit_log ORDER BY rowid DESC LIMIT ?", (limit,),
                ).fetchall()
        return [
            {
                "seq": r["rowid"],
                "audit_id": r["audit_id"],
                "action": r["action"],
                "actor": r["actor"],
                "detail": json.loads(r["detail"]),
                "timestamp": r["timestamp"],
            }
            for r in rows
        ]

    # ── Row mapping ──

    @staticmethod
    def _row_to_session(row: sqlite3.Row, events: List[ActivityEvent]) -> AttendanceSession:
        is_valid = row["is_valid"]
        return AttendanceSession(
            session_id=row["session_id"],
            participant_id=row["participant_id"],
            meeting_id=row["meeting_id"],
            scheduled_start=parse_ts(row["scheduled_start"]),
            scheduled_duration_min=row["scheduled_duration_min"],
            join_time=parse_ts(row["join_time"]) if row["join_time"] else None,
            leave_time=parse_ts(row["leave_time"]) if row["leave_time"] else None,
            status=SessionStatus(row["status"]),
            events=events,
            total_duration_min=row["total_duration_min"],
            active_duration_min=row["active_duration_min"],
            idle_duration_min=row["idle_duration_min"],
            attendance_percent=row["attendance_percent"],
            leave_rejoin_count=row["leave_rejoin_count"],
            is_valid=None if is_valid is None else bool(is_valid),
            metadata=SessionMetadata.from_dict(json.loads(row["metadata"] or "{}")),
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_record(row: Any) -> VerificationRecord:
        return VerificationRecord(
            record_id=row["record_id"],
            card_number=row["card_number"],
            subject_session_id=row["subject_session_id"],
            chain_scope=row["chain_scope"],
            sequence=row["sequence"],
            canonical=json.loads(row["canonical"]),
            content_hash=row["content_hash"],
            previous_record_hash=row["previous_record_hash"],
            record_hash=row["record_hash"],
            signature=row["signature"],
            validation_status=ValidationStatus(row["validation_status"]),
            created_at=parse_ts(row["created_at"]),
        )

    # ── Stats ──

    def get_stats(self) -> Dict[str, Any]:
        with self._db() as conn:
            by_status = {
                r["status"]: r["cnt"]
                for r in conn.execute(
                    "SELECT status, COUNT(*) AS cnt FROM sessions GROUP BY status"
                ).fetchall()
            }
            records = conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]
            failed = conn.execute(
                "SELECT COUNT(*) FROM records WHERE validation_status = ?",
                (ValidationStatus.FAILED.value,),
            ).fetchone()[0]
            rejected_events = conn.execute("SELECT COUNT(*) FROM rejected_events").fetchone()[0]
        return {
            "sessions": by_status,
            "records": records,
            "records_failed_validation": failed,
            "rejected_events": rejected_events,
        }
