#!/usr/bin/env python3
"""
AttendLedger — Type Definitions
================================
Enums, data objects, configuration and error types shared by every
AttendLedger component: the event store, timeline reconstruction,
engagement and fraud scoring, the record ledger and the public
integrity service.

Usage:
    from attendledger_types import ActivityEvent, AttendanceSession, EventType, ...

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import os
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================================
# CONFIGURATION
# ============================================================================

class Config:
    """Environment-driven configuration. Reads from env vars in production."""
    DB_PATH: str = os.environ.get("AL_DB_PATH", "attendledger.db")
    API_KEY: str = os.environ.get("AL_API_KEY", "al_live_sk_placeholder")
    ZOOM_WEBHOOK_SECRET: str = os.environ.get("ZOOM_WEBHOOK_SECRET", "whsec_placeholder")
    SIGNING_KEY_PATH: str = os.environ.get("AL_SIGNING_KEY_PATH", "keys/ledger_ed25519.pem")
    VERIFY_KEY_PATH: str = os.environ.get("AL_VERIFY_KEY_PATH", "keys/ledger_ed25519.pub.pem")
    SCHEDULER_ENABLED: bool = os.environ.get("AL_SCHEDULER_ENABLED", "true").lower() == "true"
    SWEEP_INTERVAL_SECONDS: int = int(os.environ.get("AL_SWEEP_INTERVAL_SECONDS", "120"))
    SWEEP_MAX_WORKERS: int = int(os.environ.get("AL_SWEEP_MAX_WORKERS", "1"))
    STALE_GRACE_MIN: float = float(os.environ.get("AL_STALE_GRACE_MIN", "15"))
    HEARTBEAT_INTERVAL_SECONDS: float = float(os.environ.get("AL_HEARTBEAT_INTERVAL_SECONDS", "30"))
    # Presence credited to an abandoned session that never sent a heartbeat.
    # Pending product review; keep it small.
    FALLBACK_PRESENCE_MIN: float = float(os.environ.get("AL_FALLBACK_PRESENCE_MIN", "1"))
    INGEST_TIMEOUT_SECONDS: float = float(os.environ.get("AL_INGEST_TIMEOUT_SECONDS", "5"))
    CLAIM_TTL_SECONDS: int = int(os.environ.get("AL_CLAIM_TTL_SECONDS", "600"))
    DEFAULT_MEETING_DURATION_MIN: int = int(os.environ.get("AL_DEFAULT_MEETING_DURATION_MIN", "60"))


config = Config()


# ============================================================================
# ENUMS
# ============================================================================

class EventType(str, Enum):
    """Kinds of activity signal recorded against a session."""
    JOIN = "JOIN"
    LEAVE = "LEAVE"
    REJOIN = "REJOIN"
    VIDEO_ON = "VIDEO_ON"
    VIDEO_OFF = "VIDEO_OFF"
    HEARTBEAT_ACTIVE = "HEARTBEAT_ACTIVE"
    HEARTBEAT_IDLE = "HEARTBEAT_IDLE"


PRESENCE_OPENING = (EventType.JOIN, EventType.REJOIN)
HEARTBEATS = (EventType.HEARTBEAT_ACTIVE, EventType.HEARTBEAT_IDLE)


class EventSource(str, Enum):
    """Where an activity event came from."""
    WEBHOOK = "WEBHOOK"
    CLIENT_HEARTBEAT = "CLIENT_HEARTBEAT"


class SessionStatus(str, Enum):
    """Attendance session lifecycle. Transitions only move forward."""
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FINALIZED = "FINALIZED"         # verification record written
    REJECTED = "REJECTED"


ALLOWED_TRANSITIONS: Dict[SessionStatus, tuple] = {
    SessionStatus.IN_PROGRESS: (SessionStatus.COMPLETED, SessionStatus.REJECTED),
    SessionStatus.COMPLETED: (SessionStatus.FINALIZED, SessionStatus.REJECTED),
    SessionStatus.FINALIZED: (),
    SessionStatus.REJECTED: (),
}


class Recommendation(str, Enum):
    """Outcome suggested by the engagement scorer and fraud detector."""
    APPROVE = "APPROVE"
    FLAG_FOR_REVIEW = "FLAG_FOR_REVIEW"
    REJECT = "REJECT"


class EngagementLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    SUSPICIOUS = "SUSPICIOUS"


class Severity(str, Enum):
    """Severity for fraud violations and validation findings."""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    WARNING = "WARNING"
    INFO = "INFO"


class ValidationStatus(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"


class ConfidenceLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class IntegrityReason(str, Enum):
    """Itemized reasons returned by the integrity verifier."""
    TAMPERED_CONTENT = "TAMPERED_CONTENT"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    CHAIN_BROKEN = "CHAIN_BROKEN"


class LeaveSource(str, Enum):
    """How a session's leave time was established."""
    WEBHOOK = "WEBHOOK"
    LAST_HEARTBEAT = "LAST_HEARTBEAT"
    FALLBACK_MINIMUM = "FALLBACK_MINIMUM"


# ============================================================================
# ERRORS
# ============================================================================

class AttendLedgerError(Exception):
    """Base class for every error raised by AttendLedger components."""
    code = "ATTENDLEDGER_ERROR"

    def __init__(self, message: str = "", **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail


class IngestionError(AttendLedgerError):
    """Malformed payload, bad signature or unknown session. Never retried here."""
    code = "INGESTION_REJECTED"

    def __init__(self, message: str = "", reason: str = "MALFORMED_PAYLOAD", **detail: Any):
        super().__init__(message, **detail)
        self.reason = reason


class ReconstructionWarning(AttendLedgerError):
    """Data-quality assumption made while rebuilding a timeline. Recorded, not raised."""
    code = "RECONSTRUCTION_ASSUMPTION"


class GenerationConflict(AttendLedgerError):
    """A record could not be generated because another writer owns the session."""
    code = "GENERATION_CONFLICT"


class RecordAlreadyExists(GenerationConflict):
    code = "ALREADY_EXISTS"


class RecordNotFound(AttendLedgerError):
    code = "RECORD_NOT_FOUND"


class SessionNotFound(AttendLedgerError):
    code = "SESSION_NOT_FOUND"


class InvalidTransition(AttendLedgerError):
    code = "INVALID_TRANSITION"


class IntegrityFailure(AttendLedgerError):
    """Describes a failed integrity check on the read path."""
    code = "INTEGRITY_FAILURE"


class StoreError(AttendLedgerError):
    code = "DB_ERROR"


# ============================================================================
# TIME HELPERS
# ============================================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: Any) -> datetime:
    """
    Parse a timestamp into an aware UTC datetime.
    Accepts datetimes, ISO 8601 strings (with or without 'Z') and
    epoch milliseconds as sent in provider webhook envelopes.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unparseable timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.astimezone(timezone.utc).isoformat() if dt else None


def minutes_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60.0


# ============================================================================
# CORE DATA OBJECTS: SESSIONS & EVENTS
# ============================================================================

@dataclass
class ActivityEvent:
    """
    A single timestamped signal for one session.
    `seq` is the arrival order assigned by the store; reconstruction sorts
    on (timestamp, seq) so arrival order only breaks timestamp ties.
    """
    event_type: EventType = EventType.HEARTBEAT_ACTIVE
    timestamp: datetime = field(default_factory=utcnow)
    source: EventSource = EventSource.WEBHOOK
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}")
    seq: int = 0

    def flag(self, name: str) -> bool:
        return bool(self.payload.get(name))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": iso(self.timestamp),
            "source": self.source.value,
            "payload": self.payload,
            "seq": self.seq,
        }


@dataclass
class SessionMetadata:
    """
    Structured replacement for the open JSON attachment on a session.
    Known fields are typed; anything else goes in `extensions`.
    """
    inferred_join: bool = False
    inferred_leave: bool = False
    leave_source: Optional[LeaveSource] = None
    provider_duration_min: Optional[float] = None
    invalid_reason: Optional[str] = None
    assumptions: List[str] = field(default_factory=list)
    extensions: Dict[str, Any] = field(default_factory=dict)

    def note(self, assumption: str):
        if assumption not in self.assumptions:
            self.assumptions.append(assumption)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["leave_source"] = self.leave_source.value if self.leave_source else None
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SessionMetadata":
        data = dict(data or {})
        known = {k: data.pop(k) for k in list(data) if k in cls.__dataclass_fields__}
        meta = cls(**known)
        if meta.leave_source:
            meta.leave_source = LeaveSource(meta.leave_source)
        # Unknown top-level keys from older rows are kept rather than dropped.
        meta.extensions.update(data)
        return meta


@dataclass
class AttendanceSession:
    """One participant's attendance window for a scheduled meeting instance."""
    participant_id: str = ""
    meeting_id: str = ""
    scheduled_start: datetime = field(default_factory=utcnow)
    scheduled_duration_min: float = 60
    session_id: str = field(default_factory=lambda: f"ses_{uuid.uuid4().hex[:12]}")
    join_time: Optional[datetime] = None
    leave_time: Optional[datetime] = None
    status: SessionStatus = SessionStatus.IN_PROGRESS
    events: List[ActivityEvent] = field(default_factory=list)
    total_duration_min: float = 0.0
    active_duration_min: float = 0.0
    idle_duration_min: float = 0.0
    attendance_percent: float = 0.0
    leave_rejoin_count: int = 0
    is_valid: Optional[bool] = None
    metadata: SessionMetadata = field(default_factory=SessionMetadata)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def scheduled_end(self) -> datetime:
        return self.scheduled_start + timedelta(minutes=self.scheduled_duration_min)

    @property
    def chain_scope(self) -> str:
        """Hash chains are kept per participant."""
        return self.participant_id

    def to_dict(self, include_events: bool = False) -> Dict[str, Any]:
        data = {
            "session_id": self.session_id,
            "participant_id": self.participant_id,
            "meeting_id": self.meeting_id,
            "scheduled_start": iso(self.scheduled_start),
            "scheduled_duration_min": self.scheduled_duration_min,
            "join_time": iso(self.join_time),
            "leave_time": iso(self.leave_time),
            "status": self.status.value,
            "total_duration_min": self.total_duration_min,
            "active_duration_min": self.active_duration_min,
            "idle_duration_min": self.idle_duration_min,
            "attendance_percent": self.attendance_percent,
            "leave_rejoin_count": self.leave_rejoin_count,
            "is_valid": self.is_valid,
            "metadata": self.metadata.to_dict(),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if include_events:
            data["events"] = [e.to_dict() for e in self.events]
        return data


# ============================================================================
# ASSESSMENTS
# ============================================================================

@dataclass
class EngagementAssessment:
    """Presence-confidence score and recommendation for one session."""
    score: int = 0
    level: EngagementLevel = EngagementLevel.SUSPICIOUS
    flags: List[str] = field(default_factory=list)
    recommendation: Recommendation = Recommendation.REJECT
    activity_rate: float = 0.0      # heartbeats per present minute
    pattern: str = "NO_ACTIVITY"

    def summary(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level.value,
            "flags": list(self.flags),
            "recommendation": self.recommendation.value,
        }


@dataclass
class Violation:
    """A fraud rule that fired."""
    rule: str = ""
    severity: Severity = Severity.MEDIUM
    action: Recommendation = Recommendation.FLAG_FOR_REVIEW
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule,
            "severity": self.severity.value,
            "action": self.action.value,
            "message": self.message,
        }


@dataclass
class FraudAssessment:
    """Accumulated violations, risk score and overall recommendation."""
    violations: List[Violation] = field(default_factory=list)
    risk_score: int = 0
    recommendation: Recommendation = Recommendation.APPROVE

    @property
    def should_auto_reject(self) -> bool:
        return (
            self.recommendation == Recommendation.REJECT
            or self.risk_score >= 80
            or any(v.severity == Severity.CRITICAL for v in self.violations)
        )

    @property
    def needs_manual_review(self) -> bool:
        return (
            self.recommendation == Recommendation.FLAG_FOR_REVIEW
            or 40 <= self.risk_score < 80
            or len(self.violations) > 0
        )

    @property
    def rules(self) -> List[str]:
        return [v.rule for v in self.violations]

    def summary(self) -> Dict[str, Any]:
        return {
            "risk_score": self.risk_score,
            "recommendation": self.recommendation.value,
            "violations": [
                {"rule": v.rule, "severity": v.severity.value} for v in self.violations
            ],
        }


@dataclass
class ValidationFinding:
    """One result of the compliance validation gate."""
    type: str = ""
    severity: Severity = Severity.INFO
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "severity": self.severity.value, "message": self.message}


@dataclass
class ValidationResult:
    findings: List[ValidationFinding] = field(default_factory=list)
    status: ValidationStatus = ValidationStatus.PASSED

    @property
    def critical(self) -> List[ValidationFinding]:
        return [f for f in self.findings if f.severity == Severity.CRITICAL]

    @property
    def types(self) -> List[str]:
        return [f.type for f in self.findings]


# ============================================================================
# LEDGER
# ============================================================================

GENESIS_HASH = "0" * 64


@dataclass(frozen=True)
class VerificationRecord:
    """
    Signed, hash-chained compliance record for one finalized session.
    Frozen: once written it is only ever read.
    """
    record_id: str
    card_number: str
    subject_session_id: str
    chain_scope: str
    sequence: int
    canonical: Dict[str, Any]
    content_hash: str
    previous_record_hash: str
    record_hash: str
    signature: str
    validation_status: ValidationStatus
    created_at: datetime

    def public_view(self) -> Dict[str, Any]:
        """Fields safe to show an unauthenticated verifier."""
        return {
            "record_id": self.record_id,
            "card_number": self.card_number,
            "chain_scope": self.chain_scope,
            "sequence": self.sequence,
            "canonical": self.canonical,
            "content_hash": self.content_hash,
            "previous_record_hash": self.previous_record_hash,
            "record_hash": self.record_hash,
            "signature": self.signature,
            "validation_status": self.validation_status.value,
            "created_at": iso(self.created_at),
        }


@dataclass
class IntegrityResult:
    """Outcome of re-verifying one stored record."""
    valid: bool = True
    reasons: List[IntegrityReason] = field(default_factory=list)
    record: Optional[Dict[str, Any]] = None
    details: List[str] = field(default_factory=list)

    def fail(self, reason: IntegrityReason, detail: str):
        self.valid = False
        if reason not in self.reasons:
            self.reasons.append(reason)
        self.details.append(detail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "reasons": [r.value for r in self.reasons],
            "details": list(self.details),
            "record": self.record,
        }


# ============================================================================
# EVENT BUS
# ============================================================================

class EventTopic(str, Enum):
    """Namespaced bus topics written to the events table."""
    EVENT_INGESTED = "ingest.event.appended"
    EVENT_REJECTED = "ingest.event.rejected"
    SESSION_OPENED = "session.opened"
    SESSION_COMPLETED = "session.completed"
    SESSION_AUTO_CLOSED = "session.auto_closed"
    SESSION_REJECTED = "session.rejected"
    RECORD_GENERATED = "ledger.record.generated"
    DELIVERY_REQUESTED = "delivery.requested"
    SWEEP_COMPLETED = "scheduler.sweep.completed"


# ============================================================================
# MODULE SELF-TEST
# ============================================================================

if __name__ == "__main__":
    print("AttendLedger Type Definitions — smoke test")
    print("=" * 50)

    ev = ActivityEvent(event_type=EventType.JOIN, payload={"user_name": "Test"})
    meta = SessionMetadata(provider_duration_min=42.0, extensions={"zoom_uuid": "abc"})
    ses = AttendanceSession(participant_id="p-1", meeting_id="m-1", events=[ev], metadata=meta)
    fa = FraudAssessment(violations=[Violation(rule="ZERO_DURATION", severity=Severity.CRITICAL)])

    print(f"  ✓ {type(ev).__name__} {ev.event_type.value}")
    print(f"  ✓ {type(ses).__name__} ends {iso(ses.scheduled_end)}")
    print(f"  ✓ metadata round-trip: {SessionMetadata.from_dict(meta.to_dict()) == meta}")
    print(f"  ✓ auto-reject on critical: {fa.should_auto_reject}")
    print("\nDone.")
