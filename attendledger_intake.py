#!/usr/bin/env python3
"""
AttendLedger Intake Service
============================
FastAPI service that receives Zoom participant webhooks and client
heartbeats, appends them to the activity event store, runs the
reconciliation scheduler, and exposes public record verification.

Flow:
    webhook/heartbeat → event store → (scheduler) timeline → engagement
    → fraud → validation → signed record → delivery.requested

Usage:
    uvicorn attendledger_intake:app --host 0.0.0.0 --port 8081

Requires:
    pip install fastapi uvicorn pydantic cryptography apscheduler

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, field_validator

from attendledger_engagement import score
from attendledger_fraud import detect, render_report
from attendledger_integrity import IntegrityVerifier
from attendledger_ledger import RecordGenerator, RecordSigner
from attendledger_scheduler import ReconciliationScheduler
from attendledger_store import Store
from attendledger_timeline import apply_to_session, reconstruct
from attendledger_types import (
    PRESENCE_OPENING,
    ActivityEvent,
    AttendanceSession,
    AttendLedgerError,
    EventSource,
    EventTopic,
    EventType,
    IngestionError,
    InvalidTransition,
    LeaveSource,
    RecordNotFound,
    SessionNotFound,
    SessionStatus,
    StoreError,
    config,
    iso,
    parse_ts,
    utcnow,
)

# ── Logging ──
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("al-intake")


# ============================================================================
# SERVICES
# ============================================================================

store: Store
signer: RecordSigner
generator: RecordGenerator
verifier: IntegrityVerifier
reconciler: ReconciliationScheduler


def configure(db_path: Optional[str] = None, record_signer: Optional[RecordSigner] = None):
    """(Re)build the service graph. Called at import and by tests."""
    global store, signer, generator, verifier, reconciler
    store = Store(db_path or config.DB_PATH)
    signer = record_signer or RecordSigner.load_or_create(config.SIGNING_KEY_PATH, config.VERIFY_KEY_PATH)
    generator = RecordGenerator(store, signer)
    verifier = IntegrityVerifier(store, signer)
    reconciler = ReconciliationScheduler(store, generator)


configure()


# ============================================================================
# REQUEST / RESPONSE MODELS
# ============================================================================

class HeartbeatRequest(BaseModel):
    """Periodic client signal sent by the attendance tab while a meeting runs."""
    state: str = Field(..., description="ACTIVE or IDLE")
    timestamp: Optional[str] = Field(None, description="ISO 8601; server time if omitted")
    mouse_movement: bool = False
    keyboard_activity: bool = False
    tab_focused: bool = False
    audio_active: bool = False
    video_active: bool = False

    @field_validator("state")
    @classmethod
    def validate_state(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in ("ACTIVE", "IDLE"):
            raise ValueError("state must be ACTIVE or IDLE")
        return v

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            parse_ts(v)
        return v


class HealthResponse(BaseModel):
    service: str = "al-intake"
    status: str = "healthy"
    uptime_seconds: float = 0.0
    sessions: Dict[str, int] = Field(default_factory=dict)
    records: int = 0
    scheduler_running: bool = False


# ============================================================================
# ZOOM WEBHOOK ADAPTER
# ============================================================================

PARTICIPANT_EVENTS: Dict[str, EventType] = {
    "meeting.participant_joined": EventType.JOIN,
    "meeting.participant_left": EventType.LEAVE,
    "meeting.participant_video_on": EventType.VIDEO_ON,
    "meeting.participant_video_off": EventType.VIDEO_OFF,
}

REASON_STATUS = {
    "BAD_SIGNATURE": status.HTTP_401_UNAUTHORIZED,
    "UNKNOWN_SESSION": status.HTTP_404_NOT_FOUND,
    "MALFORMED_PAYLOAD": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "INGEST_TIMEOUT": status.HTTP_503_SERVICE_UNAVAILABLE,
}

_session_lock = threading.Lock()


def zoom_signature(secret: str, timestamp: str, body: bytes) -> str:
    message = f"v0:{timestamp}:".encode("utf-8") + body
    return "v0=" + hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_zoom_signature(body: bytes, timestamp: Optional[str], signature: Optional[str]):
    if not timestamp or not signature:
        raise IngestionError("Missing x-zm-signature or x-zm-request-timestamp", reason="BAD_SIGNATURE")
    expected = zoom_signature(config.ZOOM_WEBHOOK_SECRET, timestamp, body)
    if not hmac.compare_digest(expected, signature):
        raise IngestionError("Webhook signature mismatch", reason="BAD_SIGNATURE")


def url_validation_response(plain_token: str) -> Dict[str, str]:
    encrypted = hmac.new(
        config.ZOOM_WEBHOOK_SECRET.encode("utf-8"), plain_token.encode("utf-8"), hashlib.sha256,
    ).hexdigest()
    return {"plainToken": plain_token, "encryptedToken": encrypted}


def parse_zoom_event(body: Dict[str, Any]) -> Tuple[str, str, ActivityEvent, Dict[str, Any]]:
    """
    Map a participant webhook onto (participant_id, meeting_id, event, meeting).
    Participants are identified by lower-cased email, falling back to the
    provider's user id.
    """
    name = body.get("event")
    event_type = PARTICIPANT_EVENTS.get(name)
    if event_type is None:
        raise IngestionError(f"Unsupported event: {name}")
    obj = (body.get("payload") or {}).get("object") or {}
    participant = obj.get("participant") or {}
    if obj.get("id") in (None, ""):
        raise IngestionError("payload.object.id is required")
    meeting_id = str(obj["id"])
    participant_id = (
        (participant.get("email") or "").strip().lower()
        or str(participant.get("user_id") or participant.get("id") or participant.get("participant_uuid") or "")
    )
    if not participant_id:
        raise IngestionError("participant identity is required")

    if event_type == EventType.JOIN:
        raw_ts = participant.get("join_time")
    elif event_type == EventType.LEAVE:
        raw_ts = participant.get("leave_time")
    else:
        raw_ts = participant.get("date_time")
    raw_ts = raw_ts or body.get("event_ts")
    try:
        timestamp = parse_ts(raw_ts) if raw_ts is not None else utcnow()
        meeting = {
            "start_time": parse_ts(obj["start_time"]) if obj.get("start_time") else None,
            "duration": float(obj["duration"]) if obj.get("duration") else None,
            "topic": obj.get("topic"),
        }
    except (TypeError, ValueError) as e:
        raise IngestionError(f"Unparseable field: {e}") from e

    event_payload: Dict[str, Any] = {"provider_event": name}
    if participant.get("user_name"):
        event_payload["user_name"] = participant["user_name"]
    if participant.get("participant_uuid"):
        event_payload["participant_uuid"] = participant["participant_uuid"]
    if event_type == EventType.LEAVE and participant.get("duration") is not None:
        try:
            event_payload["duration"] = int(participant["duration"])
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric duration on leave: {participant['duration']!r}")

    event = ActivityEvent(
        event_type=event_type, timestamp=timestamp, source=EventSource.WEBHOOK, payload=event_payload,
    )
    return participant_id, meeting_id, event, meeting


def _schedule_for(meeting_id: str, meeting: Dict[str, Any], first_event: ActivityEvent):
    if meeting["start_time"] is not None:
        duration = meeting["duration"] or config.DEFAULT_MEETING_DURATION_MIN
        store.upsert_meeting(meeting_id, meeting["start_time"], duration, meeting["topic"])
        return meeting["start_time"], duration, None
    known = store.get_meeting(meeting_id)
    if known:
        return known["scheduled_start"], known["duration_min"], None
    return (
        first_event.timestamp,
        config.DEFAULT_MEETING_DURATION_MIN,
        "meeting schedule unknown; window assumed to start at first event",
    )


def _refresh(session: AttendanceSession, event: ActivityEvent):
    """Recompute metrics after an append. Terminal sessions keep their metrics."""
    if session.status in (SessionStatus.FINALIZED, SessionStatus.REJECTED):
        logger.warning(
            f"Late {event.event_type.value} for {session.status.value} session "
            f"{session.session_id}; logged, metrics unchanged"
        )
        return
    tl = reconstruct(session.events, session.scheduled_start, session.scheduled_duration_min)
    apply_to_session(session, tl)
    if not tl.is_open and tl.last_leave is not None:
        session.metadata.leave_source = LeaveSource.WEBHOOK
    store.save_metrics(session)

    # A LEAVE delivered before its JOIN completes the session on the JOIN.
    if session.status == SessionStatus.IN_PROGRESS and not tl.is_open and tl.last_leave is not None:
        try:
            store.transition(session, SessionStatus.COMPLETED)
        except InvalidTransition as e:
            logger.info(f"Completion skipped: {e.message}")
            return
        store.publish_event(EventTopic.SESSION_COMPLETED, {
            "session_id": session.session_id,
            "total_duration_min": session.total_duration_min,
            "attendance_percent": session.attendance_percent,
        })


def ingest_provider_event(body: Dict[str, Any]) -> Dict[str, Any]:
    """Append one participant webhook. Creates the session on first sight."""
    participant_id, meeting_id, event, meeting = parse_zoom_event(body)

    with _session_lock:
        session = store.find_session_for_event(participant_id, meeting_id, event.timestamp)
        if session is None:
            start, duration, note = _schedule_for(meeting_id, meeting, event)
            session = AttendanceSession(
                participant_id=participant_id,
                meeting_id=meeting_id,
                scheduled_start=start,
                scheduled_duration_min=duration,
            )
            if note:
                session.metadata.note(note)
            store.create_session(session)
            store.publish_event(EventTopic.SESSION_OPENED, {
                "session_id": session.session_id,
                "participant_id": participant_id,
                "meeting_id": meeting_id,
            })

    if event.event_type == EventType.JOIN and any(e.event_type in PRESENCE_OPENING for e in session.events):
        event.event_type = EventType.REJOIN

    store.append_event(session.session_id, event)
    session.events.append(event)
    logger.info(
        f"Recorded {event.event_type.value} for {participant_id} @ {meeting_id} "
        f"(session {session.session_id}, seq {event.seq})"
    )
    store.publish_event(EventTopic.EVENT_INGESTED, {
        "session_id": session.session_id,
        "event_id": event.event_id,
        "event_type": event.event_type.value,
    })
    _refresh(session, event)
    return {
        "session_id": session.session_id,
        "event_id": event.event_id,
        "event_type": event.event_type.value,
        "seq": event.seq,
        "session_status": session.status.value,
    }


def ingest_heartbeat(session_id: str, req: HeartbeatRequest) -> Dict[str, Any]:
    try:
        session = store.get_session(session_id)
    except SessionNotFound as e:
        raise IngestionError(e.message, reason="UNKNOWN_SESSION", session_id=session_id) from e

    event = ActivityEvent(
        event_type=EventType.HEARTBEAT_ACTIVE if req.state == "ACTIVE" else EventType.HEARTBEAT_IDLE,
        timestamp=parse_ts(req.timestamp) if req.timestamp else utcnow(),
        source=EventSource.CLIENT_HEARTBEAT,
        payload=req.model_dump(exclude={"state", "timestamp"}),
    )
    store.append_event(session_id, event)
    session.events.append(event)
    _refresh(session, event)
    return {"accepted": True, "event_id": event.event_id, "seq": event.seq}


async def _bounded(fn, *args, raw: Any = None):
    """
    Run a blocking ingest step off the event loop with a hard timeout.

    The worker thread is not cancelled, so a timed-out append may still
    land. The timeout is kept in rejected_events with the raw input; a
    provider retry of that event may then duplicate it, which only adds
    a repeated JOIN/LEAVE (absorbed by reconstruction) or a zero-length
    heartbeat.
    """
    try:
        return await asyncio.wait_for(run_in_threadpool(fn, *args), timeout=config.INGEST_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error(f"Ingest timed out after {config.INGEST_TIMEOUT_SECONDS}s")
        raise _reject(IngestionError("Event store busy, retry later", reason="INGEST_TIMEOUT"), raw)


def _reject(exc: IngestionError, raw: Any) -> HTTPException:
    """Record a rejected input and build the HTTP error for it."""
    rid = store.record_rejection(exc.reason, exc.message, raw)
    store.publish_event(EventTopic.EVENT_REJECTED, {"rejection_id": rid, "reason": exc.reason})
    return HTTPException(
        status_code=REASON_STATUS.get(exc.reason, status.HTTP_422_UNPROCESSABLE_ENTITY),
        detail={"code": exc.reason, "message": exc.message},
    )


def _http_error(exc: AttendLedgerError) -> HTTPException:
    if isinstance(exc, (RecordNotFound, SessionNotFound)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, IngestionError):
        code = REASON_STATUS.get(exc.reason, status.HTTP_422_UNPROCESSABLE_ENTITY)
    elif isinstance(exc, StoreError):
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        code = status.HTTP_409_CONFLICT
    return HTTPException(status_code=code, detail={"code": exc.code, "message": exc.message})


# ============================================================================
# AUTH MIDDLEWARE
# ============================================================================

def verify_api_key(authorization: Optional[str] = Header(None)) -> str:
    """Verify the Bearer token matches our API key.
    In local dev mode, auth is skipped if no key is provided.
    In production, set REQUIRE_AUTH=true in environment.
    """
    require_auth = os.environ.get("REQUIRE_AUTH", "false").lower() == "true"

    if not authorization:
        if require_auth:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"code": "UNAUTHORIZED", "message": "Missing Authorization header"},
            )
        return "local_dev"

    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        if require_auth:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"code": "UNAUTHORIZED", "message": "Invalid Authorization format"},
            )
        return "local_dev"

    if not hmac.compare_digest(parts[1], config.API_KEY):
        if require_auth:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"code": "UNAUTHORIZED", "message": "Invalid API key"},
            )
        return "local_dev"

    return "api_key"


# ============================================================================
# FASTAPI APP
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.SCHEDULER_ENABLED:
        reconciler.start()
    else:
        logger.info("Reconciliation scheduler disabled (AL_SCHEDULER_ENABLED=false)")
    yield
    reconciler.shutdown()


app = FastAPI(
    title="AttendLedger Intake Service",
    description="Attendance events to signed, hash-chained compliance records",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS: allow browser requests from localhost and deployed origins
_allowed_origins = os.environ.get(
    "CORS_ORIGINS",
    "http://localhost:8081,http://127.0.0.1:8081,http://localhost:3000",
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins if _allowed_origins != ["*"] else ["*"],
    allow_credentials=True if _allowed_origins != ["*"] else False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", response_model=HealthResponse)
async def health():
    """Service health check."""
    stats = store.get_stats()
    uptime = (utcnow() - store.start_time).total_seconds()
    return HealthResponse(
        uptime_seconds=round(uptime, 1),
        sessions=stats["sessions"],
        records=stats["records"],
        scheduler_running=reconciler.running,
    )


@app.get("/ready")
async def ready():
    """Readiness probe. Returns 200 when the store answers."""
    try:
        store.get_stats()
    except StoreError as e:
        raise _http_error(e)
    return {"ready": True}


# ── Webhooks ──

@app.get("/v1/webhooks/zoom")
async def zoom_challenge(challenge: Optional[str] = None):
    """Legacy endpoint validation: echo the challenge back."""
    if not challenge:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "MISSING_CHALLENGE", "message": "No challenge parameter provided"},
        )
    return {"challenge": challenge}


@app.post("/v1/webhooks/zoom")
async def zoom_webhook(
    request: Request,
    x_zm_signature: Optional[str] = Header(None),
    x_zm_request_timestamp: Optional[str] = Header(None),
):
    """
    Receive a Zoom webhook.

    1. Answer endpoint.url_validation with the HMAC of plainToken
    2. Verify x-zm-signature over "v0:{timestamp}:{raw body}"
    3. Append participant events; register meeting schedules
    Rejected input is stored in rejected_events before the error is returned.
    """
    raw = await request.body()
    try:
        body = json.loads(raw)
        if not isinstance(body, dict):
            raise ValueError("body must be a JSON object")
    except ValueError as e:
        raise _reject(IngestionError(f"Invalid JSON: {e}"), raw.decode("utf-8", "replace"))

    event_name = body.get("event")
    if event_name == "endpoint.url_validation":
        plain_token = (body.get("payload") or {}).get("plainToken")
        if not plain_token:
            raise _reject(IngestionError("No plainToken provided"), body)
        logger.info("Zoom endpoint validation answered")
        return url_validation_response(plain_token)

    try:
        verify_zoom_signature(raw, x_zm_request_timestamp, x_zm_signature)
    except IngestionError as e:
        logger.warning(f"Zoom webhook rejected: {e.message}")
        raise _reject(e, body)

    if event_name in PARTICIPANT_EVENTS:
        try:
            return await _bounded(ingest_provider_event, body, raw=body)
        except IngestionError as e:
            raise _reject(e, body)

    if event_name == "meeting.started":
        obj = (body.get("payload") or {}).get("object") or {}
        try:
            store.upsert_meeting(
                str(obj["id"]),
                parse_ts(obj["start_time"]),
                float(obj.get("duration") or config.DEFAULT_MEETING_DURATION_MIN),
                obj.get("topic"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise _reject(IngestionError(f"Malformed meeting.started: {e}"), body)
        logger.info(f"Meeting registered: {obj['id']}")
        return {"status": "registered", "meeting_id": str(obj["id"])}

    logger.info(f"Zoom event ignored: {event_name}")
    return {"status": "ignored", "event": event_name}


# ── Heartbeats & sessions ──

@app.post("/v1/sessions/{session_id}/heartbeats", status_code=status.HTTP_202_ACCEPTED)
async def post_heartbeat(
    session_id: str,
    req: HeartbeatRequest,
    authorization: Optional[str] = Header(None),
):
    """Supplementary client heartbeat. Never required for finalization."""
    verify_api_key(authorization)
    raw = {"session_id": session_id, **req.model_dump()}
    try:
        return await _bounded(ingest_heartbeat, session_id, req, raw=raw)
    except IngestionError as e:
        raise _reject(e, raw)


@app.get("/v1/sessions")
async def list_sessions(
    status_filter: Optional[str] = None,
    authorization: Optional[str] = Header(None),
):
    verify_api_key(authorization)
    try:
        wanted = SessionStatus(status_filter.upper()) if status_filter else None
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "INVALID_STATUS", "message": f"Unknown status: {status_filter}"},
        )
    sessions = store.list_sessions(wanted, with_events=False)
    return {"sessions": [s.to_dict() for s in sessions], "total": len(sessions)}


@app.get("/v1/sessions/{session_id}")
async def get_session(
    session_id: str,
    include_events: bool = False,
    authorization: Optional[str] = Header(None),
):
    """Session detail with computed metrics and its record, if any."""
    verify_api_key(authorization)
    try:
        session = store.get_session(session_id)
    except SessionNotFound as e:
        raise _http_error(e)
    record = store.record_for_session(session_id)
    data = session.to_dict(include_events=include_events)
    data["record"] = (
        {"record_id": record.record_id, "card_number": record.card_number,
         "validation_status": record.validation_status.value}
        if record else None
    )
    return data


@app.get("/v1/sessions/{session_id}/fraud-report", response_class=PlainTextResponse)
async def fraud_report(session_id: str, authorization: Optional[str] = Header(None)):
    """Current fraud assessment for a session as a plain-text report."""
    verify_api_key(authorization)
    try:
        session = store.get_session(session_id)
    except SessionNotFound as e:
        raise _http_error(e)
    tl = reconstruct(session.events, session.scheduled_start, session.scheduled_duration_min)
    fa = detect(session, tl, score(session, tl))
    return render_report(session, fa)


# ── Verification ──

@app.get("/v1/verify/{record_ref}")
async def verify_record(record_ref: str):
    """
    Public, unauthenticated verification by record id or card number.
    Returns canonical fields and the integrity result only.
    """
    try:
        result = verifier.verify(record_ref)
    except RecordNotFound as e:
        raise _http_error(e)
    return result.to_dict()


@app.get("/v1/chains/{chain_scope}/verify")
async def verify_chain(chain_scope: str, authorization: Optional[str] = Header(None)):
    verify_api_key(authorization)
    try:
        return verifier.verify_chain(chain_scope)
    except RecordNotFound as e:
        raise _http_error(e)


# ── Admin ──

@app.post("/v1/admin/reconcile")
async def admin_reconcile(authorization: Optional[str] = Header(None)):
    """Operator-triggered sweep. Idempotent."""
    actor = verify_api_key(authorization)
    result = await run_in_threadpool(reconciler.sweep)
    store.audit("admin.reconcile", result.to_dict(), actor=actor)
    return result.to_dict()


@app.get("/v1/admin/rejections")
async def list_rejections(limit: int = 50, authorization: Optional[str] = Header(None)):
    verify_api_key(authorization)
    return {"rejections": store.list_rejections(limit)}


@app.get("/v1/events")
async def list_bus_events(
    topic: Optional[str] = None,
    limit: int = 50,
    authorization: Optional[str] = Header(None),
):
    """Outbox rows, newest first. Downstream delivery polls delivery.requested."""
    verify_api_key(authorization)
    try:
        wanted = EventTopic(topic) if topic else None
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "INVALID_TOPIC", "message": f"Unknown topic: {topic}"},
        )
    return {"events": store.list_events(wanted, limit)}


@app.get("/v1/audit-log")
async def audit_log(
    action: Optional[str] = None,
    limit: int = 100,
    authorization: Optional[str] = Header(None),
):
    verify_api_key(authorization)
    return {"entries": store.get_audit_log(action, limit)}


@app.get("/v1/stats")
async def stats(authorization: Optional[str] = Header(None)):
    verify_api_key(authorization)
    return {**store.get_stats(), "generated_at": iso(utcnow())}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8081))
    uvicorn.run(app, host="0.0.0.0", port=port)
