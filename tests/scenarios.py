"""Event streams for the reference attendance scenarios and a few builders."""

from datetime import datetime, timedelta, timezone

from attendledger_engagement import score
from attendledger_fraud import detect
from attendledger_timeline import apply_to_session, reconstruct
from attendledger_types import (
    ActivityEvent,
    AttendanceSession,
    EventSource,
    EventType,
    SessionStatus,
)
from attendledger_validation import validate

T0 = datetime(2025, 3, 3, 18, 0, tzinfo=timezone.utc)


def at(minutes=0, seconds=0):
    return T0 + timedelta(minutes=minutes, seconds=seconds)


def ev(event_type, when, **payload):
    source = EventSource.CLIENT_HEARTBEAT if event_type in (
        EventType.HEARTBEAT_ACTIVE, EventType.HEARTBEAT_IDLE
    ) else EventSource.WEBHOOK
    return ActivityEvent(event_type=event_type, timestamp=when, source=source, payload=payload)


def heartbeats(start_s, end_s, every_s=30, kind=EventType.HEARTBEAT_ACTIVE, **payload):
    """Heartbeats from start_s to end_s inclusive, in seconds after T0."""
    return [ev(kind, T0 + timedelta(seconds=s), **payload) for s in range(start_s, end_s + 1, every_s)]


def scenario_a():
    """60-min meeting, on time, camera on, active throughout."""
    return (
        [ev(EventType.JOIN, at(0)), ev(EventType.VIDEO_ON, at(0))]
        + heartbeats(30, 3570, audio_active=True)
        + [ev(EventType.LEAVE, at(60), duration=3600)]
    )


def scenario_b():
    """Joins 7 minutes late, leaves 10 minutes early."""
    return (
        [ev(EventType.JOIN, at(7)), ev(EventType.VIDEO_ON, at(7))]
        + heartbeats(7 * 60 + 30, 49 * 60 + 30, audio_active=True)
        + [ev(EventType.LEAVE, at(50), duration=43 * 60)]
    )


def scenario_c():
    """Leaves at 15, rejoins at 20, stays to the end."""
    return (
        [ev(EventType.JOIN, at(0)), ev(EventType.VIDEO_ON, at(0))]
        + heartbeats(30, 14 * 60 + 30)
        + [ev(EventType.LEAVE, at(15), duration=15 * 60), ev(EventType.REJOIN, at(20))]
        + heartbeats(20 * 60 + 30, 59 * 60 + 30)
        + [ev(EventType.LEAVE, at(60), duration=40 * 60)]
    )


def scenario_d():
    """Present for the whole hour without a single heartbeat."""
    return [ev(EventType.JOIN, at(0)), ev(EventType.VIDEO_ON, at(0)), ev(EventType.LEAVE, at(60))]


def scenario_e():
    """500 heartbeats in 30 minutes."""
    beats = [
        ev(EventType.HEARTBEAT_ACTIVE, T0 + timedelta(milliseconds=3600 * k), audio_active=True)
        for k in range(1, 501)
    ]
    return (
        [ev(EventType.JOIN, at(0)), ev(EventType.VIDEO_ON, at(0))]
        + beats
        + [ev(EventType.LEAVE, at(30))]
    )


def session_for(events, duration=60, participant="p-1", meeting="m-1"):
    """In-memory session with metrics applied, no store."""
    session = AttendanceSession(
        participant_id=participant, meeting_id=meeting,
        scheduled_start=T0, scheduled_duration_min=duration, events=list(events),
    )
    tl = reconstruct(session.events, session.scheduled_start, session.scheduled_duration_min)
    apply_to_session(session, tl)
    return session, tl


def seed_session(store, events, status=SessionStatus.COMPLETED, participant="p-1",
                 meeting="m-1", start=T0, duration=60):
    """Persist a session with its events and metrics, optionally marked COMPLETED."""
    session = AttendanceSession(
        participant_id=participant, meeting_id=meeting,
        scheduled_start=start, scheduled_duration_min=duration,
    )
    store.create_session(session)
    for e in events:
        store.append_event(session.session_id, e)
    session = store.get_session(session.session_id)
    tl = reconstruct(session.events, session.scheduled_start, session.scheduled_duration_min)
    apply_to_session(session, tl)
    store.save_metrics(session)
    if status == SessionStatus.COMPLETED:
        store.transition(session, SessionStatus.COMPLETED)
    return store.get_session(session.session_id)


def assess(session):
    tl = reconstruct(session.events, session.scheduled_start, session.scheduled_duration_min)
    engagement = score(session, tl)
    fraud = detect(session, tl, engagement)
    return tl, engagement, fraud, validate(session, tl)
