from datetime import timedelta

import pytest

from attendledger_types import (
    AttendanceSession,
    EventTopic,
    EventType,
    InvalidTransition,
    SessionNotFound,
    SessionStatus,
)

from scenarios import T0, at, ev, scenario_a, scenario_d, seed_session


def _open(store, participant="p-1", meeting="m-1", start=T0):
    session = AttendanceSession(participant_id=participant, meeting_id=meeting, scheduled_start=start)
    return store.create_session(session)


def test_events_get_monotonic_seq(store):
    session = _open(store)
    seqs = [store.append_event(session.session_id, e).seq for e in scenario_d()]
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == 3
    loaded = store.get_session(session.session_id)
    assert [e.seq for e in loaded.events] == seqs
    assert [e.event_type for e in loaded.events] == [EventType.JOIN, EventType.VIDEO_ON, EventType.LEAVE]


def test_unknown_session_raises(store):
    with pytest.raises(SessionNotFound):
        store.get_session("ses_missing")


def test_transitions_only_move_forward(store):
    session = seed_session(store, scenario_a())
    assert session.status == SessionStatus.COMPLETED
    with pytest.raises(InvalidTransition):
        store.transition(session, SessionStatus.IN_PROGRESS)
    store.transition(session, SessionStatus.REJECTED, is_valid=False)
    with pytest.raises(InvalidTransition):
        store.transition(session, SessionStatus.FINALIZED)
    reloaded = store.get_session(session.session_id)
    assert reloaded.status == SessionStatus.REJECTED
    assert reloaded.is_valid is False


def test_stale_view_cannot_transition(store):
    session = _open(store)
    stale = store.get_session(session.session_id)
    store.transition(session, SessionStatus.COMPLETED)
    with pytest.raises(InvalidTransition):
        store.transition(stale, SessionStatus.COMPLETED)


def test_claim_is_exclusive_until_released_or_expired(store):
    session = seed_session(store, scenario_a())
    now = at(70)
    assert store.claim_for_processing(session.session_id, "clm_a", now)
    assert not store.claim_for_processing(session.session_id, "clm_b", now)

    store.release_claim(session.session_id, "clm_b")
    assert not store.claim_for_processing(session.session_id, "clm_b", now)

    store.release_claim(session.session_id, "clm_a")
    assert store.claim_for_processing(session.session_id, "clm_b", now)
    assert store.claim_for_processing(session.session_id, "clm_c", now + timedelta(hours=1))


def test_claim_requires_completed(store):
    session = _open(store)
    assert not store.claim_for_processing(session.session_id, "clm_a", at(70))


def test_metadata_round_trips_with_extensions(store):
    session = _open(store)
    session.metadata.provider_duration_min = 42.0
    session.metadata.note("meeting schedule unknown")
    session.metadata.extensions["zoom_uuid"] = "abc=="
    store.save_metrics(session)

    meta = store.get_session(session.session_id).metadata
    assert meta.provider_duration_min == 42.0
    assert meta.assumptions == ["meeting schedule unknown"]
    assert meta.extensions == {"zoom_uuid": "abc=="}


def test_save_metrics_does_not_touch_status(store):
    session = _open(store)
    session.status = SessionStatus.FINALIZED
    session.total_duration_min = 12.5
    store.save_metrics(session)
    reloaded = store.get_session(session.session_id)
    assert reloaded.status == SessionStatus.IN_PROGRESS
    assert reloaded.total_duration_min == 12.5


def test_find_session_prefers_open_then_recent_terminal(store):
    done = seed_session(store, scenario_a())
    store.transition(done, SessionStatus.REJECTED, is_valid=False)

    late = store.find_session_for_event("p-1", "m-1", at(70))
    assert late is not None and late.session_id == done.session_id
    assert store.find_session_for_event("p-1", "m-1", at(120)) is None
    assert store.find_session_for_event("p-2", "m-1", at(10)) is None

    fresh = _open(store)
    assert store.find_session_for_event("p-1", "m-1", at(120)).session_id == fresh.session_id


def test_list_sessions_by_status(store):
    seed_session(store, scenario_a())
    _open(store, participant="p-2")
    assert len(store.list_sessions()) == 2
    completed = store.list_sessions(SessionStatus.COMPLETED, with_events=False)
    assert [s.participant_id for s in completed] == ["p-1"]
    assert completed[0].events == []


def test_meetings_upsert(store):
    store.upsert_meeting("m-1", T0, 60, "Ethics CE")
    store.upsert_meeting("m-1", at(30), 90, "Ethics CE (moved)")
    meeting = store.get_meeting("m-1")
    assert meeting["scheduled_start"] == at(30)
    assert meeting["duration_min"] == 90
    assert store.get_meeting("m-2") is None


def test_rejections_are_kept(store):
    rid = store.record_rejection("BAD_SIGNATURE", "Webhook signature mismatch", {"event": "x"})
    rows = store.list_rejections()
    assert rows[0]["rejection_id"] == rid
    assert rows[0]["reason"] == "BAD_SIGNATURE"
    assert store.get_stats()["rejected_events"] == 1


def test_bus_events_and_audit_log(store):
    store.publish_event(EventTopic.SESSION_OPENED, {"session_id": "ses_1"})
    store.publish_event(EventTopic.SESSION_COMPLETED, {"session_id": "ses_1"})
    assert [e["topic"] for e in store.list_events()] == ["session.completed", "session.opened"]
    assert len(store.list_events(EventTopic.SESSION_OPENED)) == 1

    store.audit("admin.reconcile", {"finalized": 1}, actor="api_key")
    store.audit("session.rejected", {"session_id": "ses_1"})
    entries = store.get_audit_log()
    assert entries[0]["seq"] > entries[1]["seq"]
    assert store.get_audit_log("admin.reconcile")[0]["actor"] == "api_key"
