from datetime import timedelta

import pytest

from attendledger_scheduler import ReconciliationScheduler, infer_leave
from attendledger_timeline import reconstruct
from attendledger_types import EventTopic, EventType, LeaveSource, SessionStatus

from scenarios import T0, at, ev, heartbeats, scenario_a, scenario_d, seed_session

AFTER_GRACE = at(76)
AFTER_END = at(61)


def test_infer_leave_from_last_heartbeat():
    tl = reconstruct([ev(EventType.JOIN, at(0))] + heartbeats(30, 2400), T0, 60)
    assert infer_leave(tl, AFTER_GRACE) == (at(40, 30), LeaveSource.LAST_HEARTBEAT)


def test_infer_leave_fallback_and_clamp():
    tl = reconstruct([ev(EventType.JOIN, at(0))], T0, 60)
    assert infer_leave(tl, AFTER_GRACE) == (at(1), LeaveSource.FALLBACK_MINIMUM)
    assert infer_leave(tl, at(0, 20))[0] == at(0, 20)


def test_stale_session_closed_from_last_heartbeat(store, reconciler):
    events = (
        [ev(EventType.JOIN, at(0)), ev(EventType.VIDEO_ON, at(0))]
        + heartbeats(30, 2400, audio_active=True)
    )
    session = seed_session(store, events, status=SessionStatus.IN_PROGRESS)

    result = reconciler.sweep(AFTER_GRACE)
    assert result.auto_closed == 1
    assert result.finalized == 1

    closed = store.get_session(session.session_id)
    assert closed.status == SessionStatus.FINALIZED
    assert closed.leave_time == at(40, 30)
    assert closed.total_duration_min == pytest.approx(40.5)
    assert closed.metadata.inferred_leave
    assert closed.metadata.leave_source == LeaveSource.LAST_HEARTBEAT
    record = store.record_for_session(session.session_id)
    assert record.canonical["leave_source"] == "LAST_HEARTBEAT"
    assert store.list_events(EventTopic.SESSION_AUTO_CLOSED)


def test_stale_session_without_heartbeats_uses_fallback_and_rejects(store, reconciler):
    session = seed_session(store, [ev(EventType.JOIN, at(0))], status=SessionStatus.IN_PROGRESS)

    result = reconciler.sweep(AFTER_GRACE)
    assert result.auto_closed == 1
    assert result.rejected == 1

    closed = store.get_session(session.session_id)
    assert closed.leave_time == at(1)
    assert closed.metadata.leave_source == LeaveSource.FALLBACK_MINIMUM
    assert closed.status == SessionStatus.REJECTED
    assert closed.is_valid is False
    assert closed.metadata.invalid_reason.startswith("FRAUD:")
    assert store.record_for_session(session.session_id) is None


def test_nothing_happens_inside_the_window(store, reconciler):
    open_session = seed_session(store, [ev(EventType.JOIN, at(0))], status=SessionStatus.IN_PROGRESS)
    done = seed_session(store, scenario_a(), participant="p-2")

    result = reconciler.sweep(at(50))
    assert result.auto_closed == 0
    assert result.finalized == 0
    assert result.skipped == 1
    assert store.get_session(open_session.session_id).status == SessionStatus.IN_PROGRESS
    assert store.get_session(done.session_id).status == SessionStatus.COMPLETED

    # past the scheduled end, not yet past the grace period
    result = reconciler.sweep(at(70))
    assert result.auto_closed == 0
    assert result.finalized == 1
    assert store.get_session(open_session.session_id).status == SessionStatus.IN_PROGRESS


def _rejoined_without_final_leave():
    return (
        [ev(EventType.JOIN, at(0)), ev(EventType.VIDEO_ON, at(0))]
        + heartbeats(30, 14 * 60 + 30, audio_active=True)
        + [ev(EventType.LEAVE, at(15)), ev(EventType.REJOIN, at(20))]
        + heartbeats(20 * 60 + 30, 60 * 60 + 30, audio_active=True)
    )


def test_rejoined_session_waits_for_its_final_leave(store, reconciler):
    session = seed_session(store, _rejoined_without_final_leave())
    assert session.status == SessionStatus.COMPLETED

    result = reconciler.sweep(AFTER_END)
    assert result.finalized == 0
    assert result.skipped == 1
    assert store.get_session(session.session_id).status == SessionStatus.COMPLETED

    store.append_event(session.session_id, ev(EventType.LEAVE, at(61)))
    assert reconciler.sweep(at(62)).finalized == 1
    final = store.get_session(session.session_id)
    assert final.status == SessionStatus.FINALIZED
    assert final.leave_time == at(61)
    assert final.metadata.leave_source == LeaveSource.WEBHOOK
    assert not final.metadata.inferred_leave


def test_rejoined_session_closed_by_inference_after_grace(store, reconciler):
    session = seed_session(store, _rejoined_without_final_leave())

    assert reconciler.sweep(AFTER_GRACE).finalized == 1
    final = store.get_session(session.session_id)
    assert final.leave_time == at(61)
    assert final.metadata.leave_source == LeaveSource.LAST_HEARTBEAT


def test_completed_session_finalized_and_delivery_requested(store, reconciler):
    session = seed_session(store, scenario_a())
    result = reconciler.sweep(AFTER_END)
    assert result.finalized == 1

    final = store.get_session(session.session_id)
    assert final.status == SessionStatus.FINALIZED
    assert final.is_valid is True
    assert final.metadata.leave_source == LeaveSource.WEBHOOK

    record = store.record_for_session(session.session_id)
    delivery = store.list_events(EventTopic.DELIVERY_REQUESTED)
    assert delivery[0]["payload"]["card_number"] == record.card_number
    assert delivery[0]["payload"]["needs_manual_review"] is False
    assert store.list_events(EventTopic.SWEEP_COMPLETED)[0]["payload"]["finalized"] == 1


def test_rejected_session_is_not_retried(store, reconciler):
    session = seed_session(store, scenario_d())
    first = reconciler.sweep(AFTER_END)
    assert first.rejected == 1

    rejected = store.get_session(session.session_id)
    assert rejected.status == SessionStatus.REJECTED
    assert "NO_ENGAGEMENT_SIGNALS" in rejected.metadata.invalid_reason
    assert store.record_for_session(session.session_id) is None

    again = reconciler.sweep(AFTER_END + timedelta(minutes=5))
    assert again.rejected == 0
    assert again.finalized == 0
    assert len(store.list_events(EventTopic.SESSION_REJECTED)) == 1


def test_second_sweep_is_idempotent(store, reconciler):
    seed_session(store, scenario_a())
    reconciler.sweep(AFTER_END)
    again = reconciler.sweep(AFTER_END + timedelta(minutes=2))
    assert again.finalized == 0
    assert len(store.list_chain_raw("p-1")) == 1


def test_claimed_session_is_skipped_until_claim_expires(store, reconciler):
    session = seed_session(store, scenario_a())
    assert store.claim_for_processing(session.session_id, "clm_elsewhere", AFTER_END)

    result = reconciler.sweep(AFTER_END)
    assert result.skipped == 1
    assert result.finalized == 0
    assert store.get_session(session.session_id).status == SessionStatus.COMPLETED

    result = reconciler.sweep(AFTER_END + timedelta(minutes=15))
    assert result.finalized == 1


def test_one_failure_does_not_block_the_rest(store, generator, reconciler, monkeypatch):
    broken = seed_session(store, scenario_a(), participant="p-1")
    healthy = seed_session(store, scenario_a(), participant="p-2")
    real_generate = generator.generate

    def flaky(session_id, *args, **kwargs):
        if session_id == broken.session_id:
            raise RuntimeError("disk full")
        return real_generate(session_id, *args, **kwargs)

    monkeypatch.setattr(generator, "generate", flaky)
    result = reconciler.sweep(AFTER_END)
    assert result.failed == 1
    assert result.finalized == 1
    assert "disk full" in result.errors[0]
    assert store.get_session(healthy.session_id).status == SessionStatus.FINALIZED
    assert store.get_session(broken.session_id).status == SessionStatus.COMPLETED

    # claim was released, so the next tick retries right away
    monkeypatch.setattr(generator, "generate", real_generate)
    assert reconciler.sweep(AFTER_END).finalized == 1
    assert store.get_session(broken.session_id).status == SessionStatus.FINALIZED


def test_parallel_groups(store, generator):
    for p in ("p-1", "p-2", "p-3"):
        seed_session(store, scenario_a(), participant=p, meeting="m-1")
        seed_session(store, scenario_a(), participant=p, meeting="m-2")
    reconciler = ReconciliationScheduler(store, generator, max_workers=3)

    result = reconciler.sweep(AFTER_END)
    assert result.finalized == 6
    assert result.failed == 0
    for p in ("p-1", "p-2", "p-3"):
        assert [r["sequence"] for r in store.list_chain_raw(p)] == [1, 2]


def test_background_job_start_and_shutdown(reconciler):
    reconciler.start()
    try:
        assert reconciler.running
        reconciler.start()
        assert reconciler.running
    finally:
        reconciler.shutdown()
    assert not reconciler.running
