from attendledger_engagement import score
from attendledger_fraud import detect, render_report
from attendledger_types import EngagementAssessment, EngagementLevel, EventType, Recommendation, Severity

from scenarios import at, ev, heartbeats, scenario_a, scenario_b, scenario_d, scenario_e, session_for


def _detect(events, duration=60, with_engagement=True):
    session, tl = session_for(events, duration=duration)
    engagement = score(session, tl) if with_engagement else None
    return session, detect(session, tl, engagement)


def test_scenario_a_is_clean():
    _, fa = _detect(scenario_a())
    assert fa.violations == []
    assert fa.risk_score == 0
    assert fa.recommendation == Recommendation.APPROVE
    assert not fa.should_auto_reject
    assert not fa.needs_manual_review


def test_scenario_d_no_engagement_signals_auto_rejects():
    _, fa = _detect(scenario_d())
    assert "NO_ENGAGEMENT_SIGNALS" in fa.rules
    assert "ENGAGEMENT_ANALYSIS_FAILED" in fa.rules
    # CRITICAL 30 + engagement reject penalty 25
    assert fa.risk_score == 55
    assert fa.recommendation == Recommendation.REJECT
    assert fa.should_auto_reject


def test_scenario_e_rejects_through_engagement():
    _, fa = _detect(scenario_e())
    assert "ENGAGEMENT_ANALYSIS_FAILED" in fa.rules
    assert "SUSPICIOUS_ACTIVITY_PATTERN" in fa.rules
    assert fa.recommendation == Recommendation.REJECT
    assert fa.should_auto_reject


def test_scenario_b_is_flagged_not_rejected():
    _, fa = _detect(scenario_b())
    assert fa.rules == ["ATTENDANCE_BELOW_THRESHOLD"]
    assert fa.risk_score == 20
    assert fa.recommendation == Recommendation.FLAG_FOR_REVIEW
    assert not fa.should_auto_reject
    assert fa.needs_manual_review


def test_impossible_duration():
    events = (
        [ev(EventType.JOIN, at(0)), ev(EventType.VIDEO_ON, at(0))]
        + heartbeats(30, 3570, audio_active=True)
        + [ev(EventType.LEAVE, at(60))]
    )
    _, fa = _detect(events, duration=30)
    v = next(v for v in fa.violations if v.rule == "IMPOSSIBLE_DURATION")
    assert v.severity == Severity.CRITICAL
    assert v.action == Recommendation.REJECT
    assert fa.should_auto_reject


def test_zero_duration():
    _, fa = _detect([ev(EventType.JOIN, at(0)), ev(EventType.LEAVE, at(0))], with_engagement=False)
    assert "ZERO_DURATION" in fa.rules
    assert fa.should_auto_reject


def test_provider_duration_mismatch():
    events = (
        [ev(EventType.JOIN, at(0)), ev(EventType.VIDEO_ON, at(0))]
        + heartbeats(30, 3570, audio_active=True)
        + [ev(EventType.LEAVE, at(60), duration=40 * 60)]
    )
    _, fa = _detect(events)
    assert fa.rules == ["DURATION_DATA_MISMATCH"]
    assert fa.recommendation == Recommendation.FLAG_FOR_REVIEW


def test_insufficient_duration_and_idle_ceiling():
    events = (
        [ev(EventType.JOIN, at(0)), ev(EventType.VIDEO_ON, at(0))]
        + heartbeats(60, 60)
        + heartbeats(120, 240, every_s=60, kind=EventType.HEARTBEAT_IDLE)
        + [ev(EventType.LEAVE, at(4))]
    )
    _, fa = _detect(events, duration=5, with_engagement=False)
    assert "INSUFFICIENT_DURATION" in fa.rules
    assert "EXTREMELY_HIGH_IDLE_TIME" in fa.rules
    # HIGH 20 + MEDIUM 10
    assert fa.risk_score == 30


def test_regular_client_timer_is_not_suspicious():
    _, fa = _detect(scenario_a())
    assert "SUSPICIOUS_ACTIVITY_PATTERN" not in fa.rules


def test_risk_score_capped_at_100():
    events = [
        ev(EventType.JOIN, at(0)), ev(EventType.LEAVE, at(10)),
        ev(EventType.JOIN, at(11)), ev(EventType.LEAVE, at(20)),
        ev(EventType.JOIN, at(21)), ev(EventType.LEAVE, at(40), duration=60),
    ]
    _, fa = _detect(events, duration=20)
    assert {"IMPOSSIBLE_DURATION", "NO_ENGAGEMENT_SIGNALS", "DURATION_DATA_MISMATCH",
            "RAPID_JOIN_LEAVE_CYCLES", "ENGAGEMENT_ANALYSIS_FAILED"} <= set(fa.rules)
    assert fa.risk_score == 100


def test_engagement_concerns_add_flag_penalty():
    events = [ev(EventType.JOIN, at(0))] + heartbeats(30, 3570) + [ev(EventType.LEAVE, at(60))]
    _, fa = _detect(events)
    assert fa.rules == ["ENGAGEMENT_CONCERNS"]
    assert fa.risk_score == 15
    assert fa.recommendation == Recommendation.FLAG_FOR_REVIEW


def test_low_engagement_score_rejects_through_engagement_rule():
    session, tl = session_for(scenario_a())
    low = EngagementAssessment(score=20, level=EngagementLevel.SUSPICIOUS, recommendation=Recommendation.REJECT)
    fa = detect(session, tl, low)
    assert fa.rules == ["ENGAGEMENT_ANALYSIS_FAILED"]
    assert fa.violations[0].severity == Severity.HIGH
    assert fa.should_auto_reject


def test_report_lists_violations():
    session, fa = _detect(scenario_d())
    text = render_report(session, fa)
    assert text.startswith("Fraud Detection Report\n")
    assert f"Session ID: {session.session_id}" in text
    assert "Risk Score: 55/100" in text
    assert "1. NO_ENGAGEMENT_SIGNALS [CRITICAL]" in text
    assert "Action: REJECT" in text


def test_report_without_violations():
    session, fa = _detect(scenario_a())
    assert "No violations detected." in render_report(session, fa)


def test_detect_without_engagement_adds_no_penalty():
    session, tl = session_for(scenario_d())
    fa = detect(session, tl)
    assert fa.rules == ["NO_ENGAGEMENT_SIGNALS"]
    assert fa.risk_score == 30
