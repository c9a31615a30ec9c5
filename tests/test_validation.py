from attendledger_types import ConfidenceLevel, EventType, Severity, ValidationStatus
from attendledger_validation import confidence_level, meets_attendance_ratio, validate

from scenarios import at, ev, heartbeats, scenario_a, scenario_b, scenario_c, scenario_d, session_for


def _validate(events, duration=60):
    session, tl = session_for(events, duration=duration)
    return session, validate(session, tl)


def _present(minutes, seconds=0):
    """Joined on time, active heartbeats every 30s, left after the given time."""
    end = minutes * 60 + seconds
    return (
        [ev(EventType.JOIN, at(0))]
        + heartbeats(30, end - 1)
        + [ev(EventType.HEARTBEAT_ACTIVE, at(minutes, seconds)), ev(EventType.LEAVE, at(minutes, seconds))]
    )


def test_scenario_a_passes_with_high_confidence():
    session, result = _validate(scenario_a())
    assert result.status == ValidationStatus.PASSED
    assert result.findings == []
    assert confidence_level(result, session) == ConfidenceLevel.HIGH


def test_scenario_b_fails_punctuality():
    session, result = _validate(scenario_b())
    assert result.status == ValidationStatus.FAILED
    assert "LATE_ARRIVAL_EARLY_DEPARTURE" in [f.type for f in result.critical]
    assert "17.0 minutes" in result.findings[0].message
    assert confidence_level(result, session) == ConfidenceLevel.LOW


def test_scenario_c_passes_with_medium_confidence():
    session, result = _validate(scenario_c())
    assert result.status == ValidationStatus.PASSED
    assert confidence_level(result, session) == ConfidenceLevel.MEDIUM


def test_attendance_ratio_boundary():
    assert meets_attendance_ratio(80.0)
    assert meets_attendance_ratio(80.00)
    assert not meets_attendance_ratio(79.99)


def test_exactly_eighty_percent_is_not_insufficient():
    _, result = _validate(_present(48))
    assert "INSUFFICIENT_ATTENDANCE" not in result.types
    assert "LOW_ATTENDANCE_WARNING" in result.types


def test_just_under_eighty_percent_is_insufficient():
    _, result = _validate(_present(47, 59))
    assert "INSUFFICIENT_ATTENDANCE" in result.types
    assert result.status == ValidationStatus.FAILED


def test_low_active_time_and_excessive_idle():
    events = (
        [ev(EventType.JOIN, at(0))]
        + heartbeats(60, 45 * 60, every_s=60)
        + heartbeats(46 * 60, 60 * 60, every_s=60, kind=EventType.HEARTBEAT_IDLE)
        + [ev(EventType.LEAVE, at(60))]
    )
    _, result = _validate(events)
    assert "LOW_ACTIVE_TIME" in [f.type for f in result.critical]
    idle = next(f for f in result.findings if f.type == "EXCESSIVE_IDLE_TIME")
    assert idle.severity == Severity.WARNING


def test_idle_within_limits_is_informational():
    events = (
        [ev(EventType.JOIN, at(0))]
        + heartbeats(60, 55 * 60, every_s=60)
        + heartbeats(56 * 60, 60 * 60, every_s=60, kind=EventType.HEARTBEAT_IDLE)
        + [ev(EventType.LEAVE, at(60))]
    )
    _, result = _validate(events)
    assert result.status == ValidationStatus.PASSED
    assert result.types == ["IDLE_PERIODS_DETECTED"]


def test_no_heartbeats_warns_about_monitoring():
    _, result = _validate(scenario_d())
    assert "NO_ACTIVITY_MONITORING" in result.types
    assert "LOW_ACTIVE_TIME" in result.types


def test_very_short_attendance():
    _, result = _validate(_present(3), duration=3)
    assert "INSUFFICIENT_DURATION" in result.types
    assert result.status == ValidationStatus.FAILED
