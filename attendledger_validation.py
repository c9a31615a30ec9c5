#!/usr/bin/env python3
"""
AttendLedger Validation Gate
=============================
Compliance findings for a session, independent of the fraud rules.
Any CRITICAL finding marks the record FAILED; the record is still
generated and signed so the failure itself is attested.

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import logging

from attendledger_timeline import Timeline
from attendledger_types import (
    AttendanceSession,
    ConfidenceLevel,
    Severity,
    ValidationFinding,
    ValidationResult,
    ValidationStatus,
    minutes_between,
)

logger = logging.getLogger("al-validation")

PUNCTUALITY_GRACE_MIN = 10
MIN_ACTIVE_RATIO = 0.80
MIN_ATTENDED_MIN = 5
MIN_ATTENDANCE_PCT = 80.0
RECOMMENDED_ATTENDANCE_PCT = 90.0
MAX_IDLE_RATIO = 0.20
MONITORING_MIN_ATTENDED = 10


def meets_attendance_ratio(attendance_percent: float) -> bool:
    """80.00 passes, 79.99 does not."""
    return attendance_percent >= MIN_ATTENDANCE_PCT


def punctuality_gap_min(session: AttendanceSession, tl: Timeline) -> float:
    """Minutes missed at the start plus minutes missed at the end."""
    late = 0.0
    early = 0.0
    if tl.first_join is not None:
        late = max(minutes_between(session.scheduled_start, tl.first_join), 0.0)
    if tl.last_leave is not None:
        early = max(minutes_between(tl.last_leave, session.scheduled_end), 0.0)
    return late + early


def validate(session: AttendanceSession, tl: Timeline) -> ValidationResult:
    findings = []
    total = tl.total_duration_min
    active_pct = tl.active_duration_min / total * 100 if total > 0 else 0.0
    idle_pct = tl.idle_duration_min / total * 100 if total > 0 else 0.0

    gap = punctuality_gap_min(session, tl)
    if gap > PUNCTUALITY_GRACE_MIN:
        findings.append(ValidationFinding(
            "LATE_ARRIVAL_EARLY_DEPARTURE", Severity.CRITICAL,
            f"Missed {gap:.1f} minutes at the start and end of the meeting "
            f"(allowed {PUNCTUALITY_GRACE_MIN}).",
        ))
    if total <= 0 or tl.active_duration_min < total * MIN_ACTIVE_RATIO:
        findings.append(ValidationFinding(
            "LOW_ACTIVE_TIME", Severity.CRITICAL,
            f"Only {active_pct:.1f}% active during meeting (required 80%). "
            f"Active: {tl.active_duration_min:.1f} min, Total: {total:.1f} min.",
        ))
    if total < MIN_ATTENDED_MIN:
        findings.append(ValidationFinding(
            "INSUFFICIENT_DURATION", Severity.CRITICAL,
            f"Attended {total:.1f} minutes (minimum {MIN_ATTENDED_MIN}).",
        ))
    if not meets_attendance_ratio(tl.attendance_percent):
        findings.append(ValidationFinding(
            "INSUFFICIENT_ATTENDANCE", Severity.CRITICAL,
            f"Attended {total:.1f} minutes of {session.scheduled_duration_min:g} minute meeting "
            f"({tl.attendance_percent:.1f}%). Required: 80%.",
        ))

    if idle_pct > MAX_IDLE_RATIO * 100:
        findings.append(ValidationFinding(
            "EXCESSIVE_IDLE_TIME", Severity.WARNING,
            f"Idle for {tl.idle_duration_min:.1f} minutes ({idle_pct:.1f}% of attendance). "
            f"Recommended maximum: 20%.",
        ))
    elif tl.idle_duration_min > 0:
        findings.append(ValidationFinding(
            "IDLE_PERIODS_DETECTED", Severity.INFO,
            f"{tl.idle_duration_min:.1f} minutes of idle time detected, within limits.",
        ))
    if MIN_ATTENDANCE_PCT <= tl.attendance_percent < RECOMMENDED_ATTENDANCE_PCT:
        findings.append(ValidationFinding(
            "LOW_ATTENDANCE_WARNING", Severity.WARNING,
            f"Attendance {tl.attendance_percent:.1f}% is acceptable but below recommended 90%.",
        ))
    if total >= MONITORING_MIN_ATTENDED and tl.heartbeat_count == 0:
        findings.append(ValidationFinding(
            "NO_ACTIVITY_MONITORING", Severity.WARNING,
            f"Attended {total:.1f} minutes but no activity heartbeats were received.",
        ))

    status = (
        ValidationStatus.FAILED
        if any(f.severity == Severity.CRITICAL for f in findings)
        else ValidationStatus.PASSED
    )
    result = ValidationResult(findings=findings, status=status)
    if status == ValidationStatus.FAILED:
        logger.warning(
            f"Validation FAILED for {session.session_id}: "
            f"{', '.join(f.type for f in result.critical)}"
        )
    return result


def confidence_level(result: ValidationResult, session: AttendanceSession) -> ConfidenceLevel:
    if result.status == ValidationStatus.FAILED:
        return ConfidenceLevel.LOW
    if (session.attendance_percent >= 95
            and session.active_duration_min >= session.total_duration_min * 0.95):
        return ConfidenceLevel.HIGH
    if session.attendance_percent >= MIN_ATTENDANCE_PCT:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW
