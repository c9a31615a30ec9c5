#!/usr/bin/env python3
"""
AttendLedger Fraud / Anomaly Detector
======================================
Rule table over a reconstructed timeline. Each rule that fires adds a
Violation and its severity weight to the risk score; the engagement
outcome, when supplied, adds a fixed penalty instead.

Usage:
    from attendledger_fraud import detect, render_report
    fa = detect(session, timeline, engagement)
    if fa.should_auto_reject: ...

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from attendledger_timeline import Timeline
from attendledger_types import (
    AttendanceSession,
    EngagementAssessment,
    FraudAssessment,
    Recommendation,
    Severity,
    Violation,
    config,
)

logger = logging.getLogger("al-fraud")

DURATION_TOLERANCE_MIN = 15
NO_SIGNAL_MIN_PRESENCE = 10
ATTENDANCE_THRESHOLD_PCT = 80.0
PROVIDER_MISMATCH_MIN = 10
MIN_DURATION_MIN = 5
REGULARITY_MIN_INTERVALS = 10
REGULARITY_MAX_VARIANCE_MS2 = 100
MAX_JOIN_LEAVE_EVENTS = 5
IDLE_CEILING_RATIO = 0.5

SEVERITY_WEIGHT = {
    Severity.CRITICAL: 30,
    Severity.HIGH: 20,
    Severity.MEDIUM: 10,
    Severity.LOW: 5,
}
ENGAGEMENT_REJECT_PENALTY = 25
ENGAGEMENT_FLAG_PENALTY = 15


@dataclass(frozen=True)
class FraudRule:
    name: str
    severity: Severity
    action: Recommendation
    description: str
    check: Callable[[AttendanceSession, Timeline], bool]


def _too_regular(tl: Timeline) -> bool:
    """
    Heartbeats arriving faster than the client timer with near-zero jitter.
    A client firing exactly on its own interval is expected to be regular.
    """
    ts = tl.heartbeat_timestamps
    if len(ts) - 1 <= REGULARITY_MIN_INTERVALS:
        return False
    gaps = [(b - a).total_seconds() * 1000.0 for a, b in zip(ts, ts[1:])]
    mean = sum(gaps) / len(gaps)
    variance = sum((g - mean) ** 2 for g in gaps) / len(gaps)
    return variance < REGULARITY_MAX_VARIANCE_MS2 and mean < config.HEARTBEAT_INTERVAL_SECONDS * 1000.0


FRAUD_RULES: List[FraudRule] = [
    FraudRule(
        "IMPOSSIBLE_DURATION", Severity.CRITICAL, Recommendation.REJECT,
        "Attended longer than the meeting plus tolerance",
        lambda s, tl: tl.total_duration_min > s.scheduled_duration_min + DURATION_TOLERANCE_MIN,
    ),
    FraudRule(
        "ZERO_DURATION", Severity.CRITICAL, Recommendation.REJECT,
        "No measurable presence",
        lambda s, tl: tl.total_duration_min <= 0,
    ),
    FraudRule(
        "NO_ENGAGEMENT_SIGNALS", Severity.CRITICAL, Recommendation.REJECT,
        "Present for more than 10 minutes without a single heartbeat",
        lambda s, tl: tl.heartbeat_count == 0 and tl.total_duration_min > NO_SIGNAL_MIN_PRESENCE,
    ),
    FraudRule(
        "ATTENDANCE_BELOW_THRESHOLD", Severity.HIGH, Recommendation.FLAG_FOR_REVIEW,
        "Attended less than 80% of the scheduled meeting",
        lambda s, tl: tl.attendance_percent < ATTENDANCE_THRESHOLD_PCT,
    ),
    FraudRule(
        "DURATION_DATA_MISMATCH", Severity.HIGH, Recommendation.FLAG_FOR_REVIEW,
        "Reconstructed duration disagrees with the provider-reported duration",
        lambda s, tl: (
            tl.provider_duration_min is not None
            and abs(tl.total_duration_min - tl.provider_duration_min) > PROVIDER_MISMATCH_MIN
        ),
    ),
    FraudRule(
        "INSUFFICIENT_DURATION", Severity.HIGH, Recommendation.FLAG_FOR_REVIEW,
        "Attended less than 5 minutes",
        lambda s, tl: 0 < tl.total_duration_min < MIN_DURATION_MIN,
    ),
    FraudRule(
        "SUSPICIOUS_ACTIVITY_PATTERN", Severity.HIGH, Recommendation.FLAG_FOR_REVIEW,
        "Heartbeat timing is too regular to be human",
        lambda s, tl: _too_regular(tl),
    ),
    FraudRule(
        "RAPID_JOIN_LEAVE_CYCLES", Severity.MEDIUM, Recommendation.FLAG_FOR_REVIEW,
        "More than 5 join/leave events in one session",
        lambda s, tl: tl.join_leave_events > MAX_JOIN_LEAVE_EVENTS,
    ),
    FraudRule(
        "EXTREMELY_HIGH_IDLE_TIME", Severity.MEDIUM, Recommendation.FLAG_FOR_REVIEW,
        "Idle for more than half of the attended time",
        lambda s, tl: (
            tl.total_duration_min > 0
            and tl.idle_duration_min > tl.total_duration_min * IDLE_CEILING_RATIO
        ),
    ),
]


def detect(session: AttendanceSession, tl: Timeline,
           engagement: Optional[EngagementAssessment] = None) -> FraudAssessment:
    violations: List[Violation] = []
    risk = 0

    for rule in FRAUD_RULES:
        if not rule.check(session, tl):
            continue
        violations.append(Violation(
            rule=rule.name, severity=rule.severity, action=rule.action, message=rule.description,
        ))
        risk += SEVERITY_WEIGHT[rule.severity]
        logger.warning(f"Fraud rule violated: {rule.name} on {session.session_id} [{rule.severity.value}]")

    if engagement is not None:
        if engagement.recommendation == Recommendation.REJECT:
            violations.append(Violation(
                rule="ENGAGEMENT_ANALYSIS_FAILED",
                severity=Severity.HIGH,
                action=Recommendation.REJECT,
                message=f"Engagement score {engagement.score} ({', '.join(engagement.flags) or 'no flags'})",
            ))
            risk += ENGAGEMENT_REJECT_PENALTY
        elif engagement.recommendation == Recommendation.FLAG_FOR_REVIEW:
            violations.append(Violation(
                rule="ENGAGEMENT_CONCERNS",
                severity=Severity.MEDIUM,
                action=Recommendation.FLAG_FOR_REVIEW,
                message=f"Engagement score {engagement.score} needs review",
            ))
            risk += ENGAGEMENT_FLAG_PENALTY

    risk = min(risk, 100)
    if any(v.action == Recommendation.REJECT for v in violations):
        rec = Recommendation.REJECT
    elif violations or risk > 50:
        rec = Recommendation.FLAG_FOR_REVIEW
    else:
        rec = Recommendation.APPROVE

    logger.info(f"Fraud {session.session_id}: risk={risk} violations={len(violations)} -> {rec.value}")
    return FraudAssessment(violations=violations, risk_score=risk, recommendation=rec)


def render_report(session: AttendanceSession, fa: FraudAssessment) -> str:
    """Plain-text report for reviewers."""
    lines = [
        "Fraud Detection Report",
        "=" * 20,
        "",
        f"Session ID: {session.session_id}",
        f"Participant: {session.participant_id}",
        f"Risk Score: {fa.risk_score}/100",
        f"Recommendation: {fa.recommendation.value}",
        "",
    ]
    if fa.violations:
        lines.append(f"Violations ({len(fa.violations)}):")
        for i, v in enumerate(fa.violations, 1):
            lines += ["", f"{i}. {v.rule} [{v.severity.value}]", f"   {v.message}", f"   Action: {v.action.value}"]
    else:
        lines.append("No violations detected.")
    lines += ["", "=" * 20]
    return "\n".join(lines) + "\n"
