#!/usr/bin/env python3
"""
AttendLedger Engagement Scorer
===============================
Deterministic presence-confidence score from camera/audio evidence,
heartbeat presence and heartbeat rate.

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import logging

from attendledger_timeline import Timeline
from attendledger_types import (
    AttendanceSession,
    EngagementAssessment,
    EngagementLevel,
    Recommendation,
)

logger = logging.getLogger("al-engagement")

WEIGHT_VISUAL = 0.50
WEIGHT_ACTIVITY = 0.30
WEIGHT_CONSISTENCY = 0.20

VIDEO_POINTS = 70
AUDIO_POINTS = 30

ZERO_ACTIVITY_MIN_PRESENCE = 10     # minutes
HIGH_ACTIVITY_RATE = 10             # heartbeats per minute
AUTOMATED_ACTIVITY_RATE = 15


def activity_rate(tl: Timeline) -> float:
    if tl.total_duration_min <= 0:
        return 0.0
    return tl.heartbeat_count / tl.total_duration_min


def pattern_for(tl: Timeline, rate: float) -> str:
    if tl.heartbeat_count == 0:
        return "NO_ACTIVITY"
    if rate > AUTOMATED_ACTIVITY_RATE:
        return "LIKELY_AUTOMATED"
    if rate > HIGH_ACTIVITY_RATE:
        return "VERY_HIGH_ACTIVITY"
    if tl.camera_evidence:
        return "PRESENT_AND_ENGAGED"
    return "ACTIVE_NO_VIDEO"


def score(session: AttendanceSession, tl: Timeline) -> EngagementAssessment:
    """Weighted composite in [0, 100] plus flags and a recommendation."""
    flags = []

    visual = 0
    if tl.camera_evidence:
        visual += VIDEO_POINTS
    else:
        flags.append("NO_VIDEO")
    if tl.audio_evidence:
        visual += AUDIO_POINTS

    if tl.heartbeat_count > 0:
        activity = 100
    else:
        activity = 0
        if tl.total_duration_min > ZERO_ACTIVITY_MIN_PRESENCE:
            flags.append("ZERO_ACTIVITY")

    rate = activity_rate(tl)
    consistency = 100
    if rate > HIGH_ACTIVITY_RATE:
        flags.append("SUSPICIOUSLY_HIGH_ACTIVITY")
        consistency = 50
    if rate > AUTOMATED_ACTIVITY_RATE:
        flags.append("LIKELY_AUTOMATED")
        consistency = 0

    final = int(round(
        visual * WEIGHT_VISUAL + activity * WEIGHT_ACTIVITY + consistency * WEIGHT_CONSISTENCY
    ))
    final = min(max(final, 0), 100)

    if "LIKELY_AUTOMATED" in flags or "ZERO_ACTIVITY" in flags:
        level, rec = EngagementLevel.SUSPICIOUS, Recommendation.REJECT
    elif final >= 80:
        level, rec = EngagementLevel.HIGH, Recommendation.APPROVE
    elif final >= 50:
        level = EngagementLevel.MEDIUM
        rec = Recommendation.FLAG_FOR_REVIEW if "NO_VIDEO" in flags else Recommendation.APPROVE
    elif final >= 30:
        level, rec = EngagementLevel.LOW, Recommendation.FLAG_FOR_REVIEW
    else:
        level, rec = EngagementLevel.SUSPICIOUS, Recommendation.REJECT

    assessment = EngagementAssessment(
        score=final,
        level=level,
        flags=flags,
        recommendation=rec,
        activity_rate=round(rate, 2),
        pattern=pattern_for(tl, rate),
    )
    logger.info(
        f"Engagement {session.session_id}: score={final} level={level.value} "
        f"rate={rate:.2f}/min flags={flags or '-'} -> {rec.value}"
    )
    return assessment
