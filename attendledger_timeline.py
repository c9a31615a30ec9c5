#!/usr/bin/env python3
"""
AttendLedger Timeline Reconstructor
====================================
Rebuilds presence intervals and active/idle/unaccounted time from an
unordered activity event stream. Pure functions over the event list:
the result depends only on the events, never on arrival order.

Usage:
    from attendledger_timeline import reconstruct
    tl = reconstruct(session.events, session.scheduled_start, session.scheduled_duration_min)

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from attendledger_types import (
    HEARTBEATS,
    PRESENCE_OPENING,
    ActivityEvent,
    AttendanceSession,
    EventType,
    ReconstructionWarning,
    minutes_between,
)

logger = logging.getLogger("al-timeline")


@dataclass
class Timeline:
    """Reconstructed presence for one session."""
    intervals: List[Tuple[datetime, datetime]] = field(default_factory=list)
    open_since: Optional[datetime] = None
    first_join: Optional[datetime] = None
    last_leave: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    last_heartbeat_in_open: Optional[datetime] = None
    total_duration_min: float = 0.0
    active_duration_min: float = 0.0
    idle_duration_min: float = 0.0
    unaccounted_duration_min: float = 0.0
    attendance_percent: float = 0.0
    leave_rejoin_count: int = 0
    heartbeat_count: int = 0
    active_heartbeat_count: int = 0
    idle_heartbeat_count: int = 0
    heartbeat_timestamps: List[datetime] = field(default_factory=list)
    join_leave_events: int = 0
    camera_evidence: bool = False
    audio_evidence: bool = False
    provider_duration_min: Optional[float] = None
    inferred_join: bool = False
    assumptions: List[str] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.open_since is not None

    def warn(self, warning: ReconstructionWarning):
        logger.warning(f"Reconstruction assumption: {warning.message}")
        if warning.message not in self.assumptions:
            self.assumptions.append(warning.message)


# Order of event kinds sharing a timestamp: presence opens first, closes last.
TIE_RANK = {
    EventType.JOIN: 0,
    EventType.REJOIN: 0,
    EventType.VIDEO_ON: 1,
    EventType.VIDEO_OFF: 1,
    EventType.HEARTBEAT_ACTIVE: 2,
    EventType.HEARTBEAT_IDLE: 3,
    EventType.LEAVE: 4,
}


def ordered(events: Iterable[ActivityEvent]) -> List[ActivityEvent]:
    """
    Chronological order. Timestamp ties are broken by event kind, then by
    arrival seq, which only ever orders events of the same kind.
    """
    return sorted(events, key=lambda e: (e.timestamp, TIE_RANK.get(e.event_type, 2), e.seq))


def reconstruct(events: Iterable[ActivityEvent], scheduled_start: datetime,
                scheduled_duration_min: float,
                close_at: Optional[datetime] = None) -> Timeline:
    """
    Walk the events in timestamp order tracking presence.

    JOIN/REJOIN opens an interval (ignored while present), LEAVE closes it
    (ignored while absent). A LEAVE sharing its timestamp with an opening
    event is a reconnect: the interval closes and reopens at that instant.
    Heartbeats while present add the time since the
    previous heartbeat, or since the interval start, to the active or idle
    bucket. An interval still open at the end stays open unless `close_at`
    is given.
    """
    evs = ordered(events)
    tl = Timeline()
    if not evs:
        return tl

    present = False
    interval_start: Optional[datetime] = None
    last_hb: Optional[datetime] = None
    active_sec = 0.0
    idle_sec = 0.0
    provider_sec: Optional[float] = None
    held_open: Optional[datetime] = None

    if evs[0].event_type not in PRESENCE_OPENING:
        present = True
        interval_start = evs[0].timestamp
        tl.first_join = interval_start
        tl.inferred_join = True
        tl.warn(ReconstructionWarning(
            f"no JOIN before first event; presence assumed from {interval_start.isoformat()}"
        ))

    for ev in evs:
        if ev.event_type == EventType.VIDEO_ON or ev.flag("video_active"):
            tl.camera_evidence = True
        if ev.flag("audio_active"):
            tl.audio_evidence = True

        if ev.event_type in PRESENCE_OPENING:
            tl.join_leave_events += 1
            if present:
                held_open = ev.timestamp
                continue
            if tl.intervals:
                tl.leave_rejoin_count += 1
            present = True
            interval_start = ev.timestamp
            last_hb = None
            if tl.first_join is None:
                tl.first_join = ev.timestamp

        elif ev.event_type == EventType.LEAVE:
            tl.join_leave_events += 1
            duration = ev.payload.get("duration")
            if isinstance(duration, (int, float)) and not isinstance(duration, bool):
                provider_sec = (provider_sec or 0.0) + float(duration)
            if not present:
                continue
            tl.intervals.append((interval_start, ev.timestamp))
            tl.last_leave = ev.timestamp
            present = False
            interval_start = None
            last_hb = None
            if held_open == ev.timestamp:
                tl.leave_rejoin_count += 1
                present = True
                interval_start = ev.timestamp
            held_open = None

        elif ev.event_type in HEARTBEATS:
            if not present:
                continue
            ref = max(last_hb, interval_start) if last_hb else interval_start
            elapsed = max((ev.timestamp - ref).total_seconds(), 0.0)
            if ev.event_type == EventType.HEARTBEAT_ACTIVE:
                active_sec += elapsed
                tl.active_heartbeat_count += 1
            else:
                idle_sec += elapsed
                tl.idle_heartbeat_count += 1
            tl.heartbeat_count += 1
            tl.heartbeat_timestamps.append(ev.timestamp)
            tl.last_heartbeat = ev.timestamp
            last_hb = ev.timestamp

    if present:
        if close_at is not None:
            end = max(close_at, interval_start)
            tl.intervals.append((interval_start, end))
            tl.last_leave = end
        else:
            tl.open_since = interval_start
            tl.last_heartbeat_in_open = last_hb

    tl.total_duration_min = sum(minutes_between(s, e) for s, e in tl.intervals)
    tl.active_duration_min = active_sec / 60.0
    tl.idle_duration_min = idle_sec / 60.0
    tl.unaccounted_duration_min = max(
        tl.total_duration_min - tl.active_duration_min - tl.idle_duration_min, 0.0
    )
    if scheduled_duration_min > 0:
        pct = tl.total_duration_min * 100.0 / scheduled_duration_min
        tl.attendance_percent = min(max(pct, 0.0), 100.0)
    if provider_sec is not None:
        tl.provider_duration_min = provider_sec / 60.0
    return tl


def apply_to_session(session: AttendanceSession, tl: Timeline):
    """Copy reconstructed metrics onto the session and its metadata."""
    session.join_time = tl.first_join
    session.leave_time = None if tl.is_open else tl.last_leave
    session.total_duration_min = round(tl.total_duration_min, 4)
    session.active_duration_min = round(tl.active_duration_min, 4)
    session.idle_duration_min = round(tl.idle_duration_min, 4)
    session.attendance_percent = round(tl.attendance_percent, 4)
    session.leave_rejoin_count = tl.leave_rejoin_count
    meta = session.metadata
    meta.inferred_join = tl.inferred_join
    meta.provider_duration_min = tl.provider_duration_min
    for note in tl.assumptions:
        meta.note(note)
