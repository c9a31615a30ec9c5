#!/usr/bin/env python3
"""
AttendLedger Reconciliation Scheduler
======================================
Periodic sweep that closes abandoned sessions and finalizes completed
ones. Runs every SWEEP_INTERVAL_SECONDS on an APScheduler background
job, and on demand from the admin endpoint.

  (a) IN_PROGRESS past scheduled end + grace  →  infer leave, COMPLETED
  (b) COMPLETED, window elapsed, no record    →  claim, score, detect,
      then REJECTED (auto-reject) or record + FINALIZED + delivery request.
      A COMPLETED session reopened by a rejoin waits for end + grace.

Each session is processed on its own: a failure is logged, its claim is
released and it is retried on the next tick. Sessions are grouped by
chain scope; groups may run in parallel, a group's sessions never do.

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from attendledger_engagement import score
from attendledger_fraud import detect
from attendledger_ledger import RecordGenerator
from attendledger_store import Store
from attendledger_timeline import Timeline, apply_to_session, reconstruct
from attendledger_types import (
    AttendanceSession,
    EventTopic,
    GenerationConflict,
    LeaveSource,
    SessionStatus,
    config,
    iso,
    utcnow,
)
from attendledger_validation import validate

logger = logging.getLogger("al-scheduler")

JOB_ID = "reconcile_sessions"


@dataclass
class SweepResult:
    checked: int = 0
    auto_closed: int = 0
    finalized: int = 0
    rejected: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


def infer_leave(tl: Timeline, now: datetime) -> tuple:
    """
    Leave time for an interval that never saw a LEAVE: the last heartbeat
    plus one heartbeat interval, or the fallback presence with no heartbeat.
    Never before the interval start, never after `now`.
    """
    if tl.last_heartbeat_in_open is not None:
        inferred = tl.last_heartbeat_in_open + timedelta(seconds=config.HEARTBEAT_INTERVAL_SECONDS)
        source = LeaveSource.LAST_HEARTBEAT
    else:
        inferred = tl.open_since + timedelta(minutes=config.FALLBACK_PRESENCE_MIN)
        source = LeaveSource.FALLBACK_MINIMUM
    inferred = min(max(inferred, tl.open_since), now)
    return inferred, source


def close_timeline(session: AttendanceSession, now: datetime) -> Timeline:
    """Reconstruct and, if still open, close the last interval by inference."""
    tl = reconstruct(session.events, session.scheduled_start, session.scheduled_duration_min)
    if tl.is_open:
        inferred, source = infer_leave(tl, now)
        tl = reconstruct(
            session.events, session.scheduled_start, session.scheduled_duration_min, close_at=inferred,
        )
        session.metadata.inferred_leave = True
        session.metadata.leave_source = source
        session.metadata.note(f"leave inferred at {iso(inferred)} from {source.value}")
    elif session.metadata.leave_source is None and tl.last_leave is not None:
        session.metadata.leave_source = LeaveSource.WEBHOOK
    apply_to_session(session, tl)
    return tl


class ReconciliationScheduler:

    def __init__(self, store: Store, generator: RecordGenerator,
                 max_workers: Optional[int] = None):
        self.store = store
        self.generator = generator
        self.max_workers = max_workers or config.SWEEP_MAX_WORKERS
        self._scheduler: Optional[BackgroundScheduler] = None

    # ── Sweep ──

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult()
        grace = timedelta(minutes=config.STALE_GRACE_MIN)

        for session in self.store.list_sessions(SessionStatus.IN_PROGRESS):
            result.checked += 1
            if now < session.scheduled_end + grace:
                continue
            try:
                self._auto_close(session, now)
                result.auto_closed += 1
            except Exception as e:
                logger.exception(f"Auto-close failed for {session.session_id}: {e}")
                result.failed += 1
                result.errors.append(f"{session.session_id}: {e}")

        groups: Dict[str, List[AttendanceSession]] = defaultdict(list)
        for session in self.store.list_sessions(SessionStatus.COMPLETED):
            result.checked += 1
            if now < session.scheduled_end or session.is_valid is False:
                result.skipped += 1
                continue
            if self.store.record_for_session(session.session_id) is not None:
                result.skipped += 1
                continue
            # Reopened by a rejoin: wait for the LEAVE like an IN_PROGRESS session.
            if now < session.scheduled_end + grace and self._still_open(session):
                result.skipped += 1
                continue
            groups[session.chain_scope].append(session)

        if self.max_workers > 1 and len(groups) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                outcomes = list(pool.map(lambda g: self._process_group(g, now), groups.values()))
        else:
            outcomes = [self._process_group(g, now) for g in groups.values()]

        for group in outcomes:
            for outcome, error in group:
                setattr(result, outcome, getattr(result, outcome) + 1)
                if error:
                    result.errors.append(error)

        logger.info(
            f"Sweep complete: checked={result.checked} auto_closed={result.auto_closed} "
            f"finalized={result.finalized} rejected={result.rejected} "
            f"skipped={result.skipped} failed={result.failed}"
        )
        if result.auto_closed or result.finalized or result.rejected or result.failed:
            self.store.publish_event(EventTopic.SWEEP_COMPLETED, result.to_dict())
        return result

    @staticmethod
    def _still_open(session: AttendanceSession) -> bool:
        tl = reconstruct(session.events, session.scheduled_start, session.scheduled_duration_min)
        return tl.is_open

    def _process_group(self, sessions: List[AttendanceSession], now: datetime) -> List[tuple]:
        outcomes = []
        for session in sorted(sessions, key=lambda s: (s.scheduled_start, s.created_at)):
            try:
                outcomes.append((self._finalize(session.session_id, now), None))
            except Exception as e:
                logger.exception(f"Finalization failed for {session.session_id}: {e}")
                outcomes.append(("failed", f"{session.session_id}: {e}"))
        return outcomes

    def _auto_close(self, session: AttendanceSession, now: datetime):
        close_timeline(session, now)
        self.store.save_metrics(session)
        self.store.transition(session, SessionStatus.COMPLETED)
        self.store.publish_event(EventTopic.SESSION_AUTO_CLOSED, {
            "session_id": session.session_id,
            "leave_time": iso(session.leave_time),
            "leave_source": session.metadata.leave_source.value if session.metadata.leave_source else None,
        })
        self.store.audit("session.auto_closed", {
            "session_id": session.session_id,
            "inferred_leave": session.metadata.inferred_leave,
        })
        logger.info(
            f"Auto-closed stale session {session.session_id}: "
            f"{session.total_duration_min:.1f} min, leave={iso(session.leave_time)}"
        )

    def _finalize(self, session_id: str, now: datetime) -> str:
        token = f"clm_{uuid.uuid4().hex[:12]}"
        if not self.store.claim_for_processing(session_id, token, now):
            logger.info(f"Session {session_id} claimed elsewhere, skipping")
            return "skipped"
        try:
            session = self.store.get_session(session_id)
            tl = close_timeline(session, now)
            self.store.save_metrics(session)

            engagement = score(session, tl)
            fraud = detect(session, tl, engagement)
            if fraud.should_auto_reject:
                session.metadata.invalid_reason = f"FRAUD:{','.join(fraud.rules) or 'RISK_SCORE'}"
                self.store.transition(session, SessionStatus.REJECTED, is_valid=False)
                self.store.publish_event(EventTopic.SESSION_REJECTED, {
                    "session_id": session_id,
                    "risk_score": fraud.risk_score,
                    "violations": fraud.rules,
                })
                self.store.audit("session.rejected", {
                    "session_id": session_id,
                    "reason": session.metadata.invalid_reason,
                    "risk_score": fraud.risk_score,
                })
                return "rejected"

            validation = validate(session, tl)
            record = self.generator.generate(session_id, engagement, fraud, validation, now)
            self.store.publish_event(EventTopic.DELIVERY_REQUESTED, {
                "record_id": record.record_id,
                "card_number": record.card_number,
                "session_id": session_id,
                "participant_id": session.participant_id,
                "validation_status": record.validation_status.value,
                "needs_manual_review": fraud.needs_manual_review,
            })
            return "finalized"
        except GenerationConflict as e:
            logger.info(f"Session {session_id} already has a record: {e.message}")
            self.store.release_claim(session_id, token)
            return "skipped"
        except Exception:
            self.store.release_claim(session_id, token)
            raise

    # ── Background job ──

    def start(self):
        """Start the interval job. Safe to call twice."""
        if self._scheduler is not None and self._scheduler.running:
            logger.info("⏭️ [SCHEDULER] Already running, skipping initialization")
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            func=self.sweep,
            trigger="interval",
            seconds=config.SWEEP_INTERVAL_SECONDS,
            id=JOB_ID,
            name="Reconcile stale and completed attendance sessions",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(f"✅ [SCHEDULER] Reconciliation every {config.SWEEP_INTERVAL_SECONDS}s")

    def shutdown(self):
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("🛑 [SCHEDULER] Stopped")
        self._scheduler = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
