#!/usr/bin/env python3
"""
AttendLedger Record Ledger
===========================
Builds, hashes, chains and signs one VerificationRecord per finalized
session.

    content_hash  = sha256(canonical_json(fields))
    record_hash   = sha256(previous_record_hash + ":" + content_hash)
    signature     = Ed25519(content_hash + ":" + previous_record_hash)

Chains are kept per chain scope (participant). The first record of a
scope links to GENESIS_HASH. Writers for one scope are serialized by an
in-process lock and by the store's BEGIN IMMEDIATE transaction.

Usage:
    signer = RecordSigner.load_or_create(config.SIGNING_KEY_PATH, config.VERIFY_KEY_PATH)
    gen = RecordGenerator(store, signer)
    record = gen.generate(session_id, engagement, fraud, validation)

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from attendledger_types import (
    GENESIS_HASH,
    EngagementAssessment,
    EventTopic,
    FraudAssessment,
    RecordAlreadyExists,
    SessionStatus,
    InvalidTransition,
    ValidationResult,
    VerificationRecord,
    iso,
    utcnow,
)
from attendledger_validation import confidence_level

if TYPE_CHECKING:
    from attendledger_store import Store

logger = logging.getLogger("al-ledger")

SCHEMA_VERSION = 1
CARD_PREFIX = "AL"


# ============================================================================
# HASHING
# ============================================================================

def canonical_json(obj: Any) -> bytes:
    """Sorted keys, compact separators, UTF-8. Same input, same bytes."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def content_hash(fields: Dict[str, Any]) -> str:
    return sha256_hex(canonical_json(fields))


def chain_hash(previous_record_hash: str, content: str) -> str:
    return sha256_hex(f"{previous_record_hash}:{content}".encode("utf-8"))


def signing_message(content: str, previous_record_hash: str) -> bytes:
    return f"{content}:{previous_record_hash}".encode("utf-8")


def card_number_for(fields: Dict[str, Any], year: int) -> str:
    """Human-readable lookup key derived from the fields it will be stored with."""
    return f"{CARD_PREFIX}-{year}-{content_hash(fields)[:10].upper()}"


# ============================================================================
# SIGNER
# ============================================================================

class RecordSigner:
    """
    Ed25519 signing and verification for ledger records.
    A verify-only signer (public key alone) is enough for the read path.
    """

    def __init__(self, private_key: Optional[ed25519.Ed25519PrivateKey] = None,
                 public_key: Optional[ed25519.Ed25519PublicKey] = None):
        if private_key is None and public_key is None:
            raise ValueError("RecordSigner needs a private or a public key")
        self._private_key = private_key
        self._public_key = public_key or private_key.public_key()

    @classmethod
    def generate(cls) -> "RecordSigner":
        """Fresh in-memory keypair."""
        return cls(private_key=ed25519.Ed25519PrivateKey.generate())

    @classmethod
    def load_or_create(cls, private_key_path: str, public_key_path: str) -> "RecordSigner":
        """Load the PEM keypair, generating and writing one on first start."""
        if os.path.exists(private_key_path):
            with open(private_key_path, "rb") as f:
                private_key = serialization.load_pem_private_key(f.read(), password=None)
            logger.info(f"Signing key loaded: {private_key_path}")
            return cls(private_key=private_key)

        signer = cls.generate()
        for path in (private_key_path, public_key_path):
            parent = os.path.dirname(path)
            if parent:
                os.makedirs(parent, exist_ok=True)
        with open(private_key_path, "wb") as f:
            f.write(signer._private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            ))
        os.chmod(private_key_path, 0o600)
        with open(public_key_path, "wb") as f:
            f.write(signer.public_key_pem())
        logger.warning(f"No signing key found; generated new keypair at {private_key_path}")
        return signer

    @classmethod
    def from_public_key_file(cls, public_key_path: str) -> "RecordSigner":
        with open(public_key_path, "rb") as f:
            return cls(public_key=serialization.load_pem_public_key(f.read()))

    @property
    def can_sign(self) -> bool:
        return self._private_key is not None

    def public_key_pem(self) -> bytes:
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def sign(self, message: bytes) -> str:
        if not self.can_sign:
            raise ValueError("verify-only signer cannot sign")
        return self._private_key.sign(message).hex()

    def verify(self, message: bytes, signature_hex: str) -> bool:
        try:
            self._public_key.verify(bytes.fromhex(signature_hex), message)
            return True
        except (InvalidSignature, ValueError):
            return False


# ============================================================================
# GENERATOR
# ============================================================================

class RecordGenerator:
    """Writes exactly one signed, chained record per COMPLETED session."""

    def __init__(self, store: "Store", signer: RecordSigner):
        self.store = store
        self.signer = signer
        # One lock per chain scope, kept for the process lifetime.
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, scope: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(scope, threading.Lock())

    def generate(self, session_id: str, engagement: EngagementAssessment,
                 fraud: FraudAssessment, validation: ValidationResult,
                 now: Optional[datetime] = None) -> VerificationRecord:
        """
        Snapshot, hash, link and sign. Raises RecordAlreadyExists if the
        session already has a record; the stored record is left unchanged.
        """
        now = now or utcnow()
        session = self.store.get_session(session_id, with_events=False)
        existing = self.store.record_for_session(session_id)
        if existing:
            raise RecordAlreadyExists(
                f"Record already exists for session {session_id}",
                record_id=existing.record_id,
            )
        if session.status != SessionStatus.COMPLETED:
            raise InvalidTransition(
                f"Session {session_id} is {session.status.value}, expected COMPLETED",
                session_id=session_id,
            )

        confidence = confidence_level(validation, session)

        def build(previous: Optional[VerificationRecord]) -> VerificationRecord:
            sequence = previous.sequence + 1 if previous else 1
            prev_hash = previous.record_hash if previous else GENESIS_HASH
            fields = {
                "schema_version": SCHEMA_VERSION,
                "session_id": session.session_id,
                "participant_id": session.participant_id,
                "meeting_id": session.meeting_id,
                "chain_scope": session.chain_scope,
                "sequence": sequence,
                "scheduled_start": iso(session.scheduled_start),
                "scheduled_duration_min": round(float(session.scheduled_duration_min), 2),
                "join_time": iso(session.join_time),
                "leave_time": iso(session.leave_time),
                "leave_source": session.metadata.leave_source.value if session.metadata.leave_source else None,
                "total_duration_min": round(session.total_duration_min, 2),
                "active_duration_min": round(session.active_duration_min, 2),
                "idle_duration_min": round(session.idle_duration_min, 2),
                "attendance_percent": round(session.attendance_percent, 2),
                "leave_rejoin_count": session.leave_rejoin_count,
                "engagement": engagement.summary(),
                "fraud": fraud.summary(),
                "validation": {
                    "status": validation.status.value,
                    "findings": [f.to_dict() for f in validation.findings],
                },
                "confidence_level": confidence.value,
                "created_at": iso(now),
            }
            fields["card_number"] = card_number_for(fields, now.year)
            digest = content_hash(fields)
            return VerificationRecord(
                record_id=f"rec_{uuid.uuid4().hex[:12]}",
                card_number=fields["card_number"],
                subject_session_id=session.session_id,
                chain_scope=session.chain_scope,
                sequence=sequence,
                canonical=fields,
                content_hash=digest,
                previous_record_hash=prev_hash,
                record_hash=chain_hash(prev_hash, digest),
                signature=self.signer.sign(signing_message(digest, prev_hash)),
                validation_status=validation.status,
                created_at=now,
            )

        with self._lock_for(session.chain_scope):
            record = self.store.append_record(session, build)

        logger.info(
            f"Record generated: {record.card_number} ({record.record_id}) "
            f"scope={record.chain_scope} seq={record.sequence} "
            f"validation={record.validation_status.value}"
        )
        self.store.publish_event(EventTopic.RECORD_GENERATED, {
            "record_id": record.record_id,
            "card_number": record.card_number,
            "session_id": session.session_id,
            "chain_scope": record.chain_scope,
            "sequence": record.sequence,
            "validation_status": record.validation_status.value,
        })
        self.store.audit("record.generated", {
            "record_id": record.record_id,
            "session_id": session.session_id,
            "record_hash": record.record_hash,
        })
        return record
