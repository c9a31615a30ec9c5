#!/usr/bin/env python3
"""
AttendLedger Integrity Verification
====================================
Read-only re-verification of published records. Works from stored
record rows alone (never raw events): recomputes the content hash from
the canonical fields, checks the chain hash and the Ed25519 signature,
and confirms the link to the predecessor.

Usage:
    verifier = IntegrityVerifier(store, signer)
    result = verifier.verify("AL-2026-3F9A0C11D2")

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List

from attendledger_ledger import (
    RecordSigner,
    chain_hash,
    content_hash,
    sha256_hex,
    signing_message,
)
from attendledger_types import (
    GENESIS_HASH,
    IntegrityFailure,
    IntegrityReason,
    IntegrityResult,
    RecordNotFound,
)

if TYPE_CHECKING:
    from attendledger_store import Store

logger = logging.getLogger("al-integrity")

PUBLIC_COLUMNS = (
    "record_id", "card_number", "chain_scope", "sequence", "content_hash",
    "previous_record_hash", "record_hash", "signature", "validation_status", "created_at",
)

# Canonical field -> stored column that must agree with it.
MIRRORED_COLUMNS = {
    "card_number": "card_number",
    "session_id": "subject_session_id",
    "chain_scope": "chain_scope",
    "sequence": "sequence",
}


def merkle_root(hashes: List[str]) -> str:
    """Pairwise SHA-256 up to a single root. Odd levels repeat their last node."""
    if not hashes:
        return sha256_hex(b"")
    level = list(hashes)
    while len(level) > 1:
        if len(level) % 2:
            level.append(level[-1])
        level = [sha256_hex(f"{a}{b}".encode("utf-8")) for a, b in zip(level[::2], level[1::2])]
    return level[0]


def _recomputed_record_hash(row: Dict[str, Any]) -> str:
    """A stored record's chain hash recomputed from its canonical fields."""
    try:
        fields = json.loads(row["canonical"])
    except ValueError:
        return ""
    return chain_hash(row["previous_record_hash"], content_hash(fields))


class IntegrityVerifier:

    def __init__(self, store: "Store", signer: RecordSigner):
        self.store = store
        self.signer = signer

    def verify(self, record_ref: str) -> IntegrityResult:
        row = self.store.get_record_raw(record_ref)
        if row is None:
            raise RecordNotFound(f"No record matches {record_ref}", record_ref=record_ref)
        return self._verify_row(row)

    def assert_valid(self, record_ref: str) -> IntegrityResult:
        result = self.verify(record_ref)
        if not result.valid:
            raise IntegrityFailure(
                f"Record {record_ref} failed verification",
                reasons=[r.value for r in result.reasons],
            )
        return result

    def _verify_row(self, row: Dict[str, Any]) -> IntegrityResult:
        result = IntegrityResult(record={k: row[k] for k in PUBLIC_COLUMNS})

        # Content
        try:
            fields = json.loads(row["canonical"])
            result.record["canonical"] = fields
        except ValueError:
            fields = None
            result.record["canonical"] = row["canonical"]
            result.fail(IntegrityReason.TAMPERED_CONTENT, "canonical fields are not valid JSON")

        if fields is not None:
            if content_hash(fields) != row["content_hash"]:
                result.fail(IntegrityReason.TAMPERED_CONTENT, "content hash mismatch")
            for key, column in MIRRORED_COLUMNS.items():
                if fields.get(key) != row[column]:
                    result.fail(IntegrityReason.TAMPERED_CONTENT, f"{column} disagrees with canonical fields")
        if chain_hash(row["previous_record_hash"], row["content_hash"]) != row["record_hash"]:
            result.fail(IntegrityReason.TAMPERED_CONTENT, "record hash mismatch")

        # Signature
        message = signing_message(row["content_hash"], row["previous_record_hash"])
        if not self.signer.verify(message, row["signature"]):
            result.fail(IntegrityReason.INVALID_SIGNATURE, "signature does not verify")

        # Chain link
        seq = row["sequence"]
        if seq == 1:
            if row["previous_record_hash"] != GENESIS_HASH:
                result.fail(IntegrityReason.CHAIN_BROKEN, "first record does not link to genesis")
        else:
            pred = self.store.get_chain_record_raw(row["chain_scope"], seq - 1)
            if pred is None:
                result.fail(IntegrityReason.CHAIN_BROKEN, f"predecessor #{seq - 1} missing")
            elif _recomputed_record_hash(pred) != row["previous_record_hash"]:
                result.fail(IntegrityReason.CHAIN_BROKEN, f"predecessor #{seq - 1} does not match link")

        if not result.valid:
            logger.warning(
                f"Integrity check failed for {row['card_number']}: "
                f"{', '.join(r.value for r in result.reasons)}"
            )
        return result

    def verify_chain(self, chain_scope: str) -> Dict[str, Any]:
        """Verify every record of a scope, in sequence order."""
        rows = self.store.list_chain_raw(chain_scope)
        if not rows:
            raise RecordNotFound(f"No records for chain {chain_scope}", chain_scope=chain_scope)
        results = []
        for row in rows:
            r = self._verify_row(row)
            results.append({
                "record_id": row["record_id"],
                "card_number": row["card_number"],
                "sequence": row["sequence"],
                "valid": r.valid,
                "reasons": [x.value for x in r.reasons],
            })
        valid = all(r["valid"] for r in results)
        logger.info(f"Chain {chain_scope}: {len(rows)} records, valid={valid}")
        return {
            "chain_scope": chain_scope,
            "length": len(rows),
            "valid": valid,
            "head_record_hash": rows[-1]["record_hash"],
            "merkle_root": merkle_root([r["record_hash"] for r in rows]),
            "records": results,
        }
