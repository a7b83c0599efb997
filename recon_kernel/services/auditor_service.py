"""
AuditorService -- per-company tamper-evident audit chain.

Responsibility:
    Appends hash-chained audit events for every state-changing
    reconciliation decision (match created, exception created/cleared,
    exception resolved/ignored, run started/completed) and verifies chain
    integrity on demand.

Architecture position:
    Kernel > Services -- imperative shell, called by the matcher, the
    exceptions engine, the exception lifecycle and the coordinator.

Invariants enforced:
    - hash = sha256(prev_hash + payload_hash), payload_hash =
      sha256(canonical_json(payload)).  prev_hash is "" for the first event
      of a company.
    - prev_hash is read from the last PERSISTED event for the company with
      an explicit query on every append.  Nothing is cached in memory.
    - Appends for one company are serialized: an in-process lock per
      company plus a database row lock on the company's sequence counter.
      This is the only lock boundary in the engine.
    - Append-only: audit events are never modified or deleted (ORM
      listeners in db/immutability.py).

Failure modes:
    - AuditChainBrokenError from assert_integrity() when any event's
      recomputed hashes or linkage differ from what is stored.
    - IntegrityError on (company_id, seq) if a writer bypassed the lock.

Audit relevance:
    This IS the audit service.  verify_integrity() returns the exact first
    diverging event, with expected vs. actual hash, so an operator can act
    on it.  Integrity failures are surfaced, never auto-repaired.
"""

import json
import threading
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.exceptions import AuditChainBrokenError
from recon_kernel.logging_config import LogContext, get_logger
from recon_kernel.models.audit_event import ActorType, AuditEvent, AuditVerb
from recon_kernel.services.sequence_service import SequenceService, audit_sequence_name
from recon_kernel.utils.hashing import canonicalize_json, chain_hash, hash_payload

logger = get_logger("services.auditor")

SYSTEM_ACTOR_ID = "system"

_company_locks: dict[str, threading.Lock] = {}
_company_locks_guard = threading.Lock()


def _company_lock(company_id: str) -> threading.Lock:
    with _company_locks_guard:
        lock = _company_locks.get(company_id)
        if lock is None:
            lock = _company_locks[company_id] = threading.Lock()
        return lock


@dataclass(frozen=True)
class IntegrityReport:
    """
    Result of replaying a company's audit chain.

    ``expected_hash`` is the value recomputed during replay, ``actual_hash``
    the value found in storage at ``first_failure``.
    """

    company_id: str
    valid: bool
    events_checked: int
    first_failure: str | None = None
    failure_seq: int | None = None
    failure_reason: str | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "valid": self.valid,
            "events_checked": self.events_checked,
            "first_failure": self.first_failure,
            "failure_seq": self.failure_seq,
            "failure_reason": self.failure_reason,
            "expected_hash": self.expected_hash,
            "actual_hash": self.actual_hash,
        }


class AuditorService:
    """
    Appends to and verifies the per-company audit chain.

    Contract:
        Flushes only; the caller's transaction decides whether the event
        becomes visible.  The event is therefore atomic with the decision
        it records.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequences = SequenceService(session)

    def _get_last_hash(self, company_id: str) -> str:
        """Hash of the latest persisted event for ``company_id``, or ""."""
        last = self._session.execute(
            select(AuditEvent.hash)
            .where(AuditEvent.company_id == company_id)
            .order_by(AuditEvent.seq.desc())
            .limit(1)
        ).scalar_one_or_none()
        return last or ""

    def log_event(
        self,
        company_id: str,
        actor_id: str,
        verb: AuditVerb | str,
        entity_type: str,
        entity_id: str,
        payload: dict[str, Any] | None = None,
        actor_type: ActorType | str | None = None,
        trace_id: str | None = None,
    ) -> AuditEvent:
        """
        Append one event to the company's chain.

        Postconditions:
            - A new AuditEvent is flushed with seq one greater than the
              previous event of the company and prev_hash equal to that
              event's hash.
            - The stored payload is the canonical-JSON round trip of
              ``payload``, so replay rehashes exactly what was hashed.
        """
        verb_value = verb.value if isinstance(verb, AuditVerb) else verb
        if actor_type is None:
            actor_type = ActorType.SYSTEM if actor_id == SYSTEM_ACTOR_ID else ActorType.USER
        actor_type_value = actor_type.value if isinstance(actor_type, ActorType) else actor_type

        stored_payload = json.loads(canonicalize_json(payload or {}))

        with _company_lock(company_id):
            seq = self._sequences.next_value(audit_sequence_name(company_id))
            prev_hash = self._get_last_hash(company_id)
            payload_hash = hash_payload(stored_payload)
            event_hash = chain_hash(prev_hash, payload_hash)

            audit_event = AuditEvent(
                company_id=company_id,
                seq=seq,
                actor_id=actor_id,
                actor_type=actor_type_value,
                verb=verb_value,
                entity_type=entity_type,
                entity_id=str(entity_id),
                payload=stored_payload,
                payload_hash=payload_hash,
                prev_hash=prev_hash,
                hash=event_hash,
                trace_id=trace_id or LogContext.get("trace_id") or LogContext.get("run_id"),
                created_at=self._clock.now(),
            )
            self._session.add(audit_event)
            self._session.flush()

        logger.info(
            "audit_event_appended",
            extra={
                "company_id": company_id,
                "verb": verb_value,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "seq": seq,
            },
        )
        return audit_event

    # Chain verification

    def verify_integrity(self, company_id: str) -> IntegrityReport:
        """
        Replay the company's chain in seq order.

        For each event: recompute payload_hash from the stored payload,
        check prev_hash against the preceding event's stored hash, and
        recompute hash.  Returns at the first divergence.
        """
        events = self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.company_id == company_id)
            .order_by(AuditEvent.seq)
            .execution_options(populate_existing=True)
        ).scalars().all()

        expected_prev = ""
        for checked, event in enumerate(events, start=1):
            recomputed_payload_hash = hash_payload(event.payload)
            failure: tuple[str, str, str] | None = None

            if event.prev_hash != expected_prev:
                failure = ("prev_hash_mismatch", expected_prev, event.prev_hash)
            elif recomputed_payload_hash != event.payload_hash:
                failure = ("payload_hash_mismatch", recomputed_payload_hash, event.payload_hash)
            else:
                recomputed_hash = chain_hash(event.prev_hash, recomputed_payload_hash)
                if recomputed_hash != event.hash:
                    failure = ("hash_mismatch", recomputed_hash, event.hash)

            if failure is not None:
                reason, expected, actual = failure
                logger.critical(
                    "audit_chain_broken",
                    extra={
                        "company_id": company_id,
                        "audit_event_id": str(event.id),
                        "seq": event.seq,
                        "reason": reason,
                        "expected_hash": expected,
                        "actual_hash": actual,
                    },
                )
                return IntegrityReport(
                    company_id=company_id,
                    valid=False,
                    events_checked=checked,
                    first_failure=str(event.id),
                    failure_seq=event.seq,
                    failure_reason=reason,
                    expected_hash=expected,
                    actual_hash=actual,
                )
            expected_prev = event.hash

        logger.info(
            "audit_chain_verified",
            extra={"company_id": company_id, "event_count": len(events)},
        )
        return IntegrityReport(company_id=company_id, valid=True, events_checked=len(events))

    def assert_integrity(self, company_id: str) -> IntegrityReport:
        """
        verify_integrity(), raising instead of returning on failure.

        Raises:
            AuditChainBrokenError: With the offending event id and
                expected vs. actual hash.
        """
        report = self.verify_integrity(company_id)
        if not report.valid:
            raise AuditChainBrokenError(
                company_id=company_id,
                audit_event_id=report.first_failure or "",
                expected_hash=report.expected_hash,
                actual_hash=report.actual_hash,
                reason=report.failure_reason or "",
            )
        return report

    def last_event(self, company_id: str) -> AuditEvent | None:
        return self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.company_id == company_id)
            .order_by(AuditEvent.seq.desc())
            .limit(1)
        ).scalar_one_or_none()
