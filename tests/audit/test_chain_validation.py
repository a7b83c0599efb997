"""
Audit chain validation tests.

Verifies:
- seq is gap-free and prev_hash links each event to its predecessor
- Replay recomputes every payload_hash and hash
- Tampering through Core statements (bypassing the ORM guards) is detected
  and reported with the offending event and both hashes
- Chains of different companies are independent
"""

import pytest
from sqlalchemy import select, update

from recon_kernel.exceptions import AuditChainBrokenError
from recon_kernel.models.audit_event import AuditEvent
from recon_kernel.utils.hashing import chain_hash, hash_payload


def append(auditor, company_id, n, start=0):
    return [
        auditor.log_event(
            company_id=company_id,
            actor_id="system",
            verb="record_ingested",
            entity_type="test",
            entity_id=str(i),
            payload={"n": i},
        )
        for i in range(start, start + n)
    ]


class TestChainStructure:
    def test_genesis_and_links(self, auditor_service, company_id):
        events = append(auditor_service, company_id, 3)

        assert [e.seq for e in events] == [1, 2, 3]
        assert events[0].prev_hash == ""
        assert events[1].prev_hash == events[0].hash
        assert events[2].prev_hash == events[1].hash
        assert events[0].payload_hash == hash_payload({"n": 0})
        assert events[0].hash == chain_hash("", events[0].payload_hash)

    def test_actor_type_inferred(self, auditor_service, company_id):
        system = append(auditor_service, company_id, 1)[0]
        user = auditor_service.log_event(
            company_id=company_id, actor_id="alice", verb="exception_ignored",
            entity_type="test", entity_id="x",
        )
        assert (system.actor_type, user.actor_type) == ("system", "user")

    def test_companies_have_separate_chains(self, auditor_service):
        a = append(auditor_service, "company-a", 2)
        b = append(auditor_service, "company-b", 1)

        assert b[0].seq == 1 and b[0].prev_hash == ""
        assert a[1].seq == 2


class TestVerification:
    def test_intact_chain_verifies(self, auditor_service, company_id):
        append(auditor_service, company_id, 5)

        report = auditor_service.verify_integrity(company_id)

        assert report.valid
        assert report.events_checked == 5

    def test_empty_chain_is_valid(self, auditor_service):
        assert auditor_service.verify_integrity("nobody").valid

    def test_payload_tamper_detected(self, auditor_service, session, company_id):
        events = append(auditor_service, company_id, 4)
        session.execute(
            update(AuditEvent.__table__)
            .where(AuditEvent.__table__.c.id == str(events[2].id))
            .values(payload={"n": 999})
        )

        report = auditor_service.verify_integrity(company_id)

        assert not report.valid
        assert report.failure_seq == 3
        assert report.first_failure == str(events[2].id)
        assert report.failure_reason == "payload_hash_mismatch"
        assert report.actual_hash == events[2].payload_hash
        assert report.expected_hash == hash_payload({"n": 999})

    def test_rewritten_hash_breaks_next_link(self, auditor_service, session, company_id):
        events = append(auditor_service, company_id, 3)
        forged_payload_hash = hash_payload({"n": 42})
        session.execute(
            update(AuditEvent.__table__)
            .where(AuditEvent.__table__.c.id == str(events[1].id))
            .values(
                payload={"n": 42},
                payload_hash=forged_payload_hash,
                hash=chain_hash(events[0].hash, forged_payload_hash),
            )
        )

        report = auditor_service.verify_integrity(company_id)

        assert report.failure_seq == 3
        assert report.failure_reason == "prev_hash_mismatch"

    def test_assert_integrity_raises(self, auditor_service, session, company_id):
        events = append(auditor_service, company_id, 2)
        session.execute(
            update(AuditEvent.__table__)
            .where(AuditEvent.__table__.c.id == str(events[0].id))
            .values(hash="0" * 64)
        )

        with pytest.raises(AuditChainBrokenError) as exc_info:
            auditor_service.assert_integrity(company_id)
        assert exc_info.value.audit_event_id == str(events[0].id)
        assert exc_info.value.actual_hash == "0" * 64

    def test_broken_chain_logged_critical(self, auditor_service, session, company_id, captured_logs):
        events = append(auditor_service, company_id, 2)
        session.execute(
            update(AuditEvent.__table__)
            .where(AuditEvent.__table__.c.id == str(events[1].id))
            .values(payload={"n": -1})
        )
        auditor_service.verify_integrity(company_id)

        broken = [r for r in captured_logs() if r["message"] == "audit_chain_broken"]
        assert broken and broken[0]["level"] == "CRITICAL"
        assert broken[0]["seq"] == 2
