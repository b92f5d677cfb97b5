"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection, integrity verification
and the best-effort recording used by loan operations.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock

from staff_loans.storage import InMemoryStorage
from staff_loans.audit import (
    AuditTrail, AuditEvent, AuditEventType, record_best_effort
)


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def make_event(self, **overrides):
        now = datetime(2025, 1, 15, 9, 30, tzinfo=timezone.utc)
        values = dict(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.LOAN_APPLIED,
            entity_type="loan",
            entity_id="L1",
            previous_hash="",
            current_hash="",
            metadata={"principal": "120000"},
            tenant_id="acme",
            user_id="E100",
        )
        values.update(overrides)
        return AuditEvent(**values)

    def test_metadata_serialization(self):
        """Decimals, datetimes and enums in metadata become plain values"""
        now = datetime.now(timezone.utc)
        event = self.make_event(metadata={
            "principal": Decimal("120000.00"),
            "decided_at": now,
            "event": AuditEventType.LOAN_APPROVED,
            "nested": {"emi": [Decimal("10661.85")]},
        })

        assert event.metadata["principal"] == "120000.00"
        assert event.metadata["decided_at"] == now.isoformat()
        assert event.metadata["event"] == "loan_approved"
        assert event.metadata["nested"] == {"emi": ["10661.85"]}

    def test_hash_is_deterministic(self):
        event = self.make_event()
        assert event.calculate_hash() == event.calculate_hash()
        assert len(event.calculate_hash()) == 64

    def test_hash_verification(self):
        event = self.make_event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.current_hash = "tampered_hash"
        assert not event.verify_hash()

    def test_hash_covers_tenant_and_actor(self):
        base = self.make_event().calculate_hash()
        assert self.make_event(tenant_id="globex").calculate_hash() != base
        assert self.make_event(user_id="M1").calculate_hash() != base
        assert self.make_event(description="changed").calculate_hash() != base

    def test_dict_round_trip(self):
        event = self.make_event()
        event.current_hash = event.calculate_hash()

        restored = AuditEvent.from_dict(event.to_dict())

        assert restored.event_type == AuditEventType.LOAN_APPLIED
        assert restored.created_at == event.created_at
        assert restored.verify_hash()


class TestAuditTrail:
    """Test AuditTrail chaining and queries"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_log_first_event(self):
        event = self.audit_trail.log_event(
            AuditEventType.LOAN_APPLIED, "loan", "L1",
            metadata={"principal": Decimal("1000")}, user_id="E100", tenant_id="acme"
        )

        assert event.sequence == 1
        assert event.previous_hash == ""
        assert event.verify_hash()
        assert self.audit_trail.count_events() == 1

    def test_events_are_chained(self):
        first = self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "L1")
        second = self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1")
        third = self.audit_trail.log_event(AuditEventType.LOAN_SANCTIONED, "loan", "L1")

        assert second.previous_hash == first.current_hash
        assert third.previous_hash == second.current_hash
        assert [first.sequence, second.sequence, third.sequence] == [1, 2, 3]

    def test_chain_resumes_from_storage(self):
        first = self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "L1")

        reopened = AuditTrail(self.storage)
        second = reopened.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1")

        assert second.previous_hash == first.current_hash
        assert second.sequence == 2

    def test_record_audit_event_accepts_string_action(self):
        event = self.audit_trail.record_audit_event(
            "acme", "F1", "loan_disbursed", "loan", "L1", "Loan disbursed",
            metadata={"amount": Decimal("5000")}
        )

        assert event.event_type == AuditEventType.LOAN_DISBURSED
        assert event.user_id == "F1"
        assert event.tenant_id == "acme"
        assert event.description == "Loan disbursed"

    def test_unknown_string_action_raises(self):
        with pytest.raises(ValueError):
            self.audit_trail.record_audit_event("acme", "F1", "loan_teleported", "loan", "L1", "")

    def test_get_events_for_entity(self):
        self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "L1")
        self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "L2")
        self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1")

        events = self.audit_trail.get_events_for_entity("loan", "L1")
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_APPLIED, AuditEventType.LOAN_APPROVED
        ]

        latest = self.audit_trail.get_events_for_entity("loan", "L1", limit=1)
        assert latest[0].event_type == AuditEventType.LOAN_APPROVED

    def test_get_events_for_tenant(self):
        self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "L1", tenant_id="acme")
        self.audit_trail.log_event(AuditEventType.LOAN_CLOSED, "loan", "L1", tenant_id="acme")
        self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "L9", tenant_id="globex")

        assert len(self.audit_trail.get_events_for_tenant("acme")) == 2
        closed = self.audit_trail.get_events_for_tenant("acme", AuditEventType.LOAN_CLOSED)
        assert [e.entity_id for e in closed] == ["L1"]


class TestIntegrityVerification:
    """Test tamper detection over the whole chain"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.events = [
            self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "L1",
                                       metadata={"principal": "1000"}),
            self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1"),
            self.audit_trail.log_event(AuditEventType.LOAN_SANCTIONED, "loan", "L1"),
        ]

    def test_valid_chain(self):
        result = self.audit_trail.verify_integrity()

        assert result['valid']
        assert result['total_events'] == 3
        assert result['hash_errors'] == []
        assert result['chain_breaks'] == []

    def test_modified_metadata_is_detected(self):
        table = self.audit_trail.table_name
        data = self.storage.load(table, self.events[0].id)
        data['metadata']['principal'] = "999999"
        self.storage.save(table, self.events[0].id, data)

        result = self.audit_trail.verify_integrity()

        assert not result['valid']
        assert result['hash_errors'][0]['event_id'] == self.events[0].id

    def test_deleted_event_breaks_chain(self):
        self.storage.delete(self.audit_trail.table_name, self.events[1].id)

        result = self.audit_trail.verify_integrity()

        assert not result['valid']
        assert result['chain_breaks'][0]['event_id'] == self.events[2].id


class TestRecordBestEffort:
    """Test audit recording that never fails the caller"""

    def test_records_through_sink(self):
        trail = AuditTrail(InMemoryStorage())
        record_best_effort(trail, "acme", "M1", AuditEventType.LOAN_APPROVED, "loan", "L1",
                           "Approved at level 1", metadata={"level": 1})

        events = trail.get_events_for_entity("loan", "L1")
        assert len(events) == 1
        assert events[0].metadata == {"level": 1}

    def test_no_sink_is_a_no_op(self):
        record_best_effort(None, "acme", "M1", AuditEventType.LOAN_APPROVED, "loan", "L1", "")

    def test_sink_failure_is_swallowed(self, caplog):
        sink = Mock()
        sink.record_audit_event.side_effect = RuntimeError("audit store down")

        record_best_effort(sink, "acme", "M1", AuditEventType.LOAN_APPROVED, "loan", "L1", "")

        sink.record_audit_event.assert_called_once()
        assert "could not be recorded" in caplog.text
