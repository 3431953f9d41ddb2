"""
Test suite for audit module

Tests the hash-chained audit trail: chaining, tamper detection, integrity
verification and its interplay with storage transactions.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from program_payments.storage import InMemoryStorage
from program_payments.audit import AuditTrail, AuditEvent, AuditEventType


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def _event(self, **overrides):
        now = datetime(2024, 1, 15, tzinfo=timezone.utc)
        fields = dict(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.PAYMENT_RECONCILED,
            entity_type="program",
            entity_id="PROG001",
            sequence=1,
            previous_hash="",
            current_hash="",
            metadata={"amount": Decimal('30000.00'), "paid_at": now},
            user_id="user_ada"
        )
        fields.update(overrides)
        return AuditEvent(**fields)

    def test_metadata_made_json_safe(self):
        event = self._event()
        assert event.metadata == {"amount": "30000.00", "paid_at": "2024-01-15T00:00:00+00:00"}

    def test_hash_is_deterministic(self):
        assert self._event().calculate_hash() == self._event().calculate_hash()

    def test_hash_covers_metadata(self):
        original = self._event()
        altered = self._event(metadata={"amount": Decimal('1.00')})
        assert original.calculate_hash() != altered.calculate_hash()

    def test_verify_hash(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.metadata["amount"] = "1.00"
        assert not event.verify_hash()


class TestAuditTrail:
    """Test AuditTrail chaining and verification"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_events_are_chained(self):
        first = self.audit_trail.log_event(AuditEventType.PROGRAM_CREATED, "program", "p1")
        second = self.audit_trail.log_event(AuditEventType.PROGRAM_APPROVED, "program", "p1",
                                            metadata={"approved_by": "admin@edupay.test"})

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert self.audit_trail.count_events() == 2

    def test_integrity_of_clean_chain(self):
        for event_type in (AuditEventType.PROGRAM_CREATED, AuditEventType.PROGRAM_APPROVED,
                           AuditEventType.PAYMENT_RECONCILED):
            self.audit_trail.log_event(event_type, "program", "p1")

        result = self.audit_trail.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 3
        assert result['hash_errors'] == []
        assert result['chain_breaks'] == []

    def test_tampering_detected(self):
        event = self.audit_trail.log_event(AuditEventType.PAYMENT_RECONCILED, "program", "p1",
                                           metadata={"amount": Decimal('30000')})
        self.audit_trail.log_event(AuditEventType.PROGRAM_COMPLETED, "program", "p1")

        data = self.storage.load("audit_events", event.id)
        data['metadata']['amount'] = "1"
        self.storage.save("audit_events", event.id, data)

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert result['hash_errors'][0]['event_id'] == event.id

    def test_deleted_event_breaks_chain(self):
        self.audit_trail.log_event(AuditEventType.PROGRAM_CREATED, "program", "p1")
        middle = self.audit_trail.log_event(AuditEventType.PROGRAM_APPROVED, "program", "p1")
        self.audit_trail.log_event(AuditEventType.PROGRAM_REVOKED, "program", "p1")

        self.storage.delete("audit_events", middle.id)

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert len(result['chain_breaks']) == 1

    def test_rolled_back_events_leave_chain_intact(self):
        self.audit_trail.log_event(AuditEventType.PROGRAM_CREATED, "program", "p1")

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit_trail.log_event(AuditEventType.PAYMENT_RECONCILED, "program", "p1")
                raise RuntimeError("persistence failed")

        after = self.audit_trail.log_event(AuditEventType.PAYMENT_REJECTED, "program", "p1")

        assert after.sequence == 2
        assert self.audit_trail.verify_integrity()['valid']

    def test_query_helpers(self):
        self.audit_trail.log_event(AuditEventType.PROGRAM_CREATED, "program", "p1")
        self.audit_trail.log_event(AuditEventType.PROGRAM_CREATED, "program", "p2")
        self.audit_trail.log_event(AuditEventType.PROGRAM_APPROVED, "program", "p1")

        assert len(self.audit_trail.get_events_for_entity("program", "p1")) == 2
        created = self.audit_trail.get_events_by_type(AuditEventType.PROGRAM_CREATED)
        assert {e.entity_id for e in created} == {"p1", "p2"}
