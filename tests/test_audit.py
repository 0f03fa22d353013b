"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection and integrity verification.
"""

import threading
import pytest
from datetime import datetime, timezone
from decimal import Decimal

from personal_banking.storage import InMemoryStorage
from personal_banking.audit import AuditTrail, AuditEvent, AuditEventType


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def _event(self, **overrides):
        now = datetime.now(timezone.utc)
        values = dict(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.ACCOUNT_OPENED,
            entity_type="account",
            entity_id="ACC001",
            previous_hash="",
            current_hash="",
            metadata={"initial_deposit": Decimal("500.00"), "opened_at": now},
            user_id="USER001",
            sequence=1
        )
        values.update(overrides)
        return AuditEvent(**values)

    def test_metadata_serialization(self):
        event = self._event()
        assert event.metadata["initial_deposit"] == "500.00"
        assert isinstance(event.metadata["opened_at"], str)

    def test_hash_is_deterministic(self):
        event = self._event()
        assert event.calculate_hash() == event.calculate_hash()
        assert len(event.calculate_hash()) == 64

    def test_hash_changes_with_content(self):
        first = self._event()
        second = self._event(entity_id="ACC002")
        assert first.calculate_hash() != second.calculate_hash()

    def test_verify_hash(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.metadata["initial_deposit"] = "999.00"
        assert not event.verify_hash()

    def test_from_dict_restores_enum(self):
        event = self._event()
        restored = AuditEvent.from_dict(event.to_dict())
        assert restored.event_type == AuditEventType.ACCOUNT_OPENED
        assert restored.created_at == event.created_at


class TestAuditTrail:
    """Test AuditTrail functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_log_event_chains_hashes(self):
        first = self.audit_trail.log_event(
            AuditEventType.ACCOUNT_OPENED, "account", "ACC001", {"type": "SAVINGS"}
        )
        second = self.audit_trail.log_event(
            AuditEventType.TRANSACTION_APPLIED, "transaction", "TXN001"
        )

        assert first.previous_hash == ""
        assert first.sequence == 1
        assert second.previous_hash == first.current_hash
        assert second.sequence == 2
        assert self.audit_trail.count_events() == 2

    def test_get_events_for_entity(self):
        self.audit_trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "ACC001")
        self.audit_trail.log_event(AuditEventType.ACCOUNT_SUSPENDED, "account", "ACC001")
        self.audit_trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "ACC002")

        events = self.audit_trail.get_events_for_entity("account", "ACC001")
        assert [e.event_type for e in events] == [
            AuditEventType.ACCOUNT_OPENED, AuditEventType.ACCOUNT_SUSPENDED
        ]

        latest = self.audit_trail.get_events_for_entity("account", "ACC001", limit=1)
        assert latest[0].event_type == AuditEventType.ACCOUNT_SUSPENDED

    def test_get_events_by_type(self):
        self.audit_trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "ACC001")
        self.audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", "LOAN001")

        events = self.audit_trail.get_events_by_type(AuditEventType.LOAN_ORIGINATED)
        assert len(events) == 1
        assert events[0].entity_id == "LOAN001"

    def test_verify_integrity_clean_chain(self):
        for i in range(5):
            self.audit_trail.log_event(AuditEventType.TRANSACTION_APPLIED, "transaction", f"TXN{i}")

        result = self.audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_tampered_metadata_detected(self):
        event = self.audit_trail.log_event(
            AuditEventType.TRANSACTION_APPLIED, "transaction", "TXN001", {"amount": "100.00"}
        )
        self.audit_trail.log_event(AuditEventType.TRANSACTION_APPLIED, "transaction", "TXN002")

        data = self.storage.load("audit_events", event.id)
        data["metadata"]["amount"] = "1.00"
        self.storage.save("audit_events", event.id, data)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_rewritten_hash_breaks_chain(self):
        event = self.audit_trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "ACC001")
        self.audit_trail.log_event(AuditEventType.ACCOUNT_CLOSED, "account", "ACC001")

        # Re-hashing a tampered event hides it from the hash check but not from the chain
        data = self.storage.load("audit_events", event.id)
        data["entity_id"] = "ACC999"
        tampered = AuditEvent.from_dict(data)
        data["current_hash"] = tampered.calculate_hash()
        self.storage.save("audit_events", event.id, data)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"] == []
        assert len(result["chain_breaks"]) == 1

    def test_disabled_trail_records_nothing(self):
        trail = AuditTrail(self.storage, enabled=False)
        assert trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "ACC001") is None
        assert trail.count_events() == 0

    def test_event_rolls_back_with_enclosing_unit(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit_trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "ACC001")
                raise RuntimeError("business write failed")

        assert self.audit_trail.count_events() == 0

    def test_concurrent_event_logging(self):
        """Concurrent appends keep the chain intact"""
        errors = []

        def create_events(start_id: int):
            try:
                for i in range(5):
                    self.audit_trail.log_event(
                        AuditEventType.TRANSACTION_APPLIED, "transaction",
                        f"CONCURRENT_TXN_{start_id}_{i}",
                        metadata={"thread_id": start_id, "sequence": i}
                    )
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=create_events, args=(i,)) for i in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        result = self.audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 15
