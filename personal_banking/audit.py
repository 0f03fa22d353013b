"""
Audit Trail Module

Append-only record of every state change in the ledger core. Each event
stores the SHA-256 hash of its predecessor, so editing, removing or
reordering a stored event is detectable by ``verify_integrity``.

Events are appended inside the same atomic unit as the change they describe:
if the business write rolls back, so does its audit event.
"""

import hashlib
import json
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    USER_REGISTERED = "user_registered"
    USER_ROLE_CHANGED = "user_role_changed"
    CUSTOMER_CREATED = "customer_created"
    CUSTOMER_UPDATED = "customer_updated"

    ACCOUNT_OPENED = "account_opened"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_REACTIVATED = "account_reactivated"
    ACCOUNT_CLOSED = "account_closed"

    TRANSACTION_APPLIED = "transaction_applied"

    LOAN_ORIGINATED = "loan_originated"
    LOAN_STATUS_CHANGED = "loan_status_changed"
    LOAN_PAYMENT_APPLIED = "loan_payment_applied"
    LOAN_PAID_OFF = "loan_paid_off"

    RECONCILIATION_RUN = "reconciliation_run"
    LOAN_STATUS_REPAIRED = "loan_status_repaired"


GENESIS_HASH = ""


def _plain(value: Any) -> Any:
    """Metadata value in the form it is hashed and stored"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    sequence: int = 0

    def __post_init__(self):
        self.metadata = _plain(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except ``current_hash`` and ``updated_at``"""
        payload = json.dumps({
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'sequence': self.sequence,
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'user_id': self.user_id,
            'metadata': self.metadata,
            'previous_hash': self.previous_hash,
        }, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


class AuditTrail:
    """
    Hash-chained audit trail

    ``log_event`` reads the chain head and appends to it inside
    ``storage.atomic()``; concurrent appenders are serialized by the storage
    lock and never fork the chain.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled

    def _load_chain(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(d) for d in self.storage.load_all(self.table_name)]
        return sorted(events, key=lambda e: e.sequence)

    def _find_sorted(self, criteria: Dict[str, Any]) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(d) for d in self.storage.find(self.table_name, criteria)]
        return sorted(events, key=lambda e: e.sequence)

    def _head(self) -> Optional[Dict[str, Any]]:
        rows = self.storage.load_all(self.table_name)
        return max(rows, key=lambda r: r.get('sequence', 0)) if rows else None

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Append an event to the chain

        Args:
            event_type: What happened
            entity_type: Kind of entity affected (account, loan, transaction, ...)
            entity_id: Id of the affected entity
            metadata: Event details; Decimals, dates and enums are stored as strings
            user_id: Caller who triggered the change, if any

        Returns:
            The stored event, or None when auditing is disabled
        """
        if not self.enabled:
            return None

        with self.storage.atomic():
            head = self._head()
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['current_hash'] if head else GENESIS_HASH,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id,
                sequence=head['sequence'] + 1 if head else 1
            )
            event.current_hash = event.calculate_hash()
            self.storage.insert(self.table_name, event.id, event.to_dict())

        return event

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Events of one entity in chain order; ``limit`` keeps the most recent"""
        events = self._find_sorted({'entity_type': entity_type, 'entity_id': entity_id})
        return events[-limit:] if limit else events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return self._find_sorted({'event_type': event_type.value})

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain from the genesis event and check every link.

        An event whose stored hash does not match its content is reported
        under ``hash_errors``; an event whose ``previous_hash`` does not
        match its predecessor's stored hash is reported under
        ``chain_breaks``.
        """
        chain = self._load_chain()
        hash_errors = []
        chain_breaks = []

        expected_previous = GENESIS_HASH
        for position, event in enumerate(chain):
            recomputed = event.calculate_hash()
            if recomputed != event.current_hash:
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': recomputed,
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(chain),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
