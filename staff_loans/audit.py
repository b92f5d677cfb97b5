"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every loan state change in the engine is logged here.
"""

import hashlib
import json
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Union
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger


logger = get_logger("audit")


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan lifecycle events
    LOAN_APPLIED = "loan_applied"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_SANCTIONED = "loan_sanctioned"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_ACTIVATED = "loan_activated"
    LOAN_CLOSED = "loan_closed"
    LOAN_REMARKS_UPDATED = "loan_remarks_updated"

    # Installment events
    INSTALLMENT_PAID = "installment_paid"
    INSTALLMENT_OVERDUE = "installment_overdue"
    INSTALLMENT_WAIVED = "installment_waived"

    # Product events
    PRODUCT_CREATED = "product_created"
    PRODUCT_UPDATED = "product_updated"
    PRODUCT_DEACTIVATED = "product_deactivated"

    # System events
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


class AuditSink(ABC):
    """Destination for fire-and-forget audit events"""

    @abstractmethod
    def record_audit_event(self, tenant_id: str, actor: Optional[str],
                           action: Union[AuditEventType, str], entity_type: str,
                           entity_id: str, description: str,
                           metadata: Optional[Dict[str, Any]] = None) -> Any:
        pass


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # Type of entity (loan, installment, product)
    entity_id: str    # ID of the affected entity
    previous_hash: str  # Hash of previous audit event for chaining
    current_hash: str   # SHA-256 hash of this event
    metadata: Dict[str, Any]  # Additional event-specific data
    sequence: int = 0  # Position in the chain
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None  # Actor who initiated the action
    description: str = ""

    def __post_init__(self):
        # Ensure metadata is JSON serializable
        if self.metadata:
            self._serialize_metadata()

    def _serialize_metadata(self) -> None:
        """Convert metadata values to JSON-serializable format"""
        def convert_value(value):
            if isinstance(value, Decimal):
                return str(value)
            elif isinstance(value, datetime):
                return value.isoformat()
            elif isinstance(value, Enum):
                return value.value
            elif isinstance(value, dict):
                return {k: convert_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [convert_value(v) for v in value]
            elif hasattr(value, 'isoformat'):
                return value.isoformat()
            else:
                return value

        self.metadata = {k: convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'sequence': self.sequence,
            'tenant_id': self.tenant_id,
            'user_id': self.user_id,
            'description': self.description,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage with proper enum serialization"""
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        data = dict(data)
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail(AuditSink):
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: Optional[str] = None
        self._sequence = 0
        self._lock = threading.Lock()  # Thread safety for concurrent access
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash and sequence of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: x.get('sequence', 0))
            self._last_hash = latest.get('current_hash')
            self._sequence = latest.get('sequence', 0)

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        description: str = ""
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of the actor who initiated the action
            tenant_id: Tenant owning the entity
            description: Human readable summary

        Returns:
            Created AuditEvent
        """
        with self._lock:  # Thread-safe event creation and chaining
            now = datetime.now(timezone.utc)

            # Re-load last hash to ensure we have the most recent one
            self._load_last_hash()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",  # Will be calculated below
                metadata=metadata or {},
                sequence=self._sequence + 1,
                tenant_id=tenant_id,
                user_id=user_id,
                description=description
            )

            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())

            # Update last hash for chain continuity
            self._last_hash = event.current_hash
            self._sequence = event.sequence

            return event

    def record_audit_event(self, tenant_id: str, actor: Optional[str],
                           action: Union[AuditEventType, str], entity_type: str,
                           entity_id: str, description: str,
                           metadata: Optional[Dict[str, Any]] = None) -> AuditEvent:
        """Audit sink entry point used by the workflow and repayment processor"""
        event_type = action if isinstance(action, AuditEventType) else AuditEventType(action)
        return self.log_event(
            event_type,
            entity_type,
            entity_id,
            metadata=metadata,
            user_id=actor,
            tenant_id=tenant_id,
            description=description
        )

    def _sorted_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda x: x.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Maximum number of (most recent) events to return
        """
        filters = {
            'entity_type': entity_type,
            'entity_id': entity_id
        }

        events = [AuditEvent.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        events.sort(key=lambda x: x.sequence)

        if limit:
            events = events[-limit:]  # Get most recent N events

        return events

    def get_events_for_tenant(self, tenant_id: str,
                              event_type: Optional[AuditEventType] = None) -> List[AuditEvent]:
        """Get a tenant's audit events, optionally of one type"""
        events = [e for e in self._sorted_events() if e.tenant_id == tenant_id]
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._sorted_events()
        result['total_events'] = len(events)

        # Verify each event's hash
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })

        # Verify chain continuity
        previous_hash = ""
        for i, event in enumerate(events):
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)


def record_best_effort(sink: Optional[AuditSink], tenant_id: str, actor: Optional[str],
                       action: AuditEventType, entity_type: str, entity_id: str,
                       description: str, metadata: Optional[Dict[str, Any]] = None) -> None:
    """Record an audit event, logging and swallowing any sink failure"""
    if sink is None:
        return
    try:
        sink.record_audit_event(tenant_id, actor, action, entity_type, entity_id,
                                description, metadata=metadata)
    except Exception:
        logger.warning(
            f"Audit event {action.value} for {entity_type} {entity_id} could not be recorded",
            exc_info=True,
            extra={'tenant_id': tenant_id, 'actor': actor, 'action': action.value},
        )
