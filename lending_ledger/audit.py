"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every committed ledger mutation is logged here exactly once, carrying
structured before/after snapshots of the entity it touched.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, serialize_value, parse_datetime


class AuditAction(Enum):
    """Kinds of audited actions"""
    CREATE = "CREATE"
    EDIT = "EDIT"
    DELETE = "DELETE"
    VOID = "VOID"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    BULK_CREATE = "BULK_CREATE"
    BULK_DELETE = "BULK_DELETE"


class AuditEntityType(Enum):
    """Audited entity families"""
    PAYMENT = "PAYMENT"
    INVOICE = "INVOICE"
    CUSTOMER = "CUSTOMER"
    LOAN = "LOAN"
    CHIT = "CHIT"
    INVESTMENT = "INVESTMENT"
    SETTINGS = "SETTINGS"
    USER = "USER"


@dataclass
class AuditEntry:
    """
    An audit record produced by a mutation plan, before it is chained.
    The coordinator emits these; AuditTrail turns them into AuditEvents.
    """
    action: AuditAction
    entity_type: AuditEntityType
    entity_id: str
    description: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    action: AuditAction
    entity_type: AuditEntityType
    entity_id: str
    description: str
    previous_hash: str
    current_hash: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    performed_by: Optional[str] = None  # Role of the actor, e.g. OWNER or STAFF

    def __post_init__(self):
        # Snapshots are stored in their serialized form so hashing is stable
        self.before = serialize_value(self.before) if self.before is not None else None
        self.after = serialize_value(self.after) if self.after is not None else None
        self.metadata = serialize_value(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'action': self.action.value,
            'entity_type': self.entity_type.value,
            'entity_id': self.entity_id,
            'description': self.description,
            'previous_hash': self.previous_hash,
            'before': self.before,
            'after': self.after,
            'metadata': self.metadata,
            'user_id': self.user_id,
            'performed_by': self.performed_by
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['action'] = AuditAction(data['action'])
        data['entity_type'] = AuditEntityType(data['entity_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail. Append-only: nothing here updates or deletes.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_logs"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: Optional[str] = None
        self._sequence = 0
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda e: (e.get('created_at', ''), e.get('metadata', {}).get('sequence', 0)))
            self._last_hash = latest.get('current_hash')
            self._sequence = max(e.get('metadata', {}).get('sequence', 0) for e in events)

    def record(self, entry: AuditEntry, user_id: Optional[str] = None,
               performed_by: Optional[str] = None) -> AuditEvent:
        """Chain and persist an AuditEntry emitted by a mutation plan"""
        return self.log_event(
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            description=entry.description,
            before=entry.before,
            after=entry.after,
            metadata=entry.metadata,
            user_id=user_id,
            performed_by=performed_by
        )

    def log_event(
        self,
        action: AuditAction,
        entity_type: AuditEntityType,
        entity_id: str,
        description: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        performed_by: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            action: What happened
            entity_type: Family of the affected entity
            entity_id: ID of the affected entity ("BATCH" for bulk actions)
            description: Human readable summary
            before: Snapshot of the entity before the change
            after: Snapshot of the entity after the change
            metadata: Additional event-specific data
            user_id: ID of the staff member who initiated the action
            performed_by: Role of that staff member

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            self._sequence += 1
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                description=description,
                previous_hash=self._last_hash or "",
                current_hash="",
                before=before,
                after=after,
                metadata={**(metadata or {}), 'sequence': self._sequence},
                user_id=user_id,
                performed_by=performed_by
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self._last_hash = event.current_hash
            return event

    def _sorted_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: (e.created_at, e.metadata.get('sequence', 0)))
        return events

    def get_events_for_entity(self, entity_type: AuditEntityType, entity_id: str) -> List[AuditEvent]:
        """All events for one entity, oldest first"""
        return [
            e for e in self._sorted_events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    def get_all_events(self, limit: Optional[int] = None) -> List[AuditEvent]:
        """All events, oldest first; limit keeps the most recent N"""
        events = self._sorted_events()
        if limit:
            events = events[-limit:]
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

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({'event_id': event.id, 'position': i})
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
        return self.storage.count(self.table_name)
