"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every coin, role, transfer and request state change is logged here, inside
the same storage scope as the change itself.
"""

import hashlib
import json
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum

from .storage import StorageInterface, StorageRecord, utc_now


class AuditEventType(Enum):
    """Types of audit events"""
    # Registry events
    USER_REGISTERED = "user_registered"
    COIN_CREATED = "coin_created"
    COIN_UPDATED = "coin_updated"

    # Governance events
    ROLE_CREATED = "role_created"
    ROLE_ASSIGNED = "role_assigned"
    PERMISSION_SET = "permission_set"

    # Value transfer events
    TRANSFER_COMPLETED = "transfer_completed"
    REQUEST_CREATED = "request_created"
    REQUEST_ACCEPTED = "request_accepted"
    REQUEST_DECLINED = "request_declined"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # coin, role, transaction, request...
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[int] = None

    def __post_init__(self):
        if self.metadata:
            self._serialize_metadata()

    def _serialize_metadata(self) -> None:
        """Convert metadata values to JSON-serializable format"""
        def convert_value(value):
            if isinstance(value, datetime):
                return value.isoformat()
            elif isinstance(value, Enum):
                return value.value
            elif isinstance(value, dict):
                return {k: convert_value(v) for k, v in value.items()}
            elif isinstance(value, (list, tuple)):
                return [convert_value(v) for v in value]
            else:
                return value

        self.metadata = {k: convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        data = dict(data)
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection.

    Events are ordered by their integer key, so the chain is independent of
    clock resolution. Appending happens under a storage scope: the previous
    hash is read and the new event written while the scope is held.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name

    def _last_hash(self) -> str:
        """Hash of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if not events:
            return ""
        latest = max(events, key=lambda e: e['id'])
        return latest.get('current_hash', "")

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: Any,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[int] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: Internal key of the user who initiated the action

        Returns:
            Created AuditEvent
        """
        with self.storage.atomic():
            now = utc_now()
            event = AuditEvent(
                id=self.storage.next_id(self.table_name),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=str(entity_id),
                previous_hash=self._last_hash(),
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.storage_key, event.to_dict())

        return event

    def get_events_for_entity(self, entity_type: str, entity_id: Any) -> List[AuditEvent]:
        """All audit events for one entity, oldest first"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': str(entity_id)
        })
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda e: e.id)
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """All audit events of one type, oldest first"""
        events_data = self.storage.find(self.table_name, {'event_type': event_type.value})
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda e: e.id)
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

        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.id)
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
