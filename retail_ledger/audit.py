"""
Activity Log Module

Hash-chained, append-only record of account-holder activity (logins, PIN
changes, postings) with SHA-256 chaining for tamper detection.
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord, Clock, utc_now


class ActivityType(Enum):
    """Types of account-holder activity"""
    REGISTER = "register"
    LOGIN = "login"
    LOGOUT = "logout"
    LOGIN_FAILED = "login-failed"
    LOGIN_LOCKED = "login-locked"
    PASSWORD_CHANGE = "password-change"
    PASSWORD_RESET = "password-reset"
    PIN_SET = "pin-set"
    PIN_CHANGE = "pin-change"
    PIN_FAILED = "pin-failed"
    PIN_LOCKED = "pin-locked"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER_OUT = "transfer-out"
    PROFILE_UPDATE = "profile-update"


def _convert_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_convert_value(v) for v in value]
    return value


@dataclass
class ActivityEvent(StorageRecord):
    """
    Immutable activity entry chained to its predecessor by hash
    """
    user_id: str
    activity_type: ActivityType
    description: str
    sequence: int
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]

    def __post_init__(self):
        self.metadata = {k: _convert_value(v) for k, v in (self.metadata or {}).items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'user_id': self.user_id,
            'activity_type': self.activity_type.value,
            'description': self.description,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata,
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActivityEvent':
        data = dict(data)
        if isinstance(data['activity_type'], str):
            data['activity_type'] = ActivityType(data['activity_type'])
        return super().from_dict(data)


class ActivityLog:
    """
    Hash-chained activity trail
    """

    def __init__(self, storage: StorageInterface, clock: Clock = utc_now,
                 table_name: str = "activity_log"):
        self.storage = storage
        self.clock = clock
        self.table_name = table_name
        self._lock = threading.Lock()

    def _load_events(self) -> List[ActivityEvent]:
        events = [ActivityEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def _chain_head(self) -> tuple:
        """Sequence number and hash of the most recent entry"""
        latest = None
        for data in self.storage.load_all(self.table_name):
            if latest is None or data['sequence'] > latest['sequence']:
                latest = data
        if latest is None:
            return 0, ""
        return latest['sequence'], latest['current_hash']

    def log_activity(
        self,
        user_id: str,
        activity_type: ActivityType,
        description: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ActivityEvent:
        """
        Append an activity entry to the chain

        Args:
            user_id: Account holder the activity belongs to
            activity_type: Kind of activity
            description: Human readable description
            metadata: Additional structured data (amounts, account numbers)

        Returns:
            Created ActivityEvent
        """
        with self._lock:
            now = self.clock()
            sequence, previous_hash = self._chain_head()

            event = ActivityEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                activity_type=activity_type,
                description=description,
                sequence=sequence + 1,
                previous_hash=previous_hash,
                current_hash="",
                metadata=metadata or {},
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def get_user_activity(self, user_id: str, limit: Optional[int] = None) -> List[ActivityEvent]:
        """Activity for one user, newest first"""
        events = [
            ActivityEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {'user_id': user_id})
        ]
        events.sort(key=lambda e: e.sequence, reverse=True)
        if limit:
            events = events[:limit]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire activity chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        events = self._load_events()
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
        """Get total number of activity entries"""
        return self.storage.count(self.table_name)
