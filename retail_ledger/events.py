"""
Event System Module

Publish/subscribe dispatcher for domain events. The ledger and identity
components publish after their writes have committed; notification delivery
subscribes here so a failing handler can never undo or block a posting.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
from threading import RLock

from .logging_config import get_logger


class DomainEvent(Enum):
    """Domain events that can occur in the ledger"""

    # Ledger events
    TRANSACTION_CREATED = "transaction.created"
    LOW_BALANCE_CROSSED = "account.low_balance"
    ACCOUNT_CREATED = "account.created"

    # Identity events
    USER_REGISTERED = "user.registered"
    LOGIN_SUCCEEDED = "auth.login"
    LOGIN_LOCKED = "auth.login_locked"
    PASSWORD_CHANGED = "auth.password_changed"
    PASSWORD_RESET_REQUESTED = "auth.password_reset_requested"
    PROFILE_UPDATED = "user.profile_updated"

    # Transaction PIN events
    PIN_SET = "pin.set"
    PIN_CHANGED = "pin.changed"
    PIN_FAILED = "pin.failed"
    PIN_LOCKED = "pin.locked"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def user_id(self) -> Optional[str]:
        return self.data.get("user_id")


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventDispatcher:
    """Central event dispatcher: publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._lock = RLock()
        self.logger = get_logger("events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers; handler errors are logged and contained"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}",
                    exc_info=True,
                )

    def publish_event(self, event_type: DomainEvent, entity_type: str, entity_id: str,
                      data: Dict[str, Any], timestamp: Optional[datetime] = None) -> EventPayload:
        """Build and publish an event in one call"""
        event = EventPayload(event_type=event_type, entity_type=entity_type,
                             entity_id=entity_id, data=data)
        if timestamp is not None:
            event.timestamp = timestamp
        self.publish(event)
        return event


def create_transaction_event(event_type: DomainEvent, transaction) -> EventPayload:
    """Create a transaction-related event"""
    return EventPayload(
        event_type=event_type,
        entity_type="transaction",
        entity_id=transaction.id,
        timestamp=transaction.created_at,
        data={
            "user_id": transaction.user_id,
            "account_id": transaction.account_id,
            "account_number": transaction.account_number,
            "transaction_type": transaction.transaction_type.value,
            "amount": str(transaction.amount),
            "currency": transaction.amount.currency.code,
            "category": transaction.category,
            "description": transaction.description,
            "counterparty_reference": transaction.counterparty_reference,
            "linked_transaction_id": transaction.linked_transaction_id,
        }
    )


def create_account_event(event_type: DomainEvent, account, **extra: Any) -> EventPayload:
    """Create an account-related event"""
    data = {
        "user_id": account.user_id,
        "account_number": account.account_number,
        "account_type": account.account_type.value,
        "balance": str(account.balance),
        "currency": account.balance.currency.code,
    }
    data.update(extra)
    return EventPayload(
        event_type=event_type,
        entity_type="account",
        entity_id=account.id,
        data=data
    )
