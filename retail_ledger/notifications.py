"""
Notification Module

Email and in-app notifications for account-holder events: posting
confirmations, low-balance alerts, PIN and login security alerts, password
changes and welcome messages. Delivery reacts to domain events after the
ledger has committed, and every delivery failure is logged and contained.
"""

import base64
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

import requests

from .config import LedgerConfig, get_config
from .currency import Currency, Money
from .errors import InternalError, InvalidInputError
from .events import DomainEvent, EventDispatcher, EventPayload
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, Clock, utc_now

if TYPE_CHECKING:
    from .identity import IdentityManager, User


logger = get_logger("notifications")


class NotificationCategory(Enum):
    """In-app notification categories"""
    LOW_BALANCE = "low-balance"
    NEW_LOGIN = "new-login"
    PIN_LOCKED = "pin-locked"
    PIN_SET = "pin-set"
    PIN_CHANGE = "pin-change"
    PASSWORD_CHANGE = "password-change"
    TRANSACTION_CONFIRMATION = "transaction-confirmation"
    ALERT = "alert"


@dataclass
class Notification(StorageRecord):
    """In-app notification shown to the account holder"""
    user_id: str
    title: str
    message: str
    category: NotificationCategory = NotificationCategory.ALERT
    read: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        data = dict(data)
        data['category'] = NotificationCategory(data['category'])
        return super().from_dict(data)


@dataclass
class NotificationSettings(StorageRecord):
    """Per-user switches for each kind of notification"""
    user_id: str
    transaction_confirmations: bool = True
    low_balance_alert: bool = True
    low_balance_threshold: Decimal = Decimal("1000.00")
    new_login_alert: bool = True
    incorrect_pin_alert: bool = True
    password_change_alert: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationSettings':
        data = dict(data)
        data['low_balance_threshold'] = Decimal(data['low_balance_threshold'])
        return super().from_dict(data)


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


# Sinks

class NotificationSink(ABC):
    """Destination for in-app notifications"""

    @abstractmethod
    def notify(self, user_id: str, title: str, message: str,
               category: NotificationCategory = NotificationCategory.ALERT) -> None:
        pass


class InAppNotificationSink(NotificationSink):
    """In-app notifications persisted in storage"""

    def __init__(self, storage: StorageInterface, clock: Clock = utc_now):
        self.storage = storage
        self.clock = clock
        self.table = "notifications"

    def notify(self, user_id: str, title: str, message: str,
               category: NotificationCategory = NotificationCategory.ALERT) -> None:
        now = self.clock()
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            title=title,
            message=message,
            category=category,
        )
        self.storage.save(self.table, notification.id, notification.to_dict())

    def list_for_user(self, user_id: str) -> List[Notification]:
        """Newest first"""
        notifications = [
            Notification.from_dict(data)
            for data in self.storage.find(self.table, {"user_id": user_id})
        ]
        notifications.sort(key=lambda n: (n.created_at, n.id), reverse=True)
        return notifications

    def mark_all_read(self, user_id: str) -> int:
        updated = 0
        for data in self.storage.find(self.table, {"user_id": user_id, "read": False}):
            data['read'] = True
            data['updated_at'] = self.clock().isoformat()
            self.storage.save(self.table, data['id'], data)
            updated += 1
        return updated


class EmailSink(ABC):
    """Outbound email transport"""

    @abstractmethod
    def send(self, address: str, subject: str, html_body: str,
             attachments: Optional[List[EmailAttachment]] = None) -> None:
        pass


class LogEmailSink(EmailSink):
    """Logs outbound email instead of sending it; keeps the messages in an outbox"""

    def __init__(self):
        self.outbox: List[Dict[str, Any]] = []

    def send(self, address: str, subject: str, html_body: str,
             attachments: Optional[List[EmailAttachment]] = None) -> None:
        self.outbox.append({
            "to": address,
            "subject": subject,
            "html": html_body,
            "attachments": list(attachments or []),
        })
        log_action(logger, "info", f"EMAIL to {address}: {subject}", action="email_logged",
                   extra={"attachments": [a.filename for a in attachments or []]})


class WebhookEmailSink(EmailSink):
    """Hands email to an HTTP relay via webhook POST"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, address: str, subject: str, html_body: str,
             attachments: Optional[List[EmailAttachment]] = None) -> None:
        payload = {
            "to": address,
            "subject": subject,
            "html": html_body,
            "attachments": [
                {
                    "filename": attachment.filename,
                    "content_type": attachment.content_type,
                    "content": base64.b64encode(attachment.content).decode("ascii"),
                }
                for attachment in attachments or []
            ],
        }
        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise InternalError(f"Email relay failed: {e}")


def create_email_sink(config: LedgerConfig) -> EmailSink:
    if config.webhook_email_url:
        return WebhookEmailSink(config.webhook_email_url, timeout=config.webhook_timeout_seconds)
    return LogEmailSink()


# Settings

class NotificationSettingsStore:
    """One NotificationSettings record per user, keyed by user id"""

    def __init__(self, storage: StorageInterface, config: Optional[LedgerConfig] = None,
                 clock: Clock = utc_now):
        self.storage = storage
        self.config = config or get_config()
        self.clock = clock
        self.table = "notification_settings"

    def _defaults(self, user_id: str) -> NotificationSettings:
        now = self.clock()
        return NotificationSettings(
            id=user_id,
            created_at=now,
            updated_at=now,
            user_id=user_id,
            low_balance_threshold=Decimal(self.config.default_low_balance_threshold),
        )

    def create_defaults(self, user_id: str) -> NotificationSettings:
        settings = self._defaults(user_id)
        self.storage.save(self.table, user_id, settings.to_dict())
        return settings

    def get(self, user_id: str) -> NotificationSettings:
        data = self.storage.load(self.table, user_id)
        if data:
            return NotificationSettings.from_dict(data)
        return self.create_defaults(user_id)

    def update(self, user_id: str, **changes: Any) -> NotificationSettings:
        """
        Apply partial changes. Only known switches are accepted; the
        threshold must be a non-negative number.
        """
        settings = self.get(user_id)
        for name, value in changes.items():
            if value is None:
                continue
            if name == "low_balance_threshold":
                settings.low_balance_threshold = self._parse_threshold(value)
            elif name in ("transaction_confirmations", "low_balance_alert", "new_login_alert",
                          "incorrect_pin_alert", "password_change_alert"):
                if not isinstance(value, bool):
                    raise InvalidInputError(f"{name} must be true or false.", field=name)
                setattr(settings, name, value)
            else:
                raise InvalidInputError(f"Unknown notification setting: {name}", field=name)
        settings.updated_at = self.clock()
        self.storage.save(self.table, user_id, settings.to_dict())
        return settings

    @staticmethod
    def _parse_threshold(value: Any) -> Decimal:
        if isinstance(value, (bool, float)):
            raise InvalidInputError(
                "Low balance threshold must be a non-negative number.", field="low_balance_threshold"
            )
        try:
            threshold = Decimal(str(value).strip())
        except InvalidOperation:
            threshold = None
        if threshold is None or not threshold.is_finite() or threshold < 0:
            raise InvalidInputError(
                "Low balance threshold must be a non-negative number.", field="low_balance_threshold"
            )
        return threshold


# Service

class NotificationService:
    """
    Turns domain events into email and in-app notifications according to
    each user's NotificationSettings.
    """

    def __init__(
        self,
        settings_store: NotificationSettingsStore,
        in_app: InAppNotificationSink,
        email: EmailSink,
        users: 'IdentityManager',
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.settings_store = settings_store
        self.in_app = in_app
        self.email = email
        self.users = users
        self.config = config or get_config()
        self.currency = Currency[self.config.currency]
        if event_dispatcher is not None:
            self.subscribe(event_dispatcher)

    # Settings and inbox

    def get_settings(self, user_id: str) -> NotificationSettings:
        return self.settings_store.get(user_id)

    def update_settings(self, user_id: str, **changes: Any) -> NotificationSettings:
        settings = self.settings_store.update(user_id, **changes)
        log_action(logger, "info", "Notification settings updated", user_id=user_id,
                   action="notification_settings_updated",
                   extra={k: str(v) for k, v in changes.items() if v is not None})
        return settings

    def list_notifications(self, user_id: str) -> List[Notification]:
        return self.in_app.list_for_user(user_id)

    def mark_all_read(self, user_id: str) -> int:
        return self.in_app.mark_all_read(user_id)

    # Event wiring

    def subscribe(self, event_dispatcher: EventDispatcher) -> None:
        handlers = {
            DomainEvent.TRANSACTION_CREATED: self._on_transaction_created,
            DomainEvent.LOW_BALANCE_CROSSED: self._on_low_balance,
            DomainEvent.USER_REGISTERED: self._on_user_registered,
            DomainEvent.LOGIN_SUCCEEDED: self._on_login,
            DomainEvent.LOGIN_LOCKED: self._on_login_locked,
            DomainEvent.PASSWORD_CHANGED: self._on_password_changed,
            DomainEvent.PASSWORD_RESET_REQUESTED: self._on_password_reset_requested,
            DomainEvent.PROFILE_UPDATED: self._on_profile_updated,
            DomainEvent.PIN_SET: self._on_pin_set,
            DomainEvent.PIN_CHANGED: self._on_pin_changed,
            DomainEvent.PIN_FAILED: self._on_pin_failed,
            DomainEvent.PIN_LOCKED: self._on_pin_locked,
        }
        for event_type, handler in handlers.items():
            event_dispatcher.subscribe(event_type, self._contained(handler))

    def _contained(self, handler: Callable[[EventPayload], None]) -> Callable[[EventPayload], None]:
        def run(event: EventPayload) -> None:
            try:
                handler(event)
            except Exception as e:
                log_action(logger, "error", f"Notification handler {handler.__name__} failed: {e}",
                           user_id=event.user_id, action="notification_failed",
                           resource=event.entity_id, extra={"event": event.event_type.value})
        run.__name__ = handler.__name__
        return run

    def _send_email(self, user: 'User', subject: str, html_body: str) -> None:
        try:
            self.email.send(user.email, subject, html_body)
        except Exception as e:
            log_action(logger, "error", f"Email delivery failed: {e}", user_id=user.id,
                       action="email_failed", extra={"subject": subject})

    def _notify(self, user_id: str, title: str, message: str,
                category: NotificationCategory) -> None:
        try:
            self.in_app.notify(user_id, title, message, category)
        except Exception as e:
            log_action(logger, "error", f"In-app notification failed: {e}", user_id=user_id,
                       action="in_app_failed", extra={"title": title})

    def _user(self, event: EventPayload) -> Optional['User']:
        user = self.users.get_user(event.user_id)
        if user is None:
            logger.warning(f"Dropping {event.event_type.value} notification for unknown user {event.user_id}")
        return user

    def _money(self, amount: Any) -> str:
        return Money(Decimal(str(amount)), self.currency).to_string()

    # Handlers

    def _on_transaction_created(self, event: EventPayload) -> None:
        user = self._user(event)
        if user is None:
            return
        d = event.data
        amount = self._money(d['amount'])
        balance = self._money(d['balance_after'])
        account = f"{d['account_type']} account (No: {d['account_number']})"
        kind = d['transaction_type']

        if kind == "deposit":
            subject = "Deposit Confirmation - Your Banking App"
            body = (f"<h2>Deposit Confirmation</h2><p>Dear {user.full_name},</p>"
                    f"<p>A deposit of <strong>{amount}</strong> has been successfully credited "
                    f"to your {account}.</p>")
            title, message = "Deposit Received", (
                f"A deposit of {amount} has been credited to your {d['account_type']} account.")
        elif kind == "withdrawal":
            subject = "Withdrawal Confirmation - Your Banking App"
            body = (f"<h2>Withdrawal Confirmation</h2><p>Dear {user.full_name},</p>"
                    f"<p>A withdrawal of <strong>{amount}</strong> from your {account} "
                    f"for '{d['category']}'.</p>")
            title, message = "Withdrawal Processed", (
                f"A withdrawal of {amount} was processed from your {d['account_type']} account.")
        elif kind == "transferOut":
            subject = "Transfer Confirmation - Funds Sent"
            body = (f"<h2>Fund Transfer Confirmation (Outgoing)</h2><p>Dear {user.full_name},</p>"
                    f"<p>You have successfully transferred <strong>{amount}</strong> from your "
                    f"{account} to {d['counterparty_name']} ({d['counterparty_reference']}).</p>")
            title, message = "Funds Sent", (
                f"You sent {amount} to {d['counterparty_name']} from your "
                f"{d['account_type']} account.")
        else:
            subject = "Transfer Confirmation - Funds Received"
            body = (f"<h2>Fund Transfer Confirmation (Incoming)</h2><p>Dear {user.full_name},</p>"
                    f"<p>You have received a transfer of <strong>{amount}</strong> from "
                    f"{d['counterparty_name']} ({d['counterparty_reference']}).</p>")
            title, message = "Funds Received", (
                f"You received {amount} from {d['counterparty_name']} to your "
                f"{d['account_type']} account.")

        body += (f"<p>Your new balance is: <strong>{balance}</strong></p>"
                 f"<p>Transaction ID: {event.entity_id}</p><p>Thank you for banking with us!</p>")

        if self.settings_store.get(user.id).transaction_confirmations:
            self._send_email(user, subject, body)
        self._notify(user.id, title, message, NotificationCategory.TRANSACTION_CONFIRMATION)

    def _on_low_balance(self, event: EventPayload) -> None:
        user = self._user(event)
        if user is None:
            return
        d = event.data
        threshold = self._money(d['threshold'])
        balance = self._money(d['balance'])
        account = f"{d['account_type']} (No: {d['account_number']})"
        self._send_email(
            user, "Low Balance Alert - Your Banking App",
            f"<h2>Low Balance Alert!</h2><p>Dear {user.full_name},</p>"
            f"<p>Your account balance for {account} has dropped below your threshold of "
            f"<strong>{threshold}</strong>.</p><p>Your current balance is: <strong>{balance}</strong></p>"
            f"<p>Please consider adding funds to your account.</p>"
        )
        self._notify(user.id, "Low Balance Alert",
                     f"Your balance for {account} is now {balance}, which is below your "
                     f"threshold of {threshold}.", NotificationCategory.LOW_BALANCE)

    def _on_user_registered(self, event: EventPayload) -> None:
        user = self._user(event)
        if user is None:
            return
        self._send_email(
            user, "Welcome to Banking App - Account Created!",
            f"<h2>Welcome to Banking App!</h2><p>Dear {user.full_name},</p>"
            f"<p>Your account has been successfully created.</p>"
            f"<p>Your unique Bank Account Number is: <strong>{event.data['account_number']}</strong></p>"
        )
        self._notify(user.id, "Welcome!", "Your account has been successfully created.",
                     NotificationCategory.ALERT)

    def _on_login(self, event: EventPayload) -> None:
        user = self._user(event)
        if user is None:
            return
        login_type = event.data.get('login_type', 'Password')
        if self.settings_store.get(user.id).new_login_alert:
            self._send_email(
                user, "Security Alert: New Login to Your Account",
                f"<h2>New Login Alert</h2><p>Dear {user.full_name},</p>"
                f"<p>Your Banking App account was just logged into successfully.</p>"
                f"<p><strong>Login Type:</strong> {login_type} Login</p>"
                f"<p><strong>Time:</strong> {event.timestamp.isoformat()}</p>"
            )
        if login_type == "OTP":
            self._notify(user.id, "New Login (OTP)",
                         "Your account was successfully logged into with an OTP.",
                         NotificationCategory.NEW_LOGIN)
        else:
            self._notify(user.id, "New Login", "Your account was logged into successfully.",
                         NotificationCategory.NEW_LOGIN)

    def _on_login_locked(self, event: EventPayload) -> None:
        user = self._user(event)
        if user is None:
            return
        d = event.data
        self._send_email(
            user, "Security Alert: Failed Login Attempts & OTP for Login",
            f"<h2>Security Alert: Too Many Failed Login Attempts</h2><p>Dear {user.full_name},</p>"
            f"<p>There have been {d['failed_attempts']} failed login attempts for your account.</p>"
            f"<p>Your account has been temporarily locked for {d['lockout_minutes']} minutes.</p>"
            f"<p>To log in securely, use the following One-Time Password (OTP): "
            f"<strong>{d['recovery_code']}</strong></p>"
            f"<p>This OTP is valid for {d['recovery_code_minutes']} minutes.</p>"
        )
        self._notify(user.id, "Account Locked",
                     f"Your account has been locked due to {d['failed_attempts']} failed login "
                     f"attempts. Check your email for OTP.", NotificationCategory.ALERT)

    def _on_password_changed(self, event: EventPayload) -> None:
        user = self._user(event)
        if user is None:
            return
        if event.data.get('reset'):
            self._send_email(
                user, "Banking App - Password Successfully Reset",
                f"<h2>Password Reset Successful</h2><p>Dear {user.full_name},</p>"
                f"<p>Your password has been successfully reset.</p>"
            )
            self._notify(user.id, "Password Reset", "Your password was successfully reset.",
                         NotificationCategory.PASSWORD_CHANGE)
            return
        if self.settings_store.get(user.id).password_change_alert:
            self._send_email(
                user, "Banking App - Password Changed",
                f"<h2>Password Changed Successfully</h2><p>Dear {user.full_name},</p>"
                f"<p>Your password has been successfully changed.</p>"
            )
        self._notify(user.id, "Password Changed", "Your password was successfully changed.",
                     NotificationCategory.PASSWORD_CHANGE)

    def _on_password_reset_requested(self, event: EventPayload) -> None:
        user = self._user(event)
        if user is None:
            return
        self._send_email(
            user, "Banking App - Password Reset OTP",
            f"<h2>Password Reset Request</h2><p>Dear {user.full_name},</p>"
            f"<p>Your One-Time Password (OTP) is: <strong>{event.data['otp']}</strong></p>"
            f"<p>This OTP is valid for {event.data['expiry_minutes']} minutes. "
            f"Do not share this with anyone.</p>"
        )

    def _on_profile_updated(self, event: EventPayload) -> None:
        self._notify(event.user_id, "Profile Updated",
                     "Your profile details have been successfully updated.",
                     NotificationCategory.ALERT)

    def _on_pin_set(self, event: EventPayload) -> None:
        user = self._user(event)
        if user is None:
            return
        self._send_email(
            user, "Banking App - Transaction PIN Set",
            f"<h2>Transaction PIN Set Successfully!</h2><p>Dear {user.full_name},</p>"
            f"<p>You will now need this PIN to authorize sensitive transactions.</p>"
        )
        self._notify(user.id, "Transaction PIN Set", "Your transaction PIN has been successfully set.",
                     NotificationCategory.PIN_SET)

    def _on_pin_changed(self, event: EventPayload) -> None:
        user = self._user(event)
        if user is None:
            return
        self._send_email(
            user, "Banking App - Transaction PIN Changed",
            f"<h2>Transaction PIN Changed Successfully!</h2><p>Dear {user.full_name},</p>"
            f"<p>Your transaction PIN has been successfully changed.</p>"
        )
        self._notify(user.id, "Transaction PIN Changed",
                     "Your transaction PIN was successfully changed.", NotificationCategory.PIN_CHANGE)

    def _on_pin_failed(self, event: EventPayload) -> None:
        user = self._user(event)
        if user is None:
            return
        if not self.settings_store.get(user.id).incorrect_pin_alert:
            return
        d = event.data
        self._send_email(
            user, "Security Alert: Incorrect Transaction PIN Entered",
            f"<h2>Security Alert: Incorrect Transaction PIN Attempt</h2><p>Dear {user.full_name},</p>"
            f"<p>There was an attempt to authorize a transaction with an incorrect PIN.</p>"
            f"<p>This is failed attempt <strong>{d['failed_attempts']} of {d['max_attempts']}</strong>.</p>"
            f"<p>If you reach {d['max_attempts']} failed attempts, your transaction PIN will be "
            f"locked for {d['lockout_minutes']} minutes.</p>"
        )

    def _on_pin_locked(self, event: EventPayload) -> None:
        user = self._user(event)
        if user is None:
            return
        d = event.data
        self._send_email(
            user, "Security Alert: Transaction PIN Locked",
            f"<h2>Security Alert: Transaction PIN Locked!</h2><p>Dear {user.full_name},</p>"
            f"<p>Your transaction PIN has been locked due to {d['max_attempts']} incorrect attempts.</p>"
            f"<p>You will be able to try again in {d['lockout_minutes']} minutes.</p>"
        )
        self._notify(user.id, "PIN Locked",
                     f"Your transaction PIN is locked for {d['lockout_minutes']} minutes due to "
                     f"incorrect attempts.", NotificationCategory.PIN_LOCKED)
