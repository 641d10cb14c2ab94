"""
Identity Module

Account holders, their password and transaction PIN credentials, and the
two independent lockout state machines guarding them. Every lock-state
change is saved under the user's key lock before an error is raised, so a
failed attempt is never lost.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .accounts import Account, AccountManager, AccountType
from .audit import ActivityLog, ActivityType
from .config import LedgerConfig, get_config
from .credentials import hash_secret, verify_secret, generate_passcode
from .errors import (
    InvalidInputError, LedgerError, NotFoundError, UnauthorizedError
)
from .events import DomainEvent, EventDispatcher
from .lockout import LockoutPolicy, LockoutTracker, LockState
from .logging_config import get_logger, log_action
from .notifications import NotificationSettingsStore
from .storage import (
    StorageInterface, StorageRecord, KeyedLockManager, Clock, utc_now,
    parse_datetime, format_datetime
)


logger = get_logger("identity")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MOBILE_PATTERN = re.compile(r"^\d{10}$")
PIN_PATTERN = re.compile(r"^\d{4,6}$")

DEFAULT_CATEGORIES = ["Food", "Transport", "Groceries", "Bills", "Shopping"]
ROLES = ("user", "admin")


@dataclass
class User(StorageRecord):
    """Registered account holder"""
    full_name: str
    email: str
    mobile_number: str
    password_hash: str
    pin_hash: Optional[str] = None
    login_lock: LockState = field(default_factory=LockState)
    pin_lock: LockState = field(default_factory=LockState)
    reset_otp: Optional[str] = None
    reset_otp_expires: Optional[datetime] = None
    role: str = "user"
    categories: List[str] = field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    last_low_balance_alert_sent: Optional[datetime] = None

    @property
    def has_transaction_pin(self) -> bool:
        return bool(self.pin_hash)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def user_lock_key(user_id: str) -> str:
    return f"user:{user_id}"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class IdentityManager:
    """
    Registration, authentication and credential management for account holders
    """

    def __init__(
        self,
        storage: StorageInterface,
        lock_manager: KeyedLockManager,
        accounts: AccountManager,
        settings_store: NotificationSettingsStore,
        activity_log: ActivityLog,
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LedgerConfig] = None,
        clock: Clock = utc_now
    ):
        self.storage = storage
        self.lock_manager = lock_manager
        self.accounts = accounts
        self.settings_store = settings_store
        self.activity_log = activity_log
        self.event_dispatcher = event_dispatcher or EventDispatcher()
        self.config = config or get_config()
        self.clock = clock
        self.users_table = "users"

        self.login_tracker = LockoutTracker(LockoutPolicy.for_login(self.config), clock)
        self.pin_tracker = LockoutTracker(LockoutPolicy.for_transaction_pin(self.config), clock)

    # Lookups

    def get_user(self, user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        data = self.storage.load(self.users_table, user_id)
        if data:
            return self._user_from_dict(data)
        return None

    def require_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found.", entity="user")
        return user

    def find_user_by_email(self, email: str) -> Optional[User]:
        users = self.storage.find(self.users_table, {"email": normalize_email(email)})
        return self._user_from_dict(users[0]) if users else None

    def find_user_by_mobile(self, mobile_number: str) -> Optional[User]:
        users = self.storage.find(self.users_table, {"mobile_number": (mobile_number or "").strip()})
        return self._user_from_dict(users[0]) if users else None

    def find_user_by_identifier(self, identifier: str) -> Optional[User]:
        """Resolve a transfer recipient by mobile number or email"""
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        return self.find_user_by_mobile(identifier) or self.find_user_by_email(identifier)

    def has_transaction_pin(self, user_id: str) -> bool:
        return self.require_user(user_id).has_transaction_pin

    def list_users(self) -> List[User]:
        """Every registered user, oldest first"""
        users = [self._user_from_dict(data) for data in self.storage.load_all(self.users_table)]
        return sorted(users, key=lambda u: (u.created_at, u.id))

    def set_role(self, user_id: str, role: str) -> User:
        """Grant or revoke administrator access"""
        if role not in ROLES:
            raise InvalidInputError(f"Role must be one of: {', '.join(ROLES)}.", field="role")
        with self.lock_manager.hold(user_lock_key(user_id)):
            user = self.require_user(user_id)
            user.role = role
            user.updated_at = self.clock()
            self._save_user(user)
        log_action(logger, "info", f"Role set to {role}", user_id=user_id, action="role_changed",
                   resource="user")
        return user

    # Registration and profile

    def register(self, full_name: str, email: str, mobile_number: str,
                 password: str) -> Tuple[User, Account]:
        """
        Create an account holder with a default Zero Balance account and
        default notification settings.

        Args:
            full_name: Display name
            email: Unique email address (stored lowercased)
            mobile_number: Unique 10-digit mobile number
            password: Login password

        Returns:
            Tuple of the created User and their default Account
        """
        full_name = (full_name or "").strip()
        email = normalize_email(email)
        mobile_number = (mobile_number or "").strip()

        if not full_name:
            raise InvalidInputError("Full name is required.", field="full_name")
        if not EMAIL_PATTERN.match(email):
            raise InvalidInputError("Please provide a valid email.", field="email")
        self._validate_mobile(mobile_number)
        self._validate_password(password, field_name="password")

        with self.lock_manager.hold("registration"):
            if self.find_user_by_email(email):
                raise InvalidInputError("User with this email already exists.", field="email")
            if self.find_user_by_mobile(mobile_number):
                raise InvalidInputError("User with this mobile number already exists.",
                                        field="mobile_number")

            now = self.clock()
            user = User(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                full_name=full_name,
                email=email,
                mobile_number=mobile_number,
                password_hash=hash_secret(password),
            )
            with self.storage.atomic():
                self._save_user(user)
                account = self.accounts.create_account(
                    user.id, AccountType.ZERO_BALANCE, publish_event=False
                )
                self.settings_store.create_defaults(user.id)

        self.activity_log.log_activity(user.id, ActivityType.REGISTER, "Account registered",
                                       {"account_number": account.account_number})
        log_action(logger, "info", "User registered", user_id=user.id, action="register",
                   resource=account.id)
        self.event_dispatcher.publish_event(
            DomainEvent.USER_REGISTERED, "user", user.id,
            {"user_id": user.id, "account_number": account.account_number}
        )
        return user, account

    def update_profile(self, user_id: str, full_name: Optional[str] = None,
                       mobile_number: Optional[str] = None) -> User:
        if full_name is not None and not full_name.strip():
            raise InvalidInputError("Full name cannot be empty.", field="full_name")
        if mobile_number is not None:
            mobile_number = mobile_number.strip()
            self._validate_mobile(mobile_number)

        with self.lock_manager.hold("registration", user_lock_key(user_id)):
            user = self.require_user(user_id)
            if mobile_number is not None and mobile_number != user.mobile_number:
                if self.find_user_by_mobile(mobile_number):
                    raise InvalidInputError("User with this mobile number already exists.",
                                            field="mobile_number")
                user.mobile_number = mobile_number
            if full_name is not None:
                user.full_name = full_name.strip()
            user.updated_at = self.clock()
            self._save_user(user)

        self.activity_log.log_activity(user_id, ActivityType.PROFILE_UPDATE, "Profile updated",
                                       {"full_name": full_name, "mobile_number": mobile_number})
        self.event_dispatcher.publish_event(DomainEvent.PROFILE_UPDATED, "user", user_id,
                                            {"user_id": user_id})
        return user

    def get_categories(self, user_id: str) -> List[str]:
        return self.require_user(user_id).categories

    def add_category(self, user_id: str, name: str) -> List[str]:
        """Add a spending category; names are unique case-insensitively"""
        name = (name or "").strip() if isinstance(name, str) else ""
        if not name:
            raise InvalidInputError("Please provide a valid category name.", field="category")
        with self.lock_manager.hold(user_lock_key(user_id)):
            user = self.require_user(user_id)
            if any(existing.lower() == name.lower() for existing in user.categories):
                raise InvalidInputError("This category already exists.", field="category")
            user.categories.append(name)
            user.updated_at = self.clock()
            self._save_user(user)
        return user.categories

    # Login

    def login(self, email: str, password: str) -> User:
        """
        Password login guarded by the login lockout class.

        The third consecutive failure locks the login for the configured
        window and issues a one-time recovery passcode.
        """
        if not password:
            raise InvalidInputError("Password is required.", field="password")
        user = self.find_user_by_email(email)
        if user is None:
            raise UnauthorizedError("Invalid email or password.")

        with self.lock_manager.hold(user_lock_key(user.id)):
            user = self.require_user(user.id)
            self._ensure_unlocked(user, self.login_tracker, user.login_lock)

            if verify_secret(password, user.password_hash):
                self.login_tracker.register_success(user.login_lock)
                user.updated_at = self.clock()
                self._save_user(user)
            else:
                outcome = self.login_tracker.register_failure(user.login_lock)
                user.updated_at = self.clock()
                self._save_user(user)
                self._record_login_failure(user, outcome)
                raise self.login_tracker.failure_error(outcome)

        self._record_login(user, "Password")
        return user

    def login_with_otp(self, email: str, code: str) -> User:
        """Log in with the recovery passcode issued on login lockout"""
        user = self.find_user_by_email(email)
        if user is None:
            raise UnauthorizedError("Invalid email or OTP.")

        with self.lock_manager.hold(user_lock_key(user.id)):
            user = self.require_user(user.id)
            state = user.login_lock
            if not state.recovery_code or not code or state.recovery_code != str(code).strip():
                raise UnauthorizedError("Invalid OTP.")
            if state.recovery_code_expires is None or state.recovery_code_expires < self.clock():
                raise UnauthorizedError(
                    "OTP has expired. Please request a new login attempt or forgot password."
                )
            self.login_tracker.register_success(state)
            user.updated_at = self.clock()
            self._save_user(user)

        self._record_login(user, "OTP")
        return user

    def logout(self, user_id: str) -> None:
        self.activity_log.log_activity(user_id, ActivityType.LOGOUT, "Logged out")

    def _record_login(self, user: User, login_type: str) -> None:
        self.activity_log.log_activity(user.id, ActivityType.LOGIN, f"{login_type} login",
                                       {"login_type": login_type})
        log_action(logger, "info", "Login succeeded", user_id=user.id, action="login",
                   extra={"login_type": login_type})
        self.event_dispatcher.publish_event(DomainEvent.LOGIN_SUCCEEDED, "user", user.id,
                                            {"user_id": user.id, "login_type": login_type})

    def _record_login_failure(self, user: User, outcome) -> None:
        log_action(logger, "warning", "Login failed", user_id=user.id, action="login_failed",
                   extra={"failed_attempts": outcome.failed_attempts, "locked": outcome.locked})
        self.activity_log.log_activity(user.id, ActivityType.LOGIN_FAILED, "Incorrect password",
                                       {"failed_attempts": outcome.failed_attempts})
        if outcome.locked:
            self.activity_log.log_activity(user.id, ActivityType.LOGIN_LOCKED, "Login locked",
                                           {"lock_until": outcome.lock_until})
            self.event_dispatcher.publish_event(
                DomainEvent.LOGIN_LOCKED, "user", user.id,
                {
                    "user_id": user.id,
                    "failed_attempts": outcome.failed_attempts,
                    "recovery_code": outcome.recovery_code,
                    "lockout_minutes": self.config.login_lockout_minutes,
                    "recovery_code_minutes": self.config.login_otp_expiry_minutes,
                }
            )

    # Password management

    def change_password(self, user_id: str, current_password: str, new_password: str,
                        confirm_new_password: str) -> None:
        if not current_password:
            raise InvalidInputError("Current password is required.", field="current_password")
        self._validate_password(new_password, field_name="new_password", label="New password")
        if new_password != confirm_new_password:
            raise InvalidInputError("New passwords do not match.", field="confirm_new_password")

        with self.lock_manager.hold(user_lock_key(user_id)):
            user = self.require_user(user_id)
            if not verify_secret(current_password, user.password_hash):
                raise UnauthorizedError("Current password is incorrect.")
            user.password_hash = hash_secret(new_password)
            user.updated_at = self.clock()
            self._save_user(user)

        self.activity_log.log_activity(user_id, ActivityType.PASSWORD_CHANGE, "Password changed")
        self.event_dispatcher.publish_event(DomainEvent.PASSWORD_CHANGED, "user", user_id,
                                            {"user_id": user_id, "reset": False})

    def request_password_reset(self, email: str) -> None:
        """
        Issue a password-reset passcode by email. Unknown addresses are
        ignored silently so the response does not reveal who is registered.
        """
        if not EMAIL_PATTERN.match(normalize_email(email)):
            raise InvalidInputError("Please provide a valid email.", field="email")
        user = self.find_user_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return

        otp = generate_passcode()
        with self.lock_manager.hold(user_lock_key(user.id)):
            user = self.require_user(user.id)
            user.reset_otp = otp
            user.reset_otp_expires = self.clock() + timedelta(
                minutes=self.config.password_reset_otp_expiry_minutes
            )
            user.updated_at = self.clock()
            self._save_user(user)

        self.event_dispatcher.publish_event(
            DomainEvent.PASSWORD_RESET_REQUESTED, "user", user.id,
            {"user_id": user.id, "otp": otp,
             "expiry_minutes": self.config.password_reset_otp_expiry_minutes}
        )

    def reset_password(self, email: str, otp: str, new_password: str,
                       confirm_new_password: str) -> None:
        self._validate_password(new_password, field_name="new_password", label="New password")
        if new_password != confirm_new_password:
            raise InvalidInputError("New passwords do not match.", field="confirm_new_password")

        user = self.find_user_by_email(email)
        if user is None:
            raise InvalidInputError("Invalid email or OTP.", field="otp")

        with self.lock_manager.hold(user_lock_key(user.id)):
            user = self.require_user(user.id)
            if not user.reset_otp or user.reset_otp != (otp or "").strip():
                raise InvalidInputError("Invalid OTP.", field="otp")
            if user.reset_otp_expires is None or user.reset_otp_expires < self.clock():
                raise InvalidInputError("OTP has expired. Please request a new one.", field="otp")
            user.password_hash = hash_secret(new_password)
            user.reset_otp = None
            user.reset_otp_expires = None
            user.updated_at = self.clock()
            self._save_user(user)

        self.activity_log.log_activity(user.id, ActivityType.PASSWORD_RESET, "Password reset")
        self.event_dispatcher.publish_event(DomainEvent.PASSWORD_CHANGED, "user", user.id,
                                            {"user_id": user.id, "reset": True})

    # Transaction PIN

    def set_transaction_pin(self, user_id: str, pin: str, confirm_pin: str) -> None:
        self._validate_pin(pin, "pin", "PIN")
        if pin != confirm_pin:
            raise InvalidInputError("PINs do not match.", field="confirm_pin")

        with self.lock_manager.hold(user_lock_key(user_id)):
            user = self.require_user(user_id)
            if user.has_transaction_pin:
                raise InvalidInputError("Transaction PIN is already set. Use change PIN route.",
                                        field="pin")
            user.pin_hash = hash_secret(pin)
            user.pin_lock = LockState()
            user.updated_at = self.clock()
            self._save_user(user)

        self.activity_log.log_activity(user_id, ActivityType.PIN_SET, "Transaction PIN set")
        self.event_dispatcher.publish_event(DomainEvent.PIN_SET, "user", user_id, {"user_id": user_id})

    def change_transaction_pin(self, user_id: str, current_pin: str, new_pin: str,
                               confirm_new_pin: str) -> None:
        """
        Replace the transaction PIN. The current PIN is checked through the
        PIN lockout class, so this path cannot be used to guess a PIN.
        """
        self._validate_pin(current_pin, "current_pin", "Current PIN")
        self._validate_pin(new_pin, "new_pin", "New PIN")
        if new_pin != confirm_new_pin:
            raise InvalidInputError("New PINs do not match.", field="confirm_new_pin")

        user = self.require_user(user_id)
        if not user.has_transaction_pin:
            raise InvalidInputError("No transaction PIN is set. Use set PIN route.", field="pin")

        self.verify_transaction_pin(user_id, current_pin)

        with self.lock_manager.hold(user_lock_key(user_id)):
            user = self.require_user(user_id)
            user.pin_hash = hash_secret(new_pin)
            user.pin_lock = LockState()
            user.updated_at = self.clock()
            self._save_user(user)

        self.activity_log.log_activity(user_id, ActivityType.PIN_CHANGE, "Transaction PIN changed")
        self.event_dispatcher.publish_event(DomainEvent.PIN_CHANGED, "user", user_id,
                                            {"user_id": user_id})

    def verify_transaction_pin(self, user_id: str, pin: Optional[str]) -> User:
        """
        Authorization gate for every funds movement.

        Raises:
            InvalidInputError: no PIN supplied
            NotFoundError: unknown user
            UnauthorizedError: the user has not set a PIN
            LockedError: the PIN lockout window is active (attempt not counted),
                or this mismatch tripped the lock
            IncorrectCredentialError: mismatch, with attempts remaining
        """
        if pin is None or (isinstance(pin, str) and not pin.strip()):
            raise InvalidInputError("Transaction PIN is required.", field="pin")

        with self.lock_manager.hold(user_lock_key(user_id)):
            user = self.require_user(user_id)
            if not user.has_transaction_pin:
                raise UnauthorizedError("Transaction PIN is not set. Please set it in your profile.")

            self._ensure_unlocked(user, self.pin_tracker, user.pin_lock)

            if verify_secret(str(pin).strip(), user.pin_hash):
                if user.pin_lock.failed_attempts:
                    self.pin_tracker.register_success(user.pin_lock)
                    user.updated_at = self.clock()
                    self._save_user(user)
                return user

            outcome = self.pin_tracker.register_failure(user.pin_lock)
            user.updated_at = self.clock()
            self._save_user(user)

        self._record_pin_failure(user, outcome)
        raise self.pin_tracker.failure_error(outcome)

    def _record_pin_failure(self, user: User, outcome) -> None:
        log_action(logger, "warning", "Incorrect transaction PIN", user_id=user.id,
                   action="pin_failed",
                   extra={"failed_attempts": outcome.failed_attempts, "locked": outcome.locked})
        self.activity_log.log_activity(user.id, ActivityType.PIN_FAILED, "Incorrect transaction PIN",
                                       {"failed_attempts": outcome.failed_attempts})
        data = {
            "user_id": user.id,
            "failed_attempts": outcome.failed_attempts,
            "max_attempts": self.config.pin_max_attempts,
            "lockout_minutes": self.config.pin_lockout_minutes,
        }
        if outcome.locked:
            self.activity_log.log_activity(user.id, ActivityType.PIN_LOCKED, "Transaction PIN locked",
                                           {"lock_until": outcome.lock_until})
            self.event_dispatcher.publish_event(DomainEvent.PIN_LOCKED, "user", user.id, data)
        else:
            self.event_dispatcher.publish_event(DomainEvent.PIN_FAILED, "user", user.id, data)

    # Low-balance alert bookkeeping

    def mark_low_balance_alert_sent(self, user_id: str, when: datetime) -> None:
        with self.lock_manager.hold(user_lock_key(user_id)):
            user = self.require_user(user_id)
            user.last_low_balance_alert_sent = when
            self._save_user(user)

    def clear_low_balance_alert(self, user_id: str) -> None:
        with self.lock_manager.hold(user_lock_key(user_id)):
            user = self.require_user(user_id)
            if user.last_low_balance_alert_sent is not None:
                user.last_low_balance_alert_sent = None
                self._save_user(user)

    # Helpers

    def _ensure_unlocked(self, user: User, tracker: LockoutTracker, state: LockState) -> None:
        """Raise LockedError while locked; persist the reset of an expired lock"""
        try:
            changed = tracker.ensure_unlocked(state)
        except LedgerError:
            log_action(logger, "warning", "Attempt rejected while locked", user_id=user.id,
                       action=f"{tracker.policy.secret_class.value}_locked")
            raise
        if changed:
            user.updated_at = self.clock()
            self._save_user(user)

    def _validate_mobile(self, mobile_number: str) -> None:
        if not MOBILE_PATTERN.match(mobile_number or ""):
            raise InvalidInputError("Mobile number must be 10 digits.", field="mobile_number")

    def _validate_password(self, password: Optional[str], field_name: str,
                           label: str = "Password") -> None:
        if not password or not password.strip():
            raise InvalidInputError(f"{label} is required.", field=field_name)
        if len(password.strip()) < self.config.password_min_length:
            raise InvalidInputError(
                f"{label} must be at least {self.config.password_min_length} characters long.",
                field=field_name,
            )

    @staticmethod
    def _validate_pin(pin: Optional[str], field_name: str, label: str) -> None:
        if not isinstance(pin, str) or not PIN_PATTERN.match(pin.strip()):
            raise InvalidInputError(f"{label} must be 4 to 6 digits.", field=field_name)

    def _save_user(self, user: User) -> None:
        self.storage.save(self.users_table, user.id, self._user_to_dict(user))

    def _user_to_dict(self, user: User) -> Dict[str, Any]:
        """Convert User to dictionary for storage"""
        return {
            'id': user.id,
            'created_at': user.created_at.isoformat(),
            'updated_at': user.updated_at.isoformat(),
            'full_name': user.full_name,
            'email': user.email,
            'mobile_number': user.mobile_number,
            'password_hash': user.password_hash,
            'pin_hash': user.pin_hash,
            'login_lock': user.login_lock.to_dict(),
            'pin_lock': user.pin_lock.to_dict(),
            'reset_otp': user.reset_otp,
            'reset_otp_expires': format_datetime(user.reset_otp_expires),
            'role': user.role,
            'categories': list(user.categories),
            'last_low_balance_alert_sent': format_datetime(user.last_low_balance_alert_sent),
        }

    def _user_from_dict(self, data: Dict[str, Any]) -> User:
        """Convert dictionary to User"""
        return User(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            full_name=data['full_name'],
            email=data['email'],
            mobile_number=data['mobile_number'],
            password_hash=data['password_hash'],
            pin_hash=data.get('pin_hash'),
            login_lock=LockState.from_dict(data.get('login_lock')),
            pin_lock=LockState.from_dict(data.get('pin_lock')),
            reset_otp=data.get('reset_otp'),
            reset_otp_expires=parse_datetime(data.get('reset_otp_expires')),
            role=data.get('role', 'user'),
            categories=list(data.get('categories') or DEFAULT_CATEGORIES),
            last_low_balance_alert_sent=parse_datetime(data.get('last_low_balance_alert_sent')),
        )
