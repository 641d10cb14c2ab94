"""
Lockout Tracker Module

A small state machine guarding one class of secret (login password or
transaction PIN). Each user carries one LockState per secret class and the
two never influence each other.

    Unlocked(n) --failure, n+1 < max--> Unlocked(n+1)
    Unlocked(n) --failure, n+1 >= max--> Locked(now + window)
    Unlocked(n) --success--> Unlocked(0)
    Locked(t)   --attempt, now < t--> Locked(t)   (attempt rejected, not counted)
    Locked(t)   --attempt, now >= t--> Unlocked(0), then the attempt is evaluated
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from .credentials import generate_passcode
from .errors import IncorrectCredentialError, LockedError
from .logging_config import get_logger
from .storage import Clock, utc_now, parse_datetime, format_datetime


logger = get_logger("lockout")


class SecretClass(Enum):
    """Independent classes of secrets, each with its own lockout state"""
    LOGIN = "login"
    TRANSACTION_PIN = "transaction_pin"


@dataclass
class LockState:
    """Per-user, per-secret-class lockout state"""
    failed_attempts: int = 0
    lock_until: Optional[datetime] = None
    recovery_code: Optional[str] = None
    recovery_code_expires: Optional[datetime] = None

    def reset(self) -> None:
        self.failed_attempts = 0
        self.lock_until = None

    def clear_recovery_code(self) -> None:
        self.recovery_code = None
        self.recovery_code_expires = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'failed_attempts': self.failed_attempts,
            'lock_until': format_datetime(self.lock_until),
            'recovery_code': self.recovery_code,
            'recovery_code_expires': format_datetime(self.recovery_code_expires),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'LockState':
        if not data:
            return cls()
        return cls(
            failed_attempts=int(data.get('failed_attempts', 0)),
            lock_until=parse_datetime(data.get('lock_until')),
            recovery_code=data.get('recovery_code'),
            recovery_code_expires=parse_datetime(data.get('recovery_code_expires')),
        )


@dataclass(frozen=True)
class LockoutPolicy:
    """Thresholds for one secret class"""
    secret_class: SecretClass
    max_attempts: int
    window: timedelta
    issues_recovery_code: bool = False
    recovery_code_ttl: Optional[timedelta] = None

    @classmethod
    def for_login(cls, config) -> 'LockoutPolicy':
        return cls(
            secret_class=SecretClass.LOGIN,
            max_attempts=config.login_max_attempts,
            window=timedelta(minutes=config.login_lockout_minutes),
            issues_recovery_code=True,
            recovery_code_ttl=timedelta(minutes=config.login_otp_expiry_minutes),
        )

    @classmethod
    def for_transaction_pin(cls, config) -> 'LockoutPolicy':
        return cls(
            secret_class=SecretClass.TRANSACTION_PIN,
            max_attempts=config.pin_max_attempts,
            window=timedelta(minutes=config.pin_lockout_minutes),
        )


@dataclass(frozen=True)
class LockoutOutcome:
    """Result of registering a failed attempt"""
    failed_attempts: int
    attempts_remaining: int
    locked: bool
    lock_until: Optional[datetime] = None
    recovery_code: Optional[str] = None


class LockoutTracker:
    """
    Applies a LockoutPolicy to LockState records.

    The tracker only mutates the state object it is given; persisting the
    state is the caller's job and must happen before any error propagates.
    """

    def __init__(self, policy: LockoutPolicy, clock: Clock = utc_now):
        self.policy = policy
        self.clock = clock

    def is_locked(self, state: LockState) -> bool:
        return state.lock_until is not None and self.clock() < state.lock_until

    def remaining_minutes(self, state: LockState) -> int:
        """Whole minutes left on an active lock, rounded up"""
        if not self.is_locked(state):
            return 0
        remaining = (state.lock_until - self.clock()).total_seconds()
        return max(1, math.ceil(remaining / 60))

    def ensure_unlocked(self, state: LockState) -> bool:
        """
        Reject the attempt while locked, without counting it.

        An expired lock is reset to Unlocked(0) before the attempt is
        evaluated. Returns True when the state was changed and needs saving.
        """
        if state.lock_until is None:
            return False
        if self.is_locked(state):
            minutes = self.remaining_minutes(state)
            raise LockedError(
                self.locked_message(minutes),
                minutes_remaining=minutes,
                secret_class=self.policy.secret_class.value,
            )
        state.reset()
        logger.debug(f"Expired {self.policy.secret_class.value} lock cleared")
        return True

    def locked_message(self, minutes: int) -> str:
        if self.policy.secret_class == SecretClass.LOGIN:
            return (f"Account locked due to too many failed attempts. Please try again in "
                    f"{minutes} minutes, or login with OTP.")
        return (f"Transaction PIN is locked due to too many failed attempts. "
                f"Please try again in {minutes} minutes.")

    def register_failure(self, state: LockState) -> LockoutOutcome:
        """Count one failed attempt, locking once the threshold is reached"""
        now = self.clock()
        state.failed_attempts += 1

        if state.failed_attempts < self.policy.max_attempts:
            return LockoutOutcome(
                failed_attempts=state.failed_attempts,
                attempts_remaining=self.policy.max_attempts - state.failed_attempts,
                locked=False,
            )

        state.lock_until = now + self.policy.window
        recovery_code = None
        if self.policy.issues_recovery_code:
            recovery_code = generate_passcode()
            state.recovery_code = recovery_code
            state.recovery_code_expires = now + self.policy.recovery_code_ttl

        logger.warning(
            f"{self.policy.secret_class.value} locked after {state.failed_attempts} failed attempts"
        )
        return LockoutOutcome(
            failed_attempts=state.failed_attempts,
            attempts_remaining=0,
            locked=True,
            lock_until=state.lock_until,
            recovery_code=recovery_code,
        )

    def register_success(self, state: LockState) -> None:
        """Unlocked(0); any outstanding recovery code is spent"""
        state.reset()
        state.clear_recovery_code()

    def verify(self, state: LockState, check: Callable[[], bool]) -> LockoutOutcome:
        """
        Run one guarded verification attempt against state.

        Raises LockedError while locked or when this mismatch trips the lock,
        and IncorrectCredentialError on any other mismatch; the state has
        already been updated when either is raised.
        """
        self.ensure_unlocked(state)
        if check():
            self.register_success(state)
            return LockoutOutcome(failed_attempts=0,
                                  attempts_remaining=self.policy.max_attempts, locked=False)

        outcome = self.register_failure(state)
        raise self.failure_error(outcome)

    def failure_error(self, outcome: LockoutOutcome) -> Union[IncorrectCredentialError, LockedError]:
        """
        The error a caller should raise for a failed attempt.

        The attempt that trips the lock reports Locked with the full window
        remaining; earlier misses report IncorrectCredential.
        """
        window = math.ceil(self.policy.window.total_seconds() / 60)
        if self.policy.secret_class == SecretClass.LOGIN:
            if outcome.locked:
                message = ("Too many failed login attempts. Your account has been temporarily "
                           "locked. Please check your email for an OTP to log in securely.")
            else:
                message = (f"Invalid email or password. You have {outcome.attempts_remaining} "
                           f"attempts remaining before lockout.")
        elif outcome.locked:
            message = (f"Incorrect Transaction PIN. Your PIN is now locked for {window} minutes "
                       f"due to too many failed attempts.")
        else:
            message = (f"Incorrect Transaction PIN. You have {outcome.attempts_remaining} "
                       f"attempts remaining.")
        if outcome.locked:
            return LockedError(
                message,
                minutes_remaining=window,
                secret_class=self.policy.secret_class.value,
                attempts_remaining=0,
            )
        return IncorrectCredentialError(
            message,
            attempts_remaining=outcome.attempts_remaining,
            secret_class=self.policy.secret_class.value,
        )
