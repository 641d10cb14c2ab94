"""
Shared fixtures for the retail ledger test suite
"""

import itertools
from datetime import datetime, timezone, timedelta
from decimal import Decimal

import pytest

from retail_ledger import credentials
from retail_ledger.accounts import AccountType
from retail_ledger.api.auth import BankingSystem
from retail_ledger.config import LedgerConfig
from retail_ledger.currency import Money, Currency
from retail_ledger.notifications import LogEmailSink
from retail_ledger.storage import InMemoryStorage


PASSWORD = "secret123"
PIN = "1234"


class FakeClock:
    """Settable clock; returns the same instant until advanced"""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 15, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    """Keep scrypt cheap in tests"""
    monkeypatch.setattr(credentials, "SCRYPT_COST", 16)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return LedgerConfig(database_url="memory://", currency="INR")


@pytest.fixture
def email_sink():
    return LogEmailSink()


@pytest.fixture
def system(config, clock, email_sink):
    return BankingSystem(config=config, storage=InMemoryStorage(), email_sink=email_sink, clock=clock)


@pytest.fixture
def make_user(system, clock):
    """
    Factory registering an account holder with a transaction PIN and an
    optional seeded balance on the default Zero Balance account.
    """
    counter = itertools.count(1)

    def factory(full_name="Asha Rao", balance=None, pin=PIN, email=None, mobile_number=None):
        n = next(counter)
        user, account = system.identity.register(
            full_name,
            email or f"user{n}@example.com",
            mobile_number or f"98765{n:05d}",
            PASSWORD,
        )
        if pin:
            system.identity.set_transaction_pin(user.id, pin, pin)
        if balance is not None:
            seed_balance(system, account.id, balance)
        clock.advance(seconds=1)
        return system.identity.get_user(user.id), system.account_manager.get_account(account.id)

    return factory


def inr(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.INR)


def seed_balance(system, account_id, amount) -> None:
    """Set an opening balance without writing a transaction record"""
    system.account_manager.apply_delta(account_id, inr(amount))


def open_savings(system, clock, user_id, amount="1000.00"):
    clock.advance(seconds=1)
    return system.account_manager.create_account(user_id, AccountType.SAVINGS, inr(amount))
