"""
Account Management Module

Owns account records and is the only component that changes a balance.
Every balance change goes through apply_delta, which re-reads the account
under its key lock and enforces the floor of the account's type.
"""

from datetime import datetime
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
import secrets
import uuid

from .config import LedgerConfig, get_config
from .currency import Money, Currency, money_from_storage
from .errors import (
    BelowMinimumError, InsufficientFundsError, InternalError, InvalidInputError, NotFoundError
)
from .events import EventDispatcher, DomainEvent, create_account_event
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, KeyedLockManager, Clock, utc_now


logger = get_logger("accounts")


class AccountType(Enum):
    """Account product types"""
    ZERO_BALANCE = "Zero Balance"
    SAVINGS = "Savings"


@dataclass
class Account(StorageRecord):
    """
    Customer deposit account. The balance never drops below the floor of
    its account type.
    """
    user_id: str
    account_number: str
    account_type: AccountType
    balance: Money

    @property
    def currency(self) -> Currency:
        return self.balance.currency


def account_lock_key(account_id: str) -> str:
    return f"account:{account_id}"


class AccountManager:
    """
    Manages account lifecycle and balance mutation
    """

    ACCOUNT_NUMBER_LENGTH = 12

    def __init__(
        self,
        storage: StorageInterface,
        lock_manager: KeyedLockManager,
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LedgerConfig] = None,
        clock: Clock = utc_now
    ):
        self.storage = storage
        self.lock_manager = lock_manager
        self.config = config or get_config()
        self.clock = clock
        self.currency = Currency[self.config.currency]
        self.accounts_table = "accounts"
        self._event_dispatcher = event_dispatcher

    def floor_for(self, account_type: AccountType) -> Money:
        """Lowest balance an account of this type may hold"""
        if account_type == AccountType.SAVINGS:
            return Money(self.config.savings_floor, self.currency)
        return Money.zero(self.currency)

    def create_account(
        self,
        user_id: str,
        account_type: AccountType = AccountType.ZERO_BALANCE,
        initial_balance: Optional[Money] = None,
        publish_event: bool = True
    ) -> Account:
        """
        Open a new account for a user

        Args:
            user_id: Owner of the account
            account_type: Product type, which determines the balance floor
            initial_balance: Opening balance; must satisfy the floor
            publish_event: False when the caller publishes after its own commit

        Returns:
            Created Account object
        """
        balance = initial_balance if initial_balance is not None else Money.zero(self.currency)
        if balance.currency != self.currency:
            raise InvalidInputError(
                f"Opening balance must be in {self.currency.code}", field="initial_balance"
            )
        floor = self.floor_for(account_type)
        if balance < floor:
            raise BelowMinimumError(
                f"A {account_type.value} account must be opened with at least "
                f"{floor.to_string()}.",
                minimum=str(floor),
            )

        now = self.clock()
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_number=self._generate_account_number(),
            account_type=account_type,
            balance=balance,
        )
        self._save_account(account)

        log_action(logger, "info", f"Account {account.account_number} opened",
                   user_id=user_id, action="account_created", resource=account.id,
                   extra={"account_type": account_type.value, "balance": str(balance)})
        if publish_event and self._event_dispatcher:
            self._event_dispatcher.publish(create_account_event(DomainEvent.ACCOUNT_CREATED, account))
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        account_dict = self.storage.load(self.accounts_table, account_id)
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number, regardless of owner"""
        accounts = self.storage.find(self.accounts_table, {"account_number": account_number})
        if accounts:
            return self._account_from_dict(accounts[0])
        return None

    def find_by_account_number(self, user_id: str, account_number: str) -> Account:
        """Owner-scoped lookup; an account belonging to someone else is reported as absent"""
        accounts = self.storage.find(
            self.accounts_table, {"account_number": account_number, "user_id": user_id}
        )
        if not accounts:
            raise NotFoundError("Account not found or does not belong to user.", entity="account")
        return self._account_from_dict(accounts[0])

    def find_by_owner(self, user_id: str) -> List[Account]:
        """All accounts of a user, oldest first"""
        accounts = [
            self._account_from_dict(data)
            for data in self.storage.find(self.accounts_table, {"user_id": user_id})
        ]
        accounts.sort(key=lambda a: (a.created_at, a.account_number))
        return accounts

    def get_default_account(self, user_id: str) -> Account:
        """The account a transfer lands in when no account is selected"""
        accounts = self.find_by_owner(user_id)
        if not accounts:
            raise NotFoundError("Recipient account not found.", entity="account")
        return accounts[0]

    def check_debit(self, account: Account, amount: Money) -> None:
        """
        Raise if debiting amount would violate the account's floor.
        The Savings minimum is checked before plain insufficiency.
        """
        new_balance = account.balance - amount
        if account.account_type == AccountType.SAVINGS:
            floor = self.floor_for(account.account_type)
            if new_balance < floor:
                raise BelowMinimumError(
                    f"Cannot withdraw from a Savings account if the balance drops below "
                    f"{floor.to_string()}.",
                    minimum=str(floor),
                    balance=str(account.balance),
                    requested=str(amount),
                )
        if new_balance.is_negative():
            raise InsufficientFundsError(
                "Insufficient funds.",
                balance=str(account.balance),
                requested=str(amount),
            )

    def apply_delta(self, account_id: str, delta: Money,
                    expected_owner: Optional[str] = None) -> Account:
        """
        Add a signed amount to an account balance.

        Holds the account's key lock, re-reads the current balance and
        rejects the change if the result would break the floor. A rejected
        change leaves the stored account untouched.
        """
        with self.lock_manager.hold(account_lock_key(account_id)):
            account = self.get_account(account_id)
            if account is None or (expected_owner is not None and account.user_id != expected_owner):
                raise NotFoundError("Account not found or does not belong to user.", entity="account")
            if delta.currency != account.currency:
                raise InvalidInputError(
                    f"Amount currency {delta.currency.code} does not match account currency "
                    f"{account.currency.code}", field="amount"
                )

            if delta.is_negative():
                self.check_debit(account, -delta)

            account.balance = account.balance + delta
            account.updated_at = self.clock()
            self._save_account(account)

            logger.debug(f"Account {account.account_number} balance changed by {delta}")
            return account

    def _generate_account_number(self) -> str:
        """Unique 12-digit account number"""
        for _ in range(20):
            number = str(secrets.randbelow(9 * 10 ** (self.ACCOUNT_NUMBER_LENGTH - 1))
                         + 10 ** (self.ACCOUNT_NUMBER_LENGTH - 1))
            if not self.storage.find(self.accounts_table, {"account_number": number}):
                return number
        raise InternalError("Could not allocate a unique account number")

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        return {
            'id': account.id,
            'created_at': account.created_at.isoformat(),
            'updated_at': account.updated_at.isoformat(),
            'user_id': account.user_id,
            'account_number': account.account_number,
            'account_type': account.account_type.value,
            'balance': str(account.balance.amount),
            'currency': account.balance.currency.code,
        }

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            account_number=data['account_number'],
            account_type=AccountType(data['account_type']),
            balance=money_from_storage(data['balance'], data['currency']),
        )


def total_balance(accounts: List[Account], currency: Currency) -> Money:
    """Sum of balances, used for conservation checks and dashboards"""
    total = Money(Decimal(0), currency)
    for account in accounts:
        total = total + account.balance
    return total
