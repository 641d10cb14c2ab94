"""
Transaction Log Module

Append-only record of completed postings. A transfer is stored as two
linked records (transferOut on the sender, transferIn on the recipient)
carrying the same amount and timestamp. The log exposes no update or delete.
"""

from datetime import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from .currency import Money, money_from_storage
from .errors import ConflictError, InvalidInputError
from .storage import StorageInterface, StorageRecord


class TransactionType(Enum):
    """Types of postings"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER_IN = "transferIn"
    TRANSFER_OUT = "transferOut"

    @property
    def is_debit(self) -> bool:
        return self in (TransactionType.WITHDRAWAL, TransactionType.TRANSFER_OUT)


class TransactionStatus(Enum):
    COMPLETED = "completed"


DEPOSIT_CATEGORY = "Deposit"
INCOMING_TRANSFER_CATEGORY = "Incoming Transfer"


@dataclass
class Transaction(StorageRecord):
    """
    A completed posting against one account
    """
    user_id: str
    account_id: str
    account_number: str
    transaction_type: TransactionType
    amount: Money
    description: str
    category: Optional[str] = None
    counterparty_user_id: Optional[str] = None
    counterparty_reference: Optional[str] = None
    linked_transaction_id: Optional[str] = None
    balance_after: Optional[Money] = None
    status: TransactionStatus = TransactionStatus.COMPLETED
    idempotency_key: Optional[str] = None

    def __post_init__(self):
        if not self.amount.is_positive():
            raise InvalidInputError("Transaction amount must be positive", field="amount")

        if self.transaction_type.is_debit and not (self.category and self.category.strip()):
            raise InvalidInputError("Transaction category is required.", field="category")

        if self.transaction_type in (TransactionType.TRANSFER_IN, TransactionType.TRANSFER_OUT):
            if not self.counterparty_user_id or not self.counterparty_reference:
                raise InvalidInputError("Transfer records need a counterparty", field="counterparty")

    @property
    def is_transfer(self) -> bool:
        return self.transaction_type in (TransactionType.TRANSFER_IN, TransactionType.TRANSFER_OUT)


class TransactionLog:
    """
    Storage of postings; records are written once and never changed
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.transactions_table = "transactions"

    def append(self, transaction: Transaction) -> Transaction:
        """Store a new record; an existing id is a conflict"""
        if self.storage.exists(self.transactions_table, transaction.id):
            raise ConflictError(f"Transaction {transaction.id} already recorded")
        self.storage.save(
            self.transactions_table, transaction.id, self._transaction_to_dict(transaction)
        )
        return transaction

    def get(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.transactions_table, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None

    def find_for_user(self, user_id: str, account_id: Optional[str] = None) -> List[Transaction]:
        """All records owned by a user, optionally limited to one account (unsorted)"""
        filters = {"user_id": user_id}
        if account_id is not None:
            filters["account_id"] = account_id
        return [
            self._transaction_from_dict(data)
            for data in self.storage.find(self.transactions_table, filters)
        ]

    def find_by_idempotency_key(self, user_id: str, idempotency_key: str) -> List[Transaction]:
        return [
            self._transaction_from_dict(data)
            for data in self.storage.find(
                self.transactions_table,
                {"user_id": user_id, "idempotency_key": idempotency_key}
            )
        ]

    def find_all(self) -> List[Transaction]:
        """Every record across all users (unsorted)"""
        return [
            self._transaction_from_dict(data)
            for data in self.storage.load_all(self.transactions_table)
        ]

    def count(self) -> int:
        return self.storage.count(self.transactions_table)

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        """Convert Transaction to dictionary for storage"""
        return {
            'id': transaction.id,
            'created_at': transaction.created_at.isoformat(),
            'updated_at': transaction.updated_at.isoformat(),
            'user_id': transaction.user_id,
            'account_id': transaction.account_id,
            'account_number': transaction.account_number,
            'transaction_type': transaction.transaction_type.value,
            'amount': str(transaction.amount.amount),
            'currency': transaction.amount.currency.code,
            'description': transaction.description,
            'category': transaction.category,
            'counterparty_user_id': transaction.counterparty_user_id,
            'counterparty_reference': transaction.counterparty_reference,
            'linked_transaction_id': transaction.linked_transaction_id,
            'balance_after': (str(transaction.balance_after.amount)
                              if transaction.balance_after is not None else None),
            'status': transaction.status.value,
            'idempotency_key': transaction.idempotency_key,
        }

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            account_id=data['account_id'],
            account_number=data['account_number'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=money_from_storage(data['amount'], data['currency']),
            description=data['description'],
            category=data.get('category'),
            counterparty_user_id=data.get('counterparty_user_id'),
            counterparty_reference=data.get('counterparty_reference'),
            linked_transaction_id=data.get('linked_transaction_id'),
            balance_after=(money_from_storage(data['balance_after'], data['currency'])
                           if data.get('balance_after') is not None else None),
            status=TransactionStatus(data.get('status', 'completed')),
            idempotency_key=data.get('idempotency_key'),
        )
