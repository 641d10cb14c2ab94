"""
Test suite for the transaction log

Validates record construction rules, append-only storage and the
idempotency-key lookup used for transfer replays.
"""

import uuid

import pytest

from retail_ledger.errors import ConflictError, InvalidInputError
from retail_ledger.storage import InMemoryStorage
from retail_ledger.transactions import (
    Transaction, TransactionLog, TransactionType, TransactionStatus
)

from conftest import inr


def make_transaction(clock, transaction_type=TransactionType.WITHDRAWAL, amount="100.00",
                     category="Food", **overrides):
    fields = dict(
        id=str(uuid.uuid4()),
        created_at=clock(),
        updated_at=clock(),
        user_id="user-1",
        account_id="acct-1",
        account_number="123456789012",
        transaction_type=transaction_type,
        amount=inr(amount),
        description="Withdrawal of INR 100.00",
        category=category,
        balance_after=inr("900.00"),
    )
    fields.update(overrides)
    return Transaction(**fields)


class TestTransactionRecord:
    """Test construction rules"""

    def test_amount_must_be_positive(self, clock):
        with pytest.raises(InvalidInputError):
            make_transaction(clock, amount="0")

    def test_debits_need_category(self, clock):
        with pytest.raises(InvalidInputError):
            make_transaction(clock, category="  ")
        deposit = make_transaction(clock, TransactionType.DEPOSIT, category=None)
        assert deposit.status == TransactionStatus.COMPLETED

    def test_transfers_need_counterparty(self, clock):
        with pytest.raises(InvalidInputError):
            make_transaction(clock, TransactionType.TRANSFER_OUT)
        transfer = make_transaction(clock, TransactionType.TRANSFER_OUT,
                                    counterparty_user_id="user-2",
                                    counterparty_reference="ravi@example.com")
        assert transfer.is_transfer

    def test_debit_types(self):
        assert TransactionType.WITHDRAWAL.is_debit
        assert TransactionType.TRANSFER_OUT.is_debit
        assert not TransactionType.DEPOSIT.is_debit
        assert not TransactionType.TRANSFER_IN.is_debit


class TestTransactionLog:
    """Test append-only storage"""

    def test_append_and_get(self, clock):
        log = TransactionLog(InMemoryStorage())
        transaction = make_transaction(clock)

        log.append(transaction)

        assert log.get(transaction.id) == transaction
        assert log.get("missing") is None
        assert log.count() == 1

    def test_existing_id_is_conflict(self, clock):
        log = TransactionLog(InMemoryStorage())
        transaction = make_transaction(clock)
        log.append(transaction)

        with pytest.raises(ConflictError):
            log.append(transaction)

    def test_find_for_user_and_account(self, clock):
        log = TransactionLog(InMemoryStorage())
        mine = log.append(make_transaction(clock))
        log.append(make_transaction(clock, account_id="acct-2"))
        log.append(make_transaction(clock, user_id="user-2"))

        assert len(log.find_for_user("user-1")) == 2
        assert [t.id for t in log.find_for_user("user-1", "acct-1")] == [mine.id]

    def test_find_by_idempotency_key(self, clock):
        log = TransactionLog(InMemoryStorage())
        keyed = log.append(make_transaction(clock, idempotency_key="key-1"))
        log.append(make_transaction(clock))

        assert [t.id for t in log.find_by_idempotency_key("user-1", "key-1")] == [keyed.id]
        assert log.find_by_idempotency_key("user-2", "key-1") == []

    def test_find_all_spans_users(self, clock):
        log = TransactionLog(InMemoryStorage())
        ids = {
            log.append(make_transaction(clock)).id,
            log.append(make_transaction(clock, user_id="user-2")).id,
        }

        assert {t.id for t in log.find_all()} == ids
