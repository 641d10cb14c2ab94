"""
Test suite for the ledger engine

Covers deposits, withdrawals and transfers end to end: the PIN gate, amount
validation, account floors, atomic rollback, idempotent transfers, lock
ordering under concurrency and the post-commit low-balance rule.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from retail_ledger.api.auth import BankingSystem
from retail_ledger.errors import (
    BelowMinimumError, IncorrectCredentialError, InsufficientFundsError, InternalError,
    InvalidInputError, InvalidRecipientError, LockedError, NotFoundError, UnauthorizedError
)
from retail_ledger.events import DomainEvent
from retail_ledger.storage import SQLiteStorage
from retail_ledger.transactions import TransactionType

from conftest import PIN, inr, open_savings


def balance_of(system, account):
    return system.account_manager.get_account(account.id).balance


class TestDeposit:
    """Deposits into the caller's own accounts"""

    def test_deposit_credits_account_and_records_transaction(self, system, make_user):
        """Test a deposit updates the balance and appends one record"""
        user, account = make_user()

        result = system.ledger.deposit(user.id, account.account_number, "1500.00", PIN)

        assert result.new_balance == inr("1500.00")
        assert balance_of(system, account) == inr("1500.00")
        tx = result.transaction
        assert tx.transaction_type == TransactionType.DEPOSIT
        assert tx.category == "Deposit"
        assert tx.description == "Deposit of INR 1,500.00"
        assert tx.amount == inr("1500.00")
        assert tx.balance_after == inr("1500.00")
        assert system.transaction_log.count() == 1

    def test_deposit_accepts_integer_amount(self, system, make_user):
        """Test integers are accepted as exact amounts"""
        user, account = make_user()
        result = system.ledger.deposit(user.id, account.account_number, 250, PIN)
        assert result.new_balance == inr("250.00")

    @pytest.mark.parametrize("amount", [10.5, "0", "-5", "10.001", "abc", "", None, True])
    def test_deposit_rejects_invalid_amounts(self, system, make_user, amount):
        """Test floats, non-positive, over-precise and malformed amounts are rejected"""
        user, account = make_user()

        with pytest.raises(InvalidInputError):
            system.ledger.deposit(user.id, account.account_number, amount, PIN)

        assert balance_of(system, account) == inr("0")
        assert system.transaction_log.count() == 0

    def test_deposit_requires_account_number(self, system, make_user):
        """Test a missing account number is invalid input"""
        user, _ = make_user()
        with pytest.raises(InvalidInputError, match="Account number is required."):
            system.ledger.deposit(user.id, "", "100", PIN)

    def test_deposit_into_foreign_account_is_not_found(self, system, make_user):
        """Test an account owned by someone else is reported as absent"""
        user, _ = make_user()
        _, other_account = make_user(full_name="Ravi Kumar")

        with pytest.raises(NotFoundError, match="Account not found or does not belong to user."):
            system.ledger.deposit(user.id, other_account.account_number, "100", PIN)

        assert balance_of(system, other_account) == inr("0")


class TestTransactionPinGate:
    """The transaction PIN authorizes every funds movement"""

    def test_missing_pin_is_invalid_input(self, system, make_user):
        """Test no PIN at all is rejected before anything else"""
        user, account = make_user(balance="100")
        with pytest.raises(InvalidInputError, match="Transaction PIN is required."):
            system.ledger.withdraw(user.id, account.account_number, "10", "Food", None)

    def test_pin_not_set_is_unauthorized(self, system, make_user):
        """Test a user without a PIN cannot move money"""
        user, account = make_user(pin=None)
        with pytest.raises(UnauthorizedError, match="Transaction PIN is not set"):
            system.ledger.deposit(user.id, account.account_number, "10", "1234")

    def test_wrong_pin_reports_attempts_remaining(self, system, make_user):
        """Test each mismatch is counted and persisted even though the operation fails"""
        user, account = make_user(balance="100")

        with pytest.raises(IncorrectCredentialError) as exc_info:
            system.ledger.deposit(user.id, account.account_number, "10", "9999")
        assert exc_info.value.attempts_remaining == 2
        assert "You have 2 attempts remaining." in exc_info.value.message

        with pytest.raises(IncorrectCredentialError) as exc_info:
            system.ledger.deposit(user.id, account.account_number, "10", "9999")
        assert exc_info.value.attempts_remaining == 1

        assert system.identity.get_user(user.id).pin_lock.failed_attempts == 2
        assert balance_of(system, account) == inr("100")

    def test_third_failure_locks_pin(self, system, make_user, clock):
        """Test the third mismatch locks the PIN for the full window"""
        user, account = make_user(balance="100")
        for _ in range(2):
            with pytest.raises(IncorrectCredentialError):
                system.ledger.deposit(user.id, account.account_number, "10", "9999")

        with pytest.raises(LockedError) as exc_info:
            system.ledger.deposit(user.id, account.account_number, "10", "9999")
        assert exc_info.value.minutes_remaining == 15
        assert "locked for 15 minutes" in exc_info.value.message

        # Even the correct PIN is rejected while locked, without counting
        with pytest.raises(LockedError) as locked:
            system.ledger.deposit(user.id, account.account_number, "10", PIN)
        assert locked.value.minutes_remaining == 15
        assert system.identity.get_user(user.id).pin_lock.failed_attempts == 3

        clock.advance(minutes=10, seconds=30)
        with pytest.raises(LockedError) as locked:
            system.ledger.deposit(user.id, account.account_number, "10", PIN)
        assert locked.value.minutes_remaining == 5

    def test_expired_lock_resets_counter(self, system, make_user, clock):
        """Test the first attempt after the window starts from zero failures"""
        user, account = make_user(balance="100")
        for _ in range(2):
            with pytest.raises(IncorrectCredentialError):
                system.ledger.deposit(user.id, account.account_number, "10", "9999")
        with pytest.raises(LockedError):
            system.ledger.deposit(user.id, account.account_number, "10", "9999")

        clock.advance(minutes=15)

        with pytest.raises(IncorrectCredentialError) as exc_info:
            system.ledger.deposit(user.id, account.account_number, "10", "9999")
        assert exc_info.value.attempts_remaining == 2

        result = system.ledger.deposit(user.id, account.account_number, "10", PIN)
        assert result.new_balance == inr("110")
        assert system.identity.get_user(user.id).pin_lock.failed_attempts == 0

    def test_success_resets_failure_counter(self, system, make_user):
        """Test a correct PIN clears earlier failures"""
        user, account = make_user(balance="100")
        with pytest.raises(IncorrectCredentialError):
            system.ledger.deposit(user.id, account.account_number, "10", "9999")

        system.ledger.deposit(user.id, account.account_number, "10", PIN)

        assert system.identity.get_user(user.id).pin_lock.failed_attempts == 0

    def test_pin_lockout_is_independent_of_login_lockout(self, system, make_user):
        """Test a locked login does not block PIN-authorized operations and vice versa"""
        user, account = make_user(balance="100")

        for _ in range(2):
            with pytest.raises(IncorrectCredentialError):
                system.identity.login(user.email, "wrong-password")
        with pytest.raises(LockedError):
            system.identity.login(user.email, "wrong-password")
        with pytest.raises(LockedError):
            system.identity.login(user.email, "secret123")

        result = system.ledger.deposit(user.id, account.account_number, "10", PIN)
        assert result.new_balance == inr("110")

        other, other_account = make_user(full_name="Ravi Kumar", balance="100")
        for _ in range(2):
            with pytest.raises(IncorrectCredentialError):
                system.ledger.deposit(other.id, other_account.account_number, "10", "0000")
        with pytest.raises(LockedError):
            system.ledger.deposit(other.id, other_account.account_number, "10", "0000")

        assert system.identity.login(other.email, "secret123").id == other.id


class TestWithdraw:
    """Withdrawals and account floors"""

    def test_withdraw_debits_account(self, system, make_user):
        """Test a withdrawal records the category and the new balance"""
        user, account = make_user(balance="2000")

        result = system.ledger.withdraw(user.id, account.account_number, "750.50", "Groceries", PIN)

        assert result.new_balance == inr("1249.50")
        assert result.transaction.transaction_type == TransactionType.WITHDRAWAL
        assert result.transaction.category == "Groceries"
        assert result.transaction.description == "Withdrawal of INR 750.50"

    def test_withdraw_requires_category(self, system, make_user):
        """Test a blank category is rejected"""
        user, account = make_user(balance="100")
        with pytest.raises(InvalidInputError, match="Transaction category is required."):
            system.ledger.withdraw(user.id, account.account_number, "10", "  ", PIN)

    def test_zero_balance_account_cannot_go_negative(self, system, make_user):
        """Test insufficiency is rejected and nothing is written"""
        user, account = make_user(balance="100")

        with pytest.raises(InsufficientFundsError, match="Insufficient funds."):
            system.ledger.withdraw(user.id, account.account_number, "100.01", "Food", PIN)

        assert balance_of(system, account) == inr("100")
        assert system.transaction_log.count() == 0

    def test_zero_balance_account_can_be_emptied(self, system, make_user):
        """Test withdrawing the exact balance leaves zero"""
        user, account = make_user(balance="100")
        result = system.ledger.withdraw(user.id, account.account_number, "100", "Food", PIN)
        assert result.new_balance == inr("0")

    def test_savings_floor_is_enforced(self, system, make_user, clock):
        """Test a Savings account cannot drop below its minimum"""
        user, _ = make_user()
        savings = open_savings(system, clock, user.id, "1000.00")

        with pytest.raises(BelowMinimumError) as exc_info:
            system.ledger.withdraw(user.id, savings.account_number, "500.01", "Bills", PIN)
        assert exc_info.value.message == (
            "Cannot withdraw from a Savings account if the balance drops below INR 500.00."
        )
        assert exc_info.value.rule == "savings_minimum_balance"
        assert balance_of(system, savings) == inr("1000.00")

        result = system.ledger.withdraw(user.id, savings.account_number, "500.00", "Bills", PIN)
        assert result.new_balance == inr("500.00")

    def test_savings_floor_checked_before_insufficiency(self, system, make_user, clock):
        """Test an overdraw of a Savings account reports the minimum rule"""
        user, _ = make_user()
        savings = open_savings(system, clock, user.id, "600.00")

        with pytest.raises(BelowMinimumError):
            system.ledger.withdraw(user.id, savings.account_number, "700", "Bills", PIN)


class TestTransfer:
    """Transfers between account holders"""

    def setup_users(self, make_user, sender_balance="5000"):
        sender, sender_account = make_user(full_name="Asha Rao", balance=sender_balance)
        recipient, recipient_account = make_user(full_name="Ravi Kumar")
        return sender, sender_account, recipient, recipient_account

    def test_transfer_by_mobile_number(self, system, make_user):
        """Test a transfer writes two linked records with the same amount and timestamp"""
        sender, sender_account, recipient, recipient_account = self.setup_users(make_user)

        result = system.ledger.transfer(
            sender.id, sender_account.account_number, recipient.mobile_number,
            "1200.00", "Bills", PIN
        )

        assert result.new_sender_balance == inr("3800.00")
        assert balance_of(system, sender_account) == inr("3800.00")
        assert balance_of(system, recipient_account) == inr("1200.00")

        debit, credit = result.debit, result.credit
        assert debit.transaction_type == TransactionType.TRANSFER_OUT
        assert credit.transaction_type == TransactionType.TRANSFER_IN
        assert debit.amount == credit.amount == inr("1200.00")
        assert debit.created_at == credit.created_at
        assert debit.linked_transaction_id == credit.id
        assert credit.linked_transaction_id == debit.id
        assert debit.user_id == sender.id
        assert credit.user_id == recipient.id
        assert debit.category == "Bills"
        assert credit.category == "Incoming Transfer"
        assert debit.description == f"Transfer to Ravi Kumar ({recipient.mobile_number})"
        assert credit.description == f"Transfer from Asha Rao ({sender.mobile_number})"
        assert system.transaction_log.count() == 2

    def test_transfer_by_email(self, system, make_user):
        """Test the recipient can be identified by email"""
        sender, sender_account, recipient, recipient_account = self.setup_users(make_user)

        system.ledger.transfer(
            sender.id, sender_account.account_number, recipient.email.upper(), "100", "Food", PIN
        )

        assert balance_of(system, recipient_account) == inr("100")

    def test_transfer_conserves_total(self, system, make_user):
        """Test money moved between holders is neither created nor destroyed"""
        sender, sender_account, recipient, recipient_account = self.setup_users(make_user)
        before = balance_of(system, sender_account) + balance_of(system, recipient_account)

        system.ledger.transfer(sender.id, sender_account.account_number, recipient.email,
                               "333.33", "Food", PIN)

        after = balance_of(system, sender_account) + balance_of(system, recipient_account)
        assert before == after

    def test_self_transfer_is_rejected(self, system, make_user):
        """Test a holder cannot transfer to themselves"""
        sender, sender_account, _, _ = self.setup_users(make_user)

        with pytest.raises(InvalidRecipientError, match="Cannot transfer funds to yourself."):
            system.ledger.transfer(sender.id, sender_account.account_number, sender.email,
                                   "10", "Food", PIN)

    def test_unknown_recipient(self, system, make_user):
        """Test an unknown identifier is not found"""
        sender, sender_account, _, _ = self.setup_users(make_user)

        with pytest.raises(NotFoundError, match="Recipient not found"):
            system.ledger.transfer(sender.id, sender_account.account_number, "0000000000",
                                   "10", "Food", PIN)

    def test_unknown_source_account(self, system, make_user):
        """Test the source must belong to the sender"""
        sender, _, recipient, recipient_account = self.setup_users(make_user)

        with pytest.raises(NotFoundError, match="Source account not found or does not belong to user."):
            system.ledger.transfer(sender.id, recipient_account.account_number, recipient.email,
                                   "10", "Food", PIN)

    def test_insufficient_funds_leaves_both_sides_untouched(self, system, make_user):
        """Test a rejected transfer writes nothing"""
        sender, sender_account, recipient, recipient_account = self.setup_users(
            make_user, sender_balance="50")

        with pytest.raises(InsufficientFundsError):
            system.ledger.transfer(sender.id, sender_account.account_number, recipient.email,
                                   "50.01", "Food", PIN)

        assert balance_of(system, sender_account) == inr("50")
        assert balance_of(system, recipient_account) == inr("0")
        assert system.transaction_log.count() == 0

    def test_transfer_from_savings_respects_floor(self, system, make_user, clock):
        """Test a Savings source cannot be drained below its minimum"""
        sender, _, recipient, _ = self.setup_users(make_user)
        savings = open_savings(system, clock, sender.id, "800.00")

        with pytest.raises(BelowMinimumError):
            system.ledger.transfer(sender.id, savings.account_number, recipient.email,
                                   "300.01", "Food", PIN)

        system.ledger.transfer(sender.id, savings.account_number, recipient.email, "300", "Food", PIN)
        assert balance_of(system, savings) == inr("500.00")

    def test_transfer_lands_in_default_account(self, system, make_user, clock):
        """Test the oldest account receives funds when none is selected"""
        sender, sender_account, recipient, recipient_account = self.setup_users(make_user)
        savings = open_savings(system, clock, recipient.id, "1000.00")

        system.ledger.transfer(sender.id, sender_account.account_number, recipient.email,
                               "100", "Food", PIN)

        assert balance_of(system, recipient_account) == inr("100")
        assert balance_of(system, savings) == inr("1000.00")

    def test_transfer_to_selected_recipient_account(self, system, make_user, clock):
        """Test an explicitly selected recipient account is credited"""
        sender, sender_account, recipient, recipient_account = self.setup_users(make_user)
        savings = open_savings(system, clock, recipient.id, "1000.00")

        result = system.ledger.transfer(
            sender.id, sender_account.account_number, recipient.email, "100", "Food", PIN,
            recipient_account_number=savings.account_number
        )

        assert result.credit.account_id == savings.id
        assert balance_of(system, savings) == inr("1100.00")
        assert balance_of(system, recipient_account) == inr("0")

    def test_selected_account_must_belong_to_recipient(self, system, make_user, clock):
        """Test a selected account of a third party is rejected"""
        sender, sender_account, recipient, _ = self.setup_users(make_user)
        _, stranger_account = make_user(full_name="Meera Iyer")

        with pytest.raises(NotFoundError, match="Recipient account not found."):
            system.ledger.transfer(
                sender.id, sender_account.account_number, recipient.email, "100", "Food", PIN,
                recipient_account_number=stranger_account.account_number
            )
        assert balance_of(system, stranger_account) == inr("0")

    def test_transfer_requires_category(self, system, make_user):
        """Test a transfer without category is rejected"""
        sender, sender_account, recipient, _ = self.setup_users(make_user)
        with pytest.raises(InvalidInputError, match="Transaction category is required."):
            system.ledger.transfer(sender.id, sender_account.account_number, recipient.email,
                                   "10", "", PIN)


class TestAtomicity:
    """A failure inside the unit of work rolls back every write"""

    def _fail_on_second_append(self, system):
        original = system.transaction_log.append
        calls = []

        def append(transaction):
            calls.append(transaction)
            if len(calls) == 2:
                raise InternalError("disk full")
            return original(transaction)

        system.transaction_log.append = append
        return calls

    def _assert_rolled_back(self, system, make_user):
        sender, sender_account = make_user(full_name="Asha Rao", balance="1000")
        recipient, recipient_account = make_user(full_name="Ravi Kumar")
        calls = self._fail_on_second_append(system)

        with pytest.raises(InternalError):
            system.ledger.transfer(sender.id, sender_account.account_number, recipient.email,
                                   "400", "Food", PIN)

        assert len(calls) == 2
        assert balance_of(system, sender_account) == inr("1000")
        assert balance_of(system, recipient_account) == inr("0")
        assert system.transaction_log.count() == 0

    def test_in_memory_rollback(self, system, make_user):
        """Test in-memory storage undoes both balance changes and the first record"""
        self._assert_rolled_back(system, make_user)

    def test_sqlite_rollback(self, config, clock, email_sink):
        """Test SQLite storage undoes both balance changes and the first record"""
        sqlite_system = BankingSystem(config=config, storage=SQLiteStorage(":memory:"),
                                      email_sink=email_sink, clock=clock)
        sender, sender_account = sqlite_system.identity.register(
            "Asha Rao", "asha@example.com", "9000000001", "secret123")
        sqlite_system.identity.set_transaction_pin(sender.id, PIN, PIN)
        sqlite_system.account_manager.apply_delta(sender_account.id, inr("1000"))
        clock.advance(seconds=1)
        recipient, recipient_account = sqlite_system.identity.register(
            "Ravi Kumar", "ravi@example.com", "9000000002", "secret123")

        self._fail_on_second_append(sqlite_system)
        with pytest.raises(InternalError):
            sqlite_system.ledger.transfer(sender.id, sender_account.account_number,
                                          recipient.email, "400", "Food", PIN)

        assert balance_of(sqlite_system, sender_account) == inr("1000")
        assert balance_of(sqlite_system, recipient_account) == inr("0")
        assert sqlite_system.transaction_log.count() == 0

        # The connection is usable again after the rollback
        del sqlite_system.transaction_log.append
        sqlite_system.ledger.transfer(sender.id, sender_account.account_number,
                                      recipient.email, "400", "Food", PIN)
        assert balance_of(sqlite_system, recipient_account) == inr("400")

    def test_credit_failure_restores_sender(self, system, make_user):
        """Test a failure between the debit and the credit undoes the debit"""
        sender, sender_account = make_user(full_name="Asha Rao", balance="1000")
        recipient, recipient_account = make_user(full_name="Ravi Kumar")
        original = system.account_manager.apply_delta

        def apply_delta(account_id, delta, expected_owner=None):
            if account_id == recipient_account.id:
                raise InternalError("credit side unavailable")
            return original(account_id, delta, expected_owner=expected_owner)

        system.account_manager.apply_delta = apply_delta

        with pytest.raises(InternalError):
            system.ledger.transfer(sender.id, sender_account.account_number, recipient.email,
                                   "400", "Food", PIN)

        assert balance_of(system, sender_account) == inr("1000")
        assert balance_of(system, recipient_account) == inr("0")
        assert system.transaction_log.count() == 0

    def test_reader_never_sees_half_a_transfer(self, system, make_user):
        """Test another thread reads either the old or the new pair of balances"""
        sender, sender_account = make_user(full_name="Asha Rao", balance="1000")
        recipient, recipient_account = make_user(full_name="Ravi Kumar")
        original = system.account_manager.apply_delta
        debited = threading.Event()
        release = threading.Event()

        def apply_delta(account_id, delta, expected_owner=None):
            updated = original(account_id, delta, expected_owner=expected_owner)
            if account_id == sender_account.id:
                debited.set()
                release.wait(5)
            return updated

        system.account_manager.apply_delta = apply_delta
        seen = []

        def read_balances():
            seen.append((balance_of(system, sender_account), balance_of(system, recipient_account)))

        transfer = threading.Thread(target=system.ledger.transfer, args=(
            sender.id, sender_account.account_number, recipient.email, "400", "Food", PIN))
        transfer.start()
        assert debited.wait(5)

        reader = threading.Thread(target=read_balances)
        reader.start()
        reader.join(0.2)
        assert reader.is_alive()

        release.set()
        transfer.join(5)
        reader.join(5)
        assert seen == [(inr("600"), inr("400"))]

    def test_post_commit_failure_keeps_posting(self, system, make_user):
        """Test a failing subscriber cannot undo a committed transfer"""
        sender, sender_account = make_user(full_name="Asha Rao", balance="1000")
        recipient, recipient_account = make_user(full_name="Ravi Kumar")

        def broken_handler(event):
            raise RuntimeError("smtp down")

        system.event_dispatcher.subscribe(DomainEvent.TRANSACTION_CREATED, broken_handler)

        result = system.ledger.transfer(sender.id, sender_account.account_number,
                                        recipient.email, "400", "Food", PIN)

        assert result.new_sender_balance == inr("600")
        assert balance_of(system, recipient_account) == inr("400")


class TestIdempotentTransfer:
    """Repeated transfer requests with the same key"""

    def test_same_key_moves_money_once(self, system, make_user):
        """Test a retried request returns the original records"""
        sender, sender_account = make_user(full_name="Asha Rao", balance="1000")
        recipient, recipient_account = make_user(full_name="Ravi Kumar")

        first = system.ledger.transfer(sender.id, sender_account.account_number, recipient.email,
                                       "250", "Food", PIN, idempotency_key="req-1")
        second = system.ledger.transfer(sender.id, sender_account.account_number, recipient.email,
                                        "250", "Food", PIN, idempotency_key="req-1")

        assert second.debit.id == first.debit.id
        assert second.credit.id == first.credit.id
        assert second.new_sender_balance == inr("750")
        assert balance_of(system, sender_account) == inr("750")
        assert balance_of(system, recipient_account) == inr("250")
        assert system.transaction_log.count() == 2

    def test_different_keys_are_separate_transfers(self, system, make_user):
        """Test distinct keys each move money"""
        sender, sender_account = make_user(full_name="Asha Rao", balance="1000")
        recipient, _ = make_user(full_name="Ravi Kumar")

        for key in ("req-1", "req-2"):
            system.ledger.transfer(sender.id, sender_account.account_number, recipient.email,
                                   "100", "Food", PIN, idempotency_key=key)

        assert balance_of(system, sender_account) == inr("800")

    def test_concurrent_retries_apply_once(self, system, make_user):
        """Test racing requests with one key still produce a single transfer"""
        sender, sender_account = make_user(full_name="Asha Rao", balance="1000")
        recipient, recipient_account = make_user(full_name="Ravi Kumar")

        def send():
            return system.ledger.transfer(sender.id, sender_account.account_number,
                                          recipient.email, "100", "Food", PIN,
                                          idempotency_key="race")

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: send(), range(4)))

        assert len({r.debit.id for r in results}) == 1
        assert balance_of(system, recipient_account) == inr("100")


class TestConcurrency:
    """Same-account mutations serialize; opposite transfers do not deadlock"""

    def test_concurrent_withdrawals_never_overdraw(self, system, make_user):
        """Test racing withdrawals respect the floor"""
        user, account = make_user(balance="1000")
        outcomes = []
        lock = threading.Lock()

        def withdraw():
            try:
                system.ledger.withdraw(user.id, account.account_number, "300", "Food", PIN)
                result = "ok"
            except InsufficientFundsError:
                result = "rejected"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=withdraw) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert outcomes.count("ok") == 3
        assert outcomes.count("rejected") == 2
        assert balance_of(system, account) == inr("100")

    def test_opposite_transfers_complete_and_conserve(self, system, make_user):
        """Test A->B and B->A transfers in parallel finish and keep the total"""
        alice, alice_account = make_user(full_name="Asha Rao", balance="5000")
        bob, bob_account = make_user(full_name="Ravi Kumar", balance="5000")

        def a_to_b(_):
            system.ledger.transfer(alice.id, alice_account.account_number, bob.email,
                                   "10", "Food", PIN)

        def b_to_a(_):
            system.ledger.transfer(bob.id, bob_account.account_number, alice.email,
                                   "15", "Food", PIN)

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(a_to_b, i) for i in range(20)]
            futures += [pool.submit(b_to_a, i) for i in range(20)]
            for f in futures:
                f.result(timeout=30)

        alice_balance = balance_of(system, alice_account)
        bob_balance = balance_of(system, bob_account)
        assert alice_balance == inr("5100")
        assert bob_balance == inr("4900")
        assert alice_balance + bob_balance == inr("10000")
        assert system.transaction_log.count() == 80

    def test_transfer_takes_account_locks_in_sorted_order(self, system, make_user):
        """Test both account keys are requested together so they are acquired sorted"""
        sender, sender_account = make_user(full_name="Asha Rao", balance="1000")
        recipient, recipient_account = make_user(full_name="Ravi Kumar")
        requested = []
        original_hold = system.lock_manager.hold

        def hold(*keys, **kwargs):
            requested.append(keys)
            return original_hold(*keys, **kwargs)

        system.lock_manager.hold = hold
        system.ledger.transfer(sender.id, sender_account.account_number, recipient.email,
                               "10", "Food", PIN)

        pair = [keys for keys in requested if len(keys) == 2]
        assert len(pair) == 1
        assert set(pair[0]) == {f"account:{sender_account.id}", f"account:{recipient_account.id}"}


class TestLowBalanceRule:
    """Post-commit low-balance alerts with cooldown"""

    def capture(self, system):
        events = []
        system.event_dispatcher.subscribe(DomainEvent.LOW_BALANCE_CROSSED, events.append)
        return events

    def test_alert_when_balance_drops_below_threshold(self, system, make_user):
        """Test a withdrawal below the threshold raises one alert"""
        user, account = make_user(balance="2000")
        events = self.capture(system)

        system.ledger.withdraw(user.id, account.account_number, "1500", "Food", PIN)

        assert len(events) == 1
        assert events[0].data["threshold"] == "1000.00"
        assert events[0].data["balance"] == "500.00"
        assert system.identity.get_user(user.id).last_low_balance_alert_sent is not None

    def test_no_repeat_within_cooldown(self, system, make_user, clock):
        """Test further low balances inside 24 hours stay quiet"""
        user, account = make_user(balance="2000")
        events = self.capture(system)

        system.ledger.withdraw(user.id, account.account_number, "1500", "Food", PIN)
        clock.advance(hours=23)
        system.ledger.withdraw(user.id, account.account_number, "100", "Food", PIN)
        assert len(events) == 1

        clock.advance(hours=1)
        system.ledger.withdraw(user.id, account.account_number, "100", "Food", PIN)
        assert len(events) == 2

    def test_recovery_above_threshold_clears_stamp(self, system, make_user):
        """Test going back above the threshold re-arms the alert"""
        user, account = make_user(balance="2000")
        events = self.capture(system)

        system.ledger.withdraw(user.id, account.account_number, "1500", "Food", PIN)
        system.ledger.deposit(user.id, account.account_number, "1000", PIN)
        assert system.identity.get_user(user.id).last_low_balance_alert_sent is None

        system.ledger.withdraw(user.id, account.account_number, "1000", "Food", PIN)
        assert len(events) == 2

    def test_balance_at_threshold_is_not_low(self, system, make_user):
        """Test a balance equal to the threshold does not alert"""
        user, account = make_user(balance="2000")
        events = self.capture(system)

        system.ledger.withdraw(user.id, account.account_number, "1000", "Food", PIN)

        assert events == []

    def test_disabled_alert_is_silent(self, system, make_user):
        """Test the rule respects the user's setting"""
        user, account = make_user(balance="2000")
        system.notifications.update_settings(user.id, low_balance_alert=False)
        events = self.capture(system)

        system.ledger.withdraw(user.id, account.account_number, "1500", "Food", PIN)

        assert events == []

    def test_custom_threshold(self, system, make_user):
        """Test the user's own threshold is used"""
        user, account = make_user(balance="2000")
        system.notifications.update_settings(user.id, low_balance_threshold="100")
        events = self.capture(system)

        system.ledger.withdraw(user.id, account.account_number, "1500", "Food", PIN)
        assert events == []

        system.ledger.withdraw(user.id, account.account_number, "450", "Food", PIN)
        assert len(events) == 1

    def test_transfer_evaluates_sender_only(self, system, make_user):
        """Test a transfer checks the sender's account"""
        sender, sender_account = make_user(full_name="Asha Rao", balance="1500")
        recipient, _ = make_user(full_name="Ravi Kumar")
        events = self.capture(system)

        system.ledger.transfer(sender.id, sender_account.account_number, recipient.email,
                               "1000", "Food", PIN)

        assert [e.user_id for e in events] == [sender.id]
        assert Decimal(events[0].data["balance"]) == Decimal("500.00")
