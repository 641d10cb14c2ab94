"""
Ledger Engine Module

Deposits, withdrawals and transfers. Each operation runs the same pipeline:

    authorize (transaction PIN) -> validate -> mutate atomically -> record -> notify

Balance changes and transaction records are written inside one storage
unit of work while the affected account locks are held, so a transfer is
either fully visible (both balances and both linked records) or not at all.
Notifications, low-balance alerts and activity entries happen after commit
and can never undo a posting.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional

from .accounts import Account, AccountManager, account_lock_key
from .audit import ActivityLog, ActivityType
from .config import LedgerConfig, get_config
from .currency import Currency, Money, parse_amount
from .errors import InvalidInputError, InvalidRecipientError, NotFoundError
from .events import (
    DomainEvent, EventDispatcher, create_account_event, create_transaction_event
)
from .identity import IdentityManager, User
from .logging_config import get_logger, log_action
from .notifications import NotificationSettingsStore
from .storage import StorageInterface, KeyedLockManager, Clock, utc_now
from .transactions import (
    Transaction, TransactionLog, TransactionType,
    DEPOSIT_CATEGORY, INCOMING_TRANSFER_CATEGORY
)


logger = get_logger("ledger")


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a deposit or withdrawal"""
    new_balance: Money
    transaction: Transaction


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a transfer: the sender's balance and both linked records"""
    new_sender_balance: Money
    debit: Transaction
    credit: Transaction


def _require_text(value: Any, message: str, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(message, field=field)
    return value.strip()


class LedgerEngine:
    """
    Funds movement between customer accounts
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        transactions: TransactionLog,
        identity: IdentityManager,
        lock_manager: KeyedLockManager,
        activity_log: ActivityLog,
        settings_store: NotificationSettingsStore,
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LedgerConfig] = None,
        clock: Clock = utc_now
    ):
        self.storage = storage
        self.accounts = accounts
        self.transactions = transactions
        self.identity = identity
        self.lock_manager = lock_manager
        self.activity_log = activity_log
        self.settings_store = settings_store
        self.event_dispatcher = event_dispatcher or EventDispatcher()
        self.config = config or get_config()
        self.clock = clock
        self.currency = Currency[self.config.currency]

    def deposit(self, user_id: str, account_number: str, amount: Any,
                pin: Optional[str]) -> LedgerResult:
        """
        Credit one of the caller's own accounts.

        Args:
            user_id: Authenticated account holder
            account_number: Destination account, must belong to the caller
            amount: Positive decimal amount (string, int or Decimal)
            pin: Transaction PIN

        Returns:
            LedgerResult with the new balance and the deposit record
        """
        user = self.identity.verify_transaction_pin(user_id, pin)
        money = parse_amount(amount, self.currency)
        account_number = _require_text(account_number, "Account number is required.", "account_number")
        account = self.accounts.find_by_account_number(user_id, account_number)

        with self.lock_manager.hold(account_lock_key(account.id)):
            with self.storage.atomic():
                updated = self.accounts.apply_delta(account.id, money, expected_owner=user_id)
                transaction = self.transactions.append(self._new_transaction(
                    account=updated,
                    transaction_type=TransactionType.DEPOSIT,
                    amount=money,
                    description=f"Deposit of {money.to_string()}",
                    category=DEPOSIT_CATEGORY,
                ))

        log_action(logger, "info", f"Deposit of {money} posted", user_id=user_id, action="deposit",
                   resource=transaction.id,
                   extra={"account_number": updated.account_number, "balance": str(updated.balance)})
        self._after_commit(user, updated, [(transaction, updated, None)],
                           ActivityType.DEPOSIT, {"amount": money.amount, "category": DEPOSIT_CATEGORY})
        return LedgerResult(new_balance=updated.balance, transaction=transaction)

    def withdraw(self, user_id: str, account_number: str, amount: Any, category: str,
                 pin: Optional[str]) -> LedgerResult:
        """
        Debit one of the caller's own accounts, honoring the account type floor.
        """
        user = self.identity.verify_transaction_pin(user_id, pin)
        money = parse_amount(amount, self.currency)
        account_number = _require_text(account_number, "Account number is required.", "account_number")
        category = _require_text(category, "Transaction category is required.", "category")
        account = self.accounts.find_by_account_number(user_id, account_number)
        self.accounts.check_debit(account, money)

        with self.lock_manager.hold(account_lock_key(account.id)):
            with self.storage.atomic():
                updated = self.accounts.apply_delta(account.id, -money, expected_owner=user_id)
                transaction = self.transactions.append(self._new_transaction(
                    account=updated,
                    transaction_type=TransactionType.WITHDRAWAL,
                    amount=money,
                    description=f"Withdrawal of {money.to_string()}",
                    category=category,
                ))

        log_action(logger, "info", f"Withdrawal of {money} posted", user_id=user_id,
                   action="withdrawal", resource=transaction.id,
                   extra={"account_number": updated.account_number, "balance": str(updated.balance)})
        self._after_commit(user, updated, [(transaction, updated, None)],
                           ActivityType.WITHDRAWAL, {"amount": money.amount, "category": category})
        return LedgerResult(new_balance=updated.balance, transaction=transaction)

    def transfer(
        self,
        user_id: str,
        source_account_number: str,
        recipient_identifier: str,
        amount: Any,
        category: str,
        pin: Optional[str],
        recipient_account_number: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> TransferResult:
        """
        Move funds from one of the caller's accounts to another account holder.

        The recipient is found by mobile number or email. Funds land in the
        explicitly selected recipient account (which must belong to the
        recipient) or else in the recipient's default account. Repeating a
        request with the same idempotency key returns the original result.
        """
        sender = self.identity.verify_transaction_pin(user_id, pin)
        money = parse_amount(amount, self.currency)
        source_account_number = _require_text(
            source_account_number, "Source account number is required.", "account_number")
        recipient_identifier = _require_text(
            recipient_identifier, "Recipient mobile number or email is required.", "recipient")
        category = _require_text(category, "Transaction category is required.", "category")

        try:
            source = self.accounts.find_by_account_number(user_id, source_account_number)
        except NotFoundError:
            raise NotFoundError("Source account not found or does not belong to user.",
                                entity="account")

        recipient = self.identity.find_user_by_identifier(recipient_identifier)
        if recipient is None:
            raise NotFoundError("Recipient not found with provided mobile number or email.",
                                entity="recipient")
        if recipient.id == sender.id:
            raise InvalidRecipientError("Cannot transfer funds to yourself.", field="recipient")

        if recipient_account_number:
            try:
                destination = self.accounts.find_by_account_number(
                    recipient.id, recipient_account_number.strip())
            except NotFoundError:
                raise NotFoundError("Recipient account not found.", entity="account")
        else:
            destination = self.accounts.get_default_account(recipient.id)

        if idempotency_key:
            replay = self._replay_transfer(user_id, idempotency_key)
            if replay is not None:
                return replay

        self.accounts.check_debit(source, money)

        sender_reference = sender.mobile_number or sender.email
        with self.lock_manager.hold(account_lock_key(source.id), account_lock_key(destination.id)):
            if idempotency_key:
                replay = self._replay_transfer(user_id, idempotency_key)
                if replay is not None:
                    return replay

            with self.storage.atomic():
                debited = self.accounts.apply_delta(source.id, -money, expected_owner=user_id)
                credited = self.accounts.apply_delta(destination.id, money,
                                                     expected_owner=recipient.id)

                now = self.clock()
                debit_id, credit_id = str(uuid.uuid4()), str(uuid.uuid4())
                debit = self.transactions.append(self._new_transaction(
                    account=debited,
                    transaction_type=TransactionType.TRANSFER_OUT,
                    amount=money,
                    description=f"Transfer to {recipient.full_name} ({recipient_identifier})",
                    category=category,
                    counterparty_user_id=recipient.id,
                    counterparty_reference=recipient_identifier,
                    transaction_id=debit_id,
                    linked_transaction_id=credit_id,
                    idempotency_key=idempotency_key,
                    created_at=now,
                ))
                credit = self.transactions.append(self._new_transaction(
                    account=credited,
                    transaction_type=TransactionType.TRANSFER_IN,
                    amount=money,
                    description=f"Transfer from {sender.full_name} ({sender_reference})",
                    category=INCOMING_TRANSFER_CATEGORY,
                    counterparty_user_id=sender.id,
                    counterparty_reference=sender_reference,
                    transaction_id=credit_id,
                    linked_transaction_id=debit_id,
                    created_at=now,
                ))

        log_action(logger, "info", f"Transfer of {money} posted", user_id=user_id,
                   action="transfer", resource=debit.id,
                   extra={"from_account": debited.account_number,
                          "to_account": credited.account_number,
                          "recipient_id": recipient.id})
        self._after_commit(
            sender, debited,
            [(debit, debited, recipient.full_name), (credit, credited, sender.full_name)],
            ActivityType.TRANSFER_OUT,
            {"amount": money.amount, "category": category, "recipient_id": recipient.id,
             "from_account": debited.account_number},
        )
        return TransferResult(new_sender_balance=debited.balance, debit=debit, credit=credit)

    def _replay_transfer(self, user_id: str, idempotency_key: str) -> Optional[TransferResult]:
        """The stored result of an earlier transfer with the same key, if any"""
        for record in self.transactions.find_by_idempotency_key(user_id, idempotency_key):
            if record.transaction_type != TransactionType.TRANSFER_OUT:
                continue
            credit = self.transactions.get(record.linked_transaction_id)
            logger.info(f"Transfer replayed for idempotency key {idempotency_key}")
            return TransferResult(new_sender_balance=record.balance_after, debit=record, credit=credit)
        return None

    def _new_transaction(self, account: Account, transaction_type: TransactionType, amount: Money,
                         description: str, category: Optional[str] = None,
                         counterparty_user_id: Optional[str] = None,
                         counterparty_reference: Optional[str] = None,
                         transaction_id: Optional[str] = None,
                         linked_transaction_id: Optional[str] = None,
                         idempotency_key: Optional[str] = None,
                         created_at=None) -> Transaction:
        now = created_at or self.clock()
        return Transaction(
            id=transaction_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=account.user_id,
            account_id=account.id,
            account_number=account.account_number,
            transaction_type=transaction_type,
            amount=amount,
            description=description,
            category=category,
            counterparty_user_id=counterparty_user_id,
            counterparty_reference=counterparty_reference,
            linked_transaction_id=linked_transaction_id,
            balance_after=account.balance,
            idempotency_key=idempotency_key,
        )

    # Post-commit work

    def _after_commit(self, user: User, account: Account, postings: List[tuple],
                      activity_type: ActivityType, activity_details: dict) -> None:
        """
        Publish events, apply the low-balance rule and record activity.
        Runs after the posting has committed; failures here are logged only.
        """
        try:
            for transaction, posted_account, counterparty_name in postings:
                event = create_transaction_event(DomainEvent.TRANSACTION_CREATED, transaction)
                event.data.update({
                    "balance_after": str(posted_account.balance),
                    "account_type": posted_account.account_type.value,
                    "counterparty_name": counterparty_name,
                })
                self.event_dispatcher.publish(event)

            self.evaluate_low_balance(user.id, account)

            details = dict(activity_details)
            details.update({"transaction_id": postings[0][0].id,
                            "account_number": account.account_number})
            self.activity_log.log_activity(user.id, activity_type, postings[0][0].description,
                                           details)
        except Exception as e:
            log_action(logger, "error", f"Post-commit processing failed: {e}", user_id=user.id,
                       action="post_commit_failed", resource=postings[0][0].id)

    def evaluate_low_balance(self, user_id: str, account: Account) -> bool:
        """
        Low-balance rule for the account an operation left behind.

        At or above the threshold the cooldown stamp is cleared. Below it,
        an alert is published once per cooldown window when enabled.
        Returns True when an alert was published.
        """
        settings = self.settings_store.get(user_id)
        threshold = Decimal(settings.low_balance_threshold)

        if account.balance.amount >= threshold:
            self.identity.clear_low_balance_alert(user_id)
            return False
        if not settings.low_balance_alert:
            return False

        user = self.identity.require_user(user_id)
        now = self.clock()
        last_sent = user.last_low_balance_alert_sent
        if last_sent is not None and now - last_sent < self.config.low_balance_cooldown:
            return False

        self.identity.mark_low_balance_alert_sent(user_id, now)
        self.event_dispatcher.publish(create_account_event(
            DomainEvent.LOW_BALANCE_CROSSED, account, threshold=str(threshold)
        ))
        log_action(logger, "info", "Low balance alert raised", user_id=user_id,
                   action="low_balance_alert", resource=account.id,
                   extra={"balance": str(account.balance), "threshold": str(threshold)})
        return True
