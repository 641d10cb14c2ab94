"""
Reporting Module

Read-side views over the transaction log: per-user history, the dashboard,
spending analytics and monthly statements. Nothing here mutates balances.
"""

import calendar
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional, Tuple

from fpdf import FPDF, XPos, YPos

from .accounts import Account, AccountManager, total_balance
from .config import LedgerConfig, get_config
from .currency import Currency, Money
from .errors import InternalError, InvalidInputError, LedgerError, NotFoundError
from .identity import IdentityManager, User
from .logging_config import get_logger, log_action
from .notifications import EmailAttachment, EmailSink
from .transactions import Transaction, TransactionLog


logger = get_logger("reporting")


def newest_first(transactions: List[Transaction]) -> List[Transaction]:
    """Sort by timestamp descending; equal timestamps fall back to id"""
    return sorted(transactions, key=lambda t: (t.created_at, t.id), reverse=True)


def oldest_first(transactions: List[Transaction]) -> List[Transaction]:
    return sorted(transactions, key=lambda t: (t.created_at, t.id))


@dataclass
class DashboardData:
    """Accounts and most recent postings of one user"""
    user: User
    accounts: List[Account]
    total_balance: Money
    transactions: List[Transaction]


@dataclass
class CategorySpending:
    category: str
    total: Money
    count: int = 0


@dataclass
class StatementData:
    """Everything needed to render a monthly statement"""
    user: User
    account: Account
    year: int
    month: int
    period_start: datetime
    period_end: datetime
    transactions: List[Transaction] = field(default_factory=list)

    @property
    def filename(self) -> str:
        return f"Statement_{self.account.account_number}_{self.year}_{self.month}.pdf"

    @property
    def period_label(self) -> str:
        return f"{calendar.month_name[self.month]} {self.year}"

    def totals(self) -> Dict[str, Money]:
        """Money in and money out over the period"""
        currency = self.account.currency
        credits = Money.zero(currency)
        debits = Money.zero(currency)
        for transaction in self.transactions:
            if transaction.transaction_type.is_debit:
                debits = debits + transaction.amount
            else:
                credits = credits + transaction.amount
        return {"credits": credits, "debits": debits}


class HistoryService:
    """
    Transaction history, dashboard and spending analytics
    """

    DASHBOARD_LIMIT = 10

    def __init__(self, transactions: TransactionLog, accounts: AccountManager,
                 identity: IdentityManager, config: Optional[LedgerConfig] = None):
        self.transactions = transactions
        self.accounts = accounts
        self.identity = identity
        self.config = config or get_config()
        self.currency = Currency[self.config.currency]

    def get_history(self, user_id: str, account_number: Optional[str] = None) -> List[Transaction]:
        """
        Transactions owned by the user, newest first.

        Args:
            user_id: Account holder
            account_number: Limit to one of the user's accounts

        Raises:
            NotFoundError: account_number is not one of the user's accounts
        """
        account_id = None
        if account_number:
            try:
                account_id = self.accounts.find_by_account_number(user_id, account_number).id
            except NotFoundError:
                raise NotFoundError("Account not found for this user.", entity="account")
        return newest_first(self.transactions.find_for_user(user_id, account_id))

    def get_dashboard(self, user_id: str, limit: int = DASHBOARD_LIMIT) -> DashboardData:
        user = self.identity.require_user(user_id)
        accounts = self.accounts.find_by_owner(user_id)
        if not accounts:
            raise NotFoundError("No accounts found for this user.", entity="account")
        recent = newest_first(self.transactions.find_for_user(user_id))[:limit]
        return DashboardData(
            user=user,
            accounts=accounts,
            total_balance=total_balance(accounts, self.currency),
            transactions=recent,
        )

    def spending_by_category(self, user_id: str, start: Optional[datetime] = None,
                             end: Optional[datetime] = None) -> List[CategorySpending]:
        """Outgoing amounts (withdrawals and transfers out) per category, largest first"""
        if start is not None and end is not None and start > end:
            raise InvalidInputError("Start date must not be after end date.", field="start_date")

        totals: Dict[str, CategorySpending] = {}
        for transaction in self.transactions.find_for_user(user_id):
            if not transaction.transaction_type.is_debit:
                continue
            if start is not None and transaction.created_at < start:
                continue
            if end is not None and transaction.created_at > end:
                continue
            category = transaction.category or "Uncategorized"
            entry = totals.setdefault(
                category, CategorySpending(category=category, total=Money.zero(self.currency))
            )
            entry.total = entry.total + transaction.amount
            entry.count += 1

        return sorted(totals.values(), key=lambda s: (-s.total.amount, s.category))


def statement_rows(statement: StatementData) -> List[Tuple[str, str, str, str, str]]:
    """Statement table as display strings: date, type, category, description, amount"""
    return [
        (
            t.created_at.date().isoformat(),
            t.transaction_type.value.upper(),
            (t.category or "N/A")[:18],
            (t.description or "N/A")[:40],
            t.amount.to_string(),
        )
        for t in statement.transactions
    ]


class PdfRenderer(ABC):
    """Renders statement data into document bytes"""

    content_type = "application/pdf"

    @abstractmethod
    def render(self, statement: StatementData) -> bytes:
        pass


def _latin1(text: str) -> str:
    # Core PDF fonts only cover Latin-1
    return text.encode("latin-1", "replace").decode("latin-1")


class FpdfStatementRenderer(PdfRenderer):
    """A4 statement drawn with fpdf2 and the core Helvetica font"""

    COLUMNS = (("Date", 24), ("Type", 28), ("Category", 32), ("Description", 70), ("Amount", 36))

    def render(self, statement: StatementData) -> bytes:
        pdf = FPDF(orientation="P", unit="mm", format="A4")
        pdf.set_title(f"Statement {statement.account.account_number} {statement.period_label}")
        pdf.add_page()

        pdf.set_font("Helvetica", "B", 16)
        pdf.cell(0, 10, "Monthly Transaction Statement",
                 new_x=XPos.LMARGIN, new_y=YPos.NEXT, align="C")
        pdf.set_font("Helvetica", size=10)
        pdf.cell(0, 6, f"For the period: {statement.period_start.date().isoformat()} - "
                       f"{statement.period_end.date().isoformat()}",
                 new_x=XPos.LMARGIN, new_y=YPos.NEXT, align="C")
        pdf.ln(4)
        for line in (f"Account Holder: {statement.user.full_name}",
                     f"Account Number: {statement.account.account_number}",
                     f"Account Type: {statement.account.account_type.value}"):
            pdf.cell(0, 6, _latin1(line), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        pdf.ln(4)

        rows = statement_rows(statement)
        if not rows:
            pdf.cell(0, 8, "No transactions found for this period.",
                     new_x=XPos.LMARGIN, new_y=YPos.NEXT)
            return bytes(pdf.output())

        pdf.set_font("Helvetica", "B", 10)
        for title, width in self.COLUMNS:
            pdf.cell(width, 8, title, border=1, align="R" if title == "Amount" else "L")
        pdf.ln()
        pdf.set_font("Helvetica", size=9)
        for row in rows:
            for (title, width), value in zip(self.COLUMNS, row):
                pdf.cell(width, 7, _latin1(value), border=1,
                         align="R" if title == "Amount" else "L")
            pdf.ln()

        totals = statement.totals()
        pdf.ln(4)
        pdf.set_font("Helvetica", "B", 10)
        pdf.cell(0, 6, f"Total credits: {totals['credits'].to_string()}",
                 new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        pdf.cell(0, 6, f"Total debits: {totals['debits'].to_string()}",
                 new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        return bytes(pdf.output())


class StatementService:
    """
    Monthly statements for a single account
    """

    def __init__(self, transactions: TransactionLog, accounts: AccountManager,
                 identity: IdentityManager, email: EmailSink,
                 renderer: Optional[PdfRenderer] = None):
        self.transactions = transactions
        self.accounts = accounts
        self.identity = identity
        self.email = email
        self.renderer = renderer or FpdfStatementRenderer()

    @staticmethod
    def month_range(year: int, month: int) -> tuple:
        """First instant and last microsecond of a calendar month (UTC)"""
        if not isinstance(year, int) or not isinstance(month, int) or isinstance(month, bool):
            raise InvalidInputError("Month and year must be integers.", field="month")
        if month < 1 or month > 12:
            raise InvalidInputError("Month must be between 1 and 12.", field="month")
        if year < 1970 or year > 9999:
            raise InvalidInputError("Year is out of range.", field="year")
        start = datetime(year, month, 1, tzinfo=timezone.utc)
        last_day = calendar.monthrange(year, month)[1]
        end = datetime(year, month, last_day, tzinfo=timezone.utc) + timedelta(days=1, microseconds=-1)
        return start, end

    def build_statement(self, user_id: str, account_number: str, year: int, month: int) -> StatementData:
        if not account_number:
            raise InvalidInputError(
                "Month, year, and account number are required to generate a statement.",
                field="account_number",
            )
        start, end = self.month_range(year, month)
        user = self.identity.require_user(user_id)
        account = self.accounts.find_by_account_number(user_id, account_number)

        in_period = [
            t for t in self.transactions.find_for_user(user_id, account.id)
            if start <= t.created_at <= end
        ]
        return StatementData(
            user=user,
            account=account,
            year=year,
            month=month,
            period_start=start,
            period_end=end,
            transactions=oldest_first(in_period),
        )

    def send_statement(self, user_id: str, account_number: str, year: int, month: int) -> StatementData:
        """
        Render the statement and email it to the account holder as an attachment.

        Raises:
            InternalError: rendering or delivery failed
        """
        statement = self.build_statement(user_id, account_number, year, month)
        try:
            content = self.renderer.render(statement)
            self.email.send(
                statement.user.email,
                f"Monthly Bank Statement for {statement.period_label}",
                f"<p>Dear {statement.user.full_name},</p>"
                f"<p>Attached is your monthly transaction statement for your "
                f"{statement.account.account_type.value} account "
                f"(No: {statement.account.account_number}).</p>"
                f"<p>Thank you for banking with us!</p>",
                attachments=[EmailAttachment(
                    filename=statement.filename,
                    content=content,
                    content_type=self.renderer.content_type,
                )],
            )
        except LedgerError:
            raise
        except Exception as e:
            logger.error(f"Statement delivery failed for account {account_number}: {e}", exc_info=True)
            raise InternalError("Failed to generate or send the statement.")

        log_action(logger, "info", f"Statement {statement.filename} sent", user_id=user_id,
                   action="statement_sent", resource=statement.account.id,
                   extra={"transactions": len(statement.transactions)})
        return statement

