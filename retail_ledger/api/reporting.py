"""
Statement and analytics endpoints
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends

from .auth import BankingSystem, get_banking_system, get_current_user
from .schemas import StatementRequest
from ..errors import InvalidInputError
from ..identity import User
from ..storage import parse_datetime


statements_router = APIRouter()
analytics_router = APIRouter()


@statements_router.post("/statement")
def send_statement(
    request: StatementRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Render the monthly statement for an account and email it to the caller"""
    if not request.month or not request.year or not request.account_number:
        raise InvalidInputError(
            "Month, year, and account number are required to generate a statement.",
            field="month"
        )
    statement = system.statements.send_statement(
        user.id, request.account_number, request.year, request.month
    )
    return {
        "message": "Statement generated and sent to your email successfully.",
        "filename": statement.filename,
        "transaction_count": len(statement.transactions),
    }


def _parse_date(value: Optional[str], field: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = parse_datetime(value)
    except ValueError:
        raise InvalidInputError(f"Invalid date: {value}", field=field)
    # Dates without an offset are taken as UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@analytics_router.get("/spending")
def spending_by_category(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Outgoing amounts per category, largest first"""
    entries = system.history.spending_by_category(
        user.id,
        start=_parse_date(start_date, "start_date"),
        end=_parse_date(end_date, "end_date")
    )
    return [
        {"category": e.category, "total_spending": str(e.total.amount), "count": e.count}
        for e in entries
    ]
