"""
Account management endpoints
"""

from fastapi import APIRouter, Depends, HTTPException

from .auth import BankingSystem, get_banking_system, get_current_user
from .schemas import CreateAccountRequest, account_to_response
from ..accounts import AccountType
from ..currency import parse_amount
from ..identity import User


router = APIRouter()


@router.get("")
def list_accounts(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """All accounts of the caller, oldest first"""
    return [account_to_response(a) for a in system.account_manager.find_by_owner(user.id)]


@router.get("/{account_id}")
def get_account(
    account_id: str,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    account = system.account_manager.get_account(account_id)
    if account is None or account.user_id != user.id:
        raise HTTPException(status_code=404, detail="Account not found")
    return account_to_response(account)


@router.post("", status_code=201)
def create_account(
    request: CreateAccountRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Open an additional account; a Savings account must be opened at or above its minimum"""
    try:
        account_type = AccountType(request.account_type)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid account type: {request.account_type}")

    initial_balance = None
    if request.initial_balance is not None:
        initial_balance = parse_amount(
            request.initial_balance, system.account_manager.currency, field="initial_balance"
        )

    account = system.account_manager.create_account(
        user.id, account_type, initial_balance=initial_balance
    )
    return account_to_response(account)
