"""
Transaction endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header

from .auth import BankingSystem, get_banking_system, get_current_user
from .schemas import (
    DepositRequest, WithdrawRequest, TransferRequest, AddCategoryRequest,
    account_to_response, transaction_to_response, user_to_response
)
from ..identity import User


router = APIRouter()


@router.post("/deposit")
def deposit(
    request: DepositRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Deposit into one of the caller's accounts"""
    result = system.ledger.deposit(
        user.id, request.account_number, request.amount, request.transaction_pin
    )
    return {
        "message": "Deposit successful",
        "new_balance": str(result.new_balance.amount),
        "transaction": transaction_to_response(result.transaction),
    }


@router.post("/withdraw")
def withdraw(
    request: WithdrawRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Withdraw from one of the caller's accounts"""
    result = system.ledger.withdraw(
        user.id, request.account_number, request.amount, request.category,
        request.transaction_pin
    )
    return {
        "message": "Withdrawal successful",
        "new_balance": str(result.new_balance.amount),
        "transaction": transaction_to_response(result.transaction),
    }


@router.post("/transfer")
def transfer(
    request: TransferRequest,
    idempotency_key: Optional[str] = Header(None),
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transfer to another account holder identified by mobile number or email"""
    result = system.ledger.transfer(
        user.id,
        source_account_number=request.account_number,
        recipient_identifier=request.recipient_mobile_or_email,
        amount=request.amount,
        category=request.category,
        pin=request.transaction_pin,
        recipient_account_number=request.recipient_account_number,
        idempotency_key=idempotency_key
    )
    return {
        "message": "Transfer successful",
        "new_sender_balance": str(result.new_sender_balance.amount),
        "transaction": transaction_to_response(result.debit),
    }


@router.get("/history")
def get_history(
    account_number: Optional[str] = None,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transaction history, newest first"""
    transactions = system.history.get_history(user.id, account_number)
    return [transaction_to_response(t) for t in transactions]


@router.get("/dashboard")
def get_dashboard(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    dashboard = system.history.get_dashboard(user.id)
    return {
        "user": user_to_response(dashboard.user),
        "accounts": [account_to_response(a) for a in dashboard.accounts],
        "total_balance": str(dashboard.total_balance.amount),
        "transactions": [transaction_to_response(t) for t in dashboard.transactions],
    }


@router.get("/categories")
def get_categories(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    return system.identity.get_categories(user.id)


@router.post("/categories", status_code=201)
def add_category(
    request: AddCategoryRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    categories = system.identity.add_category(user.id, request.new_category)
    return {"message": "Category added successfully.", "categories": categories}
