"""
Administrator endpoints: read-only views across every account holder
"""

from typing import Dict, Optional

from fastapi import APIRouter, Depends

from .auth import BankingSystem, get_banking_system, get_admin_user
from .schemas import admin_transaction_to_response, user_to_response
from ..accounts import Account
from ..identity import User
from ..logging_config import get_logger, log_action
from ..reporting import newest_first


router = APIRouter()
logger = get_logger("api.admin")


@router.get("/users")
def list_users(
    admin: User = Depends(get_admin_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Every registered user; password and PIN hashes are never returned"""
    users = system.identity.list_users()
    log_action(logger, "info", "Admin listed users", user_id=admin.id, action="admin_list_users",
               resource="users", extra={"count": len(users)})
    return [user_to_response(user) for user in users]


@router.get("/transactions")
def list_transactions(
    admin: User = Depends(get_admin_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Every posting across all users, newest first"""
    users: Dict[str, Optional[User]] = {}
    accounts: Dict[str, Optional[Account]] = {}

    def user_for(user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        if user_id not in users:
            users[user_id] = system.identity.get_user(user_id)
        return users[user_id]

    def account_for(account_id: str) -> Optional[Account]:
        if account_id not in accounts:
            accounts[account_id] = system.account_manager.get_account(account_id)
        return accounts[account_id]

    transactions = newest_first(system.transaction_log.find_all())
    log_action(logger, "info", "Admin listed transactions", user_id=admin.id,
               action="admin_list_transactions", resource="transactions",
               extra={"count": len(transactions)})
    return [
        admin_transaction_to_response(
            t, user_for(t.user_id), account_for(t.account_id), user_for(t.counterparty_user_id)
        )
        for t in transactions
    ]
