"""
Pydantic schemas for API requests and responses
"""

from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, Field, StrictInt, StrictStr

from ..accounts import Account
from ..audit import ActivityEvent
from ..identity import User
from ..notifications import Notification, NotificationSettings
from ..transactions import Transaction


# Floats and booleans are rejected; parse_amount does the rest
Amount = Union[StrictStr, StrictInt]


# Auth schemas
class RegisterRequest(BaseModel):
    full_name: str
    email: str
    mobile_number: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


class LoginWithOtpRequest(BaseModel):
    email: str
    otp: str


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    email: str
    otp: str
    new_password: str
    confirm_new_password: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str
    confirm_new_password: str


class SetPinRequest(BaseModel):
    pin: str
    confirm_pin: str


class ChangePinRequest(BaseModel):
    current_pin: str
    new_pin: str
    confirm_new_pin: str


class UpdateProfileRequest(BaseModel):
    full_name: Optional[str] = None
    mobile_number: Optional[str] = None


# Account schemas
class CreateAccountRequest(BaseModel):
    account_type: str = Field("Zero Balance", description="Account type (Zero Balance, Savings)")
    initial_balance: Optional[Amount] = Field(None, description="Decimal string or integer")


# Transaction schemas
class DepositRequest(BaseModel):
    account_number: Optional[str] = None
    amount: Optional[Amount] = Field(None, description="Decimal string or integer")
    transaction_pin: Optional[str] = None


class WithdrawRequest(BaseModel):
    account_number: Optional[str] = None
    amount: Optional[Amount] = Field(None, description="Decimal string or integer")
    category: Optional[str] = None
    transaction_pin: Optional[str] = None


class TransferRequest(BaseModel):
    account_number: Optional[str] = Field(None, description="Source account number")
    recipient_mobile_or_email: Optional[str] = None
    recipient_account_number: Optional[str] = None
    amount: Optional[Amount] = Field(None, description="Decimal string or integer")
    category: Optional[str] = None
    transaction_pin: Optional[str] = None


class AddCategoryRequest(BaseModel):
    new_category: Optional[str] = None


# Statement schemas
class StatementRequest(BaseModel):
    account_number: Optional[str] = None
    month: Optional[int] = None
    year: Optional[int] = None


# Notification schemas
class NotificationSettingsRequest(BaseModel):
    transaction_confirmations: Optional[bool] = None
    low_balance_alert: Optional[bool] = None
    low_balance_threshold: Optional[str] = None
    new_login_alert: Optional[bool] = None
    incorrect_pin_alert: Optional[bool] = None
    password_change_alert: Optional[bool] = None

    def changes(self) -> Dict[str, Any]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


# Response helpers
def user_to_response(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "full_name": user.full_name,
        "email": user.email,
        "mobile_number": user.mobile_number,
        "role": user.role,
        "categories": list(user.categories),
        "has_transaction_pin": user.has_transaction_pin,
        "created_at": user.created_at.isoformat(),
    }


def account_to_response(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "account_number": account.account_number,
        "account_type": account.account_type.value,
        "balance": str(account.balance.amount),
        "currency": account.currency.code,
        "created_at": account.created_at.isoformat(),
    }


def transaction_to_response(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "account_number": transaction.account_number,
        "type": transaction.transaction_type.value,
        "amount": str(transaction.amount.amount),
        "currency": transaction.amount.currency.code,
        "category": transaction.category,
        "description": transaction.description,
        "counterparty_reference": transaction.counterparty_reference,
        "linked_transaction_id": transaction.linked_transaction_id,
        "balance_after": (str(transaction.balance_after.amount)
                          if transaction.balance_after is not None else None),
        "status": transaction.status.value,
        "created_at": transaction.created_at.isoformat(),
    }


def notification_to_response(notification: Notification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "title": notification.title,
        "message": notification.message,
        "category": notification.category.value,
        "read": notification.read,
        "created_at": notification.created_at.isoformat(),
    }


def settings_to_response(settings: NotificationSettings) -> Dict[str, Any]:
    return {
        "transaction_confirmations": settings.transaction_confirmations,
        "low_balance_alert": settings.low_balance_alert,
        "low_balance_threshold": str(settings.low_balance_threshold),
        "new_login_alert": settings.new_login_alert,
        "incorrect_pin_alert": settings.incorrect_pin_alert,
        "password_change_alert": settings.password_change_alert,
    }


def activity_to_response(event: ActivityEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "activity_type": event.activity_type.value,
        "description": event.description,
        "metadata": event.metadata,
        "timestamp": event.created_at.isoformat(),
    }


def admin_transaction_to_response(transaction: Transaction, owner: Optional[User],
                                  account: Optional[Account],
                                  counterparty: Optional[User]) -> Dict[str, Any]:
    """A posting joined with its owner, account and the other party of a transfer"""
    response = transaction_to_response(transaction)
    response["user"] = (
        {"id": owner.id, "full_name": owner.full_name, "email": owner.email} if owner else None
    )
    response["account"] = (
        {"account_number": account.account_number, "account_type": account.account_type.value}
        if account else None
    )
    response["recipient"] = (
        {"id": counterparty.id, "full_name": counterparty.full_name, "email": counterparty.email}
        if counterparty else None
    )
    return response
