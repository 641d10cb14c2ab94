"""
Account holder endpoints: registration, login, credentials and profile
"""

from fastapi import APIRouter, Depends

from .auth import BankingSystem, get_banking_system, get_current_user
from .schemas import (
    RegisterRequest, LoginRequest, LoginWithOtpRequest, ForgotPasswordRequest,
    ResetPasswordRequest, ChangePasswordRequest, SetPinRequest, ChangePinRequest,
    UpdateProfileRequest, user_to_response, account_to_response, notification_to_response,
    activity_to_response
)
from ..identity import User
from ..logging_config import get_logger, log_action


router = APIRouter()
logger = get_logger("api.users")


@router.post("/register", status_code=201)
def register(
    request: RegisterRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Register an account holder with a default Zero Balance account"""
    user, account = system.identity.register(
        full_name=request.full_name,
        email=request.email,
        mobile_number=request.mobile_number,
        password=request.password
    )
    response = system.issue_token(user)
    response.update({
        "message": "Registration successful",
        "user": user_to_response(user),
        "account": account_to_response(account),
    })
    return response


@router.post("/login")
def login(
    request: LoginRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Authenticate with email and password and return a bearer token"""
    user = system.identity.login(request.email, request.password)
    log_action(logger, "info", "User authenticated successfully", user_id=user.id,
               action="login", resource="auth")
    response = system.issue_token(user)
    response.update({
        "message": "Login successful",
        "user": user_to_response(user),
        "accounts": [account_to_response(a) for a in system.account_manager.find_by_owner(user.id)],
    })
    return response


@router.post("/login-with-otp")
def login_with_otp(
    request: LoginWithOtpRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Authenticate with the recovery passcode issued on login lockout"""
    user = system.identity.login_with_otp(request.email, request.otp)
    response = system.issue_token(user)
    response.update({"message": "Login successful", "user": user_to_response(user)})
    return response


@router.post("/logout")
def logout(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    system.identity.logout(user.id)
    return {"message": "Logged out successfully."}


@router.post("/forgot-password")
def forgot_password(
    request: ForgotPasswordRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    system.identity.request_password_reset(request.email)
    return {"message": "If an account with that email exists, an OTP has been sent."}


@router.put("/reset-password")
def reset_password(
    request: ResetPasswordRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    system.identity.reset_password(
        request.email, request.otp, request.new_password, request.confirm_new_password
    )
    return {"message": "Password has been reset successfully."}


@router.put("/change-password")
def change_password(
    request: ChangePasswordRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    system.identity.change_password(
        user.id, request.current_password, request.new_password, request.confirm_new_password
    )
    return {"message": "Password changed successfully."}


@router.post("/set-transaction-pin")
def set_transaction_pin(
    request: SetPinRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    system.identity.set_transaction_pin(user.id, request.pin, request.confirm_pin)
    return {"message": "Transaction PIN set successfully."}


@router.put("/change-transaction-pin")
def change_transaction_pin(
    request: ChangePinRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    system.identity.change_transaction_pin(
        user.id, request.current_pin, request.new_pin, request.confirm_new_pin
    )
    return {"message": "Transaction PIN changed successfully."}


@router.get("/profile")
def get_profile(user: User = Depends(get_current_user)):
    return user_to_response(user)


@router.put("/profile")
def update_profile(
    request: UpdateProfileRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    updated = system.identity.update_profile(
        user.id, full_name=request.full_name, mobile_number=request.mobile_number
    )
    return {"message": "Profile updated successfully.", "user": user_to_response(updated)}


@router.get("/notifications")
def list_notifications(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    return [notification_to_response(n) for n in system.notifications.list_notifications(user.id)]


@router.put("/notifications/read")
def mark_notifications_read(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    updated = system.notifications.mark_all_read(user.id)
    return {"message": "All notifications marked as read.", "updated": updated}


@router.get("/activity")
def get_activity(
    limit: int = 50,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Recent account activity, newest first"""
    return [activity_to_response(e) for e in system.activity_log.get_user_activity(user.id, limit)]
