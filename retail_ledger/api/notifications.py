"""
Notification settings endpoints
"""

from fastapi import APIRouter, Depends

from .auth import BankingSystem, get_banking_system, get_current_user
from .schemas import NotificationSettingsRequest, settings_to_response
from ..identity import User


router = APIRouter()


@router.get("/settings")
def get_settings(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    return settings_to_response(system.notifications.get_settings(user.id))


@router.put("/settings")
def update_settings(
    request: NotificationSettingsRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    settings = system.notifications.update_settings(user.id, **request.changes())
    return {
        "message": "Notification settings updated successfully.",
        "settings": settings_to_response(settings),
    }
