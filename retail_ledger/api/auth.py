"""
Authentication and authorization dependencies
"""

from datetime import datetime, timezone, timedelta
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..accounts import AccountManager
from ..audit import ActivityLog
from ..config import LedgerConfig, get_config
from ..events import EventDispatcher
from ..identity import IdentityManager, User
from ..ledger import LedgerEngine
from ..logging_config import get_logger
from ..notifications import (
    EmailSink, InAppNotificationSink, NotificationService, NotificationSettingsStore,
    create_email_sink
)
from ..reporting import HistoryService, StatementService, PdfRenderer
from ..storage import StorageInterface, KeyedLockManager, Clock, create_storage, utc_now
from ..transactions import TransactionLog


logger = get_logger("api.auth")

security = HTTPBearer(auto_error=False)


class BankingSystem:
    """Retail ledger with all components initialized"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        email_sink: Optional[EmailSink] = None,
        renderer: Optional[PdfRenderer] = None,
        clock: Clock = utc_now
    ):
        self.config = config or get_config()
        self.clock = clock

        # Initialize storage
        self.storage = storage or create_storage(
            self.config.database_url, timeout=self.config.storage_timeout_seconds
        )
        self.lock_manager = KeyedLockManager(timeout=self.config.storage_timeout_seconds)
        self.event_dispatcher = EventDispatcher()

        # Initialize core components
        self.activity_log = ActivityLog(self.storage, clock)
        self.settings_store = NotificationSettingsStore(self.storage, self.config, clock)
        self.account_manager = AccountManager(
            self.storage, self.lock_manager, self.event_dispatcher, self.config, clock
        )
        self.identity = IdentityManager(
            self.storage, self.lock_manager, self.account_manager, self.settings_store,
            self.activity_log, self.event_dispatcher, self.config, clock
        )
        self.transaction_log = TransactionLog(self.storage)
        self.ledger = LedgerEngine(
            self.storage, self.account_manager, self.transaction_log, self.identity,
            self.lock_manager, self.activity_log, self.settings_store,
            self.event_dispatcher, self.config, clock
        )

        # Notifications subscribe to the dispatcher and run after commit
        self.email_sink = email_sink or create_email_sink(self.config)
        self.in_app = InAppNotificationSink(self.storage, clock)
        self.notifications = NotificationService(
            self.settings_store, self.in_app, self.email_sink, self.identity,
            self.event_dispatcher, self.config
        )

        # Read side
        self.history = HistoryService(
            self.transaction_log, self.account_manager, self.identity, self.config
        )
        self.statements = StatementService(
            self.transaction_log, self.account_manager, self.identity, self.email_sink, renderer
        )

    def issue_token(self, user: User) -> Dict[str, Any]:
        """Signed bearer token for an authenticated user"""
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(hours=self.config.jwt_expiry_hours)
        token_payload = {
            "sub": user.id,
            "role": user.role,
            "exp": expires_at,
            "iat": now,
        }
        token = jwt.encode(token_payload, self.config.jwt_secret, algorithm=self.config.jwt_algorithm)
        return {
            "access_token": token,
            "token_type": "bearer",
            "expires_at": expires_at.isoformat(),
        }


# Dependency to get banking system
def get_banking_system(request: Request) -> BankingSystem:
    return request.app.state.banking_system


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: BankingSystem = Depends(get_banking_system)
) -> User:
    """Dependency that validates the bearer token and returns the account holder"""
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authorized, no token")
    try:
        payload = jwt.decode(
            credentials.credentials, system.config.jwt_secret,
            algorithms=[system.config.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Not authorized, token failed")

    user = system.identity.get_user(payload.get("sub"))
    if user is None:
        raise HTTPException(status_code=401, detail="Not authorized, user not found")
    return user


def get_admin_user(user: User = Depends(get_current_user)) -> User:
    """Dependency that only admits users with the admin role"""
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Not authorized as an admin.")
    return user
