"""
Retail Ledger API Application Factory
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .. import __version__
from ..config import get_config
from ..errors import ErrorKind, InvalidInputError, LedgerError
from ..logging_config import get_logger, log_action, setup_logging
from .auth import BankingSystem
from .users import router as users_router
from .accounts import router as accounts_router
from .transactions import router as transactions_router
from .reporting import statements_router, analytics_router
from .notifications import router as notifications_router
from .admin import router as admin_router


logger = get_logger("api")

STATUS_BY_KIND = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INVALID_RECIPIENT: 400,
    ErrorKind.INSUFFICIENT_FUNDS: 400,
    ErrorKind.BELOW_MINIMUM: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.INCORRECT_CREDENTIAL: 401,
    ErrorKind.LOCKED: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Retail Ledger API",
        description="Personal banking ledger with PIN-authorized transfers",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.banking_system = system or BankingSystem()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = STATUS_BY_KIND.get(exc.kind, 500)
        level = "error" if status_code >= 500 else "warning"
        log_action(logger, level, f"{request.method} {request.url.path} failed: {exc.message}",
                   action="request_failed", resource=request.url.path,
                   extra={"kind": exc.kind.value, "status_code": status_code})
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        # Schema failures share the InvalidInput shape of domain validation
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = first.get("loc", ())
        field = str(location[1]) if len(location) > 1 else None
        if field:
            message = f"Invalid value for {field}: {first.get('msg', 'invalid input')}"
        else:
            message = "Request body is missing or malformed."
        error = InvalidInputError(message, field=field)
        log_action(logger, "warning", f"{request.method} {request.url.path} failed: {message}",
                   action="request_failed", resource=request.url.path,
                   extra={"kind": error.kind.value, "status_code": 400})
        return JSONResponse(status_code=400, content=error.to_dict())

    # Include routers
    app.include_router(users_router, prefix="/auth", tags=["Auth"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(statements_router, prefix="/statements", tags=["Statements"])
    app.include_router(analytics_router, prefix="/analytics", tags=["Analytics"])
    app.include_router(notifications_router, prefix="/notifications", tags=["Notifications"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "retail_ledger_api",
            "version": __version__
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, config.log_format)
    uvicorn.run(
        "retail_ledger.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
