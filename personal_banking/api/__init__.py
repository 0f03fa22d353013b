"""
Personal Banking API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .. import __version__
from ..config import get_config
from ..errors import BankingError
from ..logging_config import get_logger, setup_logging
from .users import router as users_router
from .customers import router as customers_router
from .accounts import router as accounts_router
from .transactions import router as transactions_router
from .loans import router as loans_router
from .dashboard import router as dashboard_router
from .admin import router as admin_router


logger = get_logger("banking.api")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Personal Banking API",
        description="Accounts, deposits and withdrawals, loans and repayments",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BankingError)
    async def banking_error_handler(request: Request, exc: BankingError):
        return JSONResponse(
            status_code=exc.http_status,
            content=exc.to_dict()
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "detail": "Internal server error"}
        )

    # Include routers
    app.include_router(users_router, prefix="/users", tags=["Users"])
    app.include_router(customers_router, prefix="/customers", tags=["Customers"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(dashboard_router, prefix="/dashboard", tags=["Dashboard"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "personal_banking_api",
            "version": __version__
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "personal_banking.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level="info"
    )
