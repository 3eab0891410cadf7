"""
Microlend API Application Factory
"""

import traceback
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import get_lending_system
from .payments import router as payments_router
from .manual_payments import router as manual_payments_router
from .payment_accounts import router as payment_accounts_router
from .loans import borrower_router, lender_router
from .terms import router as terms_router
from .relationships import router as relationships_router
from .notifications import router as notifications_router
from ..errors import LendingError
from ..config import get_config
from ..logging_config import setup_logging, get_logger


logger = get_logger("microlend.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = get_config()
    scheduler = None
    if config.sweep_enabled:
        scheduler = get_lending_system().sweep_scheduler
        scheduler.start()
    yield
    if scheduler is not None:
        scheduler.stop()


def create_app(debug: Optional[bool] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    debug = config.debug if debug is None else debug

    app = FastAPI(
        title="Microlend Settlement API",
        description="P2P micro-loan payment settlement and loan reconciliation",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        missing = any(error.get("type") == "missing" for error in errors)
        return JSONResponse(
            status_code=400,
            content={
                "error": "Missing required fields" if missing else "Invalid request",
                "details": jsonable_encoder(errors)
            }
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        content = {"error": "Internal server error"}
        if debug:
            content["type"] = type(exc).__name__
            content["traceback"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
        return JSONResponse(status_code=500, content=content)

    # Include routers
    app.include_router(payments_router, prefix="/payment", tags=["Payments"])
    app.include_router(manual_payments_router, prefix="/payments", tags=["Manual Payments"])
    app.include_router(payment_accounts_router, prefix="/payment-accounts", tags=["Payment Accounts"])
    app.include_router(borrower_router, prefix="/borrower", tags=["Borrower"])
    app.include_router(lender_router, prefix="/lender", tags=["Lender"])
    app.include_router(terms_router, prefix="/lender/terms", tags=["Lender Terms"])
    app.include_router(relationships_router, prefix="/relationships", tags=["Relationships"])
    app.include_router(notifications_router, prefix="/notifications", tags=["Notifications"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "microlend_api",
            "version": "1.0.0"
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Microlend Settlement API",
            "version": "1.0.0",
            "description": "P2P micro-loan payment settlement and loan reconciliation",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "payment": "/payment",
                "payments": "/payments",
                "payment-accounts": "/payment-accounts",
                "borrower": "/borrower",
                "lender": "/lender",
                "relationships": "/relationships",
                "notifications": "/notifications",
            }
        }

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: Optional[bool] = None):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format)
    uvicorn.run(
        "microlend.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=config.debug if debug is None else debug,
        log_level="info"
    )
