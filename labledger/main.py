"""Lab order payment ledger FastAPI application."""
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from labledger.core.config import settings
from labledger.core.exceptions import AppException
from labledger.core.exceptions.handlers import (
    app_exception_handler,
    http_exception_handler,
    sqlalchemy_db_error_handler,
    validation_exception_handler,
)
from labledger.core.logging import configure_logging
from labledger.core.system_settings.router import router as system_settings_router
from labledger.integrations.bkash.router import router as bkash_router
from labledger.modules.lab_orders.router import router as lab_orders_router
from labledger.modules.lab_payments.router import router as lab_payments_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    yield
    # Shutdown


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    configure_logging()

    app = FastAPI(
        title="Lab Order Ledger",
        description="Batch payments and sample gating for lab test orders",
        version="0.1.0",
        debug=settings.debug,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_db_error_handler)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    # Routers
    app.include_router(system_settings_router, prefix="/api/v1")
    app.include_router(lab_orders_router, prefix="/api/v1")
    app.include_router(lab_payments_router, prefix="/api/v1")
    app.include_router(bkash_router, prefix="/api/v1")

    return app


app = create_app()
