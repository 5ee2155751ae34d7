"""
FastAPI application entry point.

This is the main application that ties together all components:
- API routes for profiles, invoice lifecycle actions and reconciliation
- Database lifecycle management
- CORS configuration for frontend access
- Error handling and logging
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from factora import __version__
from factora.api.routes import health, invoices, profiles, reconciliation
from factora.config import get_settings
from factora.domain.errors import ErrorCode, FactoraError
from factora.infrastructure.database import close_db, init_db

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown tasks:
    - Initialize database tables
    - Dispose of connections on shutdown
    """
    settings = get_settings()

    logger.info(f"Starting Factora v{__version__}")
    logger.info(f"XRPL Network: {settings.xrpl_network}")
    logger.info(f"Debug mode: {settings.debug}")
    if not settings.jwt_secret:
        logger.warning("JWT_SECRET is not set; all identity tokens will be rejected")

    # Initialize database
    try:
        await init_db()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        # Continue anyway; store calls will surface StoreError

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down Factora")
    await close_db()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance ready to serve requests.
    """
    settings = get_settings()

    app = FastAPI(
        title="Factora API",
        description=(
            "Invoice financing for MSMEs.\n\n"
            "Buyer-acknowledged invoices are listed and sold to investors, "
            "with purchases settled on the XRP Ledger."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else ["https://factora.app"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routers
    app.include_router(health.router)
    app.include_router(profiles.router, prefix="/api/v1")
    app.include_router(invoices.router, prefix="/api/v1")
    app.include_router(reconciliation.router, prefix="/api/v1")

    @app.exception_handler(FactoraError)
    async def factora_error_handler(request: Request, exc: FactoraError):
        """Render domain errors as {"error": message, "code": ...}."""
        if exc.status_code >= 500:
            logger.error(f"{exc.code.value} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        content = {"error": "Invalid request body", "code": ErrorCode.INVALID_PAYLOAD.value}
        if settings.debug:
            content["detail"] = str(exc.errors())
        return JSONResponse(status_code=400, content=content)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler for unhandled errors."""
        logger.exception(f"Unhandled error: {exc}")

        # Don't expose internal errors in production
        if settings.debug:
            detail = str(exc)
        else:
            detail = "An internal error occurred"

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "detail": detail,
            },
        )

    return app


# Create the application instance
app = create_app()


# Development server entry point
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "factora.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
