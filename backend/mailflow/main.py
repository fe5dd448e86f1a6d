import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from dotenv import load_dotenv

from . import __version__
from .core.logging import get_logger, configure_logging
from .core.config import get_settings
from .core.exceptions import MailflowError, ErrorCode
from .core.middleware import RequestContextMiddleware
from .db.base import init_db
from .email.router import router as email_router

# Initialize logging
load_dotenv()
configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_format=os.getenv("LOG_FORMAT", "text").lower() == "json",
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Mailflow API")
    init_db()
    logger.info("Database tables created/verified")
    yield
    logger.info("Shutting down Mailflow API")


app = FastAPI(
    title="Mailflow",
    description="Email flow and scheduling engine: versioned templates, drip flows, and an idempotent send ledger.",
    version=__version__,
    lifespan=lifespan,
)

# =============================================================================
# Middleware Configuration
# =============================================================================

# Request context middleware (adds request ID, timing, logging)
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_settings().cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =============================================================================
# Global Exception Handlers
# =============================================================================

@app.exception_handler(MailflowError)
async def mailflow_exception_handler(request: Request, exc: MailflowError):
    """Handle all Mailflow domain exceptions."""
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        f"Domain error: {exc.error_code.value} - {exc.message}",
        extra={
            "error_code": exc.error_code.value,
            "http_status": exc.http_status,
            "context": exc.context,
            "path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors from request parsing."""
    errors = []
    for error in exc.errors():
        loc = " -> ".join(str(part) for part in error["loc"])
        errors.append({
            "field": loc,
            "message": error["msg"],
            "type": error["type"],
        })

    logger.warning(
        f"Validation error on {request.method} {request.url.path}",
        extra={"errors": errors}
    )

    return JSONResponse(
        status_code=422,
        content={
            "error": "Request validation failed",
            "error_code": ErrorCode.VALIDATION_ERROR.value,
            "details": errors,
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTPExceptions."""
    logger.warning(
        f"HTTP exception: {exc.status_code} - {exc.detail}",
        extra={
            "status_code": exc.status_code,
            "path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": str(exc.detail),
            "error_code": f"HTTP_{exc.status_code}",
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Handle any unhandled exceptions - last resort."""
    logger.exception(
        f"Unhandled exception on {request.method} {request.url.path}",
        extra={
            "error_type": type(exc).__name__,
            "error_message": str(exc),
        }
    )

    # Don't expose internal errors in production
    return JSONResponse(
        status_code=500,
        content={
            "error": "An internal server error occurred",
            "error_code": ErrorCode.INTERNAL_ERROR.value,
            "details": str(exc) if get_settings().debug else "Please contact support if this persists",
        },
    )


# Include email scheduling router
app.include_router(email_router)


@app.get("/health")
async def health():
    """Health check endpoint for monitoring and load balancer probes."""
    return {
        "status": "ok",
        "service": "mailflow",
        "version": __version__,
        "timestamp": time.time(),
    }
