import logging
import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from http import HTTPStatus

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from blog_cms.api.deps import get_mailer
from blog_cms.api.v1 import api_router
from blog_cms.core.config import settings
from blog_cms.core.exceptions import AuthError, RateLimitedError
from blog_cms.core.kv_store import close_kv_store, get_kv_store
from blog_cms.core.logging_config import RequestLoggingMiddleware, setup_logging
from blog_cms.db.session import check_db_connection, engine

# Configure structured logging (JSON in production, colored in development)
setup_logging()
logger = logging.getLogger("blog_cms")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add security headers to all responses.
    Helps prevent XSS, clickjacking, and other common attacks.
    """
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        # Auth responses carry tokens in cookies; never cache them
        if request.url.path.startswith(f"{settings.API_V1_STR}/auth"):
            response.headers["Cache-Control"] = "no-store"

        return response


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: str
    detail: str | None = None
    timestamp: str
    path: str | None = None


class HealthResponse(BaseModel):
    """Health check response format."""
    status: str
    service: str
    version: str
    environment: str
    checks: dict[str, bool]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.PROJECT_NAME} ({settings.ENVIRONMENT})")
    yield
    logger.info("Shutting down, closing connections")
    await close_kv_store()
    await get_mailer().close()
    await engine.dispose()


app = FastAPI(
    title=f"{settings.PROJECT_NAME} API",
    description="Blog CMS backend: authentication and content API",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,  # Disable docs in production
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

cors_origins = settings.ALLOWED_ORIGINS or ["http://localhost:3000"]


def get_cors_headers(request: Request) -> dict:
    """Get CORS headers based on request origin."""
    origin = request.headers.get("origin", "")
    if origin in cors_origins:
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Credentials": "true",
        }
    return {}


def _error_body(request: Request, status_code: int, detail: str) -> dict:
    return ErrorResponse(
        error=HTTPStatus(status_code).phrase,
        detail=detail,
        timestamp=datetime.now(timezone.utc).isoformat(),
        path=request.url.path,
    ).model_dump()


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Translate auth-core failures into their HTTP status with the error's message."""
    headers = get_cors_headers(request)
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after_minutes * 60)

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.message),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies are reported as 400 with every failing field."""
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "Invalid value")
        messages.append(f"{location}: {message}" if location else message)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(request, status.HTTP_400_BAD_REQUEST, "; ".join(messages)),
        headers=get_cors_headers(request),
    )


# Global exception handler - catches all unhandled exceptions
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler that returns consistent error responses.
    In production, sensitive details are hidden to prevent information leakage.
    """
    error_id = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")

    logger.error(
        f"Unhandled exception [{error_id}]: {exc}\n"
        f"Path: {request.url.path}\n"
        f"Method: {request.method}\n"
        f"Traceback: {traceback.format_exc()}"
    )

    if settings.ENVIRONMENT.lower() == "production":
        detail = f"An unexpected error occurred. Reference ID: {error_id}"
        error = "Internal server error"
    else:
        detail = str(exc)
        error = exc.__class__.__name__

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error=error,
            detail=detail,
            timestamp=datetime.now(timezone.utc).isoformat(),
            path=request.url.path,
        ).model_dump(),
        headers=get_cors_headers(request),
    )


# When credentials are needed, we must specify exact origins (not "*")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(api_router, prefix=settings.API_V1_STR)


async def check_kv_store_connection() -> bool:
    try:
        return await get_kv_store().ping()
    except Exception as e:
        logger.warning(f"Key-value store health check failed: {e}")
        return False


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Verifies the database and the key-value store.
    Returns 503 if either is unreachable; without them no request can be authenticated.
    """
    checks = {
        "database": await check_db_connection(),
        "kv_store": await check_kv_store_connection(),
    }
    healthy = all(checks.values())

    response = HealthResponse(
        status="healthy" if healthy else "unhealthy",
        service="blog-cms-backend",
        version="1.0.0",
        environment=settings.ENVIRONMENT,
        checks=checks,
    )

    if not healthy:
        logger.warning(f"Health check failed: {checks}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(),
        )

    return response
