import logging
import sys
import asyncio
from contextlib import asynccontextmanager
from typing import Any

from api.routes import auth
from fastapi import APIRouter
from config import AppMode, get_settings
from db.database import init_db
from fastapi import FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from services.errors import AuthError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Silence noisy loggers
logging.getLogger("aiosqlite").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown"""

    # === STARTUP ===
    logger.info(f"Starting Session Service in {settings.APP_MODE.value} mode...")

    await init_db()

    logger.info(
        f"Access tokens: {settings.ACCESS_TOKEN_EXPIRE_MINUTES} min, "
        f"refresh tokens: {settings.REFRESH_TOKEN_EXPIRE_DAYS} days, "
        f"limit {settings.REFRESH_TOKEN_LIMIT} per user, "
        f"rotation {'on' if settings.ROTATE_REFRESH_TOKENS else 'off'}"
    )

    # Start periodic refresh token sweep (skip during pytest).
    if "pytest" not in sys.modules:
        auth.start_cleanup_task()

    yield

    # === SHUTDOWN ===
    if "pytest" not in sys.modules:
        auth.stop_cleanup_task()
    logger.info("Shutting down Session Service...")


app = FastAPI(
    title="Session Service",
    description="Access/refresh token lifecycle: issuance, rotation and revocation",
    version="1.0.0",
    lifespan=lifespan,
    debug=(settings.APP_MODE == AppMode.DEV),
)

MAX_ERROR_STRING_CHARS = 400
MAX_ERROR_CONTAINER_ITEMS = 50
MAX_ERROR_DEPTH = 8


def _truncate_string(value: str, max_chars: int = MAX_ERROR_STRING_CHARS) -> str:
    if len(value) <= max_chars:
        return value
    return f"{value[:max_chars]}…(truncated)"


def _sanitize_for_json(value: Any, *, _depth: int = 0) -> Any:
    """
    Make sure error payloads are always UTF-8 encodable.

    RequestValidationError details echo user input. Unpaired surrogates would
    crash the JSON encoder and large inputs would be reflected in full, so
    strings are re-encoded and truncated, containers capped.
    """
    if _depth > MAX_ERROR_DEPTH:
        return "<max depth reached>"
    if value is None:
        return None
    if isinstance(value, (int, float, bool)):
        return value
    if isinstance(value, str):
        safe = value.encode("utf-8", errors="replace").decode("utf-8", errors="replace")
        return _truncate_string(safe)
    if isinstance(value, bytes):
        return _truncate_string(value.decode("utf-8", errors="replace"))
    if isinstance(value, (list, tuple, set)):
        items = list(value)
        out = [_sanitize_for_json(v, _depth=_depth + 1) for v in items[:MAX_ERROR_CONTAINER_ITEMS]]
        if len(items) > MAX_ERROR_CONTAINER_ITEMS:
            out.append(f"... ({len(items) - MAX_ERROR_CONTAINER_ITEMS} more items truncated)")
        return out
    if isinstance(value, dict):
        items = list(value.items())
        result: dict[str, Any] = {}
        for k, v in items[:MAX_ERROR_CONTAINER_ITEMS]:
            result[str(_sanitize_for_json(k, _depth=_depth + 1))] = _sanitize_for_json(v, _depth=_depth + 1)
        if len(items) > MAX_ERROR_CONTAINER_ITEMS:
            result["__truncated__"] = f"{len(items) - MAX_ERROR_CONTAINER_ITEMS} more keys truncated"
        return result
    # Validation contexts can include exception instances
    try:
        return _sanitize_for_json(str(value), _depth=_depth + 1)
    except Exception:
        return "<unserializable>"


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    headers = None
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    safe_errors = _sanitize_for_json(exc.errors())
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": safe_errors},
    )


# Serialize requests during pytest to avoid shared-session flush races
if "pytest" in sys.modules:
    class TestRequestLockMiddleware(BaseHTTPMiddleware):
        _lock = asyncio.Lock()

        async def dispatch(self, request, call_next):
            async with self._lock:
                return await call_next(request)

    app.add_middleware(TestRequestLockMiddleware)

# Request logging (development only)
if settings.APP_MODE == AppMode.DEV:
    from middleware.logging import RequestLoggingMiddleware, configure_request_logging
    configure_request_logging(settings.LOG_LEVEL)
    app.add_middleware(RequestLoggingMiddleware)

# CORS middleware - must be last (first to process incoming requests)
allow_credentials = "*" not in settings.CORS_ORIGINS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Routes - versioned under /api/v1/
api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(auth.router)
app.include_router(api_v1_router)

# Backward compatibility: Also mount routes at /api/ (deprecated)
api_compat_router = APIRouter(prefix="/api", deprecated=True)
api_compat_router.include_router(auth.router)
app.include_router(api_compat_router)


@app.get("/")
async def root():
    return {
        "name": "Session Service API",
        "version": "1.0.0",
        "docs": "/docs",
        "redoc": "/redoc",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "mode": settings.APP_MODE.value,
        "refresh_token_rotation": settings.ROTATE_REFRESH_TOKENS,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=(settings.APP_MODE == AppMode.DEV),
    )
