from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from gradeportal.core.config import Settings, settings
from gradeportal.core.errors import InvalidIdentity, StorageUnavailable
from gradeportal.core.observability import (
    http_exception_handler,
    invalid_identity_handler,
    request_logging_middleware,
    setup_observability,
    storage_unavailable_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from gradeportal.db.session import engine
from gradeportal.routers import login_guard, security_admin

_LOCAL_ORIGIN_REGEX = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"


def cors_options(config: Settings) -> dict:
    origins = config.cors_origins or ["http://localhost:3000"]
    allow_all = "*" in origins
    origin_regex = config.cors_origin_regex
    if not origin_regex and config.env.lower().strip() in {"dev", "development", "staging", "stage"}:
        # The admin UI dev server picks a free localhost port.
        origin_regex = _LOCAL_ORIGIN_REGEX
    return {
        "allow_origins": ["*"] if allow_all else origins,
        "allow_origin_regex": origin_regex,
        "allow_credentials": not allow_all,
        "allow_methods": ["*"],
        "allow_headers": ["*"],
    }


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Login guard API for the Grade Portal.\n\n"
        "Login flow:\n"
        "1. Call `GET /auth/login-guard/status` before verifying credentials.\n"
        "2. Verify credentials with the identity provider.\n"
        "3. Report the outcome with `POST /auth/login-guard/attempts`.\n\n"
        "Admin routes under `/admin/security` require the `X-Admin-Token` header."
    ),
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "auth", "description": "Login rate limiting and account lockout checks."},
        {"name": "security", "description": "Operator views and overrides for lockouts and security events."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(InvalidIdentity, invalid_identity_handler)
app.add_exception_handler(StorageUnavailable, storage_unavailable_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)
app.add_middleware(CORSMiddleware, **cors_options(settings))

app.include_router(login_guard.router)
app.include_router(security_admin.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return {"ok": False}
    return {"ok": True}
