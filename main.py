from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from crm.core.config import settings
from crm.core.database import AsyncSessionLocal, engine, init_db
from crm.core.logging_config import setup_logging
from crm.core.middleware import RequestContextMiddleware, SecurityHeadersMiddleware
from crm.core.rate_limit import build_rate_limiter
from crm.domain.accounts import models as account_models  # noqa: F401
from crm.domain.security import models as security_models  # noqa: F401
from crm.services.mailer import Mailer
from crm.web.routes import account, admin, auth, health, two_factor

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and the long-lived collaborators; dispose the engine on exit."""
    await init_db()
    app.state.rate_limiter = build_rate_limiter(
        settings.RATE_LIMIT_BACKEND,
        AsyncSessionLocal,
        timeout_seconds=settings.RATE_LIMIT_TIMEOUT_SECONDS,
    )
    app.state.mailer = Mailer(settings)
    yield
    await engine.dispose()


# Create FastAPI app
app = FastAPI(
    title="CRM Auth",
    description="Authentication, two-factor and authorization core of the CRM",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.ALLOWED_HOSTS,
)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# Include routers
app.include_router(auth.router, tags=["auth"])
app.include_router(two_factor.router, tags=["two-factor"])
app.include_router(account.router, tags=["account"])
app.include_router(admin.router, tags=["admin"])
app.include_router(health.router, tags=["health"])


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    """Render ``{"detail": ...}`` plus any extra fields a service attached."""
    content = {"detail": exc.detail}
    content.update(getattr(exc, "extra", None) or {})
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None),
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
