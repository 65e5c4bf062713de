"""FastAPI application entry point for the Pre-Market Platform API."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from premarket_platform.app.config import get_settings
from premarket_platform.domain.errors import AccessError
from premarket_platform.infra.database import init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database on startup."""
    await init_db()
    yield


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Pre-Market Platform API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware: allow all origins in debug mode for LAN/IP access
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


async def access_error_handler(request: Request, exc: AccessError) -> JSONResponse:
    """Render domain errors as {"detail", "code"} with their HTTP status."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


app.add_exception_handler(AccessError, access_error_handler)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from premarket_platform.app.routes.auth import router as auth_router
from premarket_platform.app.routes.grant_access import (
    admin_router as admin_grant_access_router,
    payment_admin_router,
    router as grant_access_router,
)
from premarket_platform.app.routes.pre_market import agents_router, router as pre_market_router
from premarket_platform.app.routes.payments_webhook import router as payments_webhook_router

app.include_router(auth_router)
app.include_router(grant_access_router)
app.include_router(admin_grant_access_router)
app.include_router(payment_admin_router)
app.include_router(pre_market_router)
app.include_router(agents_router)
app.include_router(payments_webhook_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "premarket-platform"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "premarket_platform.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
