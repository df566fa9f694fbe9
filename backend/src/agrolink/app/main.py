"""FastAPI application entry point for the AgroLink API."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agrolink.app.config import get_settings
from agrolink.app.errors import register_error_handlers
from agrolink.infra.database import init_db
from agrolink.infra.instamojo import InstamojoClient
from agrolink.services.email_service import Mailer
from agrolink.services.realtime import ConnectionManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database and shared clients."""
    await init_db()

    settings = get_settings()
    app.state.gateway = InstamojoClient(settings.instamojo_config())
    app.state.mailer = Mailer(settings.mail_config())
    app.state.realtime = ConnectionManager()
    if not app.state.gateway.configured:
        logger.warning("Instamojo credentials missing; payment creation will fail")
    if not settings.sendgrid_api_key:
        logger.warning("SENDGRID_API_KEY not set; emails will be skipped")

    yield

    await app.state.gateway.aclose()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="AgroLink API",
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

register_error_handlers(app, settings.debug)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from agrolink.app.routes.auth import router as auth_router
from agrolink.app.routes.products import router as products_router
from agrolink.app.routes.contracts import router as contracts_router
from agrolink.app.routes.chat import router as chat_router
from agrolink.app.routes.notifications import router as notifications_router
from agrolink.app.routes.payments import router as payments_router
from agrolink.app.routes.ws import router as ws_router

app.include_router(auth_router)
app.include_router(products_router)
app.include_router(contracts_router)
app.include_router(chat_router)
app.include_router(notifications_router)
app.include_router(payments_router)
app.include_router(ws_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "agrolink"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "agrolink.app.main:app",
        host="0.0.0.0",
        port=4000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
