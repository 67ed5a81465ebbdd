"""
Social analytics sync service — application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from api.routes import router as api_router
from config.settings import config
from connectors.encryption import is_encryption_configured
from connectors.registry import ConnectorRegistry
from database.session import create_tables

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "asyncpg", "sqlalchemy.engine"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Social Analytics Sync",
        version="1.0.0",
        description="Token lifecycle and data sync core for multi-tenant social analytics.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return {"ok": True, "status": "healthy"}

    @app.on_event("startup")
    async def on_startup():
        is_encryption_configured()
        if config.db_auto_create:
            await create_tables()
        if not config.cron_secret:
            logger.warning("CRON_SECRET not set — cron triggers will answer 500")

        registry = ConnectorRegistry()
        configured = registry.list_configured()
        logger.info("Configured connectors: %s", ", ".join(configured) or "none")
        if config.demo_mode:
            logger.info("DEMO_MODE on — every platform uses the mock connector")

        logger.info("Application ready to accept requests.")

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
