"""
Wearable OAuth credential service — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from config.settings import Settings, config
from connectors.manager import CredentialManager, build_credential_manager
from connectors.routes import register_error_handlers, router as wearables_router
from database.session import async_session_factory, create_tables, engine

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[CredentialManager] = None,
) -> FastAPI:
    settings = settings or config
    app = FastAPI(
        title="Wearable OAuth Credential Service",
        version="1.0.0",
        description="PKCE authorization, encrypted storage, rotation and revocation of wearable credentials.",
    )
    app.state.settings = settings
    app.state.credential_manager = manager

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)
    register_error_handlers(app)

    # Routes
    app.include_router(wearables_router, prefix="/api/v1/wearables")

    @app.on_event("startup")
    async def on_startup():
        if settings.auto_create_tables:
            logger.info("Creating database tables…")
            await create_tables(engine)

        if app.state.credential_manager is None:
            logger.info("Validating OAuth configuration…")
            app.state.credential_manager = build_credential_manager(settings, async_session_factory)

        if settings.encrypt_legacy_tokens_on_startup:
            migrated = await app.state.credential_manager.rotation.encrypt_legacy_connections()
            if migrated:
                logger.info("Encrypted %d legacy connection(s) at startup", migrated)

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
