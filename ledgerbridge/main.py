"""
FastAPI application factory.

Startup is fatal when ENCRYPTION_KEY (or SESSION_SECRET) is missing or
too short. Provider OAuth settings are checked lazily; a missing provider
only fails the routes that need it.

Run with:
    uvicorn --factory ledgerbridge.main:create_app
"""

import logging

from dotenv import load_dotenv
from fastapi import FastAPI

from ledgerbridge.api.routes import auth, connections, shipping, sync, webhooks_crm
from ledgerbridge.credentials.encryption import validate_encryption_ready
from ledgerbridge.credentials.redaction import setup_credential_logging
from ledgerbridge.database.session import init_db
from ledgerbridge.platform.errors import ErrorHandlerMiddleware

logger = logging.getLogger(__name__)


def create_app(create_tables: bool = True) -> FastAPI:
    load_dotenv()
    validate_encryption_ready()
    setup_credential_logging()
    if create_tables:
        init_db()

    app = FastAPI(title="LedgerBridge")
    app.add_middleware(ErrorHandlerMiddleware)

    app.include_router(auth.router)
    app.include_router(connections.router)
    app.include_router(shipping.router)
    app.include_router(sync.router)
    app.include_router(webhooks_crm.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    logger.info("LedgerBridge application created")
    return app
