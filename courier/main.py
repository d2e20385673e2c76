"""FastAPI application wiring for Courier.

The API exposes the messaging pipeline over provider-neutral JSON routes:

- Outbox task enqueueing and scheduling.
- Outbound message queueing and operator retries.
- Inbound message recording and delivery-status callbacks.
- Provider health and thread history reads.

Run with ``uvicorn courier.main:app``. The outbox itself is drained by the
``courier-worker`` process, never by the API.
"""

from __future__ import annotations

import logging

from dotenv import load_dotenv
from fastapi import FastAPI
from sqlalchemy.orm import Session, sessionmaker

from .__version__ import __version__
from .app_logging import init_logging
from .routers import messaging

load_dotenv()

logger = logging.getLogger(__name__)


def create_app(session_factory: sessionmaker[Session] | None = None) -> FastAPI:
    """Build the API; ``session_factory`` defaults to one built from DATABASE_URL."""

    app = FastAPI(title="Courier", version=__version__)
    init_logging(app)
    app.state.session_factory = session_factory
    app.include_router(messaging.router)

    @app.get("/api/health")
    async def health():
        """Liveness/readiness check with a minimal JSON body."""
        return {"status": "ok"}

    @app.get("/api/version")
    async def version():
        return {"version": __version__}

    return app


app = create_app()
