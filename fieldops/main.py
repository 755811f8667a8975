import os
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .config import settings
from .db import Base, engine, SessionLocal
from .logging import setup_logging, RequestIdMiddleware
from .routes.dispatch import router as dispatch_router
from .services.dispatch import DispatchService

# Register ORM tables on Base.metadata
from .models import models  # noqa: F401


def add_rate_limit(app: FastAPI, limit: str) -> Limiter:
    """Apply a per-client default limit to every route; excess requests get a 429."""
    limiter = Limiter(key_func=get_remote_address, default_limits=[limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    return limiter


def create_app(dispatch_service: Optional[DispatchService] = None, db_engine=None) -> FastAPI:
    setup_logging()
    logger = structlog.get_logger(__name__)
    app = FastAPI(title=settings.app_name)
    db_engine = db_engine or engine

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    add_rate_limit(app, settings.rate_limit)

    app.state.dispatch_service = dispatch_service or DispatchService.from_session_factory(SessionLocal)

    # Routers
    app.include_router(dispatch_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if db_engine is engine and settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=db_engine)
            logger.info("tables_verified", tables=sorted(Base.metadata.tables.keys()))

    return app


app = create_app()
