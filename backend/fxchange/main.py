"""FXchange — FastAPI Application Entry Point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.orm import sessionmaker

from fxchange.config import settings
from fxchange.core.logging import setup_logging
from fxchange.core.realtime import PresenceTracker, RealtimeHub
from fxchange.core.scheduler import MarketScheduler
from fxchange.database import Base, SessionLocal, get_db
from fxchange.errors import MarketplaceError
from fxchange.middleware.rate_limit import limiter
from fxchange.routers import auth, stuff, auctions, transactions, users
from fxchange.services.notification_service import EmailSender, LoggingEmailSender, OutboxDispatcher

logger = logging.getLogger(__name__)


def create_app(
    session_factory: Optional[sessionmaker] = None,
    enable_scheduler: Optional[bool] = None,
    email_sender: Optional[EmailSender] = None,
) -> FastAPI:
    """Build the application.

    ``session_factory`` replaces the default ``SessionLocal`` for both request
    handling and background jobs; tests pass one bound to an in-memory
    database.
    """
    factory = session_factory or SessionLocal
    run_scheduler = settings.SCHED_ENABLE if enable_scheduler is None else enable_scheduler

    hub = RealtimeHub()
    presence = PresenceTracker()
    dispatcher = OutboxDispatcher(hub, email_sender or LoggingEmailSender())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        Base.metadata.create_all(bind=factory.kw["bind"])
        if run_scheduler:
            scheduler = MarketScheduler(factory, dispatcher)
            scheduler.start()
            app.state.scheduler = scheduler
        logger.info("FXchange API started (scheduler=%s)", run_scheduler)
        yield
        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None:
            scheduler.shutdown()
            app.state.scheduler = None
        hub.clear()

    app = FastAPI(
        title="FXchange",
        description="Marketplace, barter and auction backend.",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.hub = hub
    app.state.presence = presence
    app.state.dispatcher = dispatcher
    app.state.scheduler = None

    if session_factory is not None:
        def _get_db():
            db = factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _get_db

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        message = str(exc) if settings.DEBUG else "Internal server error"
        return JSONResponse(status_code=500, content={"status": 500, "code": "INTERNAL", "message": message})

    # CORS
    cors_origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(auth.router)
    app.include_router(stuff.router)
    app.include_router(auctions.router)
    app.include_router(transactions.router)
    app.include_router(users.router)

    @app.get("/health")
    def health():
        return {"status": "ok", "scheduler": bool(app.state.scheduler and app.state.scheduler.running)}

    return app


app = create_app()
