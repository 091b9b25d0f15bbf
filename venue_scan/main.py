from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .capture import OpenCVCamera, QRDecoder
from .config import get_settings
from .database import Base, engine
from .notifications import build_dispatcher
from .observability import RequestTimingLoggingMiddleware, add_exception_handlers
from .routers import health
from .routers import codes as codes_router
from .routers import credits as credits_router
from .routers import scanner as scanner_router
from .routers import scans as scans_router
from .sessions import SessionRegistry
from .store import SqlAlchemyStore


# Ensure schema is present when the module is imported (helps tests using TestClient without lifespan)
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    yield
    # Cameras must be released before the process exits
    await app.state.sessions.close_all()
    app.state.dispatcher.shutdown(wait=False)
    logging.getLogger(__name__).info("scan sessions closed")


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title="Venue Scan API", version="0.1.0", lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(RequestTimingLoggingMiddleware)

    add_exception_handlers(application)

    dispatcher = build_dispatcher(settings)
    application.state.dispatcher = dispatcher
    application.state.sessions = SessionRegistry.from_settings(settings, SqlAlchemyStore(), dispatcher)
    application.state.camera_factory = OpenCVCamera
    application.state.decoder_factory = QRDecoder

    # Routers
    application.include_router(health.router)
    application.include_router(scans_router.router)
    application.include_router(scanner_router.router)
    application.include_router(codes_router.router)
    application.include_router(credits_router.router)

    return application


app = create_app()
