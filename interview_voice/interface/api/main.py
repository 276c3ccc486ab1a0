from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ...application.sessions import SessionManager
from ...core.config import Settings, get_settings
from ...core.logging import setup_logging
from .routers import health, interview, providers, sessions

logger = structlog.get_logger(__name__)


def create_app(manager: Optional[SessionManager] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API. Provider gateways are wired at startup unless a
    ready-made session manager is passed in.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.session_manager is None:
            app.state.session_manager = SessionManager(settings)
        logger.info("app_started", environment=settings.ENVIRONMENT.value,
                    providers=app.state.session_manager.provider_status())
        yield
        await app.state.session_manager.shutdown()
        logger.info("app_stopped")

    app = FastAPI(
        title=settings.APP_NAME,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_manager = manager

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For development only
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, prefix=settings.API_PREFIX)
    app.include_router(providers.router, prefix=settings.API_PREFIX)
    app.include_router(sessions.router, prefix=settings.API_PREFIX)
    app.add_api_websocket_route(settings.WEBSOCKET_PATH, interview.interview_socket)
    return app
