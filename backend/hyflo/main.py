"""FastAPI application."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .auth import VALIDATE_READING, RoleAuthorizationProvider
from .config import DEFAULT_JWT_SECRET, Settings, settings as default_settings
from .domain import VALIDATORS_ROLE
from .domain_errors import DomainError
from .problem_details import domain_error_handler
from .routers import notifications, readings, thresholds
from .services.notification_hub import NotificationHub
from .services.reading_state import ReadingStateMachine
from .services.workflow import ValidationWorkflowService
from .stores.base import AuthorizationProvider, NotificationStore, ReadingStore
from .stores.notifications import InMemoryNotificationStore

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def check_production_settings(app_settings: Settings) -> None:
    """Fail closed on insecure production config."""
    if not app_settings.is_production:
        return
    if app_settings.JWT_SECRET_KEY == DEFAULT_JWT_SECRET:
        raise RuntimeError("JWT_SECRET_KEY must be changed in production.")
    if not app_settings.cors_origins:
        raise RuntimeError("ALLOWED_ORIGINS must be set in production (explicit frontend origin required).")
    if any(origin == "*" for origin in app_settings.cors_origins):
        raise RuntimeError("ALLOWED_ORIGINS must be explicit in production (no wildcard when using credentials).")


def create_app(
    app_settings: Settings | None = None,
    *,
    reading_store: ReadingStore | None = None,
    notification_store: NotificationStore | None = None,
    authorization: AuthorizationProvider | None = None,
) -> FastAPI:
    """Build the app and its services; collaborators can be injected for tests."""
    app_settings = app_settings or default_settings
    check_production_settings(app_settings)
    configure_logging(app_settings.LOG_LEVEL)

    authorization = authorization or RoleAuthorizationProvider()
    role_authorities = {VALIDATORS_ROLE: app_settings.VALIDATOR_AUTHORITY}
    notification_store = notification_store or InMemoryNotificationStore(
        authorization=authorization,
        role_authorities=role_authorities,
    )
    uses_database = reading_store is None
    if reading_store is None:
        from .database import SessionLocal
        from .stores.sqlalchemy_store import SqlAlchemyReadingStore

        reading_store = SqlAlchemyReadingStore(SessionLocal)

    hub = NotificationHub(
        authorization=authorization,
        notification_store=notification_store,
        role_authorities=role_authorities,
    )
    workflow = ValidationWorkflowService(
        store=reading_store,
        authorization=authorization,
        hub=hub,
        notification_store=notification_store,
        state_machine=ReadingStateMachine(
            notes_max_length=app_settings.NOTES_MAX_LENGTH,
            rejection_reason_min_length=app_settings.REJECTION_REASON_MIN_LENGTH,
        ),
        validator_authority=app_settings.VALIDATOR_AUTHORITY or VALIDATE_READING,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if uses_database:
            from .database import init_db

            init_db()
        logger.info("%s %s started (env=%s)", app_settings.APP_NAME, __version__, app_settings.ENV)
        yield
        await hub.close_all()
        logger.info("%s stopped", app_settings.APP_NAME)

    app = FastAPI(
        title="HyFlo Reading Workflow",
        version=__version__,
        description="Flow reading validation workflow with live validator notifications",
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.authorization = authorization
    app.state.reading_store = reading_store
    app.state.notification_store = notification_store
    app.state.hub = hub
    app.state.workflow = workflow

    app.add_exception_handler(DomainError, domain_error_handler)

    # CORS
    cors_headers = ["Authorization", "Content-Type"]
    if not app_settings.is_production:
        cors_headers = ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=cors_headers,
    )

    # Include routers
    app.include_router(readings.router, prefix="/api/v1")
    app.include_router(notifications.router, prefix="/api/v1")
    app.include_router(thresholds.router, prefix="/api/v1")

    @app.get("/api/v1/system/health")
    def health_check():
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": __version__,
            "sessions": hub.session_count,
        }

    return app


app = create_app()
