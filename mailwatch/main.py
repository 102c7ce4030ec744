"""MailWatch - Main FastAPI Application

Mailbox webhook service: keeps Microsoft Graph subscriptions alive and
forwards relevant new mail to downstream processing.

This module creates and configures the FastAPI application, including:
- Lifespan-managed services (Graph clients, subscription manager,
  renewal scheduler, dedup cache, notification dispatcher)
- Middleware (request ID correlation)
- Exception handlers
- Webhook, subscription, maintenance and observability routers
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import httpx
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, get_settings
from .database import SessionLocal
from .graph.auth import TokenProvider
from .graph.client import GraphClient, GraphSubscriptionClient
from .graph.errors import (
    GraphAPIError,
    GraphAuthError,
    GraphNotFoundError,
    GraphPermissionError,
    GraphTransientError,
)
from .graph.mail_reader import GraphMailReader
from .observability.logging_config import configure_logging
from .observability.middleware import RequestIDMiddleware
from .observability.router import router as observability_router
from .rules.engine import RuleMatchingEngine
from .rules.repository import RuleRepository
from .storage.attachments import S3AttachmentStore
from .subscriptions.errors import SubscriptionGoneError, SubscriptionNotFoundError
from .subscriptions.repository import SubscriptionRepository
from .subscriptions.router import router as subscriptions_router
from .subscriptions.scheduler import RenewalScheduler
from .subscriptions.service import SubscriptionManager
from .webhooks.dedup import DedupCache, DedupSweeper
from .webhooks.dispatcher import NotificationDispatcher
from .webhooks.forwarder import Forwarder
from .webhooks.repository import NotificationRepository
from .webhooks.router import maintenance_router, router as webhooks_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    - Startup: build services, arm renewal timers, start background loops
    - Shutdown: stop loops, close HTTP clients
    """
    settings: Settings = app.state.settings
    logger.info("MailWatch starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    graph_http = httpx.AsyncClient(timeout=httpx.Timeout(settings.GRAPH_TIMEOUT_SECONDS))
    forward_http = httpx.AsyncClient(timeout=httpx.Timeout(settings.FORWARD_TIMEOUT_SECONDS))

    tokens = TokenProvider(
        graph_http,
        token_url=settings.graph_token_url,
        client_id=settings.GRAPH_CLIENT_ID,
        client_secret=settings.GRAPH_CLIENT_SECRET,
        scope=settings.GRAPH_SCOPE,
    )
    graph = GraphClient(graph_http, tokens, settings.GRAPH_API_URL)

    subscription_repository = SubscriptionRepository(SessionLocal)
    manager = SubscriptionManager.from_settings(
        settings, subscription_repository, GraphSubscriptionClient(graph)
    )
    scheduler = RenewalScheduler.from_settings(settings, manager)

    dedup = DedupCache(ttl=timedelta(minutes=settings.DEDUP_TTL_MINUTES))
    dedup_sweeper = DedupSweeper(dedup, interval=timedelta(minutes=settings.DEDUP_SWEEP_MINUTES))

    dispatcher = NotificationDispatcher(
        subscriptions=subscription_repository,
        records=NotificationRepository(SessionLocal),
        mail_reader=GraphMailReader(graph),
        engine=RuleMatchingEngine(RuleRepository(SessionLocal), fail_open=settings.RULE_ENGINE_FAIL_OPEN),
        dedup=dedup,
        forwarder=Forwarder(forward_http, settings.AUTOMATION_URL, settings.FORWARD_TIMEOUT_SECONDS),
        attachment_store=S3AttachmentStore.from_settings(settings),
        supported_suppliers=settings.supported_suppliers,
    )

    app.state.subscription_manager = manager
    app.state.scheduler = scheduler
    app.state.dispatcher = dispatcher
    app.state.dedup = dedup

    if settings.SCHEDULER_ENABLED:
        try:
            scheduler.bootstrap()
        except SQLAlchemyError as e:
            logger.error(f"Could not arm renewal timers at startup: {e}")
        scheduler.start()
    dedup_sweeper.start()

    yield

    # Shutdown
    logger.info("MailWatch shutting down...")
    await scheduler.stop()
    await dedup_sweeper.stop()
    await graph_http.aclose()
    await forward_http.aclose()


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle Pydantic validation errors with field-level details."""
        logger.warning(f"Validation error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "validation_error",
                "message": "Request validation failed",
                "details": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(GraphAuthError)
    async def graph_auth_exception_handler(request: Request, exc: GraphAuthError) -> JSONResponse:
        logger.error(f"Graph authentication failed on {request.url.path}: {exc}")
        return _error(
            status.HTTP_502_BAD_GATEWAY,
            "graph_auth_error",
            "Authentication with Microsoft Graph failed. Check the application credentials.",
        )

    @app.exception_handler(GraphPermissionError)
    async def graph_permission_exception_handler(request: Request, exc: GraphPermissionError) -> JSONResponse:
        logger.error(f"Graph permission denied on {request.url.path}: {exc}")
        return _error(
            status.HTTP_403_FORBIDDEN,
            "graph_permission_denied",
            "The application lacks the Graph permission required for this mailbox.",
        )

    @app.exception_handler(GraphNotFoundError)
    async def graph_not_found_exception_handler(request: Request, exc: GraphNotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "graph_not_found", str(exc))

    @app.exception_handler(GraphTransientError)
    async def graph_transient_exception_handler(request: Request, exc: GraphTransientError) -> JSONResponse:
        logger.warning(f"Graph unavailable on {request.url.path}: {exc}")
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "graph_unavailable",
            "Microsoft Graph is temporarily unavailable. Please try again later.",
        )

    @app.exception_handler(GraphAPIError)
    async def graph_exception_handler(request: Request, exc: GraphAPIError) -> JSONResponse:
        logger.error(f"Graph request failed on {request.url.path}: {exc}")
        return _error(status.HTTP_502_BAD_GATEWAY, "graph_error", str(exc))

    @app.exception_handler(SubscriptionNotFoundError)
    async def subscription_not_found_handler(request: Request, exc: SubscriptionNotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "subscription_not_found", str(exc))

    @app.exception_handler(SubscriptionGoneError)
    async def subscription_gone_handler(request: Request, exc: SubscriptionGoneError) -> JSONResponse:
        return _error(status.HTTP_410_GONE, "subscription_gone", str(exc))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, "invalid_request", str(exc))

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        """Log the full error but return a generic message."""
        logger.error(f"Database error on {request.method} {request.url.path}", exc_info=exc)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "database_error",
            "A database error occurred. Please try again later.",
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all: details are logged, not exposed."""
        logger.error(f"Unhandled exception on {request.method} {request.url.path}", exc_info=exc)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "internal_error",
            "An unexpected error occurred. Please try again later.",
        )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application.

    Services are created in the lifespan; tests that skip the lifespan
    inject their own through app.dependency_overrides.
    """
    settings = settings or get_settings()
    configure_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)

    is_production = settings.ENVIRONMENT == "production"
    app = FastAPI(
        title="MailWatch API",
        description="Mailbox webhook subscriptions and notification forwarding",
        version="0.1.0",
        docs_url=None if is_production else "/docs",
        redoc_url=None if is_production else "/redoc",
        openapi_url=None if is_production else "/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Request ID Middleware (must be first for proper correlation)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(webhooks_router)
    app.include_router(maintenance_router)
    app.include_router(subscriptions_router)
    app.include_router(observability_router)

    @app.get("/")
    async def root():
        return {"name": "MailWatch API", "version": "0.1.0", "status": "running"}

    return app


app = create_app()
