"""
FastAPI application entry point for the site backend.

``create_app`` builds the record store, attachment store, key locks and
identity provider, and owns their lifecycle.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from sitebackend.attachments import AttachmentStore
from sitebackend.config import Settings, get_settings
from sitebackend.engine import PartialUpdateEngine
from sitebackend.errors import SiteBackendError
from sitebackend.identity import (
    FirebaseIdentityProvider,
    IdentityProvider,
    InMemoryIdentityProvider,
)
from sitebackend.locks import InMemoryKeyLocks, KeyLocks, RedisKeyLocks
from sitebackend.records import InMemoryRecordStore, RecordStore, SqlRecordStore
from sitebackend.routes import router
from sitebackend.schemas import Envelope, ErrorBody

logger = logging.getLogger(__name__)


def build_record_store(settings: Settings) -> RecordStore:
    if settings.use_in_memory_backends or not settings.database_url:
        logger.info("Using in-memory record store")
        return InMemoryRecordStore()
    return SqlRecordStore(settings.database_url)


def build_key_locks(settings: Settings) -> KeyLocks:
    if settings.redis_url:
        return RedisKeyLocks(url=settings.redis_url, timeout=settings.lock_timeout_seconds)
    return InMemoryKeyLocks()


def build_identity_provider(settings: Settings) -> IdentityProvider:
    if settings.use_in_memory_backends or not (
        settings.firebase_credentials_path or settings.firebase_project_id
    ):
        logger.warning("Firebase is not configured; user deletions stay local")
        return InMemoryIdentityProvider()
    return FirebaseIdentityProvider(
        credentials_path=settings.firebase_credentials_path,
        project_id=settings.firebase_project_id,
    )


def _error_response(
    status_code: int,
    message: str,
    kind: str,
    detail: Optional[str] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    body = Envelope(
        success=False,
        message=message,
        error=ErrorBody(kind=kind, detail=detail, field=field),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


def install_error_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(SiteBackendError)
    async def handle_backend_error(request: Request, exc: SiteBackendError):
        if exc.status_code >= 500:
            logger.error(
                "%s %s failed: %s (%s)", request.method, request.url.path, exc, exc.detail
            )
        detail = None if settings.is_production else exc.detail
        return _error_response(
            exc.status_code,
            exc.message,
            exc.kind,
            detail=detail,
            field=getattr(exc, "field", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ())[1:]) or None
        return _error_response(
            400,
            first.get("msg", "Invalid request"),
            "validation_error",
            field=field,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        message = "Route not found" if exc.status_code == 404 else str(exc.detail)
        return _error_response(exc.status_code, message, "http_error")

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        detail = "Something went wrong" if settings.is_production else str(exc)
        return _error_response(500, "Internal server error", "internal_error", detail)


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[RecordStore] = None,
    attachments: Optional[AttachmentStore] = None,
    locks: Optional[KeyLocks] = None,
    identity: Optional[IdentityProvider] = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    store = store or build_record_store(settings)
    attachments = attachments or AttachmentStore(
        settings.uploads_dir, settings.uploads_url_prefix
    )
    engine = PartialUpdateEngine(
        store,
        attachments,
        locks or build_key_locks(settings),
        max_upload_bytes=settings.max_upload_bytes,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        store.close()

    app = FastAPI(title="Site Backend", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.identity = identity or build_identity_provider(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.info(
            "%s %s - Origin: %s -> %d",
            request.method,
            request.url.path,
            request.headers.get("origin", "No Origin"),
            response.status_code,
        )
        return response

    install_error_handlers(app, settings)
    app.include_router(router, prefix=settings.api_prefix)
    app.mount(
        settings.uploads_url_prefix,
        StaticFiles(directory=settings.uploads_dir, check_dir=False),
        name="uploads",
    )

    @app.get("/", response_model=Envelope)
    def index():
        return Envelope(
            success=True,
            message="Site backend is running",
            data={
                "environment": settings.environment,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "version": app.version,
            },
        )

    @app.get("/health", response_model=Envelope)
    def health():
        store.ping()
        return Envelope(
            success=True,
            message="Server & Database OK",
            data={"database": type(store).__name__, "status": "connected"},
        )

    return app


app = create_app()
