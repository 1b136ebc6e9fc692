"""
ascribe HTTP service.

Routers under /api/v1:
  documents   upload, presigned upload, read, finalize, delete
  questions   generate + list
  search      caller-scoped full-text search
  events      S3 object-created and Textract SNS webhooks → Celery

Every /api/v1 route except the webhooks needs a Cognito bearer token; its
``sub`` is the userId and any {userId} in the path must equal it.

Request path, outermost first: request-id + access log, CORS, gzip. Errors of
every kind leave through one of the handlers below as an ErrorResponse
carrying ``error_code`` and ``request_id``.

/health and /ready are unauthenticated health checks.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from ascribe.api.errors import error_response
from ascribe.api.v1.documents import router as documents_router
from ascribe.api.v1.events import router as events_router
from ascribe.api.v1.questions import router as questions_router
from ascribe.api.v1.search import router as search_router
from ascribe.core.config import Settings, get_settings
from ascribe.core.errors import AscribeError, SearchIndexError
from ascribe.schemas.documents import ErrorDetail, ErrorResponse
from ascribe.services.registry import get_services

logger = logging.getLogger(__name__)

_INVALID_REQUEST = "Request validation failed."


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: log config summary, make sure the search index exists.
    The index is optional, so a failure there is logged and startup continues.
    """
    settings: Settings = app.state.settings
    logger.info(
        "Starting ascribe | env=%s bucket=%s model=%s search=%s",
        settings.app_env, settings.documents_bucket, settings.bedrock_model_id,
        "on" if settings.search_enabled else "off",
    )
    logger.info("Auth issuer: %s", settings.auth_issuer or "-")

    if settings.search_enabled:
        try:
            await get_services().search.ensure_index()
        except SearchIndexError:
            logger.warning("Search index check failed at startup, continuing", exc_info=True)

    yield

    logger.info("Shutting down ascribe")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Ascribe Document Ingestion API",
        description=(
            "Scanned-document ingestion: OCR with Textract, cleanup and tagging "
            "with Bedrock, human review, and quiz question generation."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order, last added is outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    allowed_origins = ["*"] if settings.app_env == "development" else []
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Document-ID", "Location"],
    )

    # ----------------------------------------------------------------
    # Request id + access log (outermost)
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        request.state.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        t0 = time.monotonic()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        logger.info(
            "%s %s | status=%d elapsed_ms=%.1f request_id=%s",
            request.method, request.url.path, response.status_code,
            (time.monotonic() - t0) * 1000, request.state.request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    def _request_id(request: Request) -> str:
        return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or str(uuid.uuid4())

    @app.exception_handler(AscribeError)
    async def on_ascribe_error(request: Request, exc: AscribeError):
        request_id = _request_id(request)
        if exc.status_code >= 500:
            logger.error(
                "Request failed | path=%s request_id=%s code=%s error=%s",
                request.url.path, request_id, exc.error_code, exc,
            )
        else:
            logger.info(
                "Request rejected | path=%s request_id=%s code=%s",
                request.url.path, request_id, exc.error_code,
            )
        status_code, body = error_response(exc, settings.expose_stack_traces, request_id)
        return JSONResponse(status_code=status_code, content=body.to_body(), headers={"X-Request-ID": request_id})

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        # 401 / 403 from auth and ownership checks
        request_id = _request_id(request)
        codes = {401: "UNAUTHORIZED", 403: "FORBIDDEN", 404: "NOT_FOUND", 503: "SERVICE_UNAVAILABLE"}
        message = exc.detail if isinstance(exc.detail, str) else "Request failed."
        body = ErrorResponse(
            error=message,
            error_code=codes.get(exc.status_code, "HTTP_ERROR"),
            message=message,
            request_id=request_id,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=body.to_body(),
            headers={**(exc.headers or {}), "X-Request-ID": request_id},
        )

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=".".join(str(loc) for loc in err["loc"] if loc != "body"),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error=_INVALID_REQUEST,
            error_code="VALIDATION_ERROR",
            message=_INVALID_REQUEST,
            details=details,
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.to_body(),
        )

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        status_code, body = error_response(exc, settings.expose_stack_traces, request_id)
        return JSONResponse(
            status_code=status_code,
            content=body.to_body(),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(questions_router, prefix="/api/v1")
    app.include_router(search_router,    prefix="/api/v1")
    app.include_router(events_router,    prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health checks (no auth)
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Process is up; touches nothing external")
    async def health() -> dict:
        return {"status": "ok", "service": "ascribe-api"}

    @app.get("/ready", tags=["Operations"], summary="Documents bucket is reachable")
    async def ready() -> JSONResponse:
        storage = await get_services().objects.check_health(settings.documents_bucket)
        ok = storage["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "ready" if ok else "not_ready", "storage": storage},
        )

    return app


# uvicorn ascribe.main:app
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="debug" if app.state.settings.debug else "info")
