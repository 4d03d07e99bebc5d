"""FastAPI application factory."""

from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from staymerge.config import Settings
from staymerge.errors import StayMergeError
from staymerge.logging import configure_logging, get_logger
from staymerge.models import Platform
from staymerge.scrapers import BaseScraper
from staymerge.service import ListingService

logger = get_logger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


async def _staymerge_error(request: Request, exc: StayMergeError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request_failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
        status=exc.status_code,
    )
    return JSONResponse(
        {"error": str(exc), "retryable": exc.retryable},
        status_code=exc.status_code,
    )


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("request_invalid", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse(
        {"error": "Invalid request", "details": _jsonable_errors(exc), "retryable": False},
        status_code=400,
    )


def _jsonable_errors(exc: RequestValidationError) -> list[dict[str, object]]:
    return [
        {"loc": list(err.get("loc", ())), "msg": str(err.get("msg", ""))} for err in exc.errors()
    ]


def install_error_handlers(app: FastAPI) -> None:
    """Map the staymerge error taxonomy (and bad request bodies) to JSON responses."""
    app.exception_handler(StayMergeError)(_staymerge_error)
    app.exception_handler(RequestValidationError)(_validation_error)


def create_app(
    settings: Settings | None = None,
    *,
    service: ListingService | None = None,
    scrapers: Mapping[Platform, BaseScraper] | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Application settings. Loaded from env if not provided.
        service: Pre-built listing service (tests inject one over an
            in-memory store). Built from ``settings`` if not provided.
        scrapers: Scrapers used to refresh listings, keyed by platform.
    """
    if settings is None:
        settings = Settings()

    configure_logging(json_output=False)

    if service is None:
        service = ListingService.from_settings(settings, scrapers=scrapers)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        service.start()
        logger.info(
            "web_server_started",
            downloads=str(settings.downloads_path),
            embeddings=settings.enable_embeddings,
        )

        yield

        await service.close()
        logger.info("web_server_stopped")

    app = FastAPI(title="StayMerge", lifespan=lifespan)
    app.state.service = service
    app.state.settings = settings

    app.add_middleware(SecurityHeadersMiddleware)
    install_error_handlers(app)

    # Listing folders (images, metadata) are served as-is
    settings.downloads_path.mkdir(parents=True, exist_ok=True)
    app.mount(
        "/downloads",
        StaticFiles(directory=settings.downloads_path),
        name="downloads",
    )

    from staymerge.web.routes import router

    app.include_router(router)

    return app
