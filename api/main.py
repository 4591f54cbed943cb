"""adoq API service.

FastAPI application answering natural-language questions about Azure DevOps
work items. Long-lived clients are created in the lifespan and exposed to
routes through ``api.dependencies``.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from api.dependencies import ServiceContainer
from api.models import HealthResponse
from api.routers import (
    chat as chat_router,
    collections as collections_router,
    conversations as conversations_router,
    metadata as metadata_router,
    work_items as work_items_router,
)
from libs.caching.redis_client import health_check as redis_health_check
from libs.common.errors import AdoqError, ConfigurationError
from libs.common.settings import get_settings
from libs.firebase.client import initialize_firebase_app

VERSION = "0.1.0"


def configure_logging(log_level: str = "INFO") -> None:
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level, logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_firebase_app(settings)
    app.state.container = await ServiceContainer.create(settings)

    if settings.prefetch_metadata and settings.ado_configured:
        try:
            await app.state.container.metadata.preload_all()
        except AdoqError as e:
            logger.warning("Startup metadata preload failed", error_code=e.code)

    logger.info("API started", app_env=settings.app_env, version=VERSION)
    yield
    await app.state.container.aclose()
    logger.info("API stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="adoq",
        description="Conversational query assistant for Azure DevOps work items",
        version=VERSION,
        default_response_class=ORJSONResponse,
        debug=settings.debug,
        lifespan=lifespan,
    )

    cors_origins = ["*"] if settings.is_development else settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False if settings.is_development else True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(AdoqError)
    async def adoq_error_handler(request: Request, exc: AdoqError) -> ORJSONResponse:
        if isinstance(exc, ConfigurationError):
            logger.error("Configuration error", setting=exc.setting, path=request.url.path)
        return ORJSONResponse(
            status_code=exc.status_code,
            content={"error_code": exc.code, "message": exc.user_message},
        )

    @app.middleware("http")
    async def limit_request_size(request: Request, call_next):
        """Limit request body size to prevent abuse."""
        max_size = 1024 * 1024  # 1MB

        if request.method in ["POST", "PUT", "PATCH", "DELETE"]:
            content_length = request.headers.get("content-length")
            if content_length and int(content_length) > max_size:
                return ORJSONResponse(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    content={
                        "error_code": "REQUEST_TOO_LARGE",
                        "message": f"Request body too large. Maximum size: {max_size} bytes",
                    },
                )

        return await call_next(request)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing and structured data."""
        start_time = time.time()
        request_id = f"req_{int(start_time * 1000000)}"
        request.state.request_id = request_id

        logger.info(
            "Request started",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                request_id=request_id,
                error=str(e),
                process_time_ms=round((time.time() - start_time) * 1000, 2),
                exc_info=True,
            )
            raise

        logger.info(
            "Request completed",
            request_id=request_id,
            status_code=response.status_code,
            process_time_ms=round((time.time() - start_time) * 1000, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(chat_router.router, prefix="/api", tags=["Chat"])
    app.include_router(conversations_router.router, prefix="/api", tags=["Conversations"])
    app.include_router(metadata_router.router, prefix="/api", tags=["Metadata"])
    app.include_router(collections_router.router, prefix="/api", tags=["Collections"])
    app.include_router(work_items_router.router, prefix="/api", tags=["Work Items"])

    @app.get("/healthz", response_model=HealthResponse, tags=["Health"])
    async def health_check() -> HealthResponse:
        """Liveness check."""
        return HealthResponse(status="healthy", service="api", version=VERSION, timestamp=time.time())

    @app.get("/readyz", response_model=HealthResponse, tags=["Health"])
    async def readiness_check(request: Request) -> HealthResponse:
        """Readiness check: reports Redis reachability and backend configuration.

        Example:
            ```bash
            curl http://localhost:8000/readyz
            ```
        """
        container = getattr(request.app.state, "container", None)
        checks = {
            "redis": bool(container and await redis_health_check(container.redis)),
            "azure_devops": bool(container and container.ado.configured),
            "llm": bool(container and container.provider_client.llm_configured),
        }
        return HealthResponse(
            status="ready" if all(checks.values()) else "degraded",
            service="api",
            version=VERSION,
            timestamp=time.time(),
            checks=checks,
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # For local development only
    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
