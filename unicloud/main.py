from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from unicloud.api.routes import accounts
from unicloud.core.config import get_settings
from unicloud.core.exceptions import (
    AccountNotFoundError,
    AmbiguousAccountError,
    AuthDeniedError,
    CloudProviderError,
    ConfigurationError,
    DuplicateAccountError,
    InvalidStateError,
    InvalidStateTransitionError,
    NameConflictError,
    NotFoundError,
    QuotaExceededError,
    UnknownProviderError,
)
from unicloud.core.logging import (
    generate_operation_id,
    get_logger,
    set_operation_id,
    setup_logging,
)
from unicloud.services.cloud.service import CloudStorageService, build_service

settings = get_settings()

# Configure logging before anything else
setup_logging(
    debug=settings.DEBUG,
    json_logs=settings.LOG_JSON_FORMAT,
    level=settings.LOG_LEVEL,
)

logger = get_logger(__name__)

# First match wins, so subclasses come before their bases
ERROR_STATUS: list[tuple[type[CloudProviderError], int]] = [
    (AmbiguousAccountError, 409),
    (UnknownProviderError, 404),
    (AccountNotFoundError, 404),
    (NotFoundError, 404),
    (DuplicateAccountError, 409),
    (NameConflictError, 409),
    (InvalidStateError, 400),
    (InvalidStateTransitionError, 400),
    (AuthDeniedError, 400),
    (ConfigurationError, 400),
    (QuotaExceededError, 507),
]


def error_status(exc: CloudProviderError) -> int:
    """HTTP status for a core error; backend failures map to 502."""
    for error_cls, status_code in ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status_code
    return 502


class OperationIDMiddleware(BaseHTTPMiddleware):
    """Middleware to add request correlation IDs for log tracing."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Add operation ID to context and response headers."""
        operation_id = request.headers.get("X-Request-ID") or generate_operation_id()
        set_operation_id(operation_id)

        logger.info(f"Request started: {request.method} {request.url.path}")
        response = await call_next(request)
        response.headers["X-Request-ID"] = operation_id
        logger.info(f"Request completed: {request.method} {request.url.path} - {response.status_code}")

        return response


def create_app(service: CloudStorageService | None = None) -> FastAPI:
    """Build the HTTP application.

    When ``service`` is omitted it is built from settings at startup and
    disposed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = service is None
        app.state.cloud_service = service or await build_service(settings)
        try:
            yield
        finally:
            if owned:
                await app.state.cloud_service.close()

    app = FastAPI(
        title="unicloud API",
        description="Unified access to cloud storage accounts",
        version="0.1.0",
        lifespan=lifespan,
    )
    if service is not None:
        app.state.cloud_service = service

    @app.exception_handler(CloudProviderError)
    async def cloud_error_handler(request: Request, exc: CloudProviderError) -> JSONResponse:
        status_code = error_status(exc)
        if status_code >= 500:
            logger.error(f"Backend failure on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    app.add_middleware(OperationIDMiddleware)
    app.include_router(accounts.router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy", "version": "0.1.0"}

    return app


app = create_app()
