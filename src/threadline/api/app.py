"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from threadline import __version__
from threadline.api.auth import CredentialValidator, StaticKeyValidator
from threadline.api.middleware import RequestLoggingMiddleware
from threadline.api.routes import health_router, rate_limit_headers, router
from threadline.api.schemas import ErrorBody, ErrorResponse
from threadline.api.settings import ServerSettings
from threadline.errors import InternalError, RateLimitedError, ThreadlineError, ValidationError
from threadline.responder.base import EchoResponder
from threadline.service import SessionService

logger = structlog.get_logger("threadline.api")


def create_app(
    settings: ServerSettings | None = None,
    service: SessionService | None = None,
    validator: CredentialValidator | None = None,
) -> FastAPI:
    """
    Build the HTTP application.

    Args:
        settings: Server settings. Defaults to ``ServerSettings()`` (environment).
        service: A ready service to serve. When omitted, one is built from
            ``settings`` on startup and closed on shutdown; a supplied service
            is left open for its owner to close.
        validator: API key validator. Defaults to a :class:`StaticKeyValidator`
            over ``settings.api_keys``.
    """
    settings = settings or ServerSettings()
    if validator is None:
        keys = settings.credentials()
        if not keys:
            logger.warning("no_api_keys_configured")
        validator = StaticKeyValidator(keys)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = service is None
        if owned:
            responder = EchoResponder() if settings.responder == "echo" else None
            app.state.service = await SessionService.create(
                settings.to_config(), responder=responder
            )
        active: SessionService = app.state.service
        active.start_sweeper()
        try:
            yield
        finally:
            await active.stop_sweeper()
            if owned:
                await active.close()

    app = FastAPI(title="Threadline", version=__version__, lifespan=lifespan)
    app.state.service = service
    app.state.validator = validator

    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(ThreadlineError, _threadline_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    app.include_router(router)
    app.include_router(health_router)
    return app


# ── Error rendering ─────────────────────────────────────────────────────────────


def _error_response(
    request: Request,
    error: ThreadlineError,
) -> JSONResponse:
    service: SessionService | None = request.app.state.service
    credential_id: str | None = getattr(request.state, "credential_id", None)
    body = ErrorBody(code=error.code, message=error.message)
    headers: dict[str, str] = {}

    if isinstance(error, RateLimitedError):
        body.reset_at = error.reset_at
        headers.update(rate_limit_headers(error.decision))
        if service is not None:
            headers["Retry-After"] = str(service.limiter.retry_after(error.decision))
    elif credential_id is not None and service is not None:
        headers.update(rate_limit_headers(service.rate_limit_status(credential_id)))

    return JSONResponse(
        status_code=error.status_code,
        content=ErrorResponse(error=body).model_dump(by_alias=True, exclude_none=True),
        headers=headers,
    )


async def _threadline_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, ThreadlineError):
        return await _unhandled_error_handler(request, exc)
    if exc.status_code >= 500:
        logger.error("request_error", path=request.url.path, code=exc.code, error=exc.message)
    return _error_response(request, exc)


async def _request_validation_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, RequestValidationError):
        return await _unhandled_error_handler(request, exc)
    details = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query"))
        details.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return _error_response(request, ValidationError("; ".join(details) or "Invalid request"))


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_error", path=request.url.path, exc_info=exc)
    return _error_response(request, InternalError("Internal server error"))
