"""
Request logging middleware.

Pure ASGI rather than ``BaseHTTPMiddleware`` so streaming responses and
background tasks pass through untouched.  Logs method, path, status and
duration only; headers (``api-key`` among them) and bodies are never logged.
"""

from __future__ import annotations

import time

import structlog
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from ulid import ULID


class RequestLoggingMiddleware:
    def __init__(self, app: ASGIApp, exclude_paths: list[str] | None = None) -> None:
        self.app = app
        self.exclude_paths = set(exclude_paths or ["/health"])
        self._logger = structlog.get_logger("threadline.api")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path") in self.exclude_paths:
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        method = scope.get("method", "UNKNOWN")
        path = scope.get("path", "")
        status_code = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        structlog.contextvars.bind_contextvars(request_id=str(ULID()))
        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            self._logger.exception(
                "request_failed",
                method=method,
                path=path,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise
        else:
            log = self._logger.warning if status_code >= 500 else self._logger.info
            log(
                "request_completed",
                method=method,
                path=path,
                status=status_code,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
