"""
FastAPI Middleware

Provides request/response middleware for:
- Correlation ID injection
- Request logging
- Idempotency-Key gate for mutating requests
- Global error handling
"""
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from relay.core.config import settings
from relay.core.logging import get_logger, get_correlation_id, log_context, set_correlation_id
from relay.core.exceptions import (
    AppException,
    ErrorCode,
    IdempotencyConflictError,
    IdempotencyLockedError,
    ValidationException,
)
from relay.api.dependencies.owner import OWNER_ID_HEADER, normalize_owner_id
from relay.db.database import session_scope
from relay.domain.services.idempotency_service import (
    AcquireOutcome,
    CachedResponse,
    IdempotencyService,
    build_scope,
    compute_request_hash,
)

logger = get_logger(__name__)

IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
IDEMPOTENT_REPLAYED_HEADER = "Idempotent-Replayed"
IDEMPOTENT_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
# נבנים מחדש בכל תשובה, לא נשמרים עם התשובה השמורה
UNREPLAYED_HEADERS = frozenset({
    "content-length",
    "transfer-encoding",
    "connection",
    "date",
    "server",
    "x-correlation-id",
})


def _error_response(exc: AppException, headers: dict[str, str] | None = None) -> JSONResponse:
    """
    Render an AppException from inside a middleware.

    Exceptions raised in BaseHTTPMiddleware never reach the app's exception
    handlers, so the gate builds the same body app_exception_handler would.
    """
    logger.warning(
        f"Idempotency gate rejected request: {exc.error_code.value}",
        extra_data={"error_code": exc.error_code.value, "details": exc.details},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id(), **(headers or {})},
    )


def _replayable_headers(response: Response) -> dict[str, str]:
    return {
        name: value
        for name, value in response.headers.items()
        if name.lower() not in UNREPLAYED_HEADERS
    }


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Correlation id per request, echoed back in ``X-Correlation-ID``.

    The caller's owner id and Idempotency-Key are bound to the log context,
    so every line written while handling the request (including the gate's
    acquire/replay lines) can be filtered by them.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id

        bound = {"owner_id": normalize_owner_id(request.headers.get(OWNER_ID_HEADER))}
        if idempotency_key := request.headers.get(IDEMPOTENCY_KEY_HEADER):
            bound["idempotency_key"] = idempotency_key[:64]

        with log_context(**bound):
            response = await call_next(request)

        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One line per finished request; health probes are not logged"""

    QUIET_PATHS = frozenset({"/health"})

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.QUIET_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        fields = {"method": request.method, "path": request.url.path}
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                extra_data={
                    **fields,
                    "duration_seconds": round(time.perf_counter() - started, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        fields.update(
            status_code=response.status_code,
            duration_seconds=round(time.perf_counter() - started, 4),
            replayed=response.headers.get(IDEMPOTENT_REPLAYED_HEADER) == "true",
        )
        if response.status_code >= 500:
            logger.error(f"Request completed: {request.method} {request.url.path}", extra_data=fields)
        elif response.status_code >= 400:
            logger.warning(f"Request completed: {request.method} {request.url.path}", extra_data=fields)
        else:
            logger.info(f"Request completed: {request.method} {request.url.path}", extra_data=fields)
        return response


class IdempotencyMiddleware(BaseHTTPMiddleware):
    """
    At-most-once execution for POST/PUT/PATCH/DELETE requests carrying an
    ``Idempotency-Key`` header.

    - first request: handler runs, a response < 500 is stored for 24h
    - retry with the same key and the same request: stored response is
      replayed with ``Idempotent-Replayed: true``, the handler does not run
    - same key, different request: 422
    - same key while the first request is still running: 409 + Retry-After
    - 5xx or an unhandled exception releases the key so the client can retry
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        if request.method not in IDEMPOTENT_METHODS:
            return await call_next(request)

        key = request.headers.get(IDEMPOTENCY_KEY_HEADER)
        if key is None:
            return await call_next(request)

        key = key.strip()
        if not key or len(key) > settings.IDEMPOTENCY_KEY_MAX_LENGTH:
            return _error_response(ValidationException(
                f"{IDEMPOTENCY_KEY_HEADER} must be 1-{settings.IDEMPOTENCY_KEY_MAX_LENGTH} characters",
                field=IDEMPOTENCY_KEY_HEADER,
                error_code=ErrorCode.IDEMPOTENCY_KEY_INVALID,
            ))

        body = await request.body()
        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        owner_id = normalize_owner_id(request.headers.get(OWNER_ID_HEADER))
        scope = build_scope(owner_id, request.method, request.url.path)
        request_hash = compute_request_hash(request.method, target, body)

        async with session_scope() as db:
            result = await IdempotencyService(db).acquire(key, scope, request_hash)

        if result.outcome is AcquireOutcome.CONFLICT:
            return _error_response(IdempotencyConflictError(key))

        if result.outcome is AcquireOutcome.LOCKED:
            exc = IdempotencyLockedError(key, result.retry_after_seconds or 1)
            return _error_response(exc, headers={"Retry-After": str(exc.retry_after_seconds)})

        if result.outcome is AcquireOutcome.REPLAY:
            cached = result.cached_response
            return Response(
                content=cached.body,
                status_code=cached.status_code,
                headers={**cached.headers, IDEMPOTENT_REPLAYED_HEADER: "true"},
            )

        lock_token = result.lock_token
        try:
            response = await call_next(request)
        except Exception:
            await self._release(lock_token, key)
            raise

        if response.status_code >= 500:
            await self._release(lock_token, key)
            return response

        response_body = b"".join([chunk async for chunk in response.body_iterator])
        async with session_scope() as db:
            await IdempotencyService(db).complete(
                lock_token,
                CachedResponse(
                    status_code=response.status_code,
                    body=response_body,
                    headers=_replayable_headers(response),
                ),
            )

        return Response(
            content=response_body,
            status_code=response.status_code,
            headers=dict(response.headers),
            background=response.background,
        )

    @staticmethod
    async def _release(lock_token: str, key: str) -> None:
        async with session_scope() as db:
            await IdempotencyService(db).release(lock_token)
        logger.info(
            "Idempotency key released after failed request",
            extra_data={"idempotency_key": key},
        )


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Handle application exceptions"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {}
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()}
    )


def setup_middleware(app: FastAPI) -> None:
    """Setup all middleware for the application"""
    # ב-Starlette, ה-middleware האחרון שנוסף הוא ה-outermost.
    # סדר עיבוד בקשה: CorrelationId → RequestLogging → Idempotency → app
    app.add_middleware(IdempotencyMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
