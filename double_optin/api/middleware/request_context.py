from __future__ import annotations

import logging
from time import perf_counter

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from double_optin.ops.events import (
    CORRELATION_ID_HEADER,
    new_correlation_id,
    redact_text,
    reset_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

QUIET_PATHS = frozenset({"/health", "/health/db"})


def _request_payload(request: Request, started: float, **extra: object) -> dict[str, object]:
    # Verification links carry the token in the path.
    return {
        "method": request.method,
        "path": redact_text(request.url.path),
        "duration_ms": int((perf_counter() - started) * 1000),
        **extra,
    }


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags each request with a correlation id and records one access event per request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or new_correlation_id()
        context_token = set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id
        started = perf_counter()

        try:
            response: Response = await call_next(request)
        except Exception:
            payload = _request_payload(request, started)
            logger.exception(
                "Request failed %s %s",
                payload["method"],
                payload["path"],
                extra={"event_type": "api.request.failed", "correlation_id": correlation_id, "ops_payload": payload},
            )
            raise
        finally:
            reset_correlation_id(context_token)

        response.headers["X-Request-Id"] = correlation_id
        if request.url.path not in QUIET_PATHS:
            payload = _request_payload(request, started, status_code=response.status_code)
            logger.info(
                "Request completed %s %s -> %d",
                payload["method"],
                payload["path"],
                response.status_code,
                extra={"event_type": "api.request.completed", "correlation_id": correlation_id, "ops_payload": payload},
            )
        return response
