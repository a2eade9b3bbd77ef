"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware — injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware — catches domain exceptions -> structured JSON errors
    3. CORSMiddleware — handles browser clients
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from talent_escrow.domain.exceptions import (
    ConflictError,
    MarketplaceError,
    NotFoundError,
    PaymentProviderError,
    RateLimitExceededError,
    SignatureVerificationError,
    ValidationError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)


def error_body(exc: MarketplaceError, **extra) -> dict:
    body = {"error": exc.code, "message": exc.message}
    body.update(extra)
    return body


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except ValidationError as exc:
            logger.info("request.invalid", error=exc.message, field=exc.field)
            return JSONResponse(
                status_code=400,
                content=error_body(exc, field=exc.field),
            )
        except ConflictError as exc:
            # Clients resync from current_state.
            logger.info("request.conflict", error=exc.message, code=exc.code)
            return JSONResponse(
                status_code=400,
                content=error_body(exc, current_state=exc.current_state),
            )
        except NotFoundError as exc:
            logger.info("request.not_found", entity=exc.entity, entity_id=exc.entity_id)
            return JSONResponse(status_code=404, content=error_body(exc))
        except SignatureVerificationError as exc:
            return JSONResponse(status_code=400, content=error_body(exc))
        except RateLimitExceededError as exc:
            return JSONResponse(
                status_code=429,
                content=error_body(exc),
                headers={"Retry-After": str(exc.retry_after)},
            )
        except PaymentProviderError as exc:
            logger.warning(
                "payment_provider.error",
                error=exc.message,
                retryable=exc.retryable,
                provider_code=exc.provider_code,
            )
            return JSONResponse(
                status_code=503 if exc.retryable else 502,
                content=error_body(exc, provider_code=exc.provider_code),
            )
        except MarketplaceError as exc:
            logger.error("domain.error", error=exc.message, code=exc.code)
            return JSONResponse(status_code=400, content=error_body(exc))
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
            )


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Middleware is applied bottom-up, so the last one added runs first.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)
