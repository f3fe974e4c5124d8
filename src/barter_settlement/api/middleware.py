"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware - injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware - catches domain exceptions -> structured JSON errors
    3. CORSMiddleware - handles the marketplace web client
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from barter_settlement.domain.exceptions import (
    ConflictError,
    DeadlineExpiredError,
    DisputeNotFoundError,
    IntegrityViolationError,
    InvalidStateTransitionError,
    NotAuthorizedError,
    ProductNotFoundError,
    RateLimitExceededError,
    SettlementError,
    SwapNotFoundError,
    UserNotFoundError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)

_NOT_FOUND = (SwapNotFoundError, DisputeNotFoundError, UserNotFoundError, ProductNotFoundError)


def _error_body(exc: SettlementError) -> dict:
    return {"error": exc.code, "message": exc.message, "details": exc.details}


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        # Use client-provided ID or generate one
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        # Bind to structlog context for all log entries in this request
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

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
        except _NOT_FOUND as exc:
            logger.warning("request.not_found", error=exc.message, code=exc.code)
            return JSONResponse(status_code=404, content=_error_body(exc))
        except NotAuthorizedError as exc:
            logger.warning("request.not_authorized", error=exc.message, code=exc.code)
            return JSONResponse(status_code=403, content=_error_body(exc))
        except InvalidStateTransitionError as exc:
            logger.warning(
                "state_machine.invalid_transition",
                current=exc.current_state,
                attempted=exc.attempted,
            )
            return JSONResponse(status_code=409, content=_error_body(exc))
        except DeadlineExpiredError as exc:
            logger.warning("request.deadline", error=exc.message, code=exc.code)
            return JSONResponse(status_code=409, content=_error_body(exc))
        except ConflictError as exc:
            logger.warning(
                "request.conflict",
                error=exc.message,
                code=exc.code,
                already_done=exc.already_done,
            )
            return JSONResponse(status_code=409, content=_error_body(exc))
        except RateLimitExceededError as exc:
            return JSONResponse(
                status_code=429,
                content=_error_body(exc),
                headers={"Retry-After": str(exc.retry_after)},
            )
        except IntegrityViolationError as exc:
            logger.error("integrity.violation", error=exc.message, code=exc.code, details=exc.details)
            return JSONResponse(
                status_code=500,
                content={"error": exc.code, "message": "Settlement aborted: integrity check failed"},
            )
        except SettlementError as exc:
            logger.info("domain.rejected", error=exc.message, code=exc.code)
            return JSONResponse(status_code=400, content=_error_body(exc))
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

    Order matters - middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    # CORS (runs first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handling (runs second)
    app.add_middleware(ErrorHandlerMiddleware)

    # Request ID (runs last = outermost)
    app.add_middleware(RequestIDMiddleware)
