"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware — injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware — maps core exceptions and rejected operations
       to structured JSON errors
    3. CORSMiddleware — handles browser clients
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, TypeVar

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from middleman_escrow.domain.exceptions import (
    EscrowCoreError,
    EscrowInvariantError,
    HoldNotFoundError,
    PaymentProcessorError,
    TradeNotFoundError,
)
from middleman_escrow.domain.results import ErrorCode, Result

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)

T = TypeVar("T")

NO_MIDDLEMAN_RETRY_AFTER_SECONDS = 60

# HTTP status for each business outcome the core can return.
STATUS_BY_ERROR_CODE: dict[ErrorCode, int] = {
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.REQUIREMENT_NOT_MET: 409,
    ErrorCode.DUPLICATE_PAYMENT: 409,
    ErrorCode.STATE_CONFLICT: 409,
    ErrorCode.PAYMENT_MISMATCH: 400,
    ErrorCode.ASSIGNMENT_TIMEOUT: 409,
    ErrorCode.SUPERVISION_TIMEOUT: 409,
    ErrorCode.DEADLINE_EXPIRED: 409,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.NO_AVAILABLE_MIDDLEMAN: 503,
}


class OperationRejectedError(Exception):
    """Raised by route handlers when the core returned a failed Result."""

    def __init__(self, code: ErrorCode, reason: str) -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"{code}: {reason}")


def expect_ok(result: Result[T]) -> T:
    """Return the result's value or raise OperationRejectedError for the middleware."""
    if result.error is not None:
        raise OperationRejectedError(result.error, result.reason)
    return result.value  # type: ignore[return-value]


def rejection_response(code: ErrorCode, reason: str) -> JSONResponse:
    status_code = STATUS_BY_ERROR_CODE.get(code, 400)
    headers = None
    if code == ErrorCode.NO_AVAILABLE_MIDDLEMAN:
        headers = {"Retry-After": str(NO_MIDDLEMAN_RETRY_AFTER_SECONDS)}
    return JSONResponse(
        status_code=status_code,
        content={"error": str(code), "message": reason},
        headers=headers,
    )


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch core exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except OperationRejectedError as exc:
            logger.info("operation.rejected", error=str(exc.code), reason=exc.reason)
            return rejection_response(exc.code, exc.reason)
        except (TradeNotFoundError, HoldNotFoundError) as exc:
            logger.warning("lookup.not_found", error=exc.message)
            return JSONResponse(
                status_code=404,
                content={"error": exc.code, "message": exc.message},
            )
        except PaymentProcessorError as exc:
            logger.error("payment_processor.error", error=exc.message, ref=exc.external_ref)
            return JSONResponse(
                status_code=502,
                content={"error": exc.code, "message": exc.message},
            )
        except EscrowInvariantError as exc:
            logger.error("escrow.invariant_violated", error=exc.message)
            return JSONResponse(
                status_code=500,
                content={"error": exc.code, "message": "The operation was rolled back"},
            )
        except EscrowCoreError as exc:
            logger.error("domain.error", error=exc.message, code=exc.code)
            return JSONResponse(
                status_code=400,
                content={"error": exc.code, "message": exc.message},
            )
        except ValueError as exc:
            logger.info("request.invalid", error=str(exc))
            return JSONResponse(
                status_code=400,
                content={"error": "INVALID_REQUEST", "message": str(exc)},
            )
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

    Middleware is applied bottom-up, so the last added runs first.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)
