"""Map engine errors onto HTTP responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from fatoora.app.services.zatca.errors import (
    AuthorityError,
    ChainIntegrityError,
    NotFoundError,
    OnboardingConflictError,
    OnboardingStateError,
    SigningError,
    TransportError,
    ValidationError,
    ZatcaError,
)

logger = logging.getLogger(__name__)


def _handle_zatca_api_error(e: AuthorityError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={
            "detail": {
                "error": "ZATCA API error",
                "zatca_code": e.error_code,
                "zatca_message": str(e),
                "zatca_errors": e.raw_errors,
            }
        },
    )


async def zatca_error_handler(request: Request, exc: ZatcaError) -> JSONResponse:
    if isinstance(exc, AuthorityError):
        return _handle_zatca_api_error(exc)
    if isinstance(exc, ValidationError):
        return JSONResponse(
            status_code=422,
            content={"detail": str(exc), "errors": exc.errors},
        )
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (ChainIntegrityError, OnboardingConflictError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, OnboardingStateError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, TransportError):
        code = status.HTTP_504_GATEWAY_TIMEOUT
    elif isinstance(exc, SigningError):
        logger.error("Signing failure on %s %s: %s", request.method, request.url.path, exc)
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        logger.error("Unhandled ZATCA error on %s %s", request.method, request.url.path, exc_info=exc)
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return JSONResponse(status_code=code, content={"detail": str(exc)})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ZatcaError, zatca_error_handler)  # type: ignore[arg-type]
