"""Middleware: API key authentication and pipeline error mapping."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated, cast

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from facegate.ml.errors import (
    DecodeFailure,
    DegenerateEmbedding,
    DimensionMismatch,
    FaceGateError,
    ImageTooLarge,
    InferenceError,
    ModelsNotReady,
    NoFaceDetected,
)

if TYPE_CHECKING:
    from fastapi import FastAPI

    from facegate.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

HTTP_413_TOO_LARGE = 413
HTTP_422_UNPROCESSABLE = 422

# Most specific first: ImageTooLarge is a DecodeFailure.
_ERROR_STATUS: tuple[tuple[type[FaceGateError], int], ...] = (
    (ImageTooLarge, HTTP_413_TOO_LARGE),
    (DecodeFailure, status.HTTP_400_BAD_REQUEST),
    (NoFaceDetected, HTTP_422_UNPROCESSABLE),
    (DegenerateEmbedding, HTTP_422_UNPROCESSABLE),
    (DimensionMismatch, HTTP_422_UNPROCESSABLE),
    (ModelsNotReady, status.HTTP_503_SERVICE_UNAVAILABLE),
    (InferenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def _get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against the configured API key.

    If no API key is configured (FACEGATE_API_KEY not set), all requests pass.
    If configured, requests must include 'Authorization: Bearer <key>'.
    """
    settings = _get_settings_from_request(request)
    if settings.api_key is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), settings.api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


def status_for_error(exc: FaceGateError) -> int:
    """HTTP status code for a pipeline error."""
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _handle_pipeline_error(request: Request, exc: Exception) -> JSONResponse:
    code = status_for_error(cast("FaceGateError", exc))
    if code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


async def _handle_pool_timeout(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Server busy, try again later"},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Translate pipeline exceptions and pool timeouts into JSON responses."""
    app.add_exception_handler(FaceGateError, _handle_pipeline_error)
    app.add_exception_handler(TimeoutError, _handle_pool_timeout)
