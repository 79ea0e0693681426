"""
Error taxonomy for the upload service.

Every error carries the HTTP status it maps to. ``register_exception_handlers``
renders them as ``{"error": message}``.
"""
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class UploadError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(UploadError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(UploadError):
    status_code = status.HTTP_401_UNAUTHORIZED


class NotFoundError(UploadError):
    status_code = status.HTTP_404_NOT_FOUND


class SessionConflictError(UploadError):
    status_code = status.HTTP_409_CONFLICT


class SessionExpiredError(UploadError):
    status_code = status.HTTP_410_GONE


class SizeLimitError(UploadError):
    status_code = status.HTTP_413_CONTENT_TOO_LARGE


class StorageError(UploadError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ObjectExistsError(StorageError):
    status_code = status.HTTP_409_CONFLICT


def _describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request."

    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    if first.get("type") == "missing":
        return f"Missing required field: {location}." if location else "Missing required fields."

    return f"Invalid value for {location}: {first.get('msg')}." if location else str(first.get("msg"))


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(UploadError)
    async def upload_error_handler(_request: Request, exc: UploadError):
        if exc.status_code >= 500:
            logger.error("%s: %s", type(exc).__name__, exc.message)

        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": _describe_validation_error(exc)}
        )
