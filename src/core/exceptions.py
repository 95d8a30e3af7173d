"""
Global Exception Handling

Error taxonomy for the transform and tile endpoints, and the handlers that
turn it into structured JSON responses.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class ImageryBaseException(Exception):
    """Base exception for the imagery service."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        self.headers = headers or {}
        super().__init__(self.message)


class MissingSourceError(ImageryBaseException):
    """Raised when a request carries neither an upload nor backend parameters."""

    def __init__(self, message: str = "Cannot process the image due to missing or invalid params", **kwargs):
        super().__init__(message, code=400, **kwargs)


class EmptyBodyError(ImageryBaseException):
    """Raised when the resolved image payload is empty."""

    def __init__(self, message: str = "Empty or unreadable image", **kwargs):
        super().__init__(message, code=400, **kwargs)


class PayloadTooLargeError(ImageryBaseException):
    """Raised when an inline upload exceeds MAX_IMAGE_SIZE_BYTES."""

    def __init__(self, size: int, limit: int, **kwargs):
        super().__init__(
            f"Image size ({size} bytes) exceeds maximum allowed size ({limit} bytes)",
            code=413,
            **kwargs
        )


class UnsupportedMediaTypeError(ImageryBaseException):
    """Raised when the payload is not a supported image type."""

    def __init__(self, mime_type: str, **kwargs):
        super().__init__(f"Unsupported media type: {mime_type}", code=415, **kwargs)
        self.details["mime_type"] = mime_type


class InvalidOutputFormatError(ImageryBaseException):
    """Raised when the requested output type is not recognised."""

    def __init__(self, output_type: str, **kwargs):
        super().__init__(f"Unsupported output image format: {output_type}", code=400, **kwargs)
        self.details["type"] = output_type


class InvalidParametersError(ImageryBaseException):
    """Raised when transform parameters cannot be parsed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(f"Error while processing parameters, {message}", code=400, **kwargs)


class TransformError(ImageryBaseException):
    """Raised when the transform engine rejects the input or parameters."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        super().__init__(f"Error while processing the image: {message}", code=400, **kwargs)
        if operation:
            self.details["operation"] = operation


class DownloadError(ImageryBaseException):
    """Raised when a secondary asset (overlay) cannot be fetched."""

    def __init__(self, message: str, **kwargs):
        super().__init__(f"Error while downloading overlay: {message}", code=400, **kwargs)


class StorageError(ImageryBaseException):
    """Base class for storage provider failures."""

    def __init__(self, message: str, code: int = 502, provider: Optional[str] = None, **kwargs):
        super().__init__(message, code=code, **kwargs)
        if provider:
            self.details["provider"] = provider


class ObjectNotFoundError(StorageError):
    """Raised when the addressed remote object does not exist."""

    def __init__(self, container: str, key: str, **kwargs):
        super().__init__(f"Object not found: {container}/{key}", code=404, **kwargs)
        self.details["container"] = container
        self.details["key"] = key


class RemoteIOError(StorageError):
    """Raised on network, auth or backend failures talking to a provider."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=502, **kwargs)


class UnknownProviderError(ImageryBaseException):
    """Raised when a job names a provider that does not exist."""

    def __init__(self, provider: str, **kwargs):
        super().__init__(f"Unknown storage provider: {provider}", code=400, **kwargs)
        self.details["provider"] = provider


class ToolInvocationError(ImageryBaseException):
    """Raised when the external tiling tool fails."""

    def __init__(self, message: str, returncode: Optional[int] = None, **kwargs):
        super().__init__(message, code=500, **kwargs)
        self.details["returncode"] = returncode


class JobDispatchError(ImageryBaseException):
    """Raised when a staged tile job cannot be handed to the worker."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=503, **kwargs)


class MethodNotAllowedError(ImageryBaseException):
    """Raised when an endpoint is called with the wrong HTTP method."""

    def __init__(self, method: str, **kwargs):
        super().__init__(f"HTTP method not allowed: {method}", code=405, **kwargs)


class MalformedRequestBodyError(ImageryBaseException):
    """Raised when a job request body cannot be read or decoded."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=406, **kwargs)


# =============================================================================
# Exception Handlers
# =============================================================================

def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(ImageryBaseException)
    async def imagery_exception_handler(request: Request, exc: ImageryBaseException):
        job_id = exc.job_id or job_id_var.get()

        log = logger.warning if exc.code < 500 else logger.error
        log(
            "imagery_exception",
            error=exc.message,
            error_type=type(exc).__name__,
            code=exc.code,
            stage=exc.stage,
            path=str(request.url.path),
            details=exc.details
        )

        return JSONResponse(
            status_code=exc.code,
            content={
                "error": exc.message,
                "job_id": job_id,
                "code": exc.code,
                "stage": exc.stage,
                "details": exc.details,
                "timestamp": _timestamp()
            },
            headers=exc.headers or None
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        job_id = job_id_var.get()

        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "job_id": job_id,
                "code": 500,
                "timestamp": _timestamp()
            }
        )
