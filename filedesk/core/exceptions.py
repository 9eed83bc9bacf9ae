from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("filedesk")


class FileDeskError(Exception):
    """Base error. ``code`` is the stable category callers branch on."""

    code = "internal_error"
    status_code = 500
    retryable = False
    default_message = "Unexpected error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthorized(FileDeskError):
    code = "unauthorized"
    status_code = 401
    default_message = "Authentication required"


class NotFound(FileDeskError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found"


class ValidationError(FileDeskError):
    code = "validation_error"
    status_code = 422
    default_message = "Invalid input"


class ConfigurationError(FileDeskError):
    code = "configuration_error"
    status_code = 500
    default_message = "Missing service configuration"


class PayloadTooLarge(FileDeskError):
    code = "payload_too_large"
    status_code = 413
    default_message = "File is too large"


class CredentialRejected(FileDeskError):
    code = "credential_rejected"
    status_code = 502
    default_message = "Blob store rejected the service credential"


class StorageUnavailable(FileDeskError):
    code = "storage_unavailable"
    status_code = 503
    retryable = True
    default_message = "Unable to connect to the blob store"


class StorageTimeout(FileDeskError):
    code = "storage_timeout"
    status_code = 504
    retryable = True
    default_message = "Blob store did not answer in time"


class UpstreamUploadFailed(FileDeskError):
    code = "upstream_upload_failed"
    status_code = 502
    retryable = True
    default_message = "Blob store upload failed"


class MetadataUnavailable(FileDeskError):
    code = "metadata_unavailable"
    status_code = 503
    retryable = True
    default_message = "Metadata store is unavailable"


class BlobDeleteFailed(FileDeskError):
    """Raised by the blob client only; the orchestrator turns it into an orphan record."""

    code = "blob_delete_failed"
    status_code = 502
    retryable = True
    default_message = "Blob store delete failed"


def error_payload(exc: FileDeskError) -> dict:
    return {"detail": exc.message, "code": exc.code, "retryable": exc.retryable}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(FileDeskError)
    async def filedesk_error_handler(request: Request, exc: FileDeskError):
        if exc.status_code >= 500:
            logger.error(
                "event=request_failed path=%s code=%s detail=%s", request.url.path, exc.code, exc.message
            )
        headers = {"WWW-Authenticate": "ApiKey"} if isinstance(exc, Unauthorized) else None
        return JSONResponse(error_payload(exc), status_code=exc.status_code, headers=headers)
