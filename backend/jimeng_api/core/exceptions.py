from typing import Any, Dict, Optional
from fastapi import Request, status
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)


class JimengAPIException(Exception):
    """Base exception for the generation gateway"""
    error_type = "api_error"

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        history_id: Optional[str] = None
    ):
        self.message = message
        self.status_code = status_code
        self.history_id = history_id
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "type": self.error_type,
            "code": self.__class__.__name__,
            "history_id": self.history_id,
        }


class ValidationError(JimengAPIException):
    """Raised when caller input is invalid"""
    error_type = "invalid_request_error"

    def __init__(self, message: str = "Validation error"):
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class UpstreamCallFailed(JimengAPIException):
    """Raised when a call to the upstream service fails at transport or HTTP level"""
    error_type = "upstream_error"

    def __init__(self, message: str = "Upstream request failed", transient: bool = True):
        self.transient = transient
        super().__init__(message, status.HTTP_502_BAD_GATEWAY)


class InsufficientCredit(JimengAPIException):
    """Raised when the account has no credit left for generation"""
    error_type = "insufficient_quota"

    def __init__(self, message: str = "Insufficient credit"):
        super().__init__(message, status.HTTP_402_PAYMENT_REQUIRED)


class ContentFiltered(JimengAPIException):
    """Raised when upstream rejects the prompt or result by content policy"""
    error_type = "content_filter"

    def __init__(
        self,
        message: str = "Content was filtered by the upstream service",
        history_id: Optional[str] = None,
        fail_code: Optional[str] = None
    ):
        self.fail_code = fail_code
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, history_id)


class GenerationFailed(JimengAPIException):
    """Raised when upstream reports a failed generation"""
    error_type = "generation_failed"

    def __init__(
        self,
        message: str = "Generation failed",
        history_id: Optional[str] = None,
        fail_code: Optional[str] = None
    ):
        self.fail_code = fail_code
        super().__init__(message, status.HTTP_502_BAD_GATEWAY, history_id)


class NoRecordId(JimengAPIException):
    """Raised when submission returns no correlation id"""
    error_type = "generation_failed"

    def __init__(self, message: str = "Upstream returned no history record id"):
        super().__init__(message, status.HTTP_502_BAD_GATEWAY)


class RecordMissing(JimengAPIException):
    """Raised when a submitted job never shows up in status queries"""
    error_type = "generation_failed"

    def __init__(self, message: str = "History record not found", history_id: Optional[str] = None):
        super().__init__(message, status.HTTP_504_GATEWAY_TIMEOUT, history_id)


class AssetExtractionFailed(JimengAPIException):
    """Raised when a completed job carries no usable asset URL"""
    error_type = "generation_failed"

    def __init__(self, message: str = "No asset URL in result", history_id: Optional[str] = None):
        super().__init__(message, status.HTTP_502_BAD_GATEWAY, history_id)


class UploadFailed(JimengAPIException):
    """Raised when a reference asset cannot be moved into upstream storage"""
    error_type = "invalid_request_error"

    def __init__(self, message: str = "Upload failed", source: Optional[str] = None):
        self.source = source
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class TimedOut(JimengAPIException):
    """Raised when a job is still processing after the polling budget"""
    error_type = "timeout"

    def __init__(self, message: str = "Generation timed out", history_id: Optional[str] = None):
        super().__init__(message, status.HTTP_504_GATEWAY_TIMEOUT, history_id)


async def jimeng_exception_handler(request: Request, exc: JimengAPIException):
    """Handle gateway exceptions"""
    logger.error(f"{exc.__class__.__name__}: {exc.message} (history_id={exc.history_id})")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_dict()}
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions"""
    logger.error(f"Unexpected error: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"message": "Internal server error", "type": "api_error", "code": None}}
    )
