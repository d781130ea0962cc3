"""
Exception hierarchy and FastAPI handlers for the knowledge engine.
"""

import logging
from typing import Any, Dict, List, Optional
from fastapi import Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .responses import ErrorResponse, ResponseStatus

logger = logging.getLogger(__name__)

class BaseAPIException(Exception):
    """Base exception for API errors"""
    def __init__(self, message: str, code: str = None, details: Dict[str, Any] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

class ValidationException(BaseAPIException):
    """Validation error exception"""
    def __init__(self, message: str, field_errors: List[str] = None):
        self.field_errors = field_errors or []
        super().__init__(message, code="VALIDATION_ERROR", details={"field_errors": self.field_errors})

class NotFoundException(BaseAPIException):
    """Resource not found exception"""
    def __init__(self, message: str, resource_type: str = None, resource_id: Any = None):
        details = {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id is not None:
            details["resource_id"] = resource_id
        super().__init__(message, code="NOT_FOUND", details=details)

class ConflictException(BaseAPIException):
    """Resource conflict exception"""
    def __init__(self, message: str, conflicting_resource: str = None, code: str = "CONFLICT"):
        details = {}
        if conflicting_resource:
            details["conflicting_resource"] = conflicting_resource
        super().__init__(message, code=code, details=details)

class BusinessLogicException(BaseAPIException):
    """Business logic error exception"""
    def __init__(self, message: str, operation: str = None):
        details = {}
        if operation:
            details["operation"] = operation
        super().__init__(message, code="BUSINESS_LOGIC_ERROR", details=details)

class ExternalServiceException(BaseAPIException):
    """External service error exception"""
    def __init__(self, message: str, service: str = None, code: str = "EXTERNAL_SERVICE_ERROR"):
        details = {}
        if service:
            details["service"] = service
        super().__init__(message, code=code, details=details)


# Engine errors

class ProviderError(ExternalServiceException):
    """Base class for embedding/generation provider failures."""
    def __init__(self, message: str, provider: str = None, code: str = "PROVIDER_ERROR"):
        self.provider = provider
        super().__init__(message, service=provider, code=code)

class ProviderRateLimitError(ProviderError):
    def __init__(self, message: str, provider: str = None):
        super().__init__(message, provider=provider, code="PROVIDER_RATE_LIMITED")

class ProviderTransientError(ProviderError):
    """Timeouts, connection resets and 5xx responses."""
    def __init__(self, message: str, provider: str = None):
        super().__init__(message, provider=provider, code="PROVIDER_UNAVAILABLE")

class ProviderTerminalError(ProviderError):
    """Failures that retrying cannot fix (bad request, auth, safety block)."""
    def __init__(self, message: str, provider: str = None):
        super().__init__(message, provider=provider, code="PROVIDER_REJECTED")

class ProviderExhaustedError(ProviderError):
    """Every credential and retry attempt was used up."""
    def __init__(self, message: str, provider: str = None, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message, provider=provider, code="PROVIDER_EXHAUSTED")
        self.details["attempts"] = attempts

class RetrievalError(ExternalServiceException):
    """Both retrieval branches failed against the memory store."""
    def __init__(self, message: str):
        super().__init__(message, service="memory_store", code="RETRIEVAL_FAILED")

class VersionConflictError(ConflictException):
    """Two chunks would share an agent + version with different content hashes."""
    def __init__(self, agent_id: int, version: int, content_hash: str):
        self.agent_id = agent_id
        self.version = version
        self.content_hash = content_hash
        super().__init__(
            f"Version {version} for agent {agent_id} is already assigned to different content",
            conflicting_resource=f"agent:{agent_id}:version:{version}",
            code="VERSION_CONFLICT",
        )

class DuplicateContentError(ConflictException):
    """Identical content already stored for the agent."""
    def __init__(self, agent_id: int, content_hash: str):
        self.agent_id = agent_id
        self.content_hash = content_hash
        super().__init__(
            f"Content {content_hash[:12]} already exists for agent {agent_id}",
            conflicting_resource=f"agent:{agent_id}:hash:{content_hash}",
            code="DUPLICATE_CONTENT",
        )

class JobNotFoundError(NotFoundException):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", resource_type="job", resource_id=job_id)

class JobStateError(ConflictException):
    """Illegal job state transition."""
    def __init__(self, job_id: str, current_status: Optional[str], attempted: str):
        self.job_id = job_id
        self.current_status = current_status
        self.attempted = attempted
        super().__init__(
            f"Job {job_id} cannot move from {current_status} to {attempted}",
            conflicting_resource=f"job:{job_id}",
            code="INVALID_JOB_TRANSITION",
        )


def _status_code_for(exc: BaseAPIException) -> int:
    if isinstance(exc, ValidationException):
        return 400
    if isinstance(exc, NotFoundException):
        return 404
    if isinstance(exc, ConflictException):
        return 409
    if isinstance(exc, BusinessLogicException):
        return 422
    if isinstance(exc, ExternalServiceException):
        return 502
    return 500


def setup_exception_handlers(app):
    """Setup exception handlers for the FastAPI app"""

    @app.exception_handler(BaseAPIException)
    async def base_api_exception_handler(request: Request, exc: BaseAPIException):
        """Handle custom API exceptions"""
        logger.warning(f"API Exception: {exc.message} (Code: {exc.code})", extra={
            "exception_type": exc.__class__.__name__,
            "code": exc.code,
            "details": exc.details,
            "path": request.url.path,
            "method": request.method
        })

        error_response = ErrorResponse(
            status=ResponseStatus.ERROR,
            message=exc.message,
            code=exc.code,
            details=exc.details
        )

        return JSONResponse(
            status_code=_status_code_for(exc),
            content=error_response.model_dump()
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle Pydantic validation errors"""
        logger.warning(f"Validation Error: {exc.errors()}", extra={
            "path": request.url.path,
            "method": request.method,
        })

        field_errors = []
        for error in exc.errors():
            field_path = " -> ".join(str(loc) for loc in error["loc"])
            field_errors.append(f"{field_path}: {error['msg']}")

        error_response = ErrorResponse(
            status=ResponseStatus.ERROR,
            message="Validation failed",
            errors=field_errors,
            code="VALIDATION_ERROR",
        )

        return JSONResponse(
            status_code=422,
            content=error_response.model_dump()
        )

    @app.exception_handler(HTTPException)
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions"""
        logger.warning(f"HTTP Exception: {exc.detail}", extra={
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method
        })

        error_response = ErrorResponse(
            status=ResponseStatus.ERROR,
            message=str(exc.detail),
            code=f"HTTP_{exc.status_code}"
        )

        return JSONResponse(
            status_code=exc.status_code,
            content=error_response.model_dump()
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions"""
        logger.error(f"Unexpected Exception: {str(exc)}", extra={
            "exception_type": exc.__class__.__name__,
            "path": request.url.path,
            "method": request.method
        }, exc_info=True)

        error_response = ErrorResponse(
            status=ResponseStatus.ERROR,
            message="An unexpected error occurred",
            code="INTERNAL_SERVER_ERROR"
        )

        return JSONResponse(
            status_code=500,
            content=error_response.model_dump()
        )

# Convenience functions for raising exceptions
def raise_not_found(message: str, resource_type: str = None, resource_id: Any = None):
    """Raise a not found exception"""
    raise NotFoundException(message, resource_type, resource_id)
