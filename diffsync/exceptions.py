from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Optional
from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

log = structlog.get_logger(__name__)


# ── Typed domain exceptions ───────────────────────────────────────────────────

class AppError(Exception):
    """Base for all application-level errors.

    ``detail`` is the sanitized text that crosses the API boundary; raw
    driver messages stay in the server log.
    """
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"
    message: str = "Request could not be completed"
    retryable: bool = False
    suggestions: ClassVar[List[str]] = []
    _by_code: ClassVar[Dict[str, type]] = {}

    def __init_subclass__(cls, **kwargs: Any):
        super().__init_subclass__(**kwargs)
        AppError._by_code.setdefault(cls.error_code, cls)

    def __init__(
        self,
        detail: Any = None,
        context: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
    ):
        self.detail = detail if detail is not None else self.message
        self.context = context or {}
        self.extra_suggestions = suggestions
        super().__init__(str(self.detail))

    def to_body(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.detail,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "retryable": self.retryable,
                "suggestions": list(self.extra_suggestions or self.suggestions),
                **({"context": self.context} if self.context else {}),
            }
        }


# Validation (400)

class ValidationError(AppError):
    status_code = 400
    error_code = "VALIDATION_ERROR"
    message = "Invalid request parameters"


class InvalidTimestampError(ValidationError):
    error_code = "INVALID_TIMESTAMP"
    message = "Invalid timestamp format"
    suggestions = [
        "ISO 8601: 2025-10-25T12:00:00Z",
        "SQL format: 2025-10-25 12:00:00",
        "Date only: 2025-10-25",
    ]


class InvalidSessionIdError(ValidationError):
    error_code = "INVALID_SESSION_ID"
    message = "Invalid session ID format"
    suggestions = ["Use a UUID such as 550e8400-e29b-41d4-a716-446655440000"]


class InvalidQueryParametersError(ValidationError):
    error_code = "INVALID_QUERY_PARAMETERS"
    message = "Invalid query parameters"


# Not found (404)

class NotFoundError(AppError):
    status_code = 404
    error_code = "NOT_FOUND"
    message = "Resource not found"


class SessionNotFoundError(NotFoundError):
    error_code = "SESSION_NOT_FOUND"
    message = "Migration session not found"
    suggestions = [
        "Verify the session ID is correct",
        "Check if the migration session has been cleaned up",
        "Async analyses expire after the status retention window",
    ]


class EntityNotFoundError(NotFoundError):
    error_code = "ENTITY_NOT_FOUND"
    message = "One or more entities not found in database"
    suggestions = ["Check the entity name against the configured entity mappings"]


class LogFilesNotFoundError(NotFoundError):
    error_code = "LOG_FILES_NOT_FOUND"
    message = "Migration logs not found for the specified session"
    suggestions = [
        "Check if log files exist for this session",
        "Verify log directory configuration",
        "Session may be too old and logs rotated",
    ]


# Authorization (403)

class PermissionDeniedError(AppError):
    status_code = 403
    error_code = "PERMISSION_DENIED"
    message = "Insufficient permissions to access database"


class LogAccessDeniedError(PermissionDeniedError):
    error_code = "LOG_ACCESS_DENIED"
    message = "Insufficient permissions to access migration logs"
    suggestions = [
        "Check file system permissions for log directory",
        "Verify database access permissions",
    ]


# Conflict (409)

class RunAlreadyActiveError(AppError):
    status_code = 409
    error_code = "RUN_ALREADY_ACTIVE"
    message = "A synchronization run is already active for this session and entity"
    retryable = True
    suggestions = ["Wait for the active run to finish before resubmitting"]


# Transient

class DatabaseConnectionError(AppError):
    status_code = 500
    error_code = "DATABASE_CONNECTION_ERROR"
    message = "Failed to connect to database for analysis"
    retryable = True
    suggestions = ["Retry shortly", "Verify database connectivity"]


class AnalysisTimeoutError(AppError):
    status_code = 504
    error_code = "ANALYSIS_TIMEOUT"
    message = "Differential analysis timed out"
    retryable = True
    suggestions = [
        "Narrow the scope: fewer entities or a more recent sinceTimestamp",
        "Submit with asyncMode=true",
    ]


class LogRetrievalTimeoutError(AppError):
    status_code = 504
    error_code = "LOG_RETRIEVAL_TIMEOUT"
    message = "Log retrieval operation timed out"
    retryable = True
    suggestions = [
        "Try reducing the time range or limit",
        "Use pagination to retrieve logs in smaller chunks",
    ]


# Resource (507)

class LogProcessingError(AppError):
    status_code = 507
    error_code = "LOG_PROCESSING_ERROR"
    message = "Log processing failed due to resource constraints"
    retryable = True
    suggestions = [
        "Reduce the number of logs requested",
        "Use more specific filters to limit results",
    ]


# Generic (500)

class AnalysisFailedError(AppError):
    status_code = 500
    error_code = "ANALYSIS_FAILED"
    message = "Differential analysis could not be completed"
    retryable = True


class LogRetrievalFailedError(AppError):
    status_code = 500
    error_code = "LOG_RETRIEVAL_FAILED"
    message = "Migration logs could not be retrieved"
    retryable = True
    suggestions = [
        "Check migration logs directory accessibility",
        "Verify database connectivity",
        "Try again with different parameters",
    ]


def error_for_code(code: str, detail: Any = None) -> AppError:
    """Rebuild a taxonomy error from its code, e.g. from a stored failure marker."""
    return AppError._by_code.get(code, AnalysisFailedError)(detail)


def classify(exc: BaseException, fallback: type[AppError] = AnalysisFailedError) -> AppError:
    """Map an arbitrary failure onto the nearest taxonomy entry."""
    if isinstance(exc, AppError):
        return exc
    if isinstance(exc, TimeoutError):
        timeout_cls = LogRetrievalTimeoutError if fallback is LogRetrievalFailedError else AnalysisTimeoutError
        return timeout_cls()
    if isinstance(exc, PermissionError):
        return LogAccessDeniedError() if fallback is LogRetrievalFailedError else PermissionDeniedError()
    if isinstance(exc, FileNotFoundError) and fallback is LogRetrievalFailedError:
        return LogFilesNotFoundError()
    if isinstance(exc, MemoryError):
        return LogProcessingError()
    if isinstance(exc, (ConnectionError, OSError)) and fallback is AnalysisFailedError:
        return DatabaseConnectionError()
    return fallback(f"{fallback.message} ({type(exc).__name__})")


# ── FastAPI exception handlers ────────────────────────────────────────────────

async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    violations = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
            "message": err.get("msg", "invalid value"),
        }
        for err in exc.errors()
    ]
    error = ValidationError(violations)
    return JSONResponse(status_code=error.status_code, content=error.to_body())


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": "HTTP_ERROR",
                "message": str(exc.detail),
                "details": exc.detail,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "retryable": False,
                "suggestions": [],
            }
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.error("http.unhandled_error", path=request.url.path, error=str(exc), exc_info=exc)
    error = classify(exc)
    return JSONResponse(status_code=error.status_code, content=error.to_body())
