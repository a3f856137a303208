"""
Query Engine - Structured Error Handling

Every failure the engine surfaces is a QueryEngineError carrying a unique
code, a human-readable message, an HTTP status hint and optional details.

ERROR TAXONOMY:
---------------
- QueryValidationError  caller's fault, never retried (400)
- ConnectionError       backend unreachable, surfaced not retried (503)
- AuthenticationError   credential rejected by the backend (401)
- TimeoutError          statement or backend exceeded its bound (504)
- ExecutionError        anything else that broke during execution (500)

The orchestrator raises QueryValidationError before touching cache or
backend; every other error is folded into a failure envelope. The HTTP
layer maps raised errors through install_error_handlers().

ERROR RESPONSE FORMAT:
----------------------
{
    "error": {
        "code": "ERR_2001",
        "message": "Query validation failed: Query ID is required",
        "details": {"errors": [...], "warnings": [...]},
        "suggestion": "Fix the reported problems and resubmit the definition",
        "query_id": "user_lookup"
    }
}
"""

import logging
from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR CODES
# =============================================================================

class ErrorCode(str, Enum):
    """Unique error codes for every error type."""

    # Definitions & registry (1xxx)
    ERR_DEFINITION_NOT_FOUND = "ERR_1001"
    ERR_DEFINITION_EXISTS = "ERR_1002"
    ERR_DEFINITION_FILE_INVALID = "ERR_1003"

    # Validation (2xxx)
    ERR_VALIDATION_FAILED = "ERR_2001"
    ERR_PARAMETER_INVALID = "ERR_2002"
    ERR_BUILDER_INVALID = "ERR_2003"

    # Backend (3xxx)
    ERR_CONNECTION_FAILED = "ERR_3001"
    ERR_AUTHENTICATION_FAILED = "ERR_3002"
    ERR_QUERY_TIMEOUT = "ERR_3003"
    ERR_EXECUTION_FAILED = "ERR_3004"
    ERR_BACKEND_NOT_CONFIGURED = "ERR_3005"

    # Internal (9xxx)
    ERR_INTERNAL = "ERR_9001"


# =============================================================================
# ERROR TYPES
# =============================================================================

@dataclass(eq=False)
class QueryEngineError(Exception):
    """
    Structured error with all context needed for debugging.

    Attributes:
        message: Human-readable error message
        code: Unique error code for searching logs
        status_code: HTTP status code
        details: Additional context (dict)
        suggestion: How to fix the issue
        query_id: Definition being executed when the error happened
    """
    message: str
    code: ErrorCode = ErrorCode.ERR_INTERNAL
    status_code: int = 500
    details: Dict[str, Any] = field(default_factory=dict)
    suggestion: Optional[str] = None
    query_id: Optional[str] = None

    def __post_init__(self):
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        error_dict = {
            "code": self.code.value,
            "message": self.message,
        }

        if self.details:
            error_dict["details"] = self.details

        if self.suggestion:
            error_dict["suggestion"] = self.suggestion

        if self.query_id:
            error_dict["query_id"] = self.query_id

        error_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

        return {"error": error_dict}

    def to_response(self) -> JSONResponse:
        """Convert to FastAPI JSONResponse."""
        return JSONResponse(
            status_code=self.status_code,
            content=self.to_dict()
        )

    def log(self, level: str = "error"):
        """Log the error with context."""
        log_msg = f"[{self.code.value}] {self.message}"
        if self.details:
            log_msg += f" | details={self.details}"

        getattr(logger, level)(log_msg, extra={"query_id": self.query_id or "-"})


@dataclass(eq=False)
class QueryValidationError(QueryEngineError):
    """The definition or parameters were rejected. Carries every problem found."""
    code: ErrorCode = ErrorCode.ERR_VALIDATION_FAILED
    status_code: int = 400
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def __post_init__(self):
        super().__post_init__()
        if self.errors and "errors" not in self.details:
            self.details["errors"] = list(self.errors)
        if self.warnings and "warnings" not in self.details:
            self.details["warnings"] = list(self.warnings)


@dataclass(eq=False)
class ParameterError(QueryValidationError):
    code: ErrorCode = ErrorCode.ERR_PARAMETER_INVALID
    parameter: Optional[str] = None


@dataclass(eq=False)
class QueryBuilderError(QueryValidationError):
    code: ErrorCode = ErrorCode.ERR_BUILDER_INVALID


@dataclass(eq=False)
class ConnectionError(QueryEngineError):
    code: ErrorCode = ErrorCode.ERR_CONNECTION_FAILED
    status_code: int = 503


@dataclass(eq=False)
class AuthenticationError(QueryEngineError):
    code: ErrorCode = ErrorCode.ERR_AUTHENTICATION_FAILED
    status_code: int = 401


@dataclass(eq=False)
class TimeoutError(QueryEngineError):
    code: ErrorCode = ErrorCode.ERR_QUERY_TIMEOUT
    status_code: int = 504


@dataclass(eq=False)
class ExecutionError(QueryEngineError):
    code: ErrorCode = ErrorCode.ERR_EXECUTION_FAILED
    status_code: int = 500


@dataclass(eq=False)
class DefinitionNotFoundError(QueryEngineError):
    code: ErrorCode = ErrorCode.ERR_DEFINITION_NOT_FOUND
    status_code: int = 404


@dataclass(eq=False)
class DefinitionExistsError(QueryEngineError):
    code: ErrorCode = ErrorCode.ERR_DEFINITION_EXISTS
    status_code: int = 409


# =============================================================================
# ERROR FACTORY FUNCTIONS
# =============================================================================

def validation_failed(
    errors: List[str],
    warnings: Optional[List[str]] = None,
    query_id: Optional[str] = None
) -> QueryValidationError:
    """Create the pre-execution validation abort."""
    return QueryValidationError(
        message=f"Query validation failed: {', '.join(errors)}",
        errors=list(errors),
        warnings=list(warnings or []),
        suggestion="Fix the reported problems and resubmit the definition",
        query_id=query_id
    )


def parameter_invalid(parameter: str, message: str) -> ParameterError:
    """Create a parameter coercion or validation error."""
    return ParameterError(
        message=message,
        errors=[message],
        parameter=parameter,
        details={"parameter": parameter},
    )


def builder_invalid(message: str, **details: Any) -> QueryBuilderError:
    """Create a query builder rejection."""
    return QueryBuilderError(message=message, errors=[message], details=dict(details))


def connection_failed(
    backend: str,
    reason: str,
    query_id: Optional[str] = None
) -> ConnectionError:
    """Create connection failed error."""
    return ConnectionError(
        message=f"Failed to connect to {backend} backend: {reason}",
        details={"backend": backend, "reason": reason},
        suggestion="Check backend credentials and network connectivity",
        query_id=query_id
    )


def authentication_failed(backend: str, reason: str) -> AuthenticationError:
    """Create authentication failed error."""
    return AuthenticationError(
        message=f"Authentication against {backend} backend failed: {reason}",
        details={"backend": backend},
        suggestion="Verify the credentials used for this backend",
    )


def query_timeout(timeout_ms: Optional[int], query_id: Optional[str] = None) -> TimeoutError:
    """Create query timeout error."""
    return TimeoutError(
        message=f"Query exceeded {timeout_ms} ms timeout",
        details={"timeout_ms": timeout_ms},
        suggestion="Narrow the filters or raise constraints.timeoutMs",
        query_id=query_id
    )


def execution_failed(message: str, query_id: Optional[str] = None) -> ExecutionError:
    """Create generic execution error."""
    return ExecutionError(message=message, query_id=query_id)


def backend_not_configured(data_source: str) -> ExecutionError:
    """Create error for a data source without an executor."""
    return ExecutionError(
        message=f"No executor configured for data source '{data_source}'",
        code=ErrorCode.ERR_BACKEND_NOT_CONFIGURED,
        details={"data_source": data_source},
    )


def definition_not_found(query_id: str) -> DefinitionNotFoundError:
    return DefinitionNotFoundError(
        message=f"Query definition '{query_id}' not found",
        details={"query_id": query_id},
        query_id=query_id
    )


def definition_exists(query_id: str) -> DefinitionExistsError:
    return DefinitionExistsError(
        message=f"Query definition '{query_id}' already exists",
        details={"query_id": query_id},
        suggestion="Use replace() to update a live definition",
        query_id=query_id
    )


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

async def query_engine_error_handler(request: Request, exc: QueryEngineError) -> JSONResponse:
    """Handle QueryEngineError and return structured response."""
    exc.log("warning" if exc.status_code < 500 else "error")
    return exc.to_response()


def install_error_handlers(app):
    """Install error handlers on FastAPI app."""
    app.add_exception_handler(QueryEngineError, query_engine_error_handler)
    logger.info("Structured error handlers installed")
