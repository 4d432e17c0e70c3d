"""Module errors: structured error taxonomy for DynServe."""
#
from enum import Enum
from typing import Dict, Any, Optional
# PURPOSE:
# Provides one error taxonomy for the reload engine and the server registry,
# with searchable error codes and typed exceptions.
#
# ERROR CODE FORMAT:
# - ROUTE_XXX: Route descriptor / route source validation
# - INSTANCE_XXX: Server instance lookup and lifecycle
# - UNIT_XXX: Code unit lookup
# - PORT_XXX: Port negotiation
# - LOAD_XXX: Execution of route sources
# - BIND_XXX: Socket binding
# - CONFIG_XXX: Configuration
#
# USAGE:
#   from dynserve.errors import NotFoundError, ErrorCode
#
#   raise NotFoundError(
#       f"Server '{name}' not found",
#       code=ErrorCode.INSTANCE_NOT_FOUND,
#       details={"name": name},
#   )
#
class ErrorCode(Enum):
    # Route Errors
    ROUTE_INVALID = "ROUTE_001"
    ROUTE_METHOD_UNSUPPORTED = "ROUTE_002"
    ROUTE_PATH_INVALID = "ROUTE_003"
    ROUTE_HANDLER_INVALID = "ROUTE_004"
    ROUTE_SOURCE_INVALID = "ROUTE_005"
    ROUTE_FILE_EXTENSION = "ROUTE_006"
    ROUTE_FILE_MISSING = "ROUTE_007"
    ROUTE_EXPORT_MISSING = "ROUTE_008"

    # Instance Errors
    INSTANCE_NOT_FOUND = "INSTANCE_001"
    INSTANCE_NAME_INVALID = "INSTANCE_002"
    INSTANCE_START_FAILED = "INSTANCE_003"

    # Unit Errors
    UNIT_NOT_FOUND = "UNIT_001"

    # Port Errors
    PORT_INVALID = "PORT_001"
    PORT_EXHAUSTED = "PORT_002"

    # Load Errors
    LOAD_SYNTAX_ERROR = "LOAD_001"
    LOAD_EXECUTION_FAILED = "LOAD_002"
    LOAD_INVALID_ARTIFACT = "LOAD_003"
    LOAD_READ_FAILED = "LOAD_004"

    # Bind Errors
    BIND_ADDRESS_IN_USE = "BIND_001"
    BIND_PERMISSION_DENIED = "BIND_002"
    BIND_FAILED = "BIND_003"

    # Config Errors
    CONFIG_INVALID = "CONFIG_001"

    # System Errors
    SYSTEM_INTERNAL_ERROR = "SYSTEM_001"


class DynServeError(Exception):
    """
    Base exception class for DynServe with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g., "PORT_002")
        message: Human-readable error message
        details: Optional dictionary with additional context
        http_status: Suggested HTTP status code when surfaced through an API
    """

    HTTP_STATUS_MAP: Dict[ErrorCode, int] = {
        ErrorCode.ROUTE_INVALID: 400,
        ErrorCode.ROUTE_METHOD_UNSUPPORTED: 400,
        ErrorCode.ROUTE_PATH_INVALID: 400,
        ErrorCode.ROUTE_HANDLER_INVALID: 400,
        ErrorCode.ROUTE_SOURCE_INVALID: 400,
        ErrorCode.ROUTE_FILE_EXTENSION: 400,
        ErrorCode.ROUTE_FILE_MISSING: 400,
        ErrorCode.ROUTE_EXPORT_MISSING: 400,

        ErrorCode.INSTANCE_NOT_FOUND: 404,
        ErrorCode.INSTANCE_NAME_INVALID: 400,
        ErrorCode.INSTANCE_START_FAILED: 500,

        ErrorCode.UNIT_NOT_FOUND: 404,

        ErrorCode.PORT_INVALID: 400,
        ErrorCode.PORT_EXHAUSTED: 503,

        ErrorCode.LOAD_SYNTAX_ERROR: 500,
        ErrorCode.LOAD_EXECUTION_FAILED: 500,
        ErrorCode.LOAD_INVALID_ARTIFACT: 500,
        ErrorCode.LOAD_READ_FAILED: 500,

        ErrorCode.BIND_ADDRESS_IN_USE: 409,
        ErrorCode.BIND_PERMISSION_DENIED: 403,
        ErrorCode.BIND_FAILED: 500,

        ErrorCode.CONFIG_INVALID: 500,

        ErrorCode.SYSTEM_INTERNAL_ERROR: 500,
    }

    default_code: ErrorCode = ErrorCode.SYSTEM_INTERNAL_ERROR

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        http_status: Optional[int] = None
    ):
        """
        Initialize a DynServeError.

        Args:
            code: ErrorCode enum value
            message: Human-readable error message
            details: Optional dictionary with additional context
            http_status: Optional HTTP status code (defaults to mapped value)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        self.http_status = http_status or self.HTTP_STATUS_MAP.get(code, 500)

        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for JSON serialization.

        Returns:
            Dictionary with code, message, details, and http_status
        """
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "http_status": self.http_status
        }

    def to_json(self) -> str:
        """Serialize error to JSON string."""
        import json
        return json.dumps(self.to_dict(), default=str)


class _TaxonomyError(DynServeError):
    """Message-first constructor with a per-class default code."""

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code or self.default_code, message, details)


class ValidationError(_TaxonomyError):
    """Malformed descriptor, unsupported method, bad route source or option."""
    default_code = ErrorCode.ROUTE_INVALID


class InvalidPortError(ValidationError):
    """Requested base port is outside the allowed range."""
    default_code = ErrorCode.PORT_INVALID


class NotFoundError(_TaxonomyError):
    """Unknown instance name or missing code unit."""
    default_code = ErrorCode.INSTANCE_NOT_FOUND


class PortExhaustedError(_TaxonomyError):
    """No free port within the scan budget."""
    default_code = ErrorCode.PORT_EXHAUSTED


class LoadError(_TaxonomyError):
    """Parse or execution failure of a code unit; wraps the underlying cause."""
    default_code = ErrorCode.LOAD_EXECUTION_FAILED


class BindError(_TaxonomyError):
    """
    Socket failure while binding a listening port.

    `reason` is one of "in_use", "permission" or "other".
    """
    default_code = ErrorCode.BIND_FAILED

    REASONS = {
        ErrorCode.BIND_ADDRESS_IN_USE: "in_use",
        ErrorCode.BIND_PERMISSION_DENIED: "permission",
        ErrorCode.BIND_FAILED: "other",
    }

    @property
    def reason(self) -> str:
        return self.REASONS.get(self.code, "other")


# ============================================================================
# Convenience Functions
# ============================================================================

def handle_error(error: Exception, context: Optional[str] = None) -> DynServeError:
    """
    Convert a generic exception to a DynServeError.

    Args:
        error: The original exception
        context: Optional context string (e.g., "while binding routes")

    Returns:
        DynServeError with appropriate code and message
    """
    if isinstance(error, DynServeError):
        return error

    error_type = type(error).__name__

    if isinstance(error, SyntaxError):
        code = ErrorCode.LOAD_SYNTAX_ERROR
    elif isinstance(error, PermissionError):
        code = ErrorCode.BIND_PERMISSION_DENIED
    elif isinstance(error, FileNotFoundError):
        code = ErrorCode.UNIT_NOT_FOUND
    else:
        code = ErrorCode.SYSTEM_INTERNAL_ERROR

    message = str(error)
    if context:
        message = f"{context}: {message}"

    return DynServeError(
        code=code,
        message=message,
        details={
            "original_type": error_type,
            "original_message": str(error)
        }
    )


__all__ = [
    "ErrorCode",
    "DynServeError",
    "ValidationError",
    "InvalidPortError",
    "NotFoundError",
    "PortExhaustedError",
    "LoadError",
    "BindError",
    "handle_error",
]
