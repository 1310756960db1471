"""
Domain errors shared by the services and the HTTP layer.

Each error carries a stable code and the HTTP status the API answers with.
Gateway adapters do not raise these for expected provider failures; they
return a failed GatewayResult and the services decide what to raise.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    STATE_CONFLICT = "STATE_CONFLICT"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    DATABASE_ERROR = "DATABASE_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class MaisonError(Exception):
    """Base class for errors that map onto the API error envelope."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    http_status: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        error = {"code": self.code.value, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


class ValidationError(MaisonError):
    code = ErrorCode.VALIDATION_ERROR
    http_status = 400


class NotFoundError(MaisonError):
    code = ErrorCode.NOT_FOUND
    http_status = 404


class StateConflictError(MaisonError):
    code = ErrorCode.STATE_CONFLICT
    http_status = 409


class GatewayError(MaisonError):
    """Provider unreachable, declined or returned something unusable."""
    code = ErrorCode.GATEWAY_ERROR
    http_status = 502


class GatewayAuthError(GatewayError):
    code = ErrorCode.AUTH_ERROR


class WebhookSignatureError(MaisonError):
    code = ErrorCode.INVALID_SIGNATURE
    http_status = 400


class DatabaseError(MaisonError):
    code = ErrorCode.DATABASE_ERROR
    http_status = 500


class ConfigurationError(MaisonError):
    code = ErrorCode.CONFIGURATION_ERROR
    http_status = 500


class UnauthorizedError(MaisonError):
    code = ErrorCode.UNAUTHORIZED
    http_status = 401


def format_validation_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Flatten pydantic error dicts into JSON-safe field/message pairs."""
    return [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", "Invalid value"),
        }
        for error in errors
    ]
