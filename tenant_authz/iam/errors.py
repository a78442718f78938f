"""
Structured error classes for scope resolution and IAM configuration.

Policy denials are not errors; see tenant_authz.policy.engine.
"""

from enum import Enum
from typing import Optional

from fastapi import status


class ContextErrorCode(str, Enum):
    CONTEXT_MISSING = "CONTEXT_MISSING"
    CONTEXT_INVALID = "CONTEXT_INVALID"
    CONTEXT_FORBIDDEN = "CONTEXT_FORBIDDEN"


_DEFAULT_STATUS = {
    ContextErrorCode.CONTEXT_MISSING: status.HTTP_400_BAD_REQUEST,
    ContextErrorCode.CONTEXT_INVALID: status.HTTP_404_NOT_FOUND,
    ContextErrorCode.CONTEXT_FORBIDDEN: status.HTTP_403_FORBIDDEN,
}


class ContextError(Exception):
    """
    Raised when tenant scope resolution fails before authorization begins.

    Carries an HTTP status hint for the boundary layer to translate.
    """

    def __init__(
        self,
        message: str,
        code: ContextErrorCode,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code if status_code is not None else _DEFAULT_STATUS[code]
        super().__init__(message)

    @classmethod
    def missing(cls, message: str) -> "ContextError":
        return cls(message, ContextErrorCode.CONTEXT_MISSING)

    @classmethod
    def invalid(cls, message: str, status_code: Optional[int] = None) -> "ContextError":
        return cls(message, ContextErrorCode.CONTEXT_INVALID, status_code)

    @classmethod
    def forbidden(cls, message: str) -> "ContextError":
        return cls(message, ContextErrorCode.CONTEXT_FORBIDDEN)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": "context_error",
            "code": self.code.value,
            "message": self.message,
        }


class GateConfigurationError(ValueError):
    """Raised at load time for a duplicate gate prefix or a gate without requirements."""
    pass


class PermissionKeyError(ValueError):
    """Raised when a permission key is not a well-formed dot-namespaced key."""
    pass
