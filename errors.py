from dataclasses import dataclass
from typing import Any, Dict, Optional


class ErrorCode:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL = "INTERNAL"


@dataclass
class ServiceError(Exception):
    code: str
    message: str
    status_code: int = 500
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, **(self.context or {})}


class ValidationError(ServiceError):
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.VALIDATION_ERROR, message, 400, context)


class UnauthorizedError(ServiceError):
    def __init__(self, message: str, code: str = ErrorCode.UNAUTHORIZED):
        super().__init__(code, message, 401)


class ForbiddenError(ServiceError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.FORBIDDEN, message, 403)


class NotFoundError(ServiceError):
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.NOT_FOUND, message, 404, context)


class ConflictError(ServiceError):
    """Duplicate value for a unique field. Reported as 400."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.CONFLICT, message, 400)


class InternalError(ServiceError):
    def __init__(self, message: str = "Internal server error."):
        super().__init__(ErrorCode.INTERNAL, message, 500)
