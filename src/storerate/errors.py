"""Error taxonomy shared by the service layer and the HTTP surface."""

from typing import Optional

from fastapi import HTTPException, status
from pydantic import ValidationError as PydanticValidationError


class ServiceError(HTTPException):
    """Base class for errors rendered as ``{"message": ..., "field": ...}``."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(status_code=self.status_code, detail=message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        body = {"message": self.message}
        if self.field:
            body["field"] = self.field
        return body


class ValidationError(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST

    @classmethod
    def from_errors(cls, errors) -> "ValidationError":
        """Build from pydantic's error list, keeping only the first error."""
        if not errors:
            return cls("Invalid input")
        message, field = describe_error(errors[0])
        return cls(message, field=field)

    @classmethod
    def from_pydantic(cls, exc: PydanticValidationError) -> "ValidationError":
        return cls.from_errors(exc.errors())


class AuthError(ServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST


class InternalError(ServiceError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def describe_error(error: dict) -> tuple:
    """Return ``(message, field)`` for one pydantic error entry.

    Messages raised by our own validators are surfaced verbatim instead of
    pydantic's ``"Value error, ..."`` wrapping.
    """
    ctx = error.get("ctx") or {}
    if isinstance(ctx.get("error"), ValueError):
        message = str(ctx["error"])
    else:
        message = error.get("msg", "Invalid input")
    loc = [part for part in error.get("loc", ()) if part not in ("body", "query", "path")]
    field = str(loc[-1]) if loc else None
    return message, field
