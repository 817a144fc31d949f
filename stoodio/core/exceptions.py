"""
Domain errors for the booking core.

Every command either applies its whole transition or raises one of these
before anything is committed. The API layer turns them into HTTP errors
through ``to_http_exception``.
"""
from typing import Any, Optional

from fastapi import HTTPException, status


class DomainError(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationError(DomainError):
    """Malformed or missing booking fields; nothing was persisted."""

    status_code = status.HTTP_400_BAD_REQUEST


class InsufficientFundsError(ValidationError):
    """Wallet balance does not cover a debit."""


class NotAuthorizedError(DomainError):
    """Wrong actor for a role-gated transition."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(DomainError):
    """Overlapping time slot, or a contended lock."""

    status_code = status.HTTP_409_CONFLICT


class AlreadyClaimedError(ConflictError):
    """Another engineer accepted the job first."""


class InvalidStateError(ConflictError):
    """Transition attempted from a status that does not allow it."""
