"""
Authorization error taxonomy.

Every refusal made by the authorization engine or by a membership mutation
is one of these exceptions. Each carries a human-readable reason (safe to log
and to return to the caller), a machine-readable code and the HTTP status the
API layer should answer with. Store failures are deliberately absent: a
SQLAlchemyError is never converted into a permission decision.
"""

import enum
from typing import Optional

from fastapi import status


class DenyCode(str, enum.Enum):
    NOT_A_MEMBER = "not_a_member"
    BANNED = "banned"
    ENTITY_NOT_FOUND = "entity_not_found"
    MALFORMED_REFERENCE = "malformed_reference"
    INSUFFICIENT_PERMISSION = "insufficient_permission"
    INVARIANT_VIOLATION = "invariant_violation"


class AuthorizationError(Exception):
    """Base class for all forbidden outcomes."""

    code: DenyCode = DenyCode.INSUFFICIENT_PERMISSION
    status_code: int = status.HTTP_403_FORBIDDEN

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_dict(self) -> dict:
        return {"detail": self.reason, "code": self.code.value}


class NotAMember(AuthorizationError):
    code = DenyCode.NOT_A_MEMBER


class Banned(AuthorizationError):
    code = DenyCode.BANNED


class MalformedReference(AuthorizationError):
    code = DenyCode.MALFORMED_REFERENCE


class InsufficientPermission(AuthorizationError):
    code = DenyCode.INSUFFICIENT_PERMISSION


class InvariantViolation(AuthorizationError):
    code = DenyCode.INVARIANT_VIOLATION


class EntityNotFound(AuthorizationError):
    code = DenyCode.ENTITY_NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class AccessDenied(AuthorizationError):
    """
    Raised by the route authorization façade when the access evaluator denies.

    The client always sees 403 regardless of which check failed; the code of
    the underlying decision is kept for logging and tests.
    """

    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, reason: str, code: Optional[DenyCode] = None):
        super().__init__(reason)
        self.code = code or DenyCode.INSUFFICIENT_PERMISSION

