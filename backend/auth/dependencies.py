"""
FastAPI dependencies for authentication and authorization.

This module provides dependency functions that can be used in route handlers to:
- Extract and validate the current user from a JWT bearer token
- Run the route authorization façade before a handler executes
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from auth.errors import AccessDenied
from auth.permissions import Permission
from auth.route_guard import OperationPolicy, RequestContext, authorize
from auth.security import user_id_from_token
from database import get_db
from models import User

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme for JWT authentication
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the principal from the bearer token.

    Raises:
        HTTPException: 401 if the token is missing, invalid or names no user;
            403 if the account is deactivated
    """
    if not credentials or not credentials.credentials:
        logger.info("Request without bearer credentials")
        raise _unauthorized("Not authenticated")

    user_id = user_id_from_token(credentials.credentials)
    if user_id is None:
        raise _unauthorized("Invalid or expired token")

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        logger.info(f"Token subject {user_id} no longer exists")
        raise _unauthorized("User not found")

    if not user.is_active:
        logger.info(f"Deactivated user {user_id} attempted access")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )

    logger.debug(f"Authenticated user {user.id}")
    return user


def require_permissions(*permissions: Permission):
    """
    Create a dependency that runs the route authorization façade.

    The policy is fixed when the route is declared; the organization, team
    and project ids are read from the request when it arrives. A deny raises
    AccessDenied, so the handler body never runs.

    Example:
        @app.post("/api/teams")
        def create_team(
            data: schemas.TeamCreate,
            current_user: User = Depends(require_permissions(Permission.CREATE_TEAM)),
        ):
            ...
    """
    policy = OperationPolicy.of(*permissions)

    async def permission_checker(
        request: Request,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> User:
        context = await RequestContext.from_request(request)
        decision = authorize(db, current_user, policy, context)
        if not decision.allowed:
            logger.warning(
                f"Request {request.method} {request.url.path} rejected for user "
                f"{current_user.id}: {decision.reason}"
            )
            raise AccessDenied(decision.reason, decision.code)
        return current_user

    return permission_checker
