"""
Account endpoints: register, login and the caller's own profile.

Register and login both answer with the user and a fresh access token, so a
client can start working right after signing up.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.orm import Session, joinedload

from auth.dependencies import get_current_user
from auth.security import create_access_token, hash_password, verify_password
from database import get_db
from models import AccessStatus, OrganizationMember, OrgRole, User
from time_utils import utc_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=4, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=100)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class AccountUser(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    created_at: datetime
    last_login_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    user: AccountUser
    access_token: str
    token_type: str = "bearer"


class MembershipSummary(BaseModel):
    organization_id: str
    organization_title: str
    role: OrgRole
    status: AccessStatus


class Profile(AccountUser):
    organizations: List[MembershipSummary] = []


def _issue(user: User) -> dict:
    return {"user": user, "access_token": create_access_token({"sub": user.id}), "token_type": "bearer"}


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(request: RegisterRequest, db: Session = Depends(get_db)):
    """
    Create an account and sign it in.

    Raises:
        HTTPException: 400 if the email is already taken
    """
    email = request.email.lower()
    if db.query(User).filter(User.email == email).first():
        logger.info(f"Registration rejected, email in use: {email}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User already exists")

    user = User(name=request.name.strip(), email=email, password_hash=hash_password(request.password))
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info(f"User registered: {user.email} (ID: {user.id})")
    return _issue(user)


@router.post("/login", response_model=AuthResponse)
def login(request: LoginRequest, db: Session = Depends(get_db)):
    """
    Exchange email and password for an access token.

    Raises:
        HTTPException: 404 for an unknown email, 401 for a wrong password,
            403 for a deactivated account
    """
    email = request.email.lower()
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        logger.info(f"Login for unknown email: {email}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if not verify_password(request.password, user.password_hash):
        logger.info(f"Login with wrong password for user {user.id}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid password")

    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is inactive")

    user.last_login_at = utc_now()
    db.commit()
    db.refresh(user)

    logger.info(f"User {user.id} logged in")
    return _issue(user)


@router.get("/me", response_model=Profile)
def me(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """The caller's account with every organization membership, banned ones included."""
    memberships = (
        db.query(OrganizationMember)
        .options(joinedload(OrganizationMember.organization))
        .filter(OrganizationMember.user_id == current_user.id)
        .all()
    )

    profile = AccountUser.model_validate(current_user).model_dump()
    profile["organizations"] = [
        MembershipSummary(
            organization_id=m.organization_id,
            organization_title=m.organization.title,
            role=m.role,
            status=m.status,
        )
        for m in memberships
    ]
    return profile
