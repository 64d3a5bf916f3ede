"""
Credential handling for the Taskflow API.

Passwords are stored as Argon2id hashes. Sessions are stateless JWT access
tokens whose "sub" claim is the user id; every authorization decision is
made afresh from membership rows, so tokens carry no roles.

Settings come from the environment at import time:
- ENVIRONMENT: "production" or "staging" make JWT_SECRET_KEY mandatory
- JWT_SECRET_KEY, JWT_ALGORITHM (HS256/HS384/HS512)
- ACCESS_TOKEN_EXPIRE_MINUTES (1..1440)
"""

import logging
import os
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from time_utils import utc_now

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")
DEFAULT_EXPIRE_MINUTES = 15
MAX_EXPIRE_MINUTES = 24 * 60
TOKEN_TYPE = "access"


def is_production_like() -> bool:
    return os.environ.get("ENVIRONMENT", "development").lower() in ("production", "staging")


def _load_secret_key() -> str:
    key = os.environ.get("JWT_SECRET_KEY")
    if key:
        return key
    if is_production_like():
        raise ValueError("JWT_SECRET_KEY must be set when ENVIRONMENT is production or staging")

    logger.warning("JWT_SECRET_KEY is not set, tokens are signed with a throwaway development key")
    return "dev-" + secrets.token_urlsafe(32)


def _load_algorithm() -> str:
    algorithm = os.environ.get("JWT_ALGORITHM", "HS256").upper()
    if algorithm not in SUPPORTED_ALGORITHMS:
        logger.warning(f"JWT_ALGORITHM={algorithm} is not one of {SUPPORTED_ALGORITHMS}, falling back to HS256")
        return "HS256"
    return algorithm


def _load_expire_minutes() -> int:
    raw = os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", str(DEFAULT_EXPIRE_MINUTES))
    try:
        minutes = int(raw)
    except ValueError:
        logger.warning(f"ACCESS_TOKEN_EXPIRE_MINUTES={raw!r} is not a number, using {DEFAULT_EXPIRE_MINUTES}")
        return DEFAULT_EXPIRE_MINUTES

    if not 1 <= minutes <= MAX_EXPIRE_MINUTES:
        logger.warning(
            f"ACCESS_TOKEN_EXPIRE_MINUTES={minutes} is outside 1-{MAX_EXPIRE_MINUTES}, "
            f"using {DEFAULT_EXPIRE_MINUTES}"
        )
        return DEFAULT_EXPIRE_MINUTES
    return minutes


SECRET_KEY = _load_secret_key()
ALGORITHM = _load_algorithm()
ACCESS_TOKEN_EXPIRE_MINUTES = _load_expire_minutes()

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Check a password against a stored hash.

    A malformed or unknown hash counts as a mismatch rather than an error,
    so a corrupted row cannot turn a login attempt into a 500.
    """
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        logger.warning("Stored password hash could not be parsed")
        return False


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Sign an access token for the given claims.

    Args:
        data: Claims to encode; must contain "sub" (the user id)
        expires_delta: Lifetime override, ACCESS_TOKEN_EXPIRE_MINUTES otherwise

    Returns:
        Encoded JWT string
    """
    expire = utc_now() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {**data, "exp": expire, "type": TOKEN_TYPE}

    logger.debug(f"Issuing access token for user {data.get('sub')} (expires {expire.isoformat()})")
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode a token, returning its claims or None if it is invalid or expired."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.info(f"Rejected access token: {e}")
        return None


def user_id_from_token(token: str) -> Optional[str]:
    """
    Return the user id an access token was issued for.

    None when the token does not verify, is not an access token, or has no
    usable "sub" claim.
    """
    claims = verify_token(token)
    if claims is None:
        return None
    if claims.get("type") != TOKEN_TYPE:
        logger.info(f"Rejected token of type {claims.get('type')!r}")
        return None

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        logger.info("Rejected token without a subject")
        return None
    return subject
