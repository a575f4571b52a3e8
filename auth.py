"""Password hashing, JWT issuing and the request authorization dependencies."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from errors import ErrorCode, ForbiddenError, UnauthorizedError
from models import User, Role

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 24 * 60
# bcrypt only looks at the first 72 bytes
BCRYPT_MAX_BYTES = 72

bearer_scheme = HTTPBearer(auto_error=False)


class InvalidTokenError(UnauthorizedError):
    def __init__(self, message: str = "Invalid token."):
        super().__init__(message, ErrorCode.INVALID_TOKEN)


class ExpiredTokenError(UnauthorizedError):
    def __init__(self, message: str = "Token expired. Please log in again."):
        super().__init__(message, ErrorCode.TOKEN_EXPIRED)


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(plain_password), hashed_password.encode("utf-8"))
    except ValueError:
        # not a bcrypt hash
        return False


def create_access_token(
    user_id: str,
    secret: str,
    expires_delta: Optional[timedelta] = None,
    algorithm: str = ALGORITHM,
) -> str:
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {"sub": user_id, "iat": now, "exp": expire}
    return jwt.encode(payload, secret, algorithm=algorithm)


def validate_token(token: str, secret: str, algorithm: str = ALGORITHM) -> str:
    """Return the user id carried by ``token``.

    Raises:
        ExpiredTokenError: the signature is valid but ``exp`` has passed.
        InvalidTokenError: bad signature, malformed token or missing subject.
    """
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except ExpiredSignatureError:
        raise ExpiredTokenError() from None
    except JWTError:
        raise InvalidTokenError() from None

    user_id = payload.get("sub")
    if not user_id:
        raise InvalidTokenError()
    return user_id


def public_user(doc: dict) -> User:
    """User as returned to clients: the password hash never leaves the store."""
    return User(**{k: v for k, v in doc.items() if k != "hashed_password"})


async def get_current_active_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    # HTTPBearer yields None for a missing header or a non-Bearer scheme
    if credentials is None or not credentials.credentials:
        logger.warning(f"Rejected {request.method} {request.url.path}: no bearer token")
        raise UnauthorizedError("Access denied. No token provided.")

    settings = request.app.state.settings
    try:
        user_id = validate_token(credentials.credentials, settings.jwt_secret, settings.jwt_algorithm)
    except UnauthorizedError as e:
        logger.warning(f"Rejected {request.method} {request.url.path}: {e.code}")
        raise

    user = request.app.state.storage.find_by_id("users", user_id)
    if not user:
        logger.warning(f"Rejected {request.method} {request.url.path}: unknown subject")
        raise UnauthorizedError("User not found or invalid token.")

    return public_user(user)


def require_role(role: Role):
    """Dependency factory: the authenticated user must have ``role``."""

    async def role_checker(current_user: User = Depends(get_current_active_user)) -> User:
        if current_user.role != role:
            logger.warning(f"User {current_user.id} lacks role {role}")
            raise ForbiddenError(f"Access denied. {role.capitalize()} permission required.")
        return current_user

    return role_checker
