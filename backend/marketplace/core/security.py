"""Bearer JWT authentication. Tokens are issued by the identity service; ``sub`` is the user id."""

from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import settings
from marketplace.core.deps import get_db
from marketplace.models.user import User
from marketplace.services.user import get_user_by_id

bearer_scheme = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def create_access_token(user_id: int, role: str, expires_delta: timedelta | None = None) -> str:
    """Sign a token for ``user_id``. Used by tooling and tests; production tokens come from the IdP."""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.jwt_expire_minutes)
    )
    claims = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise _unauthorized("Invalid or expired token") from exc


def token_subject(payload: dict) -> int:
    """Return the user id carried in ``sub``."""
    subject = payload.get("sub")
    if subject is None:
        raise _unauthorized("Token payload missing subject")
    try:
        return int(subject)
    except (ValueError, TypeError) as exc:
        raise _unauthorized("Invalid token subject") from exc


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """FastAPI dependency: resolve the active User behind the Bearer token.

    The role always comes from the database row, never from the token, so a
    demoted admin loses access as soon as the row changes.
    """
    user_id = token_subject(decode_access_token(credentials.credentials))
    user = await get_user_by_id(db, user_id)
    if user is None or not user.is_active:
        raise _unauthorized("User not found or inactive")
    return user
