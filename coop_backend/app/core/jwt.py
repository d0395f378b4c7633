"""
JWT helpers.

The cooperative's sign-in service issues the bearer tokens; this backend
verifies them. Minting is only used by the seed script and the tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from coop_backend.app.core.config import settings
from coop_backend.app.models.user import User


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Sign ``data`` (sub, user_id, role) with an ``exp`` claim."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    claims = {**data, "exp": datetime.now(timezone.utc) + expires_delta}
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)


def token_for_user(user: User, expires_delta: Optional[timedelta] = None) -> str:
    return create_access_token(
        {"sub": user.phone, "user_id": user.id, "role": user.role.value},
        expires_delta=expires_delta,
    )


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Claims of a correctly signed, unexpired token, or None."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
