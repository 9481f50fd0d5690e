from datetime import datetime, timedelta, timezone
from typing import Optional, Any
import uuid

from jose import JWTError, jwt

from app.config import settings
from app.core.permissions import Principal, Role, parse_role


def create_access_token(
    subject: str | uuid.UUID,
    role: Role | str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token carrying the caller's role.

    Credentials are issued by the identity service in production; this
    helper exists for ops tooling and tests.
    """
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {
        "sub": str(subject),
        "role": role.value if isinstance(role, Role) else str(role),
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "jti": str(uuid.uuid4()),
        "type": "access",
    }

    return jwt.encode(
        to_encode,
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM
    )


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a JWT token.

    Returns:
        Decoded token payload or None if invalid
    """
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )
    except JWTError:
        return None


def verify_access_token(token: str) -> Optional[Principal]:
    """
    Verify an access token and return the principal it names.

    Returns None for invalid, expired or non-access tokens, or a subject
    that is not a UUID.
    """
    payload = decode_token(token)
    if payload is None:
        return None

    if payload.get("type") != "access":
        return None

    try:
        principal_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        return None

    return Principal(id=principal_id, role=parse_role(payload.get("role", Role.CUSTOMER.value)))
