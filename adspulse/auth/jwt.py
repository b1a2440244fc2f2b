from datetime import datetime, timedelta, timezone
from typing import Iterable

from jose import JWTError, jwt

from adspulse.config import settings


def create_access_token(
    user_id: str,
    tenant_id: str | None = None,
    roles: Iterable[str] = (),
    expires_minutes: int = 60,
) -> str:
    """Create a signed bearer token for API callers and local tooling."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "tenant_id": tenant_id,
        "roles": list(roles),
        "exp": now + timedelta(minutes=expires_minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a bearer token. Returns claims or None if invalid."""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
