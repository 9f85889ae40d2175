"""JWT token creation and decoding.

Token claims:
  - sub:              principal (user) id
  - email:            principal email
  - organization_id:  tenant id, once the principal is a member of one
  - type:             "access" | "refresh"
  - exp:              expiry timestamp
"""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from worktally.config import settings

ALGORITHM = settings.jwt_algorithm


def _encode(payload: dict, expire: datetime) -> str:
    return jwt.encode({**payload, "exp": expire}, settings.secret_key, algorithm=ALGORITHM)


def create_access_token(
    user_id: str,
    email: str,
    organization_id: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    payload = {"sub": user_id, "email": email, "type": "access"}
    if organization_id:
        payload["organization_id"] = organization_id
    return _encode(payload, expire)


def create_refresh_token(user_id: str, organization_id: str | None = None) -> str:
    expire = datetime.now(timezone.utc) + timedelta(days=settings.refresh_token_expire_days)
    payload = {"sub": user_id, "type": "refresh"}
    if organization_id:
        payload["organization_id"] = organization_id
    return _encode(payload, expire)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Returns empty dict on failure."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return {}
