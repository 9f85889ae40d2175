"""FastAPI dependencies for authentication and tenant scoping.

Dependencies:
  get_current_user          → decode JWT, load user from DB, return User
  get_current_principal_id  → the `sub` claim only (no DB hit)
  get_current_organization  → organization id from the JWT (or raise)
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from worktally.auth.jwt import decode_token
from worktally.database import get_db
from worktally.middleware.exceptions import TenantContextError
from worktally.models.public.user import User

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def _access_payload(token: str) -> dict:
    payload = decode_token(token)
    if not payload.get("sub") or payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_current_principal_id(token: str = Depends(oauth2_scheme)) -> str:
    return _access_payload(token)["sub"]


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Decode the JWT and load the user.

    The decoded payload is stashed on the user as `_token_payload` so
    downstream deps can read claims without re-decoding.
    """
    payload = _access_payload(token)

    result = await db.execute(select(User).where(User.id == payload["sub"]))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )

    user._token_payload = payload  # type: ignore[attr-defined]
    return user


async def get_current_organization(user: User = Depends(get_current_user)) -> str:
    """Organization id from the JWT claims; 403 until onboarding is done."""
    payload: dict = getattr(user, "_token_payload", {})
    organization_id = payload.get("organization_id")
    if not organization_id:
        raise TenantContextError("No organization yet: finish onboarding first")
    return organization_id
