"""Auth routes: login, logout, refresh, profile, and the first-login handshake.

Route overview:
  POST /login              email + password → JWT (organization claim once a member)
  POST /logout             emits SIGNED_OUT
  POST /refresh            refresh token → new token pair
  GET  /me                 current principal
  POST /first-login        reconcile memberships vs. pending onboarding
  POST /first-login/retry  retry a failed provisioning run
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from worktally.auth.deps import get_current_principal_id, get_current_user
from worktally.auth.jwt import create_access_token, create_refresh_token, decode_token
from worktally.auth.password import verify_password
from worktally.auth.session import AuthEvent, AuthSession, emit
from worktally.database import get_db
from worktally.dependencies import get_data_client, get_onboarding_store, get_provisioner
from worktally.middleware.exceptions import ProvisioningFailedError
from worktally.models.public.organization import OrganizationMember
from worktally.models.public.user import User
from worktally.schemas.auth import LoginRequest, RefreshRequest, TokenResponse, UserOut
from worktally.schemas.provisioning import FirstLoginResponse, ProvisioningResultOut
from worktally.services.data_client import DataClient
from worktally.services.first_login import (
    LoginAction,
    ReconciliationOutcome,
    reconcile_first_login,
    retry_provisioning,
)
from worktally.services.onboarding_store import OnboardingStore
from worktally.services.provisioning import TenantProvisioner
from worktally.tenancy import set_current_tenant

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Helpers ──────────────────────────────────────────────────

async def _resolve_organization(db: AsyncSession, user: User) -> str | None:
    result = await db.execute(
        select(OrganizationMember.organization_id)
        .where(OrganizationMember.user_id == user.id)
        .order_by(OrganizationMember.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


def _build_user_out(user: User, organization_id: str | None) -> UserOut:
    return UserOut(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        is_active=user.is_active,
        organization_id=organization_id,
    )


def _build_token_response(user: User, organization_id: str | None) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(user.id, user.email, organization_id),
        refresh_token=create_refresh_token(user.id, organization_id),
        user=_build_user_out(user, organization_id),
    )


async def _first_login_response(user: User, outcome: ReconciliationOutcome) -> FirstLoginResponse:
    tokens = None
    if outcome.action is LoginAction.DASHBOARD and outcome.organization_id:
        # Refresh tenant context for the rest of this request and the client
        set_current_tenant(outcome.organization_id)
        tokens = _build_token_response(user, outcome.organization_id)
        await emit(
            AuthEvent.TOKEN_REFRESHED,
            AuthSession(user_id=user.id, email=user.email, organization_id=outcome.organization_id),
        )

    response = FirstLoginResponse(
        action=outcome.action.value,
        organization_id=outcome.organization_id,
        phase=outcome.phase.value,
        progress=outcome.progress,
        message=outcome.message,
        can_retry=outcome.can_retry,
        provisioning=(
            ProvisioningResultOut(**outcome.provisioning.to_dict()) if outcome.provisioning else None
        ),
        tokens=tokens,
    )
    if outcome.action is LoginAction.ERROR:
        # State is kept; the client offers a retry
        raise ProvisioningFailedError(
            outcome.message or "Organization setup failed",
            outcome.provisioning.error_code if outcome.provisioning else "provisioning_failed",
            response.model_dump(mode="json"),
        )
    return response


# ── POST /login ──────────────────────────────────────────────

@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).where(User.email == body.email.lower()))
    user = result.scalar_one_or_none()

    if not user or not verify_password(body.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account deactivated")

    organization_id = await _resolve_organization(db, user)
    await emit(AuthEvent.SIGNED_IN, AuthSession(user_id=user.id, email=user.email, organization_id=organization_id))
    return _build_token_response(user, organization_id)


# ── POST /logout ─────────────────────────────────────────────

@router.post("/logout")
async def logout(principal_id: str = Depends(get_current_principal_id)):
    await emit(AuthEvent.SIGNED_OUT, AuthSession(user_id=principal_id))
    return {"message": "Signed out"}


# ── POST /refresh ────────────────────────────────────────────

@router.post("/refresh", response_model=TokenResponse)
async def refresh(body: RefreshRequest, db: AsyncSession = Depends(get_db)):
    """Exchange a refresh token; the organization claim is re-resolved."""
    payload = decode_token(body.refresh_token)
    if payload.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    result = await db.execute(select(User).where(User.id == payload.get("sub")))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    organization_id = await _resolve_organization(db, user)
    await emit(AuthEvent.TOKEN_REFRESHED, AuthSession(user_id=user.id, email=user.email, organization_id=organization_id))
    return _build_token_response(user, organization_id)


# ── GET /me ──────────────────────────────────────────────────

@router.get("/me", response_model=UserOut)
async def me(user: User = Depends(get_current_user)):
    payload: dict = getattr(user, "_token_payload", {})
    return _build_user_out(user, payload.get("organization_id"))


# ── POST /first-login ────────────────────────────────────────

@router.post("/first-login", response_model=FirstLoginResponse)
async def first_login(
    user: User = Depends(get_current_user),
    client: DataClient = Depends(get_data_client),
    store: OnboardingStore = Depends(get_onboarding_store),
    provisioner: TenantProvisioner = Depends(get_provisioner),
):
    """Send the principal to the dashboard, provision their organization, or start onboarding."""
    outcome = await reconcile_first_login(client, store, provisioner, user.id, user.email)
    logger.info(f"First login for {user.id}: {outcome.action.value}")
    return await _first_login_response(user, outcome)


@router.post("/first-login/retry", response_model=FirstLoginResponse)
async def first_login_retry(
    user: User = Depends(get_current_user),
    provisioner: TenantProvisioner = Depends(get_provisioner),
):
    outcome = await retry_provisioning(provisioner, user.id, user.email)
    return await _first_login_response(user, outcome)
