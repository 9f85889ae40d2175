"""Responses for the first-login handshake."""

from pydantic import BaseModel

from worktally.schemas.auth import TokenResponse


class ProvisioningResultOut(BaseModel):
    success: bool
    step: str
    organization_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    message: str | None = None
    warnings: list[str] = []


class FirstLoginResponse(BaseModel):
    action: str                     # dashboard | onboarding | error
    organization_id: str | None = None
    phase: str
    progress: int                   # 0-100, for the progress indicator
    message: str | None = None
    can_retry: bool = False
    provisioning: ProvisioningResultOut | None = None
    # Reissued with the organization claim once the user has one
    tokens: TokenResponse | None = None
