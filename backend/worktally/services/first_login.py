"""First-login reconciliation.

Runs on every sign-in and decides where the principal goes next:

  1. already a member of an organization → dashboard (stale onboarding
     state is dropped; membership wins over anything pending). If the
     membership lookup itself keeps failing the result is a retryable
     error and stored wizard state is left untouched.
  2. submitted onboarding waiting → provision the organization now
  3. otherwise → start the onboarding wizard

A failed provisioning run keeps the onboarding state, so `retry_provisioning`
can pick it up again. The membership check in the provisioner makes a
retry safe after a run that actually got through.
"""

import enum
import logging
from dataclasses import dataclass

from worktally.services.data_client import DataClient
from worktally.services.onboarding_store import OnboardingStore
from worktally.services.provisioning import (
    ProvisioningError,
    ProvisioningResult,
    ProvisioningStep,
    TenantProvisioner,
)
from worktally.utils.retry import with_retry

logger = logging.getLogger(__name__)


class LoginAction(str, enum.Enum):
    DASHBOARD = "dashboard"
    ONBOARDING = "onboarding"
    ERROR = "error"


class ProgressPhase(str, enum.Enum):
    """Coarse progress shown while first login runs.

    CHECKING covers everything before the first write (membership lookup,
    loading and validating the stored wizard state). The other four are
    the provisioning phases the user sees move.
    """

    CHECKING = "checking"
    CREATING_ORGANIZATION = "creating_organization"
    CREATING_DEPARTMENTS = "creating_departments"
    CREATING_SERVICE_TYPES = "creating_service_types"
    FINALIZING = "finalizing"


_PHASES: dict[str, tuple[ProgressPhase, int]] = {
    ProvisioningStep.INITIALIZING.value: (ProgressPhase.CHECKING, 10),
    ProvisioningStep.LOADING_DATA.value: (ProgressPhase.CHECKING, 10),
    ProvisioningStep.CHECKING_EXISTING_ORGANIZATION.value: (ProgressPhase.CHECKING, 10),
    ProvisioningStep.CREATING_ORGANIZATION.value: (ProgressPhase.CREATING_ORGANIZATION, 30),
    ProvisioningStep.CREATING_ORGANIZATION_MEMBER.value: (ProgressPhase.CREATING_ORGANIZATION, 30),
    ProvisioningStep.CREATING_EMPLOYEE.value: (ProgressPhase.CREATING_ORGANIZATION, 30),
    ProvisioningStep.CREATING_DEPARTMENTS.value: (ProgressPhase.CREATING_DEPARTMENTS, 50),
    ProvisioningStep.CREATING_SERVICE_TYPES.value: (ProgressPhase.CREATING_SERVICE_TYPES, 70),
    ProvisioningStep.COMPLETED.value: (ProgressPhase.FINALIZING, 90),
    ProvisioningStep.EXISTING_ORGANIZATION.value: (ProgressPhase.FINALIZING, 90),
}


def progress_for_step(step: str | None, success: bool = False) -> tuple[ProgressPhase, int]:
    """Map a provisioning step to (phase, percent) for the progress indicator."""
    phase, percent = _PHASES.get(step or "", (ProgressPhase.CHECKING, 10))
    if success and phase is ProgressPhase.FINALIZING:
        percent = 100
    return phase, percent


@dataclass
class ReconciliationOutcome:
    action: LoginAction
    organization_id: str | None = None
    provisioning: ProvisioningResult | None = None
    phase: ProgressPhase = ProgressPhase.CHECKING
    progress: int = 0
    message: str | None = None

    @property
    def can_retry(self) -> bool:
        return (
            self.action is LoginAction.ERROR
            and self.provisioning is not None
            and not self.provisioning.restart_required
        )


async def _check_membership(
    client: DataClient, provisioner: TenantProvisioner, principal_id: str
) -> tuple[str | None, ReconciliationOutcome | None]:
    """Return (organization_id, None), or (None, error outcome) if the lookup kept failing."""
    result = await with_retry(
        lambda: client.query("organization_members", {"user_id": principal_id}),
        "Checking existing memberships",
        attempts=provisioner.attempts,
        base_delay=provisioner.base_delay,
    )
    if not result.ok:
        failure = ProvisioningResult(
            success=False,
            step=ProvisioningStep.CHECKING_EXISTING_ORGANIZATION.value,
            error="Failed to check existing memberships",
            error_code=ProvisioningError.MEMBERSHIP_CHECK_FAILED.value,
        )
        return None, _from_provisioning(failure)
    for membership in result.data:
        if membership.get("organization_id"):
            return membership["organization_id"], None
    return None, None


async def _member_outcome(store: OnboardingStore, principal_id: str, organization_id: str) -> ReconciliationOutcome:
    logger.info(f"User {principal_id} already belongs to {organization_id}, clearing stale onboarding")
    await store.clear()
    return ReconciliationOutcome(
        action=LoginAction.DASHBOARD,
        organization_id=organization_id,
        phase=ProgressPhase.FINALIZING,
        progress=100,
    )


def _from_provisioning(result: ProvisioningResult) -> ReconciliationOutcome:
    phase, percent = progress_for_step(result.step, success=result.success)
    if result.success:
        return ReconciliationOutcome(
            action=LoginAction.DASHBOARD,
            organization_id=result.organization_id,
            provisioning=result,
            phase=phase,
            progress=percent,
        )
    if result.restart_required:
        # State was cleared; the only way forward is the wizard again
        return ReconciliationOutcome(
            action=LoginAction.ONBOARDING,
            provisioning=result,
            phase=phase,
            progress=percent,
            message=result.error,
        )
    return ReconciliationOutcome(
        action=LoginAction.ERROR,
        provisioning=result,
        phase=phase,
        progress=percent,
        message=result.error,
    )


async def reconcile_first_login(
    client: DataClient,
    store: OnboardingStore,
    provisioner: TenantProvisioner,
    principal_id: str,
    principal_email: str | None = None,
) -> ReconciliationOutcome:
    organization_id, failure = await _check_membership(client, provisioner, principal_id)
    if failure:
        # Unknown membership: leave any stored wizard state alone
        return failure
    if organization_id:
        return await _member_outcome(store, principal_id, organization_id)

    if await store.has_pending_onboarding():
        logger.info(f"Pending onboarding found for user {principal_id}, provisioning")
        return _from_provisioning(await provisioner.provision(principal_id, principal_email))

    return ReconciliationOutcome(action=LoginAction.ONBOARDING)


async def retry_provisioning(
    provisioner: TenantProvisioner,
    principal_id: str,
    principal_email: str | None = None,
) -> ReconciliationOutcome:
    """User-triggered retry after a failed first login.

    The membership lookup runs again first, since the failure being
    retried may have been that lookup itself.
    """
    organization_id, failure = await _check_membership(provisioner.client, provisioner, principal_id)
    if failure:
        return failure
    if organization_id:
        return await _member_outcome(provisioner.store, principal_id, organization_id)
    return _from_provisioning(await provisioner.provision(principal_id, principal_email))
