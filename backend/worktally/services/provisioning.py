"""Tenant provisioning: turn a submitted onboarding wizard into an organization.

Stages (each remote call goes through with_retry):

  loading_data                    read + sanity-check the durable state
  checking_existing_organization  principal already a member? → done
  creating_organization           one atomic procedure: org + admin member + employee
    fallback:                     insert org → create_organization_member
                                  (deleted again if that fails) → create_employee
  creating_departments            best-effort, deduplicated case-insensitively
  creating_service_types          best-effort, same
  completed                       onboarding state cleared

Only the first three stages can fail the run. Department and service
type failures are logged and reported as warnings.

The whole run holds a per-principal Redis lock and is bounded by a
wall-clock deadline; on any failure the onboarding state is kept so the
user can retry, except when the state itself is unusable.
"""

import asyncio
import enum
import json
import logging
import time
from dataclasses import asdict, dataclass, field

import redis.asyncio as redis
from pydantic import ValidationError

from worktally.config import settings
from worktally.schemas.onboarding import OnboardingState, parse_timestamp, utcnow
from worktally.services.data_client import ClientResult, DataClient
from worktally.services.onboarding_store import OnboardingStore
from worktally.services.procedures import default_branding
from worktally.utils.locks import LockNotAcquired, provisioning_lock_key, redis_lock
from worktally.utils.retry import with_retry

logger = logging.getLogger(__name__)

DEFAULT_DEPARTMENTS = ["Administration", "Field Operations", "Sales"]
DEFAULT_SERVICE_TYPES = ["Standard", "Premium"]


class ProvisioningStep(str, enum.Enum):
    INITIALIZING = "initializing"
    LOADING_DATA = "loading_data"
    CHECKING_EXISTING_ORGANIZATION = "checking_existing_organization"
    CREATING_ORGANIZATION = "creating_organization"
    CREATING_ORGANIZATION_MEMBER = "creating_organization_member"
    CREATING_EMPLOYEE = "creating_employee"
    CREATING_DEPARTMENTS = "creating_departments"
    CREATING_SERVICE_TYPES = "creating_service_types"
    COMPLETED = "completed"
    EXISTING_ORGANIZATION = "existing_organization"


class ProvisioningError(str, enum.Enum):
    NO_STATE = "no_state"
    INVALID_FORMAT = "invalid_format"
    EXPIRED = "expired"
    MISSING_ORGANIZATION_NAME = "missing_organization_name"
    MEMBERSHIP_CHECK_FAILED = "membership_check_failed"
    ORGANIZATION_CREATION_FAILED = "organization_creation_failed"
    EMPLOYEE_CREATION_FAILED = "employee_creation_failed"
    DEPARTMENT_CREATION_FAILED = "department_creation_failed"
    SERVICE_TYPE_CREATION_FAILED = "service_type_creation_failed"
    PROVISIONING_IN_PROGRESS = "provisioning_in_progress"
    TIMEOUT = "timeout"


# State problems that mean "start the wizard again"; the state is cleared
STATE_ERRORS = {
    ProvisioningError.NO_STATE,
    ProvisioningError.INVALID_FORMAT,
    ProvisioningError.EXPIRED,
    ProvisioningError.MISSING_ORGANIZATION_NAME,
}


@dataclass
class ProvisioningResult:
    success: bool
    step: str
    organization_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    message: str | None = None
    # Non-fatal error codes from the employee / department / service type stages
    warnings: list[str] = field(default_factory=list)

    @property
    def restart_required(self) -> bool:
        return self.error_code in {e.value for e in STATE_ERRORS}

    def to_dict(self) -> dict:
        return asdict(self)


def slugify(name: str, now_ms: int | None = None) -> str:
    """`Acme Co` → `acme-co-1718000000000`."""
    base = "".join(ch if ("a" <= ch <= "z" or "0" <= ch <= "9") else "-" for ch in name.lower())
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{base}-{stamp}"


class TenantProvisioner:
    def __init__(
        self,
        client: DataClient,
        store: OnboardingStore,
        redis_client: redis.Redis | None = None,
        *,
        attempts: int | None = None,
        base_delay: float | None = None,
        timeout: float | None = None,
    ):
        self.client = client
        self.store = store
        self.redis = redis_client
        self.attempts = attempts or settings.provisioning_retry_attempts
        self.base_delay = settings.provisioning_retry_base_delay if base_delay is None else base_delay
        self.timeout = timeout or settings.provisioning_timeout_seconds
        self.step = ProvisioningStep.INITIALIZING

    # ── Entry point ──────────────────────────────────────────

    async def provision(self, principal_id: str, principal_email: str | None = None) -> ProvisioningResult:
        self.step = ProvisioningStep.INITIALIZING
        if self.redis is None:
            return await self._run_with_deadline(principal_id, principal_email)

        try:
            async with redis_lock(
                self.redis,
                provisioning_lock_key(principal_id),
                ttl_seconds=int(self.timeout) + 30,
            ):
                return await self._run_with_deadline(principal_id, principal_email)
        except LockNotAcquired:
            logger.warning(f"Provisioning already running for user {principal_id}")
            return self._failure(
                ProvisioningError.PROVISIONING_IN_PROGRESS,
                "Your organization is already being set up. Please wait a moment.",
            )

    async def _run_with_deadline(self, principal_id: str, principal_email: str | None) -> ProvisioningResult:
        try:
            return await asyncio.wait_for(self._run(principal_id, principal_email), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Provisioning for user {principal_id} timed out during {self.step.value}")
            return self._failure(
                ProvisioningError.TIMEOUT,
                "Setting up your organization took too long. Please try again.",
            )

    # ── Helpers ──────────────────────────────────────────────

    def _failure(self, code: ProvisioningError, message: str) -> ProvisioningResult:
        return ProvisioningResult(success=False, step=self.step.value, error=message, error_code=code.value)

    async def _restart(self, code: ProvisioningError, message: str) -> ProvisioningResult:
        logger.warning(f"Onboarding state rejected ({code.value}), clearing")
        await self.store.clear()
        return self._failure(code, message)

    async def _retry(self, operation, description: str) -> ClientResult:
        return await with_retry(operation, description, attempts=self.attempts, base_delay=self.base_delay)

    # ── Stages ───────────────────────────────────────────────

    async def _load_state(self) -> OnboardingState | ProvisioningResult:
        self.step = ProvisioningStep.LOADING_DATA
        raw = await self.store.read_raw()
        if raw is None:
            logger.error("No onboarding state found")
            return self._failure(ProvisioningError.NO_STATE, "No onboarding state found")

        try:
            data = json.loads(raw)
        except ValueError:
            return await self._restart(
                ProvisioningError.INVALID_FORMAT,
                "Invalid onboarding data format. Please start the onboarding process again.",
            )
        if not isinstance(data, dict):
            return await self._restart(
                ProvisioningError.INVALID_FORMAT,
                "Invalid onboarding data format. Please start the onboarding process again.",
            )

        if data.get("expiresAt"):
            try:
                expired = parse_timestamp(data["expiresAt"]) < utcnow()
            except ValueError:
                return await self._restart(
                    ProvisioningError.INVALID_FORMAT,
                    "Invalid expiration date format. Please start the onboarding process again.",
                )
            if expired:
                return await self._restart(
                    ProvisioningError.EXPIRED,
                    "Your onboarding data has expired. Please start the onboarding process again.",
                )

        organization = data.get("organization")
        if not isinstance(organization, dict) or not organization.get("name"):
            return await self._restart(
                ProvisioningError.MISSING_ORGANIZATION_NAME,
                "No organization name found in onboarding state. Please start the onboarding process again.",
            )

        try:
            return OnboardingState.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Onboarding state failed validation: {e}")
            return await self._restart(
                ProvisioningError.INVALID_FORMAT,
                "Invalid onboarding data format. Please start the onboarding process again.",
            )

    async def _existing_organization(self, principal_id: str) -> str | None | ProvisioningResult:
        self.step = ProvisioningStep.CHECKING_EXISTING_ORGANIZATION
        result = await self._retry(
            lambda: self.client.query("organization_members", {"user_id": principal_id}),
            "Checking existing memberships",
        )
        if not result.ok:
            return self._failure(ProvisioningError.MEMBERSHIP_CHECK_FAILED, "Error checking existing memberships")
        for membership in result.data:
            if membership.get("organization_id"):
                return membership["organization_id"]
        return None

    async def _create_organization(
        self, state: OnboardingState, principal_id: str, email: str
    ) -> tuple[str | None, ProvisioningResult | None]:
        self.step = ProvisioningStep.CREATING_ORGANIZATION
        organization = state.organization
        slug = slugify(organization.name)
        org_settings = {
            "industry": organization.industry.value if organization.industry else None,
            "size": organization.size.value if organization.size else None,
            "expected_users": state.team.expected_users or 0,
        }
        branding = default_branding(organization.website or None)
        first_name = state.admin.first_name or ""
        last_name = state.admin.last_name or ""

        atomic = await self._retry(
            lambda: self.client.rpc(
                "create_complete_organization",
                {
                    "p_org_name": organization.name,
                    "p_slug": slug,
                    "p_user_id": principal_id,
                    "p_user_email": email,
                    "p_first_name": first_name,
                    "p_last_name": last_name,
                    "p_settings": org_settings,
                    "p_branding": branding,
                },
            ),
            "Creating organization",
        )
        if atomic.ok and atomic.data and atomic.data.get("organization_id"):
            logger.info(f"Organization {atomic.data['organization_id']} created atomically")
            return atomic.data["organization_id"], None

        logger.warning(f"Atomic organization creation failed ({atomic.error}), falling back to separate calls")

        inserted = await self._retry(
            lambda: self.client.insert(
                "organizations",
                {"name": organization.name, "slug": slug, "settings": org_settings, "branding": branding},
            ),
            "Creating organization with direct insert",
        )
        if not inserted.ok:
            return None, self._failure(
                ProvisioningError.ORGANIZATION_CREATION_FAILED,
                f"Error creating organization: {inserted.error.message}",
            )
        organization_id = inserted.data["id"]

        self.step = ProvisioningStep.CREATING_ORGANIZATION_MEMBER
        member = await self._retry(
            lambda: self.client.rpc(
                "create_organization_member",
                {"p_organization_id": organization_id, "p_user_id": principal_id, "p_role": "admin"},
            ),
            "Creating organization member",
        )
        if not member.ok:
            # An organization nobody can reach is worse than none
            deleted = await self.client.delete("organizations", organization_id)
            if not deleted.ok:
                logger.error(f"Could not remove orphaned organization {organization_id}: {deleted.error}")
            return None, self._failure(
                ProvisioningError.ORGANIZATION_CREATION_FAILED,
                f"Error creating organization member: {member.error.message}",
            )

        self.step = ProvisioningStep.CREATING_EMPLOYEE
        employee = await self._retry(
            lambda: self.client.rpc(
                "create_employee",
                {
                    "p_organization_id": organization_id,
                    "p_member_id": member.data,
                    "p_user_id": principal_id,
                    "p_email": email,
                    "p_first_name": first_name,
                    "p_last_name": last_name,
                    "p_role": "admin",
                },
            ),
            "Creating employee record",
        )
        if not employee.ok:
            logger.error(f"Employee record for user {principal_id} not created: {employee.error}")
            return organization_id, ProvisioningResult(
                success=True,
                step=self.step.value,
                organization_id=organization_id,
                warnings=[ProvisioningError.EMPLOYEE_CREATION_FAILED.value],
            )
        return organization_id, None

    async def _seed_named(
        self,
        organization_id: str,
        table: str,
        procedure: str,
        requested: list[str],
        defaults: list[str],
        failure: ProvisioningError,
    ) -> str | None:
        """Create the requested (or default) names that don't exist yet.

        Returns a warning code on failure, None otherwise.
        """
        names = requested or defaults

        existing = await self._retry(
            lambda: self.client.query(table, {"organization_id": organization_id}),
            f"Reading existing {table}",
        )
        seen = {row["name"].lower() for row in existing.data} if existing.ok else set()

        to_create = []
        for name in names:
            if name.lower() not in seen:
                seen.add(name.lower())
                to_create.append(name)
        if not to_create:
            logger.info(f"All {table} already exist for organization {organization_id}")
            return None

        batch = await self._retry(
            lambda: self.client.rpc(procedure, {"p_organization_id": organization_id, "p_names": to_create}),
            f"Creating {table} batch",
        )
        if batch.ok:
            logger.info(f"Created {len(batch.data)} {table} for organization {organization_id}")
            return None

        if not existing.ok:
            # Without the existing names a direct insert could duplicate rows
            logger.error(f"Skipping {table} for organization {organization_id}: existing rows unknown")
            return failure.value

        direct = await self._retry(
            lambda: self.client.insert(
                table, [{"organization_id": organization_id, "name": name} for name in to_create]
            ),
            f"Creating {table} with direct insert",
        )
        if not direct.ok:
            logger.error(f"Could not create {table} for organization {organization_id}: {direct.error}")
            return failure.value
        return None

    # ── Orchestration ────────────────────────────────────────

    async def _run(self, principal_id: str, principal_email: str | None) -> ProvisioningResult:
        state = await self._load_state()
        if isinstance(state, ProvisioningResult):
            return state

        existing = await self._existing_organization(principal_id)
        if isinstance(existing, ProvisioningResult):
            return existing
        if existing:
            logger.info(f"User {principal_id} already belongs to organization {existing}, skipping creation")
            await self.store.clear()
            return ProvisioningResult(
                success=True,
                step=ProvisioningStep.EXISTING_ORGANIZATION.value,
                organization_id=existing,
                message="User already has an organization",
            )

        email = principal_email or state.admin.email or ""
        organization_id, partial = await self._create_organization(state, principal_id, email)
        if organization_id is None:
            return partial
        warnings = list(partial.warnings) if partial else []

        self.step = ProvisioningStep.CREATING_DEPARTMENTS
        warning = await self._seed_named(
            organization_id,
            "departments",
            "create_departments_batch",
            state.team.department_names(),
            DEFAULT_DEPARTMENTS,
            ProvisioningError.DEPARTMENT_CREATION_FAILED,
        )
        if warning:
            warnings.append(warning)

        self.step = ProvisioningStep.CREATING_SERVICE_TYPES
        warning = await self._seed_named(
            organization_id,
            "service_types",
            "create_service_types_batch",
            state.team.service_type_names(),
            DEFAULT_SERVICE_TYPES,
            ProvisioningError.SERVICE_TYPE_CREATION_FAILED,
        )
        if warning:
            warnings.append(warning)

        await self.store.clear()
        self.step = ProvisioningStep.COMPLETED
        logger.info(f"Provisioning completed for organization {organization_id}")
        return ProvisioningResult(
            success=True,
            step=ProvisioningStep.COMPLETED.value,
            organization_id=organization_id,
            warnings=warnings,
        )
