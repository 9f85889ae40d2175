"""Server-side procedures callable through DataClient.rpc().

Each procedure receives the transaction's session as its first argument
and keyword arguments named like the remote API (`p_*`). The whole call
is one transaction: raising ProcedureError (or any database error)
rolls back everything the procedure wrote.
"""

import logging
from typing import Awaitable, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from worktally.models.public.organization import MemberRole, Organization, OrganizationMember
from worktally.models.tenant.department import Department
from worktally.models.tenant.employee import Employee, default_pto
from worktally.models.tenant.service_type import ServiceType
from worktally.services.data_client import ErrorCode, ProcedureError, row_to_dict

logger = logging.getLogger(__name__)

PROCEDURES: dict[str, Callable[..., Awaitable]] = {}


def procedure(name: str):
    def register(fn):
        PROCEDURES[name] = fn
        return fn

    return register


def default_branding(company_website: str | None = None) -> dict:
    return {
        "primary_color": "#3b82f6",
        "secondary_color": "#1e40af",
        "logo_url": None,
        "favicon_url": None,
        "company_name": None,
        "company_website": company_website,
    }


async def _require_organization(session: AsyncSession, organization_id: str) -> None:
    if await session.get(Organization, organization_id) is None:
        raise ProcedureError(ErrorCode.NOT_FOUND, f"Organization {organization_id} not found")


# ── Organization + membership ───────────────────────────────

@procedure("create_complete_organization")
async def create_complete_organization(
    session: AsyncSession,
    *,
    p_org_name: str,
    p_slug: str,
    p_user_id: str,
    p_user_email: str,
    p_first_name: str = "",
    p_last_name: str = "",
    p_settings: dict | None = None,
    p_branding: dict | None = None,
) -> dict:
    """Organization + admin membership + admin employee, all or nothing."""
    existing = await session.execute(
        select(OrganizationMember.id).where(OrganizationMember.user_id == p_user_id).limit(1)
    )
    if existing.scalar_one_or_none() is not None:
        raise ProcedureError(ErrorCode.CONFLICT, f"User {p_user_id} already belongs to an organization")

    organization = Organization(
        name=p_org_name,
        slug=p_slug,
        settings=p_settings or {},
        branding=p_branding or default_branding(),
    )
    session.add(organization)
    await session.flush()

    member = OrganizationMember(
        organization_id=organization.id,
        user_id=p_user_id,
        role=MemberRole.ADMIN.value,
    )
    session.add(member)
    await session.flush()

    employee = Employee(
        organization_id=organization.id,
        member_id=member.id,
        user_id=p_user_id,
        email=p_user_email,
        first_name=p_first_name or "",
        last_name=p_last_name or "",
        role=MemberRole.ADMIN.value,
        pto=default_pto(),
    )
    session.add(employee)
    await session.flush()

    logger.info(f"Created organization {organization.id} ({p_slug}) for user {p_user_id}")
    return {
        "organization_id": organization.id,
        "member_id": member.id,
        "employee_id": employee.id,
    }


@procedure("create_organization_member")
async def create_organization_member(
    session: AsyncSession,
    *,
    p_organization_id: str,
    p_user_id: str,
    p_role: str = MemberRole.ADMIN.value,
) -> str:
    """Member id; an existing membership is returned instead of duplicated."""
    if p_role not in {r.value for r in MemberRole}:
        raise ProcedureError(ErrorCode.INVALID_ARGUMENTS, f"Invalid role {p_role!r}")
    await _require_organization(session, p_organization_id)

    result = await session.execute(
        select(OrganizationMember).where(
            OrganizationMember.organization_id == p_organization_id,
            OrganizationMember.user_id == p_user_id,
        )
    )
    member = result.scalar_one_or_none()
    if member is not None:
        return member.id

    member = OrganizationMember(organization_id=p_organization_id, user_id=p_user_id, role=p_role)
    session.add(member)
    await session.flush()
    return member.id


@procedure("create_employee")
async def create_employee(
    session: AsyncSession,
    *,
    p_organization_id: str,
    p_member_id: str | None,
    p_user_id: str,
    p_email: str,
    p_first_name: str = "",
    p_last_name: str = "",
    p_role: str = MemberRole.ADMIN.value,
) -> str:
    """Employee id; idempotent per (organization, member)."""
    await _require_organization(session, p_organization_id)

    if p_member_id:
        result = await session.execute(
            select(Employee.id).where(
                Employee.organization_id == p_organization_id,
                Employee.member_id == p_member_id,
            )
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing

    employee = Employee(
        organization_id=p_organization_id,
        member_id=p_member_id,
        user_id=p_user_id,
        email=p_email,
        first_name=p_first_name or "",
        last_name=p_last_name or "",
        role=p_role,
        pto=default_pto(),
    )
    session.add(employee)
    await session.flush()
    return employee.id


# ── Named per-organization records ──────────────────────────

async def _create_named_batch(session: AsyncSession, model, organization_id: str, names: list) -> list[dict]:
    await _require_organization(session, organization_id)

    result = await session.execute(
        select(func.lower(model.name)).where(model.organization_id == organization_id)
    )
    seen = set(result.scalars().all())

    created = []
    for entry in names or []:
        name, description = (entry.get("name"), entry.get("description")) if isinstance(entry, dict) else (entry, None)
        name = (name or "").strip()
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        obj = model(organization_id=organization_id, name=name, description=description)
        session.add(obj)
        created.append(obj)

    await session.flush()
    return [row_to_dict(obj) for obj in created]


@procedure("create_departments_batch")
async def create_departments_batch(session: AsyncSession, *, p_organization_id: str, p_names: list) -> list[dict]:
    return await _create_named_batch(session, Department, p_organization_id, p_names)


@procedure("create_service_types_batch")
async def create_service_types_batch(session: AsyncSession, *, p_organization_id: str, p_names: list) -> list[dict]:
    return await _create_named_batch(session, ServiceType, p_organization_id, p_names)
