"""Aggregate model imports for Alembic auto-detection."""

# Shared
from worktally.models.public.user import User  # noqa: F401
from worktally.models.public.organization import (  # noqa: F401
    MemberRole,
    Organization,
    OrganizationMember,
)

# Tenant-owned
from worktally.models.tenant.employee import Employee  # noqa: F401
from worktally.models.tenant.department import Department  # noqa: F401
from worktally.models.tenant.service_type import ServiceType  # noqa: F401
