"""Models shared across tenants (principals, organizations, memberships)."""

from worktally.models.public.organization import MemberRole, Organization, OrganizationMember
from worktally.models.public.user import User

__all__ = ["MemberRole", "Organization", "OrganizationMember", "User"]
