"""Tenant-owned models (every row carries organization_id)."""

from worktally.models.tenant.department import Department
from worktally.models.tenant.employee import Employee
from worktally.models.tenant.service_type import ServiceType

__all__ = ["Department", "Employee", "ServiceType"]
