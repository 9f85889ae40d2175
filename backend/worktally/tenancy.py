"""Multi-tenancy: organization-per-tenant, row-level isolation.

Key components:
  - _tenant_ctx       ContextVar holding the organization id for the current request
  - set / read / clear helpers for the ContextVar
  - validate_tenant_id()  rejects anything that is not a UUID string
"""

import uuid
from contextvars import ContextVar


# ── Request-scoped tenant context ───────────────────────────

_tenant_ctx: ContextVar[str | None] = ContextVar("_tenant_ctx", default=None)


def set_current_tenant(organization_id: str) -> None:
    _tenant_ctx.set(organization_id)


def current_tenant_or_none() -> str | None:
    return _tenant_ctx.get()


def clear_tenant_context() -> None:
    _tenant_ctx.set(None)


# ── Validation ──────────────────────────────────────────────

def validate_tenant_id(value: str) -> str:
    """Ensure a tenant id taken from a token is a canonical UUID."""
    try:
        parsed = uuid.UUID(value)
    except (ValueError, TypeError, AttributeError):
        raise ValueError(f"Invalid tenant id: {value!r}")
    if str(parsed) != value:
        raise ValueError(f"Invalid tenant id: {value!r}")
    return value
