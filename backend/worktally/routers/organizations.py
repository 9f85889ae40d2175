"""Organization read view for members (tenant-scoped).

Everything here goes through a DataClient bound to the organization in
the caller's JWT, so a member can only ever see their own organization.
"""

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from worktally.auth.deps import get_current_organization
from worktally.dependencies import get_data_client
from worktally.middleware.exceptions import ResourceNotFoundError, WorkTallyException
from worktally.services.data_client import ClientResult, DataClient

router = APIRouter()


class NamedRecordOut(BaseModel):
    id: str
    name: str
    description: str | None = None


class OrganizationOut(BaseModel):
    id: str
    name: str
    slug: str
    settings: dict | None = None
    branding: dict | None = None
    created_at: datetime
    departments: list[NamedRecordOut] = []
    service_types: list[NamedRecordOut] = []


def _unwrap(result: ClientResult, what: str):
    if not result.ok:
        raise WorkTallyException(
            f"Could not load {what}",
            status_code=503,
            error_code="DATA_UNAVAILABLE",
            details={"code": result.error.code},
        )
    return result.data


@router.get("/current", response_model=OrganizationOut)
async def current_organization(
    organization_id: str = Depends(get_current_organization),
    client: DataClient = Depends(get_data_client),
):
    scoped = client.for_tenant(organization_id)
    organizations = _unwrap(await scoped.query("organizations"), "organization")
    if not organizations:
        raise ResourceNotFoundError("Organization", organization_id)

    return OrganizationOut(
        **organizations[0],
        departments=_unwrap(await scoped.query("departments"), "departments"),
        service_types=_unwrap(await scoped.query("service_types"), "service types"),
    )
