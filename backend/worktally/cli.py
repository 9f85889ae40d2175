"""Management CLI.

Usage:
    python -m worktally.cli init-db                        # Create all tables
    python -m worktally.cli list-organizations             # Show organizations + member counts
    python -m worktally.cli clear-onboarding <session_id>  # Drop a stuck wizard session
"""

import asyncio
import sys

from sqlalchemy import create_engine, func, select

from worktally.config import settings
from worktally.database import create_all_tables
from worktally.models.public.organization import Organization, OrganizationMember


def init_db():
    asyncio.run(create_all_tables())
    print("Tables created.")


def list_organizations():
    engine = create_engine(settings.database_url_sync)
    with engine.connect() as conn:
        rows = conn.execute(
            select(Organization.id, Organization.name, Organization.slug, func.count(OrganizationMember.id))
            .outerjoin(OrganizationMember, OrganizationMember.organization_id == Organization.id)
            .group_by(Organization.id, Organization.name, Organization.slug)
            .order_by(Organization.name)
        ).all()
    for org_id, name, slug, members in rows:
        print(f"  {org_id}  {name:<30} {slug}  ({members} member(s))")
    print(f"\n{len(rows)} organization(s)")


def clear_onboarding(session_id: str):
    from worktally.services.onboarding_store import OnboardingStore
    from worktally.utils.redis_pool import close_redis, get_redis

    async def _clear():
        store = OnboardingStore(await get_redis(), session_id)
        existed = await store.read_raw() is not None
        await store.clear()
        await close_redis()
        return existed

    if asyncio.run(_clear()):
        print(f"Cleared onboarding session {session_id}")
    else:
        print(f"No onboarding state for session {session_id}")


if __name__ == "__main__":
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    if cmd == "init-db":
        init_db()
    elif cmd == "list-organizations":
        list_organizations()
    elif cmd == "clear-onboarding" and len(sys.argv) > 2:
        clear_onboarding(sys.argv[2])
    else:
        print("Usage: python -m worktally.cli [init-db|list-organizations|clear-onboarding <session_id>]")
