"""FastAPI dependencies wiring the onboarding services together.

  get_data_client          → DataClient on the shared session factory
  get_onboarding_session   → wizard session id from the cookie (issued if missing)
  get_onboarding_store     → OnboardingStore for that session
  get_provisioner          → TenantProvisioner with lock + retry settings
"""

import re
import uuid

import redis.asyncio as redis
from fastapi import Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from worktally.config import settings
from worktally.database import get_session_factory
from worktally.services.data_client import DataClient
from worktally.services.onboarding_store import OnboardingStore
from worktally.services.provisioning import TenantProvisioner
from worktally.utils.redis_pool import get_redis

_SESSION_ID_RE = re.compile(r"^[0-9a-f]{32}$")


def get_data_client(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> DataClient:
    return DataClient(session_factory)


def get_onboarding_session(request: Request, response: Response) -> str:
    session_id = request.cookies.get(settings.onboarding_cookie_name, "")
    if not _SESSION_ID_RE.match(session_id):
        session_id = uuid.uuid4().hex
        response.set_cookie(
            settings.onboarding_cookie_name,
            session_id,
            max_age=settings.onboarding_retention_days * 86400,
            httponly=True,
            samesite="lax",
            secure=settings.environment == "production",
        )
    return session_id


def get_onboarding_store(
    session_id: str = Depends(get_onboarding_session),
    redis_client: redis.Redis = Depends(get_redis),
) -> OnboardingStore:
    return OnboardingStore(redis_client, session_id)


def get_provisioner(
    client: DataClient = Depends(get_data_client),
    store: OnboardingStore = Depends(get_onboarding_store),
    redis_client: redis.Redis = Depends(get_redis),
) -> TenantProvisioner:
    return TenantProvisioner(client, store, redis_client)
