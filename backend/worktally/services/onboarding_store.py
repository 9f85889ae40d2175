"""Onboarding state persistence (Redis-backed).

Two keys per wizard session:

  onboarding:{session}:onboardingState       durable JSON copy of the state
  onboarding:{session}:onboarding_password   admin password, short TTL

The durable copy never contains the real password: it holds
PASSWORD_PLACEHOLDER and admin.passwordStored=True, and load() puts the
real value back from the short-lived key when that key still exists.

Anything unreadable in the durable key is treated as "no state": the
session is cleared and defaults are returned.
"""

import json
import logging
from datetime import datetime, timedelta

import redis.asyncio as redis
from pydantic import ValidationError

from worktally.config import settings
from worktally.schemas.onboarding import (
    PASSWORD_PLACEHOLDER,
    OnboardingState,
    default_steps,
    initial_state,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

DURABLE_KEY = "onboardingState"
PASSWORD_KEY = "onboarding_password"


class OnboardingStore:
    """Durable + short-lived onboarding stores for one wizard session."""

    def __init__(
        self,
        redis_client: redis.Redis,
        session_id: str,
        *,
        state_ttl: timedelta | None = None,
        password_ttl_seconds: int | None = None,
        retention_seconds: int | None = None,
    ):
        self.redis = redis_client
        self.session_id = session_id
        self.state_ttl = state_ttl or timedelta(hours=settings.onboarding_state_ttl_hours)
        self.password_ttl_seconds = password_ttl_seconds or settings.onboarding_password_ttl_seconds
        self.retention_seconds = retention_seconds or settings.onboarding_retention_days * 86400

    # ── Keys ─────────────────────────────────────────────────

    def key(self, name: str) -> str:
        return f"onboarding:{self.session_id}:{name}"

    @property
    def durable_key(self) -> str:
        return self.key(DURABLE_KEY)

    @property
    def password_key(self) -> str:
        return self.key(PASSWORD_KEY)

    # ── Raw access ───────────────────────────────────────────

    async def read_raw(self) -> str | None:
        return await self.redis.get(self.durable_key)

    async def _current_dict(self) -> dict:
        raw = await self.read_raw()
        if raw is None:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unparseable onboarding state for session {self.session_id}")
            return {}
        return data if isinstance(data, dict) else {}

    # ── Operations ───────────────────────────────────────────

    async def save(self, partial: OnboardingState | dict) -> None:
        """Merge `partial` over the persisted state and write it back.

        Moves any real admin password into the short-lived store and
        pushes expiresAt to now + state_ttl.
        """
        if isinstance(partial, OnboardingState):
            payload = partial.to_storage()
        else:
            payload = json.loads(json.dumps(partial, default=str))

        merged = {**await self._current_dict(), **payload}

        admin = merged.get("admin")
        if isinstance(admin, dict):
            admin = dict(admin)
            password = admin.get("password")
            if password and password != PASSWORD_PLACEHOLDER:
                await self.redis.set(self.password_key, password, ex=self.password_ttl_seconds)
                admin["password"] = PASSWORD_PLACEHOLDER
                admin["passwordStored"] = True
            elif password == PASSWORD_PLACEHOLDER:
                admin["passwordStored"] = True
            else:
                admin.pop("password", None)
                admin["passwordStored"] = False
            merged["admin"] = admin

        merged["expiresAt"] = (utcnow() + self.state_ttl).isoformat()
        merged.setdefault("lastUpdated", utcnow().isoformat())

        await self.redis.set(self.durable_key, json.dumps(merged), ex=self.retention_seconds)

    async def load(self) -> OnboardingState:
        raw = await self.read_raw()
        if raw is None:
            return initial_state()

        try:
            state = OnboardingState.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Invalid onboarding state for session {self.session_id}, clearing: {e}")
            await self.clear()
            return initial_state()

        if state.is_expired():
            logger.info(f"Onboarding state for session {self.session_id} expired, clearing")
            await self.clear()
            return initial_state()

        if not state.steps:
            state = state.model_copy(update={"steps": default_steps()})

        admin = state.admin
        if admin.password_stored:
            # May be gone already: the short-lived key has its own TTL
            password = await self.redis.get(self.password_key)
            state = state.model_copy(
                update={"admin": admin.model_copy(update={"password": password, "password_stored": password is not None})}
            )
        elif admin.password == PASSWORD_PLACEHOLDER:
            state = state.model_copy(update={"admin": admin.model_copy(update={"password": None})})
        return state

    async def clear(self) -> None:
        await self.redis.delete(self.durable_key, self.password_key)

    async def has_pending_onboarding(self, now: datetime | None = None) -> bool:
        """True only for a submitted, unexpired state with an organization name.

        Every failed check clears the session.
        """
        raw = await self.read_raw()
        if raw is None:
            return False

        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning(f"Unparseable onboarding state for session {self.session_id}, clearing")
            await self.clear()
            return False

        if not isinstance(data, dict):
            logger.info("Invalid onboarding state format, clearing")
            await self.clear()
            return False

        if data.get("submitted") is not True:
            logger.info("Onboarding data not submitted, clearing")
            await self.clear()
            return False

        expires_at = data.get("expiresAt")
        if expires_at:
            try:
                expired = parse_timestamp(expires_at) < (now or utcnow())
            except ValueError:
                logger.warning(f"Invalid expiration date {expires_at!r}, clearing")
                await self.clear()
                return False
            if expired:
                logger.info("Onboarding data has expired, clearing")
                await self.clear()
                return False

        organization = data.get("organization")
        if not isinstance(organization, dict) or not organization.get("name"):
            logger.info("Missing organization data in onboarding state, clearing")
            await self.clear()
            return False

        return True
