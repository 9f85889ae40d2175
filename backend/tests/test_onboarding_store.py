"""Tests for the Redis-backed onboarding store."""

import json
from datetime import timedelta

import pytest

from worktally.schemas.onboarding import PASSWORD_PLACEHOLDER, initial_state, utcnow
from worktally.services.onboarding_store import OnboardingStore


async def write_raw(store: OnboardingStore, data) -> None:
    payload = data if isinstance(data, str) else json.dumps(data)
    await store.redis.set(store.durable_key, payload)


def submitted_state(**overrides) -> dict:
    state = initial_state().to_storage()
    state.update(
        {
            "submitted": True,
            "organization": {"name": "Acme Co"},
            "expiresAt": (utcnow() + timedelta(hours=2)).isoformat(),
        }
    )
    state.update(overrides)
    return state


@pytest.mark.asyncio
class TestSaveAndLoad:
    async def test_load_without_state_returns_defaults(self, store):
        state = await store.load()
        assert state.current_step_index == 0
        assert state.organization.name is None

    async def test_password_never_reaches_durable_store(self, store):
        await store.save({"admin": {"email": "ada@example.com", "password": "x"}})

        raw = await store.read_raw()
        assert '"x"' not in raw
        durable = json.loads(raw)
        assert durable["admin"]["password"] == PASSWORD_PLACEHOLDER
        assert durable["admin"]["passwordStored"] is True
        assert await store.redis.get(store.password_key) == "x"

        loaded = await store.load()
        assert loaded.admin.password == "x"
        assert loaded.admin.email == "ada@example.com"

    async def test_missing_short_lived_password_is_tolerated(self, store):
        await store.save({"admin": {"firstName": "Ada", "password": "S3cret!pw"}})
        await store.redis.delete(store.password_key)

        loaded = await store.load()
        assert loaded.admin.password is None
        assert loaded.admin.first_name == "Ada"

    async def test_save_merges_over_existing_state(self, store):
        await store.save({"organization": {"name": "Acme Co"}})
        await store.save({"currentStepIndex": 2})

        loaded = await store.load()
        assert loaded.organization.name == "Acme Co"
        assert loaded.current_step_index == 2

    async def test_save_sets_expiry_a_day_out(self, store):
        await store.save(initial_state())
        durable = json.loads(await store.read_raw())
        loaded = await store.load()
        assert durable["expiresAt"]
        assert loaded.expires_at > utcnow() + timedelta(hours=23)

    async def test_expired_state_is_cleared_on_load(self, store):
        await store.save({"organization": {"name": "Acme Co"}, "admin": {"password": "S3cret!pw"}})
        durable = json.loads(await store.read_raw())
        durable["expiresAt"] = (utcnow() - timedelta(hours=1)).isoformat()
        await write_raw(store, durable)

        loaded = await store.load()
        assert loaded.organization.name is None
        assert await store.read_raw() is None
        assert await store.redis.get(store.password_key) is None

    async def test_unparseable_state_is_treated_as_absent(self, store):
        await write_raw(store, "{not json")
        loaded = await store.load()
        assert loaded.current_step_index == 0
        assert await store.read_raw() is None

    async def test_empty_steps_are_replaced_with_defaults(self, store):
        await write_raw(store, {"steps": [], "organization": {"name": "Acme Co"}})
        loaded = await store.load()
        assert len(loaded.steps) == 6
        assert loaded.organization.name == "Acme Co"

    async def test_clear_removes_both_stores(self, store):
        await store.save({"admin": {"password": "S3cret!pw"}})
        await store.clear()
        assert await store.read_raw() is None
        assert await store.redis.get(store.password_key) is None

    async def test_sessions_are_isolated(self, store, redis_client):
        other = OnboardingStore(redis_client, "other-session")
        await store.save({"organization": {"name": "Acme Co"}})
        assert (await other.load()).organization.name is None


@pytest.mark.asyncio
class TestHasPendingOnboarding:
    async def test_submitted_state_is_pending(self, store):
        await write_raw(store, submitted_state())
        assert await store.has_pending_onboarding() is True
        # Checking does not consume the state
        assert await store.read_raw() is not None

    async def test_no_state(self, store):
        assert await store.has_pending_onboarding() is False

    async def test_false_after_clear(self, store):
        await write_raw(store, submitted_state())
        await store.clear()
        assert await store.has_pending_onboarding() is False

    @pytest.mark.parametrize(
        "overrides",
        [
            {"submitted": False},
            {"expiresAt": "2001-01-01T00:00:00+00:00"},
            {"expiresAt": "not-a-date"},
            {"organization": {"name": ""}},
            {"organization": None},
        ],
    )
    async def test_failed_checks_clear_state(self, store, overrides):
        await write_raw(store, submitted_state(**overrides))
        assert await store.has_pending_onboarding() is False
        assert await store.read_raw() is None

    async def test_unparseable_state_is_cleared(self, store):
        await write_raw(store, "[[[")
        assert await store.has_pending_onboarding() is False
        assert await store.read_raw() is None
