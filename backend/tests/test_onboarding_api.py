"""HTTP tests for the onboarding wizard and the first-login handshake."""

import pytest
from fastapi import Depends
from httpx import AsyncClient

from worktally.dependencies import get_onboarding_store, get_provisioner
from worktally.main import app
from worktally.models.public.user import User
from worktally.services.provisioning import DEFAULT_SERVICE_TYPES, TenantProvisioner

ADMIN = {
    "firstName": "Ada",
    "lastName": "Lovelace",
    "email": "Ada@Example.com",
    "password": "Sup3r$ecret",
}


async def act(client: AsyncClient, action_type: str, payload=None) -> dict:
    action = {"type": action_type}
    if payload is not None:
        action["payload"] = payload
    response = await client.post("/api/onboarding/actions", json={"action": action})
    assert response.status_code == 200, response.text
    return response.json()


async def complete(client: AsyncClient, step_id: str):
    return await client.post(f"/api/onboarding/steps/{step_id}/complete")


async def fill_wizard(client: AsyncClient, admin: dict = ADMIN) -> None:
    await act(client, "UPDATE_ORGANIZATION", {"name": "Acme Co", "industry": "construction", "size": "11-50"})
    await act(client, "UPDATE_ADMIN", admin)
    await act(client, "UPDATE_TEAM", {"departments": ["Ops"], "expectedUsers": 12})


async def login(client: AsyncClient, email: str, password: str) -> dict:
    response = await client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.mark.api
@pytest.mark.asyncio
class TestWizardState:
    async def test_new_session_gets_initial_state_and_cookie(self, client: AsyncClient):
        response = await client.get("/api/onboarding/")

        assert response.status_code == 200
        data = response.json()
        assert data["currentStepIndex"] == 0
        assert [s["id"] for s in data["steps"]][0] == "welcome"
        assert len(response.cookies.get("onboarding_session", "")) == 32

    async def test_state_survives_reload(self, client: AsyncClient):
        await act(client, "UPDATE_ORGANIZATION", {"name": "Acme Co"})
        await act(client, "SET_STEP", 2)

        data = (await client.get("/api/onboarding/")).json()
        assert data["organization"]["name"] == "Acme Co"
        assert data["currentStepIndex"] == 2
        assert data["steps"][2]["current"] is True

    async def test_password_is_never_returned(self, client: AsyncClient, redis_client):
        data = await act(client, "UPDATE_ADMIN", ADMIN)
        assert data["admin"]["password"] is None
        assert data["admin"]["passwordStored"] is True

        reloaded = (await client.get("/api/onboarding/")).json()
        assert reloaded["admin"]["password"] is None
        assert reloaded["admin"]["passwordStored"] is True

        session_id = client.cookies.get("onboarding_session")
        durable = await redis_client.get(f"onboarding:{session_id}:onboardingState")
        assert ADMIN["password"] not in durable

    async def test_unknown_action_is_rejected(self, client: AsyncClient):
        response = await client.post("/api/onboarding/actions", json={"action": {"type": "LAUNCH_ROCKET"}})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_invalid_payload_is_rejected_and_not_saved(self, client: AsyncClient):
        await act(client, "UPDATE_ORGANIZATION", {"name": "Acme Co"})

        response = await client.post(
            "/api/onboarding/actions",
            json={"action": {"type": "UPDATE_ORGANIZATION", "payload": {"industry": "spaceflight"}}},
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        saved = (await client.get("/api/onboarding/")).json()["organization"]
        assert saved["name"] == "Acme Co"
        assert saved["industry"] is None

    async def test_clear(self, client: AsyncClient):
        await act(client, "UPDATE_ORGANIZATION", {"name": "Acme Co"})

        response = await client.delete("/api/onboarding/")

        assert response.status_code == 204
        assert (await client.get("/api/onboarding/")).json()["organization"]["name"] is None


@pytest.mark.api
@pytest.mark.asyncio
class TestStepCompletion:
    async def test_welcome_advances(self, client: AsyncClient):
        response = await complete(client, "welcome")

        assert response.status_code == 200
        state = response.json()["state"]
        assert state["currentStepIndex"] == 1
        assert state["steps"][0]["completed"] is True

    async def test_invalid_step_is_blocked_and_errors_are_saved(self, client: AsyncClient):
        await act(client, "SET_STEP", 1)

        response = await complete(client, "organization")

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "ONBOARDING_VALIDATION_FAILED"
        assert [e["field"] for e in error["details"]["errors"]] == ["organization.name"]

        state = (await client.get("/api/onboarding/")).json()
        assert state["currentStepIndex"] == 1
        assert state["validation"]["errors"][0]["message"] == "Organization name is required"

    async def test_warnings_do_not_block(self, client: AsyncClient):
        await act(client, "SET_STEP", 1)
        await act(client, "UPDATE_ORGANIZATION", {"name": "Acme Co"})

        response = await complete(client, "organization")

        assert response.status_code == 200
        body = response.json()
        assert body["state"]["currentStepIndex"] == 2
        assert [w["field"] for w in body["validation"]["warnings"]] == ["organization.industry", "organization.size"]

    async def test_unknown_step(self, client: AsyncClient):
        response = await complete(client, "payment")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "RESOURCE_NOT_FOUND"


@pytest.mark.api
@pytest.mark.asyncio
class TestSubmit:
    async def test_submit_creates_principal(self, client: AsyncClient, db_session):
        await fill_wizard(client)

        response = await client.post("/api/onboarding/submit")

        assert response.status_code == 201, response.text
        data = response.json()
        assert data["user"]["email"] == "ada@example.com"
        assert data["user"]["full_name"] == "Ada Lovelace"
        assert data["state"]["submitted"] is True
        assert data["state"]["expiresAt"]
        assert data["state"]["steps"][data["state"]["currentStepIndex"]]["id"] == "complete"

    async def test_submit_rejects_incomplete_wizard(self, client: AsyncClient):
        await act(client, "UPDATE_ORGANIZATION", {"name": "Acme Co"})

        response = await client.post("/api/onboarding/submit")

        assert response.status_code == 422
        fields = [e["field"] for e in response.json()["error"]["details"]["errors"]]
        assert "admin.email" in fields
        assert "admin.password" in fields

    async def test_resubmitting_same_wizard_is_allowed(self, client: AsyncClient):
        await fill_wizard(client)
        assert (await client.post("/api/onboarding/submit")).status_code == 201
        assert (await client.post("/api/onboarding/submit")).status_code == 201

    async def test_someone_elses_email_is_a_conflict(self, client: AsyncClient, test_user: User):
        await fill_wizard(client, {**ADMIN, "email": test_user.email, "password": "Different#Pass1"})

        response = await client.post("/api/onboarding/submit")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "EMAIL_ALREADY_REGISTERED"


@pytest.mark.api
@pytest.mark.integration
@pytest.mark.asyncio
class TestFirstLoginFlow:
    async def test_submit_login_provision_and_view(self, client: AsyncClient):
        """The whole journey: wizard, submit, login, provision, tenant-scoped read."""
        await fill_wizard(client)
        assert (await client.post("/api/onboarding/submit")).status_code == 201

        headers = await login(client, "ada@example.com", ADMIN["password"])
        response = await client.post("/api/auth/first-login", headers=headers)

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["action"] == "dashboard"
        assert data["progress"] == 100
        assert data["provisioning"]["step"] == "completed"
        organization_id = data["organization_id"]
        assert data["tokens"]["user"]["organization_id"] == organization_id

        scoped = {"Authorization": f"Bearer {data['tokens']['access_token']}"}
        org = (await client.get("/api/organizations/current", headers=scoped)).json()
        assert org["id"] == organization_id
        assert org["name"] == "Acme Co"
        assert org["settings"]["expected_users"] == 12
        assert [d["name"] for d in org["departments"]] == ["Ops"]
        assert sorted(s["name"] for s in org["service_types"]) == sorted(DEFAULT_SERVICE_TYPES)

        # Wizard state is gone once the organization exists
        assert (await client.get("/api/onboarding/")).json()["submitted"] is False

        # A later login already carries the organization claim
        again = await client.post(
            "/api/auth/login", json={"email": "ada@example.com", "password": ADMIN["password"]}
        )
        assert again.json()["user"]["organization_id"] == organization_id

        second = await client.post("/api/auth/first-login", headers=scoped)
        assert second.json()["action"] == "dashboard"
        assert second.json()["organization_id"] == organization_id

    async def test_failed_provisioning_then_retry(self, client: AsyncClient, faulty_client, redis_client):
        await fill_wizard(client)
        assert (await client.post("/api/onboarding/submit")).status_code == 201
        headers = await login(client, "ada@example.com", ADMIN["password"])

        def failing_provisioner(store=Depends(get_onboarding_store)):
            broken = faulty_client(fail_rpc={"create_complete_organization"}, fail_insert={"organizations"})
            return TenantProvisioner(broken, store, redis_client, attempts=1, base_delay=0)

        app.dependency_overrides[get_provisioner] = failing_provisioner
        try:
            response = await client.post("/api/auth/first-login", headers=headers)
        finally:
            del app.dependency_overrides[get_provisioner]

        assert response.status_code == 502
        error = response.json()["error"]
        assert error["code"] == "ORGANIZATION_CREATION_FAILED"
        assert error["details"]["can_retry"] is True
        assert error["details"]["phase"] == "creating_organization"

        retry = await client.post("/api/auth/first-login/retry", headers=headers)

        assert retry.status_code == 200, retry.text
        assert retry.json()["action"] == "dashboard"
        assert retry.json()["tokens"]["access_token"]


@pytest.mark.api
@pytest.mark.asyncio
class TestHealth:
    async def test_liveness(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_readiness(self, client: AsyncClient):
        response = await client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"] == {"service": "ok", "database": "ok", "redis": "ok"}
