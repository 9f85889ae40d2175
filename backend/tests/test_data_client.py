"""Tests for DataClient: tenant scoping, coded failures, procedures, change feed."""

import pytest
import pytest_asyncio

from worktally.services.data_client import ChangeType, ErrorCode
from worktally.tenancy import clear_tenant_context, set_current_tenant


async def make_org(data_client, name: str) -> str:
    result = await data_client.insert("organizations", {"name": name, "slug": name.lower().replace(" ", "-")})
    assert result.ok, result.error
    return result.data["id"]


@pytest_asyncio.fixture
async def two_orgs(data_client):
    acme = await make_org(data_client, "Acme Co")
    globex = await make_org(data_client, "Globex")
    await data_client.insert(
        "departments",
        [
            {"organization_id": acme, "name": "Ops"},
            {"organization_id": acme, "name": "Sales"},
            {"organization_id": globex, "name": "Research"},
        ],
    )
    return acme, globex


@pytest.mark.asyncio
class TestCrud:
    async def test_insert_single_returns_row(self, data_client):
        result = await data_client.insert("organizations", {"name": "Acme Co", "slug": "acme-co-1"})
        assert result.ok
        assert result.data["id"]
        assert result.data["slug"] == "acme-co-1"

    async def test_insert_many_returns_list(self, data_client, two_orgs):
        result = await data_client.query("departments")
        assert len(result.data) == 3

    async def test_query_with_list_filter(self, data_client, two_orgs):
        result = await data_client.query("departments", {"name": ["Ops", "Research"]})
        assert {d["name"] for d in result.data} == {"Ops", "Research"}

    async def test_update_and_delete(self, data_client, two_orgs):
        acme, _ = two_orgs
        dept = (await data_client.query("departments", {"name": "Ops"})).data[0]

        updated = await data_client.update("departments", dept["id"], {"description": "Operations"})
        assert updated.ok
        assert updated.data["description"] == "Operations"

        deleted = await data_client.delete("departments", dept["id"])
        assert deleted.ok
        assert (await data_client.query("departments", {"id": dept["id"]})).data == []

    async def test_missing_row_is_not_found(self, data_client):
        result = await data_client.update("departments", "missing", {"name": "x"})
        assert result.error.code == ErrorCode.NOT_FOUND
        result = await data_client.delete("departments", "missing")
        assert result.error.code == ErrorCode.NOT_FOUND

    async def test_unknown_filter_column(self, data_client):
        result = await data_client.query("departments", {"colour": "red"})
        assert result.error.code == ErrorCode.INVALID_FILTER

    async def test_unknown_table(self, data_client):
        result = await data_client.query("invoices")
        assert result.error.code == ErrorCode.UNKNOWN_TABLE

    async def test_unknown_insert_column(self, data_client):
        result = await data_client.insert("organizations", {"name": "Acme", "slug": "a", "colour": "red"})
        assert result.error.code == ErrorCode.INVALID_ARGUMENTS

    async def test_update_cannot_change_id(self, data_client, two_orgs):
        dept = (await data_client.query("departments")).data[0]
        result = await data_client.update("departments", dept["id"], {"id": "other"})
        assert result.error.code == ErrorCode.INVALID_ARGUMENTS

    async def test_constraint_violation_is_conflict(self, data_client):
        org_id = await make_org(data_client, "Acme Co")
        row = {"organization_id": org_id, "user_id": "user-1", "role": "admin"}
        assert (await data_client.insert("organization_members", row)).ok
        result = await data_client.insert("organization_members", row)
        assert result.error.code == ErrorCode.CONFLICT


@pytest.mark.asyncio
class TestTenantScoping:
    async def test_scoped_query_sees_only_own_rows(self, data_client, two_orgs):
        acme, globex = two_orgs
        rows = (await data_client.for_tenant(acme).query("departments")).data
        assert {d["name"] for d in rows} == {"Ops", "Sales"}
        assert all(d["organization_id"] == acme for d in rows)

    async def test_organizations_scoped_by_id(self, data_client, two_orgs):
        acme, _ = two_orgs
        rows = (await data_client.for_tenant(acme).query("organizations")).data
        assert [o["id"] for o in rows] == [acme]

    async def test_insert_is_stamped_with_tenant(self, data_client, two_orgs):
        acme, _ = two_orgs
        result = await data_client.for_tenant(acme).insert("departments", {"name": "Support"})
        assert result.data["organization_id"] == acme

    async def test_insert_into_other_tenant_is_refused(self, data_client, two_orgs):
        acme, globex = two_orgs
        result = await data_client.for_tenant(acme).insert(
            "departments", {"organization_id": globex, "name": "Sneaky"}
        )
        assert result.error.code == ErrorCode.TENANT_MISMATCH

    async def test_other_tenants_rows_are_not_found(self, data_client, two_orgs):
        acme, globex = two_orgs
        research = (await data_client.query("departments", {"name": "Research"})).data[0]
        scoped = data_client.for_tenant(acme)
        assert (await scoped.update("departments", research["id"], {"name": "Mine"})).error.code == ErrorCode.NOT_FOUND
        assert (await scoped.delete("departments", research["id"])).error.code == ErrorCode.NOT_FOUND

    async def test_request_context_tenant_applies(self, data_client, two_orgs):
        _, globex = two_orgs
        set_current_tenant(globex)
        try:
            rows = (await data_client.query("departments")).data
        finally:
            clear_tenant_context()
        assert [d["name"] for d in rows] == ["Research"]


@pytest.mark.asyncio
class TestProcedures:
    async def test_unknown_procedure(self, data_client):
        result = await data_client.rpc("drop_everything", {})
        assert result.error.code == ErrorCode.PROCEDURE_NOT_FOUND

    async def test_missing_arguments(self, data_client):
        result = await data_client.rpc("create_complete_organization", {"p_org_name": "Acme"})
        assert result.error.code == ErrorCode.INVALID_ARGUMENTS

    async def test_complete_organization_is_atomic(self, data_client):
        args = {
            "p_org_name": "Acme Co",
            "p_slug": "acme-co-1",
            "p_user_id": "user-1",
            "p_user_email": "ada@example.com",
            "p_first_name": "Ada",
        }
        first = await data_client.rpc("create_complete_organization", args)
        assert first.ok
        org_id = first.data["organization_id"]

        second = await data_client.rpc("create_complete_organization", {**args, "p_slug": "acme-co-2"})
        assert second.error.code == ErrorCode.CONFLICT
        # Nothing from the refused call was kept
        assert [o["id"] for o in (await data_client.query("organizations")).data] == [org_id]

        employees = (await data_client.query("employees", {"organization_id": org_id})).data
        assert len(employees) == 1
        assert employees[0]["role"] == "admin"
        assert employees[0]["pto"]["vacation"]["firstYearRule"] == 40

    async def test_member_procedure_is_idempotent(self, data_client):
        org_id = await make_org(data_client, "Acme Co")
        args = {"p_organization_id": org_id, "p_user_id": "user-1"}
        first = await data_client.rpc("create_organization_member", args)
        second = await data_client.rpc("create_organization_member", args)
        assert first.data == second.data

    async def test_member_procedure_rejects_bad_role(self, data_client):
        org_id = await make_org(data_client, "Acme Co")
        result = await data_client.rpc(
            "create_organization_member", {"p_organization_id": org_id, "p_user_id": "u", "p_role": "overlord"}
        )
        assert result.error.code == ErrorCode.INVALID_ARGUMENTS

    async def test_procedure_on_missing_organization(self, data_client):
        result = await data_client.rpc("create_departments_batch", {"p_organization_id": "nope", "p_names": ["Ops"]})
        assert result.error.code == ErrorCode.NOT_FOUND

    async def test_batch_skips_existing_names_ignoring_case(self, data_client, two_orgs):
        acme, _ = two_orgs
        result = await data_client.rpc(
            "create_departments_batch",
            {"p_organization_id": acme, "p_names": ["ops", {"name": "Support"}, "support", ""]},
        )
        assert [d["name"] for d in result.data] == ["Support"]

    async def test_procedure_cannot_target_other_tenant(self, data_client, two_orgs):
        acme, globex = two_orgs
        result = await data_client.for_tenant(acme).rpc(
            "create_departments_batch", {"p_organization_id": globex, "p_names": ["x"]}
        )
        assert result.error.code == ErrorCode.TENANT_MISMATCH


@pytest.mark.asyncio
class TestChangeFeed:
    async def test_insert_is_delivered_to_subscriber(self, data_client, feed):
        org_id = await make_org(data_client, "Acme Co")
        received = []
        subscription = data_client.for_tenant(org_id).subscribe("departments", None, received.append)

        await data_client.for_tenant(org_id).insert("departments", {"name": "Ops"})

        assert [(e.type, e.record["name"]) for e in received] == [(ChangeType.INSERT, "Ops")]
        subscription.unsubscribe()
        assert feed.subscriber_count == 0

    async def test_subscriber_only_sees_its_tenant(self, data_client, two_orgs):
        acme, globex = two_orgs
        received = []
        data_client.for_tenant(acme).subscribe("departments", None, received.append)
        await data_client.for_tenant(globex).insert("departments", {"name": "Labs"})
        assert received == []

    async def test_update_and_delete_events(self, data_client, two_orgs):
        acme, _ = two_orgs
        received = []

        async def on_change(event):
            received.append(event)

        data_client.subscribe("departments", {"name": ["Ops", "Operations"]}, on_change)
        dept = (await data_client.query("departments", {"name": "Ops"})).data[0]
        await data_client.update("departments", dept["id"], {"name": "Operations"})
        await data_client.delete("departments", dept["id"])

        assert [e.type for e in received] == [ChangeType.UPDATE, ChangeType.DELETE]

    async def test_failed_write_publishes_nothing(self, data_client):
        received = []
        data_client.subscribe("organizations", None, received.append)
        await data_client.rpc("create_complete_organization", {
            "p_org_name": "Acme", "p_slug": "acme", "p_user_id": "u1", "p_user_email": "a@example.com",
        })
        received.clear()
        await data_client.rpc("create_complete_organization", {
            "p_org_name": "Acme 2", "p_slug": "acme-2", "p_user_id": "u1", "p_user_email": "a@example.com",
        })
        assert received == []

    async def test_no_delivery_after_unsubscribe(self, data_client):
        received = []
        subscription = data_client.subscribe("organizations", None, received.append)
        subscription.unsubscribe()
        await make_org(data_client, "Acme Co")
        assert received == []

    async def test_failing_callback_does_not_break_others(self, data_client):
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        data_client.subscribe("organizations", None, broken)
        data_client.subscribe("organizations", None, received.append)
        result = await data_client.insert("organizations", {"name": "Acme", "slug": "acme"})
        assert result.ok
        assert len(received) == 1

    async def test_subscribe_rejects_unknown_table(self, data_client):
        with pytest.raises(ValueError):
            data_client.subscribe("invoices", None, print)
        with pytest.raises(ValueError):
            data_client.subscribe("departments", {"colour": "red"}, print)
