from __future__ import annotations

from typing import AsyncIterator

from httpx import ASGITransport, AsyncClient
import pytest

from tenantguard.apps.api.main import create_app
from tenantguard.domain.models import Customer
from tenantguard.services.audit import AuditRecorder
from tenantguard.services.authz.registry import PolicyRegistry
from tenantguard.services.gate import AccessGate
from tenantguard.tests.utils.seed import (
    create_tenant,
    insert_row,
    install_default_policies,
    member_token,
    token_for,
)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    registry = PolicyRegistry(refresh_interval_s=3600)
    recorder = AuditRecorder(mode="inline")
    await install_default_policies(registry, recorder)
    app = create_app(gate=AccessGate(registry=registry, recorder=recorder), recorder=recorder)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def test_health_returns_envelope(client: AsyncClient) -> None:
    for path in ("/health", "/v1/health"):
        response = await client.get(path)
        assert response.status_code == 200
        body = response.json()
        assert body["data"] == {"status": "ok"}
        assert body["meta"]["api_version"] == "v1"


async def test_request_id_is_echoed(client: AsyncClient) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-abc"})
    assert response.headers["X-Request-Id"] == "req-abc"
    assert response.json()["meta"]["request_id"] == "req-abc"


async def test_missing_and_unknown_credentials_share_one_response(client: AsyncClient) -> None:
    await create_tenant("t1")
    anonymous = await client.get("/v1/resources/customers")
    stranger = await client.get("/v1/resources/customers", headers=_auth(token_for("u-ghost", "t1")))
    malformed = await client.get("/v1/resources/customers", headers={"Authorization": "Token abc"})

    for response in (anonymous, stranger, malformed):
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"] == {"code": "AUTH_UNAUTHORIZED", "message": "Authentication required"}


async def test_create_list_and_read_customer(client: AsyncClient) -> None:
    tenant = await create_tenant()
    _, token = await member_token(tenant, "manager")

    created = await client.post("/v1/resources/customers", json={"name": "Acme"}, headers=_auth(token))
    assert created.status_code == 201
    customer = created.json()["data"]
    assert customer["tenant_id"] == tenant

    listed = await client.get("/v1/resources/customers", headers=_auth(token))
    assert listed.status_code == 200
    assert [row["id"] for row in listed.json()["data"]] == [customer["id"]]
    assert listed.json()["page"] == {"has_more": False, "next_offset": None}

    read = await client.get(f"/v1/resources/customers/{customer['id']}", headers=_auth(token))
    assert read.json()["data"]["name"] == "Acme"


async def test_other_tenant_row_is_indistinguishable_from_missing(client: AsyncClient) -> None:
    t1 = await create_tenant()
    t2 = await create_tenant()
    _, token = await member_token(t1, "staff")
    foreign_id = await insert_row(Customer, t2, name="Hidden")

    foreign = await client.get(f"/v1/resources/customers/{foreign_id}", headers=_auth(token))
    missing = await client.get("/v1/resources/customers/does-not-exist", headers=_auth(token))

    assert foreign.status_code == missing.status_code == 404
    assert foreign.json()["error"] == missing.json()["error"]


async def test_denied_write_returns_generic_forbidden(client: AsyncClient) -> None:
    tenant = await create_tenant()
    _, token = await member_token(tenant, "viewer")

    response = await client.post("/v1/resources/customers", json={"name": "Nope"}, headers=_auth(token))
    assert response.status_code == 403
    assert response.json()["error"] == {"code": "AUTH_FORBIDDEN", "message": "Access denied"}


async def test_payload_tenant_id_is_a_bad_request(client: AsyncClient) -> None:
    tenant = await create_tenant()
    _, token = await member_token(tenant, "manager")

    response = await client.post(
        "/v1/resources/customers",
        json={"name": "Smuggled", "tenant_id": "t-other"},
        headers=_auth(token),
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_REQUEST"


async def test_delete_customer(client: AsyncClient) -> None:
    tenant = await create_tenant()
    _, token = await member_token(tenant, "manager")
    customer_id = await insert_row(Customer, tenant, name="Short lived")

    response = await client.delete(f"/v1/resources/customers/{customer_id}", headers=_auth(token))
    assert response.status_code == 200
    assert response.json()["data"] == {"id": customer_id, "deleted": True}

    gone = await client.get(f"/v1/resources/customers/{customer_id}", headers=_auth(token))
    assert gone.status_code == 404


async def test_audit_export_is_service_only(client: AsyncClient) -> None:
    tenant = await create_tenant()
    await create_tenant("ops")
    _, manager_token = await member_token(tenant, "manager")
    _, service_token = await member_token("ops", "service")
    await client.post("/v1/resources/customers", json={"name": "Audited"}, headers=_auth(manager_token))

    denied = await client.get("/v1/audit/events", headers=_auth(manager_token))
    assert denied.status_code == 403

    exported = await client.get(
        "/v1/audit/events",
        params={"tenant_id": tenant, "resource_type": "customers"},
        headers=_auth(service_token),
    )
    assert exported.status_code == 200
    items = exported.json()["data"]
    assert {item["tenant_id"] for item in items} == {tenant}
    assert [(item["action"], item["decision"]) for item in items] == [("create", "allowed")]
    assert items[0]["after"]["name"] == "Audited"
    assert exported.json()["page"] == {"next_offset": None}


async def test_unknown_resource_type_matches_policy_denial(client: AsyncClient) -> None:
    tenant = await create_tenant()
    _, token = await member_token(tenant, "viewer")

    unknown = await client.get("/v1/resources/invoices", headers=_auth(token))
    denied = await client.post("/v1/resources/customers", json={"name": "Nope"}, headers=_auth(token))

    assert unknown.status_code == denied.status_code == 403
    assert unknown.json()["error"] == denied.json()["error"]
    assert "invoices" not in unknown.text


async def test_filtering_on_redacted_column_is_rejected(client: AsyncClient) -> None:
    tenant = await create_tenant()
    _, token = await member_token(tenant, "viewer")
    await insert_row(Customer, tenant, name="Portal user", portal_password_hash="hash-abc")

    response = await client.get(
        "/v1/resources/customers",
        params={"portal_password_hash": "hash-abc"},
        headers=_auth(token),
    )
    assert response.status_code == 400
    assert "hash-abc" not in response.text
