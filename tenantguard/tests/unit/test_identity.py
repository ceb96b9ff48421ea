from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from tenantguard.core.config import get_settings
from tenantguard.core.errors import TenantInactive, TenantMismatch, Unauthenticated
from tenantguard.domain.principal import Role
from tenantguard.persistence.db import SessionLocal
from tenantguard.services.auth.identity import IdentityResolver
from tenantguard.services.auth.verifier import JwtCredentialVerifier, issue_token
from tenantguard.tests.utils.seed import add_member, create_tenant, token_for


def test_verifier_accepts_valid_token() -> None:
    verified = JwtCredentialVerifier().verify(issue_token("alice", ["t1", "t2"]))
    assert verified.subject == "alice"
    assert verified.tenant_claims == ("t1", "t2")
    assert verified.expires_at is not None


def test_verifier_rejects_expired_token() -> None:
    settings = get_settings()
    expired = jwt.encode(
        {
            "sub": "alice",
            "tenants": ["t1"],
            "exp": datetime.now(timezone.utc) - timedelta(seconds=settings.auth_clock_skew_seconds + 60),
        },
        settings.auth_jwt_secret,
        algorithm=settings.auth_jwt_algorithm,
    )
    with pytest.raises(Unauthenticated):
        JwtCredentialVerifier().verify(expired)


def test_verifier_rejects_bad_signature_and_garbage() -> None:
    with pytest.raises(Unauthenticated):
        JwtCredentialVerifier().verify(issue_token("alice", ["t1"], secret="not-the-secret"))
    with pytest.raises(Unauthenticated):
        JwtCredentialVerifier().verify("not-a-jwt")
    with pytest.raises(Unauthenticated):
        JwtCredentialVerifier().verify("")


def test_verifier_accepts_single_tenant_claim() -> None:
    settings = get_settings()
    token = jwt.encode(
        {"sub": "bob", "tid": "t9", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        settings.auth_jwt_secret,
        algorithm=settings.auth_jwt_algorithm,
    )
    assert JwtCredentialVerifier().verify(token).tenant_claims == ("t9",)


async def test_resolver_loads_role_permissions_and_attributes() -> None:
    await create_tenant("t1")
    user_id = await add_member(
        "t1",
        "staff",
        permissions=["workorders:read_all"],
        attributes={"region": "north"},
    )
    async with SessionLocal() as session:
        principal = await IdentityResolver().resolve(session, token_for(user_id, "t1"))
    assert principal.tenant_id == "t1"
    assert principal.role is Role.STAFF
    assert principal.has("workorders:read_all")
    assert principal.attributes == {"region": "north"}


async def test_resolver_requires_claimed_tenant_for_multi_tenant_tokens() -> None:
    await create_tenant("t1")
    await create_tenant("t2")
    user_id = await add_member("t1", "manager")
    await add_member("t2", "viewer", user_id=user_id)
    token = token_for(user_id, "t1", "t2")
    async with SessionLocal() as session:
        with pytest.raises(TenantMismatch):
            await IdentityResolver().resolve(session, token)
        principal = await IdentityResolver().resolve(session, token, claimed_tenant="t2")
    assert principal.role is Role.VIEWER


async def test_resolver_rejects_unclaimed_or_unknown_membership() -> None:
    await create_tenant("t1")
    await create_tenant("t2")
    user_id = await add_member("t1", "manager")
    async with SessionLocal() as session:
        with pytest.raises(TenantMismatch):
            await IdentityResolver().resolve(session, token_for(user_id, "t1"), claimed_tenant="t2")
        with pytest.raises(TenantMismatch):
            await IdentityResolver().resolve(session, token_for(user_id, "t2"))


async def test_resolver_rejects_inactive_tenant() -> None:
    await create_tenant("t1", status="suspended")
    user_id = await add_member("t1", "owner")
    async with SessionLocal() as session:
        with pytest.raises(TenantInactive):
            await IdentityResolver().resolve(session, token_for(user_id, "t1"))


async def test_resolver_rejects_disabled_membership() -> None:
    await create_tenant("t1")
    user_id = await add_member("t1", "manager", status="disabled")
    async with SessionLocal() as session:
        with pytest.raises(TenantMismatch):
            await IdentityResolver().resolve(session, token_for(user_id, "t1"))
