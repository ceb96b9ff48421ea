from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.errors import TenantInactive, TenantMismatch, Unauthenticated
from tenantguard.domain.models import Tenant, TenantMembership
from tenantguard.domain.principal import Principal, normalize_role
from tenantguard.persistence.guards import tenant_predicate
from tenantguard.services.auth.verifier import CredentialVerifier, JwtCredentialVerifier


logger = logging.getLogger(__name__)

ACTIVE = "active"


class IdentityResolver:
    """Turn a raw credential into a ``Principal`` for exactly one tenant.

    The credential only names candidate tenants; role, capabilities and the
    attribute bag always come from the membership row.
    """

    def __init__(self, verifier: CredentialVerifier | None = None) -> None:
        self._verifier = verifier or JwtCredentialVerifier()

    async def resolve(
        self,
        session: AsyncSession,
        credential: str | None,
        claimed_tenant: str | None = None,
    ) -> Principal:
        verified = self._verifier.verify(credential or "")
        tenant_id = self._select_tenant(verified.subject, verified.tenant_claims, claimed_tenant)

        result = await session.execute(
            select(TenantMembership, Tenant.status)
            .join(Tenant, Tenant.id == TenantMembership.tenant_id)
            .where(
                TenantMembership.user_id == verified.subject,
                tenant_predicate(TenantMembership, tenant_id),
            )
        )
        row = result.one_or_none()
        if row is None:
            logger.info("identity_no_membership subject=%s tenant_id=%s", verified.subject, tenant_id)
            raise TenantMismatch("No membership for claimed tenant")
        membership, tenant_status = row
        if membership.status != ACTIVE:
            logger.info("identity_membership_inactive subject=%s tenant_id=%s", verified.subject, tenant_id)
            raise TenantMismatch("Membership is not active")
        if tenant_status != ACTIVE:
            logger.info("identity_tenant_inactive tenant_id=%s status=%s", tenant_id, tenant_status)
            raise TenantInactive("Tenant is not active")
        try:
            role = normalize_role(membership.role)
        except ValueError as exc:
            logger.warning("identity_invalid_role subject=%s role=%s", verified.subject, membership.role)
            raise Unauthenticated("Membership role is not recognized") from exc

        return Principal(
            user_id=verified.subject,
            tenant_id=tenant_id,
            role=role,
            permissions=tuple(membership.permissions_json or ()),
            attributes=dict(membership.attributes_json or {}),
        )

    @staticmethod
    def _select_tenant(subject: str, tenant_claims: tuple[str, ...], claimed_tenant: str | None) -> str:
        if claimed_tenant:
            if claimed_tenant not in tenant_claims:
                logger.info("identity_tenant_not_claimed subject=%s tenant_id=%s", subject, claimed_tenant)
                raise TenantMismatch("Credential does not cover the claimed tenant")
            return claimed_tenant
        if len(tenant_claims) == 1:
            return tenant_claims[0]
        # Multi-tenant credentials must name the tenant for each request.
        raise TenantMismatch("A tenant must be claimed for this credential")
